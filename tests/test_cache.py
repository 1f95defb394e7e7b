import asyncio

import pytest

from audio_source.cache import MetadataCache, SqliteTrackStore
from audio_source.metadata import TrackDescriptor, TrackSource

from conftest import FakeClock


def track(title: str) -> TrackDescriptor:
    return TrackDescriptor(title, f"https://example.com/{title}", 100.0, None, "Autor", TrackSource.YOUTUBE)


def test_put_then_get_returns_same_value(cache):
    value = track("uno")
    cache.put("uno", value)
    assert cache.get("uno") == value


def test_keys_are_normalized(cache):
    value = track("uno")
    cache.put("  Never Gonna Give You Up ", value)
    assert cache.get("never gonna give you up") == value
    assert len(cache) == 1


def test_expired_entry_is_removed_on_read(cache, clock):
    cache.put("uno", track("uno"))
    assert len(cache) == 1

    clock.advance(601)

    assert cache.get("uno") is None
    assert len(cache) == 0


def test_lru_bound_evicts_least_recently_used(clock):
    cache = MetadataCache(ttl=600, max_size=3, clock=clock)
    for name in ("a", "b", "c"):
        cache.put(name, track(name))
    cache.get("a")

    cache.put("d", track("d"))

    assert len(cache) == 3
    assert "b" not in cache
    assert all(key in cache for key in ("a", "c", "d"))
    assert cache.evictions == 1


def test_inserting_max_plus_one_keys_keeps_max(clock):
    cache = MetadataCache(ttl=600, max_size=5, clock=clock)
    for index in range(6):
        cache.put(f"k{index}", track(f"k{index}"))
    assert len(cache) == 5
    assert "k0" not in cache


def test_reinserting_existing_key_does_not_evict(clock):
    cache = MetadataCache(ttl=600, max_size=2, clock=clock)
    cache.put("a", track("a"))
    cache.put("b", track("b"))
    cache.put("a", track("a2"))
    assert len(cache) == 2
    assert cache.get("a").title == "a2"
    assert cache.evictions == 0


def test_evict_expired_counts_removed_entries(cache, clock):
    cache.put("viejo", track("viejo"))
    clock.advance(500)
    cache.put("nuevo", track("nuevo"))
    clock.advance(200)

    assert cache.evict_expired() == 1
    assert "nuevo" in cache
    assert "viejo" not in cache


def test_hits_are_counted(cache):
    cache.put("uno", track("uno"))
    cache.get("uno")
    cache.get("uno")
    cache.get("otro")

    stats = cache.stats()
    assert stats["hits"] == 2
    assert stats["misses"] == 1
    assert stats["top_entries"][0]["hit_count"] == 2


def test_delete_and_clear(cache):
    cache.put("uno", track("uno"))
    cache.put("dos", track("dos"))
    assert cache.delete("UNO")
    assert not cache.delete("uno")
    assert cache.clear() == 1
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_sweeper_purges_in_background(cache, clock):
    cache.put("uno", track("uno"))
    clock.advance(601)
    cache.start_sweeper(0.01)
    try:
        for _ in range(50):
            if len(cache) == 0:
                break
            await asyncio.sleep(0.01)
    finally:
        await cache.stop_sweeper()
    assert len(cache) == 0


# --- almacén persistente -----------------------------------------------------


@pytest.fixture()
def store(tmp_path, clock):
    sqlite_store = SqliteTrackStore(tmp_path / "cache.db", ttl=600, clock=clock)
    yield sqlite_store
    sqlite_store.close()


def insert_raw(store: SqliteTrackStore, key: str, raw: str, clock: FakeClock) -> None:
    store._conn.execute(
        "INSERT INTO track_metadata_cache (query_key, metadata, created_at, expires_at) VALUES (?, ?, ?, ?)",
        (key, raw, clock(), clock() + 600),
    )
    store._conn.commit()


def row_count(store: SqliteTrackStore) -> int:
    return store._conn.execute("SELECT COUNT(*) FROM track_metadata_cache").fetchone()[0]


def test_store_round_trip(store):
    value = track("uno")
    store.put("uno", value)
    assert store.get("uno") == value
    hits = store._conn.execute(
        "SELECT hit_count FROM track_metadata_cache WHERE query_key = 'uno'"
    ).fetchone()[0]
    assert hits == 1


@pytest.mark.parametrize("raw", ["undefined", "null", "{roto", "[1, 2]", '{"url": "sin titulo"}'])
def test_store_treats_corrupt_rows_as_miss_and_deletes_them(store, clock, raw):
    insert_raw(store, "corrupta", raw, clock)
    assert store.get("corrupta") is None
    assert row_count(store) == 0


def test_store_expiry_and_purge(store, clock):
    store.put("uno", track("uno"))
    clock.advance(300)
    store.put("dos", track("dos"))
    clock.advance(301)

    assert store.get("uno") is None
    assert store.purge_expired() == 0
    clock.advance(300)
    assert store.purge_expired() == 1
    assert row_count(store) == 0


def test_cache_rehydrates_from_store_after_restart(store, clock):
    first = MetadataCache(ttl=600, max_size=10, clock=clock, store=store)
    first.put("Uno", track("uno"))

    restarted = MetadataCache(ttl=600, max_size=10, clock=clock, store=store)
    assert len(restarted) == 0
    assert restarted.get("uno") == track("uno")
    assert len(restarted) == 1


def test_rehydrated_entry_keeps_its_original_age(store, clock):
    first = MetadataCache(ttl=600, max_size=10, clock=clock, store=store)
    first.put("uno", track("uno"))
    clock.advance(500)

    restarted = MetadataCache(ttl=600, max_size=10, clock=clock, store=store)
    assert restarted.get("uno") == track("uno")
    assert restarted.stats()["top_entries"][0]["age_seconds"] == 500

    clock.advance(500)
    assert restarted.get("uno") is None
    assert len(restarted) == 0


@pytest.mark.asyncio
async def test_async_access_goes_through_the_store(store, clock):
    first = MetadataCache(ttl=600, max_size=10, clock=clock, store=store)
    await first.aput("Dos", track("dos"))
    assert row_count(store) == 1

    restarted = MetadataCache(ttl=600, max_size=10, clock=clock, store=store)
    assert await restarted.aget("dos") == track("dos")
    assert await restarted.aget("otra") is None
    assert (restarted.hits, restarted.misses) == (1, 1)
