"""Caché de metadatos con TTL y desalojo LRU.

La caché en memoria es la única estructura compartida entre peticiones. Solo
se toca desde el hilo del bucle de eventos, así que no necesita cerrojos.
Opcionalmente respalda sus entradas en SQLite (despliegue del bot) para
sobrevivir a reinicios. En el camino de cada petición (``aget``/``aput``) y en
el barrido periódico, SQLite se usa desde el pool de hilos; las operaciones de
administración (``delete``, ``clear``) son puntuales y se quedan síncronas.
"""

import asyncio
import json
import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from audio_source import settings
from audio_source.errors import MetadataParseError
from audio_source.metadata import TrackDescriptor, normalize_query

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    key: str
    value: TrackDescriptor
    inserted_at: float
    hit_count: int = 0
    last_access: float = field(default=0.0)

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.inserted_at >= ttl


class SqliteTrackStore:
    """Tabla ``track_metadata_cache`` con el mismo contrato get/put que la caché."""

    def __init__(self, path: Path, ttl: float = settings.CACHE_TTL_SECONDS, clock: Clock = time.time) -> None:
        self.path = Path(path)
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()
        if str(self.path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS track_metadata_cache (
                query_key TEXT PRIMARY KEY,
                metadata TEXT NOT NULL,
                hit_count INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_track_cache_expires ON track_metadata_cache (expires_at)"
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM track_metadata_cache WHERE query_key = ?", (key,))
        self._conn.commit()

    def get(self, key: str) -> Optional[TrackDescriptor]:
        loaded = self.load(key)
        return loaded[0] if loaded is not None else None

    def load(self, key: str) -> Optional[Tuple[TrackDescriptor, float]]:
        """Descriptor y momento en que se escribió la fila."""
        with self._lock:
            row = self._conn.execute(
                "SELECT metadata, created_at, expires_at FROM track_metadata_cache WHERE query_key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            raw, created_at, expires_at = row
            if expires_at <= self.clock():
                self._delete(key)
                return None
            descriptor = self._decode(key, raw)
            if descriptor is None:
                self._delete(key)
                return None
            self._conn.execute(
                "UPDATE track_metadata_cache SET hit_count = hit_count + 1 WHERE query_key = ?",
                (key,),
            )
            self._conn.commit()
            return descriptor, created_at

    @staticmethod
    def _decode(key: str, raw: Any) -> Optional[TrackDescriptor]:
        if not isinstance(raw, str) or raw in ("undefined", "null", ""):
            logger.warning("Entrada de caché corrupta para %r, se elimina", key)
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Entrada de caché con JSON inválido para %r, se elimina", key)
            return None
        if not isinstance(data, dict):
            logger.warning("Entrada de caché no es un objeto para %r, se elimina", key)
            return None
        try:
            return TrackDescriptor.from_dict(data)
        except MetadataParseError:
            logger.warning("Entrada de caché incompleta para %r, se elimina", key)
            return None

    def put(self, key: str, value: TrackDescriptor) -> None:
        now = self.clock()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO track_metadata_cache (query_key, metadata, hit_count, created_at, expires_at)
                VALUES (?, ?, 0, ?, ?)
                ON CONFLICT(query_key) DO UPDATE SET
                    metadata = excluded.metadata,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (key, json.dumps(value.to_dict(), ensure_ascii=False), now, now + self.ttl),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._delete(key)

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM track_metadata_cache")
            self._conn.commit()

    def purge_expired(self) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM track_metadata_cache WHERE expires_at <= ?", (self.clock(),)
            )
            self._conn.commit()
            return cursor.rowcount


class MetadataCache:
    def __init__(
        self,
        ttl: float = settings.CACHE_TTL_SECONDS,
        max_size: int = settings.CACHE_MAX_SIZE,
        *,
        clock: Clock = time.time,
        store: Optional[SqliteTrackStore] = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock
        self.store = store
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return normalize_query(key) in self._entries

    def _memory_entry(self, key: str, now: float) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is not None and entry.is_expired(now, self.ttl):
            del self._entries[key]
            entry = None
        return entry

    def _resolve_hit(
        self,
        key: str,
        entry: Optional[CacheEntry],
        loaded: Optional[Tuple[TrackDescriptor, float]],
        now: float,
    ) -> Optional[TrackDescriptor]:
        if entry is None:
            if loaded is None:
                self.misses += 1
                return None
            # Rehidratación: la edad cuenta desde que se escribió la fila.
            value, created_at = loaded
            entry = self._insert(key, value, created_at)
            if entry.is_expired(now, self.ttl):
                del self._entries[key]
                self.misses += 1
                return None
        entry.hit_count += 1
        entry.last_access = now
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def get(self, key: str) -> Optional[TrackDescriptor]:
        key = normalize_query(key)
        now = self.clock()
        entry = self._memory_entry(key, now)
        loaded = self.store.load(key) if entry is None and self.store is not None else None
        return self._resolve_hit(key, entry, loaded, now)

    async def aget(self, key: str) -> Optional[TrackDescriptor]:
        """Como ``get``, pero la lectura de SQLite sale del bucle de eventos."""
        key = normalize_query(key)
        entry = self._memory_entry(key, self.clock())
        loaded = None
        if entry is None and self.store is not None:
            loaded = await run_in_threadpool(self.store.load, key)
            # Otra petición pudo insertar la clave mientras tanto.
            entry = self._memory_entry(key, self.clock())
        return self._resolve_hit(key, entry, loaded, self.clock())

    def _insert(self, key: str, value: TrackDescriptor, inserted_at: float) -> CacheEntry:
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("Caché llena, se desaloja %r", evicted)
        entry = CacheEntry(key=key, value=value, inserted_at=inserted_at, last_access=self.clock())
        self._entries[key] = entry
        return entry

    def put(self, key: str, value: TrackDescriptor) -> None:
        key = normalize_query(key)
        self._insert(key, value, self.clock())
        if self.store is not None:
            self.store.put(key, value)

    async def aput(self, key: str, value: TrackDescriptor) -> None:
        key = normalize_query(key)
        self._insert(key, value, self.clock())
        if self.store is not None:
            await run_in_threadpool(self.store.put, key, value)

    def delete(self, key: str) -> bool:
        key = normalize_query(key)
        removed = self._entries.pop(key, None) is not None
        if self.store is not None:
            self.store.delete(key)
        return removed

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        if self.store is not None:
            self.store.clear()
        return count

    def _evict_memory(self) -> List[str]:
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now, self.ttl)]
        for key in expired:
            del self._entries[key]
        return expired

    def evict_expired(self) -> int:
        expired = self._evict_memory()
        if self.store is not None:
            self.store.purge_expired()
        if expired:
            logger.debug("Barrido de caché: %d entradas caducadas", len(expired))
        return len(expired)

    def stats(self, top: int = 10) -> Dict[str, Any]:
        entries: List[CacheEntry] = sorted(
            self._entries.values(), key=lambda entry: entry.hit_count, reverse=True
        )
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "persistent": self.store is not None,
            "top_entries": [
                {
                    "key": entry.key,
                    "title": entry.value.title,
                    "hit_count": entry.hit_count,
                    "age_seconds": round(self.clock() - entry.inserted_at, 1),
                }
                for entry in entries[:top]
            ],
        }

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            expired = self._evict_memory()
            if expired:
                logger.debug("Barrido de caché: %d entradas caducadas", len(expired))
            if self.store is None:
                continue
            try:
                await run_in_threadpool(self.store.purge_expired)
            except sqlite3.Error:
                logger.exception("Fallo al purgar la caché persistente")

    def start_sweeper(self, interval: float = settings.CACHE_SWEEP_INTERVAL) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(interval))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
