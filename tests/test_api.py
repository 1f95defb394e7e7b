import json

import pytest

from conftest import build_test_pipeline
from fakes.fake_ytdlp import STREAM_PAYLOAD


@pytest.mark.asyncio
async def test_info_end_to_end(client):
    response = await client.get("/info", params={"query": "never gonna give you up"})

    assert response.status_code == 200
    body = response.json()
    assert "never gonna give you up" in body["title"].lower()
    assert 200 <= body["durationSec"] <= 220
    assert body["url"] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert body["thumbnail"].endswith("maxresdefault.jpg")


@pytest.mark.asyncio
async def test_metadata_alias_includes_uploader_and_source(client):
    response = await client.get("/metadata", params={"query": "never gonna give you up"})

    assert response.status_code == 200
    body = response.json()
    assert body["uploader"] == "Rick Astley"
    assert body["source"] == "youtube"


@pytest.mark.asyncio
async def test_info_not_found(client):
    response = await client.get("/info", params={"query": "nothing"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_info_parse_error_is_bad_gateway(client):
    response = await client.get("/info", params={"query": "garbage"})
    assert response.status_code == 502


@pytest.mark.asyncio
async def test_info_requires_query(client, supervisor):
    response = await client.get("/info")
    assert response.status_code == 400
    assert supervisor.spawned == []


@pytest.mark.asyncio
async def test_shell_injection_is_rejected_without_spawning(client, supervisor):
    response = await client.get("/stream", params={"query": "test; rm -rf /"})

    assert response.status_code == 400
    assert "no permitidos" in response.json()["detail"]
    assert supervisor.spawned == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params",
    [
        {"query": "../../etc/passwd"},
        {"query": "/etc/passwd"},
        {"query": "test", "start": "-1"},
        {"query": "test", "start": "abc"},
        {"query": "test", "start": "86401"},
        {"query": "test", "format": "flac"},
        {"query": "x" * 501},
    ],
)
async def test_stream_validation_errors(client, supervisor, params):
    response = await client.get("/stream", params=params)
    assert response.status_code == 400
    assert supervisor.spawned == []


@pytest.mark.asyncio
async def test_stream_native_passthrough(client, supervisor):
    response = await client.get("/stream", params={"query": "test"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("audio/webm")
    assert response.content == STREAM_PAYLOAD
    assert supervisor.count("ffmpeg") == 0


@pytest.mark.asyncio
async def test_stream_with_bogus_filter_is_not_an_error(client, supervisor):
    response = await client.get("/stream", params={"query": "test", "filter": "bogus_filter_name"})

    assert response.status_code == 200
    assert supervisor.count("ffmpeg") == 0


@pytest.mark.asyncio
async def test_transcoder_receives_no_af_for_bogus_filter(client, supervisor):
    response = await client.get(
        "/stream", params={"query": "test", "filter": "bogus_filter_name", "format": "mp3"}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("audio/mpeg")
    header, _, body = response.content.partition(b"\n")
    args = json.loads(header[len(b"FFMPEG "):])
    assert "-af" not in args
    assert body == STREAM_PAYLOAD


@pytest.mark.asyncio
async def test_stream_with_preset_filter(client, supervisor):
    response = await client.get("/stream", params={"query": "test", "filter": "nightcore", "start": "10"})

    assert response.status_code == 200
    command = supervisor.commands_for("ffmpeg")[0]
    assert command[command.index("-af") + 1] == "asetrate=48000*1.1,atempo=1.1,aresample=48000"
    assert command[command.index("-ss") + 1] == "10"


@pytest.mark.asyncio
async def test_stream_failure_before_first_byte(client):
    response = await client.get("/stream", params={"query": "crash"})

    assert response.status_code == 502
    assert "Requested format is not available" in response.json()["detail"]


@pytest.mark.asyncio
async def test_health_reports_dependencies(client):
    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["dependencies"]["ytdlp"]["version"] == "2024.08.06"
    assert body["dependencies"]["ffmpeg"]["available"] is True
    assert body["active_sessions"] == 0
    assert "uptime" in body


@pytest.mark.asyncio
async def test_health_unhealthy_without_extractor(supervisor):
    from httpx import ASGITransport, AsyncClient

    from audio_source.main import app

    broken = build_test_pipeline(supervisor, ytdlp=["no-such-ytdlp-binary"])
    previous = app.state.pipeline
    app.state.pipeline = broken
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
            response = await http.get("/health")
    finally:
        app.state.pipeline = previous

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_cache_administration(client):
    await client.get("/info", params={"query": "Never Gonna Give You Up"})

    stats = (await client.get("/api/cache")).json()
    assert stats["enabled"] is True
    assert stats["size"] == 1
    assert stats["top_entries"][0]["key"] == "never gonna give you up"

    missing = await client.delete("/api/cache/otra cosa")
    assert missing.status_code == 404

    deleted = await client.delete("/api/cache/never gonna give you up")
    assert deleted.status_code == 200

    await client.get("/info", params={"query": "lofi"})
    cleared = (await client.delete("/api/cache")).json()
    assert cleared == {"status": "cleared", "removed": 1}


@pytest.mark.asyncio
async def test_usage_stats_count_lookups_and_errors(client):
    await client.get("/info", params={"query": "lofi"})
    await client.get("/info", params={"query": "lofi"})
    await client.get("/info", params={"query": "nothing"})

    response = await client.get("/api/stats/usage", params={"days": 1})

    assert response.status_code == 200
    totals = response.json()["totals"]
    assert totals["metadata_lookups"] == 2
    assert totals["cache_hits"] == 1
    assert totals["errors"] == 1


@pytest.mark.asyncio
async def test_client_disconnect_kills_every_process(pipeline, supervisor):
    import asyncio

    from audio_source.main import app

    first_body = asyncio.Event()
    sessions = []

    async def receive():
        await first_body.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.start":
            assert message["status"] == 200
            sessions.extend(pipeline.sessions.values())
        elif message["type"] == "http.response.body" and message.get("body"):
            first_body.set()

    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.3"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/stream",
        "raw_path": b"/stream",
        "root_path": "",
        "query_string": b"query=long&format=mp3",
        "headers": [(b"host", b"testserver")],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }

    previous = app.state.pipeline
    app.state.pipeline = pipeline
    try:
        await asyncio.wait_for(app(scope, receive, send), timeout=10)
        assert len(sessions) == 1
        await asyncio.wait_for(sessions[0].close(), timeout=10)
    finally:
        app.state.pipeline = previous
        await pipeline.close_all("test_teardown")

    assert sessions[0].close_reason in ("consumer_closed", "response_closed")
    assert supervisor.count("yt-dlp") == 1
    assert supervisor.count("ffmpeg") == 1
    assert all(process.returncode is not None for process in supervisor.processes)
    assert pipeline.active_sessions == 0
