"""Fixtures compartidas.

Los programas externos se sustituyen por scripts de Python en ``tests/fakes``
que se lanzan con el ``ProcessSupervisor`` real, así que la fontanería de
procesos se ejercita de punta a punta.
"""

import sys
from pathlib import Path
from typing import AsyncIterator, List, Optional, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from audio_source import settings
from audio_source.cache import MetadataCache
from audio_source.pipeline import AudioPipeline
from audio_source.processes import ManagedProcess, ProcessSupervisor
from audio_source.transcoder import StreamTranscoder

FAKES_DIR = Path(__file__).parent / "fakes"
FAKE_YTDLP = [sys.executable, str(FAKES_DIR / "fake_ytdlp.py")]
FAKE_FFMPEG = [sys.executable, str(FAKES_DIR / "fake_ffmpeg.py")]


class RecordingSupervisor(ProcessSupervisor):
    """Supervisor real que además apunta cada comando lanzado."""

    def __init__(self, **kwargs) -> None:
        kwargs.setdefault("kill_grace", 1.0)
        super().__init__(**kwargs)
        self.spawned: List[List[str]] = []
        self.names: List[str] = []
        self.processes: List[ManagedProcess] = []

    async def spawn(self, command: Sequence[str], *, name: Optional[str] = None, **kwargs) -> ManagedProcess:
        self.spawned.append(list(command))
        self.names.append(name or "")
        managed = await super().spawn(command, name=name, **kwargs)
        self.processes.append(managed)
        return managed

    def count(self, name: str) -> int:
        return self.names.count(name)

    def commands_for(self, name: str) -> List[List[str]]:
        return [command for command, label in zip(self.spawned, self.names) if label == name]


def build_test_pipeline(
    supervisor: ProcessSupervisor,
    *,
    cache: Optional[MetadataCache] = None,
    ytdlp: Sequence[str] = tuple(FAKE_YTDLP),
    ffmpeg: Sequence[str] = tuple(FAKE_FFMPEG),
    **kwargs,
) -> AudioPipeline:
    kwargs.setdefault("extractor_timeout", 10.0)
    kwargs.setdefault("request_timeout", 15.0)
    kwargs.setdefault("stream_timeout", 0)
    return AudioPipeline(
        supervisor,
        cache=cache,
        extractor_command=list(ytdlp),
        transcoder=StreamTranscoder(supervisor, command=list(ffmpeg), start_timeout=10.0),
        **kwargs,
    )


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def usage_log(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "usage_log.jsonl"
    monkeypatch.setattr(settings, "USAGE_LOG_PATH", path)
    return path


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def supervisor() -> RecordingSupervisor:
    return RecordingSupervisor()


@pytest.fixture()
def cache(clock) -> MetadataCache:
    return MetadataCache(ttl=600, max_size=100, clock=clock)


@pytest.fixture()
def pipeline(supervisor, cache) -> AudioPipeline:
    return build_test_pipeline(supervisor, cache=cache)


@pytest_asyncio.fixture()
async def client(pipeline) -> AsyncIterator[AsyncClient]:
    from audio_source.main import app

    previous = app.state.pipeline
    app.state.pipeline = pipeline
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://testserver"
        ) as http_client:
            yield http_client
    finally:
        await pipeline.close_all("test_teardown")
        app.state.pipeline = previous
