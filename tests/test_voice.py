import asyncio

import pytest

from audio_source.voice import FRAME_SIZE, VoiceAudioSource


class FakeSession:
    def __init__(self, chunks) -> None:
        self._chunks = chunks
        self.tasks = []
        self.close_reasons = []

    def add_task(self, task):
        self.tasks.append(task)
        return task

    def request_close(self, reason):
        self.close_reasons.append(reason)

    async def iter_bytes(self):
        for chunk in self._chunks:
            yield chunk
            await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_pcm_is_cut_into_20ms_frames():
    session = FakeSession([b"\x01" * 5000, b"\x02" * 3000])
    source = VoiceAudioSource(session)
    await source._feeder

    frames = [source.read() for _ in range(3)]

    assert [len(frame) for frame in frames] == [FRAME_SIZE] * 3
    assert frames[2].endswith(b"\x00")
    assert source.read() == b""
    assert session.tasks == [source._feeder]


@pytest.mark.asyncio
async def test_source_is_pcm_not_opus():
    source = VoiceAudioSource(FakeSession([]))
    await source._feeder
    assert source.is_opus() is False
    assert source.read() == b""


@pytest.mark.asyncio
async def test_cleanup_closes_session_on_the_loop():
    session = FakeSession([b"\x00" * FRAME_SIZE])
    source = VoiceAudioSource(session)
    await source._feeder

    source.cleanup()
    await asyncio.sleep(0)

    assert session.close_reasons == ["voice_closed"]


@pytest.mark.asyncio
async def test_full_queue_waits_for_the_player_thread():
    session = FakeSession([b"\x01" * (FRAME_SIZE * 3)])
    source = VoiceAudioSource(session, max_frames=1)
    await asyncio.sleep(0.05)
    assert not source._feeder.done()

    loop = asyncio.get_running_loop()
    frames = [await loop.run_in_executor(None, source.read) for _ in range(3)]
    await asyncio.wait_for(source._feeder, timeout=5)

    assert frames == [b"\x01" * FRAME_SIZE] * 3
    assert source.read() == b""
