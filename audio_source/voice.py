"""Sumidero de voz: convierte una sesión PCM en tramas para discord.py."""

import asyncio
import logging
import queue
import threading
from typing import Optional

import discord

from audio_source.session import PipelineSession

logger = logging.getLogger(__name__)

# 20 ms de PCM s16le a 48 kHz estéreo.
FRAME_SIZE = 3840


class VoiceAudioSource(discord.AudioSource):
    """Fuente de audio que el reproductor de discord.py lee desde su propio hilo.

    La sesión se consume en el bucle de eventos y las tramas cruzan al hilo
    del reproductor por una cola acotada. Cuando el reproductor termina o se
    detiene, ``cleanup`` cierra la sesión y con ella los procesos.
    """

    def __init__(
        self,
        session: PipelineSession,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        max_frames: int = 250,
    ) -> None:
        self.session = session
        self.loop = loop or asyncio.get_running_loop()
        self._frames: "queue.Queue[bytes]" = queue.Queue(maxsize=max_frames)
        self._finished = threading.Event()
        # El hilo del reproductor avisa al bucle cada vez que libera hueco.
        self._space = asyncio.Event()
        self._feeder = self.loop.create_task(self._feed())
        session.add_task(self._feeder)

    async def _feed(self) -> None:
        buffer = bytearray()
        try:
            async for chunk in self.session.iter_bytes():
                buffer.extend(chunk)
                while len(buffer) >= FRAME_SIZE:
                    await self._put(bytes(buffer[:FRAME_SIZE]))
                    del buffer[:FRAME_SIZE]
            if buffer:
                await self._put(bytes(buffer).ljust(FRAME_SIZE, b"\x00"))
        finally:
            self._finished.set()

    async def _put(self, frame: bytes) -> None:
        while True:
            try:
                self._frames.put_nowait(frame)
                return
            except queue.Full:
                self._space.clear()
                if self._frames.full():
                    await self._space.wait()

    def _notify_space(self) -> None:
        if not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self._space.set)

    def read(self) -> bytes:
        while True:
            try:
                frame = self._frames.get(timeout=0.1)
            except queue.Empty:
                if self._finished.is_set() and self._frames.empty():
                    return b""
                continue
            self._notify_space()
            return frame

    def is_opus(self) -> bool:
        return False

    def cleanup(self) -> None:
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.session.request_close, "voice_closed")
