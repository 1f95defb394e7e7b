"""Orquestación de una petición de audio.

``stream_audio`` lanza el extractor en modo streaming, decide si hace falta
ffmpeg y devuelve una ``PipelineSession`` lista para entregar bytes. Solo
vuelve cuando ya existe el primer bloque de la salida final: cualquier fallo
anterior llega al llamador como error tipado, y cualquier fallo posterior
solo puede cortar el flujo.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from audio_source import settings
from audio_source.cache import MetadataCache
from audio_source.errors import AudioSourceError, RequestTimeoutError, ValidationError
from audio_source.filters import NO_FILTER, FilterSpec
from audio_source.metadata import (
    MetadataResolver,
    TrackDescriptor,
    build_extractor_input,
    build_extractor_options,
    normalize_query,
    sanitize_query,
)
from audio_source.processes import ProcessSupervisor
from audio_source.session import PipelineSession
from audio_source.transcoder import (
    NATIVE_FORMAT,
    StreamTranscoder,
    needs_transcode,
    resolve_output_format,
)

logger = logging.getLogger(__name__)


class AudioPipeline:
    def __init__(
        self,
        supervisor: Optional[ProcessSupervisor] = None,
        *,
        cache: Optional[MetadataCache] = None,
        resolver: Optional[MetadataResolver] = None,
        transcoder: Optional[StreamTranscoder] = None,
        extractor_command: Optional[Sequence[str]] = None,
        audio_format: str = settings.YTDLP_AUDIO_FORMAT,
        extractor_timeout: float = settings.YTDLP_TIMEOUT,
        request_timeout: float = settings.REQUEST_TIMEOUT,
        stream_timeout: float = settings.STREAM_TIMEOUT,
    ) -> None:
        self.supervisor = supervisor or ProcessSupervisor()
        self.cache = cache
        self.extractor_command = list(extractor_command or settings.YTDLP_COMMAND)
        self.audio_format = audio_format
        self.extractor_timeout = extractor_timeout
        self.request_timeout = request_timeout
        self.stream_timeout = stream_timeout
        self.resolver = resolver or MetadataResolver(
            self.supervisor,
            command=self.extractor_command,
            timeout=extractor_timeout,
            audio_format=audio_format,
        )
        self.transcoder = transcoder or StreamTranscoder(self.supervisor)
        self.sessions: Dict[str, PipelineSession] = {}

    # ------------------------------------------------------------------
    # Metadatos
    # ------------------------------------------------------------------
    async def lookup_metadata(self, query: str) -> Tuple[TrackDescriptor, bool]:
        """Devuelve el descriptor y si salió de la caché."""
        cleaned = sanitize_query(query)
        if not cleaned:
            raise ValidationError("La consulta está vacía tras limpiarla", {"field": "query"})
        key = normalize_query(cleaned)
        if self.cache is not None:
            cached = await self.cache.aget(key)
            if cached is not None:
                return cached, True

        try:
            descriptor = await asyncio.wait_for(
                self.resolver.resolve(cleaned), timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"La consulta de metadatos superó {self.request_timeout:g}s"
            ) from None

        if self.cache is not None:
            await self.cache.aput(key, descriptor)
        return descriptor, False

    async def fetch_metadata(self, query: str) -> TrackDescriptor:
        descriptor, _ = await self.lookup_metadata(query)
        return descriptor

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    def build_stream_args(self, query: str) -> List[str]:
        return [
            *self.extractor_command,
            "-f",
            self.audio_format,
            "--no-cache-dir",
            "--skip-unavailable-fragments",
            *build_extractor_options(),
            "-o",
            "-",
            "--",
            build_extractor_input(query),
        ]

    async def stream_audio(
        self,
        query: str,
        *,
        start: int = 0,
        filter_spec: FilterSpec = NO_FILTER,
        output_format: str = NATIVE_FORMAT,
    ) -> PipelineSession:
        preset = resolve_output_format(output_format)
        cleaned = sanitize_query(query)
        if not cleaned:
            raise ValidationError("La consulta está vacía tras limpiarla", {"field": "query"})
        if start < 0:
            raise ValidationError("start no puede ser negativo", {"field": "start"})

        session = PipelineSession(
            cleaned, output_format=output_format, media_type=preset["media_type"]
        )
        self.sessions[session.id] = session
        session.add_close_callback(self._forget)
        began = time.monotonic()

        try:
            extractor = await self.supervisor.spawn(
                self.build_stream_args(cleaned),
                start_timeout=self.extractor_timeout,
                name="yt-dlp",
            )
            session.add_process(extractor)
            await extractor.first_chunk()

            output = extractor
            if needs_transcode(start, filter_spec, output_format):
                output = await self.transcoder.transcode(
                    extractor.chunks(),
                    session,
                    start=start,
                    filter_spec=filter_spec,
                    output_format=output_format,
                )
                await output.first_chunk()
            session.output = output
        except asyncio.CancelledError:
            session.request_close("cancelled")
            raise
        except Exception:
            await session.close("failed")
            raise

        session.arm_timeout(self.stream_timeout)
        logger.info(
            "Streaming iniciado (%d procesos, arranque %.2fs)",
            len(session.processes),
            time.monotonic() - began,
            extra=session.log_extra,
        )
        return session

    def _forget(self, session: PipelineSession) -> None:
        self.sessions.pop(session.id, None)

    @property
    def active_sessions(self) -> int:
        return len(self.sessions)

    async def close_all(self, reason: str = "shutdown") -> None:
        sessions = list(self.sessions.values())
        if not sessions:
            return
        logger.info("Cerrando %d sesiones activas", len(sessions))
        await asyncio.gather(
            *(session.close(reason) for session in sessions), return_exceptions=True
        )

    # ------------------------------------------------------------------
    # Salud
    # ------------------------------------------------------------------
    async def _probe(self, command: Sequence[str], name: str, timeout: float) -> Dict[str, Any]:
        try:
            output = await self.supervisor.run(command, timeout=timeout, name=name)
        except AudioSourceError as exc:
            return {"available": False, "version": None, "error": str(exc)}
        first_line = output.strip().splitlines()[0] if output.strip() else ""
        return {"available": True, "version": parse_version(first_line)}

    async def check_dependencies(
        self, timeout: float = settings.HEALTH_CHECK_TIMEOUT
    ) -> Dict[str, Dict[str, Any]]:
        ytdlp, ffmpeg = await asyncio.gather(
            self._probe([*self.extractor_command, "--version"], "yt-dlp", timeout),
            self._probe([*self.transcoder.command, "-version"], "ffmpeg", timeout),
        )
        return {"ytdlp": ytdlp, "ffmpeg": ffmpeg}


def parse_version(line: str) -> Optional[str]:
    # "ffmpeg version 6.1.1 Copyright ..." o simplemente "2024.08.06"
    if not line:
        return None
    parts = line.split()
    if len(parts) >= 3 and parts[1] == "version":
        return parts[2]
    return parts[0]


def overall_status(dependencies: Dict[str, Dict[str, Any]]) -> str:
    if not dependencies["ytdlp"]["available"]:
        return "unhealthy"
    if not dependencies["ffmpeg"]["available"]:
        return "degraded"
    return "healthy"
