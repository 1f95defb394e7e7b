import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from audio_source import settings
from audio_source.errors import ValidationError
from audio_source.filters import NO_FILTER, FilterSpec
from audio_source.processes import ManagedProcess, ProcessSupervisor
from audio_source.session import PipelineSession

logger = logging.getLogger(__name__)

NATIVE_FORMAT = "webm"
AUDIO_BITRATE = "128k"

OUTPUT_FORMATS: Dict[str, Dict[str, Any]] = {
    "webm": {
        "description": "Opus en contenedor WebM (formato nativo del extractor)",
        "media_type": "audio/webm",
        "args": ["-f", "webm", "-acodec", "libopus", "-b:a", AUDIO_BITRATE],
    },
    "mp3": {
        "description": "MP3 a 128 kbps",
        "media_type": "audio/mpeg",
        "args": ["-f", "mp3", "-acodec", "libmp3lame", "-b:a", AUDIO_BITRATE],
    },
    "pcm": {
        "description": "PCM s16le 48 kHz estéreo para conexiones de voz",
        "media_type": "application/octet-stream",
        "args": ["-f", "s16le", "-ar", "48000", "-ac", "2"],
    },
}


def resolve_output_format(output_format: str) -> Dict[str, Any]:
    preset = OUTPUT_FORMATS.get((output_format or "").strip().lower())
    if preset is None:
        raise ValidationError(
            f"Formato no soportado: {output_format}",
            {"field": "format", "allowed": sorted(OUTPUT_FORMATS)},
        )
    return preset


def needs_transcode(start: int, filter_spec: FilterSpec, output_format: str) -> bool:
    return start > 0 or not filter_spec.is_noop or output_format != NATIVE_FORMAT


def build_transcoder_args(
    start: int = 0,
    filter_spec: FilterSpec = NO_FILTER,
    output_format: str = NATIVE_FORMAT,
) -> List[str]:
    preset = resolve_output_format(output_format)
    args = ["-loglevel", "error", "-hide_banner", "-nostats"]
    if start > 0:
        # Antes de -i para que la búsqueda sea rápida.
        args.extend(["-ss", str(start)])
    args.extend(["-i", "pipe:0"])
    graph = filter_spec.filter_graph()
    if graph:
        args.extend(["-af", graph])
    args.append("-vn")
    args.extend(preset["args"])
    args.append("pipe:1")
    return args


class StreamTranscoder:
    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        command: Optional[Sequence[str]] = None,
        start_timeout: float = settings.TRANSCODE_START_TIMEOUT,
    ) -> None:
        self.supervisor = supervisor
        self.command = list(command or [settings.FFMPEG_BINARY])
        self.start_timeout = start_timeout

    async def transcode(
        self,
        source: AsyncIterator[bytes],
        session: PipelineSession,
        *,
        start: int = 0,
        filter_spec: FilterSpec = NO_FILTER,
        output_format: str = NATIVE_FORMAT,
    ) -> ManagedProcess:
        """Lanza ffmpeg, le inyecta ``source`` por stdin y devuelve el proceso.

        El proceso y la tarea de bombeo quedan registrados en ``session``.
        """
        command = [*self.command, *build_transcoder_args(start, filter_spec, output_format)]
        managed = await self.supervisor.spawn(
            command, start_timeout=self.start_timeout, stdin=True, name="ffmpeg"
        )
        session.add_process(managed)
        pump = asyncio.get_running_loop().create_task(self._pump(source, managed, session))
        session.add_task(pump)
        logger.debug(
            "Transcodificando (start=%s, filtro=%s, formato=%s)",
            start,
            filter_spec,
            output_format,
            extra=session.log_extra,
        )
        return managed

    async def _pump(
        self, source: AsyncIterator[bytes], managed: ManagedProcess, session: PipelineSession
    ) -> None:
        stdin = managed.stdin
        assert stdin is not None
        try:
            async for chunk in source:
                stdin.write(chunk)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # ffmpeg cerró su entrada; su salida decide cómo acaba la sesión.
            logger.debug("ffmpeg cerró stdin antes de tiempo", extra=session.log_extra)
        except Exception as exc:
            session.report_error(exc, "extractor")
        finally:
            # Medio cierre: ffmpeg ve EOF y vacía lo que tenga pendiente.
            if not stdin.is_closing():
                stdin.close()
