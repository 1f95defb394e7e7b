import json
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from audio_source import settings
from audio_source.errors import MetadataParseError, NoResultsFound, ValidationError
from audio_source.processes import ProcessSupervisor

logger = logging.getLogger(__name__)


class TrackSource(str, Enum):
    YOUTUBE = "youtube"
    SOUNDCLOUD = "soundcloud"
    VIMEO = "vimeo"
    BANDCAMP = "bandcamp"
    OTHER = "other"


_EXTRACTOR_SOURCES = {
    "youtube": TrackSource.YOUTUBE,
    "youtubesearch": TrackSource.YOUTUBE,
    "soundcloud": TrackSource.SOUNDCLOUD,
    "vimeo": TrackSource.VIMEO,
    "bandcamp": TrackSource.BANDCAMP,
}


@dataclass(frozen=True)
class TrackDescriptor:
    title: str
    url: str
    duration_seconds: float
    thumbnail_url: Optional[str]
    author: str
    source: TrackSource = TrackSource.YOUTUBE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackDescriptor":
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise MetadataParseError("La entrada de metadatos no tiene título")
        try:
            source = TrackSource(data.get("source") or TrackSource.OTHER.value)
        except ValueError:
            source = TrackSource.OTHER
        return cls(
            title=title,
            url=str(data.get("url") or ""),
            duration_seconds=_as_duration(data.get("duration_seconds")),
            thumbnail_url=data.get("thumbnail_url") or None,
            author=str(data.get("author") or "Unknown"),
            source=source,
        )

    def info_payload(self) -> Dict[str, Any]:
        """Respuesta pública de /info y /metadata."""
        return {
            "title": self.title,
            "url": self.url,
            "durationSec": self.duration_seconds,
            "thumbnail": self.thumbnail_url,
            "uploader": self.author,
            "source": self.source.value,
        }


def _as_duration(value: Any) -> float:
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return 0.0
    if duration != duration or duration < 0:
        return 0.0
    return duration


FORBIDDEN_QUERY_CHARACTERS = frozenset(";&|$><`")


def normalize_query(query: str) -> str:
    return " ".join((query or "").split()).lower()


def sanitize_query(query: str) -> str:
    """Elimina metacaracteres de shell aunque los procesos nunca usen shell."""
    return "".join(ch for ch in query if ch not in FORBIDDEN_QUERY_CHARACTERS).strip()


def validate_query(query: Optional[str]) -> str:
    cleaned = (query or "").strip()
    if not cleaned:
        raise ValidationError("El parámetro query es obligatorio", {"field": "query"})
    if len(cleaned) > settings.MAX_QUERY_LENGTH:
        raise ValidationError(
            f"La consulta supera los {settings.MAX_QUERY_LENGTH} caracteres",
            {"field": "query", "max_length": settings.MAX_QUERY_LENGTH},
        )
    if ".." in cleaned or cleaned.startswith("/"):
        raise ValidationError("La consulta contiene una ruta no permitida", {"field": "query"})
    found = sorted({ch for ch in cleaned if ch in FORBIDDEN_QUERY_CHARACTERS})
    if found:
        raise ValidationError(
            "La consulta contiene caracteres no permitidos",
            {"field": "query", "characters": "".join(found)},
        )
    return cleaned


def validate_start(raw: Optional[str]) -> int:
    if raw is None or str(raw).strip() == "":
        return 0
    try:
        start = int(str(raw).strip())
    except ValueError:
        raise ValidationError("start debe ser un número entero de segundos", {"field": "start"}) from None
    if start < 0 or start > settings.MAX_START_SECONDS:
        raise ValidationError(
            f"start debe estar entre 0 y {settings.MAX_START_SECONDS}",
            {"field": "start"},
        )
    return start


def is_url(query: str) -> bool:
    lowered = query.strip().lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


def build_extractor_input(query: str) -> str:
    # Las URL se pasan tal cual; el texto libre se busca y solo se toma el
    # primer resultado, nunca una lista completa.
    cleaned = query.strip()
    if is_url(cleaned):
        return cleaned
    return f"ytsearch1:{cleaned}"


def build_extractor_options() -> List[str]:
    """Opciones comunes a todas las invocaciones del extractor."""
    options = [
        "--no-playlist",
        "--no-warnings",
        "--quiet",
        "--socket-timeout",
        str(settings.YTDLP_SOCKET_TIMEOUT),
        "--extractor-retries",
        str(settings.YTDLP_EXTRACTOR_RETRIES),
        "--user-agent",
        settings.YTDLP_USER_AGENT,
    ]
    for extractor_arg in settings.YTDLP_EXTRACTOR_ARGS:
        options.extend(["--extractor-args", extractor_arg])
    if settings.YTDLP_PROXY:
        options.extend(["--proxy", settings.YTDLP_PROXY])
    if settings.YTDLP_COOKIES_FILE:
        options.extend(["--cookies", settings.YTDLP_COOKIES_FILE])
    return options


def _thumbnail_from(info: Dict[str, Any]) -> Optional[str]:
    thumbnail = info.get("thumbnail")
    if isinstance(thumbnail, str) and thumbnail:
        return thumbnail
    thumbnails = info.get("thumbnails") or []
    if isinstance(thumbnails, list) and thumbnails:
        last = thumbnails[-1]
        if isinstance(last, dict) and last.get("url"):
            return str(last["url"])
    return None


def _source_from(info: Dict[str, Any]) -> TrackSource:
    key = str(info.get("extractor_key") or info.get("extractor") or "").lower()
    key = key.split(":", 1)[0]
    return _EXTRACTOR_SOURCES.get(key, TrackSource.OTHER)


def descriptor_from_info(info: Dict[str, Any], fallback_url: str = "") -> TrackDescriptor:
    title = info.get("title")
    if not isinstance(title, str) or not title.strip():
        raise MetadataParseError("El extractor devolvió un resultado sin título")
    return TrackDescriptor(
        title=title.strip(),
        url=str(info.get("webpage_url") or info.get("original_url") or info.get("url") or fallback_url),
        duration_seconds=_as_duration(info.get("duration")),
        thumbnail_url=_thumbnail_from(info),
        author=str(info.get("uploader") or info.get("channel") or "Unknown"),
        source=_source_from(info),
    )


def parse_extractor_output(raw: bytes) -> Optional[Dict[str, Any]]:
    """Devuelve la primera entrada o el objeto raíz; ``None`` si no hay resultados."""
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        # Con -j yt-dlp imprime un objeto por línea; nos quedamos con el primero.
        first_line = text.splitlines()[0]
        try:
            data = json.loads(first_line)
        except json.JSONDecodeError as exc:
            raise MetadataParseError("La salida del extractor no es JSON válido") from exc
    if not isinstance(data, dict):
        raise MetadataParseError("La salida del extractor no es un objeto JSON")
    if "entries" in data:
        entries = [entry for entry in data.get("entries") or [] if isinstance(entry, dict)]
        return entries[0] if entries else None
    return data


class MetadataResolver:
    """Resuelve una consulta a un ``TrackDescriptor`` invocando el extractor."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        command: Optional[Sequence[str]] = None,
        timeout: float = settings.YTDLP_TIMEOUT,
        audio_format: str = settings.YTDLP_AUDIO_FORMAT,
    ) -> None:
        self.supervisor = supervisor
        self.command = list(command or settings.YTDLP_COMMAND)
        self.timeout = timeout
        self.audio_format = audio_format

    def build_args(self, query: str) -> List[str]:
        return [
            *self.command,
            "--dump-single-json",
            "--skip-download",
            "--no-write-thumbnail",
            "--no-write-description",
            "--no-write-info-json",
            "-f",
            self.audio_format,
            *build_extractor_options(),
            "--",
            build_extractor_input(query),
        ]

    async def resolve(self, query: str) -> TrackDescriptor:
        managed = await self.supervisor.spawn(
            self.build_args(query),
            start_timeout=self.timeout,
            overall_timeout=self.timeout,
            name="yt-dlp",
        )
        try:
            output = await managed.collect()
        finally:
            await managed.terminate()

        info = parse_extractor_output(output)
        if info is None:
            raise NoResultsFound(f"No se encontraron resultados para: {query}")
        descriptor = descriptor_from_info(info, fallback_url=query if is_url(query) else "")
        logger.debug("Metadatos resueltos: %s", descriptor.title, extra={"query": query})
        return descriptor
