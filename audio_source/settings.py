import json
import os
import shutil
import sys
from pathlib import Path
from typing import List

import certifi
from dotenv import load_dotenv

# Los procesos hijos (yt-dlp, ffmpeg) heredan el entorno: forzamos el bundle de
# certifi para que no dependan de los certificados del sistema, que pueden
# faltar en contenedores mínimos.
CERT_BUNDLE = certifi.where()
os.environ["SSL_CERT_FILE"] = CERT_BUNDLE
os.environ["REQUESTS_CA_BUNDLE"] = CERT_BUNDLE

# Variables definidas en un .env local tienen prioridad sobre los valores por
# defecto, sin pisar las que ya vengan del entorno.
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_extractor_command() -> List[str]:
    configured = os.getenv("YTDLP_PATH")
    if configured:
        return [configured]
    binary = shutil.which("yt-dlp")
    if binary:
        return [binary]
    # El paquete yt-dlp instalado siempre expone el módulo ejecutable.
    return [sys.executable, "-m", "yt_dlp"]


APP_TITLE = "Audio Source · Audio Streaming Service"
APP_VERSION = "1.0.0"
APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

# Extractor (yt-dlp)
YTDLP_COMMAND: List[str] = _default_extractor_command()
YTDLP_TIMEOUT = float(os.getenv("YTDLP_TIMEOUT", "30"))
YTDLP_SOCKET_TIMEOUT = int(os.getenv("YTDLP_SOCKET_TIMEOUT", "10"))
YTDLP_EXTRACTOR_RETRIES = int(os.getenv("YTDLP_EXTRACTOR_RETRIES", "3"))
YTDLP_AUDIO_FORMAT = os.getenv(
    "YTDLP_AUDIO_FORMAT", "251/140/bestaudio[ext=m4a]/bestaudio"
)
YTDLP_PROXY = os.getenv("YTDLP_PROXY")
YTDLP_COOKIES_FILE = os.getenv("YTDLP_COOKIES_FILE")
YTDLP_USER_AGENT = os.getenv(
    "YTDLP_USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
)
_raw_extractor_args = os.getenv("YTDLP_EXTRACTOR_ARGS")
if _raw_extractor_args:
    try:
        _parsed_extractor_args = json.loads(_raw_extractor_args)
    except json.JSONDecodeError:
        _parsed_extractor_args = {"youtube": [_raw_extractor_args]}
else:
    _parsed_extractor_args = {"youtube": ["player_client=android"]}
# Formato de línea de comandos: "<extractor>:<arg>;<arg>"
YTDLP_EXTRACTOR_ARGS: List[str] = [
    f"{name}:{';'.join(values if isinstance(values, list) else [str(values)])}"
    for name, values in _parsed_extractor_args.items()
]

# Transcodificador (ffmpeg)
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
TRANSCODE_START_TIMEOUT = float(os.getenv("TRANSCODE_START_TIMEOUT", "30"))

# Supervisión de procesos
PROCESS_KILL_GRACE = float(os.getenv("PROCESS_KILL_GRACE", "5"))
STDERR_LIMIT_BYTES = int(os.getenv("STDERR_LIMIT_BYTES", str(64 * 1024)))
STREAM_CHUNK_SIZE = int(os.getenv("STREAM_CHUNK_SIZE", str(64 * 1024)))

# Caché de metadatos
CACHE_ENABLED = _env_bool("CACHE_ENABLED", True)
CACHE_TTL_SECONDS = float(os.getenv("CACHE_TTL_SECONDS", "600"))
CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "1000"))
CACHE_SWEEP_INTERVAL = float(os.getenv("CACHE_SWEEP_INTERVAL", "60"))
_cache_db = os.getenv("CACHE_DB_PATH")
CACHE_DB_PATH = Path(_cache_db) if _cache_db else None

# Tiempos límite de petición
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "120"))
STREAM_TIMEOUT = float(os.getenv("STREAM_TIMEOUT", "7200"))
HEALTH_CHECK_TIMEOUT = float(os.getenv("HEALTH_CHECK_TIMEOUT", "5"))

# Validación de entrada
MAX_QUERY_LENGTH = int(os.getenv("MAX_QUERY_LENGTH", "500"))
MAX_START_SECONDS = int(os.getenv("MAX_START_SECONDS", "86400"))

USAGE_LOG_PATH = Path(os.getenv("USAGE_LOG_PATH", "data/usage_log.jsonl"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json" if APP_ENV in {"production", "prod", "staging"} else "text")
