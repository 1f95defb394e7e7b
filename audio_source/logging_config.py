"""Configuración de logging: JSON en producción, texto legible en desarrollo."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from audio_source import settings

# Campos extra que los módulos adjuntan con ``extra={...}``.
EXTRA_FIELDS = (
    "session_id",
    "query",
    "pid",
    "program",
    "returncode",
    "reason",
    "path",
    "method",
    "status_code",
    "duration_ms",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)
        return json.dumps(log_data, ensure_ascii=False, default=str)


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    root_logger = logging.getLogger()
    resolved_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    root_logger.setLevel(resolved_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved_level)
    if (log_format or settings.LOG_FORMAT).lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root_logger.addHandler(handler)

    # Menos ruido de librerías de terceros
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("discord").setLevel(logging.WARNING)
