"""Registro de uso en JSON lines y su agregación diaria."""

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from audio_source import settings

logger = logging.getLogger(__name__)


def _usage_path(path: Optional[Path]) -> Path:
    return Path(path) if path is not None else settings.USAGE_LOG_PATH


def _append_event(event: Dict[str, Any], path: Optional[Path] = None) -> None:
    target = _usage_path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, ensure_ascii=False) + "\n")
    except OSError as exc:
        # El registro es best-effort: no debe impedir servir audio.
        logger.warning("No se pudo registrar el uso: %s", exc)


def record_stream_event(
    output_format: str,
    filter_name: str,
    *,
    transcoded: bool,
    size_bytes: int = 0,
    duration_ms: Optional[float] = None,
    reason: Optional[str] = None,
    source: str = "api",
    path: Optional[Path] = None,
) -> None:
    event: Dict[str, Any] = {
        "timestamp": time.time(),
        "category": "stream",
        "output_format": output_format,
        "filter": filter_name,
        "transcoded": bool(transcoded),
        "size_bytes": int(size_bytes),
        "source": source if source in {"api", "bot"} else "other",
    }
    if duration_ms is not None:
        event["duration_ms"] = round(float(duration_ms), 1)
    if reason:
        event["reason"] = reason
    _append_event(event, path)


def record_metadata_event(cache_hit: bool, source: str = "api", *, path: Optional[Path] = None) -> None:
    _append_event(
        {
            "timestamp": time.time(),
            "category": "metadata",
            "cache_hit": bool(cache_hit),
            "source": source if source in {"api", "bot"} else "other",
        },
        path,
    )


def record_error_event(error_type: str, source: str = "api", *, path: Optional[Path] = None) -> None:
    """Registrar un evento de error para estadísticas de uso."""
    _append_event(
        {
            "timestamp": time.time(),
            "category": "error",
            "error_type": error_type,
            "source": source if source in {"api", "bot"} else "other",
        },
        path,
    )


def _load_events(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    events = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict):
                events.append(event)
    return events


def summarize_usage(days: int = 7, *, path: Optional[Path] = None) -> Dict[str, Any]:
    days = max(1, days)
    events = _load_events(_usage_path(path))

    now = datetime.now(tz=timezone.utc)
    first_day = (now - timedelta(days=days - 1)).date()
    daily: Dict[str, Dict[str, int]] = {}
    for idx in range(days):
        day = first_day + timedelta(days=idx)
        daily[day.isoformat()] = {
            "streams": 0,
            "transcoded": 0,
            "metadata_lookups": 0,
            "cache_hits": 0,
            "errors": 0,
            "bytes": 0,
        }

    format_totals: Dict[str, int] = {}
    filter_totals: Dict[str, int] = {}
    error_counts: Dict[str, int] = {}
    for event in events:
        timestamp = event.get("timestamp")
        if timestamp is None:
            continue
        day_key = datetime.fromtimestamp(float(timestamp), tz=timezone.utc).date().isoformat()
        bucket = daily.get(day_key)
        if bucket is None:
            continue
        category = event.get("category")
        if category == "error":
            bucket["errors"] += 1
            error_type = event.get("error_type") or "desconocido"
            error_counts[error_type] = error_counts.get(error_type, 0) + 1
        elif category == "metadata":
            bucket["metadata_lookups"] += 1
            if event.get("cache_hit"):
                bucket["cache_hits"] += 1
        elif category == "stream":
            bucket["streams"] += 1
            bucket["bytes"] += int(event.get("size_bytes") or 0)
            if event.get("transcoded"):
                bucket["transcoded"] += 1
            label = event.get("output_format") or "desconocido"
            format_totals[label] = format_totals.get(label, 0) + 1
            filter_name = event.get("filter") or "none"
            filter_totals[filter_name] = filter_totals.get(filter_name, 0) + 1

    totals = {key: sum(bucket[key] for bucket in daily.values()) for key in next(iter(daily.values()))}
    lookups = totals["metadata_lookups"]
    return {
        "days": days,
        "totals": totals,
        "cache_hit_rate": round(totals["cache_hits"] / lookups, 3) if lookups else 0.0,
        "daily": [{"date": day, **values} for day, values in daily.items()],
        "formats": format_totals,
        "filters": filter_totals,
        "errors": error_counts,
    }
