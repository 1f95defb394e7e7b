import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse

from audio_source import settings
from audio_source.cache import MetadataCache, SqliteTrackStore
from audio_source.errors import AudioSourceError
from audio_source.filters import parse_filter
from audio_source.logging_config import configure_logging
from audio_source.metadata import validate_query, validate_start
from audio_source.pipeline import AudioPipeline, overall_status
from audio_source.session import PipelineSession
from audio_source.transcoder import NATIVE_FORMAT, needs_transcode, resolve_output_format
from audio_source.usage import (
    record_error_event,
    record_metadata_event,
    record_stream_event,
    summarize_usage,
)

logger = logging.getLogger(__name__)

STARTED_AT = time.time()


def build_pipeline() -> AudioPipeline:
    cache: Optional[MetadataCache] = None
    if settings.CACHE_ENABLED:
        store = SqliteTrackStore(settings.CACHE_DB_PATH) if settings.CACHE_DB_PATH else None
        cache = MetadataCache(settings.CACHE_TTL_SECONDS, settings.CACHE_MAX_SIZE, store=store)
    return AudioPipeline(cache=cache)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    pipeline: AudioPipeline = app.state.pipeline
    if pipeline.cache is not None:
        pipeline.cache.start_sweeper(settings.CACHE_SWEEP_INTERVAL)
    logger.info("Servicio de audio iniciado (entorno: %s)", settings.APP_ENV)
    try:
        yield
    finally:
        await pipeline.close_all("shutdown")
        if pipeline.cache is not None:
            await pipeline.cache.stop_sweeper()
        logger.info("Servicio de audio detenido")


app = FastAPI(title=settings.APP_TITLE, version=settings.APP_VERSION, lifespan=lifespan)
app.state.pipeline = build_pipeline()


def get_pipeline(request: Request) -> AudioPipeline:
    return request.app.state.pipeline


class SessionStreamingResponse(StreamingResponse):
    """Respuesta en streaming que cierra la sesión pase lo que pase con la conexión."""

    def __init__(self, session: PipelineSession, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(session.iter_bytes(), media_type=session.media_type, headers=headers)
        self.session = session

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.session.request_close("response_closed")


async def _fail(exc: AudioSourceError, error_type: str) -> HTTPException:
    await run_in_threadpool(record_error_event, error_type)
    return HTTPException(status_code=exc.status_code, detail=str(exc))


@app.get("/stream")
async def stream_endpoint(
    request: Request,
    query: Optional[str] = Query(None, description="Texto de búsqueda o URL"),
    start: Optional[str] = Query(None, description="Segundo inicial"),
    filter_name: Optional[str] = Query(None, alias="filter", description="Preset o pitch:N / speed:N"),
    format_name: str = Query(NATIVE_FORMAT, alias="format", description="webm o mp3"),
):
    pipeline = get_pipeline(request)
    try:
        cleaned = validate_query(query)
        start_seconds = validate_start(start)
        output_format = format_name.strip().lower()
        resolve_output_format(output_format)
        filter_spec = parse_filter(filter_name)
        session = await pipeline.stream_audio(
            cleaned,
            start=start_seconds,
            filter_spec=filter_spec,
            output_format=output_format,
        )
    except AudioSourceError as exc:
        raise await _fail(exc, "stream") from exc

    transcoded = needs_transcode(start_seconds, filter_spec, output_format)

    def _record(closed: PipelineSession) -> None:
        record_stream_event(
            output_format,
            str(filter_spec),
            transcoded=transcoded,
            size_bytes=closed.bytes_sent,
            duration_ms=(time.monotonic() - closed.started_at) * 1000,
            reason=closed.close_reason,
        )

    session.add_close_callback(_record)
    headers = {"Cache-Control": "no-store", "X-Session-Id": session.id}
    return SessionStreamingResponse(session, headers=headers)


@app.get("/info", response_class=JSONResponse)
async def info_endpoint(
    request: Request, query: Optional[str] = Query(None, description="Texto de búsqueda o URL")
) -> Dict[str, Any]:
    pipeline = get_pipeline(request)
    try:
        cleaned = validate_query(query)
        descriptor, cache_hit = await pipeline.lookup_metadata(cleaned)
    except AudioSourceError as exc:
        raise await _fail(exc, "metadata") from exc
    await run_in_threadpool(record_metadata_event, cache_hit)
    return descriptor.info_payload()


@app.get("/metadata", response_class=JSONResponse)
async def metadata_endpoint(
    request: Request, query: Optional[str] = Query(None, description="Texto de búsqueda o URL")
) -> Dict[str, Any]:
    return await info_endpoint(request, query)


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    pipeline = get_pipeline(request)
    began = time.monotonic()
    dependencies = await pipeline.check_dependencies(settings.HEALTH_CHECK_TIMEOUT)
    status = overall_status(dependencies)
    payload = {
        "status": status,
        "version": settings.APP_VERSION,
        "uptime": round(time.time() - STARTED_AT, 1),
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        "duration_ms": round((time.monotonic() - began) * 1000, 1),
        "active_sessions": pipeline.active_sessions,
        "dependencies": dependencies,
    }
    return JSONResponse(payload, status_code=503 if status == "unhealthy" else 200)


@app.get("/api/cache", response_class=JSONResponse)
async def cache_stats(request: Request) -> Dict[str, Any]:
    cache = get_pipeline(request).cache
    if cache is None:
        return {"enabled": False}
    return {"enabled": True, **cache.stats()}


@app.delete("/api/cache", response_class=JSONResponse)
async def clear_cache(request: Request) -> Dict[str, Any]:
    cache = get_pipeline(request).cache
    if cache is None:
        raise HTTPException(status_code=404, detail="La caché está desactivada")
    removed = cache.clear()
    return {"status": "cleared", "removed": removed}


@app.delete("/api/cache/{cache_key}", response_class=JSONResponse)
async def remove_cached_entry(request: Request, cache_key: str) -> Dict[str, Any]:
    cache = get_pipeline(request).cache
    if cache is None or not cache.delete(cache_key):
        raise HTTPException(status_code=404, detail="Entrada de caché no disponible")
    return {"status": "deleted", "cache_key": cache_key}


@app.get("/api/stats/usage", response_class=JSONResponse)
async def usage_stats(days: int = Query(7, ge=1, le=90)) -> Dict[str, Any]:
    return await run_in_threadpool(summarize_usage, days)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("audio_source.main:app", host=settings.HOST, port=settings.PORT)
