"""Sesiones de streaming y su limpieza.

Una ``PipelineSession`` agrupa los procesos y tareas creados para servir una
petición. Cualquier disparador (el consumidor cierra, un miembro falla o
vence el tiempo máximo de la sesión) acaba en el mismo desmontaje, que se
ejecuta una única vez.
"""

import asyncio
import logging
import time
import uuid
from typing import AsyncIterator, Callable, List, Optional

from audio_source.errors import AudioSourceError, RequestTimeoutError
from audio_source.processes import ManagedProcess

logger = logging.getLogger(__name__)

CloseCallback = Callable[["PipelineSession"], None]


class PipelineSession:
    def __init__(
        self,
        query: str,
        *,
        output_format: str = "webm",
        media_type: str = "audio/webm",
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex[:12]
        self.query = query
        self.output_format = output_format
        self.media_type = media_type
        self.processes: List[ManagedProcess] = []
        self.tasks: List[asyncio.Task] = []
        self.output: Optional[ManagedProcess] = None
        self.error: Optional[BaseException] = None
        self.close_reason: Optional[str] = None
        self.bytes_sent = 0
        self.started_at = time.monotonic()
        self._callbacks: List[CloseCallback] = []
        self._teardown: Optional[asyncio.Future] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

    def __repr__(self) -> str:
        return f"<PipelineSession {self.id} processes={len(self.processes)} closed={self.closed}>"

    @property
    def closed(self) -> bool:
        return self._teardown is not None

    @property
    def log_extra(self) -> dict:
        return {"session_id": self.id, "query": self.query}

    def add_process(self, process: ManagedProcess) -> ManagedProcess:
        self.processes.append(process)
        if self.closed:
            # La sesión se cerró mientras se lanzaba este proceso.
            process.begin_terminate()
        return process

    def add_task(self, task: asyncio.Task) -> asyncio.Task:
        self.tasks.append(task)
        if self.closed:
            task.cancel()
        return task

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._callbacks.append(callback)

    def arm_timeout(self, seconds: Optional[float]) -> None:
        if not seconds or seconds <= 0 or self.closed:
            return
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(seconds, self._on_timeout, seconds)

    def _on_timeout(self, seconds: float) -> None:
        self._timeout_handle = None
        if self.closed:
            return
        self.error = RequestTimeoutError(f"La sesión superó el tiempo máximo de {seconds:g}s")
        logger.warning("Sesión cancelada por tiempo máximo", extra=self.log_extra)
        self.request_close("timeout")

    def report_error(self, exc: BaseException, source: str) -> None:
        """Un miembro de la sesión falló: se registra y se desmonta todo."""
        if self.closed:
            logger.debug(
                "Error de %s tras el cierre de la sesión: %s", source, exc, extra=self.log_extra
            )
            return
        self.error = exc
        logger.warning("Fallo en %s: %s", source, exc, extra=self.log_extra)
        self.request_close(f"error:{source}")

    def request_close(self, reason: str) -> asyncio.Future:
        """Dispara el desmontaje sin esperar a que termine; idempotente."""
        if self._teardown is None:
            self.close_reason = reason
            self._teardown = asyncio.ensure_future(self._run_teardown())
            self._teardown.add_done_callback(self._log_teardown_failure)
        return self._teardown

    def _log_teardown_failure(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(
                "Fallo en el desmontaje de la sesión: %s", future.exception(), extra=self.log_extra
            )

    async def close(self, reason: str = "closed") -> None:
        await asyncio.shield(self.request_close(reason))

    async def _run_teardown(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

        current = asyncio.current_task()
        pending = [task for task in self.tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()

        # Se intenta terminar cada proceso aunque alguno falle.
        results = await asyncio.gather(
            *(process.terminate() for process in self.processes), return_exceptions=True
        )
        for process, result in zip(self.processes, results):
            if isinstance(result, BaseException):
                logger.error(
                    "No se pudo terminar %r: %s", process, result, extra=self.log_extra
                )

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for callback in self._callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Fallo en callback de cierre de sesión", extra=self.log_extra)

        logger.info(
            "Sesión cerrada (%s), %d bytes en %.1fs",
            self.close_reason,
            self.bytes_sent,
            time.monotonic() - self.started_at,
            extra={**self.log_extra, "reason": self.close_reason},
        )

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Entrega la salida final en orden; al salir, por el motivo que sea, cierra la sesión."""
        if self.output is None:
            raise RuntimeError("La sesión no tiene salida asociada")
        finished = False
        try:
            async for chunk in self.output.chunks():
                self.bytes_sent += len(chunk)
                yield chunk
            finished = True
        except AudioSourceError as exc:
            # Las cabeceras ya se enviaron: solo queda registrar y cortar.
            self.report_error(exc, "stream")
        finally:
            self.request_close("completed" if finished else "consumer_closed")
