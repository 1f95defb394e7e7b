"""Supervisión de programas externos (yt-dlp, ffmpeg).

Cada invocación se envuelve en un ``ManagedProcess``: la salida estándar se
expone como flujo de bytes, la salida de error se acumula (acotada) para
diagnóstico y la terminación es siempre en dos fases, SIGTERM y después
SIGKILL si el proceso no sale dentro de la ventana de gracia.
"""

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import AsyncIterator, Optional, Sequence

from audio_source import settings
from audio_source.errors import (
    ProcessExitedWithError,
    ProcessStartTimeout,
    ProviderError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)

_USE_PROCESS_GROUPS = os.name == "posix"


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class ManagedProcess:
    def __init__(
        self,
        name: str,
        process: asyncio.subprocess.Process,
        *,
        start_timeout: float,
        overall_timeout: Optional[float] = None,
        chunk_size: int = settings.STREAM_CHUNK_SIZE,
        stderr_limit: int = settings.STDERR_LIMIT_BYTES,
        kill_grace: float = settings.PROCESS_KILL_GRACE,
    ) -> None:
        loop = asyncio.get_running_loop()
        self.name = name
        self.process = process
        self.start_timeout = start_timeout
        self.start_deadline = loop.time() + start_timeout
        self.chunk_size = chunk_size
        self.kill_grace = kill_grace
        self.state = ProcessState.STARTING
        self.deadline_exceeded = False
        self._stderr = bytearray()
        self._stderr_limit = stderr_limit
        self._stderr_task: Optional[asyncio.Task] = None
        if process.stderr is not None:
            self._stderr_task = loop.create_task(self._drain_stderr())
        self._first: Optional[bytes] = None
        self._iterated = False
        self._termination: Optional[asyncio.Future] = None
        self._deadline_handle: Optional[asyncio.TimerHandle] = None
        if overall_timeout:
            self._deadline_handle = loop.call_later(overall_timeout, self._on_deadline)

    def __repr__(self) -> str:
        return f"<ManagedProcess {self.name} pid={self.pid} state={self.state.value}>"

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self.process.stdin

    @property
    def stderr_text(self) -> str:
        return self._stderr.decode("utf-8", errors="replace")

    async def _drain_stderr(self) -> None:
        assert self.process.stderr is not None
        while True:
            chunk = await self.process.stderr.read(4096)
            if not chunk:
                break
            self._stderr.extend(chunk)
            overflow = len(self._stderr) - self._stderr_limit
            if overflow > 0:
                del self._stderr[:overflow]

    def _on_deadline(self) -> None:
        if self.process.returncode is not None:
            return
        logger.warning(
            "%s superó el tiempo máximo de ejecución",
            self.name,
            extra={"program": self.name, "pid": self.pid},
        )
        self.deadline_exceeded = True
        self.begin_terminate()

    def _mark_exited(self) -> None:
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None
        if self.state is not ProcessState.KILLED:
            self.state = ProcessState.EXITED

    async def wait(self) -> Optional[int]:
        returncode = await self.process.wait()
        if self._stderr_task is not None:
            await asyncio.gather(self._stderr_task, return_exceptions=True)
        self._mark_exited()
        return returncode

    async def _await_first_output(self) -> bytes:
        assert self.process.stdout is not None
        try:
            chunk = await asyncio.wait_for(
                self.process.stdout.read(self.chunk_size), timeout=self.start_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s no produjo salida en %.1fs",
                self.name,
                self.start_timeout,
                extra={"program": self.name, "pid": self.pid},
            )
            await self.terminate()
            raise ProcessStartTimeout(
                f"{self.name} no produjo salida en {self.start_timeout:g}s"
            ) from None
        if chunk and self.state is ProcessState.STARTING:
            self.state = ProcessState.RUNNING
        return chunk

    async def first_chunk(self) -> bytes:
        """Primer bloque de stdout; falla si el proceso no llega a producirlo."""
        if self._first is not None:
            return self._first
        chunk = await self._await_first_output()
        if not chunk:
            returncode = await self.wait()
            if self.deadline_exceeded:
                raise RequestTimeoutError(f"{self.name} superó el tiempo máximo de ejecución")
            if returncode:
                raise ProcessExitedWithError(self.name, returncode, self.stderr_text)
            raise ProviderError(f"{self.name} terminó sin producir salida")
        self._first = chunk
        return chunk

    async def chunks(self) -> AsyncIterator[bytes]:
        if self._iterated:
            raise RuntimeError(f"La salida de {self.name} ya se está consumiendo")
        self._iterated = True
        assert self.process.stdout is not None
        yield await self.first_chunk()
        while True:
            chunk = await self.process.stdout.read(self.chunk_size)
            if not chunk:
                break
            yield chunk
        returncode = await self.wait()
        if returncode and self.state is not ProcessState.KILLED:
            # El flujo ya entregado no se invalida: solo se registra.
            error = ProcessExitedWithError(self.name, returncode, self.stderr_text)
            logger.warning(str(error), extra={"program": self.name, "returncode": returncode})

    async def collect(self) -> bytes:
        """Lee stdout completo (modo metadatos) y exige código de salida 0."""
        assert self.process.stdout is not None
        first = await self._await_first_output()
        rest = await self.process.stdout.read() if first else b""
        returncode = await self.wait()
        if self.deadline_exceeded:
            raise RequestTimeoutError(f"{self.name} superó el tiempo máximo de ejecución")
        if returncode:
            raise ProcessExitedWithError(self.name, returncode, self.stderr_text)
        return first + rest

    def _signal(self, sig: int) -> None:
        if _USE_PROCESS_GROUPS:
            try:
                os.killpg(self.pid, sig)
                return
            except (ProcessLookupError, PermissionError):
                pass
        self.process.send_signal(sig)

    def begin_terminate(self, grace: Optional[float] = None) -> asyncio.Future:
        """Arranca el apagado sin esperarlo; idempotente."""
        if self._termination is None:
            self._termination = asyncio.ensure_future(
                self._terminate(self.kill_grace if grace is None else grace)
            )
            self._termination.add_done_callback(self._log_termination_failure)
        return self._termination

    async def terminate(self, grace: Optional[float] = None) -> None:
        """Apagado en dos fases; idempotente."""
        await asyncio.shield(self.begin_terminate(grace))

    def _log_termination_failure(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Fallo al terminar %s: %s",
                self.name,
                exc,
                extra={"program": self.name, "pid": self.pid},
            )

    async def _terminate(self, grace: float) -> None:
        if self.process.returncode is not None:
            await self.wait()
            return
        self.state = ProcessState.KILLED
        if self.process.stdin is not None and not self.process.stdin.is_closing():
            self.process.stdin.close()
        try:
            self._signal(signal.SIGTERM)
        except ProcessLookupError:
            await self.wait()
            return
        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(
                "%s no respondió a SIGTERM, forzando SIGKILL",
                self.name,
                extra={"program": self.name, "pid": self.pid},
            )
            try:
                self._signal(signal.SIGKILL)
            except ProcessLookupError:
                pass
        await self.wait()
        logger.debug(
            "%s terminado",
            self.name,
            extra={"program": self.name, "pid": self.pid, "returncode": self.returncode},
        )


class ProcessSupervisor:
    """Lanza programas externos sin shell y los envuelve en ``ManagedProcess``."""

    def __init__(
        self,
        *,
        kill_grace: float = settings.PROCESS_KILL_GRACE,
        stderr_limit: int = settings.STDERR_LIMIT_BYTES,
        chunk_size: int = settings.STREAM_CHUNK_SIZE,
    ) -> None:
        self.kill_grace = kill_grace
        self.stderr_limit = stderr_limit
        self.chunk_size = chunk_size

    async def spawn(
        self,
        command: Sequence[str],
        *,
        start_timeout: float,
        overall_timeout: Optional[float] = None,
        stdin: bool = False,
        name: Optional[str] = None,
    ) -> ManagedProcess:
        if not command:
            raise ValueError("command must not be empty")
        label = name or os.path.basename(command[0])
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_USE_PROCESS_GROUPS,
            )
        except FileNotFoundError as exc:
            raise ProviderError(
                f"{label} no está instalado o no es accesible en el sistema"
            ) from exc
        except OSError as exc:
            raise ProviderError(f"No se pudo lanzar {label}: {exc}") from exc
        logger.debug("Proceso lanzado: %s", label, extra={"program": label, "pid": process.pid})
        return ManagedProcess(
            label,
            process,
            start_timeout=start_timeout,
            overall_timeout=overall_timeout,
            chunk_size=self.chunk_size,
            stderr_limit=self.stderr_limit,
            kill_grace=self.kill_grace,
        )

    async def run(self, command: Sequence[str], *, timeout: float, name: Optional[str] = None) -> str:
        """Ejecuta un comando corto y devuelve su stdout decodificado."""
        managed = await self.spawn(
            command, start_timeout=timeout, overall_timeout=timeout, name=name
        )
        try:
            output = await managed.collect()
        finally:
            await managed.terminate()
        return output.decode("utf-8", errors="replace")
