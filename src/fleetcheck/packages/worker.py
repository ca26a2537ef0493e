"""
fleetcheck — external package worker supervision

File: src/fleetcheck/packages/worker.py
Last updated: 2026-10-19

Purpose
- Own exactly one subprocess per external package and speak newline-delimited
  JSON-RPC with it over stdin/stdout.

What should be included in this file
- Spawn with a memory ceiling, package environment, and a readiness handshake.
- Request correlation with per-call timeouts over a pending-request table.
- Health polling, crash handling, and bounded restarts with linear backoff.
- Graceful shutdown with a forced kill after a grace period.

Functional requirements
- Every pending request settles exactly once: response, error, timeout, or exit.
- Responses for unknown ids and malformed lines are logged and dropped.
- A worker that stops for good reports it through ``on_exhausted``.

Non-functional requirements
- Single event loop; all counters are touched only by this worker's own tasks.
- Worker stderr is forwarded line by line as ``worker_stderr`` log events.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import psutil
import structlog

from fleetcheck.constants import (
    DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS,
    DEFAULT_MAX_HEALTH_FAILURES,
    DEFAULT_MAX_RESTART_ATTEMPTS,
    DEFAULT_MEMORY_LIMIT_MB,
    DEFAULT_READY_TIMEOUT_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_RESTART_BASE_DELAY_SECONDS,
    DEFAULT_SHUTDOWN_GRACE_SECONDS,
    ENV_PACKAGE_CAPABILITIES,
    ENV_PACKAGE_NAME,
    ENV_PACKAGE_PATH,
)
from fleetcheck.observability.logging import correlation_scope
from fleetcheck.packages.errors import (
    WorkerAlreadyRunningError,
    WorkerCommunicationError,
    WorkerCrashError,
    WorkerError,
    WorkerNotRunningError,
    WorkerRequestError,
    WorkerStartupTimeoutError,
)
from fleetcheck.packages.models import (
    CheckerContext,
    CheckerResult,
    JSONValue,
    PackageManifest,
    Settings,
    WorkerState,
    WorkerStats,
)
from fleetcheck.packages.rpc import READY_MARKER, LineBuffer, RpcProtocolError, encode_request
from fleetcheck.packages.rpc import parse_response as parse_rpc_response

try:
    import resource
except ImportError:  # pragma: no cover - non-POSIX hosts
    resource = None  # type: ignore[assignment]

if TYPE_CHECKING:
    from asyncio.subprocess import Process

_READ_CHUNK_BYTES: Final[int] = 64 * 1024
_EXIT_DRAIN_SECONDS: Final[float] = 1.0
_READY_MARKER_BYTES: Final[bytes] = READY_MARKER.encode("utf-8")
WORKER_RUNTIME_MODULE: Final[str] = "fleetcheck.packages.worker_runtime"

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class WorkerOptions:
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    memory_limit_mb: int | None = DEFAULT_MEMORY_LIMIT_MB
    auto_restart: bool = True
    max_restart_attempts: int = DEFAULT_MAX_RESTART_ATTEMPTS
    ready_timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS
    health_check_interval_seconds: float = DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS
    max_health_failures: int = DEFAULT_MAX_HEALTH_FAILURES
    restart_base_delay_seconds: float = DEFAULT_RESTART_BASE_DELAY_SECONDS
    shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS
    python_executable: str = sys.executable

    def __post_init__(self) -> None:
        for name in (
            "request_timeout_seconds",
            "ready_timeout_seconds",
            "health_check_interval_seconds",
            "shutdown_grace_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"WorkerOptions.{name} must be > 0")
        if self.restart_base_delay_seconds < 0:
            raise ValueError("WorkerOptions.restart_base_delay_seconds must be >= 0")
        if self.max_restart_attempts < 0:
            raise ValueError("WorkerOptions.max_restart_attempts must be >= 0")
        if self.max_health_failures <= 0:
            raise ValueError("WorkerOptions.max_health_failures must be > 0")
        if self.memory_limit_mb is not None and self.memory_limit_mb <= 0:
            raise ValueError("WorkerOptions.memory_limit_mb must be > 0 when set")


class SupervisedWorker(Protocol):
    """What the registry needs from a worker; ``PackageWorker`` is the real one."""

    @property
    def name(self) -> str: ...

    @property
    def state(self) -> WorkerState: ...

    @property
    def last_error(self) -> str | None: ...

    async def spawn(self) -> None: ...

    async def analyze(
        self,
        context: CheckerContext,
        *,
        checker: str | None = None,
    ) -> list[CheckerResult]: ...

    async def configure(self, settings: Settings) -> None: ...

    async def health(self) -> bool: ...

    async def shutdown(self) -> None: ...

    def is_running(self) -> bool: ...

    def stats(self) -> WorkerStats: ...


@dataclass(slots=True)
class _PendingRequest:
    method: str
    future: asyncio.Future[JSONValue]
    timer: asyncio.TimerHandle


def _memory_limiter(limit_mb: int | None) -> Callable[[], None] | None:
    if limit_mb is None or resource is None or sys.platform == "win32":
        return None
    limit_bytes = limit_mb * 1024 * 1024

    def _apply() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))

    return _apply


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class PackageWorker:
    """Supervisor for one external package subprocess."""

    def __init__(
        self,
        package_path: Path | str,
        manifest: PackageManifest,
        *,
        options: WorkerOptions | None = None,
        command: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        on_exhausted: Callable[[PackageWorker], None] | None = None,
        sleep: SleepFn | None = None,
        logger: Any | None = None,
    ) -> None:
        self._package_path = Path(package_path)
        self._manifest = manifest
        self._options = options or WorkerOptions()
        self._command = tuple(
            command
            if command is not None
            else (self._options.python_executable, "-m", WORKER_RUNTIME_MODULE)
        )
        self._extra_env = dict(env or {})
        self._on_exhausted = on_exhausted
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._logger = (logger or structlog.get_logger(__name__)).bind(package=manifest.name)

        self._process: Process | None = None
        self._supervisor_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._pending: dict[int, _PendingRequest] = {}
        self._next_id = 0
        self._state = WorkerState.UNSTARTED
        self._shutdown_requested = False
        self._restart_attempts = 0
        self._health_failures = 0
        self._request_count = 0
        self._error_count = 0
        self._started_at: float | None = None
        self._last_error: str | None = None

    @property
    def name(self) -> str:
        return self._manifest.name

    @property
    def manifest(self) -> PackageManifest:
        return self._manifest

    @property
    def package_path(self) -> Path:
        return self._package_path

    @property
    def options(self) -> WorkerOptions:
        return self._options

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def pid(self) -> int | None:
        return None if self._process is None else self._process.pid

    @property
    def restart_attempts(self) -> int:
        return self._restart_attempts

    @property
    def health_failures(self) -> int:
        return self._health_failures

    def is_running(self) -> bool:
        """True only once the readiness handshake is done and requests are accepted."""
        if self._process is None or self._shutdown_requested:
            return False
        return self._state in (WorkerState.READY, WorkerState.DEGRADED)

    def stats(self) -> WorkerStats:
        uptime = 0.0
        if self._process is not None and self._started_at is not None:
            uptime = time.monotonic() - self._started_at
        return WorkerStats(
            uptime_seconds=uptime,
            request_count=self._request_count,
            error_count=self._error_count,
            restart_attempts=self._restart_attempts,
            pending_requests=len(self._pending),
            rss_bytes=self._sample_rss(),
        )

    async def spawn(self) -> None:
        """Start the subprocess and wait for its readiness line."""

        if self._process is not None:
            raise WorkerAlreadyRunningError(f"Worker already running: {self.name}")

        self._shutdown_requested = False
        self._state = WorkerState.STARTING
        loop = asyncio.get_running_loop()
        ready: asyncio.Future[None] = loop.create_future()
        argv = (*self._command, str(self._package_path))

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                preexec_fn=_memory_limiter(self._options.memory_limit_mb),
            )
        except OSError as exc:
            self._state = WorkerState.STOPPED
            self._last_error = f"failed to start worker: {exc}"
            raise WorkerError(f"failed to start worker for {self.name}: {exc}") from exc

        self._process = process
        self._supervisor_task = asyncio.create_task(
            self._supervise(process, ready), name=f"fleetcheck-worker-{self.name}"
        )
        self._logger.info("worker_spawned", pid=process.pid, argv=list(argv))

        try:
            await asyncio.wait_for(asyncio.shield(ready), self._options.ready_timeout_seconds)
        except TimeoutError:
            self._last_error = "Worker failed to start within timeout"
            self._logger.error(
                "worker_startup_timeout", timeout_seconds=self._options.ready_timeout_seconds
            )
            await self._abort_startup(process, ready)
            raise WorkerStartupTimeoutError("Worker failed to start within timeout") from None
        except WorkerCrashError as exc:
            self._last_error = str(exc)
            self._logger.error("worker_exited_during_startup", error=str(exc))
            raise

        if self._process is not process:
            crash = WorkerCrashError(process.returncode, _signal_name(process.returncode))
            self._last_error = str(crash)
            raise crash

        self._state = WorkerState.READY
        self._started_at = time.monotonic()
        self._restart_attempts = 0
        self._health_failures = 0
        self._health_task = asyncio.create_task(
            self._health_loop(), name=f"fleetcheck-health-{self.name}"
        )
        self._logger.info("worker_ready", pid=process.pid)

    async def send(
        self,
        method: str,
        params: Mapping[str, JSONValue] | None = None,
        *,
        timeout: float | None = None,
    ) -> JSONValue:
        """Issue one request and wait for its matching response."""

        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise WorkerNotRunningError(f"Worker not running: {self.name}")

        request_id = self._next_id + 1
        try:
            payload = encode_request(request_id, method, params or {})
        except (TypeError, ValueError) as exc:
            raise WorkerCommunicationError(f"cannot encode {method} request: {exc}") from exc

        self._next_id = request_id
        self._request_count += 1
        timeout_seconds = self._options.request_timeout_seconds if timeout is None else timeout
        loop = asyncio.get_running_loop()
        future: asyncio.Future[JSONValue] = loop.create_future()

        with correlation_scope(request_id=str(request_id)):
            # The timer callback inherits the current context, request_id included.
            timer = loop.call_later(timeout_seconds, self._expire_request, request_id)
            self._pending[request_id] = _PendingRequest(method=method, future=future, timer=timer)

            try:
                process.stdin.write(payload)
                await process.stdin.drain()
            except (ConnectionError, RuntimeError) as exc:
                self._settle_error(
                    request_id,
                    WorkerCommunicationError(f"failed to write {method} request: {exc}"),
                )

            try:
                return await future
            except asyncio.CancelledError:
                self._discard_request(request_id)
                raise

    async def analyze(
        self,
        context: CheckerContext,
        *,
        checker: str | None = None,
    ) -> list[CheckerResult]:
        params: dict[str, JSONValue] = {"vmId": context.vm_id, "context": context.to_wire()}
        if checker is not None:
            params["checker"] = checker
        result = await self.send("analyze", params)
        if not isinstance(result, Mapping):
            raise WorkerCommunicationError(
                f"analyze result must be an object, got {type(result).__name__}"
            )
        raw_items = result.get("recommendations") or []
        if not isinstance(raw_items, list):
            raise WorkerCommunicationError("analyze result recommendations must be a list")

        results: list[CheckerResult] = []
        for index, item in enumerate(raw_items):
            try:
                results.append(CheckerResult.from_wire(item, path=f"recommendations[{index}]"))
            except ValueError as exc:
                self._logger.warning("worker_result_rejected", error=str(exc))
        return results

    async def configure(self, settings: Settings) -> None:
        await self.send("configure", {"settings": dict(settings)})

    async def health(self) -> bool:
        try:
            result = await self.send("health", {})
        except WorkerError as exc:
            self._logger.debug("worker_health_call_failed", error=str(exc))
            return False
        return isinstance(result, Mapping) and result.get("healthy") is True

    async def shutdown(self) -> None:
        """Stop the worker for good: graceful request first, SIGKILL after the grace period."""

        self._shutdown_requested = True
        self._cancel_task(self._restart_task)
        self._restart_task = None
        self._stop_health_task()

        process = self._process
        if process is None:
            self._state = WorkerState.STOPPED
            return

        self._state = WorkerState.SHUTTING_DOWN
        try:
            await asyncio.wait_for(
                self._request_exit(process), self._options.shutdown_grace_seconds
            )
        except TimeoutError:
            self._logger.warning(
                "worker_shutdown_forced", grace_seconds=self._options.shutdown_grace_seconds
            )
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()

        if self._supervisor_task is not None:
            with suppress(asyncio.CancelledError):
                await self._supervisor_task
        self._state = WorkerState.STOPPED
        self._logger.info("worker_stopped", returncode=process.returncode)

    async def _request_exit(self, process: Process) -> None:
        try:
            await self.send("shutdown", {}, timeout=self._options.shutdown_grace_seconds)
        except WorkerError as exc:
            self._logger.debug("worker_shutdown_request_failed", error=str(exc))
        await process.wait()

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._extra_env)
        env[ENV_PACKAGE_PATH] = str(self._package_path)
        env[ENV_PACKAGE_NAME] = self._manifest.name
        env[ENV_PACKAGE_CAPABILITIES] = json.dumps(
            self._manifest.capabilities.to_dict(), separators=(",", ":")
        )
        env.setdefault("PYTHONUNBUFFERED", "1")
        return env

    async def _supervise(self, process: Process, ready: asyncio.Future[None]) -> None:
        assert process.stdout is not None
        assert process.stderr is not None
        readers = [
            asyncio.create_task(self._read_stdout(process.stdout, ready)),
            asyncio.create_task(self._read_stderr(process.stderr)),
        ]
        returncode = await process.wait()
        # Let buffered responses land before pending requests are failed.
        _, still_reading = await asyncio.wait(readers, timeout=_EXIT_DRAIN_SECONDS)
        for task in still_reading:
            task.cancel()
        self._handle_exit(process, returncode, ready)

    async def _read_stdout(
        self,
        stream: asyncio.StreamReader,
        ready: asyncio.Future[None],
    ) -> None:
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            lines = buffer.feed(chunk)
            if not ready.done():
                if _READY_MARKER_BYTES not in chunk:
                    self._logger.debug("worker_output_before_ready", size=len(chunk))
                    continue
                ready.set_result(None)
                lines = [line for line in lines if READY_MARKER not in line]
            for line in lines:
                self._handle_line(line)
        for line in buffer.flush():
            self._handle_line(line)

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                self._logger.info("worker_stderr", line=line)
        for line in buffer.flush():
            self._logger.info("worker_stderr", line=line)

    def _handle_line(self, line: str) -> None:
        try:
            response = parse_rpc_response(line)
        except RpcProtocolError as exc:
            if READY_MARKER not in line:
                self._logger.warning("worker_malformed_output", line=line[:200], error=str(exc))
            return

        pending = self._pending.pop(response.id, None) if response.id is not None else None
        if pending is None:
            self._logger.warning("worker_unknown_response", request_id=response.id)
            return
        pending.timer.cancel()
        if pending.future.done():
            return
        if response.error is not None:
            self._error_count += 1
            pending.future.set_exception(
                WorkerRequestError(
                    response.error.code, response.error.message, response.error.data
                )
            )
        else:
            pending.future.set_result(response.result)

    def _expire_request(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        self._error_count += 1
        self._logger.warning("worker_request_timeout", method=pending.method, request_id=request_id)
        if not pending.future.done():
            pending.future.set_exception(
                WorkerCommunicationError(
                    f"Request timeout (method={pending.method}, id={request_id})"
                )
            )

    def _settle_error(self, request_id: int, error: WorkerError) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        pending.timer.cancel()
        self._error_count += 1
        if not pending.future.done():
            pending.future.set_exception(error)

    def _discard_request(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timer.cancel()

    def _reject_all(self, returncode: int | None, signal_name: str | None) -> None:
        pending_items = list(self._pending.values())
        self._pending.clear()
        for pending in pending_items:
            pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(WorkerCrashError(returncode, signal_name))

    def _handle_exit(
        self,
        process: Process,
        returncode: int | None,
        ready: asyncio.Future[None],
    ) -> None:
        if self._process is not process:
            return
        self._process = None
        self._started_at = None
        self._stop_health_task()
        signal_name = _signal_name(returncode)
        self._reject_all(returncode, signal_name)

        if not ready.done():
            ready.set_exception(WorkerCrashError(returncode, signal_name))
        if self._state is WorkerState.STARTING:
            self._state = WorkerState.STOPPED
            return

        if self._shutdown_requested:
            return

        self._last_error = str(WorkerCrashError(returncode, signal_name))
        self._logger.warning("worker_exited", returncode=returncode, signal=signal_name)
        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if (
            not self._options.auto_restart
            or self._shutdown_requested
            or self._restart_attempts >= self._options.max_restart_attempts
        ):
            self._state = WorkerState.STOPPED
            self._logger.error(
                "worker_restart_exhausted",
                attempts=self._restart_attempts,
                auto_restart=self._options.auto_restart,
            )
            if self._on_exhausted is not None and not self._shutdown_requested:
                self._on_exhausted(self)
            return

        self._restart_attempts += 1
        delay = self._restart_attempts * self._options.restart_base_delay_seconds
        self._state = WorkerState.STOPPED
        self._logger.info("worker_restart_scheduled", attempt=self._restart_attempts, delay=delay)
        self._restart_task = asyncio.create_task(
            self._restart_after(delay), name=f"fleetcheck-restart-{self.name}"
        )

    async def _restart_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._shutdown_requested:
            return
        try:
            await self.spawn()
        except WorkerError as exc:
            self._last_error = str(exc)
            self._logger.error("worker_restart_failed", error=str(exc))
            if self._process is None:
                self._schedule_restart()

    async def _abort_startup(self, process: Process, ready: asyncio.Future[None]) -> None:
        self._process = None
        self._state = WorkerState.STOPPED
        with suppress(ProcessLookupError):
            process.kill()
        if self._supervisor_task is not None:
            with suppress(asyncio.CancelledError):
                await self._supervisor_task
        if not ready.done():
            ready.cancel()

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._options.health_check_interval_seconds)
            if self._shutdown_requested or self._process is None:
                return
            if await self.health():
                if self._health_failures:
                    self._logger.info("worker_health_recovered", failures=self._health_failures)
                self._health_failures = 0
                if self._state is WorkerState.DEGRADED:
                    self._state = WorkerState.READY
                continue

            self._health_failures += 1
            if self._state is WorkerState.READY:
                self._state = WorkerState.DEGRADED
            self._logger.warning("worker_health_failed", failures=self._health_failures)
            if self._health_failures >= self._options.max_health_failures:
                self._health_failures = 0
                self._force_restart()
                return

    def _force_restart(self) -> None:
        process = self._process
        if process is None:
            return
        self._logger.warning("worker_forced_restart", pid=process.pid)
        with suppress(ProcessLookupError):
            process.kill()

    def _stop_health_task(self) -> None:
        task = self._health_task
        self._health_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    @staticmethod
    def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _sample_rss(self) -> int | None:
        process = self._process
        if process is None or process.returncode is not None:
            return None
        try:
            return int(psutil.Process(process.pid).memory_info().rss)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None


__all__ = [
    "PackageWorker",
    "SupervisedWorker",
    "WORKER_RUNTIME_MODULE",
    "WorkerOptions",
]
