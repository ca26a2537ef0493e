"""
fleetcheck — worker process entrypoint

File: src/fleetcheck/packages/worker_runtime.py
Last updated: 2026-10-19

Purpose
- The program each external package runs in its own subprocess:
  ``python -m fleetcheck.packages.worker_runtime <package_path>``.

What should be included in this file
- Manifest and checker loading inside the sandboxed process.
- The readiness line, then one JSON-RPC response per request line on stdout.
- Diagnostics as JSON log lines on stderr.

Functional requirements
- Methods: ``analyze``, ``configure``, ``health``, ``shutdown``.
- Unknown methods answer -32601; handler failures answer -32603; unparsable
  lines answer -32700 with a null id.
- Exit 0 on stdin EOF, SIGTERM, or SIGINT; exit 1 when the package cannot load.

Non-functional requirements
- stdout carries protocol traffic only.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from pathlib import Path
from typing import Any, Final

import structlog

from fleetcheck.constants import ENV_PACKAGE_PATH
from fleetcheck.packages.loader import load_checker_file, resolve_checker_path
from fleetcheck.packages.manifest import ManifestValidationError, load_manifest
from fleetcheck.packages.models import (
    CheckerContext,
    CheckerResult,
    JSONValue,
    PackageChecker,
    PackageManifest,
)
from fleetcheck.packages.rpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    LineBuffer,
    RpcProtocolError,
    RpcRequest,
    encode_error,
    encode_ready,
    encode_response,
    parse_request,
)

SHUTDOWN_EXIT_DELAY_SECONDS: Final[float] = 0.1
_READ_CHUNK_BYTES: Final[int] = 64 * 1024

_logger = structlog.get_logger(__name__)


class RpcMethodError(Exception):
    """Handler failure carrying an explicit JSON-RPC error code."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        super().__init__(message)


def _write_stdout(data: bytes) -> None:
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


class WorkerRuntime:
    """Hosts one package's checkers and answers host requests."""

    def __init__(
        self,
        package_path: Path,
        *,
        write: Callable[[bytes], None] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._package_path = package_path
        self._write = write or _write_stdout
        self._logger = logger or _logger
        self._manifest: PackageManifest | None = None
        self._checkers: dict[str, PackageChecker] = {}
        self._settings: dict[str, JSONValue] = {}
        self._started = time.monotonic()
        self._stop: asyncio.Event | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def manifest(self) -> PackageManifest:
        if self._manifest is None:
            raise RuntimeError("package not loaded")
        return self._manifest

    @property
    def checker_names(self) -> tuple[str, ...]:
        return tuple(self._checkers)

    def load(self) -> PackageManifest:
        """Load the manifest and every checker that can be loaded."""

        manifest, _document = load_manifest(self._package_path)
        self._manifest = manifest
        package_root = str(self._package_path.resolve())
        if package_root not in sys.path:
            sys.path.insert(0, package_root)

        for definition in manifest.checkers:
            try:
                path = resolve_checker_path(self._package_path, definition.file)
                module_name = (
                    f"_fleetcheck_checker_{manifest.name.replace('-', '_')}"
                    f"_{definition.name.replace('-', '_')}"
                )
                self._checkers[definition.name] = load_checker_file(path, module_name)
            except Exception as exc:  # noqa: BLE001 - one bad checker must not sink the package
                self._logger.error(
                    "checker_load_failed",
                    package=manifest.name,
                    checker=definition.name,
                    file=definition.file,
                    error=str(exc),
                )
        self._logger.info(
            "worker_package_loaded", package=manifest.name, checkers=list(self._checkers)
        )
        return manifest

    async def handle_line(self, line: str) -> bytes:
        """Turn one request line into one encoded response line."""

        try:
            request = parse_request(line)
        except RpcProtocolError as exc:
            return encode_error(exc.request_id, exc.code, str(exc))

        try:
            result = await self.dispatch(request)
        except RpcMethodError as exc:
            return encode_error(request.id, exc.code, str(exc))
        except Exception as exc:  # noqa: BLE001 - reported to the host as an RPC error
            self._logger.error("request_failed", method=request.method, error=str(exc))
            return encode_error(request.id, INTERNAL_ERROR, str(exc) or type(exc).__name__)
        return encode_response(request.id, result)

    async def dispatch(self, request: RpcRequest) -> JSONValue:
        if request.method == "analyze":
            return await self._analyze(request.params)
        if request.method == "configure":
            return self._configure(request.params)
        if request.method == "health":
            return self._health()
        if request.method == "shutdown":
            self._request_stop(SHUTDOWN_EXIT_DELAY_SECONDS)
            return {"success": True}
        raise RpcMethodError(METHOD_NOT_FOUND, f"Method not found: {request.method}")

    async def serve(self) -> int:
        """Serve requests until stdin closes, a signal arrives, or ``shutdown`` is called."""

        loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        for signum in (signal.SIGTERM, signal.SIGINT):
            with suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self._stop.set)

        reader = asyncio.StreamReader(limit=_READ_CHUNK_BYTES)
        await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), sys.stdin.buffer
        )
        self._write(encode_ready(self.manifest.name))

        read_task = asyncio.create_task(self._read_requests(reader))
        stop_task = asyncio.create_task(self._stop.wait())
        await asyncio.wait({read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        tasks = (read_task, stop_task, *self._inflight)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._logger.info("worker_exiting", package=self.manifest.name)
        return 0

    async def _read_requests(self, reader: asyncio.StreamReader) -> None:
        buffer = LineBuffer()
        while True:
            chunk = await reader.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                task = asyncio.create_task(self._respond(line))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        # Answer requests already in flight before stdin EOF ends the process.
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _respond(self, line: str) -> None:
        self._write(await self.handle_line(line))

    async def _analyze(self, params: Mapping[str, JSONValue]) -> JSONValue:
        try:
            context = CheckerContext.from_wire(params.get("context"))
        except ValueError as exc:
            raise RpcMethodError(INVALID_PARAMS, str(exc)) from exc
        context = context.with_settings({**self._settings, **context.settings})

        selected = params.get("checker")
        if selected is not None:
            if not isinstance(selected, str) or selected not in self._checkers:
                raise RpcMethodError(INVALID_PARAMS, f"Checker not loaded: {selected}")
            results = await self._checkers[selected].analyze(context)
            return {"recommendations": self._tag_results(selected, results)}

        recommendations: list[JSONValue] = []
        for name, checker in self._checkers.items():
            try:
                results = await checker.analyze(context)
            except Exception as exc:  # noqa: BLE001 - isolate per-checker failures
                self._logger.error("checker_failed", checker=name, error=str(exc))
                continue
            recommendations.extend(self._tag_results(name, results))
        return {"recommendations": recommendations}

    def _tag_results(self, checker_name: str, results: Sequence[object]) -> list[JSONValue]:
        tagged: list[JSONValue] = []
        for index, item in enumerate(results):
            try:
                result = (
                    item
                    if isinstance(item, CheckerResult)
                    else CheckerResult.from_wire(item, path=f"{checker_name}[{index}]")
                )
            except ValueError as exc:
                self._logger.warning(
                    "checker_result_invalid", checker=checker_name, error=str(exc)
                )
                continue
            tagged.append(
                result.tagged(package_name=self.manifest.name, checker_name=checker_name).to_wire()
            )
        return tagged

    def _configure(self, params: Mapping[str, JSONValue]) -> JSONValue:
        settings = params.get("settings")
        if not isinstance(settings, Mapping):
            raise RpcMethodError(INVALID_PARAMS, "settings must be an object")
        self._settings.update(settings)
        return {"success": True}

    def _health(self) -> JSONValue:
        return {
            "healthy": True,
            "packageName": self.manifest.name,
            "checkerCount": len(self._checkers),
            "uptime": round(time.monotonic() - self._started, 3),
        }

    def _request_stop(self, delay: float) -> None:
        stop = self._stop
        if stop is None:
            return
        asyncio.get_running_loop().call_later(delay, stop.set)


def _configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    _configure_logging()
    raw_path = args[0] if args else os.environ.get(ENV_PACKAGE_PATH)
    if not raw_path:
        _logger.error("package_path_missing", env=ENV_PACKAGE_PATH)
        return 1

    runtime = WorkerRuntime(Path(raw_path))
    try:
        runtime.load()
    except (ManifestValidationError, OSError) as exc:
        _logger.error("package_load_failed", path=raw_path, error=str(exc))
        return 1
    return asyncio.run(runtime.serve())


__all__ = ["RpcMethodError", "WorkerRuntime", "main"]


if __name__ == "__main__":
    raise SystemExit(main())
