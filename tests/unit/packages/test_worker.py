"""
fleetcheck — unit tests for external worker supervision

File: tests/unit/packages/test_worker.py
Last updated: 2026-10-19

Purpose
- Validate the worker supervisor against small scripted Python subprocesses.

What this test file should cover
- Readiness handshake, startup timeout, and pre-ready noise.
- Request correlation, duplicate/late responses, error responses, timeouts.
- Crash handling: pending rejection, linear restart backoff, exhaustion callback.
- Health polling: forced restart after consecutive failures, no restart when alternating.
- Graceful and forced shutdown.

Functional requirements
- Offline operation; subprocesses are plain ``python`` scripts in ``tmp_path``.

Non-functional requirements
- Short timeouts so the suite stays fast; waits poll with a generous deadline.
"""

from __future__ import annotations

import asyncio
import json
import math
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import pytest
import structlog

from fleetcheck.observability.logging import (
    get_active_logging_handle,
    setup_logging,
    shutdown_logging,
)
from fleetcheck.packages.errors import (
    WorkerAlreadyRunningError,
    WorkerCommunicationError,
    WorkerCrashError,
    WorkerNotRunningError,
    WorkerRequestError,
    WorkerStartupTimeoutError,
)
from fleetcheck.packages.models import CheckerContext, Severity, WorkerState
from fleetcheck.packages.worker import PackageWorker, WorkerOptions

from . import make_manifest, write_worker_script

if TYPE_CHECKING:
    from pathlib import Path

_READY = 'emit({"ready": True, "packageName": "disk-check"})\n'

_ECHO = (
    _READY
    + """
for request in requests():
    if request["method"] == "shutdown":
        reply(request, {"success": True})
        sys.exit(0)
    reply(request, {"method": request["method"], "params": request["params"]})
"""
)


def _options(**overrides: Any) -> WorkerOptions:
    values: dict[str, Any] = {
        "request_timeout_seconds": 5.0,
        "ready_timeout_seconds": 5.0,
        "health_check_interval_seconds": 60.0,
        "restart_base_delay_seconds": 0.0,
        "shutdown_grace_seconds": 2.0,
        "memory_limit_mb": None,
    }
    values.update(overrides)
    return WorkerOptions(**values)


def _worker(
    tmp_path: Path,
    body: str,
    *,
    options: WorkerOptions | None = None,
    **kwargs: Any,
) -> PackageWorker:
    script = write_worker_script(tmp_path / "scripts", body)
    return PackageWorker(
        tmp_path,
        make_manifest(capabilities={"storage": True}),
        options=options or _options(),
        command=(sys.executable, str(script)),
        **kwargs,
    )


async def _wait_for(predicate: Callable[[], bool], *, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before deadline")
        await asyncio.sleep(0.02)


async def test_spawn_waits_for_ready_and_round_trips_requests(tmp_path: Path) -> None:
    worker = _worker(tmp_path, _ECHO)
    try:
        await worker.spawn()

        assert worker.state is WorkerState.READY
        assert worker.is_running()
        assert worker.pid is not None
        assert await worker.send("ping", {"n": 1}) == {"method": "ping", "params": {"n": 1}}
    finally:
        await worker.shutdown()

    assert worker.state is WorkerState.STOPPED
    assert not worker.is_running()
    assert worker.pid is None


async def test_output_before_ready_is_ignored(tmp_path: Path) -> None:
    body = 'print("booting checker runtime", flush=True)\ntime.sleep(0.1)\n' + _ECHO
    worker = _worker(tmp_path, body)
    try:
        await worker.spawn()

        assert await worker.send("ping") == {"method": "ping", "params": {}}
    finally:
        await worker.shutdown()


async def test_startup_timeout_kills_the_process(tmp_path: Path) -> None:
    worker = _worker(
        tmp_path,
        "for _ in requests():\n    pass\n",
        options=_options(ready_timeout_seconds=0.3),
    )

    with pytest.raises(WorkerStartupTimeoutError, match="Worker failed to start within timeout"):
        await worker.spawn()

    assert worker.state is WorkerState.STOPPED
    assert worker.pid is None
    assert worker.last_error == "Worker failed to start within timeout"


async def test_exit_during_startup_raises_crash_error(tmp_path: Path) -> None:
    worker = _worker(tmp_path, "sys.exit(4)\n")

    with pytest.raises(WorkerCrashError) as excinfo:
        await worker.spawn()

    assert excinfo.value.returncode == 4
    assert worker.state is WorkerState.STOPPED


async def test_concurrent_requests_are_correlated_by_id(tmp_path: Path) -> None:
    body = (
        _READY
        + """
held = []
for request in requests():
    held.append(request)
    if len(held) == 2:
        for item in reversed(held):
            reply(item, item["params"]["n"])
        held.clear()
"""
    )
    worker = _worker(tmp_path, body, options=_options(shutdown_grace_seconds=0.5))
    try:
        await worker.spawn()

        first, second = await asyncio.gather(
            worker.send("work", {"n": 1}), worker.send("work", {"n": 2})
        )

        assert (first, second) == (1, 2)
    finally:
        await worker.shutdown()


async def test_duplicate_response_is_dropped(tmp_path: Path) -> None:
    body = (
        _READY
        + """
for request in requests():
    reply(request, request["params"].get("n"))
    reply(request, "duplicate")
"""
    )
    worker = _worker(tmp_path, body, options=_options(shutdown_grace_seconds=0.5))
    try:
        await worker.spawn()

        assert await worker.send("work", {"n": 1}) == 1
        assert await worker.send("work", {"n": 2}) == 2
        assert worker.stats().error_count == 0
    finally:
        await worker.shutdown()


async def test_timeout_settles_once_and_late_response_is_dropped(tmp_path: Path) -> None:
    body = (
        _READY
        + """
for request in requests():
    if request["method"] == "slow":
        time.sleep(0.5)
    reply(request, request["method"])
"""
    )
    worker = _worker(tmp_path, body, options=_options(shutdown_grace_seconds=0.5))
    try:
        await worker.spawn()

        with pytest.raises(WorkerCommunicationError, match="Request timeout"):
            await worker.send("slow", timeout=0.1)
        assert await worker.send("fast") == "fast"

        stats = worker.stats()
        assert stats.error_count == 1
        assert stats.pending_requests == 0
    finally:
        await worker.shutdown()


async def test_timeout_event_carries_request_and_package_correlation(tmp_path: Path) -> None:
    setup_logging({"log_dir": str(tmp_path / "logs")}, run_id="run-worker")
    handle = get_active_logging_handle()
    assert handle is not None
    body = (
        _READY
        + """
for request in requests():
    if request["method"] == "slow":
        time.sleep(0.5)
    reply(request, request["method"])
"""
    )
    try:
        worker = _worker(tmp_path, body, options=_options(shutdown_grace_seconds=0.5))
        try:
            await worker.spawn()
            with pytest.raises(WorkerCommunicationError, match="Request timeout"):
                await worker.send("slow", timeout=0.1)
        finally:
            await worker.shutdown()
    finally:
        shutdown_logging()
        structlog.reset_defaults()

    events = [json.loads(line) for line in handle.log_path.read_text(encoding="utf-8").splitlines()]
    (timeout_event,) = [event for event in events if event["message"] == "worker_request_timeout"]
    assert timeout_event["request_id"] == "1"
    assert timeout_event["package"] == "disk-check"
    assert timeout_event["run_id"] == "run-worker"
    assert timeout_event["fields"] == {"method": "slow"}


async def test_error_response_raises_request_error(tmp_path: Path) -> None:
    body = (
        _READY
        + """
for request in requests():
    emit({
        "jsonrpc": "2.0",
        "id": request["id"],
        "error": {"code": -32000, "message": "checker exploded", "data": {"x": 1}},
    })
"""
    )
    worker = _worker(tmp_path, body, options=_options(shutdown_grace_seconds=0.5))
    try:
        await worker.spawn()

        with pytest.raises(WorkerRequestError, match="checker exploded") as excinfo:
            await worker.send("analyze")

        assert excinfo.value.code == -32000
        assert excinfo.value.data == {"x": 1}
        assert worker.stats().error_count == 1
    finally:
        await worker.shutdown()


async def test_analyze_parses_results_and_drops_malformed_entries(tmp_path: Path) -> None:
    body = (
        _READY
        + """
for request in requests():
    if request["method"] == "shutdown":
        sys.exit(0)
    params = request["params"]
    reply(request, {"recommendations": [
        {
            "type": "DISK",
            "text": "Drive C: on " + params["context"]["vmId"],
            "actionText": "Clean up",
            "severity": "high",
            "checkerName": params["checker"],
        },
        {"type": "DISK", "text": "", "actionText": "x", "severity": "low"},
    ]})
"""
    )
    worker = _worker(tmp_path, body)
    try:
        await worker.spawn()

        results = await worker.analyze(CheckerContext(vm_id="vm-9"), checker="low-space")

        assert len(results) == 1
        assert results[0].text == "Drive C: on vm-9"
        assert results[0].severity is Severity.HIGH
        assert results[0].checker_name == "low-space"
    finally:
        await worker.shutdown()


async def test_worker_environment_carries_package_identity(tmp_path: Path) -> None:
    body = (
        _READY
        + """
for request in requests():
    if request["method"] == "shutdown":
        sys.exit(0)
    reply(request, {
        key: os.environ.get(key)
        for key in ("PACKAGE_NAME", "PACKAGE_PATH", "PACKAGE_CAPABILITIES", "EXTRA_FLAG")
    })
"""
    )
    worker = _worker(
        tmp_path,
        body,
        options=_options(memory_limit_mb=512),
        env={"EXTRA_FLAG": "on"},
    )
    try:
        await worker.spawn()

        env = await worker.send("env")

        assert env == {
            "PACKAGE_NAME": "disk-check",
            "PACKAGE_PATH": str(tmp_path),
            "PACKAGE_CAPABILITIES": json.dumps({"storage": True}, separators=(",", ":")),
            "EXTRA_FLAG": "on",
        }
        stats = worker.stats()
        assert stats.rss_bytes is not None and stats.rss_bytes > 0
        assert stats.request_count == 1
    finally:
        await worker.shutdown()

    assert worker.stats().rss_bytes is None


async def test_spawn_twice_and_send_without_process_fail(tmp_path: Path) -> None:
    worker = _worker(tmp_path, _ECHO)

    with pytest.raises(WorkerNotRunningError):
        await worker.send("ping")

    try:
        await worker.spawn()
        with pytest.raises(WorkerAlreadyRunningError):
            await worker.spawn()
    finally:
        await worker.shutdown()


async def test_unencodable_request_fails_before_it_is_tracked(tmp_path: Path) -> None:
    worker = _worker(tmp_path, _ECHO, options=_options(request_timeout_seconds=0.2))
    try:
        await worker.spawn()

        with pytest.raises(WorkerCommunicationError, match="cannot encode analyze request"):
            await worker.analyze(
                CheckerContext(vm_id="vm-1", disk_metrics={"C:": {"used": math.nan}})
            )
        with pytest.raises(WorkerCommunicationError, match="cannot encode ping request"):
            await worker.send("ping", {"at": datetime.now(timezone.utc)})  # type: ignore[dict-item]

        assert worker.stats().pending_requests == 0
        await asyncio.sleep(0.4)

        stats = worker.stats()
        assert stats.error_count == 0
        assert stats.request_count == 0
        assert await worker.send("ping") == {"method": "ping", "params": {}}
    finally:
        await worker.shutdown()


async def test_worker_is_not_running_until_ready(tmp_path: Path) -> None:
    worker = _worker(tmp_path, "time.sleep(0.5)\n" + _ECHO)
    spawn = asyncio.create_task(worker.spawn())
    try:
        await _wait_for(lambda: worker.pid is not None)

        assert worker.state is WorkerState.STARTING
        assert not worker.is_running()

        await spawn
        assert worker.is_running()
    finally:
        await worker.shutdown()


async def test_crash_rejects_pending_and_restarts_with_linear_backoff(tmp_path: Path) -> None:
    body = """
marker = os.path.join(sys.argv[1], "started-once")
if os.path.exists(marker):
    sys.exit(7)
open(marker, "w").close()
""" + _READY + """
for request in requests():
    if request["method"] == "analyze":
        sys.exit(3)
    reply(request, {})
"""
    delays: list[float] = []
    exhausted: list[PackageWorker] = []
    done = asyncio.Event()

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    def on_exhausted(worker: PackageWorker) -> None:
        exhausted.append(worker)
        done.set()

    worker = _worker(
        tmp_path,
        body,
        options=_options(restart_base_delay_seconds=1.5, max_restart_attempts=3),
        on_exhausted=on_exhausted,
        sleep=fake_sleep,
    )
    try:
        await worker.spawn()

        with pytest.raises(WorkerCrashError) as excinfo:
            await worker.send("analyze")
        assert excinfo.value.returncode == 3
        assert worker.stats().pending_requests == 0

        await asyncio.wait_for(done.wait(), timeout=15.0)
    finally:
        await worker.shutdown()

    assert delays == [1.5, 3.0, 4.5]
    assert exhausted == [worker]
    assert worker.restart_attempts == 3
    assert worker.state is WorkerState.STOPPED
    assert worker.last_error is not None and "code=7" in worker.last_error


async def test_crash_without_auto_restart_reports_exhaustion(tmp_path: Path) -> None:
    body = _READY + "for request in requests():\n    sys.exit(2)\n"
    exhausted: list[PackageWorker] = []
    worker = _worker(
        tmp_path,
        body,
        options=_options(auto_restart=False),
        on_exhausted=exhausted.append,
    )
    try:
        await worker.spawn()
        with pytest.raises(WorkerCrashError):
            await worker.send("analyze")
        await _wait_for(lambda: bool(exhausted))
    finally:
        await worker.shutdown()

    assert worker.restart_attempts == 0
    assert not worker.is_running()
    assert "code=2" in (worker.last_error or "")


async def test_successful_restart_resets_attempt_counter(tmp_path: Path) -> None:
    body = (
        _READY
        + """
for request in requests():
    if request["method"] == "die":
        sys.exit(1)
    if request["method"] == "shutdown":
        sys.exit(0)
    reply(request, "ok")
"""
    )
    worker = _worker(tmp_path, body)
    try:
        await worker.spawn()
        first_pid = worker.pid

        with pytest.raises(WorkerCrashError):
            await worker.send("die")
        await _wait_for(lambda: worker.state is WorkerState.READY)

        assert worker.pid != first_pid
        assert worker.restart_attempts == 0
        assert await worker.send("ping") == "ok"
    finally:
        await worker.shutdown()


async def test_consecutive_health_failures_force_a_restart(tmp_path: Path) -> None:
    body = (
        _READY
        + """
for request in requests():
    if request["method"] == "health":
        reply(request, {"healthy": False})
    elif request["method"] == "shutdown":
        sys.exit(0)
"""
    )
    worker = _worker(
        tmp_path,
        body,
        options=_options(health_check_interval_seconds=0.05, max_health_failures=3),
    )
    try:
        await worker.spawn()
        first_pid = worker.pid

        await _wait_for(lambda: worker.pid not in (None, first_pid) and worker.is_running())

        assert worker.state in (WorkerState.READY, WorkerState.DEGRADED)
    finally:
        await worker.shutdown()


async def test_alternating_health_never_restarts(tmp_path: Path) -> None:
    body = (
        _READY
        + """
healthy = False
for request in requests():
    if request["method"] == "health":
        reply(request, {"healthy": healthy})
        healthy = not healthy
    elif request["method"] == "shutdown":
        sys.exit(0)
"""
    )
    worker = _worker(
        tmp_path,
        body,
        options=_options(health_check_interval_seconds=0.05, max_health_failures=2),
    )
    try:
        await worker.spawn()
        first_pid = worker.pid

        await _wait_for(lambda: worker.stats().request_count >= 8)

        assert worker.pid == first_pid
        assert worker.restart_attempts == 0
        assert worker.health_failures <= 1
    finally:
        await worker.shutdown()


async def test_graceful_shutdown_does_not_report_exhaustion(tmp_path: Path) -> None:
    exhausted: list[PackageWorker] = []
    worker = _worker(tmp_path, _ECHO, on_exhausted=exhausted.append)
    await worker.spawn()

    await worker.shutdown()

    assert worker.state is WorkerState.STOPPED
    assert exhausted == []


async def test_shutdown_kills_a_worker_that_ignores_the_request(tmp_path: Path) -> None:
    body = _READY + "for request in requests():\n    pass\n"
    worker = _worker(tmp_path, body, options=_options(shutdown_grace_seconds=0.3))
    await worker.spawn()
    loop = asyncio.get_running_loop()
    started = loop.time()

    await worker.shutdown()

    assert loop.time() - started >= 0.25
    assert worker.state is WorkerState.STOPPED
    assert worker.pid is None


def test_options_reject_non_positive_values() -> None:
    with pytest.raises(ValueError, match="request_timeout_seconds"):
        WorkerOptions(request_timeout_seconds=0)
    with pytest.raises(ValueError, match="max_health_failures"):
        WorkerOptions(max_health_failures=0)
    with pytest.raises(ValueError, match="memory_limit_mb"):
        WorkerOptions(memory_limit_mb=0)
