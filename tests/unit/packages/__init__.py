"""Shared builders and fakes for package execution core tests."""

from __future__ import annotations

import copy
import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from fleetcheck.packages.licensing import LicenseValidationResult, ValidationStatus
from fleetcheck.packages.manifest import validate_manifest
from fleetcheck.packages.models import (
    CheckerContext,
    CheckerResult,
    JSONValue,
    PackageLicense,
    PackageManifest,
    Settings,
    WorkerState,
    WorkerStats,
)

if TYPE_CHECKING:
    from pathlib import Path

    from fleetcheck.packages.worker import WorkerOptions

# Prelude for throwaway worker scripts; compact separators keep the ready marker literal.
WORKER_SCRIPT_PRELUDE = textwrap.dedent(
    """
    import json
    import os
    import sys
    import time

    def emit(payload):
        sys.stdout.write(json.dumps(payload, separators=(",", ":")) + "\\n")
        sys.stdout.flush()

    def reply(request, result):
        emit({"jsonrpc": "2.0", "id": request["id"], "result": result})

    def requests():
        while True:
            line = sys.stdin.readline()
            if not line:
                return
            yield json.loads(line)
    """
)


def manifest_payload(**overrides: object) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": "disk-check",
        "version": "1.0.0",
        "displayName": "Disk Check",
        "author": "acme",
        "license": "open-source",
        "checkers": [{"name": "low-space", "file": "check.py", "type": "disk"}],
    }
    payload.update(copy.deepcopy(overrides))
    return payload


def make_manifest(**overrides: object) -> PackageManifest:
    result = validate_manifest(manifest_payload(**overrides))
    assert result.manifest is not None, result.issues
    return result.manifest


def write_package(
    root: Path,
    directory: str,
    manifest: Mapping[str, object],
    files: Mapping[str, str] | None = None,
) -> Path:
    package_dir = root / directory
    package_dir.mkdir(parents=True, exist_ok=True)
    (package_dir / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    for relative, source in (files or {}).items():
        target = package_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(textwrap.dedent(source), encoding="utf-8")
    return package_dir


def write_worker_script(directory: Path, body: str, *, name: str = "worker.py") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    script = directory / name
    script.write_text(WORKER_SCRIPT_PRELUDE + textwrap.dedent(body), encoding="utf-8")
    return script


def result(text: str, *, severity: str = "medium", **data: JSONValue) -> CheckerResult:
    return CheckerResult.from_wire(
        {"type": "TEST", "text": text, "actionText": "act", "severity": severity, "data": data}
    )


@dataclass
class FakeRecord:
    license: PackageLicense = PackageLicense.OPEN_SOURCE
    is_builtin: bool = False
    is_enabled: bool = True


@dataclass
class FakeStore:
    """In-memory ``PackageStore``; admin state survives repeated upserts."""

    records: dict[str, FakeRecord] = field(default_factory=dict)
    settings: dict[str, dict[str, JSONValue]] = field(default_factory=dict)
    disabled_checkers: set[tuple[str, str]] = field(default_factory=set)
    upserts: list[tuple[str, bool]] = field(default_factory=list)
    fail_upsert: bool = False

    def upsert_package(
        self, manifest: PackageManifest, manifest_hash: str, *, is_builtin: bool
    ) -> FakeRecord:
        if self.fail_upsert:
            raise RuntimeError("store unavailable")
        self.upserts.append((manifest.name, is_builtin))
        record = self.records.get(manifest.name)
        if record is None:
            record = FakeRecord(license=manifest.license, is_builtin=is_builtin)
            self.records[manifest.name] = record
        else:
            record.license = manifest.license
        return record

    def get_package(self, name: str) -> FakeRecord | None:
        return self.records.get(name)

    def is_checker_enabled(self, package_name: str, checker_name: str) -> bool:
        return (
            package_name in self.records
            and (package_name, checker_name) not in self.disabled_checkers
        )

    def get_settings(self, package_name: str) -> dict[str, JSONValue]:
        return dict(self.settings.get(package_name, {}))

    def set_settings(self, package_name: str, settings: Mapping[str, JSONValue]) -> bool:
        if package_name not in self.records:
            return False
        self.settings[package_name] = dict(settings)
        return True

    def set_package_enabled(self, package_name: str, enabled: bool) -> bool:
        record = self.records.get(package_name)
        if record is None:
            return False
        record.is_enabled = enabled
        return True

    def set_checker_enabled(self, package_name: str, checker_name: str, enabled: bool) -> bool:
        if package_name not in self.records:
            return False
        if enabled:
            self.disabled_checkers.discard((package_name, checker_name))
        else:
            self.disabled_checkers.add((package_name, checker_name))
        return True


class FakeGate:
    """License gate answering from a fixed verdict (or raising it)."""

    def __init__(self, verdict: bool | Exception = True) -> None:
        self.verdict = verdict
        self.calls: list[str] = []

    async def check_package_license(self, package_name: str) -> LicenseValidationResult:
        self.calls.append(package_name)
        if isinstance(self.verdict, Exception):
            raise self.verdict
        if self.verdict:
            return LicenseValidationResult(True, ValidationStatus.VALID, "License is valid")
        return LicenseValidationResult(
            False, ValidationStatus.INVALID, "Commercial package requires a valid license"
        )


class FakeWorker:
    """``SupervisedWorker`` double that records every interaction."""

    def __init__(
        self,
        manifest: PackageManifest,
        *,
        results: Sequence[CheckerResult] = (),
        analyze_error: Exception | None = None,
        spawn_error: Exception | None = None,
        shutdown_error: Exception | None = None,
        on_exhausted: Any = None,
    ) -> None:
        self.manifest = manifest
        self.results = list(results)
        self.analyze_error = analyze_error
        self.spawn_error = spawn_error
        self.shutdown_error = shutdown_error
        self.on_exhausted = on_exhausted
        self.analyze_calls: list[tuple[CheckerContext, str | None]] = []
        self.configure_calls: list[dict[str, JSONValue]] = []
        self.shutdown_calls = 0
        self.running = False
        self._state = WorkerState.UNSTARTED
        self._last_error: str | None = None

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def spawn(self) -> None:
        if self.spawn_error is not None:
            self._state = WorkerState.STOPPED
            self._last_error = str(self.spawn_error)
            raise self.spawn_error
        self.running = True
        self._state = WorkerState.READY

    async def analyze(
        self,
        context: CheckerContext,
        *,
        checker: str | None = None,
    ) -> list[CheckerResult]:
        self.analyze_calls.append((context, checker))
        if self.analyze_error is not None:
            raise self.analyze_error
        return [
            item.tagged(package_name=self.name, checker_name=checker) for item in self.results
        ]

    async def configure(self, settings: Settings) -> None:
        self.configure_calls.append(dict(settings))

    async def health(self) -> bool:
        return self.running

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        self.running = False
        self._state = WorkerState.STOPPED
        if self.shutdown_error is not None:
            raise self.shutdown_error

    def is_running(self) -> bool:
        return self.running

    def stats(self) -> WorkerStats:
        return WorkerStats(0.0, len(self.analyze_calls), 0, 0, 0)

    def crash_for_good(self, reason: str) -> None:
        self.running = False
        self._state = WorkerState.STOPPED
        self._last_error = reason
        if self.on_exhausted is not None:
            self.on_exhausted(self)


class FakeWorkerFactory:
    """Worker factory handing out ``FakeWorker`` instances configured per package."""

    def __init__(self) -> None:
        self.created: list[FakeWorker] = []
        self.overrides: dict[str, dict[str, Any]] = {}

    def configure(self, package_name: str, **kwargs: Any) -> None:
        self.overrides[package_name] = kwargs

    def __call__(
        self,
        path: Path,
        manifest: PackageManifest,
        options: WorkerOptions,
        on_exhausted: Any,
    ) -> FakeWorker:
        worker = FakeWorker(
            manifest, on_exhausted=on_exhausted, **self.overrides.get(manifest.name, {})
        )
        self.created.append(worker)
        return worker

    def latest(self, package_name: str) -> FakeWorker:
        for worker in reversed(self.created):
            if worker.name == package_name:
                return worker
        raise KeyError(package_name)
