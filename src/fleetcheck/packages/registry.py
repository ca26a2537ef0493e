"""
fleetcheck — package registry

File: src/fleetcheck/packages/registry.py
Last updated: 2026-10-19

Purpose
- Discover built-in and external package directories, load them, and route
  checker execution to in-process checkers or to supervised workers.

What should be included in this file
- ``PackageRegistrySettings`` derived from configuration.
- ``PackageStore`` protocol the persistence layer satisfies.
- ``PackageRegistry`` with load/execute/reload/shutdown/status operations.

Functional requirements
- Package names are unique across built-in and external packages; the first
  registration wins at both load sites.
- One bad package never aborts a scan; one failing checker never aborts a batch.
- Commercial external packages run only with a valid license; a failed gate is an
  empty result, never an exception.
- Settings are re-read from the store on every execution.

Non-functional requirements
- Blocking store and filesystem calls run via ``asyncio.to_thread``.
- Name-map mutation happens only under the registry lock.
"""

from __future__ import annotations

import asyncio
import importlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Final, Protocol

import structlog

from fleetcheck.constants import DEFAULT_BUILTIN_MODULE, DEFAULT_EXTERNAL_ROOT
from fleetcheck.observability.logging import correlation_scope
from fleetcheck.packages.capabilities import validate_capabilities
from fleetcheck.packages.errors import (
    CheckerDisabledError,
    CheckerNotFoundError,
    LicenseInvalidError,
    ManifestRejectedError,
    NameCollisionError,
    PackageNotLoadedError,
)
from fleetcheck.packages.licensing import LicenseGate
from fleetcheck.packages.loader import load_builtin_checker
from fleetcheck.packages.manifest import (
    ManifestDocument,
    ManifestValidationError,
    load_manifest,
)
from fleetcheck.packages.models import (
    CheckerContext,
    CheckerResult,
    JSONValue,
    LoadedPackage,
    PackageChecker,
    PackageLicense,
    PackageManifest,
    PackageStatus,
    Settings,
)
from fleetcheck.packages.worker import PackageWorker, SupervisedWorker, WorkerOptions

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

_logger = structlog.get_logger(__name__)

_SKIPPED_PREFIXES: Final[tuple[str, ...]] = ("_", ".")
_WORKER_OPTION_NAMES: Final[frozenset[str]] = frozenset(
    item.name for item in fields(WorkerOptions)
)

ExhaustedCallback = Callable[[SupervisedWorker], None]
WorkerFactory = Callable[
    [Path, PackageManifest, WorkerOptions, ExhaustedCallback], SupervisedWorker
]


class StoredPackage(Protocol):
    """Fields of a persisted package record the registry reads."""

    @property
    def license(self) -> PackageLicense: ...

    @property
    def is_builtin(self) -> bool: ...

    @property
    def is_enabled(self) -> bool: ...


class PackageStore(Protocol):
    """Synchronous persistence surface; the registry calls it off the event loop."""

    def upsert_package(
        self, manifest: PackageManifest, manifest_hash: str, *, is_builtin: bool
    ) -> object: ...

    def get_package(self, name: str) -> StoredPackage | None: ...

    def is_checker_enabled(self, package_name: str, checker_name: str) -> bool: ...

    def get_settings(self, package_name: str) -> dict[str, JSONValue]: ...

    def set_settings(self, package_name: str, settings: Mapping[str, JSONValue]) -> bool: ...

    def set_package_enabled(self, package_name: str, enabled: bool) -> bool: ...

    def set_checker_enabled(self, package_name: str, checker_name: str, enabled: bool) -> bool: ...


@dataclass(frozen=True, slots=True)
class PackageRegistrySettings:
    builtin_module: str = DEFAULT_BUILTIN_MODULE
    external_root: Path = Path(DEFAULT_EXTERNAL_ROOT)
    worker_options: WorkerOptions = field(default_factory=WorkerOptions)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> PackageRegistrySettings:
        packages = config.get("packages", {})
        workers = config.get("workers", {})
        options = WorkerOptions(
            **{key: value for key, value in workers.items() if key in _WORKER_OPTION_NAMES}
        )
        return cls(
            builtin_module=str(packages.get("builtin_module", DEFAULT_BUILTIN_MODULE)),
            external_root=Path(packages.get("external_root", DEFAULT_EXTERNAL_ROOT)),
            worker_options=options,
        )


@dataclass(frozen=True, slots=True)
class LoadFailure:
    path: str
    error: str


@dataclass(frozen=True, slots=True)
class LoadReport:
    """Outcome of one ``load_all`` pass."""

    loaded: tuple[str, ...] = ()
    failures: tuple[LoadFailure, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(slots=True)
class _ExternalPackage:
    manifest: PackageManifest
    path: Path
    worker: SupervisedWorker
    manifest_hash: str
    loaded_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def _default_worker_factory(
    path: Path,
    manifest: PackageManifest,
    options: WorkerOptions,
    on_exhausted: ExhaustedCallback,
) -> SupervisedWorker:
    return PackageWorker(path, manifest, options=options, on_exhausted=on_exhausted)


def _candidate_dirs(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(
        entry
        for entry in root.iterdir()
        if entry.is_dir() and not entry.name.startswith(_SKIPPED_PREFIXES)
    )


class PackageRegistry:
    """Owns every loaded package and the worker of each external one."""

    def __init__(
        self,
        store: PackageStore,
        license_gate: LicenseGate,
        settings: PackageRegistrySettings | None = None,
        *,
        worker_factory: WorkerFactory | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._license_gate = license_gate
        self._settings = settings or PackageRegistrySettings()
        self._worker_factory = worker_factory or _default_worker_factory
        self._logger = logger or _logger
        self._builtin: dict[str, LoadedPackage] = {}
        self._external: dict[str, _ExternalPackage] = {}
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> PackageRegistrySettings:
        return self._settings

    def builtin_root(self) -> Path:
        module = importlib.import_module(self._settings.builtin_module)
        locations = list(getattr(module, "__path__", ()))
        if not locations:
            raise ValueError(f"{self._settings.builtin_module} is not a package")
        return Path(locations[0])

    async def load_all(self) -> LoadReport:
        """Scan both roots and load every valid package."""

        async with self._lock:
            return await self._load_all_locked()

    async def load_builtin_package(self, package_dir: Path) -> LoadedPackage:
        async with self._lock:
            return await self._load_builtin(package_dir)

    async def load_external_package(self, package_dir: Path) -> str:
        """Load one external package; spawn failures propagate to the caller."""

        async with self._lock:
            return await self._load_external(package_dir)

    async def execute_checker(
        self,
        package_name: str,
        checker_name: str,
        context: CheckerContext,
    ) -> list[CheckerResult]:
        """Run one checker; disabled or unlicensed targets yield an empty list."""

        with correlation_scope(vm_id=context.vm_id, package=package_name):
            try:
                return await self._dispatch(package_name, checker_name, context)
            except (CheckerDisabledError, LicenseInvalidError) as skip:
                self._logger.info("checker_skipped", checker=checker_name, reason=str(skip))
                return []

    async def run_all_checkers(self, context: CheckerContext) -> list[CheckerResult]:
        """Run every enabled checker of every enabled package; failures are skipped."""

        targets: list[tuple[str, str]] = []
        for name, package in list(self._builtin.items()):
            targets.extend((name, checker) for checker in package.checkers)
        for name, external in list(self._external.items()):
            targets.extend((name, definition.name) for definition in external.manifest.checkers)

        results: list[CheckerResult] = []
        enabled: dict[str, bool] = {}
        for package_name, checker_name in targets:
            if package_name not in enabled:
                record = await asyncio.to_thread(self._store.get_package, package_name)
                enabled[package_name] = record is not None and record.is_enabled
            if not enabled[package_name]:
                continue
            try:
                results.extend(await self.execute_checker(package_name, checker_name, context))
            except Exception as exc:  # noqa: BLE001 - one checker never aborts the batch
                self._logger.error(
                    "checker_execution_failed",
                    vm_id=context.vm_id,
                    package=package_name,
                    checker=checker_name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        return results

    async def reload(self) -> LoadReport:
        async with self._lock:
            await self._shutdown_workers()
            self._builtin.clear()
            return await self._load_all_locked()

    async def shutdown(self) -> None:
        async with self._lock:
            await self._shutdown_workers()

    async def get_package_statuses(self) -> list[PackageStatus]:
        builtin = list(self._builtin.values())
        external = list(self._external.items())
        statuses: list[PackageStatus] = []
        for package in builtin:
            record = await asyncio.to_thread(self._store.get_package, package.manifest.name)
            statuses.append(
                PackageStatus(
                    name=package.manifest.name,
                    version=package.manifest.version,
                    is_loaded=True,
                    is_enabled=record is not None and record.is_enabled,
                    is_builtin=True,
                    checker_count=len(package.checkers),
                    loaded_at=package.loaded_at,
                )
            )
        for name, entry in external:
            record = await asyncio.to_thread(self._store.get_package, name)
            statuses.append(
                PackageStatus(
                    name=name,
                    version=entry.manifest.version,
                    is_loaded=entry.worker.is_running(),
                    is_enabled=record is not None and record.is_enabled,
                    is_builtin=False,
                    checker_count=len(entry.manifest.checkers),
                    loaded_at=entry.loaded_at,
                    last_error=entry.worker.last_error,
                )
            )
        return sorted(statuses, key=lambda status: status.name)

    def get_package(self, name: str) -> LoadedPackage | None:
        return self._builtin.get(name)

    def is_package_loaded(self, name: str) -> bool:
        return name in self._builtin or name in self._external

    def is_external_package_running(self, name: str) -> bool:
        entry = self._external.get(name)
        return entry is not None and entry.worker.is_running()

    async def configure_package(self, name: str, settings: Settings) -> bool:
        """Persist settings and push them to the running worker, if any."""

        if not await asyncio.to_thread(self._store.set_settings, name, dict(settings)):
            return False
        entry = self._external.get(name)
        if entry is not None and entry.worker.is_running():
            merged = await self._merged_settings(entry.manifest)
            await entry.worker.configure(merged)
        return True

    async def set_package_enabled(self, name: str, enabled: bool) -> bool:
        return await asyncio.to_thread(self._store.set_package_enabled, name, enabled)

    async def set_checker_enabled(self, name: str, checker_name: str, enabled: bool) -> bool:
        return await asyncio.to_thread(
            self._store.set_checker_enabled, name, checker_name, enabled
        )

    async def _load_all_locked(self) -> LoadReport:
        loaded: list[str] = []
        failures: list[LoadFailure] = []

        try:
            builtin_dirs = await asyncio.to_thread(_candidate_dirs, self.builtin_root())
        except (ImportError, ValueError, OSError) as exc:
            self._logger.error(
                "builtin_root_unavailable",
                builtin_module=self._settings.builtin_module,
                error=str(exc),
            )
            builtin_dirs = []
        for package_dir in builtin_dirs:
            try:
                package = await self._load_builtin(package_dir)
            except Exception as exc:  # noqa: BLE001 - isolate per-package failures
                failures.append(self._load_failed(package_dir, exc, is_builtin=True))
                continue
            loaded.append(package.manifest.name)

        external_root = self._settings.external_root
        try:
            external_dirs = await asyncio.to_thread(_candidate_dirs, external_root)
        except OSError as exc:
            self._logger.error("external_root_unavailable", root=str(external_root), error=str(exc))
            external_dirs = []
        for package_dir in external_dirs:
            try:
                loaded.append(await self._load_external(package_dir))
            except Exception as exc:  # noqa: BLE001 - isolate per-package failures
                failures.append(self._load_failed(package_dir, exc, is_builtin=False))

        self._logger.info(
            "packages_loaded",
            builtin=len(self._builtin),
            external=len(self._external),
            failed=len(failures),
        )
        return LoadReport(loaded=tuple(loaded), failures=tuple(failures))

    async def _read_manifest(
        self, package_dir: Path
    ) -> tuple[PackageManifest, ManifestDocument]:
        try:
            return await asyncio.to_thread(load_manifest, package_dir)
        except ManifestValidationError as exc:
            raise ManifestRejectedError(str(package_dir), exc.issues) from exc

    async def _load_builtin(self, package_dir: Path) -> LoadedPackage:
        manifest, document = await self._read_manifest(package_dir)
        self._claim_name(manifest.name)
        self._review_capabilities(manifest)

        checkers: dict[str, PackageChecker] = {}
        for definition in manifest.checkers:
            try:
                checkers[definition.name] = load_builtin_checker(
                    self._settings.builtin_module, package_dir, definition.file
                )
            except Exception as exc:  # noqa: BLE001 - skip the checker, keep the package
                self._logger.error(
                    "checker_load_failed",
                    package=manifest.name,
                    checker=definition.name,
                    file=definition.file,
                    error=str(exc),
                )

        await asyncio.to_thread(
            self._store.upsert_package, manifest, document.content_hash, is_builtin=True
        )
        package = LoadedPackage(
            manifest=manifest,
            path=package_dir,
            is_builtin=True,
            checkers=checkers,
            manifest_hash=document.content_hash,
        )
        self._builtin[manifest.name] = package
        self._logger.info(
            "builtin_package_loaded",
            package=manifest.name,
            version=manifest.version,
            checkers=sorted(checkers),
        )
        return package

    async def _load_external(self, package_dir: Path) -> str:
        manifest, document = await self._read_manifest(package_dir)
        self._claim_name(manifest.name)
        self._review_capabilities(manifest)

        worker = self._worker_factory(
            package_dir, manifest, self._settings.worker_options, self._on_worker_exhausted
        )
        await worker.spawn()
        try:
            await asyncio.to_thread(
                self._store.upsert_package, manifest, document.content_hash, is_builtin=False
            )
        except BaseException:
            await worker.shutdown()
            raise
        self._external[manifest.name] = _ExternalPackage(
            manifest=manifest,
            path=package_dir,
            worker=worker,
            manifest_hash=document.content_hash,
        )
        self._logger.info(
            "external_package_loaded", package=manifest.name, version=manifest.version
        )
        return manifest.name

    async def _dispatch(
        self,
        package_name: str,
        checker_name: str,
        context: CheckerContext,
    ) -> list[CheckerResult]:
        external = self._external.get(package_name)
        if external is not None:
            return await self._execute_external(external, checker_name, context)

        package = self._builtin.get(package_name)
        if package is None:
            raise PackageNotLoadedError(package_name)
        checker = package.checkers.get(checker_name)
        if checker is None:
            raise CheckerNotFoundError(package_name, checker_name)
        await self._require_package_enabled(package_name)
        await self._require_checker_enabled(package_name, checker_name)

        merged = await self._merged_settings(package.manifest)
        results = await checker.analyze(context.with_settings(merged))
        return [
            result.tagged(package_name=package_name, checker_name=checker_name)
            for result in results
        ]

    async def _execute_external(
        self,
        external: _ExternalPackage,
        checker_name: str,
        context: CheckerContext,
    ) -> list[CheckerResult]:
        package_name = external.manifest.name
        if not await self._has_valid_license(package_name):
            raise LicenseInvalidError(f"Package {package_name} has no valid license")

        await self._require_package_enabled(package_name)
        if external.manifest.checker(checker_name) is None:
            raise CheckerNotFoundError(package_name, checker_name)
        await self._require_checker_enabled(package_name, checker_name)

        merged = await self._merged_settings(external.manifest)
        return await external.worker.analyze(context.with_settings(merged), checker=checker_name)

    async def _require_package_enabled(self, package_name: str) -> None:
        record = await asyncio.to_thread(self._store.get_package, package_name)
        if record is None or not record.is_enabled:
            raise CheckerDisabledError(f"Package disabled: {package_name}")

    async def _require_checker_enabled(self, package_name: str, checker_name: str) -> None:
        if not await asyncio.to_thread(
            self._store.is_checker_enabled, package_name, checker_name
        ):
            raise CheckerDisabledError(f"Checker disabled: {checker_name} in {package_name}")

    async def _has_valid_license(self, package_name: str) -> bool:
        record = await asyncio.to_thread(self._store.get_package, package_name)
        if record is None or record.license == PackageLicense.OPEN_SOURCE or record.is_builtin:
            return True
        try:
            result = await self._license_gate.check_package_license(package_name)
        except Exception as exc:  # noqa: BLE001 - a broken gate counts as no license
            self._logger.error("license_check_failed", package=package_name, error=str(exc))
            return False
        if not result.is_valid:
            self._logger.warning(
                "license_invalid",
                package=package_name,
                status=str(result.status),
                reason=result.message,
            )
        return result.is_valid

    async def _merged_settings(self, manifest: PackageManifest) -> dict[str, JSONValue]:
        stored = await asyncio.to_thread(self._store.get_settings, manifest.name)
        return {**manifest.default_settings(), **stored}

    async def _shutdown_workers(self) -> None:
        entries = list(self._external.items())
        self._logger.info("workers_shutting_down", count=len(entries))
        outcomes = await asyncio.gather(
            *(entry.worker.shutdown() for _, entry in entries), return_exceptions=True
        )
        for (name, _), outcome in zip(entries, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                self._logger.error("worker_shutdown_failed", package=name, error=str(outcome))
        self._external.clear()

    def _claim_name(self, name: str) -> None:
        if name in self._builtin or name in self._external:
            raise NameCollisionError(name)

    def _review_capabilities(self, manifest: PackageManifest) -> None:
        for warning in validate_capabilities(manifest.capabilities):
            self._logger.warning("capability_warning", package=manifest.name, warning=warning)

    def _load_failed(self, package_dir: Path, exc: Exception, *, is_builtin: bool) -> LoadFailure:
        self._logger.error(
            "package_load_failed",
            path=str(package_dir),
            builtin=is_builtin,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return LoadFailure(path=str(package_dir), error=str(exc))

    def _on_worker_exhausted(self, worker: SupervisedWorker) -> None:
        entry = self._external.get(worker.name)
        if entry is not None and entry.worker is worker:
            del self._external[worker.name]
            self._logger.error(
                "external_package_dropped", package=worker.name, reason=worker.last_error
            )


__all__ = [
    "LoadFailure",
    "LoadReport",
    "PackageRegistry",
    "PackageRegistrySettings",
    "PackageStore",
    "StoredPackage",
    "WorkerFactory",
]
