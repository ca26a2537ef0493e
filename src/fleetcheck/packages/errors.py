"""Error taxonomy for package loading, gating, and worker supervision."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleetcheck.packages.manifest import ManifestIssue


class PackageError(RuntimeError):
    """Base error for package registry and worker failures."""


class ManifestRejectedError(PackageError):
    """Raised when a package directory carries an invalid manifest."""

    def __init__(self, package_dir: str, issues: tuple[ManifestIssue, ...]) -> None:
        self.package_dir = package_dir
        self.issues = issues
        rendered = "; ".join(f"{issue.path}: {issue.message}" for issue in issues)
        super().__init__(f"invalid manifest in {package_dir}: {rendered}")


class NameCollisionError(PackageError):
    """Raised when a second package tries to register an already-loaded name."""

    def __init__(self, package_name: str) -> None:
        self.package_name = package_name
        super().__init__(f"Package {package_name} already loaded")


class PackageNotLoadedError(PackageError):
    """Raised when executing against a package that is not registered."""

    def __init__(self, package_name: str) -> None:
        self.package_name = package_name
        super().__init__(f"Package not loaded: {package_name}")


class CheckerNotFoundError(PackageError):
    """Raised when a built-in package does not expose the requested checker."""

    def __init__(self, package_name: str, checker_name: str) -> None:
        self.package_name = package_name
        self.checker_name = checker_name
        super().__init__(f"Checker not found: {checker_name} in {package_name}")


class CheckerDisabledError(PackageError):
    """Skip reason for checkers or packages disabled in persisted metadata."""


class LicenseInvalidError(PackageError):
    """Skip reason for commercial packages without a usable license."""


class WorkerError(PackageError):
    """Base error for external worker supervision."""


class WorkerAlreadyRunningError(WorkerError):
    """Raised by ``spawn`` while a worker process is still live."""


class WorkerNotRunningError(WorkerError):
    """Raised when sending to a worker without a live process."""


class WorkerStartupTimeoutError(WorkerError):
    """Raised when the readiness handshake does not arrive in time."""


class WorkerCommunicationError(WorkerError):
    """Raised when a single request times out or cannot be written."""


class WorkerCrashError(WorkerError):
    """Raised for requests outstanding when the worker process exits."""

    def __init__(self, returncode: int | None, signal_name: str | None) -> None:
        self.returncode = returncode
        self.signal_name = signal_name
        super().__init__(
            f"Worker exited unexpectedly (code={returncode}, signal={signal_name})"
        )


class WorkerRequestError(WorkerError):
    """Raised when the worker answers a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: object = None) -> None:
        self.code = code
        self.data = data
        super().__init__(message)


__all__ = [
    "CheckerDisabledError",
    "CheckerNotFoundError",
    "LicenseInvalidError",
    "ManifestRejectedError",
    "NameCollisionError",
    "PackageError",
    "PackageNotLoadedError",
    "WorkerAlreadyRunningError",
    "WorkerCommunicationError",
    "WorkerCrashError",
    "WorkerError",
    "WorkerNotRunningError",
    "WorkerRequestError",
    "WorkerStartupTimeoutError",
]
