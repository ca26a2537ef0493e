"""
fleetcheck — package execution core public API.

File: src/fleetcheck/packages/__init__.py
Last updated: 2026-10-19

Purpose
- Export the registry, worker supervisor, manifest validator, and license gate.

What should be included in this file
- Stable names used by hosts embedding the package core.

Non-functional requirements
- Importing this package never imports checker code or starts processes.
"""

from fleetcheck.packages.capabilities import (
    CapabilityCheck,
    CapabilityReview,
    check_network_access,
    check_remediation_access,
    check_storage_access,
    describe_capabilities,
    format_capabilities_for_display,
    review_capabilities,
    validate_capabilities,
)
from fleetcheck.packages.errors import (
    CheckerDisabledError,
    CheckerNotFoundError,
    LicenseInvalidError,
    ManifestRejectedError,
    NameCollisionError,
    PackageError,
    PackageNotLoadedError,
    WorkerAlreadyRunningError,
    WorkerCommunicationError,
    WorkerCrashError,
    WorkerError,
    WorkerNotRunningError,
    WorkerRequestError,
    WorkerStartupTimeoutError,
)
from fleetcheck.packages.licensing import (
    LicenseGate,
    LicenseInfo,
    LicenseType,
    LicenseValidationResult,
    LicenseValidator,
    ValidationStatus,
)
from fleetcheck.packages.manifest import (
    ManifestDocument,
    ManifestIssue,
    ManifestValidationError,
    ManifestValidationResult,
    load_manifest,
    read_manifest,
    validate_manifest,
)
from fleetcheck.packages.models import (
    CheckerContext,
    CheckerDefinition,
    CheckerResult,
    DataNeed,
    LoadedPackage,
    PackageCapabilities,
    PackageChecker,
    PackageLicense,
    PackageManifest,
    PackageStatus,
    Severity,
    WorkerState,
    WorkerStats,
)
from fleetcheck.packages.registry import (
    LoadFailure,
    LoadReport,
    PackageRegistry,
    PackageRegistrySettings,
    PackageStore,
)
from fleetcheck.packages.worker import PackageWorker, SupervisedWorker, WorkerOptions

__all__ = [
    "CapabilityCheck",
    "CapabilityReview",
    "CheckerContext",
    "CheckerDefinition",
    "CheckerDisabledError",
    "CheckerNotFoundError",
    "CheckerResult",
    "DataNeed",
    "LicenseGate",
    "LicenseInfo",
    "LicenseInvalidError",
    "LicenseType",
    "LicenseValidationResult",
    "LicenseValidator",
    "LoadFailure",
    "LoadReport",
    "LoadedPackage",
    "ManifestDocument",
    "ManifestIssue",
    "ManifestRejectedError",
    "ManifestValidationError",
    "ManifestValidationResult",
    "NameCollisionError",
    "PackageCapabilities",
    "PackageChecker",
    "PackageError",
    "PackageLicense",
    "PackageManifest",
    "PackageNotLoadedError",
    "PackageRegistry",
    "PackageRegistrySettings",
    "PackageStatus",
    "PackageStore",
    "PackageWorker",
    "Severity",
    "SupervisedWorker",
    "ValidationStatus",
    "WorkerAlreadyRunningError",
    "WorkerCommunicationError",
    "WorkerCrashError",
    "WorkerError",
    "WorkerNotRunningError",
    "WorkerOptions",
    "WorkerRequestError",
    "WorkerStartupTimeoutError",
    "WorkerState",
    "WorkerStats",
    "check_network_access",
    "check_remediation_access",
    "check_storage_access",
    "describe_capabilities",
    "format_capabilities_for_display",
    "load_manifest",
    "read_manifest",
    "review_capabilities",
    "validate_capabilities",
    "validate_manifest",
]
