"""Stable constants shared across the package execution core."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Package layout.
MANIFEST_FILENAMES: Final[tuple[str, ...]] = ("manifest.json", "manifest.yaml", "manifest.yml")
DEFAULT_BUILTIN_MODULE: Final[str] = "fleetcheck.builtin_packages"
DEFAULT_EXTERNAL_ROOT: Final[PurePosixPath] = PurePosixPath("/var/lib/fleetcheck/packages")
DEFAULT_STATE_DB: Final[PurePosixPath] = PurePosixPath("state/fleetcheck.sqlite")

# Worker supervision defaults (seconds unless noted).
DEFAULT_REQUEST_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_READY_TIMEOUT_SECONDS: Final[float] = 10.0
DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS: Final[float] = 30.0
DEFAULT_MAX_HEALTH_FAILURES: Final[int] = 3
DEFAULT_MAX_RESTART_ATTEMPTS: Final[int] = 3
DEFAULT_RESTART_BASE_DELAY_SECONDS: Final[float] = 1.0
DEFAULT_SHUTDOWN_GRACE_SECONDS: Final[float] = 5.0
DEFAULT_MEMORY_LIMIT_MB: Final[int] = 512

# Worker process environment.
ENV_PACKAGE_PATH: Final[str] = "PACKAGE_PATH"
ENV_PACKAGE_NAME: Final[str] = "PACKAGE_NAME"
ENV_PACKAGE_CAPABILITIES: Final[str] = "PACKAGE_CAPABILITIES"

# Licensing.
DEFAULT_LICENSE_SECRET_ENV: Final[str] = "FLEETCHECK_LICENSE_SECRET"
DEFAULT_LICENSE_SECRET: Final[str] = "fleetcheck-default-license-secret"
LICENSE_GRACE_PERIOD_DAYS: Final[int] = 7
TRIAL_LICENSE_DAYS: Final[int] = 30
DEVELOPMENT_LICENSE_DAYS: Final[int] = 365

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BUILTIN_MODULE",
    "DEFAULT_EXTERNAL_ROOT",
    "DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS",
    "DEFAULT_LICENSE_SECRET",
    "DEFAULT_LICENSE_SECRET_ENV",
    "DEFAULT_MAX_HEALTH_FAILURES",
    "DEFAULT_MAX_RESTART_ATTEMPTS",
    "DEFAULT_MEMORY_LIMIT_MB",
    "DEFAULT_READY_TIMEOUT_SECONDS",
    "DEFAULT_REQUEST_TIMEOUT_SECONDS",
    "DEFAULT_RESTART_BASE_DELAY_SECONDS",
    "DEFAULT_SHUTDOWN_GRACE_SECONDS",
    "DEFAULT_STATE_DB",
    "DEVELOPMENT_LICENSE_DAYS",
    "ENV_PACKAGE_CAPABILITIES",
    "ENV_PACKAGE_NAME",
    "ENV_PACKAGE_PATH",
    "LICENSE_GRACE_PERIOD_DAYS",
    "MANIFEST_FILENAMES",
    "STATE_DB_SCHEMA_VERSION",
    "TRIAL_LICENSE_DAYS",
]
