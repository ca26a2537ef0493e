"""
fleetcheck — persistence layer

File: src/fleetcheck/persistence/__init__.py
Last updated: 2026-10-19

Purpose
- State DB access, migrations, and package/license repositories.

Functional requirements
- Registry reads go through ``PackageRepo``; license checks through ``LicenseRepo``.

Non-functional requirements
- SQLite-first; no heavy DB dependencies.
"""

from fleetcheck.persistence.repositories import (
    CheckerRecord,
    LicenseRecord,
    LicenseRepo,
    PackageRecord,
    PackageRepo,
)
from fleetcheck.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "CheckerRecord",
    "LicenseRecord",
    "LicenseRepo",
    "PackageRecord",
    "PackageRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
