"""
fleetcheck — repositories

File: src/fleetcheck/persistence/repositories.py
Last updated: 2026-10-19

Purpose
- Read/write package, checker, and license records in the state DB.

What should be included in this file
- ``PackageRepo``: manifest sync, enabled flags, and admin settings.
- ``LicenseRepo``: license activation records and validation status updates.

Functional requirements
- Manifest sync upserts packages and checkers; it never deletes checkers and
  never overwrites admin-configured settings or enabled flags.
- Unknown package or checker names read as "absent" rather than raising.

Non-functional requirements
- Each write runs in a single transaction.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, cast

from fleetcheck.packages.models import (
    JSONValue,
    PackageCapabilities,
    PackageLicense,
    PackageManifest,
)
from fleetcheck.persistence.state_db import (
    RowValue,
    StateDB,
    StateDBError,
    _utc_now_iso,
    canonical_json,
)

if TYPE_CHECKING:
    import sqlite3


@dataclass(frozen=True, slots=True)
class PackageRecord:
    id: int
    name: str
    version: str
    display_name: str
    author: str
    license: PackageLicense
    is_builtin: bool
    is_enabled: bool
    manifest_hash: str
    description: str | None = None
    capabilities: PackageCapabilities = field(default_factory=PackageCapabilities)
    settings: dict[str, JSONValue] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True, slots=True)
class CheckerRecord:
    package_name: str
    name: str
    type: str
    data_needs: tuple[str, ...]
    is_enabled: bool


@dataclass(frozen=True, slots=True)
class LicenseRecord:
    id: int
    package_id: int
    package_name: str
    license_key: str
    license_type: str
    issued_at: datetime
    is_valid: bool
    validation_status: str
    expires_at: datetime | None = None
    last_validated_at: datetime | None = None
    grace_period_ends: datetime | None = None


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()


class PackageRepo(_BaseRepo):
    """Package and checker metadata; satisfies the registry's ``PackageStore``."""

    def upsert_package(
        self,
        manifest: PackageManifest,
        manifest_hash: str,
        *,
        is_builtin: bool,
    ) -> PackageRecord:
        now = _utc_now_iso()
        with self._db.transaction() as tx:
            self._db.execute(
                """
                INSERT INTO packages (
                    name, version, display_name, description, author, license,
                    is_builtin, is_enabled, capabilities_json, settings_json,
                    manifest_hash, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, '{}', ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    version = excluded.version,
                    display_name = excluded.display_name,
                    description = excluded.description,
                    author = excluded.author,
                    license = excluded.license,
                    capabilities_json = excluded.capabilities_json,
                    manifest_hash = excluded.manifest_hash,
                    updated_at = excluded.updated_at
                """,
                (
                    manifest.name,
                    manifest.version,
                    manifest.display_name,
                    manifest.description,
                    manifest.author,
                    manifest.license.value,
                    int(is_builtin),
                    canonical_json(manifest.capabilities.to_dict()),
                    manifest_hash,
                    now,
                    now,
                ),
                conn=tx,
            )
            package_id = self._package_id(manifest.name, conn=tx)
            assert package_id is not None
            for checker in manifest.checkers:
                self._db.execute(
                    """
                    INSERT INTO package_checkers (package_id, name, type, data_needs_json)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(package_id, name) DO UPDATE SET
                        type = excluded.type,
                        data_needs_json = excluded.data_needs_json
                    """,
                    (
                        package_id,
                        checker.name,
                        checker.type,
                        canonical_json([need.value for need in checker.data_needs]),
                    ),
                    conn=tx,
                )
            record = self._get_package(manifest.name, conn=tx)
        assert record is not None
        return record

    def get_package(self, name: str) -> PackageRecord | None:
        return self._get_package(name)

    def list_packages(self) -> list[PackageRecord]:
        rows = self._db.query_all("SELECT * FROM packages ORDER BY name ASC")
        return [_package_from_row(row) for row in rows]

    def list_checkers(self, package_name: str) -> list[CheckerRecord]:
        rows = self._db.query_all(
            """
            SELECT p.name AS package_name, c.name, c.type, c.data_needs_json, c.is_enabled
            FROM package_checkers c JOIN packages p ON p.id = c.package_id
            WHERE p.name = ?
            ORDER BY c.name ASC
            """,
            (package_name,),
        )
        return [
            CheckerRecord(
                package_name=_text(row, "package_name"),
                name=_text(row, "name"),
                type=_text(row, "type"),
                data_needs=tuple(json.loads(_text(row, "data_needs_json"))),
                is_enabled=bool(row["is_enabled"]),
            )
            for row in rows
        ]

    def is_checker_enabled(self, package_name: str, checker_name: str) -> bool:
        row = self._db.query_one(
            """
            SELECT c.is_enabled
            FROM package_checkers c JOIN packages p ON p.id = c.package_id
            WHERE p.name = ? AND c.name = ?
            """,
            (package_name, checker_name),
        )
        return row is not None and bool(row["is_enabled"])

    def get_settings(self, package_name: str) -> dict[str, JSONValue]:
        row = self._db.query_one(
            "SELECT settings_json FROM packages WHERE name = ?", (package_name,)
        )
        if row is None:
            return {}
        return _settings_from_json(_text(row, "settings_json"))

    def set_settings(self, package_name: str, settings: Mapping[str, JSONValue]) -> bool:
        updated = self._db.execute(
            "UPDATE packages SET settings_json = ?, updated_at = ? WHERE name = ?",
            (canonical_json(dict(settings)), _utc_now_iso(), package_name),
        )
        return updated > 0

    def set_package_enabled(self, package_name: str, enabled: bool) -> bool:
        updated = self._db.execute(
            "UPDATE packages SET is_enabled = ?, updated_at = ? WHERE name = ?",
            (int(enabled), _utc_now_iso(), package_name),
        )
        return updated > 0

    def set_checker_enabled(self, package_name: str, checker_name: str, enabled: bool) -> bool:
        updated = self._db.execute(
            """
            UPDATE package_checkers SET is_enabled = ?
            WHERE name = ? AND package_id = (SELECT id FROM packages WHERE name = ?)
            """,
            (int(enabled), checker_name, package_name),
        )
        return updated > 0

    def _package_id(self, name: str, *, conn: sqlite3.Connection | None = None) -> int | None:
        row = self._db.query_one("SELECT id FROM packages WHERE name = ?", (name,), conn=conn)
        if row is None:
            return None
        return _int(row, "id")

    def _get_package(
        self,
        name: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> PackageRecord | None:
        row = self._db.query_one("SELECT * FROM packages WHERE name = ?", (name,), conn=conn)
        return None if row is None else _package_from_row(row)


class LicenseRepo(_BaseRepo):
    """License activation records keyed by package."""

    def get_for_package(self, package_name: str) -> LicenseRecord | None:
        return self._get_one("p.name = ?", (package_name,))

    def find_by_key(self, license_key: str) -> LicenseRecord | None:
        return self._get_one("l.license_key = ?", (license_key,))

    def list_all(self) -> list[LicenseRecord]:
        rows = self._db.query_all(
            """
            SELECT l.*, p.name AS package_name
            FROM package_licenses l JOIN packages p ON p.id = l.package_id
            ORDER BY p.name ASC
            """
        )
        return [_license_from_row(row) for row in rows]

    def activate(
        self,
        *,
        package_id: int,
        license_key: str,
        license_type: str,
        issued_at: datetime,
        expires_at: datetime | None,
    ) -> None:
        issued = _to_iso(issued_at)
        self._db.execute(
            """
            INSERT INTO package_licenses (
                package_id, license_key, license_type, issued_at, expires_at,
                last_validated_at, grace_period_ends, is_valid, validation_status
            )
            VALUES (?, ?, ?, ?, ?, ?, NULL, 1, 'valid')
            ON CONFLICT(package_id) DO UPDATE SET
                license_key = excluded.license_key,
                license_type = excluded.license_type,
                issued_at = excluded.issued_at,
                expires_at = excluded.expires_at,
                last_validated_at = excluded.last_validated_at,
                grace_period_ends = NULL,
                is_valid = 1,
                validation_status = 'valid'
            """,
            (
                package_id,
                license_key,
                license_type,
                issued,
                None if expires_at is None else _to_iso(expires_at),
                issued,
            ),
        )

    def set_status(self, license_id: int, *, status: str, is_valid: bool) -> None:
        self._db.execute(
            "UPDATE package_licenses SET validation_status = ?, is_valid = ? WHERE id = ?",
            (status, int(is_valid), license_id),
        )

    def mark_validated(self, license_id: int, at: datetime) -> None:
        self._db.execute(
            "UPDATE package_licenses SET last_validated_at = ? WHERE id = ?",
            (_to_iso(at), license_id),
        )

    def set_grace_period(self, license_id: int, ends_at: datetime) -> None:
        self._db.execute(
            """
            UPDATE package_licenses
            SET grace_period_ends = ?, validation_status = 'grace_period'
            WHERE id = ?
            """,
            (_to_iso(ends_at), license_id),
        )

    def _get_one(self, where: str, params: tuple[str, ...]) -> LicenseRecord | None:
        row = self._db.query_one(
            f"""
            SELECT l.*, p.name AS package_name
            FROM package_licenses l JOIN packages p ON p.id = l.package_id
            WHERE {where}
            """,
            params,
        )
        return None if row is None else _license_from_row(row)


def _package_from_row(row: Mapping[str, RowValue]) -> PackageRecord:
    capabilities = json.loads(_text(row, "capabilities_json"))
    return PackageRecord(
        id=_int(row, "id"),
        name=_text(row, "name"),
        version=_text(row, "version"),
        display_name=_text(row, "display_name"),
        author=_text(row, "author"),
        license=PackageLicense(_text(row, "license")),
        is_builtin=bool(row["is_builtin"]),
        is_enabled=bool(row["is_enabled"]),
        manifest_hash=_text(row, "manifest_hash"),
        description=cast("str | None", row.get("description")),
        capabilities=PackageCapabilities.from_dict(capabilities),
        settings=_settings_from_json(_text(row, "settings_json")),
        created_at=_text(row, "created_at"),
        updated_at=_text(row, "updated_at"),
    )


def _license_from_row(row: Mapping[str, RowValue]) -> LicenseRecord:
    return LicenseRecord(
        id=_int(row, "id"),
        package_id=_int(row, "package_id"),
        package_name=_text(row, "package_name"),
        license_key=_text(row, "license_key"),
        license_type=_text(row, "license_type"),
        issued_at=_from_iso(_text(row, "issued_at")),
        is_valid=bool(row["is_valid"]),
        validation_status=_text(row, "validation_status"),
        expires_at=_optional_ts(row, "expires_at"),
        last_validated_at=_optional_ts(row, "last_validated_at"),
        grace_period_ends=_optional_ts(row, "grace_period_ends"),
    )


def _settings_from_json(raw: str) -> dict[str, JSONValue]:
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise StateDBError(f"packages.settings_json must decode to an object, got {raw!r}")
    return payload


def _text(row: Mapping[str, RowValue], key: str) -> str:
    value = row[key]
    if not isinstance(value, str):
        raise StateDBError(f"column {key} must be text, got {type(value).__name__}")
    return value


def _int(row: Mapping[str, RowValue], key: str) -> int:
    value = row[key]
    if not isinstance(value, int):
        raise StateDBError(f"column {key} must be integer, got {type(value).__name__}")
    return value


def _optional_ts(row: Mapping[str, RowValue], key: str) -> datetime | None:
    value = row.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise StateDBError(f"column {key} must be text, got {type(value).__name__}")
    return _from_iso(value)


def _to_iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


__all__ = [
    "CheckerRecord",
    "LicenseRecord",
    "LicenseRepo",
    "PackageRecord",
    "PackageRepo",
]
