"""
fleetcheck — license gate for commercial packages

File: src/fleetcheck/packages/licensing.py
Last updated: 2026-10-19

Purpose
- Decide whether a commercial package may run right now.
- Issue, activate, revoke, and inspect signed license keys.

What should be included in this file
- ``LicenseGate`` protocol consumed by the registry.
- ``LicenseValidator``: concrete gate over ``LicenseRepo`` / ``PackageRepo``.

Functional requirements
- Keys look like ``XXXX-XXXX-XXXX-XXXX``; the last group is an HMAC-SHA256
  checksum over the first three groups.
- Open-source packages are always valid; commercial packages need an active,
  unexpired, unrevoked license (a grace period counts as valid).

Non-functional requirements
- Validation results are plain values; the gate itself never raises for an
  ordinary "not licensed" outcome.
"""

from __future__ import annotations

import asyncio
import math
import os
import re
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from fleetcheck.constants import (
    DEFAULT_LICENSE_SECRET,
    DEFAULT_LICENSE_SECRET_ENV,
    DEVELOPMENT_LICENSE_DAYS,
    LICENSE_GRACE_PERIOD_DAYS,
    TRIAL_LICENSE_DAYS,
)
from fleetcheck.packages.models import PackageLicense
from fleetcheck.utils.hashing import hmac_sha256_hex, sha256_text

if TYPE_CHECKING:
    from enum import StrEnum

    from fleetcheck.persistence.repositories import (
        LicenseRecord,
        LicenseRepo,
        PackageRecord,
        PackageRepo,
    )
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

LICENSE_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$"
)
MASKED_KEY_FALLBACK: Final[str] = "****-****-****-****"
_BASE36_ALPHABET: Final[str] = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

_logger = structlog.get_logger(__name__)


class LicenseType(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TRIAL = "trial"


class ValidationStatus(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    GRACE_PERIOD = "grace_period"


@dataclass(frozen=True, slots=True)
class LicenseInfo:
    """Display projection of one license; the key is always masked."""

    package_name: str
    masked_key: str
    license_type: LicenseType
    status: ValidationStatus
    is_valid: bool
    expires_at: datetime | None = None
    days_remaining: int | None = None
    grace_period_active: bool = False


@dataclass(frozen=True, slots=True)
class LicenseValidationResult:
    is_valid: bool
    status: ValidationStatus
    message: str
    license: LicenseInfo | None = None


class LicenseGate(Protocol):
    """Answers whether a package is allowed to run right now."""

    async def check_package_license(self, package_name: str) -> LicenseValidationResult: ...


def mask_license_key(license_key: str) -> str:
    parts = license_key.split("-")
    if len(parts) != 4:
        return MASKED_KEY_FALLBACK
    return f"{parts[0]}-****-****-{parts[3]}"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


class LicenseValidator:
    """HMAC-signed license keys backed by the state DB."""

    def __init__(
        self,
        licenses: LicenseRepo,
        packages: PackageRepo,
        *,
        secret: str = DEFAULT_LICENSE_SECRET,
        grace_period_days: int = LICENSE_GRACE_PERIOD_DAYS,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if not secret:
            raise ValueError("license secret must be non-empty")
        if grace_period_days <= 0:
            raise ValueError("grace_period_days must be > 0")
        self._licenses = licenses
        self._packages = packages
        self._secret = secret
        self._grace_period = timedelta(days=grace_period_days)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logger or _logger

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        licenses: LicenseRepo,
        packages: PackageRepo,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> LicenseValidator:
        section = config.get("licensing", {})
        env = os.environ if environ is None else environ
        secret_env = section.get("secret_env", DEFAULT_LICENSE_SECRET_ENV)
        secret = env.get(secret_env) or DEFAULT_LICENSE_SECRET
        if secret == DEFAULT_LICENSE_SECRET:
            _logger.warning("license_secret_default", secret_env=secret_env)
        return cls(
            licenses,
            packages,
            secret=secret,
            grace_period_days=int(section.get("grace_period_days", LICENSE_GRACE_PERIOD_DAYS)),
        )

    def generate_license_key(self, package_name: str, license_type: LicenseType | str) -> str:
        kind = LicenseType(license_type)
        part1 = sha256_text(package_name)[:4].upper()
        timestamp = _base36(time.time_ns() // 1_000_000)
        part2 = (kind.value[0].upper() + timestamp)[:4].ljust(4, "0")
        part3 = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(4))
        return f"{part1}-{part2}-{part3}-{self._checksum(part1 + part2 + part3)}"

    def is_valid_key_format(self, license_key: str) -> bool:
        return LICENSE_KEY_PATTERN.fullmatch(license_key) is not None

    def verify_license_signature(self, license_key: str) -> bool:
        if not self.is_valid_key_format(license_key):
            return False
        parts = license_key.split("-")
        expected = self._checksum("".join(parts[:3]))
        return secrets.compare_digest(parts[3], expected)

    async def check_package_license(self, package_name: str) -> LicenseValidationResult:
        return await self.validate_package_license(package_name)

    async def activate_license(
        self,
        package_name: str,
        license_key: str,
    ) -> LicenseValidationResult:
        if not self.is_valid_key_format(license_key):
            return _invalid("Invalid license key format. Expected: XXXX-XXXX-XXXX-XXXX")
        if not self.verify_license_signature(license_key):
            self._logger.warning("license_signature_invalid", package=package_name)
            return _invalid("License key signature verification failed")

        package = await asyncio.to_thread(self._packages.get_package, package_name)
        if package is None:
            return _invalid(f"Package not found: {package_name}")
        if package.license is not PackageLicense.COMMERCIAL:
            return _invalid("License activation not required for open-source packages")

        existing = await asyncio.to_thread(self._licenses.find_by_key, license_key)
        if existing is not None and existing.package_id != package.id:
            return _invalid("License key is already in use by another package")

        now = self._clock()
        expires_at: datetime | None
        type_char = license_key.split("-")[1][0]
        if type_char == "T":
            license_type, expires_at = LicenseType.TRIAL, now + timedelta(days=TRIAL_LICENSE_DAYS)
        elif type_char == "D":
            license_type = LicenseType.DEVELOPMENT
            expires_at = now + timedelta(days=DEVELOPMENT_LICENSE_DAYS)
        else:
            license_type, expires_at = LicenseType.PRODUCTION, None

        await asyncio.to_thread(
            self._licenses.activate,
            package_id=package.id,
            license_key=license_key,
            license_type=license_type.value,
            issued_at=now,
            expires_at=expires_at,
        )
        self._logger.info(
            "license_activated", package=package_name, license_type=license_type.value
        )
        record = await asyncio.to_thread(self._licenses.get_for_package, package_name)
        return LicenseValidationResult(
            is_valid=True,
            status=ValidationStatus.VALID,
            message="License activated successfully",
            license=None if record is None else self._license_info(record),
        )

    async def validate_package_license(self, package_name: str) -> LicenseValidationResult:
        package = await asyncio.to_thread(self._packages.get_package, package_name)
        if package is None:
            return _invalid(f"Package not found: {package_name}")
        if package.license is PackageLicense.OPEN_SOURCE:
            return LicenseValidationResult(
                True, ValidationStatus.VALID, "Open-source package - no license required"
            )

        record = await asyncio.to_thread(self._licenses.get_for_package, package_name)
        if record is None:
            return _invalid("Commercial package requires a valid license")

        if record.validation_status == ValidationStatus.REVOKED:
            return LicenseValidationResult(
                False,
                ValidationStatus.REVOKED,
                "License has been revoked",
                self._license_info(record),
            )

        now = self._clock()
        if record.expires_at is not None and now > record.expires_at:
            await asyncio.to_thread(
                self._licenses.set_status,
                record.id,
                status=ValidationStatus.EXPIRED.value,
                is_valid=False,
            )
            self._logger.info("license_expired", package=package_name)
            return LicenseValidationResult(
                False,
                ValidationStatus.EXPIRED,
                f"License expired on {record.expires_at.date().isoformat()}",
                self._license_info(
                    record, status=ValidationStatus.EXPIRED, is_valid=False
                ),
            )

        if record.grace_period_ends is not None and now < record.grace_period_ends:
            return LicenseValidationResult(
                True,
                ValidationStatus.GRACE_PERIOD,
                "Operating in grace period until "
                f"{record.grace_period_ends.date().isoformat()}",
                self._license_info(record),
            )

        await asyncio.to_thread(self._licenses.mark_validated, record.id, now)
        return LicenseValidationResult(
            True, ValidationStatus.VALID, "License is valid", self._license_info(record)
        )

    async def revoke_license(self, package_name: str) -> bool:
        record = await asyncio.to_thread(self._licenses.get_for_package, package_name)
        if record is None:
            return False
        await asyncio.to_thread(
            self._licenses.set_status,
            record.id,
            status=ValidationStatus.REVOKED.value,
            is_valid=False,
        )
        self._logger.info("license_revoked", package=package_name)
        return True

    async def enter_grace_period(self, package_name: str) -> bool:
        record = await asyncio.to_thread(self._licenses.get_for_package, package_name)
        if record is None:
            return False
        ends_at = self._clock() + self._grace_period
        await asyncio.to_thread(self._licenses.set_grace_period, record.id, ends_at)
        self._logger.info(
            "license_grace_period_started", package=package_name, ends_at=ends_at.isoformat()
        )
        return True

    async def list_licenses(self) -> list[LicenseInfo]:
        """One entry per commercial package, licensed or not."""

        packages = await asyncio.to_thread(self._packages.list_packages)
        records = {
            record.package_name: record
            for record in await asyncio.to_thread(self._licenses.list_all)
        }
        infos: list[LicenseInfo] = []
        for package in packages:
            if package.license is not PackageLicense.COMMERCIAL:
                continue
            record = records.get(package.name)
            infos.append(
                self._license_info(record) if record is not None else _unlicensed(package)
            )
        return infos

    def _checksum(self, payload: str) -> str:
        return hmac_sha256_hex(self._secret, payload)[:4].upper()

    def _license_info(
        self,
        record: LicenseRecord,
        *,
        status: ValidationStatus | None = None,
        is_valid: bool | None = None,
    ) -> LicenseInfo:
        now = self._clock()
        days_remaining: int | None = None
        if record.expires_at is not None:
            remaining = (record.expires_at - now).total_seconds() / 86_400
            days_remaining = max(0, math.ceil(remaining))
        grace_active = record.grace_period_ends is not None and now < record.grace_period_ends
        return LicenseInfo(
            package_name=record.package_name,
            masked_key=mask_license_key(record.license_key),
            license_type=LicenseType(record.license_type),
            status=status or ValidationStatus(record.validation_status),
            is_valid=record.is_valid if is_valid is None else is_valid,
            expires_at=record.expires_at,
            days_remaining=days_remaining,
            grace_period_active=grace_active,
        )


def _invalid(message: str) -> LicenseValidationResult:
    return LicenseValidationResult(False, ValidationStatus.INVALID, message)


def _unlicensed(package: PackageRecord) -> LicenseInfo:
    return LicenseInfo(
        package_name=package.name,
        masked_key="",
        license_type=LicenseType.PRODUCTION,
        status=ValidationStatus.INVALID,
        is_valid=False,
    )


__all__ = [
    "LICENSE_KEY_PATTERN",
    "LicenseGate",
    "LicenseInfo",
    "LicenseType",
    "LicenseValidationResult",
    "LicenseValidator",
    "ValidationStatus",
    "mask_license_key",
]
