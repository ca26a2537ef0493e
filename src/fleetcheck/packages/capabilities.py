"""Advisory capability review for package installation."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final
from urllib.parse import urlsplit

from fleetcheck.packages.models import PackageCapabilities

_DOMAIN_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(\*\.)?[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)*$"
)
_CRON_FIELD_COUNT: Final[int] = 5


@dataclass(frozen=True, slots=True)
class CapabilityCheck:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class CapabilityReview:
    """Warnings plus human descriptions shown when a package is installed."""

    warnings: tuple[str, ...]
    descriptions: tuple[str, ...]


def validate_capabilities(capabilities: PackageCapabilities) -> tuple[str, ...]:
    """Return advisory warnings for suspicious or malformed capability requests."""

    warnings: list[str] = []
    for domain in capabilities.network:
        if not is_valid_domain(domain):
            warnings.append(f"Invalid network domain: {domain}")
        if domain == "*" or domain.startswith("*."):
            warnings.append(f"Broad network access requested: {domain}")

    if capabilities.cron and not is_valid_cron(capabilities.cron):
        warnings.append(f"Invalid cron expression: {capabilities.cron}")

    if capabilities.remediation:
        warnings.append("Package requests ability to execute remediation scripts on VMs")

    return tuple(warnings)


def describe_capabilities(capabilities: PackageCapabilities) -> tuple[str, ...]:
    descriptions: list[str] = []
    if capabilities.network:
        descriptions.append(f"Network access to: {', '.join(capabilities.network)}")
    if capabilities.storage:
        descriptions.append("Local storage for persisting data")
    if capabilities.cron:
        descriptions.append(f"Scheduled execution: {capabilities.cron}")
    if capabilities.remediation:
        descriptions.append("Execute remediation scripts on VMs (HIGH PRIVILEGE)")
    if not descriptions:
        descriptions.append("No special capabilities required")
    return tuple(descriptions)


def review_capabilities(capabilities: PackageCapabilities) -> CapabilityReview:
    return CapabilityReview(
        warnings=validate_capabilities(capabilities),
        descriptions=describe_capabilities(capabilities),
    )


def check_network_access(declared_domains: Sequence[str], requested_url: str) -> CapabilityCheck:
    """Decide whether ``requested_url`` falls inside the declared network domains.

    ``*`` allows everything; ``*.example.com`` allows ``example.com`` and any
    subdomain; anything else must match the hostname exactly.
    """

    if not declared_domains:
        return CapabilityCheck(False, "Package has no network capabilities declared")

    try:
        hostname = urlsplit(requested_url).hostname
    except ValueError:
        hostname = None
    if not hostname:
        return CapabilityCheck(False, "Invalid URL")

    for domain in declared_domains:
        if domain == "*":
            return CapabilityCheck(True)
        if domain.startswith("*."):
            base_domain = domain[2:].lower()
            if hostname == base_domain or hostname.endswith(f".{base_domain}"):
                return CapabilityCheck(True)
        elif hostname == domain.lower():
            return CapabilityCheck(True)

    return CapabilityCheck(
        False,
        f"Domain {hostname} not in allowed list: {', '.join(declared_domains)}",
    )


def check_storage_access(declared_storage: bool) -> CapabilityCheck:
    if declared_storage:
        return CapabilityCheck(True)
    return CapabilityCheck(False, "Package has not declared storage capability")


def check_remediation_access(declared_remediation: bool) -> CapabilityCheck:
    if declared_remediation:
        return CapabilityCheck(True)
    return CapabilityCheck(False, "Package has not declared remediation capability")


def format_capabilities_for_display(capabilities: PackageCapabilities) -> str:
    lines: list[str] = []
    if capabilities.network:
        lines.append(f"  Network access: {', '.join(capabilities.network)}")
    if capabilities.storage:
        lines.append("  Local storage")
    if capabilities.cron:
        lines.append(f"  Scheduled execution: {capabilities.cron}")
    if capabilities.remediation:
        lines.append("  Execute remediation scripts (HIGH PRIVILEGE)")
    if not lines:
        lines.append("  (No special capabilities)")
    return "\n".join(lines)


def is_valid_domain(domain: str) -> bool:
    return _DOMAIN_PATTERN.fullmatch(domain) is not None


def is_valid_cron(expression: str) -> bool:
    return len(expression.split(" ")) == _CRON_FIELD_COUNT


__all__ = [
    "CapabilityCheck",
    "CapabilityReview",
    "check_network_access",
    "check_remediation_access",
    "check_storage_access",
    "describe_capabilities",
    "format_capabilities_for_display",
    "is_valid_cron",
    "is_valid_domain",
    "review_capabilities",
    "validate_capabilities",
]
