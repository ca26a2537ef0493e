"""Typed package, checker, and status models shared by the registry and workers."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Final, NoReturn, Protocol, runtime_checkable

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

if TYPE_CHECKING:
    from enum import StrEnum
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
Settings = Mapping[str, JSONValue]


class PackageLicense(StrEnum):
    OPEN_SOURCE = "open-source"
    COMMERCIAL = "commercial"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DataNeed(StrEnum):
    """Context snapshots a checker may ask the host to collect."""

    DISK_METRICS = "diskMetrics"
    DISK_HEALTH = "diskHealth"
    HISTORICAL_METRICS = "historicalMetrics"
    PROCESS_SNAPSHOTS = "processSnapshots"
    PORT_USAGE = "portUsage"
    MACHINE_CONFIG = "machineConfig"
    WINDOWS_UPDATE = "windowsUpdate"
    DEFENDER_STATUS = "defenderStatus"
    APPLICATION_INVENTORY = "applicationInventory"


class SettingType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SECRET = "secret"
    SELECT = "select"


class Platform(StrEnum):
    WINDOWS = "windows"
    LINUX = "linux"


class WorkerState(StrEnum):
    """Lifecycle of a supervised worker process."""

    UNSTARTED = "unstarted"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# Wire key for each typed context field, in declaration order.
_CONTEXT_WIRE_KEYS: Final[tuple[tuple[str, str], ...]] = (
    ("disk_metrics", DataNeed.DISK_METRICS.value),
    ("disk_health", DataNeed.DISK_HEALTH.value),
    ("historical_metrics", DataNeed.HISTORICAL_METRICS.value),
    ("process_snapshots", DataNeed.PROCESS_SNAPSHOTS.value),
    ("port_usage", DataNeed.PORT_USAGE.value),
    ("machine_config", DataNeed.MACHINE_CONFIG.value),
    ("windows_update", DataNeed.WINDOWS_UPDATE.value),
    ("defender_status", DataNeed.DEFENDER_STATUS.value),
    ("application_inventory", DataNeed.APPLICATION_INVENTORY.value),
)


@dataclass(frozen=True, slots=True)
class PackageCapabilities:
    """Resources a package requests at install time."""

    network: tuple[str, ...] = ()
    storage: bool = False
    cron: str | None = None
    remediation: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.network and not self.storage and not self.cron and not self.remediation

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {}
        if self.network:
            payload["network"] = list(self.network)
        if self.storage:
            payload["storage"] = True
        if self.cron:
            payload["cron"] = self.cron
        if self.remediation:
            payload["remediation"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, object] | None) -> PackageCapabilities:
        if not payload:
            return cls()
        network = payload.get("network")
        cron = payload.get("cron")
        return cls(
            network=tuple(str(item) for item in network) if isinstance(network, list) else (),
            storage=payload.get("storage") is True,
            cron=cron if isinstance(cron, str) and cron else None,
            remediation=payload.get("remediation") is True,
        )


@dataclass(frozen=True, slots=True)
class CheckerDefinition:
    name: str
    file: str
    type: str
    data_needs: tuple[DataNeed, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "file": self.file,
            "type": self.type,
            "dataNeeds": [need.value for need in self.data_needs],
        }


@dataclass(frozen=True, slots=True)
class RemediationDefinition:
    name: str
    script: str
    platforms: tuple[Platform, ...]


@dataclass(frozen=True, slots=True)
class SettingOption:
    value: str
    label: str


@dataclass(frozen=True, slots=True)
class SettingDefinition:
    type: SettingType
    label: str
    description: str | None = None
    required: bool = False
    default: str | int | float | bool | None = None
    options: tuple[SettingOption, ...] = ()


@dataclass(frozen=True, slots=True)
class PackageManifest:
    """Validated package declaration.

    Instances are only produced by :func:`fleetcheck.packages.manifest.validate_manifest`;
    field values are already normalized.
    """

    name: str
    version: str
    display_name: str
    author: str
    license: PackageLicense
    checkers: tuple[CheckerDefinition, ...]
    description: str | None = None
    min_platform_version: str | None = None
    capabilities: PackageCapabilities = field(default_factory=PackageCapabilities)
    remediations: tuple[RemediationDefinition, ...] = ()
    settings: Mapping[str, SettingDefinition] = field(default_factory=dict)

    def checker(self, name: str) -> CheckerDefinition | None:
        for definition in self.checkers:
            if definition.name == name:
                return definition
        return None

    def default_settings(self) -> dict[str, JSONValue]:
        return {
            key: definition.default
            for key, definition in sorted(self.settings.items())
            if definition.default is not None
        }


@dataclass(frozen=True, slots=True)
class CheckerContext:
    """Per-VM input handed to checkers.

    Each optional field corresponds to one :class:`DataNeed`. ``settings`` carries
    the package configuration merged in at call time.
    """

    vm_id: str
    disk_metrics: JSONValue = None
    disk_health: JSONValue = None
    historical_metrics: JSONValue = None
    process_snapshots: JSONValue = None
    port_usage: JSONValue = None
    machine_config: JSONValue = None
    windows_update: JSONValue = None
    defender_status: JSONValue = None
    application_inventory: JSONValue = None
    settings: Settings = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.vm_id, str) or not self.vm_id.strip():
            raise ValueError("vm_id must be a non-empty string")

    def with_settings(self, settings: Settings) -> CheckerContext:
        return replace(self, settings=dict(settings))

    def to_wire(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"vmId": self.vm_id}
        for attr, wire_key in _CONTEXT_WIRE_KEYS:
            value = getattr(self, attr)
            if value is not None:
                payload[wire_key] = value
        payload["settings"] = dict(self.settings)
        return payload

    @classmethod
    def from_wire(cls, payload: object) -> CheckerContext:
        root = _as_mapping(payload, "context")
        vm_id = root.get("vmId")
        if not isinstance(vm_id, str) or not vm_id.strip():
            _fail("context.vmId", "must be a non-empty string")
        settings = root.get("settings", {})
        if settings is None:
            settings = {}
        settings_map = _as_mapping(settings, "context.settings")
        values: dict[str, JSONValue] = {}
        for attr, wire_key in _CONTEXT_WIRE_KEYS:
            if wire_key in root:
                values[attr] = _as_json(root[wire_key], f"context.{wire_key}")
        merged_settings = {
            key: _as_json(item, f"context.settings.{key}") for key, item in settings_map.items()
        }
        return cls(vm_id=vm_id, settings=merged_settings, **values)


@dataclass(frozen=True, slots=True)
class CheckerResult:
    """One recommendation produced by a checker."""

    type: str
    text: str
    action_text: str
    severity: Severity
    data: Mapping[str, JSONValue] | None = None
    remediation: str | None = None
    checker_name: str | None = None
    package_name: str | None = None

    def tagged(self, *, package_name: str, checker_name: str | None) -> CheckerResult:
        return replace(
            self,
            package_name=self.package_name or package_name,
            checker_name=self.checker_name or checker_name,
        )

    def to_wire(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "type": self.type,
            "text": self.text,
            "actionText": self.action_text,
            "severity": self.severity.value,
        }
        if self.data is not None:
            payload["data"] = dict(self.data)
        if self.remediation is not None:
            payload["remediation"] = self.remediation
        if self.checker_name is not None:
            payload["checkerName"] = self.checker_name
        if self.package_name is not None:
            payload["packageName"] = self.package_name
        return payload

    @classmethod
    def from_wire(cls, payload: object, *, path: str = "result") -> CheckerResult:
        root = _as_mapping(payload, path)
        severity_raw = root.get("severity")
        try:
            severity = Severity(severity_raw)
        except ValueError:
            _fail(f"{path}.severity", f"invalid severity {severity_raw!r}")
        data = root.get("data")
        return cls(
            type=_as_text(root.get("type"), f"{path}.type"),
            text=_as_text(root.get("text"), f"{path}.text"),
            action_text=_as_text(root.get("actionText"), f"{path}.actionText"),
            severity=severity,
            data=None if data is None else dict(_as_mapping(data, f"{path}.data")),
            remediation=_as_optional_text(root.get("remediation"), f"{path}.remediation"),
            checker_name=_as_optional_text(root.get("checkerName"), f"{path}.checkerName"),
            package_name=_as_optional_text(root.get("packageName"), f"{path}.packageName"),
        )


@dataclass(frozen=True, slots=True)
class PackageStatus:
    """Read-only status projection for external reporting."""

    name: str
    version: str
    is_loaded: bool
    is_enabled: bool
    is_builtin: bool
    checker_count: int
    loaded_at: datetime | None = None
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class WorkerStats:
    uptime_seconds: float
    request_count: int
    error_count: int
    restart_attempts: int
    pending_requests: int
    rss_bytes: int | None = None


@runtime_checkable
class PackageChecker(Protocol):
    """Capability every checker implementation exposes."""

    async def analyze(self, context: CheckerContext) -> Sequence[CheckerResult]: ...


@dataclass(slots=True)
class LoadedPackage:
    """In-process package owned by the registry."""

    manifest: PackageManifest
    path: Path
    is_builtin: bool
    checkers: dict[str, PackageChecker]
    manifest_hash: str
    loaded_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    for key in value:
        if not isinstance(key, str):
            _fail(path, f"object key must be string, got {type(key).__name__}")
    return value


def _as_text(value: object, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        _fail(path, "must be a non-empty string")
    return value


def _as_optional_text(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_text(value, path)


def _as_json(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "must be a finite number")
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json(item, f"{path}[{index}]") for index, item in enumerate(value)]
    if isinstance(value, Mapping):
        return {
            str(key): _as_json(item, f"{path}.{key}") for key, item in value.items()
        }
    _fail(path, f"unsupported JSON value of type {type(value).__name__}")


__all__ = [
    "CheckerContext",
    "CheckerDefinition",
    "CheckerResult",
    "DataNeed",
    "JSONScalar",
    "JSONValue",
    "LoadedPackage",
    "PackageCapabilities",
    "PackageChecker",
    "PackageLicense",
    "PackageManifest",
    "PackageStatus",
    "Platform",
    "RemediationDefinition",
    "SettingDefinition",
    "SettingOption",
    "SettingType",
    "Settings",
    "Severity",
    "WorkerState",
    "WorkerStats",
]
