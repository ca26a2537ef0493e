"""
fleetcheck — package manifest parsing and validation.

File: src/fleetcheck/packages/manifest.py
Last updated: 2026-10-19

Purpose
- Turn a package's declarative manifest into a typed ``PackageManifest``.

What should be included in this file
- Pure validation of a decoded payload with field-path tagged issues.
- Reading ``manifest.json`` (or a YAML equivalent) from a package directory.
- Content hashing of the raw manifest text for drift detection.

Functional requirements
- Validation never raises; every violation is reported in one pass.
- A malformed manifest blocks only the package that carries it.

Non-functional requirements
- Deterministic issue ordering so operators can diff validation output.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import yaml

from fleetcheck.constants import MANIFEST_FILENAMES
from fleetcheck.packages.models import (
    CheckerDefinition,
    DataNeed,
    PackageCapabilities,
    PackageLicense,
    PackageManifest,
    Platform,
    RemediationDefinition,
    SettingDefinition,
    SettingOption,
    SettingType,
)
from fleetcheck.utils.hashing import sha256_text

PACKAGE_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9-]+$")
SEMVER_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+$")

_NAME_MESSAGE: Final[str] = "Name must be lowercase alphanumeric with dashes"
_VERSION_MESSAGE: Final[str] = "Version must be semver (e.g., 1.0.0)"


@dataclass(frozen=True, slots=True)
class ManifestIssue:
    """Single manifest violation tagged with the offending field path."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ManifestValidationResult:
    manifest: PackageManifest | None
    issues: tuple[ManifestIssue, ...]

    @property
    def ok(self) -> bool:
        return self.manifest is not None and not self.issues

    def fields(self) -> tuple[str, ...]:
        return tuple(issue.path for issue in self.issues)


class ManifestValidationError(ValueError):
    """Raised when a manifest cannot be read or does not validate."""

    def __init__(self, issues: Sequence[ManifestIssue], *, source: str | None = None) -> None:
        self.issues = tuple(issues)
        self.source = source
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        prefix = f"invalid manifest {source}" if source else "invalid manifest"
        super().__init__(f"{prefix}:\n{rendered}")


@dataclass(frozen=True, slots=True)
class ManifestDocument:
    """Raw manifest as read from disk."""

    path: Path
    raw_text: str
    payload: object
    content_hash: str


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ManifestIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ManifestIssue(path=path, message=message))

    def items(self) -> tuple[ManifestIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def validate_manifest(raw: object) -> ManifestValidationResult:
    """Validate a decoded manifest payload and collect every violation."""

    issues = _IssueCollector()
    if not isinstance(raw, Mapping):
        issues.add("root", f"Manifest must be an object, got {type(raw).__name__}")
        return ManifestValidationResult(manifest=None, issues=issues.items())

    name = _pattern_text(raw.get("name"), PACKAGE_NAME_PATTERN, "name", _NAME_MESSAGE, issues)
    version = _pattern_text(raw.get("version"), SEMVER_PATTERN, "version", _VERSION_MESSAGE, issues)
    display_name = _required_text(
        raw.get("displayName"), "displayName", "Display name is required", issues
    )
    author = _required_text(raw.get("author"), "author", "Author is required", issues)

    license_value: PackageLicense | None = None
    try:
        license_value = PackageLicense(raw.get("license"))
    except ValueError:
        issues.add("license", 'License must be "open-source" or "commercial"')

    description = _optional_text(raw.get("description"), "description", issues)
    min_platform_version: str | None = None
    if raw.get("minPlatformVersion") is not None:
        min_platform_version = _pattern_text(
            raw.get("minPlatformVersion"),
            SEMVER_PATTERN,
            "minPlatformVersion",
            "Minimum platform version must be semver (e.g., 1.0.0)",
            issues,
        )

    capabilities = _validate_capabilities(raw.get("capabilities"), issues)
    checkers = _validate_checkers(raw.get("checkers"), issues)
    remediations = _validate_remediations(raw.get("remediations"), issues)
    settings = _validate_settings(raw.get("settings"), issues)

    if issues.has_issues:
        return ManifestValidationResult(manifest=None, issues=issues.items())

    assert name is not None and version is not None and license_value is not None
    assert display_name is not None and author is not None
    manifest = PackageManifest(
        name=name,
        version=version,
        display_name=display_name,
        author=author,
        license=license_value,
        checkers=checkers,
        description=description,
        min_platform_version=min_platform_version,
        capabilities=capabilities,
        remediations=remediations,
        settings=settings,
    )
    return ManifestValidationResult(manifest=manifest, issues=())


def find_manifest_path(package_dir: Path) -> Path | None:
    for filename in MANIFEST_FILENAMES:
        candidate = package_dir / filename
        if candidate.is_file():
            return candidate
    return None


def read_manifest(package_dir: Path | str) -> ManifestDocument:
    """Read and decode the manifest file of ``package_dir``."""

    directory = Path(package_dir)
    manifest_path = find_manifest_path(directory)
    if manifest_path is None:
        raise ManifestValidationError(
            (ManifestIssue("root", f"Missing manifest.json in {directory}"),),
            source=str(directory),
        )

    try:
        raw_text = manifest_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestValidationError(
            (ManifestIssue("root", f"unable to read manifest: {exc}"),),
            source=str(manifest_path),
        ) from exc

    try:
        if manifest_path.suffix == ".json":
            payload = json.loads(raw_text)
        else:
            payload = yaml.safe_load(raw_text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ManifestValidationError(
            (ManifestIssue("root", f"unable to parse manifest: {exc}"),),
            source=str(manifest_path),
        ) from exc

    return ManifestDocument(
        path=manifest_path,
        raw_text=raw_text,
        payload=payload,
        content_hash=manifest_hash(raw_text),
    )


def load_manifest(package_dir: Path | str) -> tuple[PackageManifest, ManifestDocument]:
    """Read and validate a package manifest, raising on any violation."""

    document = read_manifest(package_dir)
    result = validate_manifest(document.payload)
    if result.manifest is None:
        raise ManifestValidationError(result.issues, source=str(document.path))
    return result.manifest, document


def manifest_hash(raw_text: str) -> str:
    return sha256_text(raw_text)


def _validate_capabilities(value: object, issues: _IssueCollector) -> PackageCapabilities:
    if value is None:
        return PackageCapabilities()
    if not isinstance(value, Mapping):
        issues.add("capabilities", "Capabilities must be an object")
        return PackageCapabilities()

    network: tuple[str, ...] = ()
    raw_network = value.get("network")
    if raw_network is not None:
        if isinstance(raw_network, list) and all(isinstance(item, str) for item in raw_network):
            network = tuple(raw_network)
        else:
            issues.add("capabilities.network", "Network must be a list of domains")

    storage = _optional_bool(value.get("storage"), "capabilities.storage", issues)
    remediation = _optional_bool(value.get("remediation"), "capabilities.remediation", issues)
    cron = _optional_text(value.get("cron"), "capabilities.cron", issues)
    return PackageCapabilities(
        network=network,
        storage=bool(storage),
        cron=cron or None,
        remediation=bool(remediation),
    )


def _validate_checkers(value: object, issues: _IssueCollector) -> tuple[CheckerDefinition, ...]:
    if not isinstance(value, list) or not value:
        issues.add("checkers", "At least one checker is required")
        return ()

    definitions: list[CheckerDefinition] = []
    seen: set[str] = set()
    for index, item in enumerate(value):
        path = f"checkers[{index}]"
        if not isinstance(item, Mapping):
            issues.add(path, "Checker must be an object")
            continue
        name = _pattern_text(
            item.get("name"),
            PACKAGE_NAME_PATTERN,
            f"{path}.name",
            "Checker name must be lowercase alphanumeric with dashes",
            issues,
        )
        file = _required_text(item.get("file"), f"{path}.file", "Checker file is required", issues)
        kind = _required_text(item.get("type"), f"{path}.type", "Checker type is required", issues)
        data_needs = _validate_data_needs(item.get("dataNeeds"), f"{path}.dataNeeds", issues)
        if name is not None:
            if name in seen:
                issues.add(f"{path}.name", f"Duplicate checker name {name!r}")
            seen.add(name)
        if name is None or file is None or kind is None:
            continue
        definitions.append(
            CheckerDefinition(name=name, file=file, type=kind, data_needs=data_needs)
        )
    return tuple(definitions)


def _validate_data_needs(
    value: object, path: str, issues: _IssueCollector
) -> tuple[DataNeed, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        issues.add(path, "Data needs must be a list")
        return ()
    needs: list[DataNeed] = []
    for index, item in enumerate(value):
        try:
            needs.append(DataNeed(item))
        except ValueError:
            issues.add(f"{path}[{index}]", f"Unknown data need {item!r}")
    return tuple(needs)


def _validate_remediations(
    value: object, issues: _IssueCollector
) -> tuple[RemediationDefinition, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        issues.add("remediations", "Remediations must be a list")
        return ()

    definitions: list[RemediationDefinition] = []
    for index, item in enumerate(value):
        path = f"remediations[{index}]"
        if not isinstance(item, Mapping):
            issues.add(path, "Remediation must be an object")
            continue
        name = _required_text(
            item.get("name"), f"{path}.name", "Remediation name is required", issues
        )
        script = _required_text(
            item.get("script"), f"{path}.script", "Remediation script is required", issues
        )
        platforms: list[Platform] = []
        raw_platforms = item.get("platforms")
        if not isinstance(raw_platforms, list) or not raw_platforms:
            issues.add(f"{path}.platforms", "At least one platform is required")
        else:
            for platform_index, platform in enumerate(raw_platforms):
                try:
                    platforms.append(Platform(platform))
                except ValueError:
                    issues.add(
                        f"{path}.platforms[{platform_index}]",
                        'Platform must be "windows" or "linux"',
                    )
        if name is None or script is None or not platforms:
            continue
        definitions.append(
            RemediationDefinition(name=name, script=script, platforms=tuple(platforms))
        )
    return tuple(definitions)


def _validate_settings(value: object, issues: _IssueCollector) -> dict[str, SettingDefinition]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        issues.add("settings", "Settings must be an object")
        return {}

    settings: dict[str, SettingDefinition] = {}
    for key in sorted(value, key=str):
        path = f"settings.{key}"
        item = value[key]
        if not isinstance(key, str) or not key:
            issues.add("settings", f"setting key must be a non-empty string, got {key!r}")
            continue
        if not isinstance(item, Mapping):
            issues.add(path, "Setting must be an object")
            continue

        setting_type: SettingType | None = None
        try:
            setting_type = SettingType(item.get("type"))
        except ValueError:
            allowed = ", ".join(member.value for member in SettingType)
            issues.add(f"{path}.type", f"Setting type must be one of: {allowed}")
        label = _required_text(
            item.get("label"), f"{path}.label", "Setting label is required", issues
        )
        description = _optional_text(item.get("description"), f"{path}.description", issues)
        required = _optional_bool(item.get("required"), f"{path}.required", issues)

        default = item.get("default")
        if default is not None and not isinstance(default, (str, int, float, bool)):
            issues.add(f"{path}.default", "Default must be a string, number, or boolean")
            default = None

        options = _validate_setting_options(item.get("options"), f"{path}.options", issues)
        if setting_type is SettingType.SELECT and not options:
            issues.add(f"{path}.options", "Select settings require at least one option")

        if setting_type is None or label is None:
            continue
        settings[key] = SettingDefinition(
            type=setting_type,
            label=label,
            description=description,
            required=bool(required),
            default=default,
            options=options,
        )
    return settings


def _validate_setting_options(
    value: object, path: str, issues: _IssueCollector
) -> tuple[SettingOption, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        issues.add(path, "Options must be a list")
        return ()
    options: list[SettingOption] = []
    for index, item in enumerate(value):
        if (
            not isinstance(item, Mapping)
            or not isinstance(item.get("value"), str)
            or not isinstance(item.get("label"), str)
        ):
            issues.add(f"{path}[{index}]", "Option must have string value and label")
            continue
        options.append(SettingOption(value=item["value"], label=item["label"]))
    return tuple(options)


def _pattern_text(
    value: object,
    pattern: re.Pattern[str],
    path: str,
    message: str,
    issues: _IssueCollector,
) -> str | None:
    if not isinstance(value, str) or pattern.fullmatch(value) is None:
        issues.add(path, message)
        return None
    return value


def _required_text(value: object, path: str, message: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str) or not value.strip():
        issues.add(path, message)
        return None
    return value


def _optional_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    return value


def _optional_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None
    return value


__all__ = [
    "ManifestDocument",
    "ManifestIssue",
    "ManifestValidationError",
    "ManifestValidationResult",
    "PACKAGE_NAME_PATTERN",
    "SEMVER_PATTERN",
    "find_manifest_path",
    "load_manifest",
    "manifest_hash",
    "read_manifest",
    "validate_manifest",
]
