"""
fleetcheck — unit tests for manifest validation

File: tests/unit/packages/test_manifest.py
Last updated: 2026-10-19

Purpose
- Validate that manifest payloads are accepted or rejected with field-tagged issues.

What this test file should cover
- Required fields, patterns, and nested checker/remediation/setting rules.
- Multi-issue reporting in a single pass.
- Reading JSON and YAML manifests from disk, including content hashing.

Functional requirements
- Offline operation.

Non-functional requirements
- Deterministic and non-flaky.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from fleetcheck.packages.manifest import (
    ManifestValidationError,
    load_manifest,
    read_manifest,
    validate_manifest,
)
from fleetcheck.packages.models import DataNeed, PackageLicense, Platform, SettingType

from . import manifest_payload, write_package

if TYPE_CHECKING:
    from pathlib import Path

_NAME_CHARS = "abcdefghijklmnopqrstuvwxyz0123456789-"


def test_minimal_manifest_is_accepted() -> None:
    result = validate_manifest(manifest_payload())

    assert result.ok
    assert result.issues == ()
    manifest = result.manifest
    assert manifest is not None
    assert manifest.name == "disk-check"
    assert manifest.license is PackageLicense.OPEN_SOURCE
    assert manifest.checkers[0].file == "check.py"
    assert manifest.capabilities.is_empty


def test_checker_file_extension_is_not_restricted() -> None:
    payload = manifest_payload(
        checkers=[{"name": "low-space", "file": "check.js", "type": "disk"}]
    )

    result = validate_manifest(payload)

    assert result.ok
    assert result.manifest is not None
    assert result.manifest.checkers[0].file == "check.js"


def test_every_missing_required_field_is_reported_in_one_pass() -> None:
    result = validate_manifest({})

    assert result.manifest is None
    assert set(result.fields()) == {
        "name",
        "version",
        "displayName",
        "author",
        "license",
        "checkers",
    }


def test_non_mapping_payload_is_rejected_at_root() -> None:
    result = validate_manifest(["not", "a", "manifest"])

    assert result.fields() == ("root",)
    assert "list" in result.issues[0].message


@pytest.mark.parametrize(
    ("overrides", "field", "message"),
    [
        ({"name": "Disk_Check"}, "name", "Name must be lowercase alphanumeric with dashes"),
        ({"version": "1.0"}, "version", "Version must be semver (e.g., 1.0.0)"),
        ({"version": "v1.0.0"}, "version", "Version must be semver (e.g., 1.0.0)"),
        ({"displayName": "   "}, "displayName", "Display name is required"),
        ({"license": "mit"}, "license", 'License must be "open-source" or "commercial"'),
        ({"checkers": []}, "checkers", "At least one checker is required"),
    ],
)
def test_top_level_rules(overrides: dict[str, object], field: str, message: str) -> None:
    result = validate_manifest(manifest_payload(**overrides))

    assert result.manifest is None
    assert [(issue.path, issue.message) for issue in result.issues] == [(field, message)]


def test_checker_entries_are_validated_with_indexed_paths() -> None:
    payload = manifest_payload(
        checkers=[
            {"name": "ok", "file": "ok.py", "type": "disk"},
            {"name": "Bad Name", "file": "", "type": "disk", "dataNeeds": ["diskMetrics", "gpu"]},
            {"name": "ok", "file": "dup.py", "type": "disk"},
        ]
    )

    result = validate_manifest(payload)

    assert result.manifest is None
    assert result.fields() == (
        "checkers[1].name",
        "checkers[1].file",
        "checkers[1].dataNeeds[1]",
        "checkers[2].name",
    )
    assert result.issues[2].message == "Unknown data need 'gpu'"
    assert result.issues[3].message == "Duplicate checker name 'ok'"


def test_optional_sections_are_normalized() -> None:
    payload = manifest_payload(
        license="commercial",
        description="Checks disks",
        minPlatformVersion="2.1.0",
        capabilities={"network": ["api.example.com"], "storage": True, "cron": "0 * * * *"},
        checkers=[
            {
                "name": "low-space",
                "file": "check.py",
                "type": "disk",
                "dataNeeds": ["diskMetrics", "diskHealth"],
            }
        ],
        remediations=[{"name": "cleanup", "script": "cleanup.ps1", "platforms": ["windows"]}],
        settings={
            "mode": {
                "type": "select",
                "label": "Mode",
                "options": [{"value": "fast", "label": "Fast"}],
                "default": "fast",
            },
            "limit": {"type": "number", "label": "Limit", "default": 90, "required": True},
        },
    )

    result = validate_manifest(payload)

    assert result.ok, result.issues
    manifest = result.manifest
    assert manifest is not None
    assert manifest.license is PackageLicense.COMMERCIAL
    assert manifest.min_platform_version == "2.1.0"
    assert manifest.capabilities.network == ("api.example.com",)
    assert manifest.capabilities.storage is True
    assert manifest.capabilities.cron == "0 * * * *"
    assert manifest.checkers[0].data_needs == (DataNeed.DISK_METRICS, DataNeed.DISK_HEALTH)
    assert manifest.remediations[0].platforms == (Platform.WINDOWS,)
    assert manifest.settings["mode"].type is SettingType.SELECT
    assert manifest.settings["limit"].required is True
    assert manifest.default_settings() == {"limit": 90, "mode": "fast"}
    assert manifest.checker("low-space") is manifest.checkers[0]
    assert manifest.checker("missing") is None


def test_nested_optional_section_errors_are_reported() -> None:
    payload = manifest_payload(
        minPlatformVersion="latest",
        capabilities={"network": "example.com", "storage": "yes"},
        remediations=[{"name": "fix", "script": "fix.sh", "platforms": ["macos"]}, {"name": "x"}],
        settings={
            "mode": {"type": "select", "label": "Mode"},
            "colour": {"type": "color", "label": ""},
        },
    )

    result = validate_manifest(payload)

    assert result.manifest is None
    assert result.fields() == (
        "minPlatformVersion",
        "capabilities.network",
        "capabilities.storage",
        "remediations[0].platforms[0]",
        "remediations[1].script",
        "remediations[1].platforms",
        "settings.colour.type",
        "settings.colour.label",
        "settings.mode.options",
    )
    assert result.issues[-1].message == "Select settings require at least one option"


@settings(
    max_examples=25,
    derandomize=True,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
@given(
    name=st.text(alphabet=_NAME_CHARS, min_size=1, max_size=24),
    version=st.tuples(st.integers(0, 999), st.integers(0, 999), st.integers(0, 999)),
)
def test_well_formed_names_and_versions_always_validate(
    name: str, version: tuple[int, int, int]
) -> None:
    rendered = ".".join(str(part) for part in version)

    result = validate_manifest(manifest_payload(name=name, version=rendered))

    assert result.ok
    assert result.manifest is not None
    assert result.manifest.name == name
    assert result.manifest.version == rendered


@settings(max_examples=25, derandomize=True, deadline=None)
@given(name=st.text(min_size=1, max_size=24).filter(lambda text: set(text) - set(_NAME_CHARS)))
def test_names_outside_the_alphabet_are_always_rejected(name: str) -> None:
    result = validate_manifest(manifest_payload(name=name))

    assert result.manifest is None
    assert "name" in result.fields()


def test_read_manifest_hashes_raw_json_text(tmp_path: Path) -> None:
    package_dir = write_package(tmp_path, "disk-check", manifest_payload())

    document = read_manifest(package_dir)

    raw = (package_dir / "manifest.json").read_text(encoding="utf-8")
    assert document.path == package_dir / "manifest.json"
    assert document.payload == json.loads(raw)
    assert document.content_hash == hashlib.sha256(raw.encode("utf-8")).hexdigest()


def test_yaml_manifest_is_supported(tmp_path: Path) -> None:
    package_dir = tmp_path / "yaml-pkg"
    package_dir.mkdir()
    (package_dir / "manifest.yaml").write_text(
        "\n".join(
            [
                "name: yaml-pkg",
                "version: 0.2.0",
                "displayName: YAML Package",
                "author: acme",
                "license: open-source",
                "checkers:",
                "  - name: first",
                "    file: first.py",
                "    type: generic",
            ]
        ),
        encoding="utf-8",
    )

    manifest, document = load_manifest(package_dir)

    assert manifest.name == "yaml-pkg"
    assert document.path.name == "manifest.yaml"


def test_missing_manifest_raises_with_root_issue(tmp_path: Path) -> None:
    with pytest.raises(ManifestValidationError) as excinfo:
        read_manifest(tmp_path)

    assert excinfo.value.issues[0].path == "root"
    assert excinfo.value.issues[0].message == f"Missing manifest.json in {tmp_path}"


def test_unparseable_manifest_raises(tmp_path: Path) -> None:
    (tmp_path / "manifest.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(ManifestValidationError, match="unable to parse manifest"):
        read_manifest(tmp_path)


def test_load_manifest_raises_with_every_issue(tmp_path: Path) -> None:
    package_dir = write_package(tmp_path, "broken", {"name": "Broken"})

    with pytest.raises(ManifestValidationError) as excinfo:
        load_manifest(package_dir)

    assert "name" in [issue.path for issue in excinfo.value.issues]
    assert len(excinfo.value.issues) == 6
