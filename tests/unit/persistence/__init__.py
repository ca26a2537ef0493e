"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

import hashlib
from typing import Any

from fleetcheck.packages.manifest import validate_manifest
from fleetcheck.packages.models import PackageManifest


def make_manifest(name: str = "disk-check", **overrides: Any) -> PackageManifest:
    payload: dict[str, Any] = {
        "name": name,
        "version": "1.0.0",
        "displayName": name.replace("-", " ").title(),
        "author": "acme",
        "license": "open-source",
        "checkers": [{"name": "low-space", "file": "check.py", "type": "disk"}],
    }
    payload.update(overrides)
    result = validate_manifest(payload)
    assert result.manifest is not None, result.issues
    return result.manifest


def manifest_digest(seed: str) -> str:
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()
