"""
fleetcheck — hashing utilities

File: src/fleetcheck/utils/hashing.py
Last updated: 2026-10-19

Purpose
- Provide deterministic SHA-256 helpers for bytes and text.
- Provide keyed HMAC-SHA256 digests for license key checksums.

Functional requirements
- Manifest drift detection hashes the raw manifest text, not the parsed payload.

Non-functional requirements
- Standard library only; behavior is cross-platform deterministic.
"""

from __future__ import annotations

import hashlib
import hmac

__all__ = [
    "hmac_sha256_hex",
    "sha256_bytes",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def hmac_sha256_hex(secret: str, message: str) -> str:
    """Return the lowercase HMAC-SHA256 hex digest of ``message`` keyed by ``secret``."""

    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
