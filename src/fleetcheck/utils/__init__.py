"""Utility exports for hashing helpers."""

from fleetcheck.utils.hashing import hmac_sha256_hex, sha256_bytes, sha256_text

__all__ = [
    "hmac_sha256_hex",
    "sha256_bytes",
    "sha256_text",
]
