"""
fleetcheck — package execution core

File: src/fleetcheck/__init__.py
Last updated: 2026-10-19

Purpose
- Package root for the VM health-check package/plugin execution core.

What should be included in this file
- Version export and a minimal public API surface.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
