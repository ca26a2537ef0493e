"""Flag drives whose usage crosses the warning or critical threshold."""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from typing import Final

import structlog

from fleetcheck.packages.models import CheckerContext, CheckerResult, JSONValue, Severity

_logger = structlog.get_logger(__name__)

RESULT_TYPE: Final[str] = "DISK_SPACE_LOW"
CRITICAL_THRESHOLD_KEY: Final[str] = "DISK_SPACE_CRITICAL_THRESHOLD"
WARNING_THRESHOLD_KEY: Final[str] = "DISK_SPACE_WARNING_THRESHOLD"
DEFAULT_CRITICAL_THRESHOLD: Final[int] = 95
DEFAULT_WARNING_THRESHOLD: Final[int] = 85

_CRITICAL_ACTION: Final[str] = (
    "Immediately free up space by deleting unnecessary files, moving data to another drive, "
    "or expanding the disk"
)
_WARNING_ACTION: Final[str] = (
    "Free up space by deleting unnecessary files, moving data to another drive, "
    "or expanding the disk"
)


class DiskSpaceChecker:
    """Compare per-drive usage from ``disk_metrics`` against two thresholds.

    Thresholds come from package settings, then the process environment, then
    the built-in defaults.
    """

    def __init__(self, *, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ

    async def analyze(self, context: CheckerContext) -> list[CheckerResult]:
        critical = self._threshold(context, CRITICAL_THRESHOLD_KEY, DEFAULT_CRITICAL_THRESHOLD)
        warning = self._threshold(context, WARNING_THRESHOLD_KEY, DEFAULT_WARNING_THRESHOLD)
        _logger.debug(
            "disk_space_thresholds", vm_id=context.vm_id, critical=critical, warning=warning
        )

        drives = context.disk_metrics
        if not isinstance(drives, Mapping):
            return []

        results: list[CheckerResult] = []
        for drive, usage in drives.items():
            if not isinstance(usage, Mapping):
                continue
            used = _number(usage.get("used")) or _number(usage.get("usedGB")) or 0
            total = _number(usage.get("total")) or _number(usage.get("totalGB")) or 1
            percentage = _round_half_up(used / total * 100) if total > 0 else 0

            if percentage >= critical:
                severity, wording, action = Severity.CRITICAL, "is critically low", _CRITICAL_ACTION
            elif percentage >= warning:
                severity, wording, action = Severity.MEDIUM, "is running low", _WARNING_ACTION
            else:
                continue

            results.append(
                CheckerResult(
                    type=RESULT_TYPE,
                    text=(
                        f"Drive {drive} {wording} on space "
                        f"({_display(used)}GB of {_display(total)}GB used, {percentage}%)"
                    ),
                    action_text=action,
                    severity=severity,
                    data={
                        "drive": drive,
                        "usedGB": used,
                        "totalGB": total,
                        "availableGB": total - used,
                        "usagePercent": percentage,
                        "severity": severity.value,
                    },
                )
            )
        return results

    def _threshold(self, context: CheckerContext, key: str, default: int) -> float:
        configured = _number(context.settings.get(key))
        if configured is not None:
            return configured
        raw = self._environ.get(key)
        if raw is not None:
            try:
                return int(raw.strip())
            except ValueError:
                _logger.warning("disk_space_threshold_invalid", key=key, value=raw)
        return default


def _number(value: JSONValue) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _display(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


checker = DiskSpaceChecker

__all__ = [
    "CRITICAL_THRESHOLD_KEY",
    "DEFAULT_CRITICAL_THRESHOLD",
    "DEFAULT_WARNING_THRESHOLD",
    "DiskSpaceChecker",
    "RESULT_TYPE",
    "WARNING_THRESHOLD_KEY",
    "checker",
]
