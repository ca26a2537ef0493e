"""Thresholds, rounding, and wording of the shipped disk-space checker."""

from __future__ import annotations

import pytest

from fleetcheck.builtin_packages.core_diagnostics.checkers.disk_space import (
    CRITICAL_THRESHOLD_KEY,
    RESULT_TYPE,
    WARNING_THRESHOLD_KEY,
    DiskSpaceChecker,
)
from fleetcheck.packages.models import CheckerContext, JSONValue, Severity


def _context(drives: JSONValue, **settings: JSONValue) -> CheckerContext:
    return CheckerContext(vm_id="vm-1", disk_metrics=drives, settings=settings)


async def test_critical_and_warning_drives_are_reported() -> None:
    checker = DiskSpaceChecker(environ={})

    results = await checker.analyze(
        _context(
            {
                "C:": {"used": 96, "total": 100},
                "D:": {"usedGB": 430.5, "totalGB": 500},
                "E:": {"used": 10, "total": 100},
            }
        )
    )

    assert [(item.severity, item.data["drive"]) for item in results if item.data] == [
        (Severity.CRITICAL, "C:"),
        (Severity.MEDIUM, "D:"),
    ]
    critical, warning = results
    assert critical.type == RESULT_TYPE
    assert critical.text == "Drive C: is critically low on space (96GB of 100GB used, 96%)"
    assert critical.action_text.startswith("Immediately free up space")
    assert warning.text == "Drive D: is running low on space (430.5GB of 500GB used, 86%)"
    assert warning.data == {
        "drive": "D:",
        "usedGB": 430.5,
        "totalGB": 500,
        "availableGB": 69.5,
        "usagePercent": 86,
        "severity": "medium",
    }


@pytest.mark.parametrize(
    ("used", "expected"),
    [(84.4, []), (84.5, [Severity.MEDIUM]), (94.5, [Severity.CRITICAL])],
)
async def test_percentage_rounds_half_up(used: float, expected: list[Severity]) -> None:
    results = await DiskSpaceChecker(environ={}).analyze(
        _context({"C:": {"used": used, "total": 100}})
    )

    assert [item.severity for item in results] == expected


async def test_settings_take_precedence_over_environment() -> None:
    checker = DiskSpaceChecker(environ={CRITICAL_THRESHOLD_KEY: "99", WARNING_THRESHOLD_KEY: "98"})
    drives = {"C:": {"used": 60, "total": 100}}

    from_env = await checker.analyze(_context(drives))
    from_settings = await checker.analyze(
        _context(drives, **{CRITICAL_THRESHOLD_KEY: 70, WARNING_THRESHOLD_KEY: 50})
    )

    assert from_env == []
    assert [item.severity for item in from_settings] == [Severity.MEDIUM]


async def test_unparsable_environment_threshold_falls_back_to_default() -> None:
    checker = DiskSpaceChecker(environ={WARNING_THRESHOLD_KEY: "eighty"})

    results = await checker.analyze(_context({"C:": {"used": 86, "total": 100}}))

    assert [item.severity for item in results] == [Severity.MEDIUM]


@pytest.mark.parametrize(
    "drives",
    [None, [1, 2], {"C:": "full"}, {"C:": {}}],
)
async def test_missing_or_malformed_metrics_produce_nothing(drives: JSONValue) -> None:
    assert await DiskSpaceChecker(environ={}).analyze(_context(drives)) == []
