"""Capability review and runtime access checks."""

from __future__ import annotations

import pytest

from fleetcheck.packages.capabilities import (
    check_network_access,
    check_remediation_access,
    check_storage_access,
    describe_capabilities,
    format_capabilities_for_display,
    is_valid_cron,
    is_valid_domain,
    review_capabilities,
    validate_capabilities,
)
from fleetcheck.packages.models import PackageCapabilities


def test_empty_capabilities_produce_no_warnings() -> None:
    assert validate_capabilities(PackageCapabilities()) == ()
    assert describe_capabilities(PackageCapabilities()) == ("No special capabilities required",)
    assert format_capabilities_for_display(PackageCapabilities()) == "  (No special capabilities)"


def test_wildcard_domain_is_both_invalid_and_broad() -> None:
    warnings = validate_capabilities(PackageCapabilities(network=("*",)))

    assert warnings == (
        "Invalid network domain: *",
        "Broad network access requested: *",
    )


def test_subdomain_wildcard_is_valid_but_broad() -> None:
    warnings = validate_capabilities(PackageCapabilities(network=("*.example.com",)))

    assert warnings == ("Broad network access requested: *.example.com",)


def test_cron_and_remediation_warnings() -> None:
    warnings = validate_capabilities(
        PackageCapabilities(cron="*/5 * * *", remediation=True, network=("api.example.com",))
    )

    assert warnings == (
        "Invalid cron expression: */5 * * *",
        "Package requests ability to execute remediation scripts on VMs",
    )


def test_review_pairs_warnings_with_descriptions() -> None:
    review = review_capabilities(
        PackageCapabilities(network=("a.example.com", "b.example.com"), storage=True)
    )

    assert review.warnings == ()
    assert review.descriptions == (
        "Network access to: a.example.com, b.example.com",
        "Local storage for persisting data",
    )


@pytest.mark.parametrize(
    ("domain", "expected"),
    [
        ("example.com", True),
        ("*.example.com", True),
        ("sub-domain.example.co.uk", True),
        ("-bad.example.com", False),
        ("example..com", False),
        ("*", False),
        ("", False),
    ],
)
def test_domain_validation(domain: str, expected: bool) -> None:
    assert is_valid_domain(domain) is expected


@pytest.mark.parametrize(
    ("expression", "expected"),
    [("0 * * * *", True), ("*/15 2 * * 1-5", True), ("0 * * *", False), ("0  * * * *", False)],
)
def test_cron_requires_five_space_separated_fields(expression: str, expected: bool) -> None:
    assert is_valid_cron(expression) is expected


@pytest.mark.parametrize(
    ("declared", "url", "allowed"),
    [
        (("*",), "https://anything.test/path", True),
        (("*.example.com",), "https://example.com/x", True),
        (("*.example.com",), "https://api.eu.example.com/x", True),
        (("*.example.com",), "https://badexample.com/x", False),
        (("api.example.com",), "https://API.example.com:8443/v1", True),
        (("api.example.com",), "https://www.example.com/", False),
    ],
)
def test_network_access_matching(declared: tuple[str, ...], url: str, allowed: bool) -> None:
    assert check_network_access(declared, url).allowed is allowed


def test_network_access_reasons() -> None:
    assert check_network_access((), "https://example.com").reason == (
        "Package has no network capabilities declared"
    )
    assert check_network_access(("example.com",), "not a url").reason == "Invalid URL"
    denied = check_network_access(("a.test", "b.test"), "https://c.test/")
    assert denied.reason == "Domain c.test not in allowed list: a.test, b.test"


def test_storage_and_remediation_access() -> None:
    assert check_storage_access(True).allowed
    assert check_storage_access(False).reason == "Package has not declared storage capability"
    assert check_remediation_access(True).allowed
    assert not check_remediation_access(False).allowed
