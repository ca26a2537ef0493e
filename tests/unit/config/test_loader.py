"""
fleetcheck — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-19

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping and offline behavior.

Functional requirements
- Works without any license secret or network.

Non-functional requirements
- Deterministic output across repeated loads.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

from fleetcheck.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from fleetcheck.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _sha256_json(data: dict[str, object]) -> str:
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[workers]
max_restart_attempts = 4
""".strip(),
    )
    env = {"FLEETCHECK_WORKERS_MAX_RESTART_ATTEMPTS": "6"}

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path,
        environ=env,
        cli_overrides={"workers.max_restart_attempts": 7},
    )

    assert default_loaded["workers"]["max_restart_attempts"] == 3
    assert file_loaded["workers"]["max_restart_attempts"] == 4
    assert env_loaded["workers"]["max_restart_attempts"] == 6
    assert cli_loaded["workers"]["max_restart_attempts"] == 7


def test_env_mapping_coerces_each_scalar_kind(tmp_path: Path) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "FLEETCHECK_WORKERS_REQUEST_TIMEOUT_SECONDS": "12.5",
            "FLEETCHECK_WORKERS_AUTO_RESTART": "off",
            "FLEETCHECK_LICENSING_GRACE_PERIOD_DAYS": " 14 ",
            "FLEETCHECK_OBSERVABILITY_LOG_LEVEL": "DEBUG",
            "FLEETCHECK_WORKERS_PYTHON_EXECUTABLE": "/usr/bin/python3",
        },
    )

    assert loaded["workers"]["request_timeout_seconds"] == 12.5
    assert loaded["workers"]["auto_restart"] is False
    assert loaded["licensing"]["grace_period_days"] == 14
    assert loaded["observability"]["log_level"] == "DEBUG"
    assert loaded["workers"]["python_executable"] == "/usr/bin/python3"


@pytest.mark.parametrize(
    ("env_name", "raw", "message"),
    [
        ("FLEETCHECK_WORKERS_MEMORY_LIMIT_MB", "lots", "must be an integer"),
        ("FLEETCHECK_WORKERS_SHUTDOWN_GRACE_SECONDS", "soon", "must be a number"),
        ("FLEETCHECK_WORKERS_AUTO_RESTART", "maybe", "must be a boolean"),
    ],
)
def test_invalid_env_coercion_raises_actionable_error(
    tmp_path: Path, env_name: str, raw: str, message: str
) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match=message) as excinfo:
        load_config(config_path, environ={env_name: raw})

    assert env_name in str(excinfo.value)


def test_env_values_are_validated_after_coercion(tmp_path: Path) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={"FLEETCHECK_WORKERS_MAX_HEALTH_FAILURES": "0"})

    assert [issue.path for issue in excinfo.value.issues] == ["workers.max_health_failures"]


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    _write_config(config_path, "")

    env = {
        "FLEETCHECK_WORKERS_MAX_RESTART_ATTEMPTS": "6",
        "FLEETCHECK_OBSERVABILITY_REDACT_SECRETS": "false",
    }
    cli = {"workers.request_timeout_seconds": 3.5}

    first = load_config(config_path, environ=env, cli_overrides=cli)
    second = load_config(config_path, environ=env, cli_overrides=cli)

    assert _sha256_json(first) == _sha256_json(second)


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "fleetcheck.toml"
    _write_config(
        config_path,
        """
[packages]
external_root = "packages"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    base = config_path.resolve().parent
    assert loaded["packages"]["external_root"] == (base / "packages").as_posix()
    assert loaded["paths"]["state_db"] == (base / "state/fleetcheck.sqlite").as_posix()
    assert loaded["observability"]["log_dir"] == (base / "logs").as_posix()


def test_absolute_and_home_paths_are_preserved_or_expanded(tmp_path: Path) -> None:
    normalized = normalize_paths(
        {
            "packages": {"external_root": "/srv/packages/../packages"},
            "paths": {"state_db": "~/state.sqlite"},
        },
        base_dir=tmp_path,
    )

    assert normalized["packages"]["external_root"] == "/srv/packages"
    assert normalized["paths"]["state_db"] == (Path.home() / "state.sqlite").as_posix()


def test_missing_default_config_file_falls_back_to_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["packages"]["builtin_module"] == "fleetcheck.builtin_packages"
    assert loaded["workers"]["request_timeout_seconds"] == 30.0


def test_explicit_missing_config_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "missing.toml", environ={})


def test_invalid_toml_raises(tmp_path: Path) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    _write_config(config_path, "[workers\nauto_restart = true")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_embedded_secret_in_file_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    _write_config(
        config_path,
        """
[licensing]
secret = "do-not-commit"
""".strip(),
    )

    with pytest.raises(ConfigValidationError, match="embedded secret values are forbidden"):
        load_config(config_path, environ={})


def test_invalid_cli_override_key_raises(tmp_path: Path) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="invalid CLI override key"):
        load_config(config_path, environ={}, cli_overrides={"..": 1})


def test_dump_effective_config_is_redacted_and_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "fleetcheck.toml"
    _write_config(config_path, "")

    loaded = load_config(config_path, environ={})
    loaded["licensing"]["license_key"] = "FCK-abc"
    first = dump_effective_config(loaded)
    second = dump_effective_config(loaded)

    assert first == second
    parsed = json.loads(first)
    assert parsed["licensing"]["license_key"] == "<redacted>"
    assert parsed["licensing"]["secret_env"] == "FLEETCHECK_LICENSE_SECRET"


def test_config_package_exports_loader_and_errors(tmp_path: Path) -> None:
    import fleetcheck.config as config_pkg

    config_path = tmp_path / "fleetcheck.toml"
    _write_config(config_path, "")

    loaded = config_pkg.load_config(config_path, environ={})
    assert loaded["meta"]["schema_version"] == 1

    with pytest.raises(config_pkg.ConfigLoadError):
        config_pkg.load_config(tmp_path / "missing.toml")
