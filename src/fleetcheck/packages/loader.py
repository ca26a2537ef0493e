"""Resolve checker modules declared in a manifest into ``PackageChecker`` objects."""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import sys
from pathlib import Path
from types import ModuleType
from typing import Final

from fleetcheck.packages.errors import PackageError
from fleetcheck.packages.models import PackageChecker

CHECKER_EXPORT: Final[str] = "checker"


class CheckerLoadError(PackageError):
    """Raised when a declared checker file cannot be turned into a checker."""


def resolve_checker_path(package_dir: Path, file: str) -> Path:
    """Return the checker file inside ``package_dir``; reject paths that escape it."""

    root = package_dir.resolve()
    candidate = (root / file).resolve()
    if not candidate.is_relative_to(root):
        raise CheckerLoadError(f"checker file escapes package directory: {file}")
    if not candidate.suffix:
        candidate = candidate.with_suffix(".py")
    if candidate.suffix != ".py":
        raise CheckerLoadError(f"checker file must be a Python module: {file}")
    if not candidate.is_file():
        raise CheckerLoadError(f"checker file not found: {file}")
    return candidate


def checker_from_module(module: ModuleType) -> PackageChecker:
    """Return the module's ``checker`` export, instantiating it when it is a class."""

    export = getattr(module, CHECKER_EXPORT, None)
    if export is None:
        raise CheckerLoadError(f"module {module.__name__} does not export {CHECKER_EXPORT!r}")
    if inspect.isclass(export):
        try:
            export = export()
        except TypeError as exc:
            raise CheckerLoadError(
                f"checker class in {module.__name__} must take no arguments: {exc}"
            ) from exc
    analyze = getattr(export, "analyze", None)
    if not isinstance(export, PackageChecker) or not inspect.iscoroutinefunction(analyze):
        raise CheckerLoadError(
            f"{module.__name__}.{CHECKER_EXPORT} must provide an async analyze(context)"
        )
    return export


def load_builtin_checker(root_module: str, package_dir: Path, file: str) -> PackageChecker:
    """Import a first-party checker as a submodule of ``root_module``.

    ``package_dir`` must be a direct child of ``root_module``'s directory; the
    checker file maps onto the dotted module path below it.
    """

    path = resolve_checker_path(package_dir, file)
    relative = path.relative_to(package_dir.resolve()).with_suffix("")
    parts = (package_dir.name, *relative.parts)
    if not all(part.isidentifier() for part in parts):
        raise CheckerLoadError(f"checker path is not importable as a module: {file}")
    module_name = ".".join((root_module, *parts))
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise CheckerLoadError(f"failed to import {module_name}: {exc}") from exc
    return checker_from_module(module)


def load_checker_file(path: Path, module_name: str) -> PackageChecker:
    """Execute a checker file by path; only ever used inside a worker process."""

    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise CheckerLoadError(f"cannot load checker module from {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return checker_from_module(module)


__all__ = [
    "CHECKER_EXPORT",
    "CheckerLoadError",
    "checker_from_module",
    "load_builtin_checker",
    "load_checker_file",
    "resolve_checker_path",
]
