"""Modmail help-desk relay."""

from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

_PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def _resolve_version() -> str:
    """Prefer installed metadata, fall back to the source tree's pyproject.toml."""
    try:
        return version("modmail")
    except PackageNotFoundError:
        pass

    try:
        data = tomllib.loads(_PYPROJECT.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"

    project_version = data.get("project", {}).get("version")
    return project_version if isinstance(project_version, str) else "0.0.0"


__version__ = _resolve_version()

__all__ = ["__version__"]
