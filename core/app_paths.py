"""Centralised helpers for managing CableLedger application directories."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_APP_ENV_VARS: Iterable[str] = ("CABLELEDGER_HOME", "LOCALAPPDATA", "APPDATA")


def _detect_base_directory() -> Path:
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if value:
            path = Path(value).expanduser().resolve()
            if env_var == "CABLELEDGER_HOME":
                return path
            return path / "CableLedger"
    return Path.home().resolve() / ".cableledger"


APP_DIR: Path = _detect_base_directory()
CREDENTIALS_DIR: Path = APP_DIR / "credentials"
LOGS_DIR: Path = APP_DIR / "logs"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, CREDENTIALS_DIR, LOGS_DIR):
        ensure_directory(directory)


def data_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`APP_DIR`, creating parent directories."""

    ensure_app_structure()
    target = APP_DIR.joinpath(*parts)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def credentials_path(*parts: str) -> Path:
    return data_path("credentials", *parts)


def logs_path(*parts: str) -> Path:
    return data_path("logs", *parts)


__all__ = [
    "APP_DIR",
    "CREDENTIALS_DIR",
    "LOGS_DIR",
    "credentials_path",
    "data_path",
    "ensure_app_structure",
    "ensure_directory",
    "logs_path",
]
