"""Process-wide logging setup for CableLedger."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from core import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV_VAR = "CABLELEDGER_LOG_LEVEL"

_LOG_PATH: Optional[Path] = None


def _level_from_env(default: int) -> int:
    name = os.environ.get(LOG_LEVEL_ENV_VAR, "").strip().upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def _has_file_handler(root: logging.Logger, path: Path) -> bool:
    return any(
        isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(path)
        for handler in root.handlers
    )


def configure_logging(level: int = logging.INFO, *, console: bool = False) -> Path:
    """Send log records to ``cableledger.log`` in the application log folder.

    ``CABLELEDGER_LOG_LEVEL`` overrides ``level``.  With ``console`` set the
    records are echoed to stderr as well.  Only the first call has an effect;
    the log file path is returned every time.
    """

    global _LOG_PATH

    if _LOG_PATH is not None:
        return _LOG_PATH

    level = _level_from_env(level)
    log_path = app_paths.logs_path("cableledger.log")
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(level if not root.handlers else min(root.level, level))

    if not _has_file_handler(root, log_path):
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    _LOG_PATH = log_path
    root.debug("Logging to %s at level %s", log_path, logging.getLevelName(level))
    return log_path


def get_log_path() -> Path:
    if _LOG_PATH is None:
        return configure_logging()
    return _LOG_PATH


__all__ = ["LOG_FORMAT", "configure_logging", "get_log_path"]
