"""Application configuration helpers for CableLedger."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Tuple

from core import app_paths


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = os.getenv(
    "CABLELEDGER_SETTINGS_PATH",
    str(app_paths.data_path("sync_settings.json")),
)
DEFAULT_DB_PATH = os.getenv(
    "CABLELEDGER_DB_PATH",
    str(app_paths.data_path("cableledger.db")),
)
DEFAULT_CREDENTIALS_PATH = os.getenv(
    "CABLELEDGER_CREDENTIALS_PATH",
    str(app_paths.credentials_path("service_account.json")),
)
DEFAULT_TOKENS_PATH = os.getenv(
    "CABLELEDGER_TOKENS_PATH",
    str(app_paths.credentials_path("tokens.json")),
)
SERVICE_ACCOUNT_ENV_VAR = "GOOGLE_SERVICE_ACCOUNT_KEY"
TOKEN_ENV_VAR = "CABLELEDGER_TOKEN"

DEFAULT_AREA_PREFIX = "034"
DEFAULT_DRUM_CAPACITY = 2000.0
DEFAULT_LOW_STOCK_THRESHOLD = 0.0
DEFAULT_WASTAGE_METHOD = "smart_segments"
DEFAULT_ALLOWED_ROLES: Tuple[str, ...] = ("admin", "moderator")
DEFAULT_SECONDARY_TAB = "DW"
MANUAL_WASTAGE_WARN_RATIO = 0.2


@dataclass
class SyncSettings:
    """User adjustable options for the reconciliation pass."""

    credential_path: str = DEFAULT_CREDENTIALS_PATH
    database_path: str = DEFAULT_DB_PATH
    area_prefix: str = DEFAULT_AREA_PREFIX
    default_drum_capacity: float = DEFAULT_DRUM_CAPACITY
    low_stock_threshold: float = DEFAULT_LOW_STOCK_THRESHOLD
    wastage_method: str = DEFAULT_WASTAGE_METHOD
    allowed_roles: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ROLES))
    secondary_tab: str = DEFAULT_SECONDARY_TAB
    write_back: bool = True

    def to_json(self) -> Dict[str, object]:
        return asdict(self)


def _coerce_float(value: object, default: float, *, minimum: float = 0.0) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(minimum, number)


def _merge_settings(data: Mapping[str, object]) -> SyncSettings:
    defaults = SyncSettings()
    merged = defaults.to_json()
    for key, value in data.items():
        if key not in merged:
            logger.debug("Ignoring unknown sync setting %s", key)
            continue
        if key in {"default_drum_capacity", "low_stock_threshold"}:
            merged[key] = _coerce_float(value, float(merged[key]))  # type: ignore[arg-type]
        elif key == "allowed_roles" and isinstance(value, list):
            roles = [str(role).strip().lower() for role in value if str(role).strip()]
            merged[key] = roles or list(DEFAULT_ALLOWED_ROLES)
        elif key == "write_back":
            merged[key] = bool(value)
        elif key == "area_prefix" and isinstance(value, str):
            digits = "".join(ch for ch in value if ch.isdigit())
            merged[key] = digits or DEFAULT_AREA_PREFIX
        elif isinstance(value, str) and value.strip():
            merged[key] = value.strip()
    return SyncSettings(**merged)  # type: ignore[arg-type]


def load_sync_settings(path: str = SYNC_SETTINGS_PATH) -> SyncSettings:
    if not os.path.exists(path):
        settings = SyncSettings()
        save_sync_settings(settings, path)
        return settings

    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError:
            logger.warning("Sync settings at %s are not valid JSON; using defaults", path)
            return SyncSettings()
    if not isinstance(data, Mapping):
        return SyncSettings()
    return _merge_settings(data)


def save_sync_settings(settings: SyncSettings, path: str = SYNC_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "DEFAULT_ALLOWED_ROLES",
    "DEFAULT_AREA_PREFIX",
    "DEFAULT_CREDENTIALS_PATH",
    "DEFAULT_DB_PATH",
    "DEFAULT_DRUM_CAPACITY",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_SECONDARY_TAB",
    "DEFAULT_TOKENS_PATH",
    "DEFAULT_WASTAGE_METHOD",
    "MANUAL_WASTAGE_WARN_RATIO",
    "SERVICE_ACCOUNT_ENV_VAR",
    "TOKEN_ENV_VAR",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
