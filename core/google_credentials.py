"""Helpers for validating and normalising Google service account credentials."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

__all__ = [
    "CredentialsFileInvalidError",
    "REQUIRED_FIELDS",
    "load_service_account_data",
    "parse_service_account_json",
    "resolve_service_account",
]


class CredentialsFileInvalidError(Exception):
    """Raised when service account JSON is missing required data."""


REQUIRED_FIELDS: Iterable[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "token_uri",
)


def _normalise_private_key(key: str) -> str:
    key = key.replace("\r\n", "\n").replace("\r", "\n")
    key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def parse_service_account_json(raw: str) -> Dict[str, object]:
    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Service account JSON is empty.")

    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"Service account JSON could not be parsed: {exc.msg}") from exc
    if not isinstance(payload, Mapping):
        raise CredentialsFileInvalidError("Service account JSON must be an object.")
    return _validate_payload(payload)


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    data: Dict[str, object] = dict(payload)
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if data.get("type") != "service_account":
        missing.append("type")

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"Service account JSON is missing fields: {ordered}")

    data["private_key"] = _normalise_private_key(str(data["private_key"]))
    return data


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data read from ``path``."""

    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Service account file could not be read: {exc}") from exc
    return parse_service_account_json(raw)


def resolve_service_account(path: Optional[Path], env_var: str) -> Dict[str, object]:
    """Load credentials from ``env_var`` when set, else from ``path``."""

    inline = os.environ.get(env_var, "").strip()
    if inline:
        return parse_service_account_json(inline)
    if path is None or not path.exists():
        raise CredentialsFileInvalidError(
            f"No service account credentials found. Set {env_var} or place the key file at {path}."
        )
    return load_service_account_data(path)
