"""Role checks around an external token resolver."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol

from core.errors import AuthorizationError
from settings import DEFAULT_ALLOWED_ROLES

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AuthContext:
    user_id: str
    role: str


class Authorizer(Protocol):
    def resolve(self, token: str) -> Optional[AuthContext]:
        """Return the caller behind ``token`` or ``None`` when it is not recognised."""


class StaticAuthorizer:
    """Token table for command line use and tests."""

    def __init__(self, tokens: Mapping[str, AuthContext]) -> None:
        self._tokens = dict(tokens)

    def resolve(self, token: str) -> Optional[AuthContext]:
        return self._tokens.get(token)


def load_token_table(path: Path) -> Optional[StaticAuthorizer]:
    """Read ``{token: {"user_id": ..., "role": ...}}`` from ``path``.

    Returns ``None`` when the file does not exist.
    """

    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as handle:
        try:
            payload = json.load(handle)
        except json.JSONDecodeError as exc:
            raise AuthorizationError(f"Token table {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise AuthorizationError(f"Token table {path} must be a JSON object.")

    tokens: Dict[str, AuthContext] = {}
    for token, entry in payload.items():
        if not isinstance(entry, dict):
            logger.warning("Ignoring malformed token entry in %s", path)
            continue
        tokens[str(token)] = AuthContext(
            user_id=str(entry.get("user_id") or ""),
            role=str(entry.get("role") or ""),
        )
    return StaticAuthorizer(tokens)


def require_role(
    authorizer: Authorizer,
    token: Optional[str],
    allowed_roles: Iterable[str] = DEFAULT_ALLOWED_ROLES,
) -> AuthContext:
    if not token:
        raise AuthorizationError("Not authenticated.")
    context = authorizer.resolve(token)
    if context is None:
        raise AuthorizationError("Not authenticated.")
    allowed = {role.lower() for role in allowed_roles}
    if context.role.lower() not in allowed:
        logger.warning("User %s with role %s was refused", context.user_id, context.role)
        raise AuthorizationError("Forbidden: your role may not manage sheet connections.")
    return context


__all__ = ["AuthContext", "Authorizer", "StaticAuthorizer", "load_token_table", "require_role"]
