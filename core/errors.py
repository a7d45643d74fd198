"""Exception hierarchy shared by the reconciliation components."""
from __future__ import annotations

from typing import Iterable, List, Optional


class SyncError(Exception):
    """Base error raised when a reconciliation pass cannot complete."""


class ValidationError(SyncError):
    """Input was rejected before anything was written."""


class HeaderValidationError(ValidationError):
    """Raised when a worksheet header row lacks required columns."""

    def __init__(self, missing: Iterable[str], *, tab: Optional[str] = None) -> None:
        self.missing: List[str] = list(missing)
        self.tab = tab
        location = f" in tab '{tab}'" if tab else ""
        super().__init__(
            f"Missing required columns{location}: {', '.join(self.missing)}"
        )


class ConnectionNotFoundError(ValidationError):
    """Raised when a connection id does not resolve to a stored connection."""


class SheetsAccessError(SyncError):
    """Raised when the spreadsheet provider refuses or fails a request."""

    def __init__(self, message: str, *, hint: str = "", status: int = 0) -> None:
        self.hint = hint
        self.status = status
        text = f"{message} {hint}".strip() if hint else message
        super().__init__(text)


class SheetsPermissionError(SheetsAccessError):
    """The service account cannot open the spreadsheet."""


class SheetNotFoundError(SheetsAccessError):
    """The spreadsheet or worksheet does not exist."""


class SheetsCredentialsError(SheetsAccessError):
    """Service account credentials are missing or invalid."""


class ReconciliationError(SyncError):
    """Raised when a row fails on the sequential upsert path."""


class AuthorizationError(SyncError):
    """The caller is not allowed to perform the requested operation."""


class UnknownCalculationMethodError(SyncError):
    """Raised when a wastage method name has no registered implementation."""


__all__ = [
    "AuthorizationError",
    "ConnectionNotFoundError",
    "HeaderValidationError",
    "ReconciliationError",
    "SheetNotFoundError",
    "SheetsAccessError",
    "SheetsCredentialsError",
    "SheetsPermissionError",
    "SyncError",
    "UnknownCalculationMethodError",
    "ValidationError",
]
