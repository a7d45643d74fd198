"""Google Sheets client helpers with robust A1 range handling.

This module centralises all direct interactions with the Google Sheets API.
It provides a small surface that the reconciliation components rely on
without knowing about HTTP requests or googleapiclient internals:

* Worksheet titles are quoted for A1 notation and column letters are
  calculated with a dedicated helper, so ranges always parse.
* Requests are retried with exponential backoff on quota and server errors.
* Failures surface as :class:`~core.errors.SheetsAccessError` subclasses that
  carry a remediation hint suitable for showing to the operator.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from core.errors import (
    SheetNotFoundError,
    SheetsAccessError,
    SheetsCredentialsError,
    SheetsPermissionError,
    ValidationError,
)
from core.google_credentials import CredentialsFileInvalidError, resolve_service_account

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)
MAX_RETRY_ATTEMPTS = 5
BACKOFF_SCHEDULE = (1, 2, 4, 8, 16)
RETRIABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
MAX_BATCH_RANGES = 200
READ_COLUMNS = 80

_SPREADSHEET_ID_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")
_BARE_ID_RE = re.compile(r"^[a-zA-Z0-9-_]{20,}$")
_SIMPLE_TITLE_RE = re.compile(r"^[A-Za-z0-9_]+$")


def parse_spreadsheet_id(value: str) -> str:
    """Return the spreadsheet id from a sheet URL or a bare id, or ``""``."""

    text = (value or "").strip()
    if not text:
        return ""
    match = _SPREADSHEET_ID_RE.search(text)
    if match:
        return match.group(1)
    text = text.split("?", 1)[0].split("#", 1)[0]
    if _BARE_ID_RE.fullmatch(text):
        return text
    return ""


def quote_title(title: str) -> str:
    """Return a worksheet title safely formatted for A1 notation."""

    normalised = (title or "").strip()
    if not normalised:
        raise ValidationError("Worksheet title must not be empty.")
    if _SIMPLE_TITLE_RE.fullmatch(normalised):
        return normalised
    escaped = normalised.replace("'", "''")
    return f"'{escaped}'"


def a1_range(title: str, cells: str) -> str:
    return f"{quote_title(title)}!{cells}"


def column_a1(column_index: int) -> str:
    """Return the column letters for a 0-based ``column_index``."""

    if column_index < 0:
        raise ValueError("Column index must be >= 0")
    column_index += 1
    label = ""
    while column_index:
        column_index, remainder = divmod(column_index - 1, 26)
        label = chr(65 + remainder) + label
    return label


def row_range(title: str, row_index: int, width: int) -> str:
    """Return the A1 range covering ``width`` cells of ``row_index`` (1-based)."""

    if row_index < 1:
        raise ValueError("Row index must be >= 1")
    last = column_a1(max(1, width) - 1)
    return a1_range(title, f"A{row_index}:{last}{row_index}")


def chunked(sequence: Sequence[Any], max_size: int = MAX_BATCH_RANGES) -> Iterator[Sequence[Any]]:
    """Yield slices of ``sequence`` containing at most ``max_size`` entries."""

    if max_size <= 0:
        raise ValueError("max_size must be positive")
    for start in range(0, len(sequence), max_size):
        yield sequence[start : start + max_size]


def http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status or 0)
    except (TypeError, ValueError):
        return 0


def build_service(credential_path: Optional[Path], env_var: str):
    """Return an authenticated Sheets API resource for the service account."""

    try:
        payload = resolve_service_account(credential_path, env_var)
    except CredentialsFileInvalidError as exc:
        raise SheetsCredentialsError(str(exc)) from exc
    try:
        credentials = service_account.Credentials.from_service_account_info(payload, scopes=SCOPES)
    except ValueError as exc:
        raise SheetsCredentialsError(f"Service account key was rejected: {exc}") from exc
    service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
    return service, str(payload.get("client_email") or "")


class SheetsClient:
    """Thin wrapper over a ``sheets/v4`` service resource."""

    def __init__(
        self,
        service,
        *,
        service_account_email: str = "",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._service = service
        self.service_account_email = service_account_email
        self._sleep = sleep

    @classmethod
    def from_credentials(cls, credential_path: Optional[Path], env_var: str) -> "SheetsClient":
        service, email = build_service(credential_path, env_var)
        return cls(service, service_account_email=email)

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------
    def _translate(self, exc: HttpError, spreadsheet_id: str) -> SheetsAccessError:
        status = http_status(exc)
        if status == 403:
            account = self.service_account_email or "the service account"
            return SheetsPermissionError(
                f"Permission denied for spreadsheet {spreadsheet_id}.",
                hint=f"Share the sheet with {account} as an editor.",
                status=status,
            )
        if status == 404:
            return SheetNotFoundError(
                f"Spreadsheet {spreadsheet_id} was not found.",
                hint="Check the sheet URL saved on the connection.",
                status=status,
            )
        return SheetsAccessError(f"Google Sheets request failed ({status or 'no status'}): {exc}", status=status)

    def _execute(self, request, description: str, spreadsheet_id: str) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                return request.execute()
            except HttpError as exc:
                status = http_status(exc)
                if status not in RETRIABLE_STATUSES or attempt >= MAX_RETRY_ATTEMPTS - 1:
                    raise self._translate(exc, spreadsheet_id) from exc
                delay = BACKOFF_SCHEDULE[min(attempt, len(BACKOFF_SCHEDULE) - 1)]
                attempt += 1
                logger.warning(
                    "Sheets API %s error (%s). Retrying in %ss (%d/%d)",
                    description,
                    status,
                    delay,
                    attempt,
                    MAX_RETRY_ATTEMPTS,
                )
                self._sleep(delay)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def list_tabs(self, spreadsheet_id: str) -> List[str]:
        """Return worksheet titles in display order."""

        request = self._service.spreadsheets().get(spreadsheetId=spreadsheet_id, includeGridData=False)
        metadata = self._execute(request, "spreadsheets.get", spreadsheet_id)
        titles: List[str] = []
        for sheet in metadata.get("sheets", []):
            props = sheet.get("properties", {}) if isinstance(sheet, Mapping) else {}
            title = props.get("title")
            if isinstance(title, str):
                titles.append(title)
        return titles

    def read_values(self, spreadsheet_id: str, title: str, *, columns: int = READ_COLUMNS) -> List[List[Any]]:
        """Return every row of ``title`` starting at A1."""

        return self.read_many(spreadsheet_id, [title], columns=columns)[title]

    def read_many(
        self,
        spreadsheet_id: str,
        titles: Sequence[str],
        *,
        columns: int = READ_COLUMNS,
    ) -> Dict[str, List[List[Any]]]:
        if not titles:
            return {}
        ranges = [a1_range(title, f"A1:{column_a1(columns - 1)}") for title in titles]
        request = self._service.spreadsheets().values().batchGet(
            spreadsheetId=spreadsheet_id,
            ranges=ranges,
            majorDimension="ROWS",
        )
        payload = self._execute(request, "values.batchGet", spreadsheet_id)
        value_ranges = payload.get("valueRanges", [])
        results: Dict[str, List[List[Any]]] = {}
        for index, title in enumerate(titles):
            entry = value_ranges[index] if index < len(value_ranges) else {}
            results[title] = [list(row) for row in entry.get("values", [])]
        return results

    def write_ranges(self, spreadsheet_id: str, data: Sequence[Mapping[str, Any]]) -> int:
        """Write ``[{"range": ..., "values": [[...]]}]`` entries; return cells updated."""

        updated = 0
        for batch in chunked(list(data), MAX_BATCH_RANGES):
            request = self._service.spreadsheets().values().batchUpdate(
                spreadsheetId=spreadsheet_id,
                body={"valueInputOption": "RAW", "data": list(batch)},
            )
            response = self._execute(request, "values.batchUpdate", spreadsheet_id)
            updated += int(response.get("totalUpdatedCells", 0) or 0)
        return updated


__all__ = [
    "BACKOFF_SCHEDULE",
    "MAX_RETRY_ATTEMPTS",
    "SheetsClient",
    "a1_range",
    "build_service",
    "chunked",
    "column_a1",
    "http_status",
    "parse_spreadsheet_id",
    "quote_title",
    "row_range",
]
