"""Registry of (month, year) → spreadsheet bindings."""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional

from core.errors import ConnectionNotFoundError, ValidationError
from core.normalizer import Period
from core.sheets_client import parse_spreadsheet_id
from db import Store, utc_now_iso

logger = logging.getLogger(__name__)

MIN_YEAR = 2000
MAX_YEAR = 2100


@dataclass(slots=True)
class Connection:
    id: str
    month: int
    year: int
    sheet_id: str
    sheet_url: str = ""
    sheet_name: Optional[str] = None
    sheet_tab: Optional[str] = None
    secondary_tab: Optional[str] = None
    status: str = "active"
    last_synced: Optional[str] = None
    record_count: int = 0
    last_error: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Connection":
        return cls(
            id=str(record["id"]),
            month=int(record["month"]),
            year=int(record["year"]),
            sheet_id=str(record["sheet_id"]),
            sheet_url=str(record.get("sheet_url") or ""),
            sheet_name=record.get("sheet_name"),
            sheet_tab=record.get("sheet_tab"),
            secondary_tab=record.get("secondary_tab"),
            status=str(record.get("status") or "active"),
            last_synced=record.get("last_synced"),
            record_count=int(record.get("record_count") or 0),
            last_error=record.get("last_error"),
            created_by=record.get("created_by"),
            created_at=record.get("created_at"),
        )

    @property
    def period(self) -> Period:
        return Period(self.month, self.year)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_connection_id(connection_id: str) -> str:
    try:
        return str(uuid.UUID(str(connection_id).strip()))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"Malformed connection id: {connection_id!r}") from None


def validate_period(month: Any, year: Any) -> Period:
    try:
        month_value, year_value = int(month), int(year)
    except (TypeError, ValueError):
        raise ValidationError("Month and year must be whole numbers.") from None
    if not 1 <= month_value <= 12:
        raise ValidationError("Month must be between 1 and 12.")
    if not MIN_YEAR <= year_value <= MAX_YEAR:
        raise ValidationError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}.")
    return Period(month_value, year_value)


class ConnectionRegistry:
    def __init__(self, store: Store) -> None:
        self._store = store

    def create(
        self,
        *,
        month: Any,
        year: Any,
        sheet_url: str,
        sheet_name: Optional[str] = None,
        sheet_tab: Optional[str] = None,
        secondary_tab: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Connection:
        period = validate_period(month, year)
        sheet_id = parse_spreadsheet_id(sheet_url)
        if not sheet_id:
            raise ValidationError("Sheet URL does not contain a spreadsheet id.")
        if self._store.find_connection(period.month, period.year):
            raise ValidationError("A connection for this month and year already exists.")

        connection = Connection(
            id=str(uuid.uuid4()),
            month=period.month,
            year=period.year,
            sheet_id=sheet_id,
            sheet_url=sheet_url.strip(),
            sheet_name=(sheet_name or "").strip() or None,
            sheet_tab=(sheet_tab or "").strip() or None,
            secondary_tab=(secondary_tab or "").strip() or None,
            created_by=created_by,
            created_at=utc_now_iso(),
        )
        self._store.insert_connection(connection.as_dict())
        logger.info("Created connection %s for %02d/%d", connection.id, period.month, period.year)
        return connection

    def get(self, connection_id: str) -> Connection:
        key = validate_connection_id(connection_id)
        record = self._store.fetch_connection(key)
        if record is None:
            raise ConnectionNotFoundError(f"Connection {key} does not exist.")
        return Connection.from_record(record)

    def list(self) -> List[Connection]:
        return [Connection.from_record(record) for record in self._store.list_connections()]

    def delete(self, connection_id: str) -> None:
        key = validate_connection_id(connection_id)
        if not self._store.delete_connection(key):
            raise ConnectionNotFoundError(f"Connection {key} does not exist.")
        logger.info("Deleted connection %s", key)

    def set_tab(self, connection_id: str, tab: str) -> None:
        self._store.update_connection(connection_id, {"sheet_tab": tab})

    def mark_synced(self, connection_id: str, record_count: int) -> None:
        self._store.update_connection(
            connection_id,
            {
                "status": "active",
                "last_synced": utc_now_iso(),
                "record_count": record_count,
                "last_error": None,
            },
        )

    def mark_error(self, connection_id: str, message: str) -> None:
        self._store.update_connection(
            connection_id,
            {"status": "error", "last_synced": utc_now_iso(), "last_error": message[:500]},
        )


__all__ = [
    "Connection",
    "ConnectionRegistry",
    "validate_connection_id",
    "validate_period",
]
