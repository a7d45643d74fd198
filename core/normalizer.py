"""Conversion of raw worksheet values into typed line rows.

Everything downstream of this module works with :class:`LineRow` and
:class:`SecondaryRow` instances; raw cell lists never leave it.  The helpers
are pure functions so that they can be exercised without a spreadsheet.
"""

from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dateutil import parser as date_parser

import db
from core.errors import HeaderValidationError
from settings import DEFAULT_AREA_PREFIX

logger = logging.getLogger(__name__)

SERIAL_EPOCH = date(1899, 12, 30)

HEADER_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "address": ("addras",),
    "fiber_rosette": ("fiber-rosette",),
}
OPTIONAL_HEADERS: Dict[str, Tuple[str, ...]] = {
    "drum_number": ("drum number", "drum no", "drum", "drum #"),
}
REQUIRED_HEADERS: Tuple[str, ...] = tuple(
    header for name, header in db.LINE_SHEET_COLUMNS if name not in OPTIONAL_HEADERS
)

SECONDARY_HEADERS: Dict[str, Tuple[str, ...]] = {
    "telephone_no": ("tp",),
    "dw_dp": ("dw dp",),
    "dw_c_hook": ("dw c hook",),
    "dw_cus": ("dw cus",),
    "drum_number": ("drum number", "drum no"),
}
SECONDARY_COLUMN_ORDER: Tuple[str, ...] = ("telephone_no", "dw_dp", "dw_c_hook", "dw_cus", "drum_number")
SECONDARY_TITLES: Tuple[str, ...] = ("TP", "DW DP", "DW C HOOK", "DW CUS", "DRUM NUMBER")

_LETTER_RE = re.compile(r"[A-Za-z]")
_NON_DIGIT_RE = re.compile(r"\D")
_DAY_RE = re.compile(r"^\d{1,2}$")
_SERIAL_RE = re.compile(r"^\d{3,}(\.\d+)?$")
_TWO_PART_RE = re.compile(r"^(\d{1,2})\s*[/-]\s*(\d{1,2})$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")


@dataclass(slots=True)
class Period:
    """The month a connection reconciles."""

    month: int
    year: int

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    def bounds(self) -> Tuple[str, str]:
        return self.first_day.isoformat(), self.last_day.isoformat()


@dataclass(slots=True)
class LineRow:
    """One normalised installation row from the primary tab.

    ``numbers`` holds ``None`` for cells that were blank in the sheet so that
    merging can tell "blank" from an explicit zero.
    """

    telephone_no: str
    date: Optional[date]
    sheet_row: int
    sequence: Optional[int] = None
    text: Dict[str, str] = field(default_factory=dict)
    numbers: Dict[str, Optional[float]] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str]:
        return self.telephone_no, self.date.isoformat() if self.date else ""

    @property
    def drum_number(self) -> str:
        return self.text.get("drum_number", "")

    def number(self, name: str) -> float:
        return self.numbers.get(name) or 0.0

    def as_record(self, connection_id: Optional[str] = None) -> Dict[str, Any]:
        """Return a store payload containing every line column."""

        record: Dict[str, Any] = {
            "connection_id": connection_id,
            "telephone_no": self.telephone_no,
            "date": self.date.isoformat() if self.date else None,
        }
        for name in db.LINE_TEXT_FIELDS:
            record[name] = self.text.get(name) or None
        for name in db.LINE_NUMERIC_FIELDS:
            record[name] = self.number(name)
        return record


@dataclass(slots=True)
class SecondaryRow:
    telephone_no: str
    sheet_row: int
    dw_dp: str = ""
    dw_c_hook: Optional[float] = None
    dw_cus: str = ""
    drum_number: str = ""

    def updates(self) -> Dict[str, Any]:
        """Return only the non-blank fields carried by this row."""

        values: Dict[str, Any] = {}
        if self.dw_dp:
            values["dw_dp"] = self.dw_dp
        if self.dw_c_hook is not None:
            values["dw_c_hook"] = self.dw_c_hook
        if self.dw_cus:
            values["dw_cus"] = self.dw_cus
        if self.drum_number:
            values["drum_number"] = self.drum_number
        return values


@dataclass(slots=True)
class SheetLayout:
    """Column positions of a primary tab."""

    columns: Dict[str, int]
    sequence_column: Optional[int]
    width: int

    def cell(self, row: Sequence[Any], name: str) -> Any:
        index = self.columns.get(name)
        if index is None or index >= len(row):
            return ""
        return row[index]

    def sequence(self, row: Sequence[Any]) -> Optional[int]:
        if self.sequence_column is None or self.sequence_column >= len(row):
            return None
        value = to_optional_number(row[self.sequence_column])
        if value is None:
            return None
        return int(value)

    def is_data_blank(self, row: Sequence[Any]) -> bool:
        return all(is_blank(self.cell(row, name)) for name in self.columns)


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------

def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def to_optional_number(value: Any) -> Optional[float]:
    """Return ``None`` for blank cells, ``0.0`` for unparseable ones."""

    if is_blank(value):
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(",", "").replace("\xa0", "").replace(" ", "")
    if _NUMBER_RE.match(text):
        return float(text)
    return 0.0


def to_number(value: Any) -> float:
    return to_optional_number(value) or 0.0


def _header_key(value: Any) -> str:
    return " ".join(str(value or "").split()).lower()


# ---------------------------------------------------------------------------
# Telephone numbers
# ---------------------------------------------------------------------------

def normalize_telephone(value: Any, prefix: str = DEFAULT_AREA_PREFIX) -> str:
    text = clean_text(value)
    if not text:
        return ""
    if _LETTER_RE.search(text):
        return text
    digits = _NON_DIGIT_RE.sub("", text)
    if digits and len(digits) < 10 and not digits.startswith(prefix):
        digits = prefix + digits
    return digits


def core_phone_digits(value: Any, prefix: str = DEFAULT_AREA_PREFIX) -> str:
    """Return the number without its area-code prefix, for matching only."""

    phone = normalize_telephone(value, prefix)
    if _LETTER_RE.search(phone):
        return phone.upper()
    if prefix and phone.startswith(prefix) and len(phone) > len(prefix):
        return phone[len(prefix):]
    return phone


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def _clamped(year: int, month: int, day: int) -> Optional[date]:
    if day < 1:
        return None
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last))


def parse_sheet_date(value: Any, month: int, year: int) -> Optional[date]:
    """Parse a date cell and force it into ``month``/``year``.

    Returns ``None`` when nothing usable can be read from ``value``.
    """

    if is_blank(value) or isinstance(value, bool):
        return None

    day: Optional[int] = None
    if isinstance(value, (int, float)):
        serial = float(value)
        if serial < 1:
            return None
        day = (SERIAL_EPOCH + timedelta(days=int(serial))).day
    elif isinstance(value, (date, datetime)):
        day = value.day
    else:
        text = str(value).strip()
        two_part = _TWO_PART_RE.match(text)
        if _DAY_RE.match(text):
            day = int(text)
        elif _SERIAL_RE.match(text):
            day = (SERIAL_EPOCH + timedelta(days=int(float(text)))).day
        elif two_part:
            first, second = int(two_part.group(1)), int(two_part.group(2))
            if first == month:
                day = second
            elif second == month:
                day = first
            else:
                day = second
        else:
            try:
                parsed = date_parser.parse(text, default=datetime(year, month, 1))
            except (ValueError, OverflowError):
                logger.debug("Unparseable date cell %r", value)
                return None
            day = parsed.day
    return _clamped(year, month, day)


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

def _aliases(name: str, header: str) -> Tuple[str, ...]:
    return (_header_key(header),) + HEADER_SYNONYMS.get(name, ()) + OPTIONAL_HEADERS.get(name, ())


def validate_headers(headers: Sequence[Any], *, tab: Optional[str] = None) -> Dict[str, int]:
    """Return a field → column index map or raise :class:`HeaderValidationError`."""

    positions: Dict[str, int] = {}
    for index, header in enumerate(headers):
        key = _header_key(header)
        if key and key not in positions:
            positions[key] = index

    columns: Dict[str, int] = {}
    missing: List[str] = []
    for name, header in db.LINE_SHEET_COLUMNS:
        found = next((positions[alias] for alias in _aliases(name, header) if alias in positions), None)
        if found is not None:
            columns[name] = found
        elif name not in OPTIONAL_HEADERS:
            missing.append(header)
    if missing:
        raise HeaderValidationError(missing, tab=tab)
    return columns


def detect_layout(headers: Sequence[Any], *, tab: Optional[str] = None) -> SheetLayout:
    columns = validate_headers(headers, tab=tab)
    used = set(columns.values())
    sequence_column = 0 if 0 not in used else None
    return SheetLayout(columns=columns, sequence_column=sequence_column, width=max(len(headers), 1))


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

def _derive_lengths(numbers: Dict[str, Optional[float]]) -> None:
    if any(numbers.get(name) is not None for name in ("cable_start", "cable_middle", "cable_end")):
        start = numbers.get("cable_start") or 0.0
        middle = numbers.get("cable_middle") or 0.0
        end = numbers.get("cable_end") or 0.0
        if not numbers.get("f1"):
            numbers["f1"] = abs(start - middle)
        if not numbers.get("g1"):
            numbers["g1"] = abs(middle - end)
    if not numbers.get("total_cable") and (numbers.get("f1") or numbers.get("g1")):
        numbers["total_cable"] = (numbers.get("f1") or 0.0) + (numbers.get("g1") or 0.0)


def build_line_row(
    row: Sequence[Any],
    layout: SheetLayout,
    *,
    sheet_row: int,
    period: Period,
    prefix: str = DEFAULT_AREA_PREFIX,
) -> Optional[LineRow]:
    """Normalise one sheet row; ``None`` when it carries no telephone number."""

    phone = normalize_telephone(layout.cell(row, "telephone_no"), prefix)
    if not phone:
        return None

    text = {name: clean_text(layout.cell(row, name)) for name in db.LINE_TEXT_FIELDS}
    numbers = {name: to_optional_number(layout.cell(row, name)) for name in db.LINE_NUMERIC_FIELDS}
    _derive_lengths(numbers)

    return LineRow(
        telephone_no=phone,
        date=parse_sheet_date(layout.cell(row, "date"), period.month, period.year),
        sheet_row=sheet_row,
        sequence=layout.sequence(row),
        text=text,
        numbers=numbers,
    )


def read_line_rows(
    values: Sequence[Sequence[Any]],
    period: Period,
    *,
    prefix: str = DEFAULT_AREA_PREFIX,
    tab: Optional[str] = None,
) -> Tuple[SheetLayout, List[LineRow]]:
    """Validate the header row of ``values`` and normalise the data rows.

    Row numbers are 1-based sheet rows, the header being row 1.
    """

    if not values:
        raise HeaderValidationError(list(REQUIRED_HEADERS), tab=tab)
    layout = detect_layout(values[0], tab=tab)
    rows: List[LineRow] = []
    for offset, raw in enumerate(values[1:], start=2):
        line = build_line_row(raw, layout, sheet_row=offset, period=period, prefix=prefix)
        if line is not None:
            rows.append(line)
    return layout, rows


def secondary_layout(headers: Sequence[Any], *, tab: Optional[str] = None) -> Dict[str, int]:
    positions = {_header_key(header): index for index, header in reversed(list(enumerate(headers)))}
    columns: Dict[str, int] = {}
    for name, aliases in SECONDARY_HEADERS.items():
        for alias in aliases:
            if alias in positions:
                columns[name] = positions[alias]
                break
    if "telephone_no" not in columns:
        raise HeaderValidationError(["TP"], tab=tab)
    return columns


def read_secondary_rows(
    values: Sequence[Sequence[Any]],
    *,
    prefix: str = DEFAULT_AREA_PREFIX,
    tab: Optional[str] = None,
) -> Tuple[Dict[str, int], List[SecondaryRow]]:
    if not values:
        raise HeaderValidationError(["TP"], tab=tab)
    columns = secondary_layout(values[0], tab=tab)

    def cell(row: Sequence[Any], name: str) -> Any:
        index = columns.get(name)
        if index is None or index >= len(row):
            return ""
        return row[index]

    rows: List[SecondaryRow] = []
    for offset, raw in enumerate(values[1:], start=2):
        phone = normalize_telephone(cell(raw, "telephone_no"), prefix)
        if not phone:
            continue
        rows.append(
            SecondaryRow(
                telephone_no=phone,
                sheet_row=offset,
                dw_dp=clean_text(cell(raw, "dw_dp")),
                dw_c_hook=to_optional_number(cell(raw, "dw_c_hook")),
                dw_cus=clean_text(cell(raw, "dw_cus")),
                drum_number=clean_text(cell(raw, "drum_number")),
            )
        )
    return columns, rows


__all__ = [
    "LineRow",
    "Period",
    "REQUIRED_HEADERS",
    "SECONDARY_TITLES",
    "SecondaryRow",
    "SheetLayout",
    "build_line_row",
    "clean_text",
    "core_phone_digits",
    "detect_layout",
    "is_blank",
    "normalize_telephone",
    "parse_sheet_date",
    "read_line_rows",
    "read_secondary_rows",
    "to_number",
    "to_optional_number",
    "validate_headers",
]
