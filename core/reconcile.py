"""Merge, upsert and write-back planning for primary tab rows."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from core import conflicts
from core.errors import ReconciliationError
from core.normalizer import (
    LineRow,
    Period,
    SheetLayout,
    clean_text,
    core_phone_digits,
    is_blank,
    parse_sheet_date,
)
from db import LINE_NUMERIC_FIELDS, Store, UpsertOutcome
from settings import DEFAULT_AREA_PREFIX

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UpsertSummary:
    inserted: int = 0
    updated: int = 0
    line_ids: List[int] = field(default_factory=list)
    used_fallback: bool = False
    fallback_reason: str = ""


@dataclass(slots=True)
class RowWrite:
    """A full-width row destined for ``row_index`` (1-based)."""

    row_index: int
    values: List[Any]
    line_id: Optional[int] = None
    sequence: Optional[int] = None


@dataclass(slots=True)
class WriteBackPlan:
    updates: List[RowWrite] = field(default_factory=list)
    gap_fills: List[RowWrite] = field(default_factory=list)
    appends: List[RowWrite] = field(default_factory=list)
    unchanged: int = 0

    def writes(self) -> List[RowWrite]:
        return [*self.updates, *self.gap_fills, *self.appends]

    def __len__(self) -> int:
        return len(self.updates) + len(self.gap_fills) + len(self.appends)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _copy_row(row: LineRow) -> LineRow:
    return replace(row, text=dict(row.text), numbers=dict(row.numbers))


def _merge_into(target: LineRow, incoming: LineRow) -> Dict[str, Tuple[str, str]]:
    diffs: Dict[str, Tuple[str, str]] = {}
    for name, value in incoming.text.items():
        if not value:
            continue
        current = target.text.get(name, "")
        if current and current != value:
            diffs[name] = (value, current)
        target.text[name] = value

    for name, value in incoming.numbers.items():
        if value is None:
            continue
        current = target.numbers.get(name)
        if value != 0 or current is None:
            target.numbers[name] = value

    if target.date is None and incoming.date is not None:
        target.date = incoming.date
    if target.sequence is None:
        target.sequence = incoming.sequence
    return diffs


def merge_rows(rows: Iterable[LineRow]) -> List[LineRow]:
    """Fold rows sharing ``(telephone, date)`` into one, in sheet order."""

    merged: Dict[Tuple[str, str], LineRow] = {}
    for row in rows:
        existing = merged.get(row.key)
        if existing is None:
            merged[row.key] = _copy_row(row)
            continue
        diffs = _merge_into(existing, row)
        if diffs:
            conflicts.record(
                "|".join(row.key),
                diffs,
                context={"sheet_rows": [existing.sheet_row, row.sheet_row]},
            )
    return list(merged.values())


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------

def _sequential_upsert(store: Store, records: Sequence[Mapping[str, Any]]) -> UpsertSummary:
    summary = UpsertSummary(used_fallback=True)
    seen: Set[int] = set()
    for position, record in enumerate(records, start=1):
        phone, day = record["telephone_no"], record["date"]
        try:
            existing = store.find_line(phone, day)
            if existing:
                line_id = int(existing["id"])
                store.update_line(line_id, {key: value for key, value in record.items() if value is not None})
                summary.updated += 1
            else:
                line_id = store.insert_line(record, status="completed")
                summary.inserted += 1
        except sqlite3.Error as exc:
            raise ReconciliationError(
                f"Row {position} ({phone} on {day}) could not be saved: {exc}"
            ) from exc
        if line_id not in seen:
            seen.add(line_id)
            summary.line_ids.append(line_id)
    return summary


def upsert_lines(
    store: Store,
    rows: Sequence[LineRow],
    *,
    connection_id: Optional[str] = None,
) -> UpsertSummary:
    """Persist ``rows``; fall back to one row at a time when the bulk path is refused."""

    records = [row.as_record(connection_id) for row in rows]
    result = store.bulk_upsert_lines(records)
    if result.outcome is UpsertOutcome.OK:
        return UpsertSummary(
            inserted=result.inserted,
            updated=result.updated,
            line_ids=list(dict.fromkeys(result.line_ids.values())),
        )

    logger.warning(
        "Bulk upsert reported %s (%s); saving rows one at a time",
        result.outcome.value,
        result.detail,
    )
    summary = _sequential_upsert(store, records)
    summary.fallback_reason = result.outcome.value
    return summary


def ensure_tasks(store: Store, line_ids: Iterable[int]) -> int:
    """Make sure every line id has its task; return how many were created."""

    created = 0
    for line_id in line_ids:
        if store.task_exists(line_id):
            continue
        if store.create_task(line_id, title=f"Line installation #{line_id}"):
            created += 1
    return created


# ---------------------------------------------------------------------------
# Write-back planning
# ---------------------------------------------------------------------------

def _render_value(name: str, value: Any, existing: Any) -> Any:
    if name in LINE_NUMERIC_FIELDS or name == "dw_c_hook":
        number = float(value or 0)
        if number == 0 and is_blank(existing):
            return ""
        return int(number) if number.is_integer() else number
    if value is None:
        return ""
    return str(value)


def _cell_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return clean_text(value)


def render_line(record: Mapping[str, Any], layout: SheetLayout, base: Sequence[Any]) -> List[Any]:
    """Overlay ``record`` on ``base`` in the sheet's own column order."""

    row: List[Any] = list(base) + [""] * max(0, layout.width - len(base))
    for name, index in layout.columns.items():
        if index >= len(row):
            row.extend([""] * (index + 1 - len(row)))
        row[index] = _render_value(name, record.get(name), row[index])
    return row


def _differs(layout: SheetLayout, rendered: Sequence[Any], existing: Sequence[Any]) -> bool:
    for index in layout.columns.values():
        current = existing[index] if index < len(existing) else ""
        if _cell_text(rendered[index]) != _cell_text(current):
            return True
    return False


def plan_write_back(
    records: Sequence[Mapping[str, Any]],
    values: Sequence[Sequence[Any]],
    layout: SheetLayout,
    *,
    period: Period,
    prefix: str = DEFAULT_AREA_PREFIX,
) -> WriteBackPlan:
    """Decide where each store record goes in the primary tab.

    Records are matched to existing rows by core phone digits (and date when
    possible).  Unmatched records take the earliest gap row, then new rows
    after the last one present.
    """

    plan = WriteBackPlan()
    sheet_rows = [list(row) for row in values[1:]]
    exact: Dict[Tuple[str, str], List[int]] = {}
    by_core: Dict[str, List[int]] = {}
    gaps: List[int] = []
    max_sequence = 0

    for row_index, raw in enumerate(sheet_rows, start=2):
        sequence = layout.sequence(raw)
        if sequence is not None:
            max_sequence = max(max_sequence, sequence)
        if layout.is_data_blank(raw):
            gaps.append(row_index)
            continue
        core = core_phone_digits(layout.cell(raw, "telephone_no"), prefix)
        if not core:
            continue
        day = parse_sheet_date(layout.cell(raw, "date"), period.month, period.year)
        exact.setdefault((core, day.isoformat() if day else ""), []).append(row_index)
        by_core.setdefault(core, []).append(row_index)

    claimed: Set[int] = set()
    placement: Dict[int, int] = {}

    def _claim(candidates: List[int]) -> Optional[int]:
        for row_index in candidates:
            if row_index not in claimed:
                claimed.add(row_index)
                return row_index
        return None

    cores = [core_phone_digits(record.get("telephone_no"), prefix) for record in records]
    for position, record in enumerate(records):
        row_index = _claim(exact.get((cores[position], str(record.get("date") or "")), []))
        if row_index is not None:
            placement[position] = row_index
    for position in range(len(records)):
        if position not in placement:
            row_index = _claim(by_core.get(cores[position], []))
            if row_index is not None:
                placement[position] = row_index

    next_row = len(values) + 1 if values else 2
    for position, record in enumerate(records):
        line_id = record.get("id")
        if position in placement:
            row_index = placement[position]
            existing = sheet_rows[row_index - 2]
            rendered = render_line(record, layout, existing)
            if _differs(layout, rendered, existing):
                plan.updates.append(RowWrite(row_index, rendered, line_id))
            else:
                plan.unchanged += 1
            continue

        if gaps:
            row_index = gaps.pop(0)
            existing = sheet_rows[row_index - 2]
            rendered = render_line(record, layout, existing)
            sequence = layout.sequence(existing)
            if sequence is None and layout.sequence_column is not None:
                max_sequence += 1
                sequence = max_sequence
                rendered[layout.sequence_column] = sequence
            plan.gap_fills.append(RowWrite(row_index, rendered, line_id, sequence))
            continue

        rendered = render_line(record, layout, [])
        sequence = None
        if layout.sequence_column is not None:
            max_sequence += 1
            sequence = max_sequence
            rendered[layout.sequence_column] = sequence
        plan.appends.append(RowWrite(next_row, rendered, line_id, sequence))
        next_row += 1

    return plan


__all__ = [
    "RowWrite",
    "UpsertSummary",
    "WriteBackPlan",
    "ensure_tasks",
    "merge_rows",
    "plan_write_back",
    "render_line",
    "upsert_lines",
]
