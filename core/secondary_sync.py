"""Two-way sync of the drum-assignment tab, keyed by telephone number only."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Set

from core.normalizer import Period, SecondaryRow, core_phone_digits, read_secondary_rows
from core.reconcile import RowWrite
from core.sheet_writer import SheetWriter
from core.sheets_client import SheetsClient
from db import Store
from settings import DEFAULT_AREA_PREFIX

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SecondarySummary:
    updated: int = 0
    unmatched: int = 0
    appended: int = 0
    drum_numbers: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "secondary_updated": self.updated,
            "secondary_unmatched": self.unmatched,
            "secondary_appended": self.appended,
        }


def apply_secondary_rows(store: Store, rows: Sequence[SecondaryRow], period: Period) -> SecondarySummary:
    """Copy non-blank tab values onto the period's line records."""

    summary = SecondarySummary()
    start, end = period.bounds()
    drums: Set[str] = set()
    for row in rows:
        if row.drum_number:
            drums.add(row.drum_number)
        updates = row.updates()
        if not updates:
            continue
        lines = store.lines_by_phone(row.telephone_no, start, end)
        if not lines:
            summary.unmatched += 1
            continue
        for line in lines:
            changed = {name: value for name, value in updates.items() if line.get(name) != value}
            if changed:
                store.update_line(int(line["id"]), changed)
                summary.updated += 1
    summary.drum_numbers = sorted(drums)
    return summary


def plan_secondary_appends(
    lines: Sequence[Mapping[str, Any]],
    rows: Sequence[SecondaryRow],
    columns: Mapping[str, int],
    *,
    next_row: int,
    prefix: str = DEFAULT_AREA_PREFIX,
) -> List[RowWrite]:
    """Return rows for every line whose number is missing from the tab."""

    present = {core_phone_digits(row.telephone_no, prefix) for row in rows}
    width = max(columns.values()) + 1
    appends: List[RowWrite] = []
    for line in lines:
        core = core_phone_digits(line.get("telephone_no"), prefix)
        if not core or core in present:
            continue
        present.add(core)
        values: List[Any] = [""] * width
        for name, index in columns.items():
            value = line.get(name)
            if value is None:
                continue
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            values[index] = value
        appends.append(RowWrite(next_row, values, line.get("id")))
        next_row += 1
    return appends


def sync_secondary_tab(
    store: Store,
    client: SheetsClient,
    spreadsheet_id: str,
    tab: str,
    period: Period,
    *,
    prefix: str = DEFAULT_AREA_PREFIX,
    write_back: bool = True,
) -> SecondarySummary:
    values = client.read_values(spreadsheet_id, tab)
    columns, rows = read_secondary_rows(values, prefix=prefix, tab=tab)
    summary = apply_secondary_rows(store, rows, period)

    if write_back:
        start, end = period.bounds()
        appends = plan_secondary_appends(
            store.lines_for_period(start, end),
            rows,
            columns,
            next_row=len(values) + 1,
            prefix=prefix,
        )
        summary.appended = SheetWriter(client, spreadsheet_id).write_rows(tab, appends)

    logger.info(
        "Secondary tab '%s': %d lines updated, %d numbers not found, %d rows appended",
        tab,
        summary.updated,
        summary.unmatched,
        summary.appended,
    )
    return summary


__all__ = [
    "SecondarySummary",
    "apply_secondary_rows",
    "plan_secondary_appends",
    "sync_secondary_tab",
]
