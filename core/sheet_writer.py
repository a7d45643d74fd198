"""Applies store → sheet changes computed by the reconciliation engine."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from core.reconcile import RowWrite, WriteBackPlan
from core.sheets_client import SheetsClient, row_range

logger = logging.getLogger(__name__)


class SheetWriter:
    def __init__(self, client: SheetsClient, spreadsheet_id: str) -> None:
        self._client = client
        self._spreadsheet_id = spreadsheet_id

    def write_rows(self, title: str, rows: Sequence[RowWrite]) -> int:
        """Write each row over its full width; return how many were sent."""

        data: List[Dict[str, Any]] = [
            {
                "range": row_range(title, row.row_index, len(row.values)),
                "values": [list(row.values)],
                "majorDimension": "ROWS",
            }
            for row in rows
            if row.values
        ]
        if not data:
            return 0
        cells = self._client.write_ranges(self._spreadsheet_id, data)
        logger.info("Wrote %d rows (%d cells) to '%s'", len(data), cells, title)
        return len(data)

    def apply_plan(self, title: str, plan: WriteBackPlan) -> Dict[str, int]:
        self.write_rows(title, plan.writes())
        return {
            "updated": len(plan.updates),
            "gap_filled": len(plan.gap_fills),
            "appended": len(plan.appends),
            "unchanged": plan.unchanged,
        }


__all__ = ["SheetWriter"]
