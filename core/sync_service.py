"""Business logic for one reconciliation pass of a sheet connection."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core import drum_ledger
from core.connections import Connection, ConnectionRegistry
from core.errors import ValidationError
from core.normalizer import LineRow, SheetLayout, read_line_rows
from core.pipeline import PipelineResult, ProgressChannel, Step, run_steps
from core.reconcile import UpsertSummary, ensure_tasks, merge_rows, plan_write_back, upsert_lines
from core.secondary_sync import SecondarySummary, sync_secondary_tab
from core.sheet_writer import SheetWriter
from core.sheets_client import SheetsClient
from core.wastage import WastagePolicy
from db import Store
from settings import SyncSettings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncResult:
    connection_id: str
    tab: str = ""
    rows_read: int = 0
    rows_skipped: int = 0
    rows_merged: int = 0
    inserted: int = 0
    updated: int = 0
    used_fallback: bool = False
    tasks_created: int = 0
    secondary: Dict[str, Any] = field(default_factory=dict)
    drums: Dict[str, Any] = field(default_factory=dict)
    write_back: Dict[str, int] = field(default_factory=dict)
    record_count: int = 0
    warnings: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "tab": self.tab,
            "rows_read": self.rows_read,
            "rows_skipped": self.rows_skipped,
            "rows_merged": self.rows_merged,
            "inserted": self.inserted,
            "updated": self.updated,
            "used_fallback": self.used_fallback,
            "tasks_created": self.tasks_created,
            "secondary": dict(self.secondary),
            "drums": dict(self.drums),
            "write_back": dict(self.write_back),
            "record_count": self.record_count,
            "warnings": dict(self.warnings),
        }


@dataclass
class _PassState:
    connection: Connection
    result: SyncResult
    tabs: List[str] = field(default_factory=list)
    values: List[List[Any]] = field(default_factory=list)
    layout: Optional[SheetLayout] = None
    rows: List[LineRow] = field(default_factory=list)
    upsert: Optional[UpsertSummary] = None
    secondary: Optional[SecondarySummary] = None


def _find_tab(tabs: Sequence[str], wanted: Optional[str]) -> Optional[str]:
    if not wanted:
        return None
    lowered = wanted.strip().lower()
    for title in tabs:
        if title.strip().lower() == lowered:
            return title
    return None


class SyncService:
    """Runs the reconciliation steps for a connection against injected collaborators."""

    def __init__(
        self,
        store: Store,
        client: SheetsClient,
        settings: Optional[SyncSettings] = None,
        *,
        policy: Optional[WastagePolicy] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._settings = settings or SyncSettings()
        self._policy = policy or WastagePolicy(
            method=self._settings.wastage_method,
            low_stock_threshold=self._settings.low_stock_threshold,
        )
        self._registry = ConnectionRegistry(store)

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def sync_connection(self, connection_id: str, channel: Optional[ProgressChannel] = None) -> SyncResult:
        """Run one full pass for ``connection_id``.

        Validation problems leave the connection untouched.  Any other fatal
        failure marks the connection as errored before it is re-raised.
        """

        connection = self._registry.get(connection_id)
        state = _PassState(connection=connection, result=SyncResult(connection_id=connection.id))
        logger.info(
            "Starting sync of connection %s (%02d/%d)", connection.id, connection.month, connection.year
        )

        try:
            outcome = run_steps(self._steps(state), channel)
        except ValidationError:
            logger.warning("Sync of %s rejected during validation", connection.id, exc_info=True)
            raise
        except Exception as exc:
            logger.exception("Sync of %s failed", connection.id)
            self._registry.mark_error(connection.id, str(exc))
            raise

        self._collect_warnings(state.result, outcome)
        logger.info("Finished sync of %s: %s", connection.id, state.result.as_dict())
        return state.result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _steps(self, state: _PassState) -> List[Step]:
        return [
            Step("resolve_tab", lambda: self._resolve_tab(state), fatal=True),
            Step("read_sheet", lambda: self._read_sheet(state), fatal=True),
            Step("upsert_lines", lambda: self._upsert(state), fatal=True),
            Step("ensure_tasks", lambda: self._ensure_tasks(state)),
            Step(
                "secondary_tab",
                lambda: self._sync_secondary(state),
                enabled=lambda: self._secondary_tab(state) is not None,
            ),
            Step("drum_pipeline", lambda: self._drum_pipeline(state)),
            Step("write_back", lambda: self._write_back(state), enabled=lambda: self._settings.write_back),
            Step("finalize", lambda: self._finalize(state), fatal=True),
        ]

    def _resolve_tab(self, state: _PassState) -> str:
        state.tabs = self._client.list_tabs(state.connection.sheet_id)
        if not state.tabs:
            raise ValidationError(f"Spreadsheet {state.connection.sheet_id} has no worksheets.")
        tab = _find_tab(state.tabs, state.connection.sheet_tab) or state.tabs[0]
        if state.connection.sheet_tab and tab != state.connection.sheet_tab:
            logger.warning(
                "Tab '%s' not found on %s; using '%s'", state.connection.sheet_tab, state.connection.id, tab
            )
        state.result.tab = tab
        return f"Using tab '{tab}'"

    def _read_sheet(self, state: _PassState) -> str:
        connection = state.connection
        tab = state.result.tab
        state.values = self._client.read_values(connection.sheet_id, tab)
        state.layout, rows = read_line_rows(
            state.values,
            connection.period,
            prefix=self._settings.area_prefix,
            tab=tab,
        )
        dated = [row for row in rows if row.date is not None]
        for row in rows:
            if row.date is None:
                logger.warning("Skipping sheet row %d (%s): date could not be read", row.sheet_row, row.telephone_no)
        state.rows = merge_rows(dated)
        state.result.rows_read = len(rows)
        state.result.rows_skipped = len(rows) - len(dated)
        state.result.rows_merged = len(dated) - len(state.rows)

        if connection.sheet_tab != tab:
            self._registry.set_tab(connection.id, tab)
        return f"{len(rows)} rows read, {len(state.rows)} distinct"

    def _upsert(self, state: _PassState) -> str:
        state.upsert = upsert_lines(self._store, state.rows, connection_id=state.connection.id)
        state.result.inserted = state.upsert.inserted
        state.result.updated = state.upsert.updated
        state.result.used_fallback = state.upsert.used_fallback
        return f"{state.upsert.inserted} inserted, {state.upsert.updated} updated"

    def _ensure_tasks(self, state: _PassState) -> str:
        line_ids = state.upsert.line_ids if state.upsert else []
        state.result.tasks_created = ensure_tasks(self._store, line_ids)
        return f"{state.result.tasks_created} tasks created"

    def _secondary_tab(self, state: _PassState) -> Optional[str]:
        configured = state.connection.secondary_tab
        if configured:
            return configured
        return _find_tab(state.tabs, self._settings.secondary_tab)

    def _sync_secondary(self, state: _PassState) -> str:
        tab = self._secondary_tab(state) or ""
        state.secondary = sync_secondary_tab(
            self._store,
            self._client,
            state.connection.sheet_id,
            tab,
            state.connection.period,
            prefix=self._settings.area_prefix,
            write_back=self._settings.write_back,
        )
        state.result.secondary = state.secondary.as_dict()
        return f"{state.secondary.updated} lines updated from '{tab}'"

    def _drum_pipeline(self, state: _PassState) -> str:
        start, end = state.connection.period.bounds()
        lines = self._store.lines_for_period(start, end)
        numbers = [line.get("drum_number") for line in lines]
        if state.secondary:
            numbers.extend(state.secondary.drum_numbers)

        drum_ids, created = drum_ledger.ensure_drums(
            self._store,
            numbers,
            connection_id=state.connection.id,
            default_capacity=self._settings.default_drum_capacity,
        )
        written, touched = drum_ledger.record_usage(
            self._store, lines, drum_ids, connection_id=state.connection.id
        )
        summary = drum_ledger.DrumPassSummary(created=created, usage_written=written)
        drum_ledger.recalculate_drums(
            self._store,
            touched | set(drum_ids.values()),
            self._policy,
            connection_id=state.connection.id,
            default_capacity=self._settings.default_drum_capacity,
            summary=summary,
        )
        state.result.drums = summary.as_dict()
        return f"{len(drum_ids)} drums checked, {created} created"

    def _write_back(self, state: _PassState) -> str:
        if state.layout is None:
            return "nothing to write"
        start, end = state.connection.period.bounds()
        plan = plan_write_back(
            self._store.lines_for_period(start, end),
            state.values,
            state.layout,
            period=state.connection.period,
            prefix=self._settings.area_prefix,
        )
        writer = SheetWriter(self._client, state.connection.sheet_id)
        state.result.write_back = writer.apply_plan(state.result.tab, plan)
        return (
            f"{len(plan.updates)} updated, {len(plan.gap_fills)} gap rows filled, "
            f"{len(plan.appends)} appended"
        )

    def _finalize(self, state: _PassState) -> str:
        start, end = state.connection.period.bounds()
        state.result.record_count = self._store.count_lines_for_period(start, end)
        self._registry.mark_synced(state.connection.id, state.result.record_count)
        return f"{state.result.record_count} records in period"

    @staticmethod
    def _collect_warnings(result: SyncResult, outcome: PipelineResult) -> None:
        result.warnings.update(outcome.warnings)


__all__ = ["SyncResult", "SyncService"]
