import sqlite3
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from core import sheets_client
from core.errors import HeaderValidationError, ReconciliationError, SheetNotFoundError
from core.pipeline import ProgressChannel
from core.sheets_client import SheetsClient
from core.sync_service import SyncService
from db import Store, UpsertOutcome, UpsertResult
from fake_sheets import PRIMARY_HEADERS, SECONDARY_HEADERS, FakeSheetsService, http_error, primary_row
from settings import SyncSettings

SHEET_URL = "https://docs.google.com/spreadsheets/d/1AbCdEfGhIjKlMnOpQrStUvWxYz0123456789/edit"
PERIOD_BOUNDS = ("2024-03-01", "2024-03-31")


def _primary_tab():
    return [
        PRIMARY_HEADERS,
        primary_row(1, "5", "1111111", name="Perera", dp="DP-1", cable_start="0", cable_end="500", drum_number="D-1"),
        primary_row(2, "5", "1111111", address="12 Main St"),
        primary_row(3, "", ""),
        primary_row(4, "7", "2222222", name="Silva", cable_start="500", cable_end="1200", drum_number="D-1"),
    ]


def _secondary_tab():
    return [SECONDARY_HEADERS, ["2222222", "DP-9", "3", "Silva home", "D-1"]]


@pytest.fixture
def store(tmp_path):
    return Store(tmp_path / "ledger.db")


@pytest.fixture
def service():
    return FakeSheetsService({"March": _primary_tab(), "DW": _secondary_tab()})


def _sync_service(store, service, **settings):
    client = SheetsClient(service, sleep=lambda _delay: None)
    return SyncService(store, client, SyncSettings(**settings))


def _connect(sync, **fields):
    return sync.registry.create(month=3, year=2024, sheet_url=SHEET_URL, **fields)


def test_full_pass_merges_rows_and_updates_everything(store, service):
    sync = _sync_service(store, service)
    connection = _connect(sync)

    result = sync.sync_connection(connection.id)

    assert result.tab == "March"
    assert (result.rows_read, result.rows_merged, result.inserted) == (3, 1, 2)
    assert result.tasks_created == 2
    assert result.warnings == {}
    assert result.record_count == 2

    perera = store.find_line("0341111111", "2024-03-05")
    assert (perera["name"], perera["dp"], perera["address"]) == ("Perera", "DP-1", "12 Main St")
    silva = store.find_line("0342222222", "2024-03-07")
    assert (silva["dw_dp"], silva["dw_c_hook"], silva["dw_cus"]) == ("DP-9", 3, "Silva home")

    drum = store.fetch_drum_by_number("D-1")
    assert drum["current_quantity"] == 800
    assert result.drums["drums_created"] == 1

    assert result.secondary["secondary_appended"] == 1
    assert service.tabs["DW"][2][0] == "0341111111"

    saved = sync.registry.get(connection.id)
    assert saved.status == "active"
    assert saved.record_count == 2
    assert saved.sheet_tab == "March"
    assert saved.last_synced is not None


def test_second_pass_over_unchanged_sheet_is_idempotent(store, service):
    sync = _sync_service(store, service)
    connection = _connect(sync)

    sync.sync_connection(connection.id)
    writes_after_first = len(service.batch_updates)
    second = sync.sync_connection(connection.id)

    assert second.inserted == 0
    assert second.write_back == {"updated": 0, "gap_filled": 0, "appended": 0, "unchanged": 2}
    assert second.secondary["secondary_appended"] == 0
    assert second.drums["drums_created"] == 0
    assert store.count_lines_for_period(*PERIOD_BOUNDS) == 2
    assert store.count_tasks() == 2
    assert len(service.batch_updates) == writes_after_first


def test_store_only_line_fills_the_gap_row(store, service):
    sync = _sync_service(store, service)
    connection = _connect(sync)
    store.insert_line({"telephone_no": "0343333333", "date": "2024-03-09", "name": "Fernando"})

    result = sync.sync_connection(connection.id)

    assert result.write_back["gap_filled"] == 1
    assert result.write_back["appended"] == 0
    gap_row = service.tabs["March"][3]
    assert gap_row[0] == 3
    assert gap_row[PRIMARY_HEADERS.index("Number")] == "0343333333"
    assert gap_row[PRIMARY_HEADERS.index("Name")] == "Fernando"


def test_missing_header_aborts_before_any_write(store):
    headers = [header for header in PRIMARY_HEADERS if header != "Total"]
    service = FakeSheetsService({"March": [headers, ["1", "5", "1111111"]]})
    sync = _sync_service(store, service)
    connection = _connect(sync)

    with pytest.raises(HeaderValidationError) as excinfo:
        sync.sync_connection(connection.id)

    assert excinfo.value.missing == ["Total"]
    assert store.count_lines_for_period(*PERIOD_BOUNDS) == 0
    assert service.batch_updates == []
    unchanged = sync.registry.get(connection.id)
    assert unchanged.status == "active"
    assert unchanged.last_synced is None
    assert unchanged.sheet_tab is None


def test_secondary_tab_failure_is_advisory(store, service):
    service.read_errors["DW"] = [http_error(500) for _ in range(sheets_client.MAX_RETRY_ATTEMPTS)]
    sync = _sync_service(store, service)
    connection = _connect(sync)

    result = sync.sync_connection(connection.id)

    assert "secondary_tab" in result.warnings
    assert result.inserted == 2
    assert store.fetch_drum_by_number("D-1") is not None
    assert sync.registry.get(connection.id).status == "active"


def test_sheet_access_failure_marks_connection_as_errored(store, service):
    service.metadata_errors.append(http_error(404, "not found"))
    sync = _sync_service(store, service)
    connection = _connect(sync)

    with pytest.raises(SheetNotFoundError):
        sync.sync_connection(connection.id)

    errored = sync.registry.get(connection.id)
    assert errored.status == "error"
    assert errored.last_synced is not None
    assert "was not found" in errored.last_error


def test_configured_tab_falls_back_to_first_tab(store, service):
    sync = _sync_service(store, service)
    connection = _connect(sync, sheet_tab="Old tab")

    result = sync.sync_connection(connection.id)

    assert result.tab == "March"
    assert sync.registry.get(connection.id).sheet_tab == "March"


def test_write_back_can_be_disabled(store, service):
    sync = _sync_service(store, service, write_back=False)
    connection = _connect(sync)

    result = sync.sync_connection(connection.id)

    assert result.write_back == {}
    assert service.batch_updates == []


def test_progress_events_cover_every_step(store, service):
    sync = _sync_service(store, service)
    connection = _connect(sync)
    channel = ProgressChannel()
    events = []
    channel.subscribe(events.append)

    sync.sync_connection(connection.id, channel)

    finished = [event.step for event in events if event.state == "finished"]
    assert finished == [
        "resolve_tab",
        "read_sheet",
        "upsert_lines",
        "ensure_tasks",
        "secondary_tab",
        "drum_pipeline",
        "write_back",
        "finalize",
    ]
    assert events[-1].percent == 100


def test_row_failure_in_fallback_marks_connection_as_errored(store, service, monkeypatch):
    sync = _sync_service(store, service)
    connection = _connect(sync)
    monkeypatch.setattr(
        store,
        "bulk_upsert_lines",
        lambda records: UpsertResult(UpsertOutcome.MISSING_CONSTRAINT, detail="no unique index"),
    )

    def broken_insert(record, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "insert_line", broken_insert)

    with pytest.raises(ReconciliationError):
        sync.sync_connection(connection.id)

    errored = sync.registry.get(connection.id)
    assert errored.status == "error"
    assert "disk I/O error" in errored.last_error
    assert store.count_lines_for_period(*PERIOD_BOUNDS) == 0
    assert service.batch_updates == []
