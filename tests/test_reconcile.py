import sqlite3
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from core import conflicts, normalizer, reconcile
from core.errors import ReconciliationError
from core.normalizer import Period
from db import Store, UpsertOutcome
from fake_sheets import PRIMARY_HEADERS, primary_row

PERIOD = Period(3, 2024)


@pytest.fixture
def store(tmp_path):
    return Store(tmp_path / "ledger.db")


@pytest.fixture(autouse=True)
def _reset_conflicts():
    conflicts.clear()
    yield
    conflicts.clear()


def _rows(*raw_rows):
    _layout, rows = normalizer.read_line_rows([PRIMARY_HEADERS, *raw_rows], PERIOD)
    return rows


def test_duplicate_rows_merge_complementary_fields():
    rows = _rows(
        primary_row(1, "5", "1234567", name="Perera", dp=""),
        primary_row(2, "5", "034 1234567", name="", dp="DP-7"),
    )

    merged = reconcile.merge_rows(rows)

    assert len(merged) == 1
    assert merged[0].text["name"] == "Perera"
    assert merged[0].text["dp"] == "DP-7"
    assert merged[0].sheet_row == 2
    assert conflicts.recent() == []


def test_merge_numeric_precedence():
    rows = _rows(
        primary_row(1, "5", "1234567", retainers="3", l_hook="2", c_hook=""),
        primary_row(2, "5", "1234567", retainers="5", l_hook="0", c_hook="0"),
    )

    merged = reconcile.merge_rows(rows)[0]

    assert merged.numbers["retainers"] == 5
    assert merged.numbers["l_hook"] == 2
    assert merged.numbers["c_hook"] == 0


def test_merge_records_text_conflicts_and_keeps_later_value():
    rows = _rows(
        primary_row(1, "5", "1234567", name="Perera"),
        primary_row(2, "5", "1234567", name="Fernando"),
    )

    merged = reconcile.merge_rows(rows)[0]

    assert merged.text["name"] == "Fernando"
    entries = conflicts.recent()
    assert len(entries) == 1
    assert entries[0]["key"] == "0341234567|2024-03-05"
    assert entries[0]["fields"] == {"name": ["Fernando", "Perera"]}


def test_merge_keeps_different_dates_apart():
    rows = _rows(
        primary_row(1, "5", "1234567"),
        primary_row(2, "6", "1234567"),
    )
    assert len(reconcile.merge_rows(rows)) == 2


def test_upsert_inserts_then_updates(store):
    rows = reconcile.merge_rows(_rows(primary_row(1, "5", "1234567", name="Perera", retainers="2")))

    first = reconcile.upsert_lines(store, rows, connection_id="conn")
    second = reconcile.upsert_lines(store, rows, connection_id="conn")

    assert (first.inserted, first.updated) == (1, 0)
    assert (second.inserted, second.updated) == (0, 1)
    assert first.line_ids == second.line_ids
    assert not first.used_fallback
    line = store.find_line("0341234567", "2024-03-05")
    assert line["name"] == "Perera"
    assert line["retainers"] == 2
    assert line["connection_id"] == "conn"


def test_blank_sheet_text_does_not_clear_stored_text(store):
    reconcile.upsert_lines(store, _rows(primary_row(1, "5", "1234567", name="Perera")))
    reconcile.upsert_lines(store, _rows(primary_row(1, "5", "1234567", name="")))

    assert store.find_line("0341234567", "2024-03-05")["name"] == "Perera"


def test_missing_constraint_uses_sequential_path(store):
    with store.transaction() as conn:
        conn.execute("DROP INDEX idx_line_phone_date")
    rows = _rows(primary_row(1, "5", "1234567", name="Perera"), primary_row(2, "6", "7654321"))

    first = reconcile.upsert_lines(store, rows)
    second = reconcile.upsert_lines(store, rows)

    assert first.used_fallback
    assert first.fallback_reason == UpsertOutcome.MISSING_CONSTRAINT.value
    assert (first.inserted, first.updated) == (2, 0)
    assert (second.inserted, second.updated) == (0, 2)
    assert store.count_lines_for_period(*PERIOD.bounds()) == 2


def test_duplicate_batch_is_reported_not_raised(store):
    record = _rows(primary_row(1, "5", "1234567"))[0].as_record()

    result = store.bulk_upsert_lines([record, dict(record)])

    assert result.outcome is UpsertOutcome.DUPLICATE_TARGET
    assert not result.ok
    assert store.count_lines_for_period(*PERIOD.bounds()) == 0


def test_unmerged_duplicates_fall_back_to_sequential_upsert(store):
    rows = _rows(primary_row(1, "5", "1234567", name="Perera"), primary_row(2, "5", "1234567", dp="DP-7"))

    summary = reconcile.upsert_lines(store, rows)

    assert summary.used_fallback
    assert summary.fallback_reason == UpsertOutcome.DUPLICATE_TARGET.value
    assert (summary.inserted, summary.updated) == (1, 1)
    assert len(summary.line_ids) == 1
    line = store.find_line("0341234567", "2024-03-05")
    assert (line["name"], line["dp"]) == ("Perera", "DP-7")


def test_ensure_tasks_creates_one_task_per_line(store):
    rows = _rows(primary_row(1, "5", "1234567"), primary_row(2, "6", "7654321"))
    summary = reconcile.upsert_lines(store, rows)

    assert reconcile.ensure_tasks(store, summary.line_ids) == 2
    assert reconcile.ensure_tasks(store, summary.line_ids) == 0
    assert store.count_tasks() == 2


def test_conflict_log_counts_fields_and_respects_capacity():
    log = conflicts.ConflictLog("cableledger.tests.conflicts", capacity=2)

    log.record("a", {"name": ("x", "y")})
    log.record("b", {"name": ("x", "z"), "dp": ("1", "2")})
    log.record("c", {"dp": ("3", "4")})
    log.record("d", {})

    assert [entry["key"] for entry in log.recent()] == ["c", "b"]
    assert log.field_counts() == {"name": 1, "dp": 2}
    log.clear()
    assert log.recent() == []


def test_row_failure_during_fallback_aborts_the_upsert(store, monkeypatch):
    rows = _rows(primary_row(1, "5", "1111111", name="Perera"), primary_row(2, "5", "1111111", dp="DP-7"))

    def broken_insert(record, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "insert_line", broken_insert)

    with pytest.raises(ReconciliationError, match="0341111111 on 2024-03-05"):
        reconcile.upsert_lines(store, rows)
    assert store.count_lines_for_period(*PERIOD.bounds()) == 0


def test_conflict_counts_repeat_per_field():
    log = conflicts.ConflictLog("cableledger.tests.conflict_counts")

    log.record("a", {"name": ("b", "a")})
    log.record("b", {"name": ("c", "b")})

    assert log.field_counts() == {"name": 2}
