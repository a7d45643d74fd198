import sys
from datetime import date
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from core import normalizer
from core.errors import HeaderValidationError
from core.normalizer import Period
from fake_sheets import PRIMARY_HEADERS, primary_row


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1234567", "0341234567"),
        ("034-1234567", "0341234567"),
        ("0771234567", "0771234567"),
        (" 034 123 4567 ", "0341234567"),
        (1234567.0, "0341234567"),
        ("N/A", "N/A"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_telephone(raw, expected):
    assert normalizer.normalize_telephone(raw) == expected


@pytest.mark.parametrize("raw", ["1234567", "0341234567", "771234567", "+94 77 123 4567", "SLT-01"])
def test_normalize_telephone_is_idempotent(raw):
    once = normalizer.normalize_telephone(raw)
    assert normalizer.normalize_telephone(once) == once


def test_core_phone_digits_strip_prefix_for_matching():
    assert normalizer.core_phone_digits("0341234567") == "1234567"
    assert normalizer.core_phone_digits("1234567") == "1234567"
    assert normalizer.core_phone_digits("slt-01") == "SLT-01"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("15", date(2024, 3, 15)),
        (45366, date(2024, 3, 15)),
        ("45366", date(2024, 3, 15)),
        ("3/15", date(2024, 3, 15)),
        ("15/3", date(2024, 3, 15)),
        ("2024-03-15", date(2024, 3, 15)),
        ("15 March 2024", date(2024, 3, 15)),
        ("2023-07-15", date(2024, 3, 15)),
        ("31", date(2024, 3, 31)),
    ],
)
def test_parse_sheet_date_forces_period(value, expected):
    assert normalizer.parse_sheet_date(value, 3, 2024) == expected


def test_parse_sheet_date_clamps_to_month_end():
    assert normalizer.parse_sheet_date("31", 2, 2024) == date(2024, 2, 29)
    assert normalizer.parse_sheet_date("30", 4, 2023) == date(2023, 4, 30)


@pytest.mark.parametrize("value", ["", None, "   ", "not a date at all", 0, True])
def test_parse_sheet_date_returns_none_for_unusable_cells(value):
    assert normalizer.parse_sheet_date(value, 3, 2024) is None


@pytest.mark.parametrize(
    "value, expected",
    [
        ("", None),
        (None, None),
        ("12", 12.0),
        ("1,250.5", 1250.5),
        (7, 7.0),
        ("abc", 0.0),
    ],
)
def test_to_optional_number(value, expected):
    assert normalizer.to_optional_number(value) == expected


def test_validate_headers_accepts_synonyms_and_case():
    headers = [header.upper() for header in PRIMARY_HEADERS]
    headers[headers.index("ADDRESS")] = "Addras"
    headers[headers.index("FIBER-ROSATTE")] = "Fiber-rosette"

    columns = normalizer.validate_headers(headers)

    assert columns["address"] == headers.index("Addras")
    assert columns["fiber_rosette"] == headers.index("Fiber-rosette")
    assert columns["telephone_no"] == PRIMARY_HEADERS.index("Number")


def test_validate_headers_reports_every_missing_column():
    headers = [header for header in PRIMARY_HEADERS if header not in {"Total", "DP"}]

    with pytest.raises(HeaderValidationError) as excinfo:
        normalizer.validate_headers(headers, tab="March")

    assert set(excinfo.value.missing) == {"Total", "DP"}
    assert excinfo.value.tab == "March"
    assert "March" in str(excinfo.value)


def test_drum_number_column_is_optional():
    headers = [header for header in PRIMARY_HEADERS if header != "Drum Number"]

    layout = normalizer.detect_layout(headers)

    assert "drum_number" not in layout.columns
    assert layout.sequence_column == 0


def test_read_line_rows_builds_typed_rows_and_skips_rows_without_number():
    values = [
        PRIMARY_HEADERS,
        primary_row(1, "5", "1234567", name="Perera", dp="DP-7", retainers="2", cable_start="0", cable_end="120"),
        primary_row(2, "6", "", name="No number here"),
        [],
    ]

    layout, rows = normalizer.read_line_rows(values, Period(3, 2024))

    assert layout.width == len(PRIMARY_HEADERS)
    assert len(rows) == 1
    row = rows[0]
    assert row.telephone_no == "0341234567"
    assert row.date == date(2024, 3, 5)
    assert row.sheet_row == 2
    assert row.sequence == 1
    assert row.text["name"] == "Perera"
    assert row.numbers["retainers"] == 2.0
    assert row.numbers["l_hook"] is None
    assert row.number("l_hook") == 0.0


def test_missing_lengths_are_derived_from_cable_offsets():
    values = [
        PRIMARY_HEADERS,
        primary_row(1, "5", "1234567", cable_start="100", cable_middle="160", cable_end="250"),
        primary_row(2, "5", "7654321", f1="30", g1="20"),
        primary_row(3, "5", "1111111", f1="30", g1="20", total_cable="55"),
    ]

    _layout, rows = normalizer.read_line_rows(values, Period(3, 2024))

    derived, summed, explicit = rows
    assert derived.numbers["f1"] == 60
    assert derived.numbers["g1"] == 90
    assert derived.numbers["total_cable"] == 150
    assert summed.numbers["total_cable"] == 50
    assert explicit.numbers["total_cable"] == 55


def test_as_record_contains_every_line_column():
    values = [PRIMARY_HEADERS, primary_row(1, "5", "1234567", name="Perera")]
    _layout, rows = normalizer.read_line_rows(values, Period(3, 2024))

    record = rows[0].as_record("conn-1")

    assert record["connection_id"] == "conn-1"
    assert record["date"] == "2024-03-05"
    assert record["name"] == "Perera"
    assert record["dp"] is None
    assert record["retainers"] == 0.0


def test_read_line_rows_without_values_reports_all_headers():
    with pytest.raises(HeaderValidationError) as excinfo:
        normalizer.read_line_rows([], Period(3, 2024), tab="March")
    assert "Total" in excinfo.value.missing


def test_read_secondary_rows():
    values = [
        ["TP", "DW DP", "DW C HOOK", "DW CUS", "Drum No"],
        ["1234567", "DP-1", "2", "Silva", "D-100"],
        ["", "DP-2", "", "", ""],
        ["7654321", "", "", "", ""],
    ]

    columns, rows = normalizer.read_secondary_rows(values)

    assert columns["drum_number"] == 4
    assert [row.telephone_no for row in rows] == ["0341234567", "0347654321"]
    assert rows[0].updates() == {"dw_dp": "DP-1", "dw_c_hook": 2.0, "dw_cus": "Silva", "drum_number": "D-100"}
    assert rows[1].updates() == {}


def test_secondary_tab_requires_tp_column():
    with pytest.raises(HeaderValidationError):
        normalizer.read_secondary_rows([["DW DP", "DW CUS"]], tab="DW")
