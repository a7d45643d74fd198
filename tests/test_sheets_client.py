import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from core import sheets_client
from core.errors import SheetNotFoundError, SheetsAccessError, SheetsPermissionError, ValidationError
from core.sheets_client import SheetsClient
from fake_sheets import FakeSheetsService, http_error


@pytest.mark.parametrize(
    "value, expected",
    [
        ("https://docs.google.com/spreadsheets/d/1AbC-dEf_123/edit#gid=0", "1AbC-dEf_123"),
        ("1AbCdEfGhIjKlMnOpQrStUvWxYz", "1AbCdEfGhIjKlMnOpQrStUvWxYz"),
        ("short", ""),
        ("", ""),
    ],
)
def test_parse_spreadsheet_id(value, expected):
    assert sheets_client.parse_spreadsheet_id(value) == expected


@pytest.mark.parametrize(
    "title, expected",
    [
        ("March", "March"),
        ("March 2024", "'March 2024'"),
        ("Bob's Lines", "'Bob''s Lines'"),
    ],
)
def test_quote_title(title, expected):
    assert sheets_client.quote_title(title) == expected


def test_quote_title_rejects_empty_titles():
    with pytest.raises(ValidationError):
        sheets_client.quote_title("  ")


@pytest.mark.parametrize("index, expected", [(0, "A"), (25, "Z"), (26, "AA"), (45, "AT"), (79, "CB")])
def test_column_a1(index, expected):
    assert sheets_client.column_a1(index) == expected


def test_row_range():
    assert sheets_client.row_range("DW", 7, 5) == "DW!A7:E7"
    with pytest.raises(ValueError):
        sheets_client.row_range("DW", 0, 5)


def test_chunked_batches():
    assert [list(chunk) for chunk in sheets_client.chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]


def test_list_tabs_and_read_values():
    service = FakeSheetsService({"March": [["No", "Date"], [1, "5"]], "DW": [["TP"]]})
    client = SheetsClient(service)

    assert client.list_tabs("sheet") == ["March", "DW"]
    assert client.read_values("sheet", "March") == [["No", "Date"], [1, "5"]]
    assert client.read_many("sheet", ["March", "DW"])["DW"] == [["TP"]]


def test_retries_quota_errors_with_backoff():
    service = FakeSheetsService({"March": [["No"]]})
    service.read_errors["March"] = [http_error(429), http_error(503)]
    delays = []
    client = SheetsClient(service, sleep=delays.append)

    assert client.read_values("sheet", "March") == [["No"]]
    assert delays == [1, 2]


def test_gives_up_after_max_attempts():
    service = FakeSheetsService({"March": [["No"]]})
    service.read_errors["March"] = [http_error(500) for _ in range(sheets_client.MAX_RETRY_ATTEMPTS)]
    delays = []
    client = SheetsClient(service, sleep=delays.append)

    with pytest.raises(SheetsAccessError) as excinfo:
        client.read_values("sheet", "March")

    assert excinfo.value.status == 500
    assert delays == list(sheets_client.BACKOFF_SCHEDULE[: sheets_client.MAX_RETRY_ATTEMPTS - 1])


def test_permission_error_names_the_service_account():
    service = FakeSheetsService({"March": []})
    service.metadata_errors.append(http_error(403, "forbidden"))
    client = SheetsClient(service, service_account_email="bot@project.iam.gserviceaccount.com", sleep=lambda _: None)

    with pytest.raises(SheetsPermissionError) as excinfo:
        client.list_tabs("sheet")

    assert "bot@project.iam.gserviceaccount.com" in excinfo.value.hint


def test_missing_sheet_is_not_retried():
    service = FakeSheetsService({"March": []})
    service.metadata_errors.append(http_error(404, "not found"))
    delays = []
    client = SheetsClient(service, sleep=delays.append)

    with pytest.raises(SheetNotFoundError):
        client.list_tabs("sheet")
    assert delays == []


def test_write_ranges_chunks_requests(monkeypatch):
    monkeypatch.setattr(sheets_client, "MAX_BATCH_RANGES", 2)
    service = FakeSheetsService({"DW": []})
    client = SheetsClient(service)
    data = [{"range": f"DW!A{row}:B{row}", "values": [["x", "y"]]} for row in range(2, 7)]

    cells = client.write_ranges("sheet", data)

    assert cells == 10
    assert len(service.batch_updates) == 3
    assert service.tabs["DW"][1] == ["x", "y"]
    assert service.tabs["DW"][5] == ["x", "y"]
    assert len(service.tabs["DW"]) == 6
