"""In-memory stand-in for the ``sheets/v4`` service resource used by the tests."""

import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import httplib2
from googleapiclient.errors import HttpError

import db

PRIMARY_HEADERS: List[str] = ["No"] + [header for _, header in db.LINE_SHEET_COLUMNS]
SECONDARY_HEADERS: List[str] = ["TP", "DW DP", "DW C HOOK", "DW CUS", "DRUM NUMBER"]

_RANGE_RE = re.compile(r"^(?P<title>.+)!(?P<column>[A-Z]+)(?P<row>\d+)(?::[A-Z]+\d*)?$")


def http_error(status: int, reason: str = "error") -> HttpError:
    response = httplib2.Response({"status": str(status)})
    response.reason = reason
    return HttpError(response, reason.encode("utf-8"))


def primary_row(sequence: Any, day: Any, number: Any, **fields: Any) -> List[Any]:
    """Build a primary-tab row in :data:`PRIMARY_HEADERS` order."""

    row: List[Any] = [""] * len(PRIMARY_HEADERS)
    row[0] = sequence
    values = {"date": day, "telephone_no": number, **fields}
    for name, value in values.items():
        row[db.LINE_FIELDS.index(name) + 1] = value
    return row


def _split_title(range_ref: str) -> str:
    title = range_ref
    if title.startswith("'") and title.endswith("'"):
        title = title[1:-1].replace("''", "'")
    return title


class _Request:
    def __init__(self, func):
        self._func = func

    def execute(self):
        return self._func()


class FakeSheetsService:
    """Serves ``tabs`` and applies ``batchUpdate`` writes back onto them."""

    def __init__(self, tabs: Optional[Dict[str, List[List[Any]]]] = None) -> None:
        self.tabs: Dict[str, List[List[Any]]] = {
            title: [list(row) for row in rows] for title, rows in (tabs or {}).items()
        }
        self.read_errors: Dict[str, List[Exception]] = {}
        self.metadata_errors: List[Exception] = []
        self.batch_updates: List[Dict[str, Any]] = []
        self.reads = 0

    # Resource navigation -------------------------------------------------
    def spreadsheets(self):
        return self

    def values(self):
        return self

    # spreadsheets.get ----------------------------------------------------
    def get(self, spreadsheetId, includeGridData=False):
        def run():
            if self.metadata_errors:
                raise self.metadata_errors.pop(0)
            return {"sheets": [{"properties": {"title": title}} for title in self.tabs]}

        return _Request(run)

    # values.batchGet -----------------------------------------------------
    def batchGet(self, spreadsheetId, ranges, majorDimension="ROWS"):
        def run():
            self.reads += 1
            value_ranges = []
            for range_ref in ranges:
                title = _split_title(range_ref.split("!", 1)[0])
                errors = self.read_errors.get(title)
                if errors:
                    raise errors.pop(0)
                rows = [list(row) for row in self.tabs.get(title, [])]
                value_ranges.append({"range": range_ref, "majorDimension": majorDimension, "values": rows})
            return {"spreadsheetId": spreadsheetId, "valueRanges": value_ranges}

        return _Request(run)

    # values.batchUpdate --------------------------------------------------
    def batchUpdate(self, spreadsheetId, body):
        def run():
            self.batch_updates.append(body)
            cells = 0
            for entry in body.get("data", []):
                match = _RANGE_RE.match(entry["range"])
                assert match, entry["range"]
                title = _split_title(match.group("title"))
                row_index = int(match.group("row"))
                rows = self.tabs.setdefault(title, [])
                while len(rows) < row_index:
                    rows.append([])
                written = list(entry["values"][0])
                rows[row_index - 1] = written
                cells += len(written)
            return {"totalUpdatedCells": cells}

        return _Request(run)

    def written_rows(self) -> List[str]:
        return [entry["range"] for body in self.batch_updates for entry in body.get("data", [])]
