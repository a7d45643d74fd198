"""SQLite-backed data access layer for CableLedger."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Line metadata shared with other modules
# ---------------------------------------------------------------------------
LINE_SHEET_COLUMNS: List[Tuple[str, str]] = [
    ("date", "Date"),
    ("telephone_no", "Number"),
    ("dp", "DP"),
    ("power_dp", "Power (DP)"),
    ("power_inbox", "Power (inbox)"),
    ("name", "Name"),
    ("address", "Address"),
    ("cable_start", "Cable Start"),
    ("cable_middle", "Cable Middle"),
    ("cable_end", "Cable End"),
    ("f1", "F1"),
    ("g1", "G1"),
    ("total_cable", "Total"),
    ("retainers", "Retainers"),
    ("l_hook", "L-Hook"),
    ("nut_bolt", "Nut&Bolt"),
    ("top_bolt", "Top-Bolt"),
    ("c_hook", "C-Hook"),
    ("fiber_rosette", "Fiber-rosatte"),
    ("internal_wire", "Internal Wire"),
    ("s_rosette", "S-Rosette"),
    ("fac", "FAC"),
    ("casing", "Casing"),
    ("c_tie", "C-Tie"),
    ("c_clip", "C-Clip"),
    ("conduit", "Conduit"),
    ("tag_tie", "Tag Tie"),
    ("ont", "ONT"),
    ("voice_test_no", "Voice Test Number"),
    ("stb", "STB"),
    ("flexible", "Flexible"),
    ("rj45", "RJ 45"),
    ("cat5", "Cat 5"),
    ("pole_67", "Pole-6.7"),
    ("pole_56", "Pole-5.6"),
    ("concrete_nail", "Concrete nail"),
    ("roll_plug", "Roll Plug"),
    ("screw_nail", "Screw Nail"),
    ("screw_nail_1_5", "Screw Nail 1 1/2"),
    ("u_clip", "U-Clip"),
    ("socket", "Socket"),
    ("bend", "Bend"),
    ("rj11", "RJ 11"),
    ("rj12", "RJ 12"),
    ("drum_number", "Drum Number"),
]

LINE_FIELDS: Tuple[str, ...] = tuple(name for name, _ in LINE_SHEET_COLUMNS)
LINE_TEXT_FIELDS = {"dp", "power_dp", "power_inbox", "name", "address", "ont", "voice_test_no", "stb", "drum_number"}
LINE_NUMERIC_FIELDS: Tuple[str, ...] = tuple(
    name for name in LINE_FIELDS if name not in LINE_TEXT_FIELDS and name not in {"date", "telephone_no"}
)
SECONDARY_FIELDS: Tuple[str, ...] = ("dw_dp", "dw_c_hook", "dw_cus", "drum_number")
LINE_KEY_COLUMNS: Tuple[str, str] = ("telephone_no", "date")

LINE_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "connection_id": "TEXT",
    "telephone_no": "TEXT NOT NULL",
    "date": "TEXT NOT NULL",
    **{name: "TEXT" for name in LINE_FIELDS if name in LINE_TEXT_FIELDS},
    **{name: "REAL NOT NULL DEFAULT 0" for name in LINE_NUMERIC_FIELDS},
    "dw_dp": "TEXT",
    "dw_c_hook": "REAL",
    "dw_cus": "TEXT",
    "status": "TEXT NOT NULL DEFAULT 'completed'",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

LINE_WRITABLE_FIELDS: Tuple[str, ...] = ("connection_id",) + LINE_FIELDS

CONNECTION_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "month": "INTEGER NOT NULL",
    "year": "INTEGER NOT NULL",
    "sheet_url": "TEXT",
    "sheet_id": "TEXT NOT NULL",
    "sheet_name": "TEXT",
    "sheet_tab": "TEXT",
    "secondary_tab": "TEXT",
    "status": "TEXT NOT NULL DEFAULT 'active'",
    "last_synced": "TEXT",
    "record_count": "INTEGER NOT NULL DEFAULT 0",
    "last_error": "TEXT",
    "created_by": "TEXT",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT",
}

TASK_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "line_details_id": "INTEGER NOT NULL",
    "title": "TEXT",
    "status": "TEXT NOT NULL DEFAULT 'pending'",
    "created_at": "TEXT NOT NULL",
}

INVENTORY_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "name": "TEXT NOT NULL",
    "drum_size": "REAL",
    "created_at": "TEXT NOT NULL",
}

DRUM_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "drum_number": "TEXT NOT NULL",
    "item_id": "INTEGER",
    "initial_quantity": "REAL NOT NULL DEFAULT 0",
    "current_quantity": "REAL NOT NULL DEFAULT 0",
    "status": "TEXT NOT NULL DEFAULT 'active'",
    "manual_wastage": "REAL",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

USAGE_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "drum_id": "INTEGER NOT NULL",
    "line_details_id": "INTEGER NOT NULL",
    "quantity_used": "REAL NOT NULL DEFAULT 0",
    "cable_start_point": "REAL",
    "cable_end_point": "REAL",
    "usage_date": "TEXT",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

HISTORY_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "drum_id": "INTEGER NOT NULL",
    "action": "TEXT NOT NULL",
    "previous_quantity": "REAL",
    "new_quantity": "REAL",
    "quantity_change": "REAL",
    "previous_status": "TEXT",
    "new_status": "TEXT",
    "sync_connection_id": "TEXT",
    "notes": "TEXT",
    "created_at": "TEXT NOT NULL",
}

TABLES: Dict[str, Dict[str, str]] = {
    "sheet_connections": CONNECTION_COLUMN_DEFINITIONS,
    "line_details": LINE_COLUMN_DEFINITIONS,
    "tasks": TASK_COLUMN_DEFINITIONS,
    "inventory_items": INVENTORY_COLUMN_DEFINITIONS,
    "drum_tracking": DRUM_COLUMN_DEFINITIONS,
    "drum_usage": USAGE_COLUMN_DEFINITIONS,
    "drum_tracking_history": HISTORY_COLUMN_DEFINITIONS,
}

INDEXES: Tuple[str, ...] = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_connection_period ON sheet_connections(month, year)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_line_phone_date ON line_details(telephone_no, date)",
    "CREATE INDEX IF NOT EXISTS idx_line_date ON line_details(date)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_task_line ON tasks(line_details_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_drum_number ON drum_tracking(drum_number)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_drum_line ON drum_usage(drum_id, line_details_id)",
    "CREATE INDEX IF NOT EXISTS idx_history_drum ON drum_tracking_history(drum_id)",
)


class UpsertOutcome(str, Enum):
    """Result kinds reported by :meth:`Store.bulk_upsert_lines`."""

    OK = "ok"
    MISSING_CONSTRAINT = "missing_constraint"
    DUPLICATE_TARGET = "duplicate_target"


@dataclass(slots=True)
class UpsertResult:
    outcome: UpsertOutcome
    inserted: int = 0
    updated: int = 0
    line_ids: Dict[Tuple[str, str], int] = field(default_factory=dict)
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is UpsertOutcome.OK


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def utc_now_iso() -> str:
    return _utc_now().isoformat()


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def _filter_fields(values: Mapping[str, Any], allowed: Iterable[str]) -> Dict[str, Any]:
    allowed_set = set(allowed)
    return {key: value for key, value in values.items() if key in allowed_set}


class Store:
    """Repository over a single SQLite database file.

    A ``Store`` is constructed explicitly and handed to every component that
    needs persistence.  Each public method opens its own short transaction.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).resolve()
        self._schema_lock = threading.Lock()
        self._schema_ready = False
        self.ensure_schema()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self._path)
            try:
                for table, definitions in TABLES.items():
                    columns = ",\n        ".join(
                        f"{column} {definition}" for column, definition in definitions.items()
                    )
                    conn.execute(f"CREATE TABLE IF NOT EXISTS {table} (\n        {columns}\n    )")
                    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
                    for column, definition in definitions.items():
                        if column not in existing:
                            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                for statement in INDEXES:
                    conn.execute(statement)
                conn.commit()
            finally:
                conn.close()
            self._schema_ready = True
            logger.debug("Schema ready at %s", self._path)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------
    def insert_connection(self, record: Mapping[str, Any]) -> None:
        payload = _filter_fields(record, CONNECTION_COLUMN_DEFINITIONS)
        payload.setdefault("created_at", utc_now_iso())
        columns = ", ".join(payload)
        placeholders = ", ".join("?" for _ in payload)
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO sheet_connections ({columns}) VALUES ({placeholders})",
                tuple(payload.values()),
            )

    def fetch_connection(self, connection_id: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM sheet_connections WHERE id = ?", (connection_id,)).fetchone()
        return _row_to_dict(row)

    def find_connection(self, month: int, year: int) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM sheet_connections WHERE month = ? AND year = ?",
                (month, year),
            ).fetchone()
        return _row_to_dict(row)

    def list_connections(self) -> List[Dict[str, Any]]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM sheet_connections ORDER BY year DESC, month DESC"
            ).fetchall()
        return [dict(row) for row in rows]

    def update_connection(self, connection_id: str, fields: Mapping[str, Any]) -> None:
        payload = _filter_fields(fields, CONNECTION_COLUMN_DEFINITIONS)
        payload.pop("id", None)
        if not payload:
            return
        payload["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{column} = ?" for column in payload)
        with self.transaction() as conn:
            conn.execute(
                f"UPDATE sheet_connections SET {assignments} WHERE id = ?",
                (*payload.values(), connection_id),
            )

    def delete_connection(self, connection_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM sheet_connections WHERE id = ?", (connection_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Line records
    # ------------------------------------------------------------------
    def has_line_key_constraint(self) -> bool:
        """Return ``True`` when a unique index covers ``(telephone_no, date)``."""

        with self.transaction() as conn:
            for index in conn.execute("PRAGMA index_list(line_details)").fetchall():
                if not index["unique"]:
                    continue
                name = str(index["name"]).replace('"', '""')
                columns = [row["name"] for row in conn.execute(f'PRAGMA index_info("{name}")')]
                if sorted(columns) == sorted(LINE_KEY_COLUMNS):
                    return True
        return False

    def bulk_upsert_lines(self, records: Sequence[Mapping[str, Any]]) -> UpsertResult:
        """Insert or update ``records`` in one statement batch.

        Problems that call for the sequential path are reported through
        :class:`UpsertOutcome` rather than raised.
        """

        if not records:
            return UpsertResult(UpsertOutcome.OK)

        keys = [(str(record["telephone_no"]), str(record["date"])) for record in records]
        if len(set(keys)) != len(keys):
            return UpsertResult(
                UpsertOutcome.DUPLICATE_TARGET,
                detail="batch contains the same (telephone_no, date) more than once",
            )
        if not self.has_line_key_constraint():
            return UpsertResult(
                UpsertOutcome.MISSING_CONSTRAINT,
                detail="no unique index on line_details(telephone_no, date)",
            )

        now = utc_now_iso()
        columns = list(LINE_WRITABLE_FIELDS)
        insert_columns = columns + ["status", "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in insert_columns)
        updates = ", ".join(
            f"{column} = COALESCE(excluded.{column}, line_details.{column})"
            if column in LINE_TEXT_FIELDS or column == "connection_id"
            else f"{column} = excluded.{column}"
            for column in columns
            if column not in LINE_KEY_COLUMNS
        )
        sql = (
            f"INSERT INTO line_details ({', '.join(insert_columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(telephone_no, date) DO UPDATE SET {updates}, updated_at = excluded.updated_at"
        )
        rows = [
            tuple(record.get(column) for column in columns) + ("completed", now, now)
            for record in records
        ]

        try:
            with self.transaction() as conn:
                existing = {key for key in keys if self._line_id(conn, key) is not None}
                conn.executemany(sql, rows)
                line_ids = {key: self._line_id(conn, key) for key in keys}
        except sqlite3.IntegrityError as exc:
            return UpsertResult(UpsertOutcome.DUPLICATE_TARGET, detail=str(exc))

        return UpsertResult(
            UpsertOutcome.OK,
            inserted=len(keys) - len(existing),
            updated=len(existing),
            line_ids={key: value for key, value in line_ids.items() if value is not None},
        )

    @staticmethod
    def _line_id(conn: sqlite3.Connection, key: Tuple[str, str]) -> Optional[int]:
        row = conn.execute(
            "SELECT id FROM line_details WHERE telephone_no = ? AND date = ? ORDER BY id LIMIT 1",
            key,
        ).fetchone()
        return int(row["id"]) if row else None

    def find_line(self, telephone_no: str, date: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM line_details WHERE telephone_no = ? AND date = ? ORDER BY id LIMIT 1",
                (telephone_no, date),
            ).fetchone()
        return _row_to_dict(row)

    def fetch_line(self, line_id: int) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM line_details WHERE id = ?", (line_id,)).fetchone()
        return _row_to_dict(row)

    def insert_line(self, record: Mapping[str, Any], *, status: str = "completed") -> int:
        payload = _filter_fields(record, LINE_WRITABLE_FIELDS + ("dw_dp", "dw_c_hook", "dw_cus"))
        now = utc_now_iso()
        payload.update({"status": status, "created_at": now, "updated_at": now})
        columns = ", ".join(payload)
        placeholders = ", ".join("?" for _ in payload)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO line_details ({columns}) VALUES ({placeholders})",
                tuple(payload.values()),
            )
            return int(cursor.lastrowid)

    def update_line(self, line_id: int, fields: Mapping[str, Any]) -> None:
        payload = _filter_fields(fields, LINE_WRITABLE_FIELDS + ("dw_dp", "dw_c_hook", "dw_cus", "status"))
        if not payload:
            return
        payload["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{column} = ?" for column in payload)
        with self.transaction() as conn:
            conn.execute(
                f"UPDATE line_details SET {assignments} WHERE id = ?",
                (*payload.values(), line_id),
            )

    def lines_for_period(self, start: str, end: str) -> List[Dict[str, Any]]:
        """Return line records dated within ``[start, end]`` (ISO dates)."""

        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM line_details WHERE date BETWEEN ? AND ? ORDER BY date, id",
                (start, end),
            ).fetchall()
        return [dict(row) for row in rows]

    def lines_by_phone(self, telephone_no: str, start: str, end: str) -> List[Dict[str, Any]]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM line_details WHERE telephone_no = ? AND date BETWEEN ? AND ? ORDER BY date, id",
                (telephone_no, start, end),
            ).fetchall()
        return [dict(row) for row in rows]

    def count_lines_for_period(self, start: str, end: str) -> int:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM line_details WHERE date BETWEEN ? AND ?",
                (start, end),
            ).fetchone()
        return int(row["total"])

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    def task_exists(self, line_id: int) -> bool:
        with self.transaction() as conn:
            row = conn.execute("SELECT 1 FROM tasks WHERE line_details_id = ?", (line_id,)).fetchone()
        return row is not None

    def create_task(self, line_id: int, title: str = "") -> bool:
        """Create the task for ``line_id``; return ``False`` if one already exists."""

        try:
            with self.transaction() as conn:
                conn.execute(
                    "INSERT INTO tasks (line_details_id, title, status, created_at) VALUES (?, ?, 'pending', ?)",
                    (line_id, title, utc_now_iso()),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def count_tasks(self) -> int:
        with self.transaction() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM tasks").fetchone()
        return int(row["total"])

    # ------------------------------------------------------------------
    # Inventory catalog
    # ------------------------------------------------------------------
    def add_inventory_item(self, name: str, drum_size: Optional[float] = None) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO inventory_items (name, drum_size, created_at) VALUES (?, ?, ?)",
                (name, drum_size, utc_now_iso()),
            )
            return int(cursor.lastrowid)

    def list_inventory_items(self) -> List[Dict[str, Any]]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM inventory_items ORDER BY id").fetchall()
        return [dict(row) for row in rows]

    def fetch_inventory_item(self, item_id: int) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM inventory_items WHERE id = ?", (item_id,)).fetchone()
        return _row_to_dict(row)

    # ------------------------------------------------------------------
    # Drums
    # ------------------------------------------------------------------
    def fetch_drum(self, drum_id: int) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM drum_tracking WHERE id = ?", (drum_id,)).fetchone()
        return _row_to_dict(row)

    def fetch_drum_by_number(self, drum_number: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM drum_tracking WHERE drum_number = ?", (drum_number,)
            ).fetchone()
        return _row_to_dict(row)

    def list_drums(self) -> List[Dict[str, Any]]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM drum_tracking ORDER BY drum_number").fetchall()
        return [dict(row) for row in rows]

    def create_drum(
        self,
        drum_number: str,
        *,
        item_id: Optional[int],
        initial_quantity: float,
        status: str,
    ) -> int:
        now = utc_now_iso()
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO drum_tracking (
                    drum_number, item_id, initial_quantity, current_quantity, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (drum_number, item_id, initial_quantity, initial_quantity, status, now, now),
            )
            return int(cursor.lastrowid)

    def update_drum(self, drum_id: int, fields: Mapping[str, Any]) -> None:
        payload = _filter_fields(fields, ("current_quantity", "status", "manual_wastage", "initial_quantity", "item_id"))
        if not payload:
            return
        payload["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{column} = ?" for column in payload)
        with self.transaction() as conn:
            conn.execute(
                f"UPDATE drum_tracking SET {assignments} WHERE id = ?",
                (*payload.values(), drum_id),
            )

    def upsert_drum_usage(
        self,
        drum_id: int,
        line_id: int,
        *,
        quantity_used: float,
        cable_start_point: Optional[float],
        cable_end_point: Optional[float],
        usage_date: Optional[str],
    ) -> bool:
        """Write the usage row for ``(drum_id, line_id)``; return ``True`` when created."""

        now = utc_now_iso()
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM drum_usage WHERE drum_id = ? AND line_details_id = ?",
                (drum_id, line_id),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO drum_usage (
                    drum_id, line_details_id, quantity_used, cable_start_point, cable_end_point,
                    usage_date, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(drum_id, line_details_id) DO UPDATE SET
                    quantity_used = excluded.quantity_used,
                    cable_start_point = excluded.cable_start_point,
                    cable_end_point = excluded.cable_end_point,
                    usage_date = excluded.usage_date,
                    updated_at = excluded.updated_at
                """,
                (drum_id, line_id, quantity_used, cable_start_point, cable_end_point, usage_date, now, now),
            )
        return existing is None

    def delete_usage_for_line(self, line_id: int, *, keep_drum_id: Optional[int] = None) -> List[int]:
        """Drop usage rows of ``line_id`` on other drums; return the affected drum ids."""

        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT drum_id FROM drum_usage WHERE line_details_id = ?", (line_id,)
            ).fetchall()
            stale = [int(row["drum_id"]) for row in rows if int(row["drum_id"]) != keep_drum_id]
            for drum_id in stale:
                conn.execute(
                    "DELETE FROM drum_usage WHERE line_details_id = ? AND drum_id = ?",
                    (line_id, drum_id),
                )
        return stale

    def usages_for_drum(self, drum_id: int) -> List[Dict[str, Any]]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM drum_usage WHERE drum_id = ? ORDER BY usage_date, id",
                (drum_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def add_drum_history(
        self,
        drum_id: int,
        action: str,
        *,
        previous_quantity: Optional[float] = None,
        new_quantity: Optional[float] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        sync_connection_id: Optional[str] = None,
        notes: str = "",
    ) -> None:
        change = None
        if previous_quantity is not None and new_quantity is not None:
            change = new_quantity - previous_quantity
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO drum_tracking_history (
                    drum_id, action, previous_quantity, new_quantity, quantity_change,
                    previous_status, new_status, sync_connection_id, notes, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    drum_id,
                    action,
                    previous_quantity,
                    new_quantity,
                    change,
                    previous_status,
                    new_status,
                    sync_connection_id,
                    notes,
                    utc_now_iso(),
                ),
            )

    def drum_history(self, drum_id: int) -> List[Dict[str, Any]]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM drum_tracking_history WHERE drum_id = ? ORDER BY id",
                (drum_id,),
            ).fetchall()
        return [dict(row) for row in rows]


def open_store(path: Optional[Path | str] = None) -> Store:
    """Return a :class:`Store` for ``path`` or the configured default database."""

    target = Path(path or settings.DEFAULT_DB_PATH)
    logger.info("Opening store at %s", target)
    return Store(target)


__all__ = [
    "LINE_FIELDS",
    "LINE_KEY_COLUMNS",
    "LINE_NUMERIC_FIELDS",
    "LINE_SHEET_COLUMNS",
    "LINE_TEXT_FIELDS",
    "SECONDARY_FIELDS",
    "Store",
    "UpsertOutcome",
    "UpsertResult",
    "open_store",
    "utc_now_iso",
]
