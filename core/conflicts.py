"""Record of fields that disagreed when duplicate sheet rows were merged."""
from __future__ import annotations

import json
import logging
import threading
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Mapping, Optional, Tuple

from core import app_paths

FieldDiffs = Mapping[str, Tuple[str, str]]


class ConflictLog:
    """Writes merge conflicts to ``conflicts.log`` and keeps the latest in memory."""

    def __init__(self, logger_name: str = "cableledger.sync.conflicts", capacity: int = 50) -> None:
        self._logger = logging.getLogger(logger_name)
        self._entries: Deque[Dict[str, object]] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._handler_attached = False

    def _file_logger(self) -> logging.Logger:
        if self._handler_attached:
            return self._logger
        self._handler_attached = True
        try:
            handler = logging.FileHandler(app_paths.logs_path("conflicts.log"), encoding="utf-8")
        except OSError:  # pragma: no cover - depends on filesystem permissions
            return self._logger
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        self._logger.addHandler(handler)
        self._logger.setLevel(logging.INFO)
        return self._logger

    def record(
        self,
        key: str,
        field_diffs: FieldDiffs,
        *,
        source: str = "merge",
        context: Optional[Mapping[str, object]] = None,
    ) -> None:
        if not field_diffs:
            return
        entry: Dict[str, object] = {
            "key": key,
            "source": source,
            "fields": {name: list(values) for name, values in field_diffs.items()},
            "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        }
        if context:
            entry.update(dict(context))

        logger = self._file_logger()
        try:
            logger.info("%s", json.dumps(entry, ensure_ascii=False, sort_keys=True))
        except TypeError:  # pragma: no cover - non-serialisable context values
            logger.info("key=%s source=%s fields=%s", key, source, dict(field_diffs))

        with self._lock:
            self._entries.appendleft(entry)

    def recent(self, limit: int = 10) -> List[Dict[str, object]]:
        with self._lock:
            return list(self._entries)[:limit]

    def field_counts(self) -> Dict[str, int]:
        """How often each field appears among the cached conflicts."""

        counts: Counter = Counter()
        with self._lock:
            for entry in self._entries:
                counts.update(entry.get("fields", {}).keys())  # type: ignore[union-attr]
        return dict(counts)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_DEFAULT = ConflictLog()


def record(
    key: str,
    field_diffs: FieldDiffs,
    *,
    source: str = "merge",
    context: Optional[Mapping[str, object]] = None,
) -> None:
    """Record ``field_diffs`` (field -> ``(kept, discarded)``) for ``key``."""

    _DEFAULT.record(key, field_diffs, source=source, context=context)


def recent(limit: int = 10) -> List[Dict[str, object]]:
    return _DEFAULT.recent(limit)


def field_counts() -> Dict[str, int]:
    return _DEFAULT.field_counts()


def clear() -> None:
    _DEFAULT.clear()


__all__ = ["ConflictLog", "clear", "field_counts", "recent", "record"]
