"""Drum tracking records, usage rows and cached drum quantities."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Set, Tuple

from core.errors import ValidationError
from core.wastage import (
    ManualWastageCheck,
    UsageSample,
    WastagePolicy,
    WastageResult,
    calculate_wastage,
    derive_drum_status,
    validate_manual_wastage,
)
from db import Store
from settings import DEFAULT_DRUM_CAPACITY

logger = logging.getLogger(__name__)

DEFAULT_ITEM_HINT = "drop wire"
QUANTITY_EPSILON = 0.01


@dataclass(slots=True)
class DrumPassSummary:
    created: int = 0
    usage_written: int = 0
    recalculated: int = 0
    status_changes: Dict[str, Tuple[str, str]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "drums_created": self.created,
            "usage_written": self.usage_written,
            "drums_recalculated": self.recalculated,
            "status_changes": {number: list(change) for number, change in self.status_changes.items()},
        }


def _clean_drum_number(value: Any) -> str:
    return str(value or "").strip()


def compute_quantity_used(line: Mapping[str, Any]) -> float:
    """Return the metres a line drew from its drum."""

    start = float(line.get("cable_start") or 0)
    middle = float(line.get("cable_middle") or 0)
    end = float(line.get("cable_end") or 0)
    if middle:
        used = (middle - start) + (end - middle)
        if used > 0:
            return used
    if end > start:
        return end - start
    return max(0.0, float(line.get("total_cable") or 0))


def select_default_item(store: Store) -> Optional[Dict[str, Any]]:
    """Pick the catalog item new drums are linked to."""

    items = [item for item in store.list_inventory_items() if (item.get("drum_size") or 0) > 0]
    for item in items:
        if DEFAULT_ITEM_HINT in str(item.get("name") or "").lower():
            return item
    return items[0] if items else None


def _capacity(store: Store, drum: Mapping[str, Any], default_capacity: float) -> float:
    # The linked catalog drum size wins over the quantity recorded at creation.
    if drum.get("item_id") is not None:
        item = store.fetch_inventory_item(int(drum["item_id"]))
        if item and (item.get("drum_size") or 0) > 0:
            return float(item["drum_size"])
    initial = float(drum.get("initial_quantity") or 0)
    if initial > 0:
        return initial
    return default_capacity if drum.get("status") != "unknown" else 0.0


def ensure_drums(
    store: Store,
    drum_numbers: Iterable[Any],
    *,
    connection_id: Optional[str] = None,
    default_capacity: float = DEFAULT_DRUM_CAPACITY,
) -> Tuple[Dict[str, int], int]:
    """Return ``({drum_number: drum_id}, created)`` for every referenced drum."""

    numbers = sorted({_clean_drum_number(number) for number in drum_numbers} - {""})
    drum_ids: Dict[str, int] = {}
    created = 0
    item: Optional[Dict[str, Any]] = None
    item_loaded = False

    for number in numbers:
        existing = store.fetch_drum_by_number(number)
        if existing:
            drum_ids[number] = int(existing["id"])
            continue
        if not item_loaded:
            item = select_default_item(store)
            item_loaded = True
        capacity = float(item["drum_size"]) if item else default_capacity
        status = "active" if capacity > 0 else "unknown"
        drum_id = store.create_drum(
            number,
            item_id=int(item["id"]) if item else None,
            initial_quantity=capacity,
            status=status,
        )
        store.add_drum_history(
            drum_id,
            "created",
            new_quantity=capacity,
            new_status=status,
            sync_connection_id=connection_id,
            notes=f"Created from sheet reference to drum {number}",
        )
        logger.info("Created drum %s with %.2fm capacity", number, capacity)
        drum_ids[number] = drum_id
        created += 1
    return drum_ids, created


def record_usage(
    store: Store,
    lines: Sequence[Mapping[str, Any]],
    drum_ids: Mapping[str, int],
    *,
    connection_id: Optional[str] = None,
) -> Tuple[int, Set[int]]:
    """Write one usage row per line that names a drum.

    Returns the number of new usage rows and the ids of every drum whose
    usage changed.
    """

    written = 0
    touched: Set[int] = set()
    for line in lines:
        number = _clean_drum_number(line.get("drum_number"))
        drum_id = drum_ids.get(number)
        if drum_id is None:
            continue
        line_id = int(line["id"])
        touched.update(store.delete_usage_for_line(line_id, keep_drum_id=drum_id))
        start = float(line.get("cable_start") or 0)
        end = float(line.get("cable_end") or 0)
        has_offsets = bool(start or end)
        quantity = compute_quantity_used(line)
        created = store.upsert_drum_usage(
            drum_id,
            line_id,
            quantity_used=quantity,
            cable_start_point=start if has_offsets else None,
            cable_end_point=end if has_offsets else None,
            usage_date=line.get("date"),
        )
        if created:
            written += 1
            store.add_drum_history(
                drum_id,
                "usage_added",
                sync_connection_id=connection_id,
                notes=f"{quantity:g}m used by {line.get('telephone_no')} on {line.get('date')}",
            )
        touched.add(drum_id)
    return written, touched


def recalculate_drum(
    store: Store,
    drum_id: int,
    policy: WastagePolicy,
    *,
    connection_id: Optional[str] = None,
    default_capacity: float = DEFAULT_DRUM_CAPACITY,
) -> Optional[Tuple[WastageResult, str, str]]:
    """Refresh the cached quantity and status of one drum.

    Returns ``(result, previous_status, new_status)`` or ``None`` when the
    drum no longer exists.
    """

    drum = store.fetch_drum(drum_id)
    if drum is None:
        return None
    usages = [UsageSample.from_record(record) for record in store.usages_for_drum(drum_id)]
    status = str(drum.get("status") or "active")
    result = calculate_wastage(
        _capacity(store, drum, default_capacity),
        usages,
        status=status,
        manual_wastage=drum.get("manual_wastage"),
        method=policy.method,
    )
    new_status = derive_drum_status(result.calculated_current_quantity, status, policy.low_stock_threshold)
    previous_quantity = float(drum.get("current_quantity") or 0)
    new_quantity = result.calculated_current_quantity

    changes: Dict[str, Any] = {}
    if abs(new_quantity - previous_quantity) > QUANTITY_EPSILON:
        changes["current_quantity"] = new_quantity
        store.add_drum_history(
            drum_id,
            "quantity_adjusted",
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            sync_connection_id=connection_id,
            notes=f"{result.calculation_method}: used {result.total_used:g}m, wasted {result.total_wastage:g}m",
        )
    if new_status != status:
        changes["status"] = new_status
        store.add_drum_history(
            drum_id,
            "status_changed",
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            previous_status=status,
            new_status=new_status,
            sync_connection_id=connection_id,
        )
    if changes:
        store.update_drum(drum_id, changes)
    return result, status, new_status


def recalculate_drums(
    store: Store,
    drum_ids: Iterable[int],
    policy: WastagePolicy,
    *,
    connection_id: Optional[str] = None,
    default_capacity: float = DEFAULT_DRUM_CAPACITY,
    summary: Optional[DrumPassSummary] = None,
) -> DrumPassSummary:
    summary = summary or DrumPassSummary()
    for drum_id in sorted(set(drum_ids)):
        outcome = recalculate_drum(
            store, drum_id, policy, connection_id=connection_id, default_capacity=default_capacity
        )
        if outcome is None:
            continue
        _result, previous, current = outcome
        summary.recalculated += 1
        if previous != current:
            drum = store.fetch_drum(drum_id)
            summary.status_changes[str(drum["drum_number"]) if drum else str(drum_id)] = (previous, current)
    return summary


def recalculate_all_drums(
    store: Store,
    policy: WastagePolicy,
    *,
    default_capacity: float = DEFAULT_DRUM_CAPACITY,
) -> DrumPassSummary:
    return recalculate_drums(
        store,
        [int(drum["id"]) for drum in store.list_drums()],
        policy,
        default_capacity=default_capacity,
    )


def set_manual_wastage(
    store: Store,
    drum_number: str,
    value: Optional[float],
    policy: WastagePolicy,
    *,
    default_capacity: float = DEFAULT_DRUM_CAPACITY,
) -> ManualWastageCheck:
    """Store (or clear, with ``None``) a drum's manual wastage override."""

    drum = store.fetch_drum_by_number(_clean_drum_number(drum_number))
    if drum is None:
        raise ValidationError(f"Drum {drum_number} does not exist.")
    drum_id = int(drum["id"])

    check = ManualWastageCheck(True)
    if value is not None:
        usages = [UsageSample.from_record(record) for record in store.usages_for_drum(drum_id)]
        total_used = sum(max(0.0, usage.quantity_used) for usage in usages)
        check = validate_manual_wastage(
            value,
            total_used,
            _capacity(store, drum, default_capacity),
            warn_ratio=policy.warn_ratio,
        )
        if not check.valid:
            return check
        if check.warning:
            logger.warning("Drum %s: %s", drum_number, check.warning)

    store.update_drum(drum_id, {"manual_wastage": value})
    recalculate_drum(store, drum_id, policy, default_capacity=default_capacity)
    return check


__all__ = [
    "DrumPassSummary",
    "compute_quantity_used",
    "ensure_drums",
    "recalculate_all_drums",
    "recalculate_drum",
    "recalculate_drums",
    "record_usage",
    "select_default_item",
    "set_manual_wastage",
]
