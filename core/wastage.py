"""Cable drum wastage calculation.

A drum of rated ``capacity`` metres is consumed by usage records that each
describe a physical interval ``[start, end]`` on the cable.  The default
``smart_segments`` method merges those intervals and splits the drum into
three parts that always add up to the capacity:

* ``total_used``: the length covered by at least one usage interval;
* ``remaining_cable``: the uncovered length, while the drum is in service;
* ``total_wastage``: the uncovered length once the drum is inactive or empty.

Alternative methods are looked up by name through :func:`register_method`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from core.errors import UnknownCalculationMethodError
from settings import DEFAULT_LOW_STOCK_THRESHOLD, DEFAULT_WASTAGE_METHOD, MANUAL_WASTAGE_WARN_RATIO

logger = logging.getLogger(__name__)

SMART_SEGMENTS = "smart_segments"
LEGACY_GAPS = "legacy_gaps"
MANUAL_OVERRIDE = "manual_override"
RETIRED_STATUSES = frozenset({"inactive", "empty"})


@dataclass(slots=True)
class Segment:
    start: float
    end: float

    @property
    def length(self) -> float:
        return self.end - self.start


@dataclass(slots=True)
class UsageSample:
    """The parts of a usage record the calculation needs."""

    quantity_used: float = 0.0
    start: Optional[float] = None
    end: Optional[float] = None
    usage_date: str = ""

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "UsageSample":
        def _number(key: str) -> Optional[float]:
            value = record.get(key)
            return None if value is None else float(value)

        usage_date = record.get("usage_date") or ""
        if isinstance(usage_date, date):
            usage_date = usage_date.isoformat()
        return cls(
            quantity_used=float(record.get("quantity_used") or 0),
            start=_number("cable_start_point"),
            end=_number("cable_end_point"),
            usage_date=str(usage_date),
        )

    def interval(self) -> Optional[Segment]:
        if self.start is None and self.end is None:
            return None
        start = self.start or 0.0
        end = self.end or 0.0
        return Segment(min(start, end), max(start, end))


@dataclass(slots=True)
class WastageResult:
    total_used: float
    total_wastage: float
    remaining_cable: float
    calculated_current_quantity: float
    calculation_method: str
    usage_segments: List[Segment] = field(default_factory=list)
    wasted_segments: List[Segment] = field(default_factory=list)


@dataclass(slots=True)
class WastagePolicy:
    method: str = DEFAULT_WASTAGE_METHOD
    low_stock_threshold: float = DEFAULT_LOW_STOCK_THRESHOLD
    warn_ratio: float = MANUAL_WASTAGE_WARN_RATIO


@dataclass(slots=True)
class ManualWastageCheck:
    valid: bool
    message: str = ""
    warning: str = ""
    adjusted_value: Optional[float] = None


Method = Callable[[float, Sequence[UsageSample], str], WastageResult]
_METHODS: Dict[str, Method] = {}


def register_method(name: str, func: Method) -> None:
    """Make ``func`` available as calculation method ``name``."""

    _METHODS[name] = func


def available_methods() -> List[str]:
    return sorted(_METHODS)


# ---------------------------------------------------------------------------
# Interval helpers
# ---------------------------------------------------------------------------

def _clip(segment: Segment, capacity: float) -> Segment:
    start = min(max(segment.start, 0.0), capacity)
    end = min(max(segment.end, 0.0), capacity)
    return Segment(start, end)


def merge_segments(segments: Sequence[Segment]) -> List[Segment]:
    """Merge overlapping or touching segments."""

    ordered = sorted(segments, key=lambda segment: (segment.start, segment.end))
    merged: List[Segment] = []
    for segment in ordered:
        if merged and segment.start <= merged[-1].end:
            merged[-1].end = max(merged[-1].end, segment.end)
        else:
            merged.append(Segment(segment.start, segment.end))
    return merged


def uncovered_segments(used: Sequence[Segment], capacity: float) -> List[Segment]:
    gaps: List[Segment] = []
    cursor = 0.0
    for segment in used:
        if segment.start > cursor:
            gaps.append(Segment(cursor, segment.start))
        cursor = max(cursor, segment.end)
    if capacity > cursor:
        gaps.append(Segment(cursor, capacity))
    return gaps


def _synthesised(usages: Sequence[UsageSample], capacity: float) -> List[Segment]:
    segments: List[Segment] = []
    offset = 0.0
    for usage in sorted(usages, key=lambda sample: sample.usage_date):
        if usage.quantity_used <= 0:
            continue
        segments.append(_clip(Segment(offset, offset + usage.quantity_used), capacity))
        offset += usage.quantity_used
    return segments


# ---------------------------------------------------------------------------
# Methods
# ---------------------------------------------------------------------------

def smart_segments(capacity: float, usages: Sequence[UsageSample], status: str) -> WastageResult:
    intervals: List[Segment] = []
    for usage in usages:
        interval = usage.interval()
        if interval is not None:
            intervals.append(_clip(interval, capacity))
    if not any(interval.length > 0 for interval in intervals) and any(
        usage.quantity_used > 0 for usage in usages
    ):
        intervals = _synthesised(usages, capacity)

    merged = [segment for segment in merge_segments(intervals) if segment.length > 0]
    total_used = sum(segment.length for segment in merged)
    gap = max(0.0, capacity - total_used)

    if status in RETIRED_STATUSES:
        total_wastage, remaining, wasted = gap, 0.0, uncovered_segments(merged, capacity)
    else:
        total_wastage, remaining, wasted = 0.0, gap, []

    return WastageResult(
        total_used=total_used,
        total_wastage=total_wastage,
        remaining_cable=remaining,
        calculated_current_quantity=capacity - total_used - total_wastage,
        calculation_method=SMART_SEGMENTS,
        usage_segments=merged,
        wasted_segments=wasted,
    )


def legacy_gaps(capacity: float, usages: Sequence[UsageSample], status: str) -> WastageResult:
    """Chronological method: the jump between consecutive usages counts as waste."""

    ordered = sorted(usages, key=lambda sample: sample.usage_date)
    total_used = 0.0
    total_wastage = 0.0
    last_end = 0.0
    used_segments: List[Segment] = []
    wasted: List[Segment] = []

    for usage in ordered:
        interval = usage.interval()
        if interval is None:
            continue
        start = min(max(usage.start or 0.0, 0.0), capacity)
        end = min(max(usage.end or 0.0, 0.0), capacity)
        total_used += abs(end - start)
        if used_segments and start != last_end:
            total_wastage += abs(start - last_end)
            wasted.append(Segment(min(start, last_end), max(start, last_end)))
        used_segments.append(_clip(interval, capacity))
        last_end = max(start, end)

    total_used = min(total_used, capacity)
    if status in RETIRED_STATUSES:
        leftover = capacity - total_used - total_wastage
        if leftover > 0:
            total_wastage += leftover
            wasted.append(Segment(capacity - leftover, capacity))
    total_wastage = min(total_wastage, capacity - total_used)
    remaining = max(0.0, capacity - total_used - total_wastage)

    return WastageResult(
        total_used=total_used,
        total_wastage=total_wastage,
        remaining_cable=remaining,
        calculated_current_quantity=remaining,
        calculation_method=LEGACY_GAPS,
        usage_segments=used_segments,
        wasted_segments=wasted,
    )


def manual_override(capacity: float, usages: Sequence[UsageSample], manual_wastage: float) -> WastageResult:
    total_used = sum(max(0.0, usage.quantity_used) for usage in usages)
    current = max(0.0, capacity - total_used - manual_wastage)
    return WastageResult(
        total_used=total_used,
        total_wastage=manual_wastage,
        remaining_cable=current,
        calculated_current_quantity=current,
        calculation_method=MANUAL_OVERRIDE,
    )


register_method(SMART_SEGMENTS, smart_segments)
register_method(LEGACY_GAPS, legacy_gaps)


def calculate_wastage(
    capacity: float,
    usages: Sequence[UsageSample],
    *,
    status: str = "active",
    manual_wastage: Optional[float] = None,
    method: str = SMART_SEGMENTS,
) -> WastageResult:
    capacity = max(0.0, float(capacity or 0))
    if manual_wastage is not None:
        return manual_override(capacity, usages, float(manual_wastage))
    try:
        func = _METHODS[method]
    except KeyError:
        raise UnknownCalculationMethodError(
            f"Unknown wastage method '{method}'. Available: {', '.join(available_methods())}"
        ) from None
    return func(capacity, usages, status)


def derive_drum_status(current_quantity: float, status: str, low_stock_threshold: float) -> str:
    if current_quantity <= 0:
        return "empty"
    if current_quantity <= low_stock_threshold and status != "inactive":
        return "inactive"
    return status


def validate_manual_wastage(
    value: float,
    total_used: float,
    capacity: float,
    *,
    warn_ratio: float = MANUAL_WASTAGE_WARN_RATIO,
) -> ManualWastageCheck:
    if value < 0:
        return ManualWastageCheck(False, message="Wastage cannot be negative.")
    available = max(0.0, capacity - total_used)
    if value > available:
        return ManualWastageCheck(
            False,
            message=(
                f"Wastage {value:g}m exceeds the {available:g}m left after {total_used:g}m of usage "
                f"on a {capacity:g}m drum."
            ),
            adjusted_value=available,
        )
    if capacity > 0 and value > capacity * warn_ratio:
        return ManualWastageCheck(
            True,
            warning=f"Wastage is {value / capacity:.0%} of the drum capacity.",
        )
    return ManualWastageCheck(True)


__all__ = [
    "LEGACY_GAPS",
    "MANUAL_OVERRIDE",
    "ManualWastageCheck",
    "SMART_SEGMENTS",
    "Segment",
    "UsageSample",
    "WastagePolicy",
    "WastageResult",
    "available_methods",
    "calculate_wastage",
    "derive_drum_status",
    "merge_segments",
    "register_method",
    "validate_manual_wastage",
]
