import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from core import wastage
from core.errors import UnknownCalculationMethodError
from core.wastage import Segment, UsageSample


def _usage(start, end, usage_date="2024-03-01", quantity=None):
    if quantity is None:
        quantity = abs(end - start)
    return UsageSample(quantity_used=quantity, start=start, end=end, usage_date=usage_date)


def _assert_balanced(result, capacity):
    assert result.total_used + result.total_wastage + result.remaining_cable == pytest.approx(capacity)


def test_touching_segments_on_active_drum_leave_remaining_cable():
    result = wastage.calculate_wastage(2000, [_usage(0, 500), _usage(500, 1200)], status="active")

    assert result.total_used == 1200
    assert result.remaining_cable == 800
    assert result.total_wastage == 0
    assert result.calculated_current_quantity == 800
    assert result.usage_segments == [Segment(0, 1200)]
    _assert_balanced(result, 2000)


def test_inactive_drum_turns_uncovered_cable_into_wastage():
    result = wastage.calculate_wastage(2000, [_usage(0, 300), _usage(800, 1000)], status="inactive")

    assert result.total_used == 500
    assert result.total_wastage == 1500
    assert result.remaining_cable == 0
    assert result.calculated_current_quantity == 0
    assert result.wasted_segments == [Segment(300, 800), Segment(1000, 2000)]
    _assert_balanced(result, 2000)


def test_overlapping_and_reversed_segments_are_merged_and_clipped():
    usages = [_usage(400, 100), _usage(300, 600), _usage(1900, 2500)]

    result = wastage.calculate_wastage(2000, usages, status="active")

    assert result.usage_segments == [Segment(100, 600), Segment(1900, 2000)]
    assert result.total_used == 600
    assert result.total_used <= 2000
    _assert_balanced(result, 2000)


def test_segments_are_synthesised_from_quantities_without_offsets():
    usages = [
        UsageSample(quantity_used=200, usage_date="2024-03-02"),
        UsageSample(quantity_used=150, usage_date="2024-03-01"),
    ]

    result = wastage.calculate_wastage(1000, usages, status="active")

    assert result.usage_segments == [Segment(0, 350)]
    assert result.remaining_cable == 650


def test_drum_without_usage():
    active = wastage.calculate_wastage(2000, [], status="active")
    empty = wastage.calculate_wastage(2000, [], status="empty")

    assert (active.total_used, active.remaining_cable, active.total_wastage) == (0, 2000, 0)
    assert (empty.total_wastage, empty.calculated_current_quantity) == (2000, 0)


def test_manual_wastage_overrides_the_method():
    result = wastage.calculate_wastage(
        2000,
        [_usage(0, 300), _usage(800, 1000)],
        status="inactive",
        manual_wastage=100,
    )

    assert result.calculation_method == wastage.MANUAL_OVERRIDE
    assert result.total_used == 500
    assert result.total_wastage == 100
    assert result.calculated_current_quantity == 1400


def test_manual_wastage_never_drives_quantity_negative():
    result = wastage.calculate_wastage(500, [_usage(0, 400)], manual_wastage=300)
    assert result.calculated_current_quantity == 0


def test_legacy_method_counts_jumps_between_usages():
    usages = [_usage(0, 300, "2024-03-01"), _usage(800, 1000, "2024-03-02")]

    result = wastage.calculate_wastage(2000, usages, status="active", method=wastage.LEGACY_GAPS)

    assert result.calculation_method == wastage.LEGACY_GAPS
    assert result.total_used == 500
    assert result.total_wastage == 500
    assert result.remaining_cable == 1000
    assert result.wasted_segments == [Segment(300, 800)]
    _assert_balanced(result, 2000)


def test_legacy_method_on_retired_drum_balances():
    usages = [_usage(0, 300, "2024-03-01"), _usage(800, 1000, "2024-03-02")]

    result = wastage.calculate_wastage(2000, usages, status="empty", method=wastage.LEGACY_GAPS)

    assert result.total_wastage == 1500
    assert result.remaining_cable == 0
    _assert_balanced(result, 2000)


def test_unknown_method_is_rejected():
    with pytest.raises(UnknownCalculationMethodError):
        wastage.calculate_wastage(2000, [], method="guesswork")


def test_registered_methods_are_available():
    def flat(capacity, usages, status):
        return wastage.WastageResult(0, 0, capacity, capacity, "flat")

    wastage.register_method("flat", flat)
    try:
        assert "flat" in wastage.available_methods()
        assert wastage.calculate_wastage(100, [], method="flat").calculation_method == "flat"
    finally:
        wastage._METHODS.pop("flat", None)


@pytest.mark.parametrize(
    "current, status, threshold, expected",
    [
        (0, "active", 0, "empty"),
        (-5, "maintenance", 0, "empty"),
        (50, "active", 100, "inactive"),
        (500, "active", 100, "active"),
        (500, "maintenance", 100, "maintenance"),
        (50, "inactive", 100, "inactive"),
    ],
)
def test_derive_drum_status(current, status, threshold, expected):
    assert wastage.derive_drum_status(current, status, threshold) == expected


def test_validate_manual_wastage():
    assert not wastage.validate_manual_wastage(-1, 0, 2000).valid

    too_much = wastage.validate_manual_wastage(1800, 500, 2000)
    assert not too_much.valid
    assert too_much.adjusted_value == 1500

    large = wastage.validate_manual_wastage(500, 500, 2000)
    assert large.valid
    assert "25%" in large.warning

    small = wastage.validate_manual_wastage(100, 500, 2000)
    assert small.valid
    assert small.warning == ""


def test_usage_sample_from_store_record():
    sample = UsageSample.from_record(
        {"quantity_used": 120, "cable_start_point": None, "cable_end_point": None, "usage_date": "2024-03-05"}
    )
    assert sample.interval() is None
    assert sample.quantity_used == 120
