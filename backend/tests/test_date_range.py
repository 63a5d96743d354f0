"""
Tests for execution date-range resolution.
"""

from datetime import date

import pytest

from recon_engine.errors import ValidationError
from recon_engine.services.date_range import (
    calculate_date_range,
    get_date_array,
    get_total_days,
    local_day_bounds,
    resolve_workflow_date_range,
)

TODAY = date(2025, 3, 10)


def test_relative_range_ends_today():
    assert calculate_date_range({"type": "relative", "days": 3}, today=TODAY) == ("2025-03-08", "2025-03-10")


def test_default_is_today_only():
    assert calculate_date_range(None, today=TODAY) == ("2025-03-10", "2025-03-10")


def test_rolling_range_is_single_offset_day():
    assert calculate_date_range({"type": "rolling", "offset_days": 1}, today=TODAY) == ("2025-03-09", "2025-03-09")


def test_absolute_range_passes_through():
    config = {"type": "absolute", "since": "2025-02-01", "until": "2025-02-03"}
    assert calculate_date_range(config, today=TODAY) == ("2025-02-01", "2025-02-03")


@pytest.mark.parametrize(
    "config",
    [
        {"type": "relative", "days": 0},
        {"type": "relative", "days": "many"},
        {"type": "absolute", "since": "2025-02-05", "until": "2025-02-01"},
        {"type": "absolute", "since": "2025/02/01", "until": "2025-02-03"},
        {"type": "absolute", "since": "2025-02-01"},
        {"type": "rolling", "offset_days": -1},
        {"type": "fortnightly"},
    ],
)
def test_invalid_configs_raise(config):
    with pytest.raises(ValidationError):
        calculate_date_range(config, today=TODAY)


def test_source_level_range_used_when_workflow_has_none():
    sources = {"meta": {"enabled": True}, "pos": {"enabled": True, "date_range": {"type": "relative", "days": 7}}}
    assert resolve_workflow_date_range(None, sources) == {"type": "relative", "days": 7}
    assert resolve_workflow_date_range({"type": "rolling"}, sources) == {"type": "rolling"}


def test_date_array_is_inclusive_and_ordered():
    assert get_date_array("2025-02-27", "2025-03-02") == ["2025-02-27", "2025-02-28", "2025-03-01", "2025-03-02"]
    assert get_total_days("2025-02-27", "2025-03-02") == 4
    assert get_date_array("2025-03-02", "2025-03-01") == []


def test_local_day_bounds_in_manila():
    start, end = local_day_bounds("2025-03-01", "Asia/Manila")
    # 2025-02-28T16:00:00Z .. 2025-03-01T15:59:59Z
    assert start == 1740758400
    assert end == start + 86399
