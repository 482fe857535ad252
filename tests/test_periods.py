"""Tests for calendar period boundaries."""

from datetime import date, datetime, timezone

import pytest
from tariffcost.models import IntervalType
from tariffcost.periods import period_bounds, quarter_months


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_daily_in_winter():
    assert period_bounds(date(2025, 1, 15), IntervalType.DAILY) == (utc(2025, 1, 15), utc(2025, 1, 16))


def test_daily_in_summer_is_local_midnight():
    """Days start at midnight London time, 23:00 UTC during BST."""
    assert period_bounds(date(2025, 7, 15), IntervalType.DAILY) == (utc(2025, 7, 14, 23), utc(2025, 7, 15, 23))


def test_datetime_reference_uses_local_date():
    # 23:30 UTC on 14 July is already 15 July in London
    start, _ = period_bounds(utc(2025, 7, 14, 23, 30), IntervalType.DAILY)
    assert start == utc(2025, 7, 14, 23)


def test_weekly_starts_monday():
    start, end = period_bounds(date(2025, 1, 16), IntervalType.WEEKLY)  # Thursday
    assert start == utc(2025, 1, 13)
    assert end == utc(2025, 1, 20)


def test_monthly_across_clock_change():
    """March 2025 is one hour short because the clocks go forward."""
    start, end = period_bounds(date(2025, 3, 10), IntervalType.MONTHLY)
    assert start == utc(2025, 3, 1)
    assert end == utc(2025, 3, 31, 23)


def test_quarterly():
    assert period_bounds(date(2025, 11, 5), IntervalType.QUARTERLY) == (utc(2025, 9, 30, 23), utc(2026, 1, 1))


def test_quarter_months():
    months = quarter_months(date(2025, 2, 20))
    assert [m[0] for m in months] == [utc(2025, 1, 1), utc(2025, 2, 1), utc(2025, 3, 1)]
    assert months[-1][1] == utc(2025, 3, 31, 23)


def test_custom_has_no_bounds():
    with pytest.raises(ValueError):
        period_bounds(date(2025, 1, 1), IntervalType.CUSTOM)


def test_other_time_zone():
    start, end = period_bounds(date(2025, 1, 15), IntervalType.DAILY, tz_name="America/New_York")
    assert start == utc(2025, 1, 15, 5)
    assert end == utc(2025, 1, 16, 5)
