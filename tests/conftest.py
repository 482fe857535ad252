"""Shared fixtures: temporary stores and an in-memory paged source."""

import math
from datetime import datetime, timedelta, timezone

import pytest
from tariffcost.collectors.octopus import Page
from tariffcost.models import (
    ConsumptionInterval,
    RateInterval,
    SeriesKind,
    StandingChargeInterval,
)
from tariffcost.store import IntervalStore

HALF_HOUR = timedelta(minutes=30)


def _start(record):
    return getattr(record, "valid_from", None) or record.interval_start


class FakeSource:
    """Serves records newest-first in fixed-size pages, like the Octopus API."""

    def __init__(self, kind, records, page_size=100, tariff_code=None, cadence_seconds=1800):
        self.kind = kind
        self.tariff_code = tariff_code
        self.cadence_seconds = cadence_seconds
        self.records = sorted(records, key=_start, reverse=True)
        self.page_size = page_size
        self.requested = []
        self.error = None

    @property
    def key(self):
        return self.tariff_code or "meter"

    def fetch_page(self, page):
        self.requested.append(page)
        if self.error:
            raise self.error

        total_pages = max(1, math.ceil(len(self.records) / self.page_size))
        chunk = self.records[(page - 1) * self.page_size : page * self.page_size]
        return Page(
            count=len(self.records),
            next=f"?page={page + 1}" if page < total_pages else None,
            previous=f"?page={page - 1}" if page > 1 else None,
            results=list(chunk),
        )


def consumption_slots(start, count, kwh=0.5):
    return [
        ConsumptionInterval(
            interval_start=start + i * HALF_HOUR,
            interval_end=start + (i + 1) * HALF_HOUR,
            consumption_kwh=kwh,
        )
        for i in range(count)
    ]


def rate_slots(tariff_code, start, count, value=20.0):
    return [
        RateInterval(
            tariff_code=tariff_code,
            valid_from=start + i * HALF_HOUR,
            valid_to=start + (i + 1) * HALF_HOUR,
            value_excl_tax=value,
            value_incl_tax=value * 1.05,
        )
        for i in range(count)
    ]


def flat_rate(tariff_code, valid_from, value=20.0, valid_to=None):
    return RateInterval(
        tariff_code=tariff_code,
        valid_from=valid_from,
        valid_to=valid_to,
        value_excl_tax=value,
        value_incl_tax=value * 1.05,
    )


def standing_charge(tariff_code, valid_from, value=50.0, valid_to=None):
    return StandingChargeInterval(
        tariff_code=tariff_code,
        valid_from=valid_from,
        valid_to=valid_to,
        value_excl_tax=value,
        value_incl_tax=value * 1.05,
    )


@pytest.fixture
def store(tmp_path):
    return IntervalStore(tmp_path / "tariffcost.db")


@pytest.fixture
def jan1():
    return datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def make_source():
    """Factory for FakeSource."""
    return FakeSource


@pytest.fixture
def slots():
    """Builders for consumption, rate and standing-charge records."""

    class Builders:
        consumption = staticmethod(consumption_slots)
        rates = staticmethod(rate_slots)
        flat_rate = staticmethod(flat_rate)
        standing = staticmethod(standing_charge)

    return Builders


@pytest.fixture
def consumption_source():
    """Consumption FakeSource over n half-hour slots from start."""

    def build(start, count, page_size=100, kwh=0.5):
        return FakeSource(SeriesKind.CONSUMPTION, consumption_slots(start, count, kwh), page_size=page_size)

    return build
