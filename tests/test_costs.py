"""Tests for cost aggregation."""

import logging
from datetime import timedelta

import pytest
from tariffcost.costs import CostAggregator
from tariffcost.exceptions import InsufficientDataError, InvalidDateRangeError, NoDataAvailableError
from tariffcost.models import MANUAL_PLAN_CODE, IntervalType, ManualPlan, SeriesKind
from tariffcost.sync import SyncEngine

TARIFF = "E-1R-AGILE-24-10-01-H"


def test_constant_rate_conserves_cost(store, slots, jan1):
    """With one rate and no standing charge, cost is kWh times rate."""
    store.upsert_consumption(slots.consumption(jan1, 48, kwh=0.5))
    store.upsert_rates([slots.flat_rate(TARIFF, jan1 - timedelta(days=1), value=20.0)])

    calc = CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(days=1))

    assert calc.total_kwh == pytest.approx(24.0)
    assert calc.cost_excl_tax == pytest.approx(calc.total_kwh * 20.0)
    assert calc.cost_incl_tax == pytest.approx(calc.total_kwh * 21.0)
    assert calc.standing_cost_excl_tax == 0
    assert calc.avg_rate_excl_tax == pytest.approx(20.0)
    assert calc.source_kwh == pytest.approx(24.0)


def test_standing_charge_sums_to_daily_value(store, slots, jan1):
    """48 half-hour slots accrue exactly one day of standing charge."""
    store.upsert_consumption(slots.consumption(jan1, 48))
    store.upsert_rates([slots.flat_rate(TARIFF, jan1)])
    store.upsert_standing_charges([slots.standing(TARIFF, jan1, value=61.64)])

    calc = CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(days=1))

    assert calc.standing_cost_excl_tax == pytest.approx(61.64, abs=1e-6)
    assert calc.cost_excl_tax == pytest.approx(24.0 * 20.0 + 61.64)
    # Average rate excludes the standing charge
    assert calc.avg_rate_excl_tax == pytest.approx(20.0)


def test_half_hourly_rates(store, slots, jan1):
    """Each slot is priced with the rate covering its midpoint."""
    store.upsert_consumption(slots.consumption(jan1, 2, kwh=1.0))
    rates = slots.rates(TARIFF, jan1, 1, value=10.0) + slots.rates(TARIFF, jan1 + timedelta(minutes=30), 1, value=30.0)
    store.upsert_rates(rates)

    calc = CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(hours=1))

    assert calc.cost_excl_tax == pytest.approx(40.0)
    assert calc.avg_rate_excl_tax == pytest.approx(20.0)


def test_partial_slot_is_prorated(store, slots, jan1):
    """A slot cut by the end of the range contributes its clipped fraction."""
    store.upsert_consumption(slots.consumption(jan1, 2, kwh=1.0))
    store.upsert_rates([slots.flat_rate(TARIFF, jan1, value=10.0)])
    store.upsert_standing_charges([slots.standing(TARIFF, jan1, value=48.0)])

    calc = CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(minutes=45))

    assert calc.total_kwh == pytest.approx(1.5)
    assert calc.cost_excl_tax == pytest.approx(15.0 + 48.0 * 0.75 / 24)
    assert calc.source_kwh == pytest.approx(2.0)


def test_unmatched_slots_excluded_by_default(store, slots, jan1, caplog):
    """Slots without a rate cost nothing and are left out of total_kwh."""
    store.upsert_consumption(slots.consumption(jan1, 4, kwh=1.0))
    store.upsert_rates(slots.rates(TARIFF, jan1, 2, value=10.0))

    with caplog.at_level(logging.WARNING, logger="tariffcost.costs"):
        calc = CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(hours=2))

    assert calc.total_kwh == pytest.approx(2.0)
    assert calc.cost_excl_tax == pytest.approx(20.0)
    assert "2 of 4 slot(s)" in caplog.text

    counted = CostAggregator(store, include_unmatched_kwh=True).compute_cost(TARIFF, jan1, jan1 + timedelta(hours=2))
    assert counted.total_kwh == pytest.approx(4.0)
    assert counted.cost_excl_tax == pytest.approx(20.0)


def test_rate_boundary_is_half_open(store, slots, jan1):
    """A rate ending at a slot's start does not apply to it."""
    store.upsert_consumption(slots.consumption(jan1, 2, kwh=1.0))
    store.upsert_rates(
        [
            slots.flat_rate(TARIFF, jan1, value=10.0, valid_to=jan1 + timedelta(minutes=30)),
            slots.flat_rate(TARIFF, jan1 + timedelta(minutes=30), value=30.0),
        ]
    )

    calc = CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(hours=1))
    assert calc.cost_excl_tax == pytest.approx(40.0)


def test_invalid_range(store, jan1):
    with pytest.raises(InvalidDateRangeError):
        CostAggregator(store).compute_cost(TARIFF, jan1, jan1)


def test_no_consumption(store, jan1):
    with pytest.raises(NoDataAvailableError):
        CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(days=1))


def test_daily_request_without_any_consumption(store, jan1):
    with pytest.raises(NoDataAvailableError):
        CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(days=1), IntervalType.DAILY)


def test_unpriced_slots_are_recorded(store, slots, jan1):
    """kWh in slots without a unit rate is reported separately."""
    store.upsert_consumption(slots.consumption(jan1, 48, kwh=0.5))
    store.upsert_rates(slots.rates(TARIFF, jan1, 24, value=20.0))

    calc = CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(days=1))

    assert calc.total_kwh == pytest.approx(12.0)
    assert calc.unpriced_kwh == pytest.approx(12.0)


def test_daily_request_outside_available_data(store, slots, jan1):
    """DAILY requests with no overlap report what is available."""
    store.upsert_consumption(slots.consumption(jan1, 48))

    with pytest.raises(InsufficientDataError) as exc_info:
        CostAggregator(store).compute_cost(
            TARIFF, jan1 + timedelta(days=5), jan1 + timedelta(days=6), IntervalType.DAILY
        )
    assert exc_info.value.available == (jan1, jan1 + timedelta(days=1))


def test_daily_request_is_clipped(store, slots, jan1):
    """DAILY requests are clipped to stored consumption."""
    store.upsert_consumption(slots.consumption(jan1, 24))
    store.upsert_rates([slots.flat_rate(TARIFF, jan1)])

    calc = CostAggregator(store).compute_cost(TARIFF, jan1, jan1 + timedelta(days=1), IntervalType.DAILY)

    assert calc.period_start == jan1
    assert calc.period_end == jan1 + timedelta(hours=12)
    assert calc.interval_type is IntervalType.DAILY


def test_manual_plan(store, slots, jan1):
    """The manual plan uses a flat rate and daily / 48 per slot."""
    store.upsert_consumption(slots.consumption(jan1, 48, kwh=1.0))
    aggregator = CostAggregator(store, manual_plan=ManualPlan(rate_per_kwh=25.0, standing_charge_per_day=48.0))

    calc = aggregator.compute_cost(MANUAL_PLAN_CODE, jan1, jan1 + timedelta(days=1))

    assert calc.tariff_code == MANUAL_PLAN_CODE
    assert calc.standing_cost_incl_tax == pytest.approx(48.0)
    assert calc.cost_incl_tax == pytest.approx(48 * 25.0 + 48.0)
    assert calc.cost_excl_tax == calc.cost_incl_tax


def test_manual_plan_required(store, slots, jan1):
    store.upsert_consumption(slots.consumption(jan1, 2))
    with pytest.raises(ValueError, match="manual plan"):
        CostAggregator(store).compute_cost(MANUAL_PLAN_CODE, jan1, jan1 + timedelta(hours=1))


def test_missing_tariff_series_are_fetched(store, slots, make_source, jan1):
    """Rates and standing charges never synced are fetched before costing."""
    store.upsert_consumption(slots.consumption(jan1, 4, kwh=1.0))
    sources = {
        SeriesKind.RATES: make_source(SeriesKind.RATES, slots.rates(TARIFF, jan1, 4, value=10.0), tariff_code=TARIFF),
        SeriesKind.STANDING_CHARGES: make_source(
            SeriesKind.STANDING_CHARGES, [slots.standing(TARIFF, jan1, value=24.0)], tariff_code=TARIFF,
            cadence_seconds=None,
        ),
    }
    aggregator = CostAggregator(
        store,
        sync_engine=SyncEngine(store),
        source_factory=lambda kind, tariff_code: sources[kind],
    )

    calc = aggregator.compute_cost(TARIFF, jan1, jan1 + timedelta(hours=2))

    assert sources[SeriesKind.RATES].requested == [1]
    assert sources[SeriesKind.STANDING_CHARGES].requested == [1]
    assert calc.cost_excl_tax == pytest.approx(40.0 + 2.0)

    # Already stored now, so no further fetches
    aggregator.compute_cost(TARIFF, jan1, jan1 + timedelta(hours=2))
    assert sources[SeriesKind.RATES].requested == [1]
