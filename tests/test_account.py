"""Tests for account-level costs across tariff agreements."""

from datetime import datetime, timedelta, timezone

import pytest
from tariffcost.account import agreements_digest, split_by_agreements
from tariffcost.config import Settings
from tariffcost.exceptions import NoDataAvailableError
from tariffcost.models import ACCOUNT_TARIFF_CODE, Agreement, CalculationKey, IntervalType
from tariffcost.service import TariffCostService

JAN1 = datetime(2025, 1, 1, tzinfo=timezone.utc)
JAN15 = datetime(2025, 1, 15, tzinfo=timezone.utc)
JAN31 = datetime(2025, 1, 31, tzinfo=timezone.utc)


@pytest.fixture
def january(store, slots):
    """A month of consumption and two tariffs with different flat rates."""
    store.upsert_consumption(slots.consumption(JAN1, 30 * 48, kwh=0.25))
    store.upsert_rates([slots.flat_rate("X", JAN1 - timedelta(days=365), value=10.0)])
    store.upsert_rates([slots.flat_rate("Y", JAN1 - timedelta(days=365), value=30.0)])
    store.upsert_standing_charges([slots.standing("X", JAN1 - timedelta(days=365), value=40.0)])
    store.upsert_standing_charges([slots.standing("Y", JAN1 - timedelta(days=365), value=60.0)])
    return TariffCostService(store, Settings())


def test_split_by_agreements():
    agreements = [
        Agreement("B", valid_from=JAN15),
        Agreement("A", valid_to=JAN15),
        Agreement("C", valid_from=JAN31 + timedelta(days=1)),
    ]

    pieces = split_by_agreements(agreements, JAN1, JAN31)

    assert pieces == [("A", JAN1, JAN15), ("B", JAN15, JAN31)]


def test_account_cost_is_sum_of_agreements(january):
    """Account cost equals the single-tariff costs over each agreement."""
    agreements = [
        Agreement("X", valid_from=JAN1, valid_to=JAN15),
        Agreement("Y", valid_from=JAN15, valid_to=JAN31),
    ]

    account = january.compute_cost_for_account(agreements, JAN1, JAN31)
    x = january.compute_cost("X", JAN1, JAN15)
    y = january.compute_cost("Y", JAN15, JAN31)

    assert account.tariff_code == ACCOUNT_TARIFF_CODE
    assert account.total_kwh == pytest.approx(x.total_kwh + y.total_kwh)
    assert account.cost_excl_tax == pytest.approx(x.cost_excl_tax + y.cost_excl_tax)
    assert account.cost_incl_tax == pytest.approx(x.cost_incl_tax + y.cost_incl_tax)
    assert account.standing_cost_excl_tax == pytest.approx(14 * 40.0 + 16 * 60.0)
    assert account.avg_rate_excl_tax == pytest.approx((14 * 10.0 + 16 * 30.0) / 30)


def test_account_result_is_cached(january):
    agreements = [Agreement("X")]
    january.compute_cost_for_account(agreements, JAN1, JAN15)

    key = CalculationKey(ACCOUNT_TARIFF_CODE, IntervalType.CUSTOM, JAN1, JAN15)
    assert key in january.cache
    assert january.store.get_calculation(key) is not None


def test_changed_agreements_are_recomputed(january, store):
    """A stored account total is not reused once the agreements change."""
    end = JAN1 + timedelta(days=1)
    on_x = january.compute_cost_for_account([Agreement("X")], JAN1, end)
    assert on_x.cost_excl_tax == pytest.approx(12 * 10.0 + 40.0)

    on_y = TariffCostService(store, Settings()).compute_cost_for_account([Agreement("Y")], JAN1, end)
    assert on_y.cost_excl_tax == pytest.approx(12 * 30.0 + 60.0)

    # Same process, agreements switched back
    again = january.compute_cost_for_account([Agreement("X")], JAN1, end)
    assert again.cost_excl_tax == pytest.approx(on_x.cost_excl_tax)


def test_agreements_digest_ignores_order():
    a = Agreement("A", valid_to=JAN15)
    b = Agreement("B", valid_from=JAN15)
    assert agreements_digest([a, b]) == agreements_digest([b, a])
    assert agreements_digest([a]) != agreements_digest([Agreement("A", valid_to=JAN31)])


def test_agreements_without_consumption_are_skipped(january):
    """An agreement before any consumption does not fail the account total."""
    agreements = [
        Agreement("Y", valid_from=JAN1 - timedelta(days=60), valid_to=JAN1),
        Agreement("X", valid_from=JAN1),
    ]

    account = january.compute_cost_for_account(agreements, JAN1 - timedelta(days=60), JAN15)
    x = january.compute_cost("X", JAN1, JAN15)

    assert account.cost_excl_tax == pytest.approx(x.cost_excl_tax)


def test_no_consumption_for_any_agreement(january):
    agreements = [Agreement("X", valid_to=JAN1)]
    with pytest.raises(NoDataAvailableError):
        january.compute_cost_for_account(agreements, JAN1 - timedelta(days=10), JAN1 + timedelta(days=10))


def test_configured_agreements_are_default(store, slots):
    store.upsert_consumption(slots.consumption(JAN1, 48))
    store.upsert_rates([slots.flat_rate("X", JAN1)])
    service = TariffCostService(store, Settings(agreements=[Agreement("X", valid_from=JAN1)]))

    calc = service.compute_cost(ACCOUNT_TARIFF_CODE, JAN1, JAN1 + timedelta(days=1))
    assert calc.tariff_code == ACCOUNT_TARIFF_CODE
    assert calc.total_kwh == pytest.approx(24.0)


def test_no_agreements_configured(store):
    with pytest.raises(ValueError, match="agreements"):
        TariffCostService(store, Settings()).compute_cost_for_account(None, JAN1, JAN15)
