"""Cost aggregation over half-hourly consumption.

Each consumption slot is clipped to the requested range, its kWh pro-rated
by the clipped fraction, and priced with the rate whose half-open
[valid_from, valid_to) window contains the clipped slot's midpoint. The
standing charge is matched the same way and accrues per slot as
daily_value * slot_hours / 24.

All values are pence; results are computed fully in memory and never
written here (see cache.py for persistence).
"""

import logging
from bisect import bisect_right
from datetime import datetime
from typing import Callable

from .exceptions import InsufficientDataError, InvalidDateRangeError, NoDataAvailableError
from .models import (
    MANUAL_PLAN_CODE,
    ConsumptionInterval,
    CostCalculation,
    IntervalType,
    ManualPlan,
    SeriesKind,
    average_rate,
    utc,
)
from .store import IntervalStore
from .sync import SyncEngine, TimeSeriesSource

logger = logging.getLogger(__name__)

SourceFactory = Callable[[SeriesKind, str | None], TimeSeriesSource]


class _IntervalIndex:
    """Binary-search lookup over sorted, non-overlapping validity windows."""

    def __init__(self, intervals: list):
        self.intervals = sorted(intervals, key=lambda i: i.valid_from)
        self._starts = [i.valid_from for i in self.intervals]

    def find(self, instant: datetime):
        idx = bisect_right(self._starts, instant) - 1
        if idx >= 0 and self.intervals[idx].covers(instant):
            return self.intervals[idx]
        return None


class CostAggregator:
    """Computes CostCalculation snapshots from the interval store."""

    def __init__(
        self,
        store: IntervalStore,
        sync_engine: SyncEngine | None = None,
        source_factory: SourceFactory | None = None,
        include_unmatched_kwh: bool = False,
        manual_plan: ManualPlan | None = None,
    ):
        self.store = store
        self.sync_engine = sync_engine
        self.source_factory = source_factory
        self.include_unmatched_kwh = include_unmatched_kwh
        self.manual_plan = manual_plan

    def _clip_to_available(self, start: datetime, end: datetime) -> tuple[datetime, datetime]:
        bounds = self.store.bounds(SeriesKind.CONSUMPTION)
        if bounds.is_empty:
            raise NoDataAvailableError(start, end)

        available = (bounds.earliest_start, bounds.latest_end)
        if available[1] <= start or available[0] >= end:
            raise InsufficientDataError(available, (start, end))

        return max(start, available[0]), min(end, available[1])

    def _ensure_series(self, kind: SeriesKind, tariff_code: str) -> None:
        """Lazily sync a tariff series that has never been fetched."""
        if self.sync_engine is None or self.source_factory is None:
            return
        if self.store.count(kind, tariff_code) > 0:
            return
        logger.info("No local %s for %s, fetching", kind.value, tariff_code)
        self.sync_engine.ensure_coverage(self.source_factory(kind, tariff_code))

    def compute_cost(
        self,
        tariff_code: str,
        start: datetime,
        end: datetime,
        interval_type: IntervalType = IntervalType.CUSTOM,
    ) -> CostCalculation:
        """Cost of tariff_code over [start, end).

        Raises:
            InvalidDateRangeError: end is not after start
            InsufficientDataError: DAILY request outside stored consumption
            NoDataAvailableError: no consumption slots start in the range
        """
        start, end = utc(start), utc(end)
        if end <= start:
            raise InvalidDateRangeError(start, end)

        if interval_type is IntervalType.DAILY:
            start, end = self._clip_to_available(start, end)

        consumption = self.store.query_consumption(start, end)
        if not consumption:
            raise NoDataAvailableError(start, end)

        if tariff_code == MANUAL_PLAN_CODE:
            return self._compute_manual(consumption, start, end, interval_type)

        self._ensure_series(SeriesKind.RATES, tariff_code)
        self._ensure_series(SeriesKind.STANDING_CHARGES, tariff_code)
        rates = _IntervalIndex(self.store.query_rates(tariff_code, start, end))
        standing = _IntervalIndex(self.store.query_standing_charges(tariff_code, start, end))

        total_kwh = 0.0
        source_kwh = 0.0
        unpriced_kwh = 0.0
        energy_excl = energy_incl = 0.0
        standing_excl = standing_incl = 0.0
        unmatched = 0

        for slot in consumption:
            source_kwh += slot.consumption_kwh
            clipped = _clip(slot, start, end)
            if clipped is None:
                continue
            kwh, midpoint, hours = clipped

            charge = standing.find(midpoint)
            if charge is not None:
                standing_excl += charge.value_excl_tax * hours / 24
                standing_incl += charge.value_incl_tax * hours / 24

            rate = rates.find(midpoint)
            if rate is None:
                unmatched += 1
                unpriced_kwh += kwh
                if self.include_unmatched_kwh:
                    total_kwh += kwh
                continue

            total_kwh += kwh
            energy_excl += kwh * rate.value_excl_tax
            energy_incl += kwh * rate.value_incl_tax

        if unmatched:
            logger.warning(
                "%d of %d slot(s) between %s and %s have no %s rate",
                unmatched,
                len(consumption),
                start.isoformat(),
                end.isoformat(),
                tariff_code,
            )

        return _calculation(
            tariff_code,
            interval_type,
            start,
            end,
            total_kwh,
            energy_excl,
            energy_incl,
            standing_excl,
            standing_incl,
            source_kwh,
            unpriced_kwh,
        )

    def _compute_manual(
        self,
        consumption: list[ConsumptionInterval],
        start: datetime,
        end: datetime,
        interval_type: IntervalType,
    ) -> CostCalculation:
        plan = self.manual_plan
        if plan is None:
            raise ValueError("No manual plan configured. Set manual_plan in the config file.")

        total_kwh = 0.0
        source_kwh = 0.0
        energy = 0.0
        standing = 0.0
        for slot in consumption:
            source_kwh += slot.consumption_kwh
            clipped = _clip(slot, start, end)
            if clipped is None:
                continue
            kwh, _, hours = clipped
            total_kwh += kwh
            energy += kwh * plan.rate_per_kwh
            # daily / 48 for a full half-hour slot
            standing += plan.standing_charge_per_day * hours / 24

        # Manual values are entered tax-inclusive, so both columns match
        return _calculation(
            MANUAL_PLAN_CODE,
            interval_type,
            start,
            end,
            total_kwh,
            energy,
            energy,
            standing,
            standing,
            source_kwh,
        )


def _clip(slot: ConsumptionInterval, start: datetime, end: datetime) -> tuple[float, datetime, float] | None:
    """Pro-rated kWh, midpoint and length in hours of slot within [start, end)."""
    clip_start = max(slot.interval_start, start)
    clip_end = min(slot.interval_end, end)
    if clip_end <= clip_start:
        return None

    clipped_seconds = (clip_end - clip_start).total_seconds()
    duration = slot.duration_seconds
    fraction = clipped_seconds / duration if duration > 0 else 1.0
    midpoint = clip_start + (clip_end - clip_start) / 2
    return slot.consumption_kwh * fraction, midpoint, clipped_seconds / 3600


def _calculation(
    tariff_code: str,
    interval_type: IntervalType,
    start: datetime,
    end: datetime,
    total_kwh: float,
    energy_excl: float,
    energy_incl: float,
    standing_excl: float,
    standing_incl: float,
    source_kwh: float,
    unpriced_kwh: float = 0.0,
) -> CostCalculation:
    cost_excl = energy_excl + standing_excl
    cost_incl = energy_incl + standing_incl
    return CostCalculation(
        tariff_code=tariff_code,
        interval_type=interval_type,
        period_start=start,
        period_end=end,
        total_kwh=total_kwh,
        cost_excl_tax=cost_excl,
        cost_incl_tax=cost_incl,
        standing_cost_excl_tax=standing_excl,
        standing_cost_incl_tax=standing_incl,
        avg_rate_excl_tax=average_rate(cost_excl, standing_excl, total_kwh),
        avg_rate_incl_tax=average_rate(cost_incl, standing_incl, total_kwh),
        source_kwh=source_kwh,
        unpriced_kwh=unpriced_kwh,
    )
