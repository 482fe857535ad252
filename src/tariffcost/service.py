"""Public entry point wiring store, sync engine, aggregator and cache together."""

import logging
from datetime import date, datetime, timedelta

from .account import AccountTimelineResolver
from .cache import CalculationCache
from .collectors.octopus import ConsumptionSource, OctopusClient, StandingChargeSource, TariffRateSource
from .config import Settings
from .costs import CostAggregator, SourceFactory
from .exceptions import InsufficientDataError, InvalidDateRangeError, NoDataAvailableError
from .models import (
    ACCOUNT_TARIFF_CODE,
    MANUAL_PLAN_CODE,
    Agreement,
    CalculationKey,
    CostCalculation,
    IntervalType,
    ManualPlan,
    SeriesKind,
    combine_calculations,
    utc,
)
from .periods import period_bounds, quarter_months
from .store import IntervalStore
from .sync import CoverageResult, FetchThrottle, ProgressCallback, SyncEngine, TimeSeriesSource

logger = logging.getLogger(__name__)


class TariffCostService:
    """Keeps tariff and consumption data in sync and answers cost questions.

    Everything is passed in explicitly; two services over two stores share
    nothing.
    """

    def __init__(
        self,
        store: IntervalStore,
        settings: Settings | None = None,
        client: OctopusClient | None = None,
        source_factory: SourceFactory | None = None,
        throttle: FetchThrottle | None = None,
        progress: ProgressCallback | None = None,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.client = client
        if source_factory is None and client is not None:
            source_factory = self._octopus_source
        self.source_factory = source_factory

        self.sync_engine = SyncEngine(
            store,
            throttle=throttle or FetchThrottle(timedelta(minutes=self.settings.cooldown_minutes)),
            tz_name=self.settings.timezone,
            required_from=self.settings.required_from,
            progress=progress,
        )
        self.aggregator = CostAggregator(
            store,
            sync_engine=self.sync_engine,
            source_factory=self.source_factory,
            include_unmatched_kwh=self.settings.include_unmatched_kwh,
            manual_plan=self.settings.manual_plan,
        )
        self.cache = CalculationCache(
            store,
            high_water=self.settings.cache_high_water,
            low_water=self.settings.cache_low_water,
            tolerance_kwh=self.settings.cache_tolerance_kwh,
        )
        self.account = AccountTimelineResolver(self.compute_cost, self.cache)

    def _octopus_source(self, kind: SeriesKind, tariff_code: str | None) -> TimeSeriesSource:
        if kind is SeriesKind.RATES:
            return TariffRateSource(self.client, tariff_code)
        if kind is SeriesKind.STANDING_CHARGES:
            return StandingChargeSource(self.client, tariff_code)
        self.settings.require_api_key()
        mpan, serial = self.settings.require_meter()
        return ConsumptionSource(self.client, mpan, serial)

    def ensure_coverage(
        self,
        tariff_code: str | None = None,
        series: list[SeriesKind] | None = None,
        force: bool = False,
        now: datetime | None = None,
    ) -> dict[SeriesKind, CoverageResult]:
        """Sync rates, standing charges and consumption up to their horizons.

        Consumption is skipped (with a warning) when no meter is configured,
        unless it was asked for explicitly.
        """
        if self.source_factory is None:
            raise ValueError("No remote source configured")

        tariff_code = tariff_code or self.settings.tariff_code
        if series is None:
            series = [SeriesKind.RATES, SeriesKind.STANDING_CHARGES, SeriesKind.CONSUMPTION]
            if not self.settings.has_meter:
                logger.warning("No meter configured, skipping consumption sync")
                series.remove(SeriesKind.CONSUMPTION)
            if tariff_code is None:
                series = [k for k in series if k is SeriesKind.CONSUMPTION]

        results = {}
        for kind in series:
            if kind is SeriesKind.CONSUMPTION:
                source = self.source_factory(kind, None)
            else:
                source = self.source_factory(kind, self.settings.require_tariff_code(tariff_code))
            result = self.sync_engine.ensure_coverage(source, now=now, force=force)
            results[kind] = result

            if result.inserted or result.updated:
                # Stored rows revalidate against consumption but not against prices
                if kind is SeriesKind.CONSUMPTION:
                    self.cache.invalidate()
                else:
                    self.cache.reset(source.tariff_code)
                    self.cache.reset(ACCOUNT_TARIFF_CODE)

        return results

    def compute_cost(
        self,
        tariff_code: str,
        start: datetime,
        end: datetime,
        interval_type: IntervalType = IntervalType.CUSTOM,
        persist: bool | None = None,
    ) -> CostCalculation:
        """Cached cost of one tariff (or the manual plan) over [start, end).

        Manual-plan results are kept in memory only unless persist_manual
        is set.
        """
        start, end = utc(start), utc(end)
        if end <= start:
            raise InvalidDateRangeError(start, end)

        if tariff_code == ACCOUNT_TARIFF_CODE:
            return self.compute_cost_for_account(None, start, end, interval_type)

        if persist is None:
            persist = tariff_code != MANUAL_PLAN_CODE or self.settings.persist_manual

        key = CalculationKey(tariff_code, interval_type, start, end)
        return self.cache.fetch_or_compute(
            key,
            lambda: self.aggregator.compute_cost(tariff_code, start, end, interval_type),
            persist=persist,
        )

    def compute_cost_for_account(
        self,
        agreements: list[Agreement] | None,
        start: datetime,
        end: datetime,
        interval_type: IntervalType = IntervalType.CUSTOM,
    ) -> CostCalculation:
        """Cost across the account's agreements (configured ones by default)."""
        agreements = agreements if agreements is not None else self.settings.agreements
        if not agreements:
            raise ValueError("No tariff agreements configured. Add agreements to the config file.")
        return self.account.compute_cost_for_account(agreements, start, end, interval_type)

    def compute_cost_for_period(
        self,
        reference: date | datetime,
        interval_type: IntervalType,
        tariff_code: str | None = None,
    ) -> CostCalculation:
        """Cost of the calendar day, week, month or quarter containing reference.

        Quarters are summed from their three months; months without data
        are left out.
        """
        tariff_code = self.settings.require_tariff_code(tariff_code)
        start, end = period_bounds(reference, interval_type, self.settings.timezone)

        if interval_type is not IntervalType.QUARTERLY:
            return self.compute_cost(tariff_code, start, end, interval_type)

        def sum_months() -> CostCalculation:
            months = []
            for month_start, month_end in quarter_months(reference, self.settings.timezone):
                try:
                    months.append(self.compute_cost(tariff_code, month_start, month_end, IntervalType.MONTHLY))
                except (NoDataAvailableError, InsufficientDataError):
                    logger.debug("No data for month starting %s", month_start)
            if not months:
                raise NoDataAvailableError(start, end)
            return combine_calculations(months, tariff_code, IntervalType.QUARTERLY, start, end)

        persist = tariff_code != MANUAL_PLAN_CODE or self.settings.persist_manual
        key = CalculationKey(tariff_code, IntervalType.QUARTERLY, start, end)
        return self.cache.fetch_or_compute(key, sum_months, persist=persist)

    def set_manual_plan(self, plan: ManualPlan | None) -> None:
        """Replace the manual plan and drop every result computed with the old one."""
        self.settings.manual_plan = plan
        self.aggregator.manual_plan = plan
        self.cache.reset(MANUAL_PLAN_CODE)

    def invalidate_cache(self, tariff_code: str | None = None) -> int:
        """Drop in-memory calculations (all, or one tariff)."""
        return self.cache.invalidate(tariff_code)

    def reset_cache(self, tariff_code: str | None = None) -> int:
        """Drop in-memory and persisted calculations."""
        return self.cache.reset(tariff_code)
