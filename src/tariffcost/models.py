"""Data models for tariff intervals, consumption and cost calculations."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

# Sentinel tariff codes
ACCOUNT_TARIFF_CODE = "savedAccount"
MANUAL_PLAN_CODE = "manualPlan"

HALF_HOUR_SECONDS = 1800


class SeriesKind(str, Enum):
    """The three time series kept in the interval store."""

    RATES = "rates"
    STANDING_CHARGES = "standing_charges"
    CONSUMPTION = "consumption"


class IntervalType(str, Enum):
    """Granularity label attached to a cost calculation."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    CUSTOM = "CUSTOM"


def utc(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class RateInterval:
    """A unit rate (pence/kWh) valid over [valid_from, valid_to)."""

    tariff_code: str
    valid_from: datetime
    valid_to: datetime | None
    value_excl_tax: float
    value_incl_tax: float

    def covers(self, instant: datetime) -> bool:
        return self.valid_from <= instant and (self.valid_to is None or instant < self.valid_to)


@dataclass
class StandingChargeInterval:
    """A daily standing charge (pence/day); valid_to None means open-ended."""

    tariff_code: str
    valid_from: datetime
    valid_to: datetime | None
    value_excl_tax: float
    value_incl_tax: float

    def covers(self, instant: datetime) -> bool:
        return self.valid_from <= instant and (self.valid_to is None or instant < self.valid_to)


@dataclass
class ConsumptionInterval:
    """Metered consumption for a single (usually half-hour) slot."""

    interval_start: datetime
    interval_end: datetime
    consumption_kwh: float

    @property
    def duration_seconds(self) -> float:
        return (self.interval_end - self.interval_start).total_seconds()


@dataclass
class Agreement:
    """A tariff agreement on the account timeline. Open bounds are None."""

    tariff_code: str
    valid_from: datetime | None = None
    valid_to: datetime | None = None


@dataclass
class ManualPlan:
    """User-entered flat rate and daily standing charge, already tax-treated."""

    rate_per_kwh: float
    standing_charge_per_day: float


@dataclass(frozen=True)
class CalculationKey:
    """Identity of a stored cost calculation."""

    tariff_code: str
    interval_type: IntervalType
    period_start: datetime
    period_end: datetime


@dataclass(frozen=True)
class CostCalculation:
    """Immutable snapshot of the cost of a tariff over a period.

    cost_* totals include standing charges. source_kwh is the raw
    consumption sum for the period when the snapshot was computed;
    unpriced_kwh is the part of it that had no unit rate. inputs_digest
    identifies any other inputs (an account's agreements). Cache
    validation compares against all three.
    """

    tariff_code: str
    interval_type: IntervalType
    period_start: datetime
    period_end: datetime
    total_kwh: float
    cost_excl_tax: float
    cost_incl_tax: float
    standing_cost_excl_tax: float
    standing_cost_incl_tax: float
    avg_rate_excl_tax: float
    avg_rate_incl_tax: float
    source_kwh: float = 0.0
    unpriced_kwh: float = 0.0
    inputs_digest: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> CalculationKey:
        return CalculationKey(
            tariff_code=self.tariff_code,
            interval_type=self.interval_type,
            period_start=self.period_start,
            period_end=self.period_end,
        )

    @property
    def cost_gbp_incl_tax(self) -> float:
        """Total cost including tax in GBP."""
        return self.cost_incl_tax / 100

    def for_key(self, key: CalculationKey) -> "CostCalculation":
        """Copy of this calculation re-labelled under another key."""
        return replace(
            self,
            tariff_code=key.tariff_code,
            interval_type=key.interval_type,
            period_start=key.period_start,
            period_end=key.period_end,
        )


def average_rate(total_cost: float, standing_cost: float, total_kwh: float) -> float:
    """Average unit rate net of standing charges (0 when nothing was used)."""
    if total_kwh <= 0:
        return 0.0
    return (total_cost - standing_cost) / total_kwh


def combine_calculations(
    calculations: list[CostCalculation],
    tariff_code: str,
    interval_type: IntervalType,
    period_start: datetime,
    period_end: datetime,
) -> CostCalculation:
    """Sum several calculations into one covering [period_start, period_end)."""
    total_kwh = sum(c.total_kwh for c in calculations)
    cost_excl = sum(c.cost_excl_tax for c in calculations)
    cost_incl = sum(c.cost_incl_tax for c in calculations)
    standing_excl = sum(c.standing_cost_excl_tax for c in calculations)
    standing_incl = sum(c.standing_cost_incl_tax for c in calculations)

    return CostCalculation(
        tariff_code=tariff_code,
        interval_type=interval_type,
        period_start=period_start,
        period_end=period_end,
        total_kwh=total_kwh,
        cost_excl_tax=cost_excl,
        cost_incl_tax=cost_incl,
        standing_cost_excl_tax=standing_excl,
        standing_cost_incl_tax=standing_incl,
        avg_rate_excl_tax=average_rate(cost_excl, standing_excl, total_kwh),
        avg_rate_incl_tax=average_rate(cost_incl, standing_incl, total_kwh),
        source_kwh=sum(c.source_kwh for c in calculations),
        unpriced_kwh=sum(c.unpriced_kwh for c in calculations),
    )
