"""Cost across an account's tariff history.

An account moves between tariffs over time. The requested range is split
at agreement boundaries, each piece is costed on its own tariff and the
pieces are summed under the ``savedAccount`` tariff code.
"""

import hashlib
import logging
from datetime import datetime
from typing import Callable

from .cache import CalculationCache
from .db import to_db
from .exceptions import InsufficientDataError, InvalidDateRangeError, NoDataAvailableError
from .models import (
    ACCOUNT_TARIFF_CODE,
    Agreement,
    CalculationKey,
    CostCalculation,
    IntervalType,
    combine_calculations,
    utc,
)

logger = logging.getLogger(__name__)

ComputeFn = Callable[[str, datetime, datetime, IntervalType], CostCalculation]


def split_by_agreements(
    agreements: list[Agreement], start: datetime, end: datetime
) -> list[tuple[str, datetime, datetime]]:
    """Intersect [start, end) with each agreement, oldest agreement first.

    Agreements with no overlap are dropped. Open bounds extend to the
    edge of the requested range.
    """
    ordered = sorted(
        agreements,
        key=lambda a: utc(a.valid_from) if a.valid_from else datetime.min.replace(tzinfo=start.tzinfo),
    )

    pieces = []
    for agreement in ordered:
        piece_start = max(start, utc(agreement.valid_from)) if agreement.valid_from else start
        piece_end = min(end, utc(agreement.valid_to)) if agreement.valid_to else end
        if piece_end > piece_start:
            pieces.append((agreement.tariff_code, piece_start, piece_end))
    return pieces


def agreements_digest(agreements: list[Agreement]) -> str:
    """Stable hash of the agreement timeline, independent of list order."""
    parts = sorted(f"{a.tariff_code}|{to_db(a.valid_from) or ''}|{to_db(a.valid_to) or ''}" for a in agreements)
    return hashlib.sha256("\n".join(parts).encode()).hexdigest()


class AccountTimelineResolver:
    """Computes account-level costs from single-tariff costs."""

    def __init__(self, compute: ComputeFn, cache: CalculationCache):
        self.compute = compute
        self.cache = cache

    def _combine(
        self,
        agreements: list[Agreement],
        start: datetime,
        end: datetime,
        interval_type: IntervalType,
    ) -> CostCalculation:
        calculations = []
        for tariff_code, piece_start, piece_end in split_by_agreements(agreements, start, end):
            try:
                calculations.append(self.compute(tariff_code, piece_start, piece_end, interval_type))
            except (NoDataAvailableError, InsufficientDataError) as e:
                logger.info("Skipping %s from %s to %s: %s", tariff_code, piece_start, piece_end, e)

        if not calculations:
            raise NoDataAvailableError(start, end)

        return combine_calculations(calculations, ACCOUNT_TARIFF_CODE, interval_type, start, end)

    def compute_cost_for_account(
        self,
        agreements: list[Agreement],
        start: datetime,
        end: datetime,
        interval_type: IntervalType = IntervalType.CUSTOM,
        persist: bool = True,
    ) -> CostCalculation:
        """Summed cost of every agreement overlapping [start, end)."""
        start, end = utc(start), utc(end)
        if end <= start:
            raise InvalidDateRangeError(start, end)

        key = CalculationKey(ACCOUNT_TARIFF_CODE, interval_type, start, end)
        return self.cache.fetch_or_compute(
            key,
            lambda: self._combine(agreements, start, end, interval_type),
            persist=persist,
            inputs_digest=agreements_digest(agreements),
        )
