"""Two-tier cache for cost calculations.

Memory first, then the cost_calculations table. A persisted row is only
reused while the consumption it was computed from is unchanged, within a
small tolerance, and while its inputs_digest matches the caller's. Rows
that left some kWh unpriced are always recomputed; the missing rates
may have arrived.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Callable

from .models import CalculationKey, CostCalculation
from .store import IntervalStore

logger = logging.getLogger(__name__)

DEFAULT_HIGH_WATER = 200
DEFAULT_LOW_WATER = 180
DEFAULT_TOLERANCE_KWH = 0.0001


class CalculationCache:
    """In-memory map over persisted calculations, evicting oldest entries first."""

    def __init__(
        self,
        store: IntervalStore,
        high_water: int = DEFAULT_HIGH_WATER,
        low_water: int = DEFAULT_LOW_WATER,
        tolerance_kwh: float = DEFAULT_TOLERANCE_KWH,
    ):
        if low_water > high_water:
            raise ValueError(f"low_water ({low_water}) must not exceed high_water ({high_water})")
        self.store = store
        self.high_water = high_water
        self.low_water = low_water
        self.tolerance_kwh = tolerance_kwh
        self._lock = threading.Lock()
        # key -> (insertion timestamp, calculation)
        self._entries: dict[CalculationKey, tuple[float, CostCalculation]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CalculationKey) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: CalculationKey) -> CostCalculation | None:
        """Calculation held in memory for key, if any."""
        with self._lock:
            entry = self._entries.get(key)
        return entry[1] if entry else None

    def _remember(self, key: CalculationKey, calculation: CostCalculation) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (time.monotonic(), calculation)
            if len(self._entries) <= self.high_water:
                return

            by_age = sorted(self._entries.items(), key=lambda item: item[1][0])
            excess = len(self._entries) - self.low_water
            for old_key, _ in by_age[:excess]:
                del self._entries[old_key]
        logger.debug("Evicted %d cached calculation(s)", excess)

    def is_valid(self, calculation: CostCalculation, inputs_digest: str = "") -> bool:
        """True if nothing behind a persisted calculation has changed."""
        if calculation.inputs_digest != inputs_digest:
            return False
        if calculation.unpriced_kwh > self.tolerance_kwh:
            return False
        current = self.store.sum_consumption(calculation.period_start, calculation.period_end)
        return abs(current - calculation.source_kwh) <= self.tolerance_kwh

    def fetch_or_compute(
        self,
        key: CalculationKey,
        compute_fn: Callable[[], CostCalculation],
        persist: bool = True,
        inputs_digest: str = "",
    ) -> CostCalculation:
        """Cached calculation for key, computing (and persisting) it when needed.

        inputs_digest identifies inputs other than consumption and rates;
        a cached result made from different inputs is never returned.
        """
        cached = self.get(key)
        if cached is not None and cached.inputs_digest == inputs_digest:
            return cached

        if persist:
            stored = self.store.get_calculation(key)
            if stored is not None:
                if self.is_valid(stored, inputs_digest):
                    logger.debug("Using stored calculation %s", key)
                    self._remember(key, stored)
                    return stored
                logger.info(
                    "Stored calculation for %s %s is stale (source %.4f kWh, unpriced %.4f kWh), recomputing",
                    key.tariff_code,
                    key.interval_type.value,
                    stored.source_kwh,
                    stored.unpriced_kwh,
                )

        # Fingerprint the full period before computing so later arrivals show up as stale
        source_kwh = self.store.sum_consumption(key.period_start, key.period_end)
        calculation = replace(
            compute_fn().for_key(key),
            source_kwh=source_kwh,
            inputs_digest=inputs_digest,
        )

        if persist:
            calculation = self.store.save_calculation(calculation)
        self._remember(key, calculation)
        return calculation

    def invalidate(self, tariff_code: str | None = None) -> int:
        """Drop memory entries (all, or one tariff). Returns entries dropped."""
        with self._lock:
            if tariff_code is None:
                dropped = len(self._entries)
                self._entries.clear()
            else:
                keys = [k for k in self._entries if k.tariff_code == tariff_code]
                for k in keys:
                    del self._entries[k]
                dropped = len(keys)
        logger.debug("Invalidated %d cached calculation(s)", dropped)
        return dropped

    def reset(self, tariff_code: str | None = None) -> int:
        """Invalidate memory and delete persisted calculations. Returns rows deleted."""
        self.invalidate(tariff_code)
        return self.store.delete_calculations(tariff_code)
