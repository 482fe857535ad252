"""Incremental synchronisation of remote time series into the interval store.

For each series (rates, standing charges, consumption) the engine decides
whether local coverage reaches the expected horizon without interior gaps.
If not, it pages through the remote source:

- empty store: forward from page 1 until ``next`` runs out
- newer data on the server: forward from page 1 until a page overlaps local data
- older data on the server: backward from the last page until a page overlaps
- interior gaps: from whichever end is nearer until every hole has been passed

Every page is committed as soon as it arrives, so an interrupted sync
leaves a valid store and the next run carries on from there.
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, Protocol
from zoneinfo import ZoneInfo

from .collectors.octopus import Page
from .models import SeriesKind, utc, utcnow
from .periods import DEFAULT_TIMEZONE
from .store import IntervalStore, SeriesBounds

logger = logging.getLogger(__name__)

PUBLISH_CUTOFF_HOUR = 16  # day-ahead prices are published by late afternoon
HORIZON_HOUR = 23
DEFAULT_COOLDOWN = timedelta(minutes=5)


class SyncState(str, Enum):
    """Phases of a single series sync."""

    IDLE = "idle"
    FETCHING_PRIMARY = "fetching-primary"
    BACKFILLING = "backfilling"
    COMPLETE = "complete"
    FAILED = "failed"


class TimeSeriesSource(Protocol):
    """A paginated, newest-first remote series."""

    kind: SeriesKind
    tariff_code: str | None
    cadence_seconds: int | None

    @property
    def key(self) -> str: ...

    def fetch_page(self, page: int) -> Page: ...


ProgressCallback = Callable[[SeriesKind, SyncState, int, int | None], None]


@dataclass
class CoverageResult:
    """Outcome of ensure_coverage for one series."""

    kind: SeriesKind
    state: SyncState
    horizon: datetime
    pages_fetched: int = 0
    inserted: int = 0
    updated: int = 0
    count: int = 0
    earliest: datetime | None = None
    latest: datetime | None = None
    missing_slots: int = 0
    already_covered: bool = False
    throttled: bool = False


@dataclass
class _RunStats:
    pages_fetched: int = 0
    inserted: int = 0
    updated: int = 0
    total_pages: int | None = None


def expected_horizon(
    kind: SeriesKind,
    now: datetime | None = None,
    tz_name: str = DEFAULT_TIMEZONE,
    cutoff_hour: int = PUBLISH_CUTOFF_HOUR,
    horizon_hour: int = HORIZON_HOUR,
) -> datetime:
    """Latest UTC instant that should already be stored locally.

    Prices: before the cutoff hour (local time) expect data up to 23:00 today,
    afterwards up to 23:00 tomorrow. Consumption lags, so expect it up to
    local midnight at the start of today.
    """
    tz = ZoneInfo(tz_name)
    local_now = utc(now or utcnow()).astimezone(tz)

    if kind is SeriesKind.CONSUMPTION:
        local = datetime.combine(local_now.date(), time.min, tzinfo=tz)
    else:
        day = local_now.date()
        if local_now.hour >= cutoff_hour:
            day += timedelta(days=1)
        local = datetime.combine(day, time(horizon_hour), tzinfo=tz)

    return local.astimezone(timezone.utc)


def find_missing_slots(starts: list[datetime], cadence_seconds: int) -> list[datetime]:
    """Slot starts absent between consecutive sorted starts."""
    step = timedelta(seconds=cadence_seconds)
    missing = []
    for previous, current in zip(starts, starts[1:]):
        expected = previous + step
        while expected < current:
            missing.append(expected)
            expected += step
    return missing


def _start(record) -> datetime:
    if hasattr(record, "valid_from"):
        return record.valid_from
    return record.interval_start


def _oldest(page: Page) -> datetime:
    return min(_start(r) for r in page.results)


def _newest(page: Page) -> datetime:
    return max(_start(r) for r in page.results)


class FetchThrottle:
    """Per-key "is loading" flags and failure cooldowns.

    Keys are (series kind, tariff or meter key), so a failing tariff never
    blocks unrelated ones.
    """

    def __init__(self, cooldown: timedelta = DEFAULT_COOLDOWN):
        self.cooldown = cooldown
        self._lock = threading.Lock()
        self._loading: set[tuple] = set()
        self._next_eligible: dict[tuple, datetime] = {}

    def is_loading(self, key: tuple) -> bool:
        with self._lock:
            return key in self._loading

    def next_eligible(self, key: tuple) -> datetime | None:
        with self._lock:
            return self._next_eligible.get(key)

    def try_begin(self, key: tuple, now: datetime, force: bool = False) -> bool:
        """Mark key as loading. False if already loading or cooling down."""
        with self._lock:
            if key in self._loading:
                return False
            eligible = self._next_eligible.get(key)
            if not force and eligible is not None and now < eligible:
                return False
            self._loading.add(key)
            return True

    def finish(self, key: tuple, now: datetime, failed: bool) -> None:
        with self._lock:
            self._loading.discard(key)
            if failed:
                self._next_eligible[key] = now + self.cooldown
            else:
                self._next_eligible.pop(key, None)


class SyncEngine:
    """Keeps the interval store in step with remote time-series sources."""

    def __init__(
        self,
        store: IntervalStore,
        throttle: FetchThrottle | None = None,
        tz_name: str = DEFAULT_TIMEZONE,
        required_from: datetime | None = None,
        progress: ProgressCallback | None = None,
    ):
        self.store = store
        self.throttle = throttle or FetchThrottle()
        self.tz_name = tz_name
        self.required_from = utc(required_from) if required_from else None
        self.progress = progress
        self._states: dict[tuple, SyncState] = {}

    def state(self, kind: SeriesKind, key: str) -> SyncState:
        """Current state of the series identified by (kind, key)."""
        return self._states.get((kind, key), SyncState.IDLE)

    def _notify(self, source: TimeSeriesSource, state: SyncState, stats: _RunStats) -> None:
        self._states[(source.kind, source.key)] = state
        if self.progress:
            self.progress(source.kind, state, stats.pages_fetched, stats.total_pages)

    def ensure_coverage(
        self, source: TimeSeriesSource, now: datetime | None = None, force: bool = False
    ) -> CoverageResult:
        """Bring one series up to the expected horizon.

        Network and decoding errors propagate after the failure cooldown
        has been recorded; pages stored before the error are kept.
        """
        now = utc(now) if now else utcnow()
        throttle_key = (source.kind, source.key)
        horizon = expected_horizon(source.kind, now, self.tz_name)

        if not self.throttle.try_begin(throttle_key, now, force):
            logger.info(
                "Skipping %s sync for %s: busy or cooling down until %s",
                source.kind.value,
                source.key,
                self.throttle.next_eligible(throttle_key),
            )
            return CoverageResult(kind=source.kind, state=self.state(*throttle_key), horizon=horizon, throttled=True)

        stats = _RunStats()
        try:
            result = self._sync(source, horizon, force, stats)
        except Exception:
            self.throttle.finish(throttle_key, now, failed=True)
            self._notify(source, SyncState.FAILED, stats)
            logger.warning(
                "%s sync for %s failed after %d page(s)", source.kind.value, source.key, stats.pages_fetched
            )
            raise

        self.throttle.finish(throttle_key, now, failed=False)
        return result

    def _missing(self, source: TimeSeriesSource, bounds: SeriesBounds) -> list[datetime]:
        cadence = source.cadence_seconds
        if not cadence or bounds.count < 2:
            return []

        span = (bounds.latest_start - bounds.earliest_start).total_seconds()
        expected = int(span // cadence) + 1
        if bounds.count >= expected:
            return []

        starts = self.store.list_starts(source.kind, source.tariff_code)
        missing = find_missing_slots(starts, cadence)
        logger.info(
            "%s for %s: %d of %d expected records, %d gap slot(s)",
            source.kind.value,
            source.key,
            bounds.count,
            expected,
            len(missing),
        )
        return missing

    @staticmethod
    def _is_covered(bounds: SeriesBounds, horizon: datetime) -> bool:
        if bounds.is_empty:
            return False
        if bounds.open_ended:
            return True
        return bounds.latest_end is not None and bounds.latest_end >= horizon

    def _sync(self, source: TimeSeriesSource, horizon: datetime, force: bool, stats: _RunStats) -> CoverageResult:
        bounds = self.store.bounds(source.kind, source.tariff_code)
        missing = [] if bounds.is_empty else self._missing(source, bounds)

        if not force and self._is_covered(bounds, horizon) and not missing:
            logger.debug("%s for %s already covered to %s", source.kind.value, source.key, horizon)
            return self._result(source, horizon, stats, already_covered=True)

        self._notify(source, SyncState.FETCHING_PRIMARY, stats)
        pages: dict[int, Page] = {}

        if bounds.is_empty:
            self._fill_empty(source, pages, stats)
        else:
            self._extend(source, bounds, missing, pages, stats)

        result = self._result(source, horizon, stats)
        self._notify(source, SyncState.COMPLETE, stats)
        logger.info(
            "%s sync for %s: %d page(s), %d inserted, %d updated",
            source.kind.value,
            source.key,
            stats.pages_fetched,
            stats.inserted,
            stats.updated,
        )
        return result

    def _result(
        self, source: TimeSeriesSource, horizon: datetime, stats: _RunStats, already_covered: bool = False
    ) -> CoverageResult:
        bounds = self.store.bounds(source.kind, source.tariff_code)
        missing = [] if bounds.is_empty else self._missing(source, bounds)
        return CoverageResult(
            kind=source.kind,
            state=SyncState.COMPLETE,
            horizon=horizon,
            pages_fetched=stats.pages_fetched,
            inserted=stats.inserted,
            updated=stats.updated,
            count=bounds.count,
            earliest=bounds.earliest_start,
            latest=bounds.latest_end or bounds.latest_start,
            missing_slots=len(missing),
            already_covered=already_covered,
        )

    def _page(self, source: TimeSeriesSource, number: int, pages: dict[int, Page], stats: _RunStats) -> Page:
        if number not in pages:
            pages[number] = source.fetch_page(number)
            stats.pages_fetched += 1
            if self.progress:
                self.progress(source.kind, self.state(source.kind, source.key), stats.pages_fetched, stats.total_pages)
        return pages[number]

    def _store(self, source: TimeSeriesSource, records: list, stats: _RunStats) -> None:
        if not records:
            return
        counts = self.store.upsert(source.kind, records)
        stats.inserted += counts["inserted"]
        stats.updated += counts["updated"]

    def _fill_empty(self, source: TimeSeriesSource, pages: dict[int, Page], stats: _RunStats) -> None:
        first = self._page(source, 1, pages, stats)
        if not first.results:
            logger.info("No remote %s for %s", source.kind.value, source.key)
            return

        self._store(source, first.results, stats)
        stats.total_pages = max(1, math.ceil(first.count / len(first.results)))
        self._notify(source, SyncState.BACKFILLING, stats)

        number = 1
        page = first
        while page.next is not None:
            if self.required_from and _oldest(page) < self.required_from:
                logger.debug("Reached %s, stopping backfill", self.required_from)
                break
            number += 1
            page = self._page(source, number, pages, stats)
            if not page.results:
                break
            self._store(source, page.results, stats)

    def _extend(
        self,
        source: TimeSeriesSource,
        bounds: SeriesBounds,
        missing: list[datetime],
        pages: dict[int, Page],
        stats: _RunStats,
    ) -> None:
        first = self._page(source, 1, pages, stats)
        if not first.results:
            logger.info("No remote %s for %s", source.kind.value, source.key)
            return

        total_pages = max(1, math.ceil(first.count / len(first.results)))
        stats.total_pages = total_pages
        last = self._page(source, total_pages, pages, stats)

        server_newest = _newest(first)
        server_oldest = _oldest(last) if last.results else _oldest(first)
        self._notify(source, SyncState.BACKFILLING, stats)

        if server_newest > bounds.latest_start:
            self._forward(source, bounds.latest_start, total_pages, pages, stats)
        if server_oldest < bounds.earliest_start:
            self._backward(source, bounds.earliest_start, total_pages, pages, stats)
        if missing:
            self._patch_gaps(source, missing, server_newest, server_oldest, total_pages, pages, stats)

    def _forward(
        self,
        source: TimeSeriesSource,
        local_latest: datetime,
        total_pages: int,
        pages: dict[int, Page],
        stats: _RunStats,
    ) -> None:
        for number in range(1, total_pages + 1):
            page = self._page(source, number, pages, stats)
            if not page.results:
                break
            self._store(source, [r for r in page.results if _start(r) > local_latest], stats)
            if _oldest(page) <= local_latest or page.next is None:
                break

    def _backward(
        self,
        source: TimeSeriesSource,
        local_earliest: datetime,
        total_pages: int,
        pages: dict[int, Page],
        stats: _RunStats,
    ) -> None:
        # Page 1 is normally already cached by the forward pass
        for number in range(total_pages, 0, -1):
            page = self._page(source, number, pages, stats)
            if not page.results:
                continue
            self._store(source, [r for r in page.results if _start(r) < local_earliest], stats)
            if _newest(page) >= local_earliest:
                break

    def _patch_gaps(
        self,
        source: TimeSeriesSource,
        missing: list[datetime],
        server_newest: datetime,
        server_oldest: datetime,
        total_pages: int,
        pages: dict[int, Page],
        stats: _RunStats,
    ) -> None:
        remaining = set(missing)
        earliest_gap, latest_gap = missing[0], missing[-1]
        from_newest = (server_newest - latest_gap) <= (earliest_gap - server_oldest)
        numbers = range(1, total_pages + 1) if from_newest else range(total_pages, 0, -1)

        logger.info(
            "Patching %d missing %s slot(s) for %s from the %s end",
            len(remaining),
            source.kind.value,
            source.key,
            "newest" if from_newest else "oldest",
        )
        for number in numbers:
            page = self._page(source, number, pages, stats)
            if not page.results:
                continue
            filling = [r for r in page.results if _start(r) in remaining]
            self._store(source, filling, stats)
            remaining.difference_update(_start(r) for r in filling)
            if not remaining:
                break
            if from_newest and _oldest(page) <= earliest_gap:
                break
            if not from_newest and _newest(page) >= latest_gap:
                break

        if remaining:
            logger.warning(
                "%d %s slot(s) for %s are missing on the server too",
                len(remaining),
                source.kind.value,
                source.key,
            )
