"""Calendar period boundaries in the account's local time zone."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from .models import IntervalType, utc

DEFAULT_TIMEZONE = "Europe/London"


def _local_date(reference: date | datetime, tz: ZoneInfo) -> date:
    if isinstance(reference, datetime):
        return utc(reference).astimezone(tz).date()
    return reference


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    return date(day.year + month_index // 12, month_index % 12 + 1, 1)


def _to_utc(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def period_bounds(
    reference: date | datetime,
    interval_type: IntervalType,
    tz_name: str = DEFAULT_TIMEZONE,
) -> tuple[datetime, datetime]:
    """Start and end (UTC) of the local calendar period containing reference.

    Days run midnight to midnight local time, weeks start on Monday,
    quarters start in January, April, July and October.
    """
    tz = ZoneInfo(tz_name)
    day = _local_date(reference, tz)

    if interval_type is IntervalType.DAILY:
        first, after = day, day + timedelta(days=1)
    elif interval_type is IntervalType.WEEKLY:
        first = day - timedelta(days=day.weekday())
        after = first + timedelta(days=7)
    elif interval_type is IntervalType.MONTHLY:
        first = day.replace(day=1)
        after = _add_months(first, 1)
    elif interval_type is IntervalType.QUARTERLY:
        first = date(day.year, (day.month - 1) // 3 * 3 + 1, 1)
        after = _add_months(first, 3)
    else:
        raise ValueError(f"{interval_type.value} periods have no calendar bounds")

    return _to_utc(first, tz), _to_utc(after, tz)


def quarter_months(reference: date | datetime, tz_name: str = DEFAULT_TIMEZONE) -> list[tuple[datetime, datetime]]:
    """Bounds of the three months making up the quarter containing reference."""
    tz = ZoneInfo(tz_name)
    quarter_start, _ = period_bounds(reference, IntervalType.QUARTERLY, tz_name)
    first = quarter_start.astimezone(tz).date()
    return [period_bounds(_add_months(first, i), IntervalType.MONTHLY, tz_name) for i in range(3)]
