"""
Date range normalization and time interval bucketing.

Lookup tables store naive timestamps in the store timezone.  Incoming
`after`/`before` bounds are normalized to the same representation:
date-only values expand to the start (`after`) or end (`before`) of the
day, aware values are converted, naive values are taken as store time.
"""
import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Iterator, Optional, Tuple

from lookup_analytics.observability import get_logger

logger = get_logger(__name__)

INTERVALS = ("hour", "day", "week", "month", "quarter", "year")
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_END_OF_DAY = time(23, 59, 59)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, _END_OF_DAY)


def store_now(tz: tzinfo) -> datetime:
    """Current wall-clock time in the store timezone, naive."""
    return datetime.now(tz).replace(tzinfo=None, microsecond=0)


def default_after(tz: tzinfo, days_back: int, now: Optional[datetime] = None) -> datetime:
    now = now or store_now(tz)
    return start_of_day(now.date() - timedelta(days=days_back))


def default_before(tz: tzinfo, now: Optional[datetime] = None) -> datetime:
    now = now or store_now(tz)
    return end_of_day(now.date())


def normalize_boundary(
    value: Any, key: str, tz: tzinfo, default: datetime
) -> datetime:
    """
    Convert an `after`/`before` value to a naive store-timezone datetime.

    Args:
        value: str, date, datetime or None
        key: "after" or "before", decides how date-only values expand
        tz: store timezone
        default: returned for missing or unparseable values
    """
    if value is None or value == "":
        return default

    expand = start_of_day if key == "after" else end_of_day

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return expand(value)
    elif isinstance(value, str):
        text = value.strip()
        if _DATE_ONLY.match(text):
            try:
                return expand(date.fromisoformat(text))
            except ValueError:
                logger.debug(f"Invalid {key} date {value!r}, using default")
                return default
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Invalid {key} datetime {value!r}, using default")
            return default
    else:
        return default

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz).replace(tzinfo=None)
    return parsed.replace(microsecond=0)


def normalize_interval(value: Any, default: str = "week") -> str:
    value = str(value).lower() if value else default
    return value if value in INTERVALS else default


def interval_sql(interval: str, column: str) -> str:
    """SQL expression producing the bucket key of a timestamp column."""
    fmt = "%Y-%m-%d %H:00:00" if interval == "hour" else "%Y-%m-%d"
    return f"strftime(date_trunc('{interval}', {column}), '{fmt}')"


def truncate(moment: datetime, interval: str) -> datetime:
    """Start of the interval containing moment (weeks start on Monday)."""
    if interval == "hour":
        return moment.replace(minute=0, second=0, microsecond=0)
    day = start_of_day(moment.date())
    if interval == "day":
        return day
    if interval == "week":
        return day - timedelta(days=day.weekday())
    if interval == "month":
        return day.replace(day=1)
    if interval == "quarter":
        return day.replace(month=3 * ((day.month - 1) // 3) + 1, day=1)
    if interval == "year":
        return day.replace(month=1, day=1)
    raise ValueError(f"Unknown interval: {interval}")


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    return moment.replace(year=moment.year + month_index // 12, month=month_index % 12 + 1)


def next_start(moment: datetime, interval: str) -> datetime:
    """Start of the interval following the one containing moment."""
    start = truncate(moment, interval)
    if interval == "hour":
        return start + timedelta(hours=1)
    if interval == "day":
        return start + timedelta(days=1)
    if interval == "week":
        return start + timedelta(weeks=1)
    if interval == "month":
        return _add_months(start, 1)
    if interval == "quarter":
        return _add_months(start, 3)
    return start.replace(year=start.year + 1)


def interval_key(moment: datetime, interval: str) -> str:
    """Python twin of interval_sql()."""
    start = truncate(moment, interval)
    if interval == "hour":
        return start.strftime("%Y-%m-%d %H:00:00")
    return start.strftime("%Y-%m-%d")


def iterate(
    after: datetime, before: datetime, interval: str
) -> Iterator[Tuple[str, datetime, datetime]]:
    """
    Yield (key, date_start, date_end) for every interval overlapping
    [after, before], clipped to the range.
    """
    cursor = after
    while cursor <= before:
        upcoming = next_start(cursor, interval)
        end = min(before, upcoming - timedelta(seconds=1))
        yield interval_key(cursor, interval), cursor, end
        cursor = upcoming


def count_intervals(after: datetime, before: datetime, interval: str) -> int:
    return sum(1 for _ in iterate(after, before, interval))
