"""
Bucketing and storage key derivation.

A bucket is a local-time period of fixed granularity (day, week starting
Monday, calendar month). Every bucket has a stable storage key of the form
``events:<source>:<grouping>:<YYYY-MM-DD>`` where the date is the first
day of the period.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from enum import Enum
from typing import Optional

from .timezone_utils import local_date, local_midnight, localize_wall_time, to_local_datetime


KEY_NAMESPACE = "events"


class Grouping(Enum):
    """Bucket granularity of a cache instance."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @classmethod
    def parse(cls, value) -> 'Grouping':
        if isinstance(value, Grouping):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown grouping '{value}' (expected day, week or month)")


@dataclass(frozen=True)
class BucketKey:
    """Identifies one stored bucket."""
    source: str
    grouping: Grouping
    period_start: date

    def __str__(self) -> str:
        return f"{source_prefix(self.source)}{self.grouping.value}:{self.period_start.isoformat()}"


def source_prefix(source: str) -> str:
    """Key prefix shared by every bucket of a source."""
    return f"{KEY_NAMESPACE}:{source}:"


def parse_bucket_key(key: str) -> Optional[BucketKey]:
    """
    Reverse of ``str(BucketKey)``.

    Sources may contain colons, so the grouping and date are split off the
    right-hand side. Returns None for keys that are not bucket keys.
    """
    if not key.startswith(f"{KEY_NAMESPACE}:"):
        return None
    parts = key[len(KEY_NAMESPACE) + 1:].rsplit(":", 2)
    if len(parts) != 3 or not parts[0]:
        return None
    source, grouping, period = parts
    try:
        return BucketKey(source, Grouping(grouping), date.fromisoformat(period))
    except ValueError:
        return None


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def period_start_date(instant: datetime, grouping: Grouping, tz=None) -> date:
    """First local calendar day of the period containing ``instant``."""
    day = local_date(instant, tz)
    if grouping is Grouping.WEEK:
        return day - timedelta(days=day.weekday())
    if grouping is Grouping.MONTH:
        return day.replace(day=1)
    return day


def next_period_date(day: date, grouping: Grouping) -> date:
    if grouping is Grouping.WEEK:
        return day + timedelta(days=7)
    if grouping is Grouping.MONTH:
        return _add_months(day, 1)
    return day + timedelta(days=1)


def bucket_start(instant: datetime, grouping: Grouping, tz=None) -> datetime:
    """Local midnight at the start of the bucket containing ``instant``."""
    return local_midnight(period_start_date(instant, grouping, tz), tz)


def advance(instant: datetime, grouping: Grouping, tz=None) -> datetime:
    """
    Step one period forward, keeping the local wall-clock time.

    Months are calendar months; the day of month is clamped (Jan 31 -> Feb 29).
    """
    local = to_local_datetime(instant, tz).replace(tzinfo=None)
    if grouping is Grouping.MONTH:
        stepped = datetime.combine(_add_months(local.date(), 1), local.time())
    elif grouping is Grouping.WEEK:
        stepped = local + timedelta(days=7)
    else:
        stepped = local + timedelta(days=1)
    return localize_wall_time(stepped, tz)


def enumerate_bucket_keys(
    source: str,
    start: datetime,
    end: datetime,
    grouping: Grouping,
    tz=None
) -> list[BucketKey]:
    """
    Ordered bucket keys covering ``start`` through ``end``.

    Both end points are inclusive: an ``end`` exactly on a boundary pulls in
    the bucket that starts there. ``end < start`` yields nothing.
    """
    if end < start:
        return []
    current = period_start_date(start, grouping, tz)
    last = period_start_date(end, grouping, tz)
    keys = []
    while current <= last:
        keys.append(BucketKey(source, grouping, current))
        current = next_period_date(current, grouping)
    return keys


def enumerate_buckets_for_event(source: str, event, grouping: Grouping, tz=None) -> list[BucketKey]:
    """Buckets touched by an event's own [start, end] span."""
    return enumerate_bucket_keys(source, event.start, event.end, grouping, tz)
