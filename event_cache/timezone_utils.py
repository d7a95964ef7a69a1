"""
Timezone utilities for Kubux Event Cache.

Bucket boundaries (midnight, Monday, first of the month) are defined in
local time, while cached instants are kept in UTC. These helpers convert
between the two.
"""

from datetime import datetime, date, time
import time as _time
from typing import Optional
import pytz


# Default timezone - can be overridden by config
_local_timezone_name: str = "Europe/Amsterdam"


def set_timezone(timezone_name: str):
    """Set the local timezone for the application."""
    global _local_timezone_name
    _local_timezone_name = timezone_name


def get_timezone_name() -> str:
    return _local_timezone_name


def get_local_timezone():
    """
    Get the local timezone as a pytz timezone object.

    Returns:
        pytz timezone object for the configured local timezone.
    """
    try:
        return pytz.timezone(_local_timezone_name)
    except pytz.UnknownTimeZoneError:
        # Fallback: try system timezone name
        try:
            return pytz.timezone(_time.tzname[0])
        except pytz.UnknownTimeZoneError:
            # Last resort: calculate offset and use fixed offset timezone
            is_dst = _time.localtime().tm_isdst
            if is_dst:
                offset_seconds = -_time.altzone
            else:
                offset_seconds = -_time.timezone
            return pytz.FixedOffset(offset_seconds // 60)


def resolve_timezone(tz=None):
    """Accept a pytz timezone, a timezone name or None (module default)."""
    if tz is None:
        return get_local_timezone()
    if isinstance(tz, str):
        return pytz.timezone(tz)
    return tz


def to_local_datetime(dt: datetime, tz=None) -> datetime:
    """
    Convert an aware datetime to the local timezone.

    Naive datetimes are assumed to already be local and are returned unchanged.
    """
    if dt.tzinfo is not None:
        return dt.astimezone(resolve_timezone(tz))
    return dt


def to_utc_datetime(dt: datetime, tz=None) -> datetime:
    """
    Convert a datetime to UTC.

    Args:
        dt: A datetime object. Naive values are interpreted in local time.
        tz: Local timezone override.

    Returns:
        A timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        local_dt = resolve_timezone(tz).localize(dt)
        return local_dt.astimezone(pytz.UTC)
    return dt.astimezone(pytz.UTC)


def local_midnight(day: date, tz=None) -> datetime:
    """Aware datetime for 00:00 local time on the given day."""
    return localize_wall_time(datetime.combine(day, time.min), tz)


def localize_wall_time(naive: datetime, tz=None) -> datetime:
    """Attach the local timezone to a naive wall-clock time (DST aware)."""
    zone = resolve_timezone(tz)
    return zone.normalize(zone.localize(naive))


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def local_date(dt: datetime, tz: Optional[object] = None) -> date:
    """Calendar date of an instant as seen in local time."""
    return to_local_datetime(to_utc_datetime(dt, tz), tz).date()
