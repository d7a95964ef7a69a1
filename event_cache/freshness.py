"""
Entry lifecycle: time-to-live with an optional stale-while-revalidate window.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from .cache_storage import CacheEntry


class Freshness(Enum):
    FRESH = "fresh"      # serve, nothing else to do
    STALE = "stale"      # serve, refresh in the background
    EXPIRED = "expired"  # must fetch before serving


def as_timedelta(value: Union[timedelta, int, float, None]) -> timedelta:
    """Durations may be given as timedelta or as seconds."""
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


def classify_entry(
    entry: Optional[CacheEntry],
    now: datetime,
    ttl: timedelta,
    stale_window: timedelta = timedelta(0)
) -> Freshness:
    """
    Classify an entry by its age.

    age <= ttl is fresh; ttl < age <= ttl + stale_window is stale (only when
    the window is positive); anything older, or a missing entry, is expired.
    Empty entries are classified exactly like non-empty ones.
    """
    if entry is None:
        return Freshness.EXPIRED
    age = now - entry.stored_at
    if age <= ttl:
        return Freshness.FRESH
    if stale_window > timedelta(0) and age <= ttl + stale_window:
        return Freshness.STALE
    return Freshness.EXPIRED
