"""Tests for TTL / stale-while-revalidate classification."""

from datetime import timedelta

import pytest

from event_cache.cache_storage import CacheEntry
from event_cache.freshness import Freshness, as_timedelta, classify_entry
from event_cache.normalize import NormalizedEvent

from conftest import utc

TTL = timedelta(minutes=5)
SWR = timedelta(minutes=10)
STORED = utc(2024, 3, 4, 12)


def _entry(data=None) -> CacheEntry:
    return CacheEntry(data=data or [], stored_at=STORED)


class TestClassifyEntry:
    """Boundaries of the three states."""

    @pytest.mark.parametrize(
        ("age", "window", "expected"),
        [
            (timedelta(0), SWR, Freshness.FRESH),
            (TTL, SWR, Freshness.FRESH),
            (TTL + timedelta(milliseconds=1), SWR, Freshness.STALE),
            (TTL + SWR, SWR, Freshness.STALE),
            (TTL + SWR + timedelta(milliseconds=1), SWR, Freshness.EXPIRED),
            (TTL, timedelta(0), Freshness.FRESH),
            (TTL + timedelta(milliseconds=1), timedelta(0), Freshness.EXPIRED),
        ],
    )
    def test_age_boundaries(self, age: timedelta, window: timedelta, expected: Freshness) -> None:
        assert classify_entry(_entry(), STORED + age, TTL, window) is expected

    def test_missing_entry_is_expired(self) -> None:
        assert classify_entry(None, STORED, TTL, SWR) is Freshness.EXPIRED

    def test_empty_and_non_empty_entries_age_alike(self) -> None:
        event = NormalizedEvent("1", STORED, STORED)
        now = STORED + TTL + timedelta(minutes=1)

        assert classify_entry(_entry(), now, TTL, SWR) is Freshness.STALE
        assert classify_entry(_entry([event]), now, TTL, SWR) is Freshness.STALE


class TestAsTimedelta:
    def test_accepts_seconds_and_timedelta(self) -> None:
        assert as_timedelta(90) == timedelta(seconds=90)
        assert as_timedelta(0.5) == timedelta(milliseconds=500)
        assert as_timedelta(TTL) is TTL
        assert as_timedelta(None) == timedelta(0)
