"""Tests for trimming after a refused write."""

from datetime import timedelta
from pathlib import Path

import pytest

from event_cache.bucketed_cache import BucketedEventCache
from event_cache.bucketing import Grouping
from event_cache.cache_storage import JsonFileCacheStorage
from event_cache.normalize import RangeRequest

from conftest import BrokenStorage, FakeClock, QuotaLimitedStorage, RecordingFetcher, utc


def day_cache(fetcher, clock, storage, source="demo", max_entries=10) -> BucketedEventCache:
    return BucketedEventCache(
        source,
        fetcher,
        ttl=timedelta(minutes=5),
        grouping=Grouping.DAY,
        storage=storage,
        max_entries=max_entries,
        timezone="UTC",
        clock=clock,
    )


def morning_of(day: int) -> RangeRequest:
    return RangeRequest(utc(2024, 3, day), utc(2024, 3, day, 12))


class TestTrimOnFailedWrite:
    """A refused write trims the oldest entries and retries once."""

    @pytest.mark.asyncio
    async def test_most_recent_entries_survive(self, fetcher: RecordingFetcher, clock: FakeClock) -> None:
        storage = QuotaLimitedStorage(capacity=10)
        cache = day_cache(fetcher, clock, storage)

        for day in range(1, 16):
            await cache.get(morning_of(day))
            clock.advance(minutes=1)

        expected = {f"events:demo:day:2024-03-{day:02d}" for day in range(6, 16)}
        assert await storage.list_keys("events:demo:") == expected
        assert storage.failed_writes == 5
        assert len(fetcher.calls) == 15

    @pytest.mark.asyncio
    async def test_write_failure_does_not_fail_get(self, fetcher: RecordingFetcher, clock: FakeClock) -> None:
        fetcher.events = [{"id": "x", "start": "2024-03-04T10:00Z", "end": "2024-03-04T11:00Z"}]
        storage = BrokenStorage()
        cache = day_cache(fetcher, clock, storage)

        events = await cache.get(morning_of(4))

        assert [e.id for e in events] == ["x"]
        assert await storage.list_keys("events:") == set()

    @pytest.mark.asyncio
    async def test_unpersisted_range_is_fetched_again(
        self, fetcher: RecordingFetcher, clock: FakeClock
    ) -> None:
        cache = day_cache(fetcher, clock, BrokenStorage())

        await cache.get(morning_of(4))
        await cache.get(morning_of(4))

        assert len(fetcher.calls) == 2


class TestEntryBudget:
    """max_entries only matters once a write has been refused."""

    @pytest.mark.asyncio
    async def test_range_wider_than_budget_is_served_from_cache(
        self, fetcher: RecordingFetcher, clock: FakeClock, temp_dir: Path
    ) -> None:
        storage = JsonFileCacheStorage(temp_dir)
        cache = day_cache(fetcher, clock, storage, max_entries=24)
        month = RangeRequest(utc(2024, 3, 1), utc(2024, 4, 1))

        await cache.get(month)
        clock.advance(minutes=1)
        await cache.get(month)

        assert len(fetcher.calls) == 1
        assert len(await storage.list_keys("events:demo:")) == 32

    @pytest.mark.asyncio
    async def test_trim_leaves_other_sources(self, fetcher: RecordingFetcher, clock: FakeClock) -> None:
        storage = QuotaLimitedStorage(capacity=4)
        other = day_cache(fetcher, clock, storage, source="other")
        demo = day_cache(fetcher, clock, storage, max_entries=3)

        await other.get(morning_of(1))
        for day in range(4, 8):
            clock.advance(minutes=1)
            await demo.get(morning_of(day))

        assert await storage.list_keys("events:other:") == {"events:other:day:2024-03-01"}
        assert await storage.list_keys("events:demo:") == {
            "events:demo:day:2024-03-05",
            "events:demo:day:2024-03-06",
            "events:demo:day:2024-03-07",
        }
        assert storage.failed_writes == 1

    @pytest.mark.asyncio
    async def test_successful_writes_never_trim(self, fetcher: RecordingFetcher, clock: FakeClock) -> None:
        cache = BucketedEventCache(
            "demo", fetcher, ttl=300, grouping="day", max_entries=2, timezone="UTC", clock=clock
        )

        await cache.get(RangeRequest(utc(2024, 3, 4), utc(2024, 3, 11)))

        assert len(await cache.storage.list_keys("events:demo:")) == 8
