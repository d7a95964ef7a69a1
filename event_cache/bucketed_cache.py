"""
Range-bucketed event cache.

One BucketedEventCache is built per logical event source and reused for
every range query against it. Fetched events are split into day, week or
month buckets, each stored under its own key with the time it was produced,
so that different calendar views asking for overlapping ranges share the
same stored buckets.
"""

import asyncio
import math
import sys
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union
import pytz

from .bucketing import (
    Grouping, enumerate_bucket_keys, enumerate_buckets_for_event,
    parse_bucket_key, source_prefix
)
from .cache_storage import (
    CacheEntry, CacheStorageBackend, MemoryCacheStorage, PersistFailure, purge_entries
)
from .freshness import Freshness, as_timedelta, classify_entry
from .inflight import InFlightRequests
from .normalize import (
    NormalizedEvent, RangeRequest, dedupe_events, filter_overlapping, normalize_events
)
from .timezone_utils import resolve_timezone, utc_now


def _debug_print(message: str) -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] CACHE: {message}", file=sys.stderr)


Fetcher = Callable[[RangeRequest], Awaitable[list[Any]]]

# Fraction of max_entries kept after a failed write, so the retry has room
TRIM_KEEP_FRACTION = 0.9

_EPOCH = datetime(1970, 1, 1, tzinfo=pytz.UTC)


class FetchFailure(RuntimeError):
    """The source fetcher failed; the original error is chained as __cause__."""


class BucketedEventCache:
    """
    Cached, bucketed access to one event source.

    Policy (grouping, TTL, stale window, storage, entry budget) is fixed at
    construction. All mutable state (storage, in-flight registry) belongs to
    the instance.
    """

    def __init__(
        self,
        source: str,
        fetcher: Fetcher,
        ttl: Union[timedelta, int, float],
        stale_window: Union[timedelta, int, float] = 0,
        grouping: Union[Grouping, str] = Grouping.WEEK,
        storage: Optional[CacheStorageBackend] = None,
        max_entries: int = 24,
        timezone=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            source: Logical source name, used as key prefix
            fetcher: Coroutine function returning raw events for a RangeRequest
            ttl: Age up to which an entry is served as is
            stale_window: Extra age during which an entry is served while a
                background refresh runs (0 disables)
            grouping: Bucket granularity (day, week or month)
            storage: Storage backend; a private MemoryCacheStorage by default
            max_entries: Entry budget per source; a refused write trims the
                source to 90% of it before retrying
            timezone: Local timezone for bucket boundaries (name or pytz zone)
            clock: Returns the current aware datetime; injectable for tests
        """
        if not source:
            raise ValueError("source must be a non-empty string")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.source = source
        self.grouping = Grouping.parse(grouping)
        self.ttl = as_timedelta(ttl)
        self.stale_window = as_timedelta(stale_window)
        self.max_entries = max_entries

        self._fetcher = fetcher
        self._storage = storage if storage is not None else MemoryCacheStorage()
        self._tz = resolve_timezone(timezone) if timezone is not None else None
        self._clock = clock or utc_now
        self._in_flight = InFlightRequests()

    @property
    def storage(self) -> CacheStorageBackend:
        return self._storage

    @property
    def in_flight(self) -> InFlightRequests:
        return self._in_flight

    def _now(self) -> datetime:
        return self._clock()

    # ==================== Public API ====================

    async def get(self, request: RangeRequest) -> list[NormalizedEvent]:
        """
        Events overlapping ``request``, from cache where possible.

        Raises:
            InvalidRange: the range ends before it starts (before any I/O)
            FetchFailure: a required fetch failed
        """
        request.validate()

        keys = enumerate_bucket_keys(
            self.source, request.start, request.end, self.grouping, self._tz
        )
        now = self._now()
        collected: list[NormalizedEvent] = []
        needs_fetch = False
        has_stale = False

        for key in keys:
            entry = await self._storage.get(str(key))
            state = classify_entry(entry, now, self.ttl, self.stale_window)
            if state is Freshness.EXPIRED:
                needs_fetch = True
                break
            if state is Freshness.STALE:
                has_stale = True
            collected.extend(entry.data)

        if needs_fetch:
            events = await self._fetch_coordinated(request)
        else:
            if has_stale:
                self._refresh_in_background(request)
            events = collected

        return [e.copy() for e in filter_overlapping(dedupe_events(events), request)]

    async def clear(self, source: Optional[str] = None) -> int:
        """
        Purge stored entries and in-flight records.

        With a source, only that source's keys are removed from this
        instance's storage; without one, every event key is. Returns the
        number of entries removed.
        """
        removed = await purge_entries(self._storage, source)
        self._in_flight.clear(source)
        _debug_print(f"Cleared {removed} entries for {source or 'all sources'}")
        return removed

    async def wait_for_refreshes(self) -> None:
        """Wait for outstanding background refreshes to settle."""
        await self._in_flight.wait_all()

    # ==================== Fetch coordination ====================

    async def _fetch_coordinated(self, request: RangeRequest) -> list[NormalizedEvent]:
        key = InFlightRequests.range_key(self.source, request.start, request.end)
        task = self._in_flight.get(key)
        if task is None:
            task = self._in_flight.start(key, lambda: self._fetch_and_store(request))
        else:
            _debug_print(f"{self.source}: joining in-flight fetch {key}")
        # A caller giving up must not cancel the fetch other callers share
        return await asyncio.shield(task)

    def _refresh_in_background(self, request: RangeRequest) -> None:
        key = InFlightRequests.range_key(self.source, request.start, request.end)
        if self._in_flight.is_pending(key):
            return
        _debug_print(f"{self.source}: serving stale data, refreshing {key} in background")
        task = self._in_flight.start(key, lambda: self._fetch_and_store(request))
        task.add_done_callback(self._log_refresh_outcome)

    def _log_refresh_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _debug_print(f"WARNING: {self.source}: background refresh failed, keeping stale data: {exc}")

    # ==================== Fetch-and-store pipeline ====================

    async def _fetch_and_store(self, request: RangeRequest) -> list[NormalizedEvent]:
        """Fetch, normalize, bucket, gap-fill and persist one range."""
        _debug_print(
            f"{self.source}: fetching {request.start.isoformat()} to {request.end.isoformat()}"
        )
        try:
            raw_events = await self._fetcher(request)
        except Exception as e:
            raise FetchFailure(f"Fetching {self.source} failed: {e}") from e

        events = dedupe_events(normalize_events(raw_events, self._tz))

        buckets: dict[str, list[NormalizedEvent]] = {}
        for event in events:
            for bucket in enumerate_buckets_for_event(self.source, event, self.grouping, self._tz):
                buckets.setdefault(str(bucket), []).append(event)

        # Periods with no events are stored too, as confirmed-empty entries
        for bucket in enumerate_bucket_keys(
            self.source, request.start, request.end, self.grouping, self._tz
        ):
            buckets.setdefault(str(bucket), [])

        stored_at = self._now()
        for key, data in buckets.items():
            await self._store_entry(key, CacheEntry(data=data, stored_at=stored_at))

        _debug_print(f"{self.source}: got {len(events)} events in {len(buckets)} buckets")
        return events

    async def _store_entry(self, key: str, entry: CacheEntry) -> None:
        try:
            await self._storage.set(key, entry)
            return
        except PersistFailure as e:
            _debug_print(f"{self.source}: write of {key} failed ({e}), trimming")

        await self._trim(max(1, math.floor(self.max_entries * TRIM_KEEP_FRACTION)))
        try:
            await self._storage.set(key, entry)
        except PersistFailure as e:
            _debug_print(f"WARNING: {self.source}: giving up persisting {key}: {e}")

    # ==================== Eviction ====================

    async def _source_keys(self) -> list[str]:
        keys = []
        for key in await self._storage.list_keys(source_prefix(self.source)):
            parsed = parse_bucket_key(key)
            # "events:a:" also prefixes keys of a source named "a:b"
            if parsed is not None and parsed.source == self.source:
                keys.append(key)
        return keys

    async def _trim(self, keep: int) -> int:
        """
        Remove all but the ``keep`` most recently written entries of this source.

        Unreadable entries count as oldest. Returns the number removed.
        """
        stamped = []
        for key in await self._source_keys():
            entry = await self._storage.get(key)
            stamped.append((entry.stored_at if entry else _EPOCH, key))
        if len(stamped) <= keep:
            return 0

        stamped.sort(reverse=True)
        for _, key in stamped[keep:]:
            await self._storage.remove(key)
        removed = len(stamped) - keep
        _debug_print(f"{self.source}: trimmed {removed} entries, kept {keep}")
        return removed
