"""
Event cache manager.

Builds one BucketedEventCache per registered source from the configured
policies and provides cross-source maintenance. Persisted sources share one
JSON storage directory; memory sources each get private storage.
"""

import sys
from datetime import datetime
from typing import Callable, Optional

from .bucketed_cache import BucketedEventCache, FetchFailure, Fetcher
from .cache_storage import CacheStorageBackend, JsonFileCacheStorage, MemoryCacheStorage, purge_entries
from .config import Config
from .normalize import NormalizedEvent, RangeRequest
from .timezone_utils import set_timezone


def _debug_print(message: str) -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] MANAGER: {message}", file=sys.stderr)


class EventCacheManager:
    """Manager for the caches of multiple event sources."""

    def __init__(
        self,
        config: Optional[Config] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or Config()
        self._clock = clock
        self._caches: dict[str, BucketedEventCache] = {}
        self._persisted: Optional[JsonFileCacheStorage] = None

        set_timezone(self.config.timezone)

    @property
    def persisted_storage(self) -> JsonFileCacheStorage:
        """The shared persisted backend, created on first use."""
        if self._persisted is None:
            self._persisted = JsonFileCacheStorage(
                self.config.storage_dir, self.config.quota_bytes
            )
        return self._persisted

    def _storage_for(self, kind: str) -> CacheStorageBackend:
        if kind == "persisted":
            return self.persisted_storage
        return MemoryCacheStorage()

    def register(self, source: str, fetcher: Fetcher) -> BucketedEventCache:
        """
        Create the cache for a source using its configured policy.

        Registering a source again replaces its cache (and its memory storage).
        """
        policy = self.config.get_source(source)
        cache = BucketedEventCache(
            source=source,
            fetcher=fetcher,
            ttl=policy.ttl,
            stale_window=policy.stale_window,
            grouping=policy.grouping,
            storage=self._storage_for(policy.storage),
            max_entries=policy.max_entries,
            timezone=self.config.timezone,
            clock=self._clock,
        )
        self._caches[source] = cache
        _debug_print(
            f"Registered {source}: {policy.grouping.value} buckets, ttl {policy.ttl}s, "
            f"stale {policy.stale_window}s, {policy.storage} storage"
        )
        return cache

    def unregister(self, source: str) -> bool:
        return self._caches.pop(source, None) is not None

    def get_cache(self, source: str) -> Optional[BucketedEventCache]:
        return self._caches.get(source)

    def get_sources(self) -> list[str]:
        return list(self._caches)

    async def get(self, source: str, request: RangeRequest) -> list[NormalizedEvent]:
        """Events of one source for a range."""
        cache = self._caches.get(source)
        if cache is None:
            raise KeyError(f"Unknown event source: {source}")
        return await cache.get(request)

    async def get_all(
        self, request: RangeRequest
    ) -> tuple[dict[str, list[NormalizedEvent]], dict[str, Exception]]:
        """
        Events of every source for a range.

        Sources fail independently. Returns (events by source, errors by
        source); a failing source appears only in the second dict so the
        caller can show it as "could not load events".
        """
        results = {}
        errors = {}
        for source, cache in self._caches.items():
            try:
                results[source] = await cache.get(request)
            except FetchFailure as e:
                _debug_print(f"WARNING: {source}: could not load events: {e}")
                errors[source] = e
        return results, errors

    async def clear(self, source: Optional[str] = None) -> int:
        """
        Purge cached entries and in-flight records for one or all sources.

        Covers every registered cache plus the shared persisted directory, so
        persisted data of sources not registered in this process is removed
        too. Returns the number of entries removed.
        """
        removed = 0
        for name, cache in self._caches.items():
            if source is None or source == name:
                removed += await cache.clear(source)

        if self._persisted is not None or self.config.storage_dir.exists():
            removed += await purge_entries(self.persisted_storage, source)

        _debug_print(f"Cleared {removed} entries for {source or 'all sources'}")
        return removed

    async def wait_for_refreshes(self) -> None:
        for cache in self._caches.values():
            await cache.wait_for_refreshes()
