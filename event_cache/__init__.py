"""
Kubux Event Cache

This module provides a range-bucketed cache for calendar event sources:
- Configuration parsing (config.py)
- Bucketing and key derivation (bucketing.py)
- Event normalization (normalize.py)
- Memory and persisted storage backends (cache_storage.py)
- TTL / stale-while-revalidate classification (freshness.py)
- In-flight request coordination (inflight.py)
- The bucketed cache itself (bucketed_cache.py)
- Multi-source manager (cache_manager.py)
"""

from .config import Config, CacheSourceConfig
from .bucketing import Grouping, BucketKey
from .normalize import RangeRequest, NormalizedEvent, InvalidRange
from .cache_storage import (
    CacheEntry, CacheStorageBackend, MemoryCacheStorage, JsonFileCacheStorage,
    PersistFailure, create_storage_backend
)
from .freshness import Freshness
from .bucketed_cache import BucketedEventCache, FetchFailure
from .cache_manager import EventCacheManager

__all__ = [
    'Config',
    'CacheSourceConfig',
    'Grouping',
    'BucketKey',
    'RangeRequest',
    'NormalizedEvent',
    'InvalidRange',
    'CacheEntry',
    'CacheStorageBackend',
    'MemoryCacheStorage',
    'JsonFileCacheStorage',
    'PersistFailure',
    'create_storage_backend',
    'Freshness',
    'BucketedEventCache',
    'FetchFailure',
    'EventCacheManager',
]
