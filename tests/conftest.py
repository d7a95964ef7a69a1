"""
Pytest configuration and shared fixtures for Kubux Event Cache tests.
"""

from __future__ import annotations

import asyncio
import copy
import tempfile
from collections.abc import Generator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pytest
import pytz

from event_cache.cache_storage import MemoryCacheStorage, PersistFailure
from event_cache.timezone_utils import get_timezone_name, set_timezone


START = datetime(2024, 3, 4, 12, 0, tzinfo=pytz.UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingFetcher:
    """Fetcher double that records every request it receives.

    Set ``gate`` to an asyncio.Event to hold fetches until it is set, and
    ``error`` to make the next fetches fail.
    """

    def __init__(self, events: Optional[list] = None):
        self.events = events or []
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls = []

    async def __call__(self, request):
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.events)


class QuotaLimitedStorage(MemoryCacheStorage):
    """Memory storage that refuses new keys once ``capacity`` keys are stored."""

    def __init__(self, capacity: int):
        super().__init__()
        self.capacity = capacity
        self.failed_writes = 0

    async def set(self, key, entry) -> None:
        keys = await self.list_keys("")
        if key not in keys and len(keys) >= self.capacity:
            self.failed_writes += 1
            raise PersistFailure("quota exceeded")
        await super().set(key, entry)


class BrokenStorage(MemoryCacheStorage):
    """Storage whose writes always fail."""

    async def set(self, key, entry) -> None:
        raise PersistFailure("disk full")


@pytest.fixture(autouse=True)
def utc_timezone() -> Generator[None, None, None]:
    """Run every test with UTC as the local timezone."""
    previous = get_timezone_name()
    set_timezone("UTC")
    yield
    set_timezone(previous)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> RecordingFetcher:
    return RecordingFetcher()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to the temporary directory.
    """
    with tempfile.TemporaryDirectory() as temp_path:
        yield Path(temp_path)


def utc(*args) -> datetime:
    """Shorthand for an aware UTC datetime."""
    return datetime(*args, tzinfo=pytz.UTC)
