"""
In-flight request coordination.

Keeps at most one pending fetch per exact range key. Callers asking for a
range that is already being fetched attach to the pending task instead of
starting another one. Records are dropped as soon as their task settles.
"""

import asyncio
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .bucketing import source_prefix
from .normalize import format_instant


def _debug_print(msg: str) -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] INFLIGHT: {msg}", file=sys.stderr)


class InFlightRequests:
    """
    Registry of pending fetch tasks keyed by canonical range key.

    Tasks are never cancelled from here: once a fetch is issued it runs to
    completion, even if every caller interested in it has gone away.
    """

    def __init__(self):
        self._pending: dict[str, asyncio.Task] = {}
        # Forgotten but unfinished tasks, referenced until they settle
        self._detached: set[asyncio.Task] = set()

    @staticmethod
    def range_key(source: str, start: datetime, end: datetime) -> str:
        """Canonical key for an exact (source, start, end) request."""
        return f"{source_prefix(source)}range:{format_instant(start)}/{format_instant(end)}"

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._pending.get(key)

    def start(self, key: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """
        Start ``factory()`` as a task registered under key.

        The record exists before the task first runs, so a caller arriving
        right after this returns will find it.
        """
        async def _run():
            try:
                return await factory()
            finally:
                if self._pending.get(key) is asyncio.current_task():
                    del self._pending[key]

        task = asyncio.get_running_loop().create_task(_run(), name=key)
        self._pending[key] = task
        return task

    def is_pending(self, key: str) -> bool:
        """Check if a key currently has a fetch in flight."""
        return key in self._pending

    def count(self) -> int:
        return len(self._pending)

    def clear(self, source: Optional[str] = None) -> int:
        """
        Forget in-flight records for one source (or all).

        The underlying tasks keep running; their results simply stop being
        shared with new callers. Returns the number of records dropped.
        """
        if source is None:
            keys = list(self._pending)
        else:
            prefix = source_prefix(source) + "range:"
            keys = [k for k in self._pending if k.startswith(prefix)]
        for k in keys:
            task = self._pending.pop(k)
            if not task.done():
                self._detached.add(task)
                task.add_done_callback(self._detached.discard)
        dropped = len(keys)
        if dropped:
            _debug_print(f"Forgot {dropped} in-flight request(s)")
        return dropped

    async def wait_all(self) -> None:
        """Wait until every task pending right now has settled, ignoring errors."""
        tasks = list(self._pending.values()) + list(self._detached)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
