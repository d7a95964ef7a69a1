"""
Cache storage backends for Kubux Event Cache.

Abstract base class and implementations for storing cache entries, either
in process memory or on disk. Backends are interchangeable; only the
persisted one can refuse a write (quota, serialization, disk errors).
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

from .bucketing import KEY_NAMESPACE, parse_bucket_key, source_prefix
from .normalize import NormalizedEvent


DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


def _debug_print(msg: str) -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] STORAGE: {msg}", file=sys.stderr)


class PersistFailure(RuntimeError):
    """A backend could not durably store an entry."""


class CacheEntry:
    """
    Events stored for one bucket, with the time they were produced.

    An entry with no events is a confirmed-empty marker.
    """
    def __init__(self, data: list[NormalizedEvent], stored_at: datetime):
        self.data = data
        self.stored_at = stored_at

    def to_dict(self) -> dict:
        return {
            "stored_at": self.stored_at.isoformat(),
            "data": [e.to_dict() for e in self.data],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CacheEntry':
        return cls(
            data=[NormalizedEvent.from_dict(e) for e in data.get("data", [])],
            stored_at=datetime.fromisoformat(data["stored_at"]),
        )


class CacheStorageBackend(ABC):
    """
    Abstract base class for cache storage backends.

    All operations are coroutines so that persisted implementations can do
    I/O without the cache caring which backend it talks to.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Entry stored under key, or None."""
        pass

    @abstractmethod
    async def set(self, key: str, entry: CacheEntry) -> None:
        """Store an entry. Raises PersistFailure if it cannot be stored."""
        pass

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""
        pass

    @abstractmethod
    async def list_keys(self, prefix: str) -> set[str]:
        """All stored keys starting with prefix."""
        pass


class MemoryCacheStorage(CacheStorageBackend):
    """Volatile in-process storage. Never fails, never evicts."""

    def __init__(self):
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    async def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    async def list_keys(self, prefix: str) -> set[str]:
        return {k for k in self._entries if k.startswith(prefix)}


class JsonFileCacheStorage(CacheStorageBackend):
    """
    JSON file-based cache storage with a size quota.

    Structure:
    - {storage_dir}/{quoted key}.json - one file per bucket key

    A write that would push the total size of the directory above
    ``quota_bytes`` is refused with PersistFailure.
    """

    def __init__(self, storage_dir: Path, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.storage_dir = Path(storage_dir)
        self.quota_bytes = quota_bytes
        # One writer at a time: the quota check and the rename must not interleave
        self._write_lock = asyncio.Lock()

        self.storage_dir.mkdir(parents=True, exist_ok=True)

        _debug_print(f"Initialized JSON cache storage at {self.storage_dir} (quota {quota_bytes} bytes)")

    def _key_to_filename(self, key: str) -> str:
        """Convert key to a safe, reversible filename."""
        return quote(key, safe="") + ".json"

    def _filename_to_key(self, filename: str) -> str:
        return unquote(filename[:-len(".json")])

    def _entry_file(self, key: str) -> Path:
        return self.storage_dir / self._key_to_filename(key)

    def used_bytes(self) -> int:
        """Total size of all entry files."""
        total = 0
        for f in self.storage_dir.glob("*.json"):
            try:
                total += f.stat().st_size
            except OSError:
                pass
        return total

    # File access runs in worker threads so the event loop is not blocked

    async def get(self, key: str) -> Optional[CacheEntry]:
        return await asyncio.to_thread(self._read_entry, key)

    async def set(self, key: str, entry: CacheEntry) -> None:
        payload = {"key": key}
        try:
            payload.update(entry.to_dict())
            encoded = json.dumps(payload, ensure_ascii=False).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise PersistFailure(f"Cannot serialize entry {key}: {e}") from e

        async with self._write_lock:
            await asyncio.to_thread(self._write_entry, key, encoded)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_entry, key)

    async def list_keys(self, prefix: str) -> set[str]:
        return await asyncio.to_thread(self._scan_keys, prefix)

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        file_path = self._entry_file(key)
        if not file_path.exists():
            return None

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return CacheEntry.from_dict(data)
        except Exception as e:
            _debug_print(f"Error loading entry {key}: {e}")
            return None

    def _write_entry(self, key: str, encoded: bytes) -> None:
        file_path = self._entry_file(key)
        existing = file_path.stat().st_size if file_path.exists() else 0
        if self.used_bytes() - existing + len(encoded) > self.quota_bytes:
            raise PersistFailure(f"Quota of {self.quota_bytes} bytes exceeded writing {key}")

        tmp_path = file_path.with_suffix(".tmp")
        try:
            with open(tmp_path, 'wb') as f:
                f.write(encoded)
            os.replace(tmp_path, file_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistFailure(f"Error writing entry {key}: {e}") from e

    def _remove_entry(self, key: str) -> None:
        try:
            self._entry_file(key).unlink(missing_ok=True)
        except OSError as e:
            _debug_print(f"Error removing entry {key}: {e}")

    def _scan_keys(self, prefix: str) -> set[str]:
        keys = set()
        for f in self.storage_dir.glob("*.json"):
            key = self._filename_to_key(f.name)
            if key.startswith(prefix):
                keys.add(key)
        return keys


def get_default_storage_dir() -> Path:
    """Get the default storage directory respecting XDG."""
    xdg_data = os.environ.get('XDG_DATA_HOME', os.path.expanduser('~/.local/share'))
    return Path(xdg_data) / 'kubux-event-cache' / 'storage'


def create_storage_backend(
    kind: str = "memory",
    storage_dir: Optional[Path] = None,
    quota_bytes: int = DEFAULT_QUOTA_BYTES
) -> CacheStorageBackend:
    """Factory function to create a storage backend ("memory" or "persisted")."""
    if kind == "memory":
        return MemoryCacheStorage()
    if kind == "persisted":
        if storage_dir is None:
            storage_dir = get_default_storage_dir()
        return JsonFileCacheStorage(storage_dir, quota_bytes)
    raise ValueError(f"Unknown storage kind '{kind}' (expected memory or persisted)")


async def purge_entries(storage: CacheStorageBackend, source: Optional[str] = None) -> int:
    """
    Remove every bucket entry of one source (or of all sources) from a backend.

    Returns the number of entries removed.
    """
    prefix = source_prefix(source) if source is not None else f"{KEY_NAMESPACE}:"
    removed = 0
    for key in await storage.list_keys(prefix):
        parsed = parse_bucket_key(key)
        if parsed is None or (source is not None and parsed.source != source):
            continue
        await storage.remove(key)
        removed += 1
    return removed
