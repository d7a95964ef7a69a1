"""
Configuration parser for Kubux Event Cache.

Handles TOML file parsing of the general storage settings and the per-source
cache policies.
"""

import tomllib
import os
import sys
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from .bucketing import Grouping
from .cache_storage import DEFAULT_QUOTA_BYTES, get_default_storage_dir


STORAGE_KINDS = ("memory", "persisted")


@dataclass
class CacheSourceConfig:
    """Cache policy for one event source."""
    name: str
    ttl: int = 300          # Seconds an entry is served without revalidation
    stale_window: int = 0   # Extra seconds stale data may be served (0 to disable)
    grouping: Grouping = Grouping.WEEK
    storage: str = "memory"  # "memory" or "persisted"
    max_entries: int = 24    # Trimmed to 90% of this when a write is refused

    def __post_init__(self):
        self.grouping = Grouping.parse(self.grouping)
        if self.storage not in STORAGE_KINDS:
            raise ValueError(
                f"Unknown storage '{self.storage}' for cache '{self.name}' (expected memory or persisted)"
            )
        if self.ttl < 0 or self.stale_window < 0:
            raise ValueError(f"ttl and stale_window must not be negative for cache '{self.name}'")
        if self.max_entries < 1:
            raise ValueError(f"max_entries must be at least 1 for cache '{self.name}'")

    @classmethod
    def from_dict(cls, name: str, value: dict) -> 'CacheSourceConfig':
        return cls(
            name=name,
            ttl=value.get('ttl', cls.ttl),
            stale_window=value.get('stale_window', cls.stale_window),
            grouping=value.get('grouping', cls.grouping),
            storage=value.get('storage', cls.storage),
            max_entries=value.get('max_entries', cls.max_entries),
        )


@dataclass
class Config:
    """Main configuration container for Kubux Event Cache."""

    storage_dir: Path = field(default_factory=get_default_storage_dir)
    timezone: str = "Europe/Amsterdam"
    quota_bytes: int = DEFAULT_QUOTA_BYTES
    sources: list[CacheSourceConfig] = field(default_factory=list)

    @classmethod
    def get_default_config_path(cls) -> Path:
        """Get the default configuration file path."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
        return Path(xdg_config) / 'kubux-event-cache' / 'kubux-event-cache.toml'

    def get_source(self, name: str) -> CacheSourceConfig:
        """Policy for a source; sources without a section get the defaults."""
        for source in self.sources:
            if source.name == name:
                return source
        return CacheSourceConfig(name=name)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'Config':
        """Load configuration from TOML file."""
        if config_path is None:
            config_path = cls.get_default_config_path()

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'rb') as f:
            data = tomllib.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        # Parse General section
        general = data.get('General', {})
        storage_dir_str = general.get('storage_dir', str(get_default_storage_dir()))
        storage_dir = Path(os.path.expanduser(storage_dir_str))
        timezone = general.get('timezone', cls.timezone)
        quota_bytes = general.get('quota_bytes', cls.quota_bytes)

        # Parse cache sources
        # Supports both [Cache.SourceName] and [Cache] with nested sub-tables
        sources = []
        for key, value in data.items():
            # Format 1: [Cache.SourceName] written with a quoted dotted key
            if key.startswith('Cache.') and isinstance(value, dict):
                name = key.split('.', 1)[1]
                sources.append(CacheSourceConfig.from_dict(name, value))

            # Format 2: [Cache] with nested [Cache.SourceName] sub-tables
            elif key == 'Cache' and isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    if isinstance(sub_value, dict):
                        sources.append(CacheSourceConfig.from_dict(sub_key, sub_value))

        print(f"DEBUG: Total cache sources configured: {len(sources)}", file=sys.stderr)

        return cls(
            storage_dir=storage_dir,
            timezone=timezone,
            quota_bytes=quota_bytes,
            sources=sources,
        )
