#!/usr/bin/env python3
"""
Kubux Event Cache - maintenance tool for the persisted calendar event cache.

Lists and clears cached buckets in the configured storage directory.
"""

import sys
import asyncio
import argparse
from datetime import datetime
from pathlib import Path

from event_cache.bucketing import KEY_NAMESPACE, parse_bucket_key, source_prefix
from event_cache.cache_manager import EventCacheManager
from event_cache.config import Config
from event_cache.timezone_utils import utc_now


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Kubux Event Cache - inspect and clear the persisted event cache"
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to configuration file (default: auto-detect)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    list_parser = commands.add_parser("list", help="List cached buckets")
    list_parser.add_argument("source", nargs="?", help="Only list this source")

    clear_parser = commands.add_parser("clear", help="Remove cached buckets")
    clear_parser.add_argument("source", nargs="?", help="Only clear this source (default: all)")

    return parser.parse_args(argv)


def load_config(config_path):
    """Load the configuration, falling back to defaults when none exists."""
    if config_path is not None:
        return Config.load(config_path)
    try:
        return Config.load()
    except FileNotFoundError:
        return Config()


def format_age(stored_at: datetime, now: datetime) -> str:
    seconds = int((now - stored_at).total_seconds())
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


async def list_entries(manager: EventCacheManager, source=None) -> int:
    """Print one line per cached bucket. Returns the number of buckets."""
    storage = manager.persisted_storage
    prefix = source_prefix(source) if source else f"{KEY_NAMESPACE}:"
    now = utc_now()
    count = 0
    for key in sorted(await storage.list_keys(prefix)):
        parsed = parse_bucket_key(key)
        if parsed is None or (source and parsed.source != source):
            continue
        entry = await storage.get(key)
        if entry is None:
            print(f"{key}  (unreadable)")
        else:
            print(f"{key}  {len(entry.data)} events  age {format_age(entry.stored_at, now)}")
        count += 1
    print(f"{count} cached buckets in {storage.storage_dir}")
    return count


async def run(args) -> int:
    config = load_config(args.config)
    if args.debug:
        print(f"Loaded configuration from: {args.config or Config.get_default_config_path()}")
        print(f"  Storage directory: {config.storage_dir}")
        print(f"  Configured sources: {len(config.sources)}")

    manager = EventCacheManager(config)
    if args.command == "list":
        await list_entries(manager, args.source)
    elif args.command == "clear":
        removed = await manager.clear(args.source)
        print(f"Removed {removed} cached buckets for {args.source or 'all sources'}")
    return 0


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except FileNotFoundError as e:
        print(f"Error: {e}")
        print("\nPlease create a configuration file at:")
        print(f"  - {Config.get_default_config_path()}")
        print("\nExample configuration:")
        print("""
[General]
storage_dir = "~/.local/share/kubux-event-cache/storage"
timezone = "Europe/Amsterdam"

[Cache.moodle]
ttl = 120
stale_window = 600
grouping = "month"
storage = "persisted"
max_entries = 24
""")
        return 1
    except ValueError as e:
        print(f"Error loading configuration: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
