"""Tests for the kubux-event-cache command line tool."""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

import kubux_event_cache
from event_cache.cache_storage import CacheEntry, JsonFileCacheStorage
from event_cache.normalize import NormalizedEvent

from conftest import utc


@pytest.fixture
def config_file(temp_dir: Path) -> Path:
    storage_dir = temp_dir / "storage"
    path = temp_dir / "config.toml"
    path.write_text(
        f'[General]\nstorage_dir = "{storage_dir}"\ntimezone = "UTC"\n\n'
        '[Cache.moodle]\nstorage = "persisted"\n'
    )

    storage = JsonFileCacheStorage(storage_dir)
    event = NormalizedEvent("1", utc(2024, 3, 4, 10), utc(2024, 3, 4, 11), {"title": "X"})
    entries = {
        "events:moodle:week:2024-03-04": CacheEntry([event], utc(2024, 3, 4, 12)),
        "events:moodle:week:2024-03-11": CacheEntry([], utc(2024, 3, 4, 12)),
        "events:ics:day:2024-03-04": CacheEntry([], utc(2024, 3, 4, 12)),
    }
    for key, entry in entries.items():
        asyncio.run(storage.set(key, entry))
    return path


class TestCommands:
    def test_list_all(self, config_file: Path, capsys) -> None:
        assert kubux_event_cache.main(["-c", str(config_file), "list"]) == 0

        out = capsys.readouterr().out
        assert "events:moodle:week:2024-03-04  1 events" in out
        assert "events:ics:day:2024-03-04  0 events" in out
        assert "3 cached buckets in" in out

    def test_list_one_source(self, config_file: Path, capsys) -> None:
        kubux_event_cache.main(["-c", str(config_file), "list", "ics"])

        out = capsys.readouterr().out
        assert "moodle" not in out
        assert "1 cached buckets in" in out

    def test_clear_source(self, config_file: Path, temp_dir: Path, capsys) -> None:
        assert kubux_event_cache.main(["-c", str(config_file), "clear", "moodle"]) == 0

        assert "Removed 2 cached buckets for moodle" in capsys.readouterr().out
        remaining = asyncio.run(JsonFileCacheStorage(temp_dir / "storage").list_keys("events:"))
        assert remaining == {"events:ics:day:2024-03-04"}

    def test_clear_all(self, config_file: Path, capsys) -> None:
        kubux_event_cache.main(["-c", str(config_file), "clear"])

        assert "Removed 3 cached buckets for all sources" in capsys.readouterr().out

    def test_missing_config_file(self, temp_dir: Path, capsys) -> None:
        assert kubux_event_cache.main(["-c", str(temp_dir / "missing.toml"), "list"]) == 1

        out = capsys.readouterr().out
        assert "Configuration file not found" in out
        assert "[Cache.moodle]" in out

    def test_invalid_config(self, temp_dir: Path, capsys) -> None:
        path = temp_dir / "bad.toml"
        path.write_text('[Cache.moodle]\ngrouping = "year"\n')

        assert kubux_event_cache.main(["-c", str(path), "list"]) == 1
        assert "Error loading configuration" in capsys.readouterr().out

    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            kubux_event_cache.parse_args([])


class TestFormatAge:
    @pytest.mark.parametrize(
        ("delta", "expected"),
        [
            (timedelta(seconds=42), "42s"),
            (timedelta(minutes=5, seconds=3), "5m"),
            (timedelta(hours=2), "2h"),
            (timedelta(days=3, hours=1), "3d"),
        ],
    )
    def test_units(self, delta: timedelta, expected: str) -> None:
        now = utc(2024, 3, 4, 12)

        assert kubux_event_cache.format_age(now - delta, now) == expected
