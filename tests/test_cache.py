import json
from datetime import datetime, timedelta, timezone

import pytest

from cache import CacheLookup, DiscoveryCache
from models import CacheEntry


def test_set_then_get_returns_written_entry(tmp_path):
    cache = DiscoveryCache(str(tmp_path / "cache.json"))

    cache.set("https://example.com/", "https://example.com/feed", "Example")
    entry = cache.get("https://example.com/", 0)

    assert entry is not None
    assert entry.feed_url == "https://example.com/feed"
    assert entry.feed_title == "Example"
    assert entry.has_feed


def test_negative_entry_is_a_hit_distinct_from_absence(tmp_path):
    cache = DiscoveryCache(str(tmp_path / "cache.json"))
    cache.set_failed("https://nofeed.example/")

    entry, state = cache.lookup("https://nofeed.example/", 24)
    assert state is CacheLookup.HIT
    assert entry.feed_url == ""
    assert not entry.has_feed

    missing, missing_state = cache.lookup("https://never.example/", 24)
    assert missing is None
    assert missing_state is CacheLookup.MISS


def test_stale_entries_are_misses(tmp_path):
    cache = DiscoveryCache(str(tmp_path / "cache.json"))
    old = datetime.now(timezone.utc) - timedelta(hours=48)
    cache._entries["https://old.example/"] = CacheEntry(
        url="https://old.example/",
        feed_url="https://old.example/rss",
        feed_title="Old",
        timestamp=old,
    )

    assert cache.get("https://old.example/", 24) is None
    entry, state = cache.lookup("https://old.example/", 24)
    assert state is CacheLookup.STALE
    assert entry.feed_url == "https://old.example/rss"
    # A longer max age turns the same entry back into a hit
    assert cache.get("https://old.example/", 72) is not None


def test_repeated_set_overwrites_by_key(tmp_path):
    cache = DiscoveryCache(str(tmp_path / "cache.json"))
    cache.set_failed("https://example.com/")
    cache.set("https://example.com/", "https://example.com/atom.xml", "Example")

    assert len(cache) == 1
    assert cache.get("https://example.com/", 1).feed_url == "https://example.com/atom.xml"


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "nested" / "cache.json"
    cache = DiscoveryCache(str(path))
    cache.set("https://a.example/", "https://a.example/feed", "A")
    cache.set_failed("https://b.example/")
    cache.save()

    assert path.exists()
    assert not [p for p in path.parent.iterdir() if p.suffix == ".tmp"]

    reloaded = DiscoveryCache(str(path))
    reloaded.load()
    assert reloaded.stats() == (2, 1)
    assert reloaded.get("https://a.example/", 1).feed_title == "A"
    assert reloaded.get("https://b.example/", 1).feed_url == ""


def test_missing_file_loads_empty(tmp_path):
    cache = DiscoveryCache(str(tmp_path / "does-not-exist.json"))
    cache.load()
    assert len(cache) == 0


@pytest.mark.parametrize(
    "content",
    [
        b"\x00\x01not json at all",
        b'{"entries": ',
        b'["a", "list"]',
        b'{"entries": "nope"}',
    ],
)
def test_corrupt_file_loads_empty(tmp_path, content):
    path = tmp_path / "cache.json"
    path.write_bytes(content)

    cache = DiscoveryCache(str(path))
    cache.load()

    assert len(cache) == 0


def test_malformed_entries_are_skipped(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text(json.dumps({
        "version": 1,
        "entries": {
            "https://good.example/": {
                "url": "https://good.example/",
                "feed_url": "https://good.example/feed",
                "feed_title": "Good",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "https://bad.example/": {"url": "https://bad.example/", "timestamp": "yesterday"},
        },
    }))

    cache = DiscoveryCache(str(path))
    cache.load()

    assert len(cache) == 1
    assert "https://good.example/" in cache


def test_load_replaces_previous_contents(tmp_path):
    path = tmp_path / "cache.json"
    cache = DiscoveryCache(str(path))
    cache.set("https://a.example/", "https://a.example/feed", "A")
    cache.load()
    assert len(cache) == 0


def test_save_failure_propagates(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    cache = DiscoveryCache(str(blocker / "cache.json"))
    cache.set("https://a.example/", "https://a.example/feed", "A")

    with pytest.raises(OSError):
        cache.save()


def test_set_then_get_with_zero_max_age_is_fresh(tmp_path):
    cache = DiscoveryCache(str(tmp_path / "cache.json"))

    for i in range(200):
        cache.set(f"https://site{i}.example/", f"https://site{i}.example/feed", f"Site {i}")
        entry = cache.get(f"https://site{i}.example/", 0)
        assert entry is not None
        assert entry.feed_url == f"https://site{i}.example/feed"


def test_freshness_is_measured_in_whole_seconds():
    written = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    entry = CacheEntry(url="https://a.example/", feed_url="", feed_title="", timestamp=written)

    assert entry.is_fresh(0, written + timedelta(milliseconds=900))
    assert not entry.is_fresh(0, written + timedelta(seconds=1))
    assert entry.is_fresh(1, written + timedelta(hours=1))
    assert not entry.is_fresh(1, written + timedelta(hours=1, seconds=1))
