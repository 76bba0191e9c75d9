import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cache import DiscoveryCache
from errors import FetchError
from importer import ImportOptions
from models import Bookmark, CacheEntry, DiscoveryItem, DuplicatePolicy, ItemStatus
from processor import ExportOptions, process_bookmarks, process_import_items, process_items

PAGE = '<html><head><link rel="alternate" type="application/rss+xml" href="/feed"></head></html>'


def rss(title):
    return f"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>{title}</title><link>https://example.com/</link></channel></rss>""".encode()


class SiteFetcher:
    """Serves a page and an RSS feed for every host in `hosts`; anything else is a 404."""

    def __init__(self, hosts, flaky=None):
        self.pages = {f"https://{host}/": PAGE for host in hosts}
        self.feeds = {f"https://{host}/feed": rss(host) for host in hosts}
        self.flaky = dict(flaky or {})
        self.requested = []

    async def fetch_page(self, url, user_agent=None):
        self.requested.append(url)
        if self.flaky.get(url, 0) > 0:
            self.flaky[url] -= 1
            raise FetchError(url, "HTTP request failed with status 503: Service Unavailable", status=503)
        if url not in self.pages:
            raise FetchError(url, "HTTP request failed with status 404: Not Found", status=404)
        return self.pages[url]

    async def fetch_bytes(self, url, user_agent=None):
        self.requested.append(url)
        if url not in self.feeds:
            raise FetchError(url, "HTTP request failed with status 404: Not Found", status=404)
        return self.feeds[url]


class CountingCache(DiscoveryCache):
    def __init__(self, file_path):
        super().__init__(file_path)
        self.saves = 0

    def save(self):
        self.saves += 1
        super().save()


def _options(**overrides):
    options = ExportOptions(concurrency=4, max_age_hours=24, retry_attempts=1, retry_delay_base=0)
    for name, value in overrides.items():
        setattr(options, name, value)
    return options


@pytest.mark.asyncio
@pytest.mark.parametrize("total, concurrency", [(0, 4), (1, 1), (10, 1), (10, 3), (25, 16), (3, 50)])
async def test_every_item_processed_once_within_concurrency(total, concurrency):
    items = [DiscoveryItem(source=f"https://site{i}.example/") for i in range(total)]
    seen = []
    in_flight = 0
    peak = 0

    async def operation(item, stats):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        seen.append(item.source)
        in_flight -= 1

    stats = await process_items(items, concurrency, operation)

    assert sorted(seen) == sorted(item.source for item in items)
    assert len(seen) == len(set(seen))
    assert stats.processed == stats.total == total
    assert stats.succeeded == total
    assert peak <= concurrency
    assert stats.finished_at is not None


@pytest.mark.asyncio
async def test_failures_are_recorded_and_do_not_stop_the_batch():
    items = [DiscoveryItem(source=f"https://site{i}.example/") for i in range(5)]

    async def operation(item, stats):
        if item.source == "https://site2.example/":
            raise RuntimeError("boom")

    stats = await process_items(items, 2, operation)

    assert stats.processed == 5
    assert stats.failed == 1
    assert items[2].status is ItemStatus.FAILED
    assert str(items[2].error) == "boom"
    assert all(item.status is ItemStatus.SUCCESS for i, item in enumerate(items) if i != 2)


@pytest.mark.asyncio
async def test_invalid_concurrency_is_rejected():
    with pytest.raises(ValueError):
        await process_items([], 0, None)


@pytest.mark.asyncio
async def test_export_with_one_unreachable_bookmark(tmp_path):
    hosts = [f"site{i}.example" for i in range(9)]
    bookmarks = [Bookmark(id=i, url=f"https://{host}/") for i, host in enumerate(hosts)]
    bookmarks.insert(4, Bookmark(id=100, url="https://down.example/"))
    cache = CountingCache(str(tmp_path / "cache.json"))

    results, stats = await process_bookmarks(bookmarks, cache, SiteFetcher(hosts), _options())

    assert stats.processed == 10
    assert stats.succeeded == 9
    assert stats.failed == 1
    assert [result.url for result in results] == [bookmark.url for bookmark in bookmarks]
    assert not results[4].is_successful
    assert isinstance(results[4].error, FetchError)
    assert results[0].feed_url == "https://site0.example/feed"
    assert results[0].feed_title == "site0.example"
    assert cache.stats() == (10, 9)
    assert cache.saves == 1
    assert (tmp_path / "cache.json").exists()


@pytest.mark.asyncio
async def test_cache_hits_stale_entries_and_new_discoveries(tmp_path):
    hosts = ["fresh.example", "stale.example", "new.example"]
    cache = DiscoveryCache(str(tmp_path / "cache.json"))
    cache.set("https://fresh.example/", "https://fresh.example/cached-feed", "Cached")
    cache._entries["https://stale.example/"] = CacheEntry(
        url="https://stale.example/",
        feed_url="https://stale.example/old-feed",
        feed_title="Old",
        timestamp=datetime.now(timezone.utc) - timedelta(hours=48),
    )
    cache.set_failed("https://nofeed.example/")
    bookmarks = [Bookmark(id=i, url=f"https://{host}/") for i, host in enumerate(hosts + ["nofeed.example"])]
    fetcher = SiteFetcher(hosts)

    results, stats = await process_bookmarks(bookmarks, cache, fetcher, _options())

    assert stats.cache_hits == 2
    assert stats.stale_refreshes == 1
    assert stats.new_discoveries == 1
    assert results[0].feed_url == "https://fresh.example/cached-feed"
    assert results[1].feed_url == "https://stale.example/feed"
    assert not results[3].is_successful
    assert "https://fresh.example/" not in fetcher.requested
    assert "https://nofeed.example/" not in fetcher.requested


@pytest.mark.asyncio
async def test_transient_page_failure_is_retried(tmp_path):
    fetcher = SiteFetcher(["flaky.example"], flaky={"https://flaky.example/": 2})
    cache = DiscoveryCache(str(tmp_path / "cache.json"))

    results, stats = await process_bookmarks(
        [Bookmark(id=1, url="https://flaky.example/")], cache, fetcher, _options(retry_attempts=3)
    )

    assert stats.succeeded == 1
    assert results[0].feed_url == "https://flaky.example/feed"
    assert fetcher.requested.count("https://flaky.example/") == 3


@pytest.mark.asyncio
async def test_cache_save_failure_keeps_results(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    cache = DiscoveryCache(str(blocker / "cache.json"))

    results, stats = await process_bookmarks(
        [Bookmark(id=1, url="https://ok.example/")], cache, SiteFetcher(["ok.example"]), _options()
    )

    assert results[0].is_successful
    assert stats.succeeded == 1


class ImportClient:
    def __init__(self, existing):
        self.existing = existing
        self.created = []
        self.updated = []

    async def get_bookmark_by_url(self, url):
        return self.existing.get(url)

    async def create_bookmark(self, url, title, description, tags):
        self.created.append(url)
        return Bookmark(id=len(self.created), url=url)

    async def update_bookmark(self, bookmark_id, url, title, description, tags):
        self.updated.append(bookmark_id)


def _import_items():
    return [
        DiscoveryItem(source="https://known.example/feed", page_url_hint="https://known.example/", title="Known"),
        DiscoveryItem(source="https://new.example/feed", page_url_hint="https://new.example/", title="New"),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("policy, imported, updated, skipped", [
    (DuplicatePolicy.SKIP, 1, 0, 1),
    (DuplicatePolicy.UPDATE, 1, 1, 0),
])
async def test_import_counts_by_duplicate_policy(policy, imported, updated, skipped):
    client = ImportClient({"https://known.example/": Bookmark(id=5, url="https://known.example/")})
    options = ImportOptions(duplicates=policy, retry_attempts=1, retry_delay_base=0)

    stats = await process_import_items(_import_items(), SiteFetcher([]), client, options, concurrency=2)

    assert stats.processed == 2
    assert stats.imported == imported
    assert stats.updated == updated
    assert stats.skipped == skipped
    assert stats.failed == 0
    assert client.created == ["https://new.example/"]


@pytest.mark.asyncio
async def test_import_dry_run_without_client():
    options = ImportOptions(dry_run=True, retry_attempts=1, retry_delay_base=0)

    stats = await process_import_items(_import_items(), SiteFetcher([]), None, options, concurrency=1)

    assert stats.imported == 2
    assert stats.failed == 0
