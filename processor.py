#!/usr/bin/env python3
"""
Concurrent processing of discovery items in both directions.

`process_items` is a fixed-size pool of asyncio workers draining a queue
that is completely filled before any worker starts. Each worker runs the
per-item operation, marks the item failed if the operation raises, and
moves on, so one bad item never stops the batch. Statistics are finished,
and the discovery cache saved, only after every worker has returned.

Workers share the event loop, so the only suspension points are network I/O
and backoff sleeps; the counters in ProcessingStats are updated between
those points and need no lock.
"""

from asyncio import Queue, QueueEmpty, gather
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from cache import CacheLookup, DiscoveryCache
from config import get_logger
from discovery import discover_feed
from errors import DiscoveryError, is_transient
from importer import ImportOptions, discover_bookmark_url, resolve_bookmark
from models import Bookmark, DiscoveryItem, FeedDiscoveryResult, ItemStatus, ProcessingStats
from telemetry import trace_span
from utils import retry_with_backoff

logger = get_logger("processor")

ItemOperation = Callable[[DiscoveryItem, ProcessingStats], Awaitable[None]]


@dataclass
class ExportOptions:
    concurrency: int = 16
    max_age_hours: float = 720
    user_agent: Optional[str] = None
    retry_attempts: int = 3
    retry_delay_base: float = 1.0
    save_failed_html: bool = False
    debug_output_dir: str = ""


def _record_outcome(item: DiscoveryItem, stats: ProcessingStats) -> None:
    """Count an item whose terminal status is known."""
    if item.status is ItemStatus.FAILED:
        stats.increment("failed")
    elif item.status is ItemStatus.SKIPPED:
        stats.increment("skipped")
    elif item.status is ItemStatus.SUCCESS:
        stats.increment("succeeded")
    else:
        logger.warning(f"Item {item.source} finished with unexpected status {item.status.value}")
    stats.increment("processed")


async def _worker(worker_id: int, queue: Queue, operation: ItemOperation, stats: ProcessingStats) -> None:
    logger.debug(f"Worker {worker_id} started")
    while True:
        try:
            item = queue.get_nowait()
        except QueueEmpty:
            break
        try:
            await operation(item, stats)
        except Exception as e:
            logger.error(f"Worker {worker_id}: processing {item.source} failed: {e}")
            item.mark_failed(e)
        else:
            if item.status is ItemStatus.PENDING:
                item.status = ItemStatus.SUCCESS
        finally:
            queue.task_done()
        _record_outcome(item, stats)
        logger.debug(
            f"Worker {worker_id} finished {item.source} ({item.status.value}), "
            f"{stats.processed}/{stats.total} processed"
        )
    logger.debug(f"Worker {worker_id} finished")


@trace_span(
    "process_items",
    tracer_name="processor",
    attr_from_args=lambda items, concurrency, *args, **kwargs: {
        "items.total": len(items),
        "processor.concurrency": concurrency,
    },
)
async def process_items(
    items: List[DiscoveryItem],
    concurrency: int,
    operation: ItemOperation,
    stats: Optional[ProcessingStats] = None,
    cache: Optional[DiscoveryCache] = None,
) -> ProcessingStats:
    """Run `operation` over every item with at most `concurrency` in flight.

    Every item is processed exactly once. When `cache` is given it is saved
    once after all workers have finished; an OSError from that save
    propagates after the statistics are final.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    stats = stats or ProcessingStats(total=len(items))
    stats.total = len(items)

    queue: Queue = Queue()
    for item in items:
        queue.put_nowait(item)

    workers = min(concurrency, len(items)) or 1
    logger.info(f"Processing {len(items)} items with {workers} workers")
    await gather(*(_worker(i + 1, queue, operation, stats) for i in range(workers)))
    stats.finish()

    logger.info(
        f"Completed processing: {stats.processed}/{stats.total} processed, "
        f"{stats.succeeded} succeeded, {stats.failed} failed in {stats.duration:.1f}s"
    )
    if cache is not None:
        cache.save()
        total, with_feed = cache.stats()
        logger.debug(f"Saved discovery cache ({total} entries, {with_feed} with feeds)")
    return stats


def _result_for(item: DiscoveryItem) -> FeedDiscoveryResult:
    if item.status is ItemStatus.SUCCESS:
        return FeedDiscoveryResult(url=item.source, feed_url=item.discovered_url, feed_title=item.discovered_title)
    return FeedDiscoveryResult(url=item.source, error=item.error)


async def process_bookmarks(
    bookmarks: Iterable[Bookmark],
    cache: DiscoveryCache,
    fetcher,
    options: ExportOptions,
) -> Tuple[List[FeedDiscoveryResult], ProcessingStats]:
    """Discover the feed of every bookmark, consulting and updating `cache`.

    Returns one result per bookmark, in input order, and the run statistics.
    """
    items = [DiscoveryItem.from_bookmark(bookmark) for bookmark in bookmarks]

    async def export_item(item: DiscoveryItem, stats: ProcessingStats) -> None:
        entry, state = cache.lookup(item.source, options.max_age_hours)
        if state is CacheLookup.HIT:
            stats.increment("cache_hits")
            item.from_cache = True
            if not entry.has_feed:
                item.mark_failed(DiscoveryError("no feed found (cached)"))
                return
            item.update_with_discovered_data(entry.feed_url, entry.feed_title)
            item.status = ItemStatus.SUCCESS
            return

        stats.increment("stale_refreshes" if state is CacheLookup.STALE else "new_discoveries")

        async def attempt() -> FeedDiscoveryResult:
            result = await discover_feed(
                item.source,
                fetcher,
                user_agent=options.user_agent,
                save_failed_html=options.save_failed_html,
                debug_output_dir=options.debug_output_dir,
            )
            if result.error is not None and is_transient(result.error):
                raise result.error
            return result

        try:
            result = await retry_with_backoff(
                attempt,
                attempts=options.retry_attempts,
                base_delay=options.retry_delay_base,
                operation_name=f"feed discovery for {item.source}",
            )
        except Exception:
            cache.set_failed(item.source)
            raise

        if result.is_successful:
            cache.set(item.source, result.feed_url, result.feed_title)
            item.update_with_discovered_data(result.feed_url, result.feed_title)
            item.status = ItemStatus.SUCCESS
        else:
            cache.set_failed(item.source)
            item.mark_failed(result.error or DiscoveryError("feed has no title"))

    stats = ProcessingStats(total=len(items))
    try:
        await process_items(items, options.concurrency, export_item, stats=stats, cache=cache)
    except OSError as e:
        # Discovery results are still valid; only the next run loses the cache
        logger.error(f"Failed to save discovery cache to {cache.file_path}: {e}")
    return [_result_for(item) for item in items], stats


async def process_import_items(
    items: List[DiscoveryItem],
    fetcher,
    client,
    options: ImportOptions,
    concurrency: int = 16,
) -> ProcessingStats:
    """Discover a page for every feed entry and create/update its bookmark."""

    async def import_item(item: DiscoveryItem, stats: ProcessingStats) -> None:
        await retry_with_backoff(
            lambda: discover_bookmark_url(item, fetcher),
            attempts=options.retry_attempts,
            base_delay=options.retry_delay_base,
            operation_name=f"URL discovery for {item.source}",
        )
        await retry_with_backoff(
            lambda: resolve_bookmark(item, client, options),
            attempts=options.retry_attempts,
            base_delay=options.retry_delay_base,
            operation_name=f"bookmark processing for {item.final_url}",
        )
        if item.status is ItemStatus.SKIPPED:
            return
        stats.increment("updated" if item.was_updated else "imported")

    return await process_items(items, concurrency, import_item)
