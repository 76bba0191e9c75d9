#!/usr/bin/env python3
"""
Import direction: turn OPML feed entries into Linkding bookmarks.

`discover_bookmark_url` picks the page to bookmark for a feed entry and
`resolve_bookmark` decides whether that page is created, updated or skipped
in Linkding.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from config import get_logger
from errors import ConfigurationError, DiscoveryError, FeedParseError, FetchError
from feed_parser import fetch_feed
from models import DiscoveryItem, DuplicatePolicy, ItemStatus
from telemetry import trace_span

logger = get_logger("importer")


@dataclass
class ImportOptions:
    duplicates: DuplicatePolicy = DuplicatePolicy.SKIP
    tags: List[str] = field(default_factory=list)
    dry_run: bool = False
    retry_attempts: int = 3
    retry_delay_base: float = 1.0


def parse_duplicate_policy(value) -> DuplicatePolicy:
    """Validate a duplicate policy name.

    Raises:
        ConfigurationError: `value` is neither "skip" nor "update".
    """
    if isinstance(value, DuplicatePolicy):
        return value
    try:
        return DuplicatePolicy(str(value).strip().lower())
    except ValueError:
        raise ConfigurationError(
            f"invalid duplicates policy {value!r}: must be 'skip' or 'update'"
        ) from None


@trace_span(
    "discover_bookmark_url",
    tracer_name="importer",
    attr_from_args=lambda item, fetcher: {"feed.url": item.source},
)
async def discover_bookmark_url(item: DiscoveryItem, fetcher) -> None:
    """Fill in the URL, title and description to bookmark for a feed entry.

    Tiers, first match wins:
    1. the entry's htmlUrl, when present and different from the feed URL
       (used as-is, never fetched)
    2. the website link declared inside the feed itself
    3. the feed URL

    Raises:
        DiscoveryError: The entry has neither a feed URL nor a page hint.
    """
    logger.debug(f"Starting URL discovery for '{item.title}' (xml_url={item.source!r}, html_url={item.page_url_hint!r})")

    if item.page_url_hint and item.page_url_hint != item.source:
        logger.debug(f"Using htmlUrl from OPML for '{item.title}': {item.page_url_hint}")
        item.update_with_discovered_data(item.page_url_hint, item.title, item.description)
        return

    if item.source:
        try:
            feed = await fetch_feed(item.source, fetcher)
        except (FetchError, FeedParseError) as e:
            logger.debug(f"Failed to read feed {item.source}, will fall back to the feed URL: {e}")
        else:
            if feed.link:
                logger.debug(f"Discovered website link {feed.link} from {feed.feed_type} feed {item.source}")
                item.update_with_discovered_data(
                    feed.link,
                    feed.title or item.title,
                    feed.description or item.description,
                )
                return

    if not item.source:
        raise DiscoveryError("no URL available for bookmark")

    logger.info(f"No website link found for '{item.title}', falling back to feed URL {item.source}")
    item.update_with_discovered_data(item.source, item.title, item.description)


@trace_span(
    "resolve_bookmark",
    tracer_name="importer",
    attr_from_args=lambda item, client, options: {"bookmark.url": item.final_url},
)
async def resolve_bookmark(item: DiscoveryItem, client, options: ImportOptions) -> None:
    """Create, update or skip the Linkding bookmark for a discovered item.

    Sets `item.status` to SUCCESS or SKIPPED (and `was_updated` for updates).
    In dry-run mode, or without a client, the lookup reports "not found" and
    mutations are only logged.

    Raises:
        DiscoveryError: The item has no URL to bookmark.
        BookmarkServiceError: A Linkding call failed.
    """
    final_url = item.final_url
    if not final_url:
        raise DiscoveryError("no valid URL found for bookmark")

    live = client is not None and not options.dry_run
    existing = await client.get_bookmark_by_url(final_url) if live else None
    tags = list(options.tags)

    if existing is not None:
        logger.debug(f"Found existing bookmark {existing.id} for {final_url} (policy={options.duplicates.value})")
        if options.duplicates is DuplicatePolicy.SKIP:
            logger.info(f"Skipping duplicate bookmark {final_url}")
            item.status = ItemStatus.SKIPPED
            return

        await client.update_bookmark(
            existing.id, final_url, item.final_title, item.final_description, tags
        )
        logger.info(f"Updated existing bookmark {existing.id}: {final_url}")
        item.status = ItemStatus.SUCCESS
        item.was_updated = True
        return

    if live:
        await client.create_bookmark(final_url, item.final_title, item.final_description, tags)
        logger.info(f"Created new bookmark {final_url} ('{item.final_title}')")
    else:
        reason = "dry run" if options.dry_run else "no client provided"
        logger.info(f"Would create new bookmark {final_url} ('{item.final_title}', tags={tags}) ({reason})")
    item.status = ItemStatus.SUCCESS


def describe_error(item: DiscoveryItem) -> Optional[str]:
    """One-line description of why an item failed, for run summaries."""
    if item.error is None:
        return None
    return f"{item.final_title} ({item.source}): {item.error}"
