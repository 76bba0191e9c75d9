#!/usr/bin/env python3
"""
Forward feed discovery: given a web page, find the feed it publishes.

Candidates come from three tiers, each used only when the previous one
produced nothing:

1. `<link rel="alternate">` elements found by BeautifulSoup, matched either
   by a feed MIME type or by a feed-looking href
2. a regular-expression scan of the raw markup, for pages the HTML parser
   chokes on or misses
3. conventional feed paths on the page origin

Candidates are then fetched and parsed in order until one is a real feed.
"""

from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urljoin, urlparse
import hashlib
import os
import re

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup

from config import get_logger
from errors import DiscoveryError, FeedParseError, FetchError
from feed_parser import parse_feed
from models import FeedDiscoveryResult
from telemetry import trace_span
from utils import content_preview, safe_filename

logger = get_logger("discovery")

FEED_MIME_TYPES = (
    "application/rss+xml",
    "application/atom+xml",
    "application/rdf+xml",
    "text/xml",
    "application/xml",
)

FEED_HREF_TOKENS = ("rss", "feed", "atom", ".xml")

COMMON_FEED_PATHS = (
    "/feed",
    "/feed.xml",
    "/rss",
    "/rss.xml",
    "/atom.xml",
    "/feeds/all.atom.xml",
    "/index.xml",
    "/.rss",
)

FEED_LINK_PATTERN = re.compile(
    r"""<link[^>]+rel[^>]*alternate[^>]+type[^>]*application/(rss|atom)\+xml[^>]+href[^>]*=["']([^"']+)["'][^>]*>""",
    re.IGNORECASE,
)


def resolve_url(href: str, base_url: str) -> str:
    """Resolve `href` against `base_url`; returns an empty string when it cannot."""
    if not href or not href.strip():
        return ""
    try:
        return urljoin(base_url, href.strip())
    except ValueError as e:
        logger.debug(f"Failed to resolve {href!r} against {base_url}: {e}")
        return ""


def _match_reason(is_feed_type: bool, has_feed_path: bool) -> str:
    if is_feed_type and has_feed_path:
        return "feed_type_and_path"
    if is_feed_type:
        return "feed_type"
    return "common_path"


def find_feed_links_html(html: str, base_url: str) -> List[str]:
    """Autodiscovery over parsed markup.

    Raises:
        ParserRejectedMarkup: The markup could not be parsed at all.
    """
    soup = BeautifulSoup(html, "html.parser")
    feed_urls: List[str] = []
    link_count = 0
    alternate_count = 0

    for tag in soup.find_all("link"):
        link_count += 1
        rel = tag.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        rel = " ".join(rel).lower()
        if "alternate" not in rel:
            continue
        alternate_count += 1

        link_type = (tag.get("type") or "").lower()
        href = tag.get("href") or ""
        is_feed_type = any(mime in link_type for mime in FEED_MIME_TYPES)
        has_feed_path = any(token in href.lower() for token in FEED_HREF_TOKENS)
        if not (is_feed_type or has_feed_path):
            logger.debug(f"Alternate link {href!r} (type={link_type!r}) not recognized as a feed")
            continue

        feed_url = resolve_url(href, base_url)
        if feed_url:
            feed_urls.append(feed_url)
            logger.info(f"Found feed link {feed_url} on {base_url} ({_match_reason(is_feed_type, has_feed_path)})")

    logger.debug(
        f"HTML parsing of {base_url} complete: {link_count} link tags, "
        f"{alternate_count} alternate, {len(feed_urls)} feed links"
    )
    return feed_urls


def find_feed_links_regex(html: str, base_url: str) -> List[str]:
    """Fallback scan of the raw markup for RSS/Atom autodiscovery links."""
    feed_urls = []
    for match in FEED_LINK_PATTERN.finditer(html):
        feed_url = resolve_url(match.group(2), base_url)
        if feed_url:
            feed_urls.append(feed_url)
            logger.debug(f"Found feed link with regex: {feed_url}")
    return feed_urls


def common_feed_paths(base_url: str) -> List[str]:
    """Conventional feed locations on the origin of `base_url`."""
    parsed = urlparse(base_url)
    if not parsed.scheme or not parsed.netloc:
        return []
    origin = f"{parsed.scheme}://{parsed.netloc}"
    return [origin + feed_path for feed_path in COMMON_FEED_PATHS]


def find_feed_links(html: str, base_url: str) -> List[str]:
    """Collect candidate feed URLs for a page, tier by tier."""
    try:
        feed_urls = find_feed_links_html(html, base_url)
    except (ParserRejectedMarkup, AssertionError) as e:
        logger.debug(f"Failed to parse HTML of {base_url}, falling back to regex: {e}")
        feed_urls = []

    if not feed_urls:
        feed_urls = find_feed_links_regex(html, base_url)
        if feed_urls:
            logger.info(f"Regex fallback found {len(feed_urls)} feed links on {base_url}")

    if not feed_urls:
        logger.debug(f"No feed links on {base_url}, trying common feed paths")
        feed_urls = common_feed_paths(base_url)

    return feed_urls


def save_failed_html_content(page_url: str, html: str, debug_output_dir: str, reason: str) -> Optional[str]:
    """Save a page that yielded no feed, prefixed with a small debug header.

    Returns the written path, or None when the file could not be written.
    """
    if not debug_output_dir:
        return None
    now = datetime.now(timezone.utc)
    url_hash = hashlib.md5(page_url.encode("utf-8")).hexdigest()[:8]
    filename = safe_filename(f"{now.strftime('%Y%m%d-%H%M%S')}_{reason}_{url_hash}.html")
    file_path = os.path.join(debug_output_dir, filename)
    header = (
        "<!-- Debug Info\n"
        f"URL: {page_url}\n"
        f"Reason: {reason}\n"
        f"Timestamp: {now.isoformat()}\n"
        f"Content Size: {len(html)} bytes\n"
        "-->\n\n"
    )
    try:
        os.makedirs(debug_output_dir, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as f:
            f.write(header + html)
    except OSError as e:
        logger.warning(f"Failed to save HTML content for debugging to {file_path}: {e}")
        return None
    logger.debug(f"Saved failed HTML for {page_url} to {file_path}")
    return file_path


@trace_span(
    "discover_feed",
    tracer_name="discovery",
    attr_from_args=lambda page_url, *args, **kwargs: {"page.url": page_url},
)
async def discover_feed(
    page_url: str,
    fetcher,
    user_agent: Optional[str] = None,
    save_failed_html: bool = False,
    debug_output_dir: str = "",
) -> FeedDiscoveryResult:
    """Discover and validate the feed published by `page_url`.

    Never raises for per-page problems: the returned result carries the
    error instead. A page that cannot be fetched yields its FetchError, so
    callers can tell transient failures from pages that have no feed.
    """
    result = FeedDiscoveryResult(url=page_url)
    logger.debug(f"Starting feed autodiscovery for {page_url}")

    try:
        html = await fetcher.fetch_page(page_url, user_agent)
    except FetchError as e:
        logger.warning(f"Feed discovery failed for {page_url}: could not fetch page: {e}")
        result.error = e
        return result

    logger.debug(f"Fetched {page_url} for discovery ({len(html)} chars): {content_preview(html)}")

    candidates = find_feed_links(html, page_url)
    logger.info(f"Trying {len(candidates)} potential feed links for {page_url}")

    for attempt, feed_url in enumerate(candidates, start=1):
        try:
            raw = await fetcher.fetch_bytes(feed_url, user_agent)
        except FetchError as e:
            logger.debug(f"Candidate {attempt}/{len(candidates)} {feed_url} failed to fetch: {e}")
            continue
        try:
            feed = parse_feed(raw)
        except FeedParseError as e:
            logger.debug(f"Candidate {attempt}/{len(candidates)} {feed_url} is not a feed: {e}")
            continue

        result.feed_url = feed_url
        result.feed_title = feed.title
        logger.info(f"Feed discovery successful for {page_url}: {feed_url} ('{feed.title}')")
        return result

    result.error = DiscoveryError(
        f"found {len(candidates)} potential feed URLs but none were valid feeds",
        attempted=len(candidates),
    )
    if save_failed_html:
        reason = "feeds_found_but_invalid" if candidates else "no_feeds_found"
        save_failed_html_content(page_url, html, debug_output_dir, reason)
    logger.warning(f"Feed discovery failed for {page_url}: no valid feeds among {len(candidates)} candidates")
    return result
