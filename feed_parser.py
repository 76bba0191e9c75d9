#!/usr/bin/env python3
"""
Feed content parser for RSS 2.0, Atom and RDF (RSS 1.0) documents.

Only feed-level metadata is extracted: title, description and the link to
the website the feed belongs to. Each dialect parser looks at the same
document tree and either returns a ParsedFeed or the NO_MATCH sentinel when
the document is structurally something else, so `parse_feed` can fall
through the dialects in order.

Documents that are not well-formed XML get a second, tolerant pass through
feedparser, which copes with the broken markup many real feeds ship.
"""

from typing import Callable, Optional, Tuple, Union
import xml.etree.ElementTree as ET

import feedparser

from config import get_logger
from errors import FeedParseError
from models import ParsedFeed
from telemetry import trace_span

logger = get_logger("feed_parser")

FEED_USER_AGENT = "linkding-to-opml/1.0 (Feed Fetcher)"


class _NoMatch:
    """Sentinel returned by a dialect parser when the document is not that dialect."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_MATCH"


NO_MATCH = _NoMatch()

DialectResult = Union[ParsedFeed, _NoMatch]


def clean_link(link: Optional[str]) -> str:
    """Strip surrounding whitespace and trailing slashes from a website link."""
    if not link:
        return ""
    return link.strip().rstrip("/").strip()


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1] if tag.startswith("{") else tag


def _namespace(tag) -> str:
    if isinstance(tag, str) and tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return ""


def _text(element: Optional[ET.Element]) -> str:
    if element is None:
        return ""
    return "".join(element.itertext()).strip()


def _child(parent: ET.Element, name: str) -> Optional[ET.Element]:
    """First direct child with local name `name`, whatever its namespace."""
    for child in parent:
        if _local_name(child.tag) == name:
            return child
    return None


def _parse_rss(root: ET.Element) -> DialectResult:
    """RSS 2.0 (and 0.9x) `<rss><channel>` documents."""
    if _local_name(root.tag) != "rss":
        return NO_MATCH
    channel = _child(root, "channel")
    if channel is None:
        return NO_MATCH

    title = _text(_child(channel, "title"))
    if not title:
        return NO_MATCH

    # Only direct children of <channel> count; <item> and <image> carry their
    # own <link> elements which must never be taken as the website link.
    link = ""
    for child in channel:
        name = _local_name(child.tag)
        if name in ("item", "image"):
            continue
        if name == "link" and _namespace(child.tag) == "":
            link = _text(child)
            if link:
                break

    return ParsedFeed(
        title=title,
        description=_text(_child(channel, "description")),
        link=clean_link(link),
        feed_type="RSS",
    )


def _parse_atom(root: ET.Element) -> DialectResult:
    """Atom 1.0 `<feed>` documents."""
    if _local_name(root.tag) != "feed":
        return NO_MATCH

    title = _text(_child(root, "title"))
    if not title:
        return NO_MATCH

    links = [child for child in root if _local_name(child.tag) == "link"]
    link = ""
    for candidate in links:
        rel = candidate.get("rel", "alternate")
        if rel == "alternate" and "text/html" in candidate.get("type", ""):
            link = candidate.get("href", "")
            break
    if not link:
        for candidate in links:
            if candidate.get("rel", "alternate") != "self" and candidate.get("href"):
                link = candidate.get("href", "")
                break

    return ParsedFeed(
        title=title,
        description=_text(_child(root, "subtitle")),
        link=clean_link(link),
        feed_type="Atom",
    )


def _parse_rdf(root: ET.Element) -> DialectResult:
    """RSS 1.0 `<rdf:RDF>` documents."""
    if _local_name(root.tag) != "RDF":
        return NO_MATCH

    channel = _child(root, "channel")
    title = _text(_child(channel, "title")) if channel is not None else ""
    description = _text(_child(channel, "description")) if channel is not None else ""
    link = _text(_child(channel, "link")) if channel is not None else ""
    if not title:
        title = _text(_child(root, "title"))
    if not description:
        description = _text(_child(root, "description"))
    if not link:
        link = _text(_child(root, "link"))
    if not title:
        return NO_MATCH

    return ParsedFeed(title=title, description=description, link=clean_link(link), feed_type="RDF")


DIALECT_PARSERS: Tuple[Tuple[str, Callable[[ET.Element], DialectResult]], ...] = (
    ("RSS", _parse_rss),
    ("Atom", _parse_atom),
    ("RDF", _parse_rdf),
)


def _feedparser_dialect(version: str) -> str:
    if version in ("rss090", "rss10"):
        return "RDF"
    if version.startswith("rss"):
        return "RSS"
    if version.startswith("atom"):
        return "Atom"
    return ""


def _parse_tolerant(raw: bytes) -> DialectResult:
    """Recover metadata from malformed XML with feedparser."""
    parsed = feedparser.parse(raw)
    dialect = _feedparser_dialect(parsed.get("version", "") or "")
    feed = parsed.get("feed", {})
    title = (feed.get("title") or "").strip()
    if not dialect or not title:
        return NO_MATCH
    description = (feed.get("subtitle") or feed.get("description") or "").strip()
    return ParsedFeed(title=title, description=description, link=clean_link(feed.get("link")), feed_type=dialect)


def parse_feed(raw: bytes) -> ParsedFeed:
    """Parse feed bytes as RSS, Atom or RDF, in that order.

    Raises:
        FeedParseError: The content matches none of the supported dialects.
    """
    if not raw or not raw.strip():
        raise FeedParseError("failed to parse feed: empty document")

    try:
        root = ET.fromstring(raw)
    except ET.ParseError as e:
        logger.debug(f"Feed is not well-formed XML ({e}), trying tolerant parser")
        result = _parse_tolerant(raw)
        if result is NO_MATCH:
            raise FeedParseError(f"failed to parse feed as RSS, Atom, or RDF: {e}") from e
        logger.debug(f"Recovered {result.feed_type} feed '{result.title}' from malformed XML")
        return result

    for dialect, parser in DIALECT_PARSERS:
        result = parser(root)
        if result is NO_MATCH:
            continue
        logger.debug(f"Parsed {dialect} feed '{result.title}' (link={result.link!r})")
        return result

    raise FeedParseError(f"failed to parse feed as RSS, Atom, or RDF (root element <{_local_name(root.tag)}>)")


@trace_span(
    "fetch_feed",
    tracer_name="feed_parser",
    attr_from_args=lambda url, fetcher, user_agent=FEED_USER_AGENT: {"feed.url": url},
)
async def fetch_feed(url: str, fetcher, user_agent: str = FEED_USER_AGENT) -> ParsedFeed:
    """Fetch `url` with the shared fetcher and parse it as a feed.

    Raises:
        FetchError: The feed could not be fetched.
        FeedParseError: The content is not a recognizable feed.
    """
    raw = await fetcher.fetch_bytes(url, user_agent)
    return parse_feed(raw)
