#!/usr/bin/env python3
"""
Data model shared by the export and import pipelines.

A DiscoveryItem is the unit of work handed to the concurrent processor. It is
owned by exactly one worker while it is processed, so its mutable fields are
updated without synchronization. ProcessingStats is the only object every
worker writes to; see its docstring for why plain integer counters suffice.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from utils import format_duration


class ItemStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class DuplicatePolicy(str, Enum):
    """How to treat a bookmark that already exists for the discovered URL."""

    SKIP = "skip"
    UPDATE = "update"


@dataclass
class FeedEntry:
    """A flattened OPML outline describing one feed subscription."""

    feed_url: str
    html_url: str = ""
    title: str = ""
    description: str = ""


@dataclass
class Bookmark:
    id: int
    url: str
    title: str = ""
    description: str = ""
    tags: List[str] = field(default_factory=list)


@dataclass
class DiscoveryItem:
    """One bookmark (export) or one feed entry (import) moving through the processor.

    `source` is the bookmark URL for export and the feed URL for import.
    `page_url_hint` carries an OPML htmlUrl when one was present.
    """

    source: str
    page_url_hint: str = ""
    title: str = ""
    description: str = ""

    status: ItemStatus = ItemStatus.PENDING
    discovered_url: str = ""
    discovered_title: str = ""
    discovered_description: str = ""
    error: Optional[BaseException] = None
    was_updated: bool = False
    from_cache: bool = False

    @classmethod
    def from_feed_entry(cls, entry: FeedEntry) -> "DiscoveryItem":
        return cls(
            source=entry.feed_url,
            page_url_hint=entry.html_url,
            title=entry.title,
            description=entry.description,
        )

    @classmethod
    def from_bookmark(cls, bookmark: Bookmark) -> "DiscoveryItem":
        return cls(source=bookmark.url, title=bookmark.title, description=bookmark.description)

    def update_with_discovered_data(self, url: str, title: str = "", description: str = "") -> None:
        """Record the discovered target, keeping original metadata where discovery found none."""
        self.discovered_url = url
        self.discovered_title = title or self.title
        self.discovered_description = description or self.description

    def mark_failed(self, error: BaseException) -> None:
        self.status = ItemStatus.FAILED
        self.error = error

    @property
    def final_url(self) -> str:
        return self.discovered_url or self.source

    @property
    def final_title(self) -> str:
        return self.discovered_title or self.title or "Untitled"

    @property
    def final_description(self) -> str:
        return self.discovered_description or self.description


@dataclass(frozen=True)
class CacheEntry:
    """A remembered forward-discovery outcome.

    An empty `feed_url` is a negative entry: discovery ran and found nothing.
    """

    url: str
    feed_url: str
    feed_title: str
    timestamp: datetime

    @property
    def has_feed(self) -> bool:
        return bool(self.feed_url)

    def age_seconds(self, now: Optional[datetime] = None) -> int:
        """Whole seconds since the entry was written; a same-second read is 0."""
        now = now or datetime.now(timezone.utc)
        return int((now - self.timestamp).total_seconds())

    def is_fresh(self, max_age_hours: float, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) <= max_age_hours * 3600

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "feed_url": self.feed_url,
            "feed_title": self.feed_title,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            url=str(data["url"]),
            feed_url=str(data.get("feed_url") or ""),
            feed_title=str(data.get("feed_title") or ""),
            timestamp=timestamp,
        )


@dataclass
class ParsedFeed:
    title: str
    description: str = ""
    link: str = ""
    feed_type: str = ""


@dataclass
class FeedDiscoveryResult:
    """Outcome of forward discovery for one page; handed to the OPML writer."""

    url: str
    feed_url: str = ""
    feed_title: str = ""
    error: Optional[BaseException] = None

    @property
    def is_successful(self) -> bool:
        return self.error is None and bool(self.feed_url) and bool(self.feed_title)


class ProcessingStats:
    """Aggregate counters for one processor run.

    Workers are asyncio tasks on a single event loop and only touch these
    counters between suspension points, so each `increment` runs to
    completion without interleaving. No lock is taken on the hot path.
    """

    COUNTERS = (
        "processed",
        "succeeded",
        "imported",
        "updated",
        "skipped",
        "failed",
        "cache_hits",
        "new_discoveries",
        "stale_refreshes",
    )

    def __init__(self, total: int = 0):
        self.total = total
        for name in self.COUNTERS:
            setattr(self, name, 0)
        self.started_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None

    def increment(self, name: str, amount: int = 1) -> None:
        if name not in self.COUNTERS:
            raise AttributeError(f"Unknown counter: {name}")
        setattr(self, name, getattr(self, name) + amount)

    def finish(self) -> None:
        self.finished_at = datetime.now(timezone.utc)

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    @property
    def success_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.succeeded / self.processed * 100.0

    def summary(self) -> str:
        """Human-readable run summary covering both directions."""
        lines = [
            f"Total entries: {self.total}",
            f"Processed: {self.processed}",
            f"Succeeded: {self.succeeded} ({self.success_rate:.1f}%)",
        ]
        if self.imported or self.updated or self.skipped:
            lines.append(f"Imported: {self.imported}")
            lines.append(f"Updated: {self.updated}")
            lines.append(f"Skipped: {self.skipped}")
        if self.cache_hits or self.new_discoveries or self.stale_refreshes:
            lines.append(f"Cache hits: {self.cache_hits}")
            lines.append(f"New discoveries: {self.new_discoveries}")
            lines.append(f"Stale refreshes: {self.stale_refreshes}")
        lines.append(f"Failed: {self.failed}")
        lines.append(f"Duration: {format_duration(self.duration)}")
        return "\n".join(lines)
