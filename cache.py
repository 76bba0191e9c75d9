#!/usr/bin/env python3
"""
Persistent cache of forward-discovery outcomes.

The cache maps a bookmark URL to the feed that was discovered for it, or to a
negative entry recording that discovery ran and found nothing. It is loaded
wholesale before a run, shared by every worker during the run, and saved
wholesale once afterwards as a JSON snapshot that atomically replaces the
previous file.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple
import json
import os
import shutil
import tempfile
import threading

from config import get_logger
from models import CacheEntry

logger = get_logger("cache")

CACHE_FORMAT_VERSION = 1


class CacheLookup(str, Enum):
    HIT = "hit"
    MISS = "miss"
    STALE = "stale"


class ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class DiscoveryCache:
    """Key to CacheEntry map backed by a single JSON file.

    `lookup` and `get` take the read side of the lock, `set`, `set_failed`
    and `load` the write side. `save` only reads the map.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = ReadWriteLock()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock.read():
            return key in self._entries

    def load(self) -> None:
        """Load the snapshot from disk.

        A missing, unreadable or corrupt file leaves the cache empty; this
        method never raises for those cases.
        """
        with self._lock.write():
            self._entries = {}
            if not os.path.exists(self.file_path):
                logger.debug(f"Cache file {self.file_path} does not exist, starting with empty cache")
                return
            try:
                with open(self.file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except OSError as e:
                logger.warning(f"Failed to open cache file {self.file_path}, starting with empty cache: {e}")
                return
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning(f"Failed to decode cache file {self.file_path} (possibly corrupted), starting with empty cache: {e}")
                return

            raw_entries = data.get("entries") if isinstance(data, dict) else None
            if not isinstance(raw_entries, dict):
                logger.warning(f"Cache file {self.file_path} has an unexpected layout, starting with empty cache")
                return

            skipped = 0
            for key, raw in raw_entries.items():
                try:
                    self._entries[key] = CacheEntry.from_dict(raw)
                except (KeyError, TypeError, ValueError):
                    skipped += 1
            if skipped:
                logger.warning(f"Ignored {skipped} malformed cache entries in {self.file_path}")
            logger.debug(f"Loaded {len(self._entries)} cache entries from {self.file_path}")

    def save(self) -> None:
        """Write the snapshot to a temporary file and move it over the cache file.

        Raises:
            OSError: The snapshot could not be written at all.
        """
        with self._lock.read():
            payload = {
                "version": CACHE_FORMAT_VERSION,
                "entries": {key: entry.to_dict() for key, entry in self._entries.items()},
            }
            count = len(self._entries)

        directory = os.path.dirname(os.path.abspath(self.file_path))
        os.makedirs(directory, exist_ok=True)
        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w", encoding="utf-8", suffix=".tmp", dir=directory, delete=False
            ) as temp_file:
                temp_path = temp_file.name
                json.dump(payload, temp_file, indent=2, sort_keys=True)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            shutil.move(temp_path, self.file_path)
        except OSError:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)
            raise
        logger.debug(f"Saved {count} cache entries to {self.file_path}")

    def lookup(self, key: str, max_age_hours: float) -> Tuple[Optional[CacheEntry], CacheLookup]:
        """Return the entry for `key` together with whether it is a hit, a miss or stale.

        The entry is returned for stale lookups too so callers can log its age.
        """
        with self._lock.read():
            entry = self._entries.get(key)
        if entry is None:
            logger.debug(f"Cache miss: no entry for {key}")
            return None, CacheLookup.MISS
        now = datetime.now(timezone.utc)
        age = entry.age_seconds(now) / 3600.0
        if not entry.is_fresh(max_age_hours, now):
            logger.debug(f"Cache miss: entry for {key} is stale ({age:.1f}h old)")
            return entry, CacheLookup.STALE
        logger.debug(f"Cache hit for {key}: feed_url={entry.feed_url!r} ({age:.1f}h old)")
        return entry, CacheLookup.HIT

    def get(self, key: str, max_age_hours: float) -> Optional[CacheEntry]:
        """Return a fresh entry for `key`, or None when absent or stale."""
        entry, state = self.lookup(key, max_age_hours)
        return entry if state is CacheLookup.HIT else None

    def set(self, key: str, feed_url: str, feed_title: str) -> CacheEntry:
        """Store a discovery outcome; an empty `feed_url` records that no feed exists."""
        entry = CacheEntry(
            url=key,
            feed_url=feed_url or "",
            feed_title=feed_title or "",
            timestamp=datetime.now(timezone.utc),
        )
        with self._lock.write():
            self._entries[key] = entry
        return entry

    def set_failed(self, key: str) -> CacheEntry:
        return self.set(key, "", "")

    def stats(self) -> Tuple[int, int]:
        """Return (total entries, entries with a feed)."""
        with self._lock.read():
            total = len(self._entries)
            with_feed = sum(1 for entry in self._entries.values() if entry.has_feed)
        return total, with_feed
