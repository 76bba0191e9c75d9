#!/usr/bin/env python3
"""
Minimal async client for the Linkding bookmarks REST API.

Only the four operations the converter needs are implemented: listing
bookmarks (with client-side tag filtering), looking one up by URL, and
creating or updating a bookmark. Requests authenticate with
`Authorization: Token <token>`.
"""

from asyncio import TimeoutError
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import get_logger
from errors import BookmarkServiceError, ConfigurationError
from models import Bookmark

logger = get_logger("linkding")

PAGE_SIZE = 100


def _to_bookmark(data: Dict[str, Any]) -> Bookmark:
    return Bookmark(
        id=int(data["id"]),
        url=data.get("url", ""),
        title=data.get("title") or "",
        description=data.get("description") or "",
        tags=list(data.get("tag_names") or []),
    )


def matches_tags(bookmark: Bookmark, required_tags: List[str]) -> bool:
    """True when the bookmark carries every required tag (case-insensitive)."""
    if not required_tags:
        return True
    bookmark_tags = {tag.lower() for tag in bookmark.tags}
    return all(tag.lower() in bookmark_tags for tag in required_tags)


class LinkdingClient:
    """Linkding API client sharing one aiohttp session.

    Use as an async context manager, or call close() when done.
    """

    def __init__(self, url: str, token: str, timeout: float = 30.0, session: Optional[ClientSession] = None):
        if not token:
            raise ConfigurationError("linkding token cannot be empty")
        if not url:
            raise ConfigurationError("linkding URL cannot be empty")
        self.base_url = url.rstrip("/") + "/"
        self.token = token
        self.timeout = float(timeout)
        self._session = session
        self._owns_session = session is None
        logger.debug(f"Created Linkding API client for {self.base_url} (timeout={self.timeout}s)")

    async def __aenter__(self) -> "LinkdingClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """Send a request and return the decoded JSON body (None for empty bodies)."""
        session = self._get_session()
        kwargs["headers"] = {"Authorization": f"Token {self.token}", "Accept": "application/json"}
        try:
            async with session.request(method, url, **kwargs) as resp:
                if not 200 <= resp.status < 300:
                    body = await resp.text()
                    raise BookmarkServiceError(
                        f"Linkding API {method} {url} failed with status {resp.status}: {body[:200]}",
                        status=resp.status,
                    )
                if resp.status == 204:
                    return None
                return await resp.json(content_type=None)
        except TimeoutError as e:
            raise BookmarkServiceError(f"Linkding API {method} {url} timed out after {self.timeout:.0f}s") from e
        except ClientError as e:
            raise BookmarkServiceError(f"Linkding API {method} {url} failed: {e}") from e

    async def fetch_bookmarks(self, tags: Optional[List[str]] = None) -> List[Bookmark]:
        """Fetch every bookmark, keeping those that carry all of `tags`."""
        tags = list(tags or [])
        logger.info(f"Fetching bookmarks from Linkding API (tags={tags})")

        url: Optional[str] = self._url("api/bookmarks/")
        params: Optional[Dict[str, Any]] = {"limit": PAGE_SIZE, "offset": 0}
        fetched = 0
        bookmarks: List[Bookmark] = []
        while url:
            data = await self._request("GET", url, params=params)
            if not isinstance(data, dict):
                raise BookmarkServiceError(f"Unexpected Linkding response format: {type(data).__name__}")
            for raw in data.get("results") or []:
                fetched += 1
                bookmark = _to_bookmark(raw)
                if matches_tags(bookmark, tags):
                    bookmarks.append(bookmark)
            # `next` is an absolute URL that already carries the paging parameters
            url = data.get("next")
            params = None

        logger.info(f"Fetched {fetched} bookmarks, {len(bookmarks)} after tag filter")
        return bookmarks

    async def get_bookmark_by_url(self, url: str) -> Optional[Bookmark]:
        """Return the bookmark stored for `url`, or None when there is none."""
        data = await self._request("GET", self._url("api/bookmarks/check/"), params={"url": url})
        raw = data.get("bookmark") if isinstance(data, dict) else None
        if not raw:
            logger.debug(f"No existing bookmark for {url}")
            return None
        return _to_bookmark(raw)

    async def create_bookmark(self, url: str, title: str, description: str, tags: List[str]) -> Bookmark:
        payload = {
            "url": url,
            "title": title,
            "description": description,
            "tag_names": list(tags),
            "is_archived": False,
            "unread": False,
            "shared": False,
        }
        data = await self._request("POST", self._url("api/bookmarks/"), json=payload)
        bookmark = _to_bookmark(data)
        logger.debug(f"Created bookmark {bookmark.id} for {url}")
        return bookmark

    async def update_bookmark(self, bookmark_id: int, url: str, title: str, description: str, tags: List[str]) -> None:
        payload = {
            "url": url,
            "title": title,
            "description": description,
            "tag_names": list(tags),
        }
        await self._request("PUT", self._url(f"api/bookmarks/{bookmark_id}/"), json=payload)
        logger.debug(f"Updated bookmark {bookmark_id} for {url}")
