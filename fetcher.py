#!/usr/bin/env python3
"""
HTTP fetch layer used by feed discovery in both directions.

A single PageFetcher (and its aiohttp session) is shared by every worker of a
run. It sends a browser-like header set advertising gzip and deflate,
enforces a timeout and a redirect ceiling, and leaves content decoding to
aiohttp, so callers always see the decoded body.

No retries happen here; the processor decides what is worth retrying.
"""

from asyncio import TimeoutError
from typing import Optional, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout, TooManyRedirects

from config import get_logger
from errors import FetchError, TooManyRedirectsError
from telemetry import trace_span
from utils import content_preview

logger = get_logger("fetcher")

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; linkding-to-opml/1.0)"

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}


class PageFetcher:
    """Fetches web pages and feeds with a shared aiohttp session.

    Use as an async context manager, or call close() when done.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        max_redirects: int = 3,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.timeout = float(timeout)
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.max_redirects = max(0, int(max_redirects))
        self._session = session
        self._owns_session = session is None
        logger.debug(
            "Created page fetcher (timeout=%ss, max_redirects=%d, user_agent=%s)",
            self.timeout, self.max_redirects, self.user_agent,
        )

    async def __aenter__(self) -> "PageFetcher":
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

    def build_headers(self, user_agent: Optional[str] = None) -> dict:
        headers = {"User-Agent": user_agent or self.user_agent}
        headers.update(BROWSER_HEADERS)
        return headers

    @trace_span(
        "fetch_url",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, user_agent=None: {"http.url": url},
    )
    async def _fetch(self, url: str, user_agent: Optional[str] = None) -> Tuple[bytes, Optional[str]]:
        """Fetch `url` and return the decompressed body and the declared charset.

        Raises:
            TooManyRedirectsError: The redirect ceiling was exceeded.
            FetchError: Transport failure, timeout, non-2xx status or a body that does
                not match its Content-Encoding.
        """
        session = self._get_session()
        request_kwargs = {
            "headers": self.build_headers(user_agent),
            "allow_redirects": self.max_redirects > 0,
        }
        if self.max_redirects > 0:
            request_kwargs["max_redirects"] = self.max_redirects

        logger.debug("Fetching %s", url)
        try:
            async with session.get(url, **request_kwargs) as response:
                if 300 <= response.status < 400 and self.max_redirects == 0:
                    raise TooManyRedirectsError(
                        url, "stopped after 0 redirects", status=response.status, reason=response.reason,
                    )
                if not 200 <= response.status < 300:
                    logger.debug("HTTP %s for %s", response.status, url)
                    raise FetchError(
                        url,
                        f"HTTP request failed with status {response.status}: {response.reason}",
                        status=response.status,
                        reason=response.reason,
                    )
                body = await response.read()
                content_encoding = response.headers.get("Content-Encoding")
                charset = response.charset
        except TooManyRedirects as e:
            logger.debug("Redirect limit (%d) exceeded for %s", self.max_redirects, url)
            raise TooManyRedirectsError(url, f"stopped after {self.max_redirects} redirects") from e
        except TimeoutError as e:
            raise FetchError(url, f"HTTP request timed out after {self.timeout:.0f}s") from e
        except ClientError as e:
            raise FetchError(url, f"HTTP request failed: {e.__class__.__name__} {e}".strip()) from e

        logger.debug(
            "Fetched %s (%d bytes, content_encoding=%s)",
            url, len(body), content_encoding or "identity",
        )
        return body, charset

    async def fetch_bytes(self, url: str, user_agent: Optional[str] = None) -> bytes:
        """Fetch `url` and return the decompressed body bytes."""
        body, _ = await self._fetch(url, user_agent)
        return body

    async def fetch_page(self, url: str, user_agent: Optional[str] = None) -> str:
        """Fetch `url` and return its body as text."""
        body, charset = await self._fetch(url, user_agent)
        text = decode_text(body, charset)
        logger.debug("Page preview for %s: %s", url, content_preview(text))
        return text


def decode_text(body: bytes, charset: Optional[str] = None) -> str:
    """Decode a response body, falling back to UTF-8 with replacement characters."""
    for candidate in (charset, "utf-8"):
        if not candidate:
            continue
        try:
            return body.decode(candidate)
        except (LookupError, UnicodeDecodeError):
            continue
    return body.decode("utf-8", errors="replace")
