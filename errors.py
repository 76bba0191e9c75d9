#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Each error
carries a `retryable` flag consumed by `is_transient()` when deciding whether
the processor should retry an operation.
"""

from asyncio import TimeoutError as AsyncTimeoutError
from typing import Optional

from aiohttp import ClientError


class FetchError(Exception):
    """Raised when a page or feed cannot be fetched.

    Attributes:
        url: The requested URL.
        status: HTTP status code, when the server answered.
        reason: HTTP reason phrase or transport error description.
    """

    retryable = True

    def __init__(self, url: str, message: str, status: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.url = url
        self.status = status
        self.reason = reason


class TooManyRedirectsError(FetchError):
    """Raised when a request exceeds the configured redirect ceiling."""

    retryable = False


class FeedParseError(Exception):
    """Raised when content does not match any supported feed dialect."""

    retryable = False


class DiscoveryError(Exception):
    """Raised when no feed or bookmark URL could be discovered for an item."""

    retryable = False

    def __init__(self, message: str, attempted: int = 0):
        super().__init__(message)
        self.attempted = attempted


class BookmarkServiceError(Exception):
    """Raised when the Linkding API rejects or fails a request.

    Client errors (4xx) are not retried; server and transport errors are.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status >= 500 or self.status == 429


class ConfigurationError(ValueError):
    """Raised for invalid or missing configuration before any network work starts."""


class OPMLError(Exception):
    """Raised when an OPML document cannot be read or is not OPML."""


def is_transient(error: BaseException) -> bool:
    """Return True when an operation that raised `error` is worth retrying."""
    retryable = getattr(error, "retryable", None)
    if retryable is not None:
        return bool(retryable)
    return isinstance(error, (ClientError, AsyncTimeoutError))


__all__ = [
    "FetchError",
    "TooManyRedirectsError",
    "FeedParseError",
    "DiscoveryError",
    "BookmarkServiceError",
    "ConfigurationError",
    "OPMLError",
    "is_transient",
]
