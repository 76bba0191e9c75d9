#!/usr/bin/env python3
"""
Utility classes and functions shared by the discovery and import pipelines.

This module contains retry-with-backoff helpers, URL validation and a few
formatting helpers used for logging and debug output.
"""

from asyncio import sleep
from typing import Awaitable, Callable, TypeVar
import re

from config import get_logger
from errors import is_transient

logger = get_logger("utils")

T = TypeVar("T")


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff.

    Delays double from `base_delay` on every attempt (1s, 2s, 4s, ...) with no
    jitter.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0):
        """Initialize the retry helper.

        Args:
            max_attempts: Total number of attempts, including the first one
            base_delay: Delay in seconds after the first failed attempt
        """
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt.

        Args:
            attempt: The attempt that just failed (1-based)

        Returns:
            Delay in seconds
        """
        return self.base_delay * (2 ** (attempt - 1))

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        should_retry: Callable[[BaseException], bool] = is_transient,
    ) -> T:
        """Run `operation` until it succeeds, raises a permanent error, or attempts run out.

        The last error is re-raised unchanged when every attempt fails.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await operation()
            except Exception as e:
                if attempt >= self.max_attempts or not should_retry(e):
                    if attempt > 1:
                        logger.warning(
                            "%s failed after %d/%d attempts: %s",
                            operation_name, attempt, self.max_attempts, e,
                        )
                    raise
                logger.info(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    operation_name, attempt, self.max_attempts, self.calculate_delay(attempt), e,
                )
                await self.sleep_for_attempt(attempt)
                continue
            if attempt > 1:
                logger.info("%s succeeded after %d attempts", operation_name, attempt)
            return result
        raise RuntimeError("unreachable")  # pragma: no cover


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 1.0,
    operation_name: str = "operation",
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Run a zero-argument coroutine factory with retry and exponential backoff.

    Wraps discovery steps and bookmark mutations alike; only errors that
    `should_retry` accepts are retried.
    """
    helper = RetryHelper(max_attempts=attempts, base_delay=base_delay)
    return await helper.run(operation, operation_name=operation_name, should_retry=should_retry)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def safe_filename(filename: str, max_length: int = 255) -> str:
    """Convert a string to a safe filename by removing/replacing problematic characters.

    Args:
        filename: The original filename string
        max_length: Maximum allowed length for the filename

    Returns:
        A sanitized filename safe for filesystem use
    """
    if not filename:
        return "untitled"

    safe_name = re.sub(r'[<>:"/\\|?*]', '_', filename)
    safe_name = re.sub(r'[\x00-\x1f\x7f-\x9f]', '', safe_name)
    safe_name = safe_name.strip('. ')

    if not safe_name:
        return "untitled"

    if len(safe_name) > max_length:
        safe_name = safe_name[:max_length].rstrip('. ')

    return safe_name


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def content_preview(text: str, max_length: int = 200) -> str:
    """Return a single-line preview of fetched content for debug logging."""
    if not text:
        return "(empty)"
    preview = re.sub(r'[\r\n\t]', ' ', text)
    if len(preview) > max_length:
        return preview[:max_length] + "..."
    return preview
