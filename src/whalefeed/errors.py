"""
Error types for upstream access.

The scheduler only distinguishes two families: ``RateLimitedError`` backs the
category off exponentially, everything else is a plain failed cycle.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import aiohttp


class FeedError(Exception):
    """Base class for all upstream feed errors."""


class RateLimitedError(FeedError):
    """Upstream answered 429 or otherwise signalled throttling."""

    def __init__(self, url: str = "", retry_after: Optional[float] = None):
        self.url = url
        self.retry_after = retry_after
        msg = f"rate limited by {url}" if url else "rate limited"
        if retry_after:
            msg += f" (retry after {retry_after:.0f}s)"
        super().__init__(msg)


class UpstreamHTTPError(FeedError):
    """Upstream returned a non-success HTTP status."""

    def __init__(self, status: int, url: str = ""):
        self.status = status
        self.url = url
        super().__init__(f"HTTP {status} from {url}" if url else f"HTTP {status}")


class UpstreamDecodeError(FeedError):
    """Response body was not JSON."""


class UpstreamAppError(FeedError):
    """200 response whose body reports an application-level failure."""


class MissingAPIKeyError(FeedError):
    """The source needs an API key and none is configured."""


class NoEndpointAvailableError(FeedError):
    """Every candidate URL failed its ping."""

    def __init__(self, label: str, attempts: int):
        self.label = label
        self.attempts = attempts
        super().__init__(f"no endpoint available for {label} ({attempts} candidates tried)")


_THROTTLE_MARKERS = ("too many requests", "rate limit", "ratelimit", "throttl")


def is_rate_limit_error(exc: BaseException) -> bool:
    """Does this transport error signal throttling rather than a plain failure?"""
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, (UpstreamHTTPError, aiohttp.ClientResponseError)):
        return exc.status == 429
    text = str(exc).lower()
    return any(marker in text for marker in _THROTTLE_MARKERS)


def describe_error(exc: BaseException) -> str:
    """Short one-line description used for ``lastError`` and logs."""
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    text = str(exc).strip()
    name = type(exc).__name__
    return f"{name}: {text}" if text else name
