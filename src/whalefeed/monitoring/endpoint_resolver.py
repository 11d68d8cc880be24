"""
Endpoint resolver - finds a working upstream URL among candidates.

The upstream routes are undocumented and move between releases, so each
category keeps an ordered list of candidate URLs. The first candidate that
passes a lightweight ping is pinned and reused until a poll failure unpins it.

USAGE:
    resolver = EndpointResolver("birdeye:pairs", candidates, ping=source.ping)
    url = await resolver.resolve()
    ...
    resolver.unpin()  # after a failed poll
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import List, Optional, Sequence

from whalefeed.errors import NoEndpointAvailableError, RateLimitedError, describe_error
from whalefeed.utils.logger import get_logger

logger = get_logger(__name__)

PingFunc = Callable[[str], Awaitable[bool]]


@dataclass
class PingResult:
    url: str
    ok: bool
    at: float
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"url": self.url, "ok": self.ok, "at": self.at, "error": self.error}


class EndpointResolver:
    """Owns the pinned URL and ping history for one source/category."""

    def __init__(
        self,
        label: str,
        candidates: Sequence[str],
        ping: PingFunc,
        history_size: int = 50,
    ):
        self.label = label
        self.candidates: List[str] = [url for url in candidates if url]
        self._ping = ping
        self._pinned: Optional[str] = None
        self._history: deque[PingResult] = deque(maxlen=history_size)
        self.resolutions = 0

    @property
    def pinned_url(self) -> Optional[str]:
        return self._pinned

    @property
    def history(self) -> List[PingResult]:
        return list(self._history)

    def pin(self, url: str) -> None:
        self._pinned = url

    def unpin(self) -> None:
        if self._pinned:
            logger.info(f"[RESOLVER] {self.label}: unpinned {self._pinned}")
        self._pinned = None

    async def resolve(self) -> str:
        """Pinned URL, or the first candidate whose ping succeeds.

        Rate limiting during a ping is re-raised: the candidate exists, the
        caller should back off instead of moving on to worse candidates.
        """
        if self._pinned:
            return self._pinned

        for url in self.candidates:
            try:
                ok = await self._ping(url)
                error = None if ok else "ping rejected"
            except RateLimitedError as e:
                self._history.append(PingResult(url, False, time.time(), describe_error(e)))
                raise
            except Exception as e:
                ok = False
                error = describe_error(e)

            self._history.append(PingResult(url, ok, time.time(), error))
            if ok:
                self._pinned = url
                self.resolutions += 1
                logger.info(f"[RESOLVER] {self.label}: pinned {url}")
                return url
            logger.debug(f"[RESOLVER] {self.label}: {url} failed ({error})")

        logger.warning(f"[RESOLVER] {self.label}: none of {len(self.candidates)} candidates answered")
        raise NoEndpointAvailableError(self.label, len(self.candidates))

    def get_stats(self) -> dict:
        return {
            "label": self.label,
            "pinned": self._pinned,
            "candidates": list(self.candidates),
            "resolutions": self.resolutions,
            "history": [p.to_dict() for p in list(self._history)[-10:]],
        }
