"""
Per-category poll scheduling: jittered intervals and exponential backoff.

State machine per category:
    IDLE -> FETCHING -> SUCCESS | RATE_LIMITED | FAILED -> (next due time)

SUCCESS resets the backoff, RATE_LIMITED doubles it up to ``max_backoff``,
FAILED keeps it and simply retries one base interval later.

A source that answered 429 also gets its own SourceThrottle, so a category
that keeps succeeding through a fallback does not hammer the throttled one.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class PollStatus(Enum):
    """Where a category is in its poll cycle."""
    IDLE = "idle"
    FETCHING = "fetching"
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class BackoffConfig:
    """All values in seconds."""
    base_interval: float = 60.0
    initial_backoff: float = 30.0
    max_backoff: float = 600.0
    jitter_ratio: float = 0.2


@dataclass
class SourceThrottle:
    """Rate-limit state of one source for one category."""
    backoff: float = 0.0
    until: float = 0.0

    def is_throttled(self, now: float) -> bool:
        return now < self.until


@dataclass
class PollState:
    next_poll_at: float = 0.0
    backoff: float = 0.0
    status: PollStatus = PollStatus.IDLE
    last_poll_at: Optional[float] = None
    last_success_at: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    polls: int = 0

    def is_due(self, now: float) -> bool:
        return self.status != PollStatus.FETCHING and now >= self.next_poll_at

    def to_dict(self, now: float) -> dict:
        return {
            "status": self.status.value,
            "nextPollIn": round(max(0.0, self.next_poll_at - now), 1),
            "backoff": self.backoff,
            "lastPollAt": self.last_poll_at,
            "lastSuccessAt": self.last_success_at,
            "lastError": self.last_error,
            "consecutiveFailures": self.consecutive_failures,
            "polls": self.polls,
        }


class BackoffPolicy:
    """Computes due times for one category."""

    def __init__(self, config: BackoffConfig, rng: Optional[random.Random] = None):
        self.config = config
        self._rng = rng or random.Random()

    def jitter(self) -> float:
        """Random perturbation of +/- ``jitter_ratio`` of the base interval."""
        spread = self.config.base_interval * self.config.jitter_ratio
        if spread <= 0:
            return 0.0
        return self._rng.uniform(-spread, spread)

    def next_backoff(self, current: float) -> float:
        if current > 0:
            grown = current * 2
        else:
            grown = self.config.initial_backoff
        return min(grown, self.config.max_backoff)

    def new_state(self, now: float) -> PollState:
        """Fresh state whose first poll is spread over the jitter window."""
        spread = self.config.base_interval * self.config.jitter_ratio
        delay = self._rng.uniform(0, spread) if spread > 0 else 0.0
        return PollState(next_poll_at=now + delay)

    def _schedule(self, now: float, extra: float = 0.0) -> float:
        delay = self.config.base_interval + extra + self.jitter()
        return now + max(0.0, delay)

    def begin(self, state: PollState, now: float) -> None:
        state.status = PollStatus.FETCHING
        state.last_poll_at = now
        state.polls += 1

    def on_success(self, state: PollState, now: float) -> None:
        state.status = PollStatus.SUCCESS
        state.backoff = 0.0
        state.consecutive_failures = 0
        state.last_success_at = now
        state.last_error = None
        state.next_poll_at = self._schedule(now)

    def rate_limit_delay(self, backoff: float, retry_after: Optional[float] = None) -> float:
        """Extra delay after a 429: the backoff, or a longer ``Retry-After`` (capped)."""
        if not retry_after:
            return backoff
        return max(backoff, min(retry_after, self.config.max_backoff))

    def on_rate_limited(
        self,
        state: PollState,
        now: float,
        error: str = "rate limited",
        retry_after: Optional[float] = None,
    ) -> None:
        state.status = PollStatus.RATE_LIMITED
        state.backoff = self.next_backoff(state.backoff)
        state.consecutive_failures += 1
        state.last_error = error
        state.next_poll_at = self._schedule(now, extra=self.rate_limit_delay(state.backoff, retry_after))

    def defer(self, state: PollState, until: float, error: str) -> None:
        """Every source is still throttled: wait for the first one, backoff unchanged."""
        state.status = PollStatus.RATE_LIMITED
        state.last_error = error
        state.next_poll_at = until

    def throttle(self, throttle: SourceThrottle, now: float, retry_after: Optional[float] = None) -> None:
        """Keep a throttled source out until the category would retry it anyway."""
        throttle.backoff = self.next_backoff(throttle.backoff)
        throttle.until = now + self.config.base_interval + self.rate_limit_delay(throttle.backoff, retry_after)

    def clear_throttle(self, throttle: SourceThrottle) -> None:
        throttle.backoff = 0.0
        throttle.until = 0.0

    def on_failure(self, state: PollState, now: float, error: str) -> None:
        state.status = PollStatus.FAILED
        state.consecutive_failures += 1
        state.last_error = error
        state.next_poll_at = self._schedule(now)
