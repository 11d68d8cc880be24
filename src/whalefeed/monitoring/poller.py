"""
Feed Poller - coarse tick, fine-grained per-category due times.

Every ``tick_interval`` seconds the scheduler checks each category; a category
whose ``next_poll_at`` has passed runs one fetch -> extract -> dedup -> filter
-> store cycle, then the BackoffPolicy picks its next due time.

Sources are tried in priority order (Birdeye first, DexScreener as fallback
for pairs); the first one that answers ends the cycle.

USAGE:
    scheduler = FeedScheduler([pairs_poller, trades_poller], tick_interval=15)
    task = asyncio.create_task(scheduler.run())
    ...
    scheduler.stop()
    await task
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Dict, List, Optional, Sequence

import aiohttp

from whalefeed import metrics
from whalefeed.core.backoff import BackoffPolicy, PollState, PollStatus, SourceThrottle
from whalefeed.data_providers.base import FeedSource, FetchResult
from whalefeed.errors import (
    FeedError,
    NoEndpointAvailableError,
    RateLimitedError,
    describe_error,
    is_rate_limit_error,
)
from whalefeed.models import Category
from whalefeed.monitoring.ingest import FeedIngestor
from whalefeed.utils.logger import category_extra, get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class CategoryPoller:
    """Poll state machine for one category."""

    def __init__(
        self,
        category: Category,
        sources: Sequence[FeedSource],
        ingestor: FeedIngestor,
        policy: BackoffPolicy,
        clock: Clock = time.time,
    ):
        self.category = category
        self.sources = [s for s in sources if s.serves(category)]
        self.ingestor = ingestor
        self.policy = policy
        self.clock = clock
        self.state: PollState = policy.new_state(clock())
        self.throttles: Dict[str, SourceThrottle] = {}
        ingestor.state.poll_states[category] = self.state
        self._extra = category_extra(category)

    @property
    def feed_state(self):
        return self.ingestor.state

    def _handle_result(self, result: FetchResult) -> None:
        label = self.category.value
        self.feed_state.record_sample(self.category, result.source, result.url, result.payload, result.records)
        if result.schema_miss:
            keys = list(result.payload.keys()) if isinstance(result.payload, dict) else type(result.payload).__name__
            metrics.record_schema_miss(label)
            logger.warning(
                f"[POLLER] {result.source}: no record array in response from {result.url} (keys: {keys})",
                extra=self._extra,
            )
        self.ingestor.ingest(self.category, result.records, source=result.source)

    async def poll_once(self) -> PollStatus:
        """One full cycle. Never raises (except cancellation)."""
        label = self.category.value
        started = self.clock()
        self.policy.begin(self.state, started)
        self.feed_state.last_poll_at = started

        succeeded = False
        rate_limit_error: Optional[str] = None
        retry_after: Optional[float] = None
        throttled_until: List[float] = []
        errors: List[str] = []

        available = [s for s in self.sources if s.is_available]
        if not available:
            names = ", ".join(s.name for s in self.sources) or "none configured"
            errors.append(f"no usable source for {label} ({names}; missing API key?)")
            logger.error(f"[POLLER] {errors[-1]}", extra=self._extra)

        for source in available:
            throttle = self.throttles.setdefault(source.name, SourceThrottle())
            if throttle.is_throttled(started):
                throttled_until.append(throttle.until)
                logger.debug(
                    f"[POLLER] {source.name} throttled for another {throttle.until - started:.0f}s",
                    extra=self._extra,
                )
                continue

            try:
                result = await source.fetch(self.category)
            except RateLimitedError as e:
                rate_limit_error = f"{source.name}: {describe_error(e)}"
                retry_after = e.retry_after or retry_after
                self.policy.throttle(throttle, self.clock(), e.retry_after)
                logger.warning(f"[POLLER] {rate_limit_error}", extra=self._extra)
                continue
            except NoEndpointAvailableError as e:
                errors.append(f"{source.name}: {e}")
                logger.warning(f"[POLLER] {errors[-1]}", extra=self._extra)
                continue
            except (FeedError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                message = f"{source.name}: {describe_error(e)}"
                if is_rate_limit_error(e):
                    rate_limit_error = message
                    self.policy.throttle(throttle, self.clock())
                    logger.warning(f"[POLLER] {message}", extra=self._extra)
                    continue
                errors.append(message)
                logger.warning(f"[POLLER] {message}", extra=self._extra)
                source.unpin(self.category)
                continue
            except Exception as e:
                errors.append(f"{source.name}: {describe_error(e)}")
                logger.exception(f"[POLLER] Unexpected error from {source.name}", extra=self._extra)
                source.unpin(self.category)
                continue

            self.policy.clear_throttle(throttle)
            try:
                self._handle_result(result)
            except Exception as e:
                errors.append(f"{source.name}: ingest failed: {describe_error(e)}")
                logger.exception(f"[POLLER] Could not ingest {source.name} records", extra=self._extra)
                break
            succeeded = True
            break

        finished = self.clock()
        if succeeded:
            self.policy.on_success(self.state, finished)
            self.feed_state.connected = True
        elif rate_limit_error:
            self.policy.on_rate_limited(self.state, finished, rate_limit_error, retry_after)
            self.feed_state.record_error(self.category, rate_limit_error)
            logger.warning(
                f"[POLLER] Backing off {self.state.backoff:.0f}s",
                extra=self._extra,
            )
        elif throttled_until and not errors:
            self.policy.defer(self.state, min(throttled_until), "all sources throttled")
        else:
            message = "; ".join(errors) or "poll failed"
            self.policy.on_failure(self.state, finished, message)
            self.feed_state.record_error(self.category, message)

        for source in self.sources:
            self.feed_state.pinned_urls[source.name] = source.pinned_urls()

        metrics.record_poll(label, self.state.status.value)
        metrics.set_backoff(label, self.state.backoff)
        return self.state.status


class FeedScheduler:
    """Drives all category pollers from a single repeating tick."""

    def __init__(
        self,
        pollers: Sequence[CategoryPoller],
        tick_interval: float = 15.0,
        clock: Clock = time.time,
    ):
        self.pollers = list(pollers)
        self.tick_interval = tick_interval
        self.clock = clock
        self.ticks = 0
        self._stop_event: Optional[asyncio.Event] = None
        self.running = False

    def due(self) -> List[CategoryPoller]:
        now = self.clock()
        return [p for p in self.pollers if p.state.is_due(now)]

    async def tick(self) -> List[Category]:
        """Poll every due category; categories run concurrently."""
        self.ticks += 1
        due = self.due()
        if due:
            results = await asyncio.gather(*(p.poll_once() for p in due), return_exceptions=True)
            for poller, result in zip(due, results):
                if isinstance(result, Exception):
                    logger.error(f"[POLLER] {poller.category.value} poll crashed: {describe_error(result)}")
                    poller.policy.on_failure(poller.state, self.clock(), describe_error(result))
        return [p.category for p in due]

    async def run(self) -> None:
        self.running = True
        self._stop_event = asyncio.Event()
        logger.info(
            f"[POLLER] STARTED - {len(self.pollers)} categories, tick every {self.tick_interval}s"
        )
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except Exception:
                    logger.exception("[POLLER] Tick failed, continuing")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("[POLLER] Cancelled")
            raise
        finally:
            self.running = False
            logger.info("[POLLER] Stopped")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
