"""
Shared feed state and the Extract -> Dedup -> Filter -> Store pipeline.

Both the REST scheduler and the WebSocket listener push raw records through
FeedIngestor; the API server only reads FeedState.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional

from whalefeed import metrics
from whalefeed.core.backoff import PollState
from whalefeed.core.dedup import Deduplicator
from whalefeed.core.ring_buffer import RingBufferStore
from whalefeed.models import Category
from whalefeed.monitoring.extractor import extract_pair, extract_trade, now_ms
from whalefeed.monitoring.filters import (
    PairThresholds,
    TradeThresholds,
    pair_reject_reason,
    pass_trade_filters,
)
from whalefeed.utils.logger import category_extra, get_logger

logger = get_logger(__name__)

SAMPLE_SIZE = 3


@dataclass
class IngestStats:
    received: int = 0
    stored: int = 0
    duplicate: int = 0
    filtered: int = 0
    invalid: int = 0


@dataclass
class FeedState:
    """Everything the process knows; lost on restart."""
    store: RingBufferStore
    dedup: Deduplicator
    pair_thresholds: PairThresholds = field(default_factory=PairThresholds)
    trade_thresholds: TradeThresholds = field(default_factory=TradeThresholds)
    mode: str = "poll"
    connected: bool = False
    last_poll_at: Optional[float] = None
    last_error: Optional[str] = None
    poll_states: Dict[Category, PollState] = field(default_factory=dict)
    pinned_urls: Dict[str, Dict[str, Optional[str]]] = field(default_factory=dict)
    samples: Dict[Category, dict] = field(default_factory=dict)
    recent_errors: Deque[dict] = field(default_factory=lambda: deque(maxlen=20))

    @classmethod
    def create(
        cls,
        capacity: int = 200,
        seen_multiplier: int = 10,
        pair_thresholds: Optional[PairThresholds] = None,
        trade_thresholds: Optional[TradeThresholds] = None,
        mode: str = "poll",
    ) -> "FeedState":
        return cls(
            store=RingBufferStore(capacity),
            dedup=Deduplicator(max(capacity, capacity * seen_multiplier)),
            pair_thresholds=pair_thresholds or PairThresholds(),
            trade_thresholds=trade_thresholds or TradeThresholds(),
            mode=mode,
        )

    def record_error(self, category: Optional[Category], message: str) -> None:
        self.last_error = message
        self.recent_errors.append({
            "at": time.time(),
            "category": category.value if category else None,
            "error": message,
        })

    def record_sample(self, category: Category, source: str, url: str, payload: Any, records: List[Any]) -> None:
        keys = list(payload.keys()) if isinstance(payload, Mapping) else None
        data = payload.get("data") if isinstance(payload, Mapping) else None
        self.samples[category] = {
            "at": time.time(),
            "source": source,
            "url": url,
            "topLevelKeys": keys,
            "dataKeys": list(data.keys()) if isinstance(data, Mapping) else None,
            "count": len(records),
            "records": records[:SAMPLE_SIZE],
        }


class FeedIngestor:
    """Runs raw upstream records into the ring buffers."""

    def __init__(self, state: FeedState):
        self.state = state

    def ingest(self, category: Category, records: Iterable[Any], source: str = "") -> IngestStats:
        stats = IngestStats()
        received_at = now_ms()

        for raw in records:
            stats.received += 1
            if not isinstance(raw, Mapping):
                stats.invalid += 1
                continue

            if category == Category.PAIRS:
                record = extract_pair(raw)
            else:
                record = extract_trade(raw, received_at_ms=received_at)

            if not self.state.dedup.check(category, record.dedup_key):
                stats.duplicate += 1
                continue

            if category == Category.PAIRS:
                reason = pair_reject_reason(record, self.state.pair_thresholds, received_at)
                accepted = reason is None
            else:
                accepted = pass_trade_filters(record, self.state.trade_thresholds)
                reason = None if accepted else f"amount {record.amount_usd:.0f} < {self.state.trade_thresholds.min_trade_usd:.0f}"

            if not accepted:
                stats.filtered += 1
                logger.debug(f"[INGEST] Rejected {record.dedup_key[:24]}: {reason}", extra=category_extra(category))
                continue

            # only stored keys are seen; a rejected pair is re-evaluated next poll
            self.state.dedup.mark_seen(category, record.dedup_key)
            self.state.store.push(category, record)
            stats.stored += 1

        self._report(category, stats, source)
        return stats

    def _report(self, category: Category, stats: IngestStats, source: str) -> None:
        label = category.value
        metrics.record_ingest(label, "stored", stats.stored)
        metrics.record_ingest(label, "duplicate", stats.duplicate)
        metrics.record_ingest(label, "filtered", stats.filtered)
        metrics.record_ingest(label, "invalid", stats.invalid)
        metrics.set_buffer_size(label, self.state.store.size(category))

        message = (
            f"[INGEST] {source or '?'}: {stats.received} received, {stats.stored} stored, "
            f"{stats.duplicate} dup, {stats.filtered} filtered, {stats.invalid} invalid"
        )
        if stats.stored:
            logger.info(message, extra=category_extra(category))
        else:
            logger.debug(message, extra=category_extra(category))
