"""Threshold filters for pairs and trades. Pure predicates, no side effects."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Optional

from whalefeed.models import CanonicalPairRecord, CanonicalTradeRecord
from whalefeed.monitoring.extractor import age_minutes


@dataclass
class PairThresholds:
    min_liquidity_usd: float = 0.0
    min_volume_24h_usd: float = 0.0
    min_trades_24h: float = 0.0
    min_age_minutes: float = 0.0
    # Unknown creation time normally counts as "old enough"; set to reject instead.
    require_created_at: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TradeThresholds:
    min_trade_usd: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def pass_age_filter(record: CanonicalPairRecord, thresholds: PairThresholds, now_ms: Optional[int] = None) -> bool:
    if thresholds.min_age_minutes <= 0:
        return True
    age = age_minutes(record.created_at_ms, now_ms)
    if math.isinf(age) and thresholds.require_created_at:
        return False
    return age >= thresholds.min_age_minutes


def pass_pair_filters(record: CanonicalPairRecord, thresholds: PairThresholds, now_ms: Optional[int] = None) -> bool:
    return (
        record.liquidity_usd >= thresholds.min_liquidity_usd
        and record.volume_24h_usd >= thresholds.min_volume_24h_usd
        and record.trades_24h >= thresholds.min_trades_24h
        and pass_age_filter(record, thresholds, now_ms)
    )


def pass_trade_filters(record: CanonicalTradeRecord, thresholds: TradeThresholds) -> bool:
    return record.amount_usd >= thresholds.min_trade_usd


def pair_reject_reason(record: CanonicalPairRecord, thresholds: PairThresholds, now_ms: Optional[int] = None) -> Optional[str]:
    """Name of the first failed check, for debug logging."""
    if record.liquidity_usd < thresholds.min_liquidity_usd:
        return f"liquidity {record.liquidity_usd:.0f} < {thresholds.min_liquidity_usd:.0f}"
    if record.volume_24h_usd < thresholds.min_volume_24h_usd:
        return f"volume24h {record.volume_24h_usd:.0f} < {thresholds.min_volume_24h_usd:.0f}"
    if record.trades_24h < thresholds.min_trades_24h:
        return f"trades24h {record.trades_24h:.0f} < {thresholds.min_trades_24h:.0f}"
    if not pass_age_filter(record, thresholds, now_ms):
        return f"age < {thresholds.min_age_minutes} min"
    return None
