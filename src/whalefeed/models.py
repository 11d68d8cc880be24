"""Feed categories and the canonical record views served to clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Category(Enum):
    """Record categories, each with its own buffer, seen-set and schedule."""
    PAIRS = "pairs"
    TRADES = "trades"


@dataclass
class CanonicalPairRecord:
    """Typed view of one new-pair event."""
    dedup_key: str
    liquidity_usd: float = 0.0
    volume_24h_usd: float = 0.0
    trades_24h: float = 0.0
    created_at_ms: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dedupKey": self.dedup_key,
            "liquidityUsd": self.liquidity_usd,
            "volume24hUsd": self.volume_24h_usd,
            "trades24h": self.trades_24h,
            "createdAt": self.created_at_ms,
            "raw": self.raw,
        }


@dataclass
class CanonicalTradeRecord:
    """Typed view of one trade event."""
    dedup_key: str
    amount_usd: float = 0.0
    side: Optional[str] = None  # "buy" | "sell" | None
    pair_address: Optional[str] = None
    block_time_ms: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dedupKey": self.dedup_key,
            "amountUsd": self.amount_usd,
            "side": self.side,
            "pairAddress": self.pair_address,
            "blockTimeMs": self.block_time_ms,
            "raw": self.raw,
        }
