"""
Field extraction for schema-variable upstream records.

The upstream renames fields between releases, so every logical field is read
through an ordered list of strategies. A strategy is a pure function
``raw -> float | None``; the first one that yields a value wins. Nothing in
here raises on bad input - unknown shapes degrade to defaults.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Union

from whalefeed.core.dedup import dedup_key
from whalefeed.models import CanonicalPairRecord, CanonicalTradeRecord, Category

Strategy = Callable[[Mapping[str, Any]], Optional[float]]


# ============================================
# NUMBERS
# ============================================

def to_number(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """Finite float from an untyped field, else ``default``."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float, Decimal)):
        try:
            number = float(value)
        except (ValueError, OverflowError):
            return default
    elif isinstance(value, str):
        text = value.strip().replace(",", "").replace("$", "")
        if not text:
            return default
        try:
            number = float(text)
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(number):
        return default
    return number


def field(*keys: str, positive: bool = False) -> Strategy:
    """First listed key holding a number (``> 0`` when ``positive``)."""
    def strategy(raw: Mapping[str, Any]) -> Optional[float]:
        for key in keys:
            number = to_number(raw.get(key), None)
            if number is None:
                continue
            if positive and number <= 0:
                continue
            return number
        return None
    strategy.__name__ = f"field({', '.join(keys)})"
    return strategy


def nested(parent: str, *keys: str, positive: bool = False) -> Strategy:
    """Same as :func:`field` but one level down, e.g. ``liquidity.usd``."""
    inner = field(*keys, positive=positive)

    def strategy(raw: Mapping[str, Any]) -> Optional[float]:
        child = raw.get(parent)
        if not isinstance(child, Mapping):
            return None
        return inner(child)
    strategy.__name__ = f"nested({parent}.{'|'.join(keys)})"
    return strategy


def product(quantity_keys: Sequence[str], price_keys: Sequence[str], parent: Optional[str] = None) -> Strategy:
    """``quantity * price``; ``0.0`` when the product is not finite."""
    quantity_of = field(*quantity_keys)
    price_of = field(*price_keys)

    def strategy(raw: Mapping[str, Any]) -> Optional[float]:
        source = raw.get(parent) if parent else raw
        if not isinstance(source, Mapping):
            return None
        quantity = quantity_of(source)
        price = price_of(source)
        if quantity is None or price is None:
            return None
        value = quantity * price
        return value if math.isfinite(value) else 0.0
    strategy.__name__ = f"product({parent or '.'})"
    return strategy


def summed(parent: str, child: str, keys: Sequence[str]) -> Strategy:
    """Sum of numeric leaves, e.g. ``txns.h24.buys + txns.h24.sells``."""
    def strategy(raw: Mapping[str, Any]) -> Optional[float]:
        outer = raw.get(parent)
        inner = outer.get(child) if isinstance(outer, Mapping) else None
        if not isinstance(inner, Mapping):
            return None
        values = [to_number(inner.get(key), None) for key in keys]
        values = [v for v in values if v is not None]
        return sum(values) if values else None
    strategy.__name__ = f"summed({parent}.{child})"
    return strategy


def resolve(raw: Mapping[str, Any], strategies: Iterable[Strategy], default: float = 0.0) -> float:
    for strategy in strategies:
        value = strategy(raw)
        if value is not None and math.isfinite(value):
            return value
    return default


# ============================================
# FIELD STRATEGIES
# ============================================

USD_KEYS = (
    "volumeUSD", "volumeUsd", "volume_usd",
    "amountUSD", "amountUsd", "amount_usd",
    "valueUSD", "valueUsd", "value_usd",
    "usdValue", "usd_value", "totalUSD", "totalUsd", "total_usd",
    "tradeUsd", "sizeUsd",
)
QUANTITY_KEYS = ("amount", "quantity", "qty", "size", "uiAmount", "tokenAmount", "baseAmount")
PRICE_KEYS = ("price", "priceUsd", "priceUSD", "price_usd", "tokenPrice", "nearestPrice")

TRADE_USD_DIRECT: List[Strategy] = [field(*USD_KEYS, positive=True)]
TRADE_USD_PRODUCT: List[Strategy] = [
    product(QUANTITY_KEYS, PRICE_KEYS),
    product(QUANTITY_KEYS, PRICE_KEYS, parent="from"),
    product(QUANTITY_KEYS, PRICE_KEYS, parent="to"),
    product(QUANTITY_KEYS, PRICE_KEYS, parent="base"),
    product(QUANTITY_KEYS, PRICE_KEYS, parent="quote"),
]

LIQUIDITY: List[Strategy] = [
    field("liquidityUSD", "liquidityUsd", "liquidity_usd", "liquidity", "liq"),
    nested("liquidity", "usd", "USD"),
]
VOLUME_24H: List[Strategy] = [
    field("volume24hUSD", "volume24hUsd", "volume_24h_usd", "v24hUSD", "v24hUsd", "volume24h", "volume_24h"),
    nested("volume", "h24", "24h"),
]
TRADES_24H: List[Strategy] = [
    field("trades24h", "trade24h", "txns24h", "trade_24h_count", "trades_24h", "txCount24h"),
    summed("txns", "h24", ("buys", "sells")),
]

CREATED_AT_KEYS = (
    "createdAt", "created_at", "pairCreatedAt", "creationTime", "creation_time",
    "liquidityAddedAt", "listedAt", "openTime", "blockUnixTime", "blockTime", "timestamp",
)
TRADE_TIME_KEYS = (
    "blockUnixTime", "blockTime", "block_time", "blockTimeMs", "timestamp", "time", "ts", "unixTime",
)
SIDE_KEYS = ("side", "type", "tradeType", "txType", "trade_type", "direction")
PAIR_ADDRESS_KEYS = ("pairAddress", "pair_address", "poolAddress", "pool_address", "pool", "pair")


def resolve_amount_usd(raw: Mapping[str, Any]) -> float:
    """USD notional of a trade: explicit USD field, else quantity * price."""
    for strategy in TRADE_USD_DIRECT:
        value = strategy(raw)
        if value is not None:
            return value
    for strategy in TRADE_USD_PRODUCT:
        value = strategy(raw)
        if value is not None:
            return value if math.isfinite(value) else 0.0
    return 0.0


# ============================================
# TIMESTAMPS
# ============================================

def _epoch_to_ms(number: float) -> Optional[int]:
    if number <= 0:
        return None
    if number >= 1e14:      # microseconds
        number /= 1000
    elif number < 1e12:     # seconds
        number *= 1000
    return int(number)


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """Epoch (s or ms) or ISO-8601 string -> epoch ms; None if unparseable."""
    if value is None or isinstance(value, bool):
        return None
    number = to_number(value, None)
    if number is not None:
        return _epoch_to_ms(number)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return _epoch_to_ms(parsed.timestamp())


def first_timestamp_ms(raw: Mapping[str, Any], keys: Iterable[str]) -> Optional[int]:
    for key in keys:
        if key in raw:
            ts = parse_timestamp_ms(raw.get(key))
            if ts is not None:
                return ts
    return None


def now_ms() -> int:
    return int(time.time() * 1000)


def age_minutes(created_at_ms: Optional[int], now: Optional[int] = None) -> float:
    """Minutes since creation; ``inf`` when the creation time is unknown."""
    if created_at_ms is None:
        return math.inf
    current = now if now is not None else now_ms()
    return (current - created_at_ms) / 60000


# ============================================
# RESPONSE SHAPE
# ============================================

PREFERRED_ARRAY_KEYS = ("items", "transactions", "txs", "records", "rows", "result", "list")


def find_array(payload: Any) -> list:
    """Locate the record array in a response of unknown shape; [] if none."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, Mapping):
        return []

    data = payload.get("data")
    if isinstance(data, list):
        return data

    scopes = [scope for scope in (data, payload) if isinstance(scope, Mapping)]
    for scope in scopes:
        for key in PREFERRED_ARRAY_KEYS:
            value = scope.get(key)
            if isinstance(value, list):
                return value
    for scope in scopes:
        for value in scope.values():
            if isinstance(value, list):
                return value
    return []


# ============================================
# CANONICAL RECORDS
# ============================================

def _first_str(raw: Mapping[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_side(raw: Mapping[str, Any]) -> Optional[str]:
    is_buy = raw.get("isBuy", raw.get("is_buy"))
    if isinstance(is_buy, bool):
        return "buy" if is_buy else "sell"
    for key in SIDE_KEYS:
        value = raw.get(key)
        if not isinstance(value, str):
            continue
        lowered = value.lower()
        if "buy" in lowered:
            return "buy"
        if "sell" in lowered:
            return "sell"
    return None


def _as_mapping(raw: Any) -> dict:
    if isinstance(raw, Mapping):
        return dict(raw)
    return {"value": raw}


def extract_pair(raw: Any) -> CanonicalPairRecord:
    record = _as_mapping(raw)
    return CanonicalPairRecord(
        dedup_key=dedup_key(record),
        liquidity_usd=resolve(record, LIQUIDITY),
        volume_24h_usd=resolve(record, VOLUME_24H),
        trades_24h=resolve(record, TRADES_24H),
        created_at_ms=first_timestamp_ms(record, CREATED_AT_KEYS),
        raw=record,
    )


def extract_trade(raw: Any, received_at_ms: Optional[int] = None) -> CanonicalTradeRecord:
    record = _as_mapping(raw)
    block_time = first_timestamp_ms(record, TRADE_TIME_KEYS)
    if block_time is None:
        block_time = received_at_ms if received_at_ms is not None else now_ms()
    return CanonicalTradeRecord(
        dedup_key=dedup_key(record),
        amount_usd=resolve_amount_usd(record),
        side=resolve_side(record),
        pair_address=_first_str(record, PAIR_ADDRESS_KEYS),
        block_time_ms=block_time,
        raw=record,
    )


def extract(raw: Any, kind: Category) -> Union[CanonicalPairRecord, CanonicalTradeRecord]:
    if kind == Category.PAIRS:
        return extract_pair(raw)
    return extract_trade(raw)
