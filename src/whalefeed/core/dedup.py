"""
Record deduplication.

Dedup key: the record's own identity (tx hash, signature, pair address, mint)
when it has one, otherwise a SHA-256 of the canonical JSON of the whole record.
Seen keys are kept in a bounded LRU set per category - only keys recent enough
to still be in (or near) the ring buffer are worth remembering.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, Mapping, Optional

from whalefeed.models import Category

logger = logging.getLogger(__name__)

# (prefix, candidate keys) in priority order
IDENTITY_FIELDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("tx", ("txHash", "tx_hash", "txhash", "transactionHash")),
    ("sig", ("signature", "sig", "txSignature", "tx_signature")),
    ("tx", ("tx", "txId", "txid")),
    ("pair", ("pairAddress", "pair_address", "pair", "poolAddress", "pool_address")),
    ("mint", ("mint", "mintAddress", "mint_address", "tokenAddress", "address")),
)


def _identity_value(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)):
        text = str(value).strip()
        return text or None
    return None


def canonical_json(raw: Any) -> str:
    """Serialization independent of key order."""
    return json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def dedup_key(raw: Mapping[str, Any]) -> str:
    """Stable identifier for a raw upstream record."""
    if isinstance(raw, Mapping):
        for prefix, keys in IDENTITY_FIELDS:
            for key in keys:
                value = _identity_value(raw.get(key))
                if value:
                    return f"{prefix}:{value}"
    digest = hashlib.sha256(canonical_json(raw).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


class SeenSet:
    """Bounded LRU set of dedup keys.

    Re-marking a key refreshes it; when full, the least recently seen key is
    forgotten.
    """

    def __init__(self, maxsize: int = 2000):
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self.maxsize = maxsize
        self._keys: "OrderedDict[str, None]" = OrderedDict()
        self.evictions = 0

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> None:
        if key in self._keys:
            self._keys.move_to_end(key)
            return
        self._keys[key] = None
        while len(self._keys) > self.maxsize:
            self._keys.popitem(last=False)
            self.evictions += 1


class Deduplicator:
    """Per-category seen-sets.

    Thread-safe for single-threaded asyncio: is_new/mark_seen never await.
    """

    def __init__(self, maxsize: int = 2000, categories: Optional[Iterable[Category]] = None):
        self._seen: Dict[Category, SeenSet] = {
            category: SeenSet(maxsize) for category in (categories or Category)
        }
        self._dedup_hits = 0
        self._dedup_passes = 0

    def is_new(self, category: Category, key: str) -> bool:
        return key not in self._seen[category]

    def mark_seen(self, category: Category, key: str) -> None:
        self._seen[category].add(key)

    def check(self, category: Category, key: str) -> bool:
        """Like is_new, but counted in the stats. Does not mark the key."""
        if not self.is_new(category, key):
            self._dedup_hits += 1
            logger.debug(f"[DEDUP] Duplicate {category.value} record {key[:24]}")
            return False
        self._dedup_passes += 1
        return True

    def check_and_mark(self, category: Category, key: str) -> bool:
        """True the first time a key is offered for a category."""
        if not self.check(category, key):
            return False
        self.mark_seen(category, key)
        return True

    def size(self, category: Category) -> int:
        return len(self._seen[category])

    def get_stats(self) -> dict:
        return {
            "seen": {category.value: len(s) for category, s in self._seen.items()},
            "evictions": {category.value: s.evictions for category, s in self._seen.items()},
            "dedup_hits": self._dedup_hits,
            "dedup_passes": self._dedup_passes,
        }
