"""Fallback new-pair source via DexScreener (no API key, pairs only)."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence

from whalefeed.data_providers.base import FeedSource
from whalefeed.models import Category

DEFAULT_PAIRS_URLS = [
    "https://api.dexscreener.com/latest/dex/search?q=solana",
    "https://api.dexscreener.com/token-profiles/latest/v1",
]


class DexScreenerSource(FeedSource):
    name = "dexscreener"
    requires_api_key = False

    def __init__(
        self,
        pairs_urls: Optional[Sequence[str]] = None,
        chain: str = "solana",
        **kwargs,
    ):
        self.chain = chain
        candidates = {
            Category.PAIRS: list(pairs_urls if pairs_urls is not None else DEFAULT_PAIRS_URLS),
        }
        super().__init__(candidates, **kwargs)

    def postprocess(self, category: Category, records: List[Any]) -> List[Any]:
        # search results mix chains; keep records without chainId as-is
        kept = []
        for record in records:
            chain_id = record.get("chainId") if isinstance(record, Mapping) else None
            if chain_id and str(chain_id).lower() != self.chain:
                continue
            kept.append(record)
        return kept
