"""
Birdeye API provider - new pairs and large trades.

Endpoint paths move between Birdeye releases; the URLs below are candidates
tried in order by the resolver, and every list can be overridden from config.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from whalefeed.data_providers.base import FeedSource
from whalefeed.errors import UpstreamAppError
from whalefeed.models import Category

BASE_URL = "https://public-api.birdeye.so"

DEFAULT_PAIRS_URLS = [
    f"{BASE_URL}/defi/v2/tokens/new_listing",
    f"{BASE_URL}/defi/v3/token/new-listing",
    f"{BASE_URL}/defi/v2/markets/new",
]

DEFAULT_TRADES_URLS = [
    f"{BASE_URL}/defi/v3/txs/recent",
    f"{BASE_URL}/defi/txs/recent",
    f"{BASE_URL}/trader/txs/seek_by_time",
]

WS_URL = "wss://public-api.birdeye.so/socket/solana"


class BirdeyeSource(FeedSource):
    """Birdeye REST source. Needs ``X-API-KEY``."""

    name = "birdeye"
    requires_api_key = True

    def __init__(
        self,
        api_key: Optional[str],
        pairs_urls: Optional[Sequence[str]] = None,
        trades_urls: Optional[Sequence[str]] = None,
        chain: str = "solana",
        **kwargs,
    ):
        self.chain = chain
        candidates = {
            Category.PAIRS: list(pairs_urls if pairs_urls is not None else DEFAULT_PAIRS_URLS),
            Category.TRADES: list(trades_urls if trades_urls is not None else DEFAULT_TRADES_URLS),
        }
        super().__init__(candidates, api_key=api_key, **kwargs)

    def headers(self) -> dict:
        return {
            "accept": "application/json",
            "x-chain": self.chain,
            "X-API-KEY": self.api_key,
        }

    def request_params(self, category: Category, ping: bool = False) -> dict:
        limit = 1 if ping else self.page_size
        if category == Category.TRADES:
            return {"limit": limit, "offset": 0, "tx_type": "swap", "sort_type": "desc"}
        return {"limit": limit}

    def check_payload(self, payload: Any) -> None:
        # Birdeye wraps errors in 200 responses: {"success": false, "message": "..."}
        if isinstance(payload, Mapping) and payload.get("success") is False:
            message = payload.get("message") or payload.get("error") or "success=false"
            raise UpstreamAppError(f"birdeye: {message}")
