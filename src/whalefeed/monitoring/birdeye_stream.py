"""
Birdeye WebSocket listener - streaming alternative to REST polling.

Subscribes to new pairs and large trades and feeds every pushed record through
the same ingest pipeline as the poller. Reconnects with exponential backoff;
a receive watchdog forces a reconnect when the socket goes silent.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Optional

import websockets

from whalefeed import metrics
from whalefeed.data_providers.birdeye_provider import WS_URL
from whalefeed.errors import describe_error
from whalefeed.models import Category
from whalefeed.monitoring.ingest import FeedIngestor
from whalefeed.utils.logger import get_logger

logger = get_logger(__name__)

MESSAGE_CATEGORIES = {
    "NEW_PAIR_DATA": Category.PAIRS,
    "TXS_LARGE_TRADE_DATA": Category.TRADES,
}


class BirdeyeStreamListener:
    """Birdeye socket client for NEW_PAIR_DATA / TXS_LARGE_TRADE_DATA."""

    watchdog_timeout = 90.0  # seconds without a frame = reconnect
    missing_key_retry = 10.0
    reconnect_delay = 5.0
    max_reconnect_delay = 60.0

    def __init__(
        self,
        ingestor: FeedIngestor,
        api_key: Optional[str],
        url: str = WS_URL,
        origin: str = "https://birdeye.so",
    ):
        self.ingestor = ingestor
        self.api_key = api_key or ""
        self.url = url
        self.origin = origin
        self.running = False
        self.reconnects = 0
        self._websocket = None

    @property
    def state(self):
        return self.ingestor.state

    def subscription_messages(self) -> list[str]:
        pair_th = self.state.pair_thresholds
        trade_th = self.state.trade_thresholds
        return [
            json.dumps({"type": "SUBSCRIBE_NEW_PAIR", "min_liquidity": pair_th.min_liquidity_usd}),
            json.dumps({"type": "SUBSCRIBE_LARGE_TRADE_TXS", "min_volume": trade_th.min_trade_usd}),
        ]

    def handle_message(self, message) -> Optional[Category]:
        """Route one frame; returns the category ingested into, if any."""
        self.state.last_poll_at = time.time()
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        try:
            msg = json.loads(message)
        except (json.JSONDecodeError, ValueError):
            return None
        if not isinstance(msg, dict):
            return None

        category = MESSAGE_CATEGORIES.get(msg.get("type"))
        data = msg.get("data")
        if category is None or not data:
            return None

        records = data if isinstance(data, list) else [data]
        self.ingestor.ingest(category, records, source="birdeye-ws")
        return category

    async def _listen_once(self) -> None:
        headers = {"X-API-KEY": self.api_key, "Origin": self.origin}
        async with websockets.connect(
            self.url,
            additional_headers=headers,
            ping_interval=30,
            ping_timeout=60,
            close_timeout=10,
        ) as websocket:
            self._websocket = websocket
            self.state.connected = True
            logger.info("[WS] Birdeye socket connected")

            for payload in self.subscription_messages():
                await websocket.send(payload)

            try:
                while self.running:
                    try:
                        message = await asyncio.wait_for(websocket.recv(), timeout=self.watchdog_timeout)
                    except asyncio.TimeoutError:
                        logger.warning(f"[WS] No frames for {self.watchdog_timeout:.0f}s, reconnecting")
                        return
                    self.handle_message(message)
            finally:
                self._websocket = None
                self.state.connected = False

    async def run(self) -> None:
        self.running = True
        delay = self.reconnect_delay

        while self.running:
            if not self.api_key:
                logger.error(f"[WS] Missing BIRDEYE_API_KEY, retrying in {self.missing_key_retry:.0f}s")
                self.state.record_error(None, "missing BIRDEYE_API_KEY")
                await asyncio.sleep(self.missing_key_retry)
                continue

            try:
                logger.info(f"[WS] Connecting to {self.url}")
                await self._listen_once()
                delay = self.reconnect_delay
            except asyncio.CancelledError:
                logger.info("[WS] Listener cancelled")
                raise
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(f"[WS] Socket closed ({e}), reconnecting")
            except Exception as e:
                message = describe_error(e)
                self.state.record_error(None, f"websocket: {message}")
                logger.error(f"[WS] Connection error: {message}")
                delay = min(delay * 2, self.max_reconnect_delay)

            if not self.running:
                break
            self.reconnects += 1
            metrics.record_ws_reconnect()
            logger.info(f"[WS] Reconnecting in {delay:.0f}s...")
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        self.running = False
        if self._websocket is not None:
            try:
                await self._websocket.close()
            except Exception as e:
                logger.debug(f"[WS] Close failed: {e}")
