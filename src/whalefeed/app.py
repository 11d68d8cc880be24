"""
Process entrypoint: wire config, state, sources, scheduler/listener and API.

    whalefeed --config config/whalefeed.yaml
    python -m whalefeed --log-level debug
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import time
from typing import List, Optional

import uvloop

from whalefeed.api.server import FeedAPIServer, create_app
from whalefeed.config import FeedConfig, load_config, print_config_summary
from whalefeed.core.backoff import BackoffPolicy
from whalefeed.data_providers.base import FeedSource, close_all
from whalefeed.data_providers.birdeye_provider import BirdeyeSource
from whalefeed.data_providers.dexscreener_provider import DexScreenerSource
from whalefeed.models import Category
from whalefeed.monitoring.birdeye_stream import BirdeyeStreamListener
from whalefeed.monitoring.ingest import FeedIngestor, FeedState
from whalefeed.monitoring.poller import CategoryPoller, FeedScheduler
from whalefeed.utils.logger import (
    get_logger,
    parse_level,
    quiet_noisy_loggers,
    setup_console_logging,
    setup_file_logging,
)

logger = get_logger(__name__)


def build_state(cfg: FeedConfig) -> FeedState:
    return FeedState.create(
        capacity=cfg.storage.capacity,
        seen_multiplier=cfg.storage.seen_multiplier,
        pair_thresholds=cfg.filters,
        trade_thresholds=cfg.trade_filters,
        mode=cfg.mode,
    )


def build_sources(cfg: FeedConfig) -> List[FeedSource]:
    """Sources in priority order: Birdeye, then the DexScreener fallback."""
    common = {"timeout": cfg.polling.request_timeout, "page_size": cfg.polling.page_size}
    sources: List[FeedSource] = [
        BirdeyeSource(
            cfg.birdeye.api_key,
            pairs_urls=cfg.birdeye.pairs_urls,
            trades_urls=cfg.birdeye.trades_urls,
            chain=cfg.birdeye.chain,
            **common,
        )
    ]
    if cfg.dexscreener.enabled:
        sources.append(DexScreenerSource(pairs_urls=cfg.dexscreener.pairs_urls, chain=cfg.birdeye.chain, **common))
    return sources


def build_scheduler(cfg: FeedConfig, ingestor: FeedIngestor, sources: List[FeedSource], clock=time.time) -> FeedScheduler:
    intervals = {
        Category.PAIRS: cfg.polling.pairs_interval,
        Category.TRADES: cfg.polling.trades_interval,
    }
    pollers = [
        CategoryPoller(
            category,
            sources,
            ingestor,
            BackoffPolicy(cfg.polling.backoff_for(interval)),
            clock=clock,
        )
        for category, interval in intervals.items()
    ]
    return FeedScheduler(pollers, tick_interval=cfg.polling.tick_interval, clock=clock)


class FeedService:
    """Owns every long-running piece and shuts them down in order."""

    def __init__(self, cfg: FeedConfig):
        self.cfg = cfg
        self.state = build_state(cfg)
        self.ingestor = FeedIngestor(self.state)
        self.sources = build_sources(cfg) if cfg.mode == "poll" else []
        self.scheduler: Optional[FeedScheduler] = None
        self.listener: Optional[BirdeyeStreamListener] = None
        if cfg.mode == "poll":
            self.scheduler = build_scheduler(cfg, self.ingestor, self.sources)
        else:
            self.listener = BirdeyeStreamListener(self.ingestor, cfg.birdeye.api_key, url=cfg.birdeye.ws_url)
        self.server = FeedAPIServer(
            create_app(self.state, self.sources, cfg.server.response_limit),
            host=cfg.server.host,
            port=cfg.server.port,
        )
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self.server.start()
        if self.scheduler is not None:
            self._task = asyncio.create_task(self.scheduler.run(), name="feed-scheduler")
        elif self.listener is not None:
            self._task = asyncio.create_task(self.listener.run(), name="feed-listener")

    async def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.listener is not None:
            await self.listener.stop()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await close_all(self.sources)
        await self.server.stop()


async def run_service(cfg: FeedConfig) -> None:
    service = FeedService(cfg)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    await service.start()
    logger.info(f"[APP] {cfg.name} running in {cfg.mode} mode")
    try:
        await stop_event.wait()
    finally:
        logger.info("[APP] Shutting down...")
        await service.stop()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Birdeye new-pair / large-trade relay")
    parser.add_argument("--config", "-c", help="YAML config file (default: $WHALEFEED_CONFIG)")
    parser.add_argument("--log-level", help="override LOG_LEVEL")
    parser.add_argument("--mode", choices=["poll", "websocket"], help="override FEED_MODE")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_console_logging(parse_level(args.log_level or "INFO"))
    cfg = load_config(args.config)
    if args.log_level:
        cfg.log_level = args.log_level
    if args.mode:
        cfg.mode = args.mode

    level = parse_level(cfg.log_level)
    setup_console_logging(level)
    if cfg.log_file:
        setup_file_logging(cfg.log_file, level)
    quiet_noisy_loggers()
    print_config_summary(cfg)

    try:
        uvloop.run(run_service(cfg))
    except KeyboardInterrupt:
        logger.info("[APP] Interrupted")


if __name__ == "__main__":
    main()
