"""
Read API - serves the ring buffers over HTTP.

Routes:
    GET /                 status: connectivity, buffer sizes, filters, endpoints
    GET /new-pairs        newest pairs first
    GET /whales           newest large trades first, ?min_buy_usd=
    GET /_probe/pairs     last raw upstream sample (diagnostic)
    GET /_probe/trades
    GET /_debug           resolver history, recent errors, dedup stats
    GET /metrics          Prometheus
"""

from __future__ import annotations

import time
from typing import Optional, Sequence

from aiohttp import web

from whalefeed import metrics
from whalefeed.data_providers.base import FeedSource
from whalefeed.models import Category
from whalefeed.monitoring.extractor import to_number
from whalefeed.monitoring.ingest import FeedState
from whalefeed.utils.logger import get_logger

logger = get_logger(__name__)

STATE_KEY = web.AppKey("feed_state", FeedState)
SOURCES_KEY = web.AppKey("feed_sources", list)
LIMIT_KEY = web.AppKey("response_limit", int)


def _limit(request: web.Request) -> int:
    cap = request.app[LIMIT_KEY]
    requested = to_number(request.query.get("limit"), None)
    if requested is None:
        return cap
    return max(1, min(int(requested), cap))


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        response = await handler(request)
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


async def status_handler(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    now = time.time()
    return web.json_response({
        "ok": True,
        "mode": state.mode,
        "connected": state.connected,
        "newPairs": state.store.size(Category.PAIRS),
        "largeTrades": state.store.size(Category.TRADES),
        "capacity": state.store.capacity,
        "seen": {c.value: state.dedup.size(c) for c in Category},
        "filters": {
            "pairs": state.pair_thresholds.to_dict(),
            "trades": state.trade_thresholds.to_dict(),
        },
        "endpoints": state.pinned_urls,
        "polls": {c.value: s.to_dict(now) for c, s in state.poll_states.items()},
        "lastPollAt": state.last_poll_at,
        "lastError": state.last_error,
    })


async def new_pairs_handler(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    records = state.store.recent(Category.PAIRS, _limit(request))
    return web.json_response({"data": [r.to_dict() for r in records]})


async def whales_handler(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    default_min = state.trade_thresholds.min_trade_usd
    min_usd = to_number(request.query.get("min_buy_usd"), default_min)
    limit = _limit(request)

    matched = [
        r for r in state.store.recent(Category.TRADES, state.store.capacity)
        if r.amount_usd >= min_usd
    ]
    return web.json_response({"data": [r.to_dict() for r in matched[:limit]]})


def _sample_handler(category: Category):
    async def handler(request: web.Request) -> web.Response:
        state = request.app[STATE_KEY]
        return web.json_response({"category": category.value, "sample": state.samples.get(category)})
    return handler


async def debug_handler(request: web.Request) -> web.Response:
    state = request.app[STATE_KEY]
    sources = request.app[SOURCES_KEY]
    return web.json_response({
        "resolvers": {
            source.name: {c.value: r.get_stats() for c, r in source.resolvers.items()}
            for source in sources
        },
        "sourcesAvailable": {source.name: source.is_available for source in sources},
        "recentErrors": list(state.recent_errors),
        "dedup": state.dedup.get_stats(),
    })


async def metrics_handler(request: web.Request) -> web.Response:
    body, content_type = metrics.render_latest()
    return web.Response(body=body, headers={"Content-Type": content_type})


def create_app(
    state: FeedState,
    sources: Optional[Sequence[FeedSource]] = None,
    response_limit: int = 100,
) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[STATE_KEY] = state
    app[SOURCES_KEY] = list(sources or [])
    app[LIMIT_KEY] = response_limit

    app.router.add_get("/", status_handler)
    app.router.add_get("/new-pairs", new_pairs_handler)
    app.router.add_get("/whales", whales_handler)
    app.router.add_get("/_probe/pairs", _sample_handler(Category.PAIRS))
    app.router.add_get("/_probe/trades", _sample_handler(Category.TRADES))
    app.router.add_get("/_debug", debug_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


class FeedAPIServer:
    """HTTP server for the read API."""

    def __init__(self, app: web.Application, host: str = "0.0.0.0", port: int = 3000):
        self.app = app
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"[API] Listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        logger.info("[API] Stopped")
