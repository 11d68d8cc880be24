"""Tests for FeedSource / BirdeyeSource / DexScreenerSource against a local fake upstream"""
from collections import Counter

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from whalefeed.data_providers.base import close_all
from whalefeed.data_providers.birdeye_provider import BirdeyeSource
from whalefeed.data_providers.dexscreener_provider import DexScreenerSource
from whalefeed.errors import (
    MissingAPIKeyError,
    NoEndpointAvailableError,
    RateLimitedError,
    UpstreamAppError,
    UpstreamDecodeError,
    UpstreamHTTPError,
)
from whalefeed.models import Category

API_KEY = "test-key"


@pytest_asyncio.fixture
async def upstream():
    hits = Counter()

    async def missing(request):
        hits["missing"] += 1
        return web.Response(status=404, text="not found")

    async def pairs(request):
        hits["pairs"] += 1
        if request.headers.get("X-API-KEY") != API_KEY:
            return web.json_response({"success": False, "message": "Unauthorized"}, status=401)
        return web.json_response({
            "success": True,
            "data": {"items": [{"address": "Mint1", "liquidity": 5000}, "junk"]},
        })

    async def error_body(request):
        return web.json_response({"success": False, "message": "Invalid API key"})

    async def html(request):
        return web.Response(text="<html>maintenance</html>", content_type="text/html")

    async def limited(request):
        return web.Response(status=429, headers={"Retry-After": "7"})

    async def no_array(request):
        return web.json_response({"success": True, "data": {"total": 0}})

    async def dex(request):
        return web.json_response({
            "pairs": [
                {"chainId": "solana", "pairAddress": "SolPair"},
                {"chainId": "ethereum", "pairAddress": "EthPair"},
            ]
        })

    app = web.Application()
    app.router.add_get("/missing", missing)
    app.router.add_get("/pairs", pairs)
    app.router.add_get("/error-body", error_body)
    app.router.add_get("/html", html)
    app.router.add_get("/limited", limited)
    app.router.add_get("/no-array", no_array)
    app.router.add_get("/dex", dex)

    server = TestServer(app)
    await server.start_server()
    server.hits = hits
    yield server
    await server.close()


@pytest_asyncio.fixture
async def opened():
    """Collects sources created by a test and closes their sessions."""
    sources = []
    yield sources
    await close_all(sources)


def url(server, path):
    return str(server.make_url(path))


def birdeye(server, opened, pairs=(), trades=(), api_key=API_KEY):
    source = BirdeyeSource(
        api_key,
        pairs_urls=[url(server, p) for p in pairs],
        trades_urls=[url(server, p) for p in trades],
        timeout=5,
    )
    opened.append(source)
    return source


@pytest.mark.asyncio
async def test_fetch_pins_first_working_candidate(upstream, opened):
    source = birdeye(upstream, opened, pairs=["/missing", "/pairs"])

    result = await source.fetch(Category.PAIRS)
    assert result.url.endswith("/pairs")
    assert result.records == [{"address": "Mint1", "liquidity": 5000}]
    assert result.schema_miss is False

    await source.fetch(Category.PAIRS)
    assert upstream.hits["missing"] == 1
    assert source.pinned_urls()["pairs"].endswith("/pairs")


@pytest.mark.asyncio
async def test_all_candidates_failing_raises(upstream, opened):
    source = birdeye(upstream, opened, pairs=["/missing", "/html"])
    with pytest.raises(NoEndpointAvailableError):
        await source.fetch(Category.PAIRS)
    assert source.pinned_urls()["pairs"] is None


@pytest.mark.asyncio
async def test_429_surfaces_as_rate_limited(upstream, opened):
    source = birdeye(upstream, opened, pairs=["/limited", "/pairs"])
    with pytest.raises(RateLimitedError) as exc_info:
        await source.fetch(Category.PAIRS)
    assert exc_info.value.retry_after == 7
    assert upstream.hits["pairs"] == 0


@pytest.mark.asyncio
async def test_get_json_error_mapping(upstream, opened):
    source = birdeye(upstream, opened)

    with pytest.raises(UpstreamHTTPError) as exc_info:
        await source.get_json(url(upstream, "/missing"))
    assert exc_info.value.status == 404

    with pytest.raises(UpstreamAppError, match="Invalid API key"):
        await source.get_json(url(upstream, "/error-body"))

    with pytest.raises(UpstreamDecodeError):
        await source.get_json(url(upstream, "/html"))


@pytest.mark.asyncio
async def test_wrong_key_is_rejected_upstream(upstream, opened):
    source = birdeye(upstream, opened, pairs=["/pairs"], api_key="wrong")
    with pytest.raises(NoEndpointAvailableError):
        await source.fetch(Category.PAIRS)


@pytest.mark.asyncio
async def test_response_without_array_is_schema_miss(upstream, opened):
    source = birdeye(upstream, opened, trades=["/no-array"])
    result = await source.fetch(Category.TRADES)
    assert result.records == []
    assert result.schema_miss is True


@pytest.mark.asyncio
async def test_birdeye_without_key(opened):
    source = BirdeyeSource("", pairs_urls=["http://127.0.0.1:9/pairs"])
    opened.append(source)
    assert source.is_available is False
    with pytest.raises(MissingAPIKeyError):
        await source.fetch(Category.PAIRS)


def test_birdeye_request_conventions():
    source = BirdeyeSource(API_KEY, chain="solana", page_size=25)
    assert source.headers()["X-API-KEY"] == API_KEY
    assert source.headers()["x-chain"] == "solana"
    assert source.request_params(Category.TRADES) == {
        "limit": 25, "offset": 0, "tx_type": "swap", "sort_type": "desc",
    }
    assert source.request_params(Category.PAIRS, ping=True) == {"limit": 1}
    assert set(source.categories) == {Category.PAIRS, Category.TRADES}


@pytest.mark.asyncio
async def test_dexscreener_serves_pairs_without_key(upstream, opened):
    source = DexScreenerSource(pairs_urls=[url(upstream, "/dex")], chain="solana", timeout=5)
    opened.append(source)

    assert source.is_available is True
    assert source.serves(Category.PAIRS)
    assert not source.serves(Category.TRADES)

    result = await source.fetch(Category.PAIRS)
    assert [r["pairAddress"] for r in result.records] == ["SolPair"]
