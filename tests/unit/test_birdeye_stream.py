"""Tests for BirdeyeStreamListener"""
import asyncio
import json

import pytest
import websockets
from websockets.asyncio.server import serve
from websockets.datastructures import Headers

from whalefeed.models import Category
from whalefeed.monitoring.birdeye_stream import BirdeyeStreamListener


@pytest.fixture
def listener(ingestor):
    return BirdeyeStreamListener(ingestor, api_key="ws-key", url="ws://127.0.0.1:1/socket")


def test_subscriptions_carry_thresholds(listener, feed_state):
    feed_state.pair_thresholds.min_liquidity_usd = 10000
    feed_state.trade_thresholds.min_trade_usd = 5000

    messages = [json.loads(m) for m in listener.subscription_messages()]
    assert messages == [
        {"type": "SUBSCRIBE_NEW_PAIR", "min_liquidity": 10000},
        {"type": "SUBSCRIBE_LARGE_TRADE_TXS", "min_volume": 5000},
    ]


def test_new_pair_frame_routed_to_pairs(listener, feed_state, sample_pair):
    frame = json.dumps({"type": "NEW_PAIR_DATA", "data": sample_pair})
    assert listener.handle_message(frame) == Category.PAIRS
    assert feed_state.store.size(Category.PAIRS) == 1


def test_large_trade_list_frame(listener, feed_state, sample_trade):
    second = dict(sample_trade, txHash="other")
    frame = json.dumps({"type": "TXS_LARGE_TRADE_DATA", "data": [sample_trade, second, sample_trade]}).encode()
    assert listener.handle_message(frame) == Category.TRADES
    assert feed_state.store.size(Category.TRADES) == 2


@pytest.mark.parametrize("frame", [
    "not json",
    "[1, 2]",
    json.dumps({"type": "WELCOME"}),
    json.dumps({"type": "NEW_PAIR_DATA", "data": None}),
])
def test_ignored_frames(listener, feed_state, frame):
    assert listener.handle_message(frame) is None
    assert feed_state.store.sizes() == {"pairs": 0, "trades": 0}


@pytest.mark.asyncio
async def test_missing_key_waits_without_connecting(ingestor, feed_state):
    listener = BirdeyeStreamListener(ingestor, api_key="", url="ws://127.0.0.1:1/socket")
    listener.missing_key_retry = 0.01

    task = asyncio.create_task(listener.run())
    await asyncio.sleep(0.05)
    await listener.stop()
    await asyncio.wait_for(task, timeout=1)

    assert feed_state.last_error == "missing BIRDEYE_API_KEY"
    assert listener.reconnects == 0


@pytest.mark.asyncio
async def test_listen_once_against_local_socket(ingestor, feed_state, sample_trade):
    received = []
    headers = Headers()

    async def handler(connection):
        headers.update(connection.request.headers)
        for _ in range(2):
            received.append(json.loads(await connection.recv()))
        await connection.send(json.dumps({"type": "TXS_LARGE_TRADE_DATA", "data": sample_trade}))

    async with serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        listener = BirdeyeStreamListener(ingestor, api_key="ws-key", url=f"ws://127.0.0.1:{port}/socket")
        listener.running = True

        with pytest.raises(websockets.exceptions.ConnectionClosed):
            await listener._listen_once()

    assert headers["X-API-KEY"] == "ws-key"
    assert [m["type"] for m in received] == ["SUBSCRIBE_NEW_PAIR", "SUBSCRIBE_LARGE_TRADE_TXS"]
    assert feed_state.store.size(Category.TRADES) == 1
    assert feed_state.connected is False


def test_frames_update_last_poll_at(listener, feed_state, sample_trade):
    assert feed_state.last_poll_at is None
    listener.handle_message(json.dumps({"type": "TXS_LARGE_TRADE_DATA", "data": sample_trade}))
    first = feed_state.last_poll_at
    assert first is not None

    listener.handle_message(json.dumps({"type": "WELCOME"}))
    assert feed_state.last_poll_at >= first
