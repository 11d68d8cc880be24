"""Tests for CategoryPoller / FeedScheduler"""
import asyncio
from unittest.mock import patch

import aiohttp
import pytest

from whalefeed.core.backoff import PollStatus
from whalefeed.errors import RateLimitedError, UpstreamDecodeError, UpstreamHTTPError
from whalefeed.models import Category
from whalefeed.monitoring.poller import CategoryPoller, FeedScheduler

TRADE = {"txHash": "abc", "volumeUSD": 20000, "side": "buy"}


@pytest.mark.asyncio
async def test_same_trade_in_two_cycles_stored_once(make_source, ingestor, policy, clock, feed_state):
    source = make_source(script=[[TRADE], [dict(TRADE)]])
    poller = CategoryPoller(Category.TRADES, [source], ingestor, policy, clock=clock)

    assert await poller.poll_once() == PollStatus.SUCCESS
    clock.advance(60)
    assert await poller.poll_once() == PollStatus.SUCCESS

    assert feed_state.store.size(Category.TRADES) == 1
    assert feed_state.store.recent(Category.TRADES, 10)[0].dedup_key == "tx:abc"


@pytest.mark.asyncio
async def test_success_schedules_next_poll(make_source, ingestor, policy, clock, feed_state):
    poller = CategoryPoller(Category.PAIRS, [make_source(script=[[]])], ingestor, policy, clock=clock)
    await poller.poll_once()

    assert poller.state.next_poll_at == clock.now + 60
    assert poller.state.backoff == 0
    assert feed_state.connected is True
    assert feed_state.last_poll_at == clock.now


@pytest.mark.asyncio
async def test_rate_limit_backs_off_until_success(make_source, ingestor, policy, clock):
    source = make_source(script=[RateLimitedError("u"), RateLimitedError("u"), RateLimitedError("u"), [TRADE]])
    poller = CategoryPoller(Category.TRADES, [source], ingestor, policy, clock=clock)

    backoffs = []
    for _ in range(3):
        clock.now = poller.state.next_poll_at
        assert await poller.poll_once() == PollStatus.RATE_LIMITED
        backoffs.append(poller.state.backoff)
    assert backoffs == [30, 60, 120]
    assert poller.state.next_poll_at == clock.now + 60 + 120
    assert source.calls == 3

    clock.now = poller.state.next_poll_at
    assert await poller.poll_once() == PollStatus.SUCCESS
    assert poller.state.backoff == 0


@pytest.mark.asyncio
async def test_throttling_transport_error_counts_as_rate_limit(make_source, ingestor, policy, clock):
    error = aiohttp.ClientError("429 Too Many Requests")
    poller = CategoryPoller(Category.TRADES, [make_source(script=[error])], ingestor, policy, clock=clock)
    assert await poller.poll_once() == PollStatus.RATE_LIMITED


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    UpstreamHTTPError(404, "https://x"),
    UpstreamDecodeError("non-JSON body"),
    aiohttp.ClientConnectionError("connection reset"),
    asyncio.TimeoutError(),
    KeyError("surprise"),
])
async def test_failures_unpin_and_never_raise(error, make_source, ingestor, policy, clock, feed_state):
    source = make_source(script=[[], error])
    poller = CategoryPoller(Category.PAIRS, [source], ingestor, policy, clock=clock)

    await poller.poll_once()
    assert source.resolvers[Category.PAIRS].pinned_url is not None

    assert await poller.poll_once() == PollStatus.FAILED
    assert source.resolvers[Category.PAIRS].pinned_url is None
    assert poller.state.backoff == 0
    assert feed_state.last_error


@pytest.mark.asyncio
async def test_fallback_source_used_when_primary_fails(make_source, ingestor, policy, clock, feed_state):
    primary = make_source(name="primary", script=[UpstreamHTTPError(500)])
    fallback = make_source(name="fallback", script=[[{"pairAddress": "P1", "liquidityUSD": 1}]])
    poller = CategoryPoller(Category.PAIRS, [primary, fallback], ingestor, policy, clock=clock)

    assert await poller.poll_once() == PollStatus.SUCCESS
    assert feed_state.store.size(Category.PAIRS) == 1
    assert feed_state.samples[Category.PAIRS]["source"] == "fallback"


@pytest.mark.asyncio
async def test_missing_api_key_short_circuits(make_source, ingestor, policy, clock, feed_state):
    source = make_source(api_key="", requires_key=True, script=[[TRADE]])
    poller = CategoryPoller(Category.TRADES, [source], ingestor, policy, clock=clock)

    assert await poller.poll_once() == PollStatus.FAILED
    assert source.calls == 0
    assert "missing API key" in feed_state.last_error


@pytest.mark.asyncio
async def test_filtered_records_not_stored(make_source, ingestor, policy, clock, feed_state):
    feed_state.trade_thresholds.min_trade_usd = 50000
    poller = CategoryPoller(Category.TRADES, [make_source(script=[[TRADE]])], ingestor, policy, clock=clock)
    await poller.poll_once()
    assert feed_state.store.size(Category.TRADES) == 0


@pytest.mark.asyncio
async def test_scheduler_polls_only_due_categories(make_source, ingestor, policy, clock):
    source = make_source(script=[[], [], [], []])
    pairs = CategoryPoller(Category.PAIRS, [source], ingestor, policy, clock=clock)
    trades = CategoryPoller(Category.TRADES, [source], ingestor, policy, clock=clock)
    scheduler = FeedScheduler([pairs, trades], tick_interval=15, clock=clock)

    polled = await scheduler.tick()
    assert sorted(c.value for c in polled) == ["pairs", "trades"]

    clock.advance(15)
    assert await scheduler.tick() == []

    trades.state.next_poll_at = clock.now
    assert await scheduler.tick() == [Category.TRADES]


@pytest.mark.asyncio
async def test_scheduler_run_and_stop(make_source, ingestor, policy, clock):
    poller = CategoryPoller(Category.PAIRS, [make_source(script=[[]])], ingestor, policy, clock=clock)
    scheduler = FeedScheduler([poller], tick_interval=0.01, clock=clock)

    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert scheduler.ticks >= 1
    assert poller.state.polls == 1
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_rejected_pair_admitted_once_it_qualifies(make_source, ingestor, policy, clock, feed_state):
    feed_state.pair_thresholds.min_liquidity_usd = 10000
    source = make_source(script=[
        [{"pairAddress": "P1", "liquidityUSD": 5000}],
        [{"pairAddress": "P1", "liquidityUSD": 50000}],
        [{"pairAddress": "P1", "liquidityUSD": 60000}],
    ])
    poller = CategoryPoller(Category.PAIRS, [source], ingestor, policy, clock=clock)

    for _ in range(3):
        await poller.poll_once()
        clock.advance(60)

    stored = feed_state.store.recent(Category.PAIRS, 10)
    assert [r.liquidity_usd for r in stored] == [50000]


@pytest.mark.asyncio
async def test_throttled_primary_skipped_while_fallback_answers(make_source, ingestor, policy, clock, feed_state):
    primary = make_source(name="primary", script=[RateLimitedError("u")] * 3)
    fallback = make_source(name="fallback", script=[[{"pairAddress": f"P{i}"}] for i in range(5)])
    poller = CategoryPoller(Category.PAIRS, [primary, fallback], ingestor, policy, clock=clock)

    # 429s at t, t+120, t+240; the cycles in between skip the primary
    for _ in range(5):
        assert await poller.poll_once() == PollStatus.SUCCESS
        assert poller.state.backoff == 0
        clock.advance(60)

    assert primary.calls == 3
    assert fallback.calls == 5
    assert poller.throttles["primary"].backoff == 120
    assert feed_state.store.size(Category.PAIRS) == 5

    clock.now = poller.throttles["primary"].until
    assert await poller.poll_once() == PollStatus.SUCCESS
    assert primary.calls == 4
    assert fallback.calls == 5
    assert poller.throttles["primary"].backoff == 0


@pytest.mark.asyncio
async def test_retry_after_extends_delay(make_source, ingestor, policy, clock):
    source = make_source(script=[RateLimitedError("u", retry_after=90)])
    poller = CategoryPoller(Category.TRADES, [source], ingestor, policy, clock=clock)

    await poller.poll_once()
    assert poller.state.backoff == 30
    assert poller.state.next_poll_at == clock.now + 60 + 90
    assert poller.throttles["scripted"].until == clock.now + 60 + 90


@pytest.mark.asyncio
async def test_only_throttled_sources_defers_without_growing_backoff(make_source, ingestor, policy, clock):
    source = make_source(script=[RateLimitedError("u")])
    poller = CategoryPoller(Category.TRADES, [source], ingestor, policy, clock=clock)

    await poller.poll_once()
    assert await poller.poll_once() == PollStatus.RATE_LIMITED
    assert source.calls == 1
    assert poller.state.backoff == 30
    assert poller.state.next_poll_at == poller.throttles["scripted"].until


@pytest.mark.asyncio
async def test_ingest_crash_fails_cycle(make_source, ingestor, policy, clock):
    poller = CategoryPoller(Category.TRADES, [make_source(script=[[TRADE]])], ingestor, policy, clock=clock)

    with patch.object(ingestor, "ingest", side_effect=RuntimeError("boom")):
        assert await poller.poll_once() == PollStatus.FAILED

    assert "boom" in poller.state.last_error
    assert poller.state.is_due(poller.state.next_poll_at)


@pytest.mark.asyncio
async def test_tick_survives_crashing_poller(make_source, ingestor, policy, clock):
    poller = CategoryPoller(Category.PAIRS, [make_source()], ingestor, policy, clock=clock)
    scheduler = FeedScheduler([poller], clock=clock)

    with patch.object(poller, "poll_once", side_effect=RuntimeError("boom")):
        assert await scheduler.tick() == [Category.PAIRS]

    assert poller.state.status == PollStatus.FAILED
    assert poller.state.next_poll_at == clock.now + 60


@pytest.mark.asyncio
async def test_run_keeps_ticking_after_error(make_source, ingestor, policy, clock):
    poller = CategoryPoller(Category.PAIRS, [make_source()], ingestor, policy, clock=clock)
    scheduler = FeedScheduler([poller], tick_interval=0.01, clock=clock)
    ticks = []

    async def flaky_tick():
        ticks.append(clock.now)
        if len(ticks) == 1:
            raise RuntimeError("boom")
        return []

    scheduler.tick = flaky_tick
    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert len(ticks) >= 2
