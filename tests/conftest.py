"""
Pytest fixtures for whalefeed tests
"""
import os

import pytest

from whalefeed.core.backoff import BackoffConfig, BackoffPolicy
from whalefeed.data_providers.base import FeedSource, FetchResult
from whalefeed.models import Category
from whalefeed.monitoring.ingest import FeedIngestor, FeedState

# No real upstream calls in tests
os.environ["BIRDEYE_API_KEY"] = ""


class FakeClock:
    """Virtual clock for scheduler tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedSource(FeedSource):
    """FeedSource whose fetch() replays a script of record lists / exceptions."""

    def __init__(self, name="scripted", categories=(Category.PAIRS, Category.TRADES), script=None, api_key="key", requires_key=False):
        self.name = name
        self.requires_api_key = requires_key
        super().__init__({c: [f"https://{name}.test/{c.value}"] for c in categories}, api_key=api_key)
        self.script = list(script or [])
        self.calls = 0

    async def fetch(self, category):
        self.calls += 1
        step = self.script.pop(0) if self.script else []
        if isinstance(step, BaseException):
            raise step
        url = await self.resolvers[category].resolve()
        return FetchResult(source=self.name, url=url, records=list(step), payload={"data": {"items": list(step)}})

    async def ping(self, url, category):
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def feed_state():
    return FeedState.create(capacity=200, seen_multiplier=10)


@pytest.fixture
def ingestor(feed_state):
    return FeedIngestor(feed_state)


@pytest.fixture
def policy():
    """Deterministic policy: no jitter."""
    return BackoffPolicy(BackoffConfig(base_interval=60, initial_backoff=30, max_backoff=120, jitter_ratio=0))


@pytest.fixture
def sample_pair():
    return {
        "address": "PairMint111111111111111111111111111111111111",
        "symbol": "TEST",
        "liquidityUSD": 25000,
        "volume24hUSD": 120000,
        "trade24h": 340,
        "liquidityAddedAt": "2024-05-01T12:00:00Z",
    }


@pytest.fixture
def sample_trade():
    return {
        "txHash": "5xTradeSig1111",
        "side": "buy",
        "volumeUSD": 15000,
        "poolAddress": "Pool1111",
        "blockUnixTime": 1714564800,
    }


@pytest.fixture
def make_source():
    """Factory for ScriptedSource."""
    return ScriptedSource
