"""
Base class for upstream feed sources.

A source owns one HTTP session, the candidate URLs per category (each behind
its own EndpointResolver) and the request/response conventions of one API.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp

from whalefeed.errors import (
    MissingAPIKeyError,
    RateLimitedError,
    UpstreamAppError,
    UpstreamDecodeError,
    UpstreamHTTPError,
)
from whalefeed.models import Category
from whalefeed.monitoring.endpoint_resolver import EndpointResolver
from whalefeed.monitoring.extractor import find_array, to_number
from whalefeed.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class FetchResult:
    """Records of one successful fetch plus what is needed for diagnostics."""
    source: str
    url: str
    records: List[Any] = field(default_factory=list)
    payload: Any = None

    @property
    def schema_miss(self) -> bool:
        """Parsed fine but no record array anywhere in the body."""
        return not self.records and not _has_array(self.payload)


def _has_array(payload: Any) -> bool:
    if isinstance(payload, list):
        return True
    if isinstance(payload, Mapping):
        if any(isinstance(v, list) for v in payload.values()):
            return True
        data = payload.get("data")
        return isinstance(data, Mapping) and any(isinstance(v, list) for v in data.values())
    return False


class FeedSource:
    """One upstream API serving one or more categories."""

    name = "source"
    requires_api_key = False

    def __init__(
        self,
        candidates: Mapping[Category, Sequence[str]],
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        page_size: int = 50,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key or ""
        self.timeout = timeout
        self.page_size = page_size
        self._session = session
        self._owns_session = session is None
        self.resolvers: Dict[Category, EndpointResolver] = {
            category: EndpointResolver(
                f"{self.name}:{category.value}",
                list(urls),
                ping=partial(self.ping, category=category),
            )
            for category, urls in candidates.items()
            if urls
        }

    # ---------------------------------------------------------------
    # properties

    @property
    def categories(self) -> List[Category]:
        return list(self.resolvers)

    @property
    def is_available(self) -> bool:
        return bool(self.api_key) or not self.requires_api_key

    def serves(self, category: Category) -> bool:
        return category in self.resolvers

    # ---------------------------------------------------------------
    # request conventions, overridden per API

    def headers(self) -> dict:
        return {"accept": "application/json"}

    def request_params(self, category: Category, ping: bool = False) -> dict:
        return {}

    def check_payload(self, payload: Any) -> None:
        """Raise UpstreamAppError when a 200 body reports a failure."""

    def postprocess(self, category: Category, records: List[Any]) -> List[Any]:
        return records

    # ---------------------------------------------------------------
    # HTTP

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def get_json(self, url: str, params: Optional[dict] = None) -> Any:
        """GET ``url`` and decode JSON, mapping failures onto feed errors."""
        session = await self._get_session()
        async with session.get(url, params=params or None, headers=self.headers()) as resp:
            if resp.status == 429:
                retry_after = to_number(resp.headers.get("Retry-After"), None)
                raise RateLimitedError(url, retry_after)
            if resp.status >= 400:
                raise UpstreamHTTPError(resp.status, url)
            body = await resp.text()

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, ValueError) as e:
            preview = body[:80].replace("\n", " ")
            raise UpstreamDecodeError(f"non-JSON body from {url}: {preview!r}") from e

        self.check_payload(payload)
        return payload

    async def ping(self, url: str, category: Category) -> bool:
        """Lightweight request used by the resolver; errors mean 'not this one'."""
        if self.requires_api_key and not self.api_key:
            raise MissingAPIKeyError(f"{self.name} needs an API key")
        await self.get_json(url, self.request_params(category, ping=True))
        return True

    async def fetch(self, category: Category) -> FetchResult:
        if self.requires_api_key and not self.api_key:
            raise MissingAPIKeyError(f"{self.name} needs an API key")
        resolver = self.resolvers[category]
        url = await resolver.resolve()
        payload = await self.get_json(url, self.request_params(category))
        records = [r for r in find_array(payload) if isinstance(r, Mapping)]
        records = self.postprocess(category, records)
        return FetchResult(source=self.name, url=url, records=records, payload=payload)

    def unpin(self, category: Category) -> None:
        resolver = self.resolvers.get(category)
        if resolver:
            resolver.unpin()

    def pinned_urls(self) -> Dict[str, Optional[str]]:
        return {category.value: r.pinned_url for category, r in self.resolvers.items()}

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()


async def close_all(sources: Sequence[FeedSource]) -> None:
    await asyncio.gather(*(s.close() for s in sources), return_exceptions=True)
