from typing import Any, Dict, List, Optional

import pytest

from fundwatch.infra.kv_store import MemoryKeyValueStore
from fundwatch.infra.settings import Settings
from fundwatch.services.cache_utils import CacheStore
from fundwatch.services.errors import TransportError
from fundwatch.services.favorites import FavoritesRepository
from fundwatch.services.fund_service import FundDataService


class FakeClock:
    def __init__(self, now: int = 1_704_400_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeFetcher:
    """Routes url -> body (or exception); unknown urls answer HTTP 404."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None) -> None:
        self.routes = dict(routes or {})
        self.calls: List[str] = []

    async def _lookup(self, url: str) -> Any:
        self.calls.append(url)
        if url not in self.routes:
            raise TransportError(url, "HTTP 404", status_code=404)
        value = self.routes[url]
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch(self, url, params=None, referer=None):
        return await self._lookup(url)

    async def fetch_json(self, url, params=None, referer=None):
        return await self._lookup(url)


@pytest.fixture
def config() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def favorites(store, config, clock) -> FavoritesRepository:
    return FavoritesRepository(store, config, clock=clock)


@pytest.fixture
def make_service(store, config, clock, favorites):
    def _make(routes: Optional[Dict[str, Any]] = None):
        fetcher = FakeFetcher(routes)
        cache = CacheStore(store, prefix=config.cache_prefix, clock=clock)
        return FundDataService(fetcher, cache, favorites=favorites, config=config), fetcher

    return _make
