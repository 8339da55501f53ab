"""
Unit tests for the NPHIES access token cache.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.caching.token_cache import (
    AccessToken,
    InMemoryTokenStore,
    RedisTokenStore,
    TokenCache,
    TokenStore,
)
from shared.errors import UpstreamAuthenticationError
from shared.metrics import MetricsCollector


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class TestTokenCache:
    """Test cases for TokenCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def fetch_token(self):
        tokens = iter(f"token-{n}" for n in range(1, 100))

        async def _fetch():
            return next(tokens), 3600

        return AsyncMock(side_effect=_fetch)

    @pytest.fixture
    def cache(self, fetch_token, clock):
        return TokenCache(fetch_token, clock=clock, refresh_ratio=0.9)

    @pytest.mark.asyncio
    async def test_first_lookup_authenticates_once(self, cache, fetch_token):
        assert await cache.get_token() == "token-1"
        assert fetch_token.await_count == 1

    @pytest.mark.asyncio
    async def test_valid_token_is_reused(self, cache, fetch_token, clock):
        await cache.get_token()
        clock.advance(3000)

        assert await cache.get_token() == "token-1"
        assert fetch_token.await_count == 1

    @pytest.mark.asyncio
    async def test_refreshes_at_ninety_percent_of_lifetime(self, cache, fetch_token, clock):
        await cache.get_token()
        clock.advance(3240)

        assert await cache.get_token() == "token-2"
        assert fetch_token.await_count == 2

        clock.advance(10)
        assert await cache.get_token() == "token-2"
        assert fetch_token.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_authentication(self, cache, fetch_token):
        await cache.get_token()
        await cache.invalidate()

        assert await cache.get_token() == "token-2"
        assert fetch_token.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_authentication_is_not_cached(self, clock):
        fetch = AsyncMock(side_effect=[UpstreamAuthenticationError(), ("token-ok", 60)])
        cache = TokenCache(fetch, clock=clock)

        with pytest.raises(UpstreamAuthenticationError):
            await cache.get_token()

        assert await cache.get_token() == "token-ok"
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, clock):
        calls = 0

        async def slow_fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "shared-token", 3600

        cache = TokenCache(slow_fetch, clock=clock)
        tokens = await asyncio.gather(*(cache.get_token() for _ in range(10)))

        assert tokens == ["shared-token"] * 10
        assert calls == 1

    @pytest.mark.asyncio
    async def test_metrics_record_hits_and_refreshes(self, fetch_token, clock):
        metrics = MetricsCollector("gateway-test")
        cache = TokenCache(fetch_token, clock=clock, metrics=metrics)

        await cache.get_token()
        await cache.get_token()
        await cache.get_token()

        assert metrics.sample_value("token_cache_total", result="refresh") == 1.0
        assert metrics.sample_value("token_cache_total", result="hit") == 2.0

    def test_rejects_bad_refresh_ratio(self, fetch_token):
        with pytest.raises(ValueError):
            TokenCache(fetch_token, refresh_ratio=0)
        with pytest.raises(ValueError):
            TokenCache(fetch_token, refresh_ratio=1.5)


class TestTokenStores:
    """Test cases for token stores."""

    def test_incomplete_store_cannot_be_built(self):
        class GetOnlyStore(TokenStore):
            async def get(self, now):
                return None

        with pytest.raises(TypeError):
            GetOnlyStore()

    @pytest.mark.asyncio
    async def test_in_memory_store(self):
        store = InMemoryTokenStore()
        assert await store.get(0.0) is None

        token = await store.set("abc", 30.0, 100.0)
        assert token == AccessToken(value="abc", expires_at=130.0)
        assert (await store.get(110.0)).is_expired(110.0) is False
        assert (await store.get(130.0)).is_expired(130.0) is True

        await store.delete()
        assert await store.get(0.0) is None

    @pytest.mark.asyncio
    async def test_redis_store_uses_setex_and_ttl(self):
        mock_redis = AsyncMock()
        mock_redis.get.return_value = "cached-token"
        mock_redis.ttl.return_value = 120
        store = RedisTokenStore("redis://localhost:6379/0", key="nphies_access_token", client=mock_redis)

        await store.set("cached-token", 3240.7, 0.0)
        mock_redis.setex.assert_awaited_once_with("nphies_access_token", 3240, "cached-token")

        token = await store.get(500.0)
        assert token == AccessToken(value="cached-token", expires_at=620.0)

    @pytest.mark.asyncio
    async def test_redis_store_miss_and_errors(self):
        mock_redis = AsyncMock()
        mock_redis.get.return_value = None
        store = RedisTokenStore("redis://localhost:6379/0", client=mock_redis)
        assert await store.get(0.0) is None

        mock_redis.get.side_effect = ConnectionError("redis down")
        assert await store.get(0.0) is None

    @pytest.mark.asyncio
    async def test_shared_store_serves_second_cache(self):
        """Two gateway workers sharing one store authenticate once."""
        mock_redis = AsyncMock()
        state = {}

        async def setex(key, ttl, value):
            state[key] = (value, ttl)

        async def get(key):
            return state.get(key, (None, None))[0]

        async def ttl(key):
            return state.get(key, (None, -2))[1]

        mock_redis.setex.side_effect = setex
        mock_redis.get.side_effect = get
        mock_redis.ttl.side_effect = ttl

        fetch = AsyncMock(return_value=("worker-token", 3600))
        clock = FakeClock()
        first = TokenCache(fetch, RedisTokenStore("redis://x", client=mock_redis), clock=clock)
        second = TokenCache(fetch, RedisTokenStore("redis://x", client=mock_redis), clock=clock)

        assert await first.get_token() == "worker-token"
        assert await second.get_token() == "worker-token"
        assert fetch.await_count == 1
