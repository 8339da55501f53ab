"""
Access token cache for the NPHIES client-credentials grant.

The cache moves between three states: empty, holding a valid token, and
holding an expired one. Lookups against a valid token never touch the
network; empty or expired lookups authenticate before returning. Tokens are
kept for ``refresh_ratio`` of their advertised lifetime so a token is never
handed out right at its expiry boundary.

Two stores back the cache: ``InMemoryTokenStore`` for a single long-lived
process and ``RedisTokenStore`` when several workers share one token. Within
a process, refreshes are single-flight; across processes racing refreshes
simply overwrite each other, which is safe because tokens are interchangeable.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, TYPE_CHECKING

import redis.asyncio as redis

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


Clock = Callable[[], float]
TokenFetcher = Callable[[], Awaitable[Tuple[str, float]]]


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TokenStore(ABC):
    """Storage for a single cached token."""

    @abstractmethod
    async def get(self, now: float) -> Optional[AccessToken]:
        """The stored token, or None when empty or expired at ``now``."""

    @abstractmethod
    async def set(self, value: str, ttl_seconds: float, now: float) -> AccessToken:
        """Store ``value`` for ``ttl_seconds`` from ``now``."""

    @abstractmethod
    async def delete(self) -> None:
        """Forget the stored token."""

    async def close(self) -> None:
        return None


class InMemoryTokenStore(TokenStore):
    def __init__(self):
        self._token: Optional[AccessToken] = None

    async def get(self, now: float) -> Optional[AccessToken]:
        return self._token

    async def set(self, value: str, ttl_seconds: float, now: float) -> AccessToken:
        self._token = AccessToken(value=value, expires_at=now + ttl_seconds)
        return self._token

    async def delete(self) -> None:
        self._token = None


class RedisTokenStore(TokenStore):
    """Token kept under a fixed key with a Redis-side TTL."""

    def __init__(self, redis_url: str, key: str = "nphies_access_token",
                 client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.key = key
        self._redis = client
        self.logger = get_logger("gateway.token_cache.redis")

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        return self._redis

    async def get(self, now: float) -> Optional[AccessToken]:
        try:
            client = self._client()
            value = await client.get(self.key)
            if not value:
                return None
            ttl = await client.ttl(self.key)
        except Exception as e:
            self.logger.error("Error reading cached token", error=str(e))
            return None

        if ttl is None or ttl < 0:
            # Key without expiry (or already gone): treat as stale.
            return None
        return AccessToken(value=value, expires_at=now + ttl)

    async def set(self, value: str, ttl_seconds: float, now: float) -> AccessToken:
        ttl = max(1, int(ttl_seconds))
        try:
            await self._client().setex(self.key, ttl, value)
        except Exception as e:
            self.logger.error("Error caching token", error=str(e))
        return AccessToken(value=value, expires_at=now + ttl)

    async def delete(self) -> None:
        try:
            await self._client().delete(self.key)
        except Exception as e:
            self.logger.error("Error evicting cached token", error=str(e))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class TokenCache:
    """Hands out a currently valid bearer token, authenticating on demand."""

    def __init__(self, fetch_token: TokenFetcher, store: Optional[TokenStore] = None, *,
                 clock: Clock = time.monotonic, refresh_ratio: float = 0.9,
                 metrics: Optional["MetricsCollector"] = None):
        if not 0 < refresh_ratio <= 1:
            raise ValueError("refresh_ratio must be in (0, 1]")
        self._fetch_token = fetch_token
        self._clock = clock
        self.store = store or InMemoryTokenStore()
        self.refresh_ratio = refresh_ratio
        self.metrics = metrics
        self.logger = get_logger("gateway.token_cache")
        self._lock = asyncio.Lock()

    def _record(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("token_cache_total", result=result)

    async def _cached(self) -> Optional[str]:
        now = self._clock()
        token = await self.store.get(now)
        if token is not None and not token.is_expired(now):
            return token.value
        return None

    async def get_token(self) -> str:
        value = await self._cached()
        if value is not None:
            self._record("hit")
            return value

        async with self._lock:
            # Another task may have refreshed while we waited for the lock.
            value = await self._cached()
            if value is not None:
                self._record("hit")
                return value

            value, expires_in = await self._fetch_token()
            ttl = max(1.0, float(expires_in) * self.refresh_ratio)
            await self.store.set(value, ttl, self._clock())
            self._record("refresh")
            self.logger.info("Access token refreshed", expires_in=expires_in, cached_for=ttl)
            return value

    async def invalidate(self) -> None:
        """Drop the cached token so the next lookup authenticates again."""
        await self.store.delete()
        self._record("invalidated")
        self.logger.info("Access token invalidated")

    async def close(self) -> None:
        await self.store.close()


def create_token_store(config) -> TokenStore:
    """Pick the token store named by ``config.token_cache_backend``."""
    if config.token_cache_backend == "redis":
        return RedisTokenStore(config.redis_url, key=config.token_cache_key)
    return InMemoryTokenStore()
