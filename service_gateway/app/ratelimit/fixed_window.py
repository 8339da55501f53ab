"""
Fixed window rate limiter for the NPHIES gateway.

Each client IP gets ``limit`` requests per ``window_seconds``; the window
starts with the first request and the counter resets when it elapses.
Counters live in process memory or, for multi-worker deployments, in Redis.
A limiter backend failure lets the request through.
"""

import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import redis.asyncio as redis
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import RateLimitError
from shared.logging import get_logger


class InMemoryWindowStore:
    """Window counters for a single process."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Count one request; return (count in window, seconds until reset)."""
        now = self._clock()
        count, reset_at = self._windows.get(key, (0, 0.0))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
            # drop windows that have already closed so the table stays bounded
            self._windows = {k: v for k, v in self._windows.items() if v[1] > now}
        count += 1
        self._windows[key] = (count, reset_at)
        return count, reset_at - now

    async def reset(self, key: str):
        self._windows.pop(key, None)

    async def close(self):
        return None


class RedisWindowStore:
    """Window counters shared through Redis (INCR + EXPIRE)."""

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self._redis = client

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def hit(self, key: str, window_seconds: int) -> Tuple[int, float]:
        redis_client = await self._get_redis()
        count = int(await redis_client.incr(key))
        if count == 1:
            await redis_client.expire(key, window_seconds)
        ttl = await redis_client.ttl(key)
        if ttl is None or ttl < 0:
            await redis_client.expire(key, window_seconds)
            ttl = window_seconds
        return count, float(ttl)

    async def reset(self, key: str):
        redis_client = await self._get_redis()
        await redis_client.delete(key)

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class FixedWindowRateLimiter:
    """Per-client fixed window limiter."""

    def __init__(self, limit: int = 100, window_seconds: int = 900, store=None,
                 prefix: str = "rate_limit"):
        self.limit = limit
        self.window_seconds = window_seconds
        self.store = store or InMemoryWindowStore()
        self.prefix = prefix
        self.logger = get_logger("gateway.rate_limiter")

    def _make_key(self, client_id: str) -> str:
        return f"{self.prefix}:{client_id}"

    async def check_rate_limit(self, client_id: str) -> Dict[str, Any]:
        """Count a request for ``client_id`` and report whether it is allowed."""
        try:
            count, reset_in = await self.store.hit(self._make_key(client_id), self.window_seconds)
        except Exception as e:
            self.logger.error("Rate limit check error", error=str(e))
            return {
                "allowed": True,
                "current_count": 0,
                "limit": self.limit,
                "remaining": self.limit,
                "reset_in_seconds": self.window_seconds,
                "error": str(e),
            }

        allowed = count <= self.limit
        if not allowed:
            self.logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                current_count=count,
                limit=self.limit,
            )
        return {
            "allowed": allowed,
            "current_count": count,
            "limit": self.limit,
            "remaining": max(0, self.limit - count),
            "reset_in_seconds": max(0, int(reset_in)),
        }

    async def reset_rate_limit(self, client_id: str):
        await self.store.reset(self._make_key(client_id))

    async def close(self):
        await self.store.close()


def get_client_ip(request: Request) -> str:
    """Extract the caller IP from standard headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return "unknown"


def set_rate_limit_headers(headers, rate_result: Dict[str, Any]) -> None:
    """Propagate rate limiting metadata via standard headers."""
    headers["X-RateLimit-Limit"] = str(rate_result["limit"])
    headers["X-RateLimit-Remaining"] = str(rate_result["remaining"])
    headers["X-RateLimit-Reset"] = str(rate_result["reset_in_seconds"])


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the limiter to requests under the given path prefixes."""

    def __init__(self, app, rate_limiter: FixedWindowRateLimiter,
                 path_prefixes: Iterable[str] = ("/auth", "/api"), metrics=None):
        super().__init__(app)
        self.rate_limiter = rate_limiter
        self.path_prefixes = tuple(path_prefixes)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if request.method == "OPTIONS" or not path.startswith(self.path_prefixes):
            return await call_next(request)

        rate_result = await self.rate_limiter.check_rate_limit(get_client_ip(request))
        if not rate_result["allowed"]:
            if self.metrics:
                self.metrics.increment_counter("rate_limit_hits_total", endpoint=path)
            error = RateLimitError(details={"reset_in_seconds": rate_result["reset_in_seconds"]})
            response = JSONResponse(
                status_code=error.status_code,
                content=error.to_response().model_dump(exclude_none=True),
            )
            response.headers["Retry-After"] = str(rate_result["reset_in_seconds"])
            set_rate_limit_headers(response.headers, rate_result)
            return response

        response = await call_next(request)
        set_rate_limit_headers(response.headers, rate_result)
        return response
