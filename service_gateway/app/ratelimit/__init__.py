"""
Rate limiting for the NPHIES gateway.

A fixed window per client IP guards the login and exchange routes.
"""

from .fixed_window import (
    FixedWindowRateLimiter,
    InMemoryWindowStore,
    RateLimitMiddleware,
    RedisWindowStore,
    get_client_ip,
)

__all__ = [
    "FixedWindowRateLimiter",
    "InMemoryWindowStore",
    "RateLimitMiddleware",
    "RedisWindowStore",
    "get_client_ip",
]
