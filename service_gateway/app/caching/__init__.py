"""
Gateway caching package.

Holds the NPHIES access token cache and its storage backends: process memory
for a single long-lived gateway, Redis when several workers share one token.
"""

from .token_cache import (
    AccessToken,
    InMemoryTokenStore,
    RedisTokenStore,
    TokenCache,
    TokenStore,
    create_token_store,
)

__all__ = [
    "AccessToken",
    "InMemoryTokenStore",
    "RedisTokenStore",
    "TokenCache",
    "TokenStore",
    "create_token_store",
]
