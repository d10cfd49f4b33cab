"""Rate-limit store and OAuth provider adapters."""

from flowra.adapters.oauth_client import KeycloakOAuthClient
from flowra.adapters.rate_limit_store import MemoryRateLimitStore, RateLimitStore, RedisRateLimitStore

__all__ = [
    "KeycloakOAuthClient",
    "MemoryRateLimitStore",
    "RateLimitStore",
    "RedisRateLimitStore",
]
