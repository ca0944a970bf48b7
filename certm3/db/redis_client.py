"""Process-wide Redis connection shared by the rate limiter and readiness probe."""

from __future__ import annotations

from functools import lru_cache

from redis import asyncio as redis_async
from redis.asyncio.client import Redis

from certm3.config import get_settings


@lru_cache
def get_redis_client() -> Redis:
    """Create and cache the Redis client; connections are opened lazily."""
    return redis_async.from_url(get_settings().redis.url, decode_responses=True)
