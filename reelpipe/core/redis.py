"""Redis connections used for publishing completion events."""

from typing import Optional

import redis.asyncio as redis

from reelpipe.core.config import settings

_redis_client: Optional[redis.Redis] = None


def create_redis(url: Optional[str] = None) -> redis.Redis:
    """A new client owned by the caller, who must close it."""
    return redis.from_url(url or settings.REDIS_URL, decode_responses=True)


def get_redis() -> redis.Redis:
    """Return the process-wide Redis client, creating it on first use."""
    global _redis_client
    if _redis_client is None:
        _redis_client = create_redis()
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
