"""Redis connection configuration."""

from typing import Optional

import redis.asyncio as redis

from transcoder.core.config import settings


def create_redis_client(url: Optional[str] = None) -> redis.Redis:
    """Build an asyncio Redis client.

    The connection pool is lazy, so this never touches the network.
    """
    return redis.from_url(url or settings.REDIS_URL, decode_responses=True)
