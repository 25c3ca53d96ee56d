"""
Redis client management for authbridge.

Builds the async client used by the Redis credential backend and checks
that it is reachable before the bridge relies on it.
"""

import redis.asyncio as aioredis

from authbridge.logging_config import get_logger

logger = get_logger(__name__)


async def init_redis(url: str) -> aioredis.Redis:
    """Create a Redis connection pool and verify it answers."""
    logger.info("Initializing Redis connection")
    client = aioredis.from_url(url, decode_responses=True)
    # Test connection
    await client.ping()
    logger.info("Redis connection established")
    return client


async def close_redis(client: aioredis.Redis | None) -> None:
    """Close a Redis connection pool."""
    if client is not None:
        logger.info("Closing Redis connection pool")
        await client.aclose()


async def get_redis_health(client: aioredis.Redis | None) -> bool:
    """Check Redis health."""
    try:
        if client is None:
            return False
        await client.ping()
        return True
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        return False
