"""Redis connection and client management."""
import logging
from typing import Optional
from urllib.parse import urlparse

import redis.asyncio as redis

from ..config.settings import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get Redis client instance, connecting on first use."""
    if redis_client is None:
        await init_redis()

    return redis_client


async def init_redis(redis_url: Optional[str] = None) -> None:
    """Initialize the Redis connection pool used by the event sink."""
    global redis_client

    if redis_client is not None:
        return

    redis_url = redis_url or settings.redis_url
    if not redis_url:
        raise ValueError("Redis URL not configured")

    parsed_url = urlparse(redis_url)

    client = redis.Redis(
        host=parsed_url.hostname or "localhost",
        port=parsed_url.port or 6379,
        db=int(parsed_url.path[1:]) if parsed_url.path and len(parsed_url.path) > 1 else 0,
        password=parsed_url.password,
        username=parsed_url.username,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=30,
        retry_on_timeout=True,
        max_connections=10,
    )

    try:
        await client.ping()
    except Exception as e:
        logger.error(f"Redis connection to {parsed_url.hostname}:{parsed_url.port} failed: {e}")
        await client.aclose()
        raise

    redis_client = client
    logger.info(f"Redis connected to {parsed_url.hostname}:{parsed_url.port}")


async def close_redis() -> None:
    """Close Redis connection."""
    global redis_client

    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection closed")


async def health_check() -> bool:
    """Check Redis health status."""
    try:
        client = await get_redis()
        await client.ping()
        return True
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return False
