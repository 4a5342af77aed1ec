"""
Redis connection management for the cache and the batch queues.
"""
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def create_redis(settings: Settings = default_settings) -> redis.Redis:
    """Build a pooled asyncio Redis client. Connections are opened lazily."""
    return redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECTION_TIMEOUT,
        health_check_interval=30,
    )


async def init_redis(settings: Settings = default_settings) -> redis.Redis:
    """Initialize the shared Redis client."""
    global _client
    if _client is None:
        _client = create_redis(settings)
        try:
            await _client.ping()
            logger.info("Redis connected")
        except (RedisError, OSError) as e:
            # The cache is fail-open; start anyway and let calls degrade.
            logger.warning(f"Redis not reachable at startup: {e}")
    return _client


async def close_redis() -> None:
    """Close the shared Redis client."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
