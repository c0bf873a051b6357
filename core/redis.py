"""
Redis connection construction for the cache layer and the event bus.

Clients are process-scoped and owned by the runtime that creates them
(see :mod:`core.startup`); nothing in this module keeps a module-level
singleton.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from config import require_cache_op_timeout, require_redis_url

logger = logging.getLogger(__name__)


def create_redis_client(
    url: str | None = None,
    *,
    socket_timeout: float | None = None,
) -> aioredis.Redis:
    """
    Build an async Redis client.

    ``redis.asyncio.from_url`` returns a client instance (not awaitable);
    no connection is opened until the first command.
    """
    timeout = socket_timeout if socket_timeout is not None else require_cache_op_timeout()
    return aioredis.from_url(
        url or require_redis_url(),
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=timeout,
    )


async def connect_redis(client: aioredis.Redis) -> bool:
    """Ping ``client``; return False instead of raising when Redis is down."""
    try:
        await client.ping()
    except (RedisConnectionError, RedisTimeoutError, OSError):
        logger.warning("Redis unavailable; continuing without cache backend")
        return False
    logger.info("Redis client connected")
    return True


async def close_redis(client: aioredis.Redis | None) -> None:
    """Close ``client`` (call during shutdown)."""
    if client is None:
        return
    try:
        await client.aclose()
    except (RedisConnectionError, OSError):
        logger.debug("Error while closing Redis client", exc_info=True)
    else:
        logger.info("Redis client closed")
