"""
Redis client for the notification delivery stream.

One pooled client per process, created on first use by the API lifespan
when ``DELIVERY_BACKEND=redis``.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from caseflow.config import get_settings

logger = logging.getLogger(__name__)


class RedisConnection:
    """Owns a connection pool built from ``RedisSettings``."""

    def __init__(self, url: Optional[str] = None):
        self._url = url
        self._client: Optional[redis.Redis] = None

    async def init(self) -> None:
        """Create the pooled client and verify the server answers."""
        settings = get_settings().redis
        url = self._url or settings.url

        # socket_timeout must outlast the XREADGROUP block window
        self._client = redis.Redis.from_url(
            url,
            max_connections=settings.max_connections,
            socket_timeout=settings.socket_timeout,
            socket_connect_timeout=settings.socket_connect_timeout,
            decode_responses=True,
        )
        await self._client.ping()
        logger.debug("Redis connection pool ready")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis not initialized. Call init() first.")
        return self._client


_redis_connection: Optional[RedisConnection] = None


async def get_redis() -> redis.Redis:
    """Return the process-wide client, connecting on first call."""
    global _redis_connection

    if _redis_connection is None:
        connection = RedisConnection()
        await connection.init()
        _redis_connection = connection

    return _redis_connection.client


async def close_redis() -> None:
    global _redis_connection

    if _redis_connection is not None:
        await _redis_connection.close()
        _redis_connection = None
