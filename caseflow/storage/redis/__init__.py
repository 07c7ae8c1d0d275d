"""Redis connection layer for the delivery stream."""

from caseflow.storage.redis.connection import RedisConnection, get_redis, close_redis

__all__ = ["RedisConnection", "get_redis", "close_redis"]
