"""Redis storage layer for join coordination."""

from process_workflow.storage.redis.connection import RedisConnection, close_redis, get_redis_connection

__all__ = ["RedisConnection", "close_redis", "get_redis_connection"]
