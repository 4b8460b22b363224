"""
Redis client lifecycle for join coordination.

The service holds a single client; join bookkeeping keys live under the
`pw:` namespace and expire on their own.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from process_workflow.config import get_settings
from process_workflow.config.settings import RedisSettings

logger = logging.getLogger(__name__)


class RedisConnection:
    """Owns the pooled client used by JoinCoordinator and the health check."""

    def __init__(self, settings: Optional[RedisSettings] = None):
        self.settings = settings or get_settings().redis
        self._client: Optional[redis.Redis] = None

    async def init(self) -> None:
        """
        Open the pool and verify the server answers.

        Raises:
            RedisError: The server cannot be reached
        """
        s = self.settings
        client = redis.Redis.from_url(
            s.url,
            max_connections=s.max_connections,
            socket_timeout=s.socket_timeout,
            socket_connect_timeout=s.socket_connect_timeout,
            decode_responses=True,
        )
        await client.ping()
        self._client = client
        logger.debug(f"Redis ready at {s.host}:{s.port}/{s.db} for join coordination")

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis connection used before init()")
        return self._client

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


_connection: Optional[RedisConnection] = None


async def get_redis_connection() -> RedisConnection:
    """Process-wide connection, opened on first use."""
    global _connection

    if _connection is None:
        connection = RedisConnection()
        await connection.init()
        _connection = connection
    return _connection


async def close_redis() -> None:
    global _connection

    if _connection is not None:
        await _connection.close()
        _connection = None
