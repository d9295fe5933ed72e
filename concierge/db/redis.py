"""Redis async client used as the cross-process fanout bus.

Provides helper methods wrapping raw Redis commands so callers never need
to handle redis.exceptions directly. All connection/command errors are
caught and re-raised as RedisConnectionError.
"""

from __future__ import annotations

import structlog
from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from concierge.core.exceptions import RedisConnectionError

logger = structlog.get_logger(__name__)


class RedisClient:
    """Thin wrapper over redis.asyncio.Redis with typed helpers.

    Every public method catches RedisError and re-raises as
    RedisConnectionError so the API layer gets a structured error.
    """

    def __init__(self, client: Redis) -> None:
        self._r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisClient":
        return cls(redis_from_url(url, decode_responses=True, encoding="utf-8"))

    async def publish(self, channel: str, payload: str) -> int:
        """PUBLISH a payload. Returns the number of receiving clients."""
        try:
            return await self._r.publish(channel, payload)
        except RedisError as e:
            logger.error("redis_publish_failed", channel=channel, error=str(e))
            raise RedisConnectionError(f"Redis PUBLISH failed: {e}") from e

    async def psubscribe(self, pattern: str) -> PubSub:
        """Open a pub/sub connection subscribed to a channel pattern."""
        pubsub = self._r.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.psubscribe(pattern)
        except RedisError as e:
            logger.error("redis_psubscribe_failed", pattern=pattern, error=str(e))
            raise RedisConnectionError(f"Redis PSUBSCRIBE failed: {e}") from e
        return pubsub

    async def close(self) -> None:
        """Gracefully close the Redis connection pool."""
        logger.info("redis_shutdown")
        await self._r.aclose()
