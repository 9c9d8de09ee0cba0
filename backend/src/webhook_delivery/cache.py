"""Redis connection shared by the circuit breaker and health checks.

Redis only holds advisory state here. Callers must treat every Redis error
as recoverable, so nothing in this module raises on connection problems.
"""
from typing import Optional

import redis.asyncio as redis
import structlog

from webhook_delivery.config import settings

logger = structlog.get_logger(__name__)


class RedisConnection:
    """Lazily created Redis client."""

    def __init__(self, url: Optional[str] = None):
        """
        Initialize the connection holder.

        Args:
            url: Redis URL (defaults to ``settings.redis_url``)
        """
        self.url = url or str(settings.redis_url)
        self.redis_client: Optional[redis.Redis] = None

    def client(self) -> redis.Redis:
        """
        Return the Redis client, creating it on first use.

        ``from_url`` does not open a socket; connections are established on
        the first command, so an unreachable server surfaces as a command error.

        Returns:
            Redis client instance
        """
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
            logger.info("redis_client_created")
        return self.redis_client

    async def ping(self) -> bool:
        """
        Check Redis connectivity.

        Returns:
            True if Redis answered, False otherwise
        """
        try:
            return bool(await self.client().ping())
        except Exception as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the Redis client."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("redis_closed")


# Global connection instance
redis_connection = RedisConnection()
