"""
Redis connection used for leader election, with retry logic.
"""
import asyncio
from typing import Optional

import redis.asyncio as redis

from mongo_operator.config.logging import get_logger

logger = get_logger(__name__)


class RedisConnection:
    """Redis connection manager with retry logic."""

    def __init__(self, url: str, max_connections: int = 10):
        self.url = url
        self.max_connections = max_connections
        self.client: Optional[redis.Redis] = None

    async def connect(self, max_attempts: int = 10) -> None:
        """
        Connect to Redis with retry logic.

        Retries with exponential backoff (2s, 4s, 8s, 16s, 30s max).
        """
        base_delay = 2
        max_delay = 30

        for attempt in range(1, max_attempts + 1):
            try:
                logger.info(
                    "connecting_to_redis",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    url=self.url.split("@")[-1],  # Log without credentials
                )

                self.client = redis.Redis.from_url(
                    self.url,
                    max_connections=self.max_connections,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    socket_keepalive=True,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )

                await self.client.ping()

                logger.info("redis_connected")
                return

            except asyncio.CancelledError:
                logger.info("redis_connection_interrupted")
                raise
            except (redis.ConnectionError, redis.TimeoutError) as e:
                logger.error(
                    "redis_connection_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                )

                if attempt >= max_attempts:
                    logger.error("redis_max_retries_exceeded")
                    raise

                delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
                logger.info("retrying_redis", delay_seconds=delay)
                await asyncio.sleep(delay)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.client:
            logger.info("closing_redis_connection")
            await self.client.aclose()
            logger.info("redis_connection_closed")

    def get_client(self) -> redis.Redis:
        """
        Get Redis client instance.

        Raises:
            RuntimeError: If Redis is not connected
        """
        if self.client is None:
            raise RuntimeError("Redis is not connected. Call connect() first.")
        return self.client

    async def ping(self) -> bool:
        """
        Check Redis connectivity.

        Returns:
            True if connected, False otherwise
        """
        try:
            if self.client:
                await self.client.ping()
                return True
            return False
        except Exception as e:
            logger.error("redis_ping_failed", error=str(e))
            return False
