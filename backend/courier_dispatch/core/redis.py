"""
Redis client shared by the partner geo index and health checks.
"""
from typing import Optional

import redis.asyncio as redis

from courier_dispatch.core.config import settings


class RedisClient:
    """Lazily connected async Redis client."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self._client: Optional[redis.Redis] = None

    async def get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if Redis is available."""
        try:
            client = await self.get_client()
            await client.ping()
            return True
        except redis.RedisError:
            return False


# Singleton instance
redis_client = RedisClient()
