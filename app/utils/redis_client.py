"""
Redis client for one-time link tokens and revoked sessions
"""
import redis.asyncio as redis
from typing import Optional
from app.config import settings
import logging

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client wrapper"""

    def __init__(self, url: str):
        self.url = url
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        try:
            self.client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await self.client.ping()
            logger.info(f"Connected to Redis: {self.url}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.client:
            await self.client.aclose()
            logger.info("Disconnected from Redis")

    def _require_client(self) -> redis.Redis:
        if not self.client:
            raise RuntimeError("Redis client not connected")
        return self.client

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and delete a key"""
        return await self._require_client().getdel(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        """
        Set key-value pair

        Args:
            key: Redis key
            value: Value to store
            ex: Expiration time in seconds
        """
        await self._require_client().set(key, value, ex=ex)

    async def exists(self, key: str) -> bool:
        """Check if key exists"""
        return bool(await self._require_client().exists(key))

    async def ttl(self, key: str) -> int:
        """Get TTL of key"""
        return await self._require_client().ttl(key)


# Global Redis client for token storage
token_redis_client = RedisClient(settings.redis_token_url)
