"""
Redis Cache Service
===================

Redis connection management plus a small JSON cache used for the
subscription status read path.

The same client backs the webhook event deduplicator; see
``entitlements.services.deduplicator``.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from entitlements.config import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """
    Initialize Redis connection pool and pre-warm a connection.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


class CacheManager:
    """
    Redis cache manager with common operations.

    Key naming convention:
        cache:{module}:{resource}:{identifier}

    Cache failures are logged and treated as a miss; the database stays
    the source of truth.
    """

    TTL_SHORT = 300  # 5 minutes

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        """
        Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value if exists and valid, None otherwise
        """
        try:
            client = await get_redis()
            value = await client.get(key)

            if value is None:
                return None

            return json.loads(value)
        except Exception as e:
            logger.warning("Cache get error for key %s: %s", key, e)
            return None

    @staticmethod
    async def set(
        key: str,
        value: Any,
        ttl: int = TTL_SHORT,
    ) -> bool:
        """
        Set value in cache with TTL.

        Args:
            key: Cache key
            value: Value to cache (will be JSON serialized)
            ttl: Time to live in seconds (default 5 minutes)

        Returns:
            True if successful, False otherwise
        """
        try:
            client = await get_redis()
            serialized = json.dumps(value, default=str)
            await client.setex(key, ttl, serialized)
            return True
        except Exception as e:
            logger.warning("Cache set error for key %s: %s", key, e)
            return False

    @staticmethod
    async def delete(key: str) -> bool:
        """
        Delete key from cache.

        Returns:
            True if key was deleted, False otherwise
        """
        try:
            client = await get_redis()
            result = await client.delete(key)
            return result > 0
        except Exception as e:
            logger.warning("Cache delete error for key %s: %s", key, e)
            return False


# =============================================================================
# Cache Key Builders
# =============================================================================

class CacheKeys:
    """Cache key builders for consistent naming."""

    @staticmethod
    def subscription_status(user_id: str) -> str:
        """User subscription status cache key."""
        return f"cache:subscription:status:{user_id}"


# =============================================================================
# Cache Invalidation Helpers
# =============================================================================

class CacheInvalidator:
    """Helpers for invalidating related cache entries."""

    @staticmethod
    async def on_subscription_change(user_id: str) -> None:
        """Invalidate caches when subscription changes."""
        await CacheManager.delete(CacheKeys.subscription_status(user_id))
