"""
Event Deduplicator
==================

At-most-once application of platform events.

Processed event ids are stored in Redis with a TTL longer than the
platforms' retry horizon (Stripe retries for up to 3 days; the default
retention is 30 days). Redis must run with AOF persistence so the keys
survive a restart.

Events without a platform id (legacy receipt shapes) are keyed by a
content hash of ``platform|external_id|kind|occurred_at``.

Failures talking to Redis raise ``TransientStoreError``; the caller
returns 5xx and the platform retries later.
"""

import hashlib
import logging
from typing import Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from entitlements.config import settings
from entitlements.core.errors import TransientStoreError
from entitlements.schemas.events import SubscriptionEvent
from entitlements.services.cache import get_redis

logger = logging.getLogger(__name__)

_KEY_PREFIX = "webhook"


class EventDeduplicator:
    """Redis-backed processed-event registry."""

    def __init__(
        self,
        redis_getter: Callable[[], Awaitable[Redis]] = get_redis,
        ttl_seconds: Optional[int] = None,
    ):
        self._redis_getter = redis_getter
        self.ttl_seconds = ttl_seconds or settings.webhook_event_ttl_seconds

    @staticmethod
    def key_for(event: SubscriptionEvent) -> str:
        """Redis key for an event, hashing its content when it has no id."""
        platform = event.platform.value
        if event.event_id:
            return f"{_KEY_PREFIX}:{platform}:event:{event.event_id}"

        material = "|".join([
            platform,
            event.external_id,
            event.kind.value,
            event.occurred_at.isoformat(),
        ])
        digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
        return f"{_KEY_PREFIX}:{platform}:event:sha256:{digest}"

    async def should_process(self, event: SubscriptionEvent) -> bool:
        """True if the event has not been marked processed yet."""
        key = self.key_for(event)
        try:
            client = await self._redis_getter()
            seen = await client.exists(key)
        except (RedisError, OSError) as exc:
            logger.error("Dedup check failed for %s: %s", key, exc)
            raise TransientStoreError("dedup store unavailable") from exc
        return seen == 0

    async def mark_processed(self, event: SubscriptionEvent) -> None:
        """Record the event so redeliveries are skipped."""
        key = self.key_for(event)
        try:
            client = await self._redis_getter()
            await client.setex(key, self.ttl_seconds, event.kind.value)
        except (RedisError, OSError) as exc:
            logger.error("Dedup mark failed for %s: %s", key, exc)
            raise TransientStoreError("dedup store unavailable") from exc
        logger.debug("Marked event processed: %s", key)
