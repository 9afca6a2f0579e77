"""Webhook delivery de-duplication backed by Redis.

Security contract:
- Tracks delivery IDs in Redis with a TTL (24h by default)
- Duplicate deliveries are acknowledged with 200 (the provider retries on errors)
- Key pattern: webhook:seen:{shop_domain}:{delivery_id}
- If Redis is down, falls back to allowing (fail-open for availability)
"""

from __future__ import annotations

import logging

import redis.asyncio as redis_lib
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400  # 24 hours

# Key prefix for webhook dedup
_KEY_PREFIX = "webhook:seen"


def connect(redis_url: str) -> redis_lib.Redis:
    return redis_lib.from_url(redis_url, decode_responses=True)


class DeliveryDeduplicator:
    def __init__(self, client: redis_lib.Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(shop_domain: str, delivery_id: str) -> str:
        return f"{_KEY_PREFIX}:{shop_domain}:{delivery_id}"

    async def is_duplicate(self, shop_domain: str, delivery_id: str | None) -> bool:
        """Check-and-mark a delivery in one atomic SET NX.

        Returns:
            True if this delivery has already been seen (duplicate)
        """
        if not delivery_id:
            return False  # No ID = can't dedup, allow through

        key = self.key(shop_domain, delivery_id)
        try:
            # SET NX returns True if key was set (new), None if it already existed (dup)
            was_set = await self.client.set(key, "1", nx=True, ex=self.ttl_seconds)
        except (RedisError, OSError):
            # Fail open
            logger.warning(
                "Redis unavailable for webhook dedup, allowing %s/%s",
                shop_domain,
                delivery_id,
                exc_info=True,
            )
            return False
        if not was_set:
            logger.info("Duplicate webhook delivery ignored: %s/%s", shop_domain, delivery_id)
            return True
        return False

    async def aclose(self) -> None:
        await self.client.aclose()
