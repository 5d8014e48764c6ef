"""Webhook delivery dedup (Redis).

Security contract:
- Tracks delivery IDs in Redis with 24h TTL
- A delivery is marked seen only AFTER it was processed successfully, so a
  failed run is retried by the provider instead of being swallowed
- Duplicate deliveries are answered with 200 (provider retries on errors)
- Key pattern: webhook:seen:{provider}:{webhook_id}
- No REDIS_URL, or Redis down -> fail open (process the delivery)
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook:seen"


def _key(provider: str, webhook_id: str) -> str:
    return f"{_KEY_PREFIX}:{provider}:{webhook_id}"


class DeliveryDedup:
    """Remembers processed delivery ids. Disabled when built without a client."""

    def __init__(self, client: aioredis.Redis | None = None):
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str) -> DeliveryDedup:
        if not redis_url:
            logger.info("REDIS_URL not set; webhook delivery dedup disabled")
            return cls(None)
        return cls(aioredis.from_url(redis_url, decode_responses=True))

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def is_duplicate(self, provider: str, webhook_id: str | None) -> bool:
        """Check whether this delivery was already processed successfully.

        Args:
            provider: Webhook provider (shopify, siteflow)
            webhook_id: Provider delivery ID (e.g. X-Shopify-Webhook-Id)
        """
        if not webhook_id or self._client is None:
            return False

        try:
            if await self._client.exists(_key(provider, webhook_id)):
                logger.info("Duplicate webhook delivery: %s/%s", provider, webhook_id)
                return True
            return False
        except RedisError:
            logger.warning(
                "Redis unavailable for webhook dedup; allowing %s/%s",
                provider,
                webhook_id,
                exc_info=True,
            )
            return False

    async def mark_seen(self, provider: str, webhook_id: str | None) -> None:
        """Mark a delivery as processed."""
        if not webhook_id or self._client is None:
            return

        try:
            await self._client.set(_key(provider, webhook_id), "1", ex=_DEDUP_TTL_SECONDS)
        except RedisError:
            logger.warning("Failed to mark webhook as seen: %s/%s", provider, webhook_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
