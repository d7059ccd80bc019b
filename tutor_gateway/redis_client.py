# tutor_gateway/redis_client.py
import logging

import redis.asyncio as redis

from tutor_gateway.config import settings

logger = logging.getLogger(__name__)

REDIS_SCHEMES = ("redis://", "rediss://", "unix://")

# Shared quota-store client
redis_client: redis.Redis | None = None
redis_available: bool | None = None


async def get_redis() -> redis.Redis | None:
    """Return the quota-store client, or None when no Redis URL is configured.

    Connect and command timeouts come from ``quota_store_timeout_seconds`` so a
    stalled store surfaces as a RedisError (and the quota fail-open policy)
    instead of blocking the chat turn.
    """
    global redis_client, redis_available
    if redis_available is False:
        return None

    if not settings.redis_url or not settings.redis_url.startswith(REDIS_SCHEMES):
        logger.warning("REDIS_URL not set or unsupported; quota counting is disabled")
        redis_available = False
        return None

    if redis_client is None:
        timeout = settings.quota_store_timeout_seconds
        redis_client = redis.from_url(
            settings.redis_url,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
        )
        redis_available = True
    return redis_client


async def close_redis():
    """Close the quota-store client on shutdown."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
