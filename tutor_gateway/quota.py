# tutor_gateway/quota.py
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

import redis.asyncio as redis
from redis.exceptions import RedisError

from tutor_gateway.config import settings
from tutor_gateway.redis_client import get_redis

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def minute_bucket(now: datetime) -> str:
    """Floor a timestamp to its minute, e.g. "2025-11-18T09:32"."""
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")


def quota_key(tenant_id: str, user_id: str, bucket: str) -> str:
    # ids are percent-encoded so a ":" inside one cannot shift the separators
    return f"quota:{quote(tenant_id, safe='')}:{quote(user_id, safe='')}:{bucket}"


class QuotaGuard:
    """Per-(tenant, user, minute) request counter backed by Redis.

    The increment is a single INCR, so concurrent requests in the same bucket
    never under-count. When the store is unreachable the guard applies
    ``fail_open``: allow and log (the default), or deny.
    """

    def __init__(
        self,
        redis_factory: Callable[[], Awaitable[Optional[redis.Redis]]] = get_redis,
        clock: Callable[[], datetime] = _utc_now,
        ttl_seconds: Optional[int] = None,
        fail_open: Optional[bool] = None,
    ):
        self._redis_factory = redis_factory
        self._clock = clock
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.quota_ttl_seconds
        self.fail_open = fail_open if fail_open is not None else settings.quota_fail_open

    async def check_and_increment(self, tenant_id: str, user_id: str, limit_per_minute: int) -> bool:
        """Count this request and return True if it is within the limit.

        A limit of 0 or less disables the check.
        """
        if limit_per_minute <= 0:
            return True

        key = quota_key(tenant_id, user_id, minute_bucket(self._clock()))

        try:
            client = await self._redis_factory()
            if client is None:
                logger.warning("Quota store not configured; applying fail_open=%s", self.fail_open)
                return self.fail_open

            count = await client.incr(key)

            # Set expiry on first request in the bucket
            if count == 1:
                await client.expire(key, self.ttl_seconds)
        except (RedisError, OSError) as e:
            logger.error(f"Quota store error for {key}: {e}; applying fail_open={self.fail_open}")
            return self.fail_open

        allowed = count <= limit_per_minute
        if not allowed:
            logger.info(
                f"User {user_id} in tenant {tenant_id} exceeded quota ({count}/{limit_per_minute})"
            )
        return allowed

    async def get_remaining(self, tenant_id: str, user_id: str, limit_per_minute: int) -> Optional[int]:
        """Best-effort remaining request count for display. Never used for enforcement."""
        key = quota_key(tenant_id, user_id, minute_bucket(self._clock()))
        try:
            client = await self._redis_factory()
            if client is None:
                return None
            count = await client.get(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Could not read quota for {key}: {e}")
            return None

        if not count:
            return limit_per_minute
        return max(limit_per_minute - int(count), 0)
