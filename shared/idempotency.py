"""
Idempotency store backed by Redis.

A key is claimed with a single ``SET key value NX EX ttl`` round-trip, so two
concurrent claims for the same key can never both succeed. Expiry is left to
Redis; an expired key is indistinguishable from one that was never claimed.
"""
import logging
from datetime import timedelta
from typing import Union

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)

KEY_PREFIX = "idempotency:"


class IdempotencyStore:
    """At-most-once claims on opaque keys within a TTL window."""

    def __init__(self, redis_client: aioredis.Redis, prefix: str = KEY_PREFIX):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def try_claim(self, key: str, ttl: Union[timedelta, int]) -> bool:
        """
        Claim ``key`` for ``ttl``.

        Returns True on first use within the window, False for a duplicate.
        """
        if not key:
            raise ValueError("Idempotency key must not be empty")

        seconds = int(ttl.total_seconds()) if isinstance(ttl, timedelta) else int(ttl)
        if seconds <= 0:
            raise ValueError("Idempotency TTL must be positive")

        claimed = await self.redis.set(self._key(key), "1", nx=True, ex=seconds)
        if not claimed:
            logger.info(f"Idempotency key already claimed: {key}")
            return False
        return True

    async def release(self, key: str) -> bool:
        """Drop a claim so the operation may run again. Returns True if it existed."""
        removed = await self.redis.delete(self._key(key))
        if removed:
            logger.info(f"Released idempotency key: {key}")
        return bool(removed)

    async def is_claimed(self, key: str) -> bool:
        return bool(await self.redis.exists(self._key(key)))
