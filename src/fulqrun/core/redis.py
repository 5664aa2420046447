"""Organization-aware Redis wrapper with automatic key prefixing.

Every key written through OrganizationRedis is prefixed with
o:{organization_id}: so cached scores, offline queues and export files of
one organization are never visible to another.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis

from src.fulqrun.config import get_settings
from src.fulqrun.core.organization import get_current_organization

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


def organization_key(organization_id: str, key: str) -> str:
    """Build an organization-prefixed key: o:{organization_id}:{key}."""
    return f"o:{organization_id}:{key}"


# ── Organization Redis Wrapper ──────────────────────────────────────────────


class OrganizationRedis:
    """Organization-aware Redis wrapper that prefixes all keys with o:{organization_id}:.

    When organization_id is not given, the prefix comes from the current
    organization context.
    """

    def __init__(self, redis_client: aioredis.Redis, organization_id: str | None = None):
        self._redis = redis_client
        self._organization_id = organization_id

    @property
    def organization_id(self) -> str:
        if self._organization_id is not None:
            return self._organization_id
        return get_current_organization().organization_id

    def _key(self, key: str) -> str:
        return organization_key(self.organization_id, key)

    # ── String operations ───────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        """Get a value by organization-prefixed key."""
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool:
        """Set a value with optional TTL (seconds). With nx, only if the key is absent."""
        return bool(await self._redis.set(self._key(key), value, ex=ex, nx=nx))

    async def delete(self, *keys: str) -> int:
        """Delete keys. Returns number of keys deleted."""
        if not keys:
            return 0
        return await self._redis.delete(*(self._key(k) for k in keys))

    async def exists(self, key: str) -> bool:
        """Check if a key exists."""
        return bool(await self._redis.exists(self._key(key)))

    async def expire(self, key: str, seconds: int) -> bool:
        """Set TTL on an existing key."""
        return bool(await self._redis.expire(self._key(key), seconds))

    # ── Pub/Sub ─────────────────────────────────────────────────────────

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message to an organization-prefixed channel."""
        return await self._redis.publish(self._key(channel), message)

    # ── Hash operations ─────────────────────────────────────────────────

    async def hset(self, name: str, key: str, value: str) -> int:
        """Set a hash field."""
        return await self._redis.hset(self._key(name), key, value)

    async def hget(self, name: str, key: str) -> str | None:
        """Get a hash field value."""
        return await self._redis.hget(self._key(name), key)

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        """Atomically add to an integer hash field. Returns the new value."""
        return await self._redis.hincrby(self._key(name), key, amount)

    async def hgetall(self, name: str) -> dict[str, Any]:
        """Get all fields and values in a hash."""
        return await self._redis.hgetall(self._key(name))

    async def hdel(self, name: str, *keys: str) -> int:
        """Delete hash fields."""
        if not keys:
            return 0
        return await self._redis.hdel(self._key(name), *keys)


def get_organization_redis() -> OrganizationRedis:
    """Get an OrganizationRedis bound to the current request's organization."""
    return OrganizationRedis(get_redis_pool())
