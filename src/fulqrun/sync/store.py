"""Persistence for the offline outbox, cache entries and sync state.

RedisOfflineStore keeps everything in three hashes inside the
organization's Redis namespace:

- ``sync:actions``  action id -> OfflineAction JSON
- ``sync:cache``    entry id  -> CacheEntry JSON
- ``sync:state``    counters and flags (online, last_sync, sync_errors, ...)
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from src.fulqrun.core.redis import OrganizationRedis
from src.fulqrun.sync.schemas import CacheEntry, OfflineAction

ACTIONS_KEY = "sync:actions"
CACHE_KEY = "sync:cache"
STATE_KEY = "sync:state"
LOCK_KEY = "sync:lock"


class OfflineStore(ABC):
    """Storage backend for one organization's offline data."""

    @abstractmethod
    async def list_actions(self) -> list[OfflineAction]:
        """Pending actions, oldest timestamp first."""

    @abstractmethod
    async def put_action(self, action: OfflineAction) -> None: ...

    @abstractmethod
    async def delete_action(self, action_id: str) -> None: ...

    @abstractmethod
    async def list_entries(self) -> list[CacheEntry]: ...

    @abstractmethod
    async def get_entry(self, entry_id: str) -> CacheEntry | None: ...

    @abstractmethod
    async def put_entry(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def delete_entries(self, *entry_ids: str) -> None: ...

    @abstractmethod
    async def get_state(self) -> dict[str, Any]: ...

    @abstractmethod
    async def update_state(self, **values: Any) -> None: ...

    @abstractmethod
    async def increment_state(self, **amounts: int) -> None:
        """Atomically add to integer counters in the sync state."""

    @abstractmethod
    async def acquire_lock(self, ttl: int) -> bool:
        """Take the replay lock; False if another replay holds it."""

    @abstractmethod
    async def release_lock(self) -> None: ...

    @abstractmethod
    async def is_locked(self) -> bool: ...

    @abstractmethod
    async def clear(self) -> None:
        """Remove actions, cache entries and state."""


class RedisOfflineStore(OfflineStore):
    """OfflineStore on top of an organization-scoped Redis wrapper."""

    def __init__(self, redis: OrganizationRedis) -> None:
        self._redis = redis

    async def list_actions(self) -> list[OfflineAction]:
        raw = await self._redis.hgetall(ACTIONS_KEY)
        actions = [OfflineAction.model_validate_json(v) for v in raw.values()]
        return sorted(actions, key=lambda a: a.timestamp)

    async def put_action(self, action: OfflineAction) -> None:
        await self._redis.hset(ACTIONS_KEY, action.id, action.model_dump_json())

    async def delete_action(self, action_id: str) -> None:
        await self._redis.hdel(ACTIONS_KEY, action_id)

    async def list_entries(self) -> list[CacheEntry]:
        raw = await self._redis.hgetall(CACHE_KEY)
        return [CacheEntry.model_validate_json(v) for v in raw.values()]

    async def get_entry(self, entry_id: str) -> CacheEntry | None:
        raw = await self._redis.hget(CACHE_KEY, entry_id)
        return CacheEntry.model_validate_json(raw) if raw else None

    async def put_entry(self, entry: CacheEntry) -> None:
        await self._redis.hset(CACHE_KEY, entry.id, entry.model_dump_json())

    async def delete_entries(self, *entry_ids: str) -> None:
        await self._redis.hdel(CACHE_KEY, *entry_ids)

    async def get_state(self) -> dict[str, Any]:
        raw = await self._redis.hgetall(STATE_KEY)
        return {k: json.loads(v) for k, v in raw.items()}

    async def update_state(self, **values: Any) -> None:
        for field, value in values.items():
            await self._redis.hset(STATE_KEY, field, json.dumps(value, default=str))

    async def increment_state(self, **amounts: int) -> None:
        for field, amount in amounts.items():
            if amount:
                await self._redis.hincrby(STATE_KEY, field, amount)

    async def acquire_lock(self, ttl: int) -> bool:
        return await self._redis.set(LOCK_KEY, "1", ex=ttl, nx=True)

    async def release_lock(self) -> None:
        await self._redis.delete(LOCK_KEY)

    async def is_locked(self) -> bool:
        return await self._redis.exists(LOCK_KEY)

    async def clear(self) -> None:
        await self._redis.delete(ACTIONS_KEY, CACHE_KEY, STATE_KEY, LOCK_KEY)
