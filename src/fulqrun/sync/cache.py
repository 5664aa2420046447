"""Offline data cache served to the mobile client.

Entries are keyed ``{entity_type}_{entity_id}`` and expire after their
TTL (24 hours by default). When the total size passes the configured
maximum, the oldest entries are evicted until the cache is back under 80%
of it. Hit and miss counts are kept in the sync state for the hit rate.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.fulqrun.config import get_settings
from src.fulqrun.sync.schemas import CacheEntry
from src.fulqrun.sync.store import OfflineStore

logger = structlog.get_logger(__name__)

EVICTION_TARGET = 0.8


def entry_id(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}_{entity_id}"


def estimate_size(data: Any) -> int:
    """Byte length of the JSON encoding."""
    return len(json.dumps(data, default=str).encode("utf-8"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OfflineCache:
    def __init__(
        self,
        store: OfflineStore,
        default_ttl: int | None = None,
        max_size: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._default_ttl = default_ttl if default_ttl is not None else settings.OFFLINE_CACHE_TTL_SECONDS
        self._max_size = max_size if max_size is not None else settings.OFFLINE_CACHE_MAX_BYTES
        self._clock = clock

    def _expired(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.timestamp > timedelta(seconds=entry.ttl)

    async def store_offline_data(
        self, entity_type: str, entity_id: str, data: Any, ttl: int | None = None
    ) -> CacheEntry:
        entry = CacheEntry(
            id=entry_id(entity_type, entity_id),
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
            timestamp=self._clock(),
            ttl=ttl if ttl is not None else self._default_ttl,
            size=estimate_size(data),
        )
        await self._store.put_entry(entry)
        await self.enforce_size_limit()
        return entry

    async def get_offline_data(self, entity_type: str, entity_id: str) -> Any | None:
        """Cached data, or None when missing or expired (expired entries are deleted)."""
        entry = await self._store.get_entry(entry_id(entity_type, entity_id))
        if entry is not None and self._expired(entry, self._clock()):
            await self._store.delete_entries(entry.id)
            entry = None
        await self._store.increment_state(cache_requests=1, cache_hits=int(entry is not None))
        return entry.data if entry is not None else None

    async def enforce_size_limit(self) -> int:
        """Evict oldest entries while over the limit. Returns the eviction count."""
        entries = await self._store.list_entries()
        total = sum(e.size for e in entries)
        if total <= self._max_size:
            return 0

        target = self._max_size * EVICTION_TARGET
        evicted: list[str] = []
        for entry in sorted(entries, key=lambda e: e.timestamp):
            if total <= target:
                break
            evicted.append(entry.id)
            total -= entry.size
        await self._store.delete_entries(*evicted)
        logger.info("sync.cache_evicted", evicted=len(evicted), remaining_bytes=total)
        return len(evicted)

    async def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [e.id for e in await self._store.list_entries() if self._expired(e, now)]
        if expired:
            await self._store.delete_entries(*expired)
        return len(expired)

    async def usage(self) -> tuple[int, int]:
        """(total bytes, entry count)."""
        entries = await self._store.list_entries()
        return sum(e.size for e in entries), len(entries)
