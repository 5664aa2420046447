"""Offline sync manager -- connectivity state, metrics and housekeeping.

The mobile client reports its connectivity through ``set_online``; going
back online triggers a replay of the outbox. Offline periods are added
up in ``offline_time``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.fulqrun.core.errors import ConflictError
from src.fulqrun.core.redis import OrganizationRedis
from src.fulqrun.sync.cache import OfflineCache
from src.fulqrun.sync.outbox import SyncOutbox
from src.fulqrun.sync.replay import CRMActionReplayer, SyncEventPublisher
from src.fulqrun.sync.schemas import OfflineExport, OfflineMetrics, SyncRunResult, SyncStatus
from src.fulqrun.sync.store import OfflineStore, RedisOfflineStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: Any) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class OfflineSyncManager:
    """Ties the outbox and cache of one organization together.

    Args:
        store: OfflineStore shared by the outbox and cache.
        outbox: SyncOutbox over the same store.
        cache: OfflineCache over the same store.
    """

    def __init__(
        self,
        store: OfflineStore,
        outbox: SyncOutbox,
        cache: OfflineCache,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self.outbox = outbox
        self.cache = cache
        self._clock = clock

    async def is_online(self) -> bool:
        state = await self._store.get_state()
        return bool(state.get("online", True))

    async def process_sync_queue(self) -> SyncRunResult:
        return await self.outbox.process_sync_queue(online=await self.is_online())

    async def force_synchronization(self) -> SyncRunResult:
        """Replay now.

        Raises:
            ConflictError: The client is offline.
        """
        if not await self.is_online():
            raise ConflictError("Cannot synchronize while offline")
        return await self.outbox.process_sync_queue(online=True)

    async def set_online(self, online: bool) -> SyncRunResult | None:
        state = await self._store.get_state()
        was_online = bool(state.get("online", True))
        now = self._clock()

        if online and not was_online:
            offline_since = _parse(state.get("offline_since"))
            offline_time = float(state.get("offline_time", 0.0))
            if offline_since is not None:
                offline_time += (now - offline_since).total_seconds()
            await self._store.update_state(online=True, offline_since=None, offline_time=offline_time)
            logger.info("sync.connectivity_restored", offline_seconds=offline_time)
            return await self.outbox.process_sync_queue(online=True)

        if not online and was_online:
            await self._store.update_state(online=False, offline_since=now.isoformat())
            logger.info("sync.connectivity_lost")
        return None

    async def metrics(self) -> OfflineMetrics:
        state = await self._store.get_state()
        total_size, entry_count = await self.cache.usage()
        requests = int(state.get("cache_requests", 0))
        hits = int(state.get("cache_hits", 0))
        return OfflineMetrics(
            total_size=total_size,
            entry_count=entry_count,
            pending_actions=len(await self._store.list_actions()),
            last_sync=_parse(state.get("last_sync")),
            sync_errors=int(state.get("sync_errors", 0)),
            cache_hit_rate=hits / requests if requests else 0.0,
            offline_time=float(state.get("offline_time", 0.0)),
        )

    async def status(self) -> SyncStatus:
        return SyncStatus(
            online=await self.is_online(),
            sync_in_progress=await self._store.is_locked(),
            metrics=await self.metrics(),
        )

    async def clear_offline_data(self) -> None:
        await self._store.clear()
        logger.info("sync.offline_data_cleared")

    async def export_offline_data(self) -> OfflineExport:
        return OfflineExport(
            actions=await self._store.list_actions(),
            cache=await self._store.list_entries(),
            metrics=await self.metrics(),
        )


def build_sync_manager(redis_client: Any, crm_service: Any, organization_id: str) -> OfflineSyncManager:
    """Wire a Redis-backed manager for one organization."""
    org_redis = OrganizationRedis(redis_client, organization_id)
    store = RedisOfflineStore(org_redis)
    replayer = CRMActionReplayer(crm_service, SyncEventPublisher(org_redis))
    outbox = SyncOutbox(store, replayer, organization_id)
    return OfflineSyncManager(store, outbox, OfflineCache(store))
