"""Offline outbox -- queued client actions replayed in FIFO order.

Each action is tried up to ``max_retries`` times with a linear delay of
``retry_delay * attempts`` between tries. An action that exhausts its
retries is dropped, logged and counted in ``sync_errors``; successful
actions are removed from the queue.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_incrementing

from src.fulqrun.config import get_settings
from src.fulqrun.core.monitoring import sync_actions_total, sync_queue_depth
from src.fulqrun.sync.schemas import OfflineAction, OfflineActionCreate, SyncRunResult
from src.fulqrun.sync.store import OfflineStore

logger = structlog.get_logger(__name__)

# Upper bound on one replay run holding the lock
LOCK_TTL_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOutbox:
    """Queue and replay offline actions for one organization.

    Args:
        store: OfflineStore holding the queue and sync state.
        replayer: Async callable applying one action; raising marks the try failed.
        organization_id: Owner of the queue.
        max_retries: Tries per action before it is dropped.
        retry_delay: Base delay in seconds; try n waits ``retry_delay * n``.
        sleep: Awaitable sleep used between tries (injectable for tests).
    """

    def __init__(
        self,
        store: OfflineStore,
        replayer: Callable[[OfflineAction], Awaitable[Any]],
        organization_id: str,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._replayer = replayer
        self._organization_id = organization_id
        self._max_retries = max_retries if max_retries is not None else settings.SYNC_MAX_RETRIES
        self._retry_delay = retry_delay if retry_delay is not None else settings.SYNC_RETRY_DELAY_SECONDS
        self._sleep = sleep

    async def queue_action(self, data: OfflineActionCreate, user_id: str | None = None) -> OfflineAction:
        action = OfflineAction(
            id=data.id or f"action_{uuid.uuid4().hex}",
            type=data.type,
            entity_type=data.entity_type,
            entity_id=data.entity_id,
            data=data.data,
            timestamp=data.timestamp or _utcnow(),
            user_id=user_id,
            organization_id=self._organization_id,
        )
        await self._store.put_action(action)
        logger.info(
            "sync.action_queued",
            organization_id=self._organization_id,
            action_id=action.id,
            entity_type=action.entity_type,
            action_type=action.type.value,
        )
        return action

    async def pending(self) -> list[OfflineAction]:
        return await self._store.list_actions()

    async def _replay_with_retries(self, action: OfflineAction) -> None:
        remaining = max(self._max_retries - action.attempts, 1)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(remaining),
            wait=wait_incrementing(start=self._retry_delay, increment=self._retry_delay),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                action.attempts += 1
                action.last_attempt = _utcnow()
                try:
                    await self._replayer(action)
                except Exception as e:
                    action.error = str(e)
                    await self._store.put_action(action)
                    logger.warning(
                        "sync.action_failed",
                        organization_id=self._organization_id,
                        action_id=action.id,
                        attempts=action.attempts,
                        error=action.error,
                    )
                    raise

    async def process_sync_queue(self, online: bool = True) -> SyncRunResult:
        """Replay every pending action, oldest first.

        Skipped when offline, when the queue is empty, or when another
        replay holds the lock.
        """
        if not online:
            return SyncRunResult(skipped="offline")
        actions = await self._store.list_actions()
        if not actions:
            return SyncRunResult(skipped="empty_queue")
        if not await self._store.acquire_lock(LOCK_TTL_SECONDS):
            return SyncRunResult(skipped="in_progress")

        result = SyncRunResult()
        try:
            for action in actions:
                result.processed += 1
                try:
                    await self._replay_with_retries(action)
                except Exception as e:
                    result.dropped += 1
                    await self._store.delete_action(action.id)
                    sync_actions_total.labels(
                        entity_type=action.entity_type, action_type=action.type.value, status="dropped"
                    ).inc()
                    logger.error(
                        "sync.action_dropped",
                        organization_id=self._organization_id,
                        action_id=action.id,
                        entity_type=action.entity_type,
                        attempts=action.attempts,
                        error=str(e),
                    )
                    continue
                result.succeeded += 1
                await self._store.delete_action(action.id)
                sync_actions_total.labels(
                    entity_type=action.entity_type, action_type=action.type.value, status="success"
                ).inc()

            await self._store.increment_state(sync_errors=result.dropped)
            await self._store.update_state(last_sync=_utcnow().isoformat())
            sync_queue_depth.labels(organization_id=self._organization_id).set(
                len(await self._store.list_actions())
            )
        finally:
            await self._store.release_lock()

        logger.info(
            "sync.queue_processed",
            organization_id=self._organization_id,
            processed=result.processed,
            succeeded=result.succeeded,
            dropped=result.dropped,
        )
        return result
