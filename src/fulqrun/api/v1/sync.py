"""Offline sync endpoints for the mobile client: the action outbox, the
offline cache, connectivity state and metrics.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.fulqrun.api.deps import get_organization, require_permission
from src.fulqrun.core.errors import NotFoundError
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.models.organization import User
from src.fulqrun.sync.schemas import (
    CacheEntry,
    CacheWrite,
    OfflineAction,
    OfflineActionCreate,
    OfflineExport,
    OnlineUpdate,
    SyncRunResult,
    SyncStatus,
)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


class ActionBatch(BaseModel):
    actions: list[OfflineActionCreate] = Field(..., min_length=1, max_length=500)


class CachedData(BaseModel):
    entity_type: str
    entity_id: str
    data: Any = None


def _get_sync_manager(request: Request, org: OrganizationContext = Depends(get_organization)) -> Any:
    """Build the organization's OfflineSyncManager, 503 if sync is not initialized."""
    factory = getattr(request.app.state, "sync_manager_factory", None)
    if factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Offline sync not initialized",
        )
    return factory(org.organization_id)


@router.post("/actions", response_model=list[OfflineAction], status_code=status.HTTP_201_CREATED)
async def queue_actions(
    body: ActionBatch,
    user: User = Depends(require_permission("sync.queue.process")),
    manager: Any = Depends(_get_sync_manager),
):
    """Queue a batch of offline actions. They are replayed by /sync/process."""
    return [await manager.outbox.queue_action(action, user_id=str(user.id)) for action in body.actions]


@router.post("/process", response_model=SyncRunResult)
async def process_queue(
    force: bool = Query(False, description="Replay even if no connectivity change was reported; 409 when offline"),
    _: User = Depends(require_permission("sync.queue.process")),
    manager: Any = Depends(_get_sync_manager),
):
    if force:
        return await manager.force_synchronization()
    return await manager.process_sync_queue()


@router.get("/status", response_model=SyncStatus)
async def sync_status(
    _: User = Depends(require_permission("sync.queue.view")),
    manager: Any = Depends(_get_sync_manager),
):
    return await manager.status()


@router.put("/online", response_model=SyncRunResult | None)
async def set_online(
    body: OnlineUpdate,
    _: User = Depends(require_permission("sync.queue.process")),
    manager: Any = Depends(_get_sync_manager),
):
    """Report connectivity. Coming back online replays the queue and returns the run."""
    return await manager.set_online(body.online)


@router.get("/cache/{entity_type}/{entity_id}", response_model=CachedData)
async def get_cached(
    entity_type: str,
    entity_id: str,
    _: User = Depends(require_permission("sync.queue.view")),
    manager: Any = Depends(_get_sync_manager),
):
    data = await manager.cache.get_offline_data(entity_type, entity_id)
    if data is None:
        raise NotFoundError("No cached data", {"entity_type": entity_type, "entity_id": entity_id})
    return CachedData(entity_type=entity_type, entity_id=entity_id, data=data)


@router.put("/cache/{entity_type}/{entity_id}", response_model=CacheEntry)
async def put_cached(
    entity_type: str,
    entity_id: str,
    body: CacheWrite,
    _: User = Depends(require_permission("sync.queue.process")),
    manager: Any = Depends(_get_sync_manager),
):
    return await manager.cache.store_offline_data(entity_type, entity_id, body.data, ttl=body.ttl)


@router.delete("/cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_cache(
    _: User = Depends(require_permission("sync.queue.process")),
    manager: Any = Depends(_get_sync_manager),
):
    """Drop the queue, the cache and the sync state."""
    await manager.clear_offline_data()


@router.get("/export", response_model=OfflineExport)
async def export_offline_data(
    _: User = Depends(require_permission("sync.queue.view")),
    manager: Any = Depends(_get_sync_manager),
):
    return await manager.export_offline_data()
