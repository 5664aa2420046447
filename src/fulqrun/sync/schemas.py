"""Offline sync schemas shared by the outbox, cache and API."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncEventType(str, Enum):
    OPPORTUNITY_CHANGE = "opportunity_change"
    KPI_UPDATE = "kpi_update"
    ALERT_TRIGGER = "alert_trigger"
    USER_ACTIVITY = "user_activity"


class OfflineActionCreate(BaseModel):
    """An action recorded by the mobile client while offline."""

    id: str | None = None
    type: ActionType
    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None


class OfflineAction(BaseModel):
    id: str
    type: ActionType
    entity_type: str
    entity_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    user_id: str | None = None
    organization_id: str
    attempts: int = 0
    last_attempt: datetime | None = None
    error: str | None = None
    # Set once a create has been written, so a retry does not create it again
    created_entity_id: str | None = None


class SyncEvent(BaseModel):
    id: str
    type: SyncEventType
    entity_type: str
    entity_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None
    organization_id: str
    timestamp: datetime


class CacheEntry(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    data: Any = None
    timestamp: datetime
    ttl: int  # seconds
    size: int  # bytes of the JSON encoding


class OfflineMetrics(BaseModel):
    total_size: int = 0
    entry_count: int = 0
    pending_actions: int = 0
    last_sync: datetime | None = None
    sync_errors: int = 0
    cache_hit_rate: float = 0.0
    offline_time: float = 0.0  # seconds


class SyncRunResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    dropped: int = 0
    skipped: str | None = None


class SyncStatus(BaseModel):
    online: bool
    sync_in_progress: bool
    metrics: OfflineMetrics


class OnlineUpdate(BaseModel):
    online: bool


class CacheWrite(BaseModel):
    data: Any
    ttl: int | None = Field(default=None, ge=1)


class OfflineExport(BaseModel):
    actions: list[OfflineAction] = Field(default_factory=list)
    cache: list[CacheEntry] = Field(default_factory=list)
    metrics: OfflineMetrics
