"""Pydantic schemas for integration connections, sync runs and webhooks."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class IntegrationType(str, Enum):
    SLACK = "slack"
    MONDAY = "monday"
    MICROSOFT_GRAPH = "microsoft_graph"
    SHAREPOINT = "sharepoint"
    QUICKBOOKS = "quickbooks"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    DISABLED = "disabled"
    SYNCING = "syncing"


class SyncOperation(str, Enum):
    SYNC_START = "sync_start"
    SYNC_COMPLETE = "sync_complete"
    SYNC_ERROR = "sync_error"


class Transformation(str, Enum):
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    TRIM = "trim"
    DATE_ISO = "date_iso"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"


class FieldMapping(BaseModel):
    """Copies ``source_field`` to ``target_field``; both are dotted paths."""

    source_field: str
    target_field: str
    transformation: Transformation | None = None
    required: bool = False


class SyncConfiguration(BaseModel):
    entity_types: list[str] = Field(default_factory=list)
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    sync_direction: str = Field(default="inbound", pattern="^(inbound|outbound|bidirectional)$")
    conflict_resolution: str = Field(default="source_wins", pattern="^(source_wins|target_wins|manual)$")
    batch_size: int = Field(default=100, ge=1, le=1000)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: float = Field(default=1.0, ge=0)


class SyncResult(BaseModel):
    success: bool
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_message: str | None = None
    sync_duration: float = 0.0


class WebhookPayload(BaseModel):
    event_type: str
    entity_type: str
    entity_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    organization_id: str


# ── Connections ──────────────────────────────────────────────────────────


class IntegrationCreate(BaseModel):
    integration_type: IntegrationType
    name: str = Field(..., min_length=1, max_length=200)
    config: dict[str, Any] = Field(default_factory=dict)
    credentials: dict[str, Any] = Field(default_factory=dict)
    sync_frequency_minutes: int = Field(default=60, ge=5, le=24 * 60)


class IntegrationConnection(BaseModel):
    """Stored connection, credentials included. Never returned by the API."""

    id: str
    organization_id: str
    integration_type: IntegrationType
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    credentials: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    sync_status: SyncStatus = SyncStatus.PENDING
    last_sync_at: datetime | None = None
    error_message: str | None = None
    sync_frequency_minutes: int = 60
    created_at: datetime | None = None


class IntegrationRead(BaseModel):
    id: str
    integration_type: IntegrationType
    name: str
    config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool
    sync_status: SyncStatus
    last_sync_at: datetime | None = None
    error_message: str | None = None
    sync_frequency_minutes: int
    created_at: datetime | None = None

    @classmethod
    def from_connection(cls, connection: IntegrationConnection) -> IntegrationRead:
        return cls.model_validate(connection.model_dump(exclude={"credentials", "organization_id"}))


class SyncLogEntry(BaseModel):
    id: str
    integration_id: str
    entity_type: str
    operation: SyncOperation
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class SyncRequest(BaseModel):
    entity_type: str | None = None
    configuration: SyncConfiguration = Field(default_factory=SyncConfiguration)


class ConnectionTestResult(BaseModel):
    success: bool
    error: str | None = None


# ── Connector payloads ───────────────────────────────────────────────────


class SlackNotificationKind(str, Enum):
    OPPORTUNITY_UPDATE = "opportunity_update"
    LEAD_ASSIGNMENT = "lead_assignment"
    MEETING_REMINDER = "meeting_reminder"
    DEAL_CLOSED = "deal_closed"
    TASK_DUE = "task_due"


class SlackNotification(BaseModel):
    kind: SlackNotificationKind
    channel: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    assignee: str | None = None


class MondayWebhookEvent(BaseModel):
    """Event body monday.com posts to a registered webhook."""

    type: str
    board_id: str | None = Field(default=None, alias="boardId")
    item_id: str | None = Field(default=None, alias="pulseId")
    item_name: str | None = Field(default=None, alias="pulseName")
    column_id: str | None = Field(default=None, alias="columnId")
    column_title: str | None = Field(default=None, alias="columnTitle")
    value: Any = None
    previous_value: Any = Field(default=None, alias="previousValue")
    user_id: str | None = Field(default=None, alias="userId")
    trigger_time: str | None = Field(default=None, alias="triggerTime")

    model_config = {"populate_by_name": True, "coerce_numbers_to_str": True}
