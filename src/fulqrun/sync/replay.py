"""Replaying offline actions against the CRM and announcing the change.

Conflicts are not merged: a replayed update simply overwrites the stored
record (last writer wins).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog

from src.fulqrun.core.errors import NotFoundError
from src.fulqrun.core.redis import OrganizationRedis
from src.fulqrun.crm.schemas import (
    ContactCreate,
    ContactUpdate,
    LeadCreate,
    LeadUpdate,
    OpportunityCreate,
    OpportunityUpdate,
)
from src.fulqrun.sync.schemas import ActionType, OfflineAction, SyncEvent, SyncEventType

logger = structlog.get_logger(__name__)

EVENTS_CHANNEL = "sync:events"

# entity_type -> (create schema, update schema, service method suffix)
CRM_ENTITIES: dict[str, tuple[type, type, str]] = {
    "lead": (LeadCreate, LeadUpdate, "lead"),
    "contact": (ContactCreate, ContactUpdate, "contact"),
    "opportunity": (OpportunityCreate, OpportunityUpdate, "opportunity"),
}

_EVENT_TYPES = {
    "opportunity": SyncEventType.OPPORTUNITY_CHANGE,
    "kpi": SyncEventType.KPI_UPDATE,
    "alert": SyncEventType.ALERT_TRIGGER,
}


def event_type_for(entity_type: str) -> SyncEventType:
    return _EVENT_TYPES.get(entity_type, SyncEventType.USER_ACTIVITY)


class SyncEventPublisher:
    """Publishes change events on the organization's ``sync:events`` channel."""

    def __init__(self, redis: OrganizationRedis) -> None:
        self._redis = redis

    async def publish(self, event: SyncEvent) -> None:
        await self._redis.publish(EVENTS_CHANNEL, event.model_dump_json())


class CRMActionReplayer:
    """Applies an OfflineAction through CRMService, then publishes an event.

    Going through the service means replayed leads are scored like any
    other. Entity types the CRM does not own (kpi, alert, activity records)
    are only published.

    A create records the new id on the action, so a retry after a failed
    publish does not write a second record.

    Args:
        crm_service: CRMService over the organization's CRMRepository.
        publisher: Object with ``async publish(SyncEvent)``.
    """

    def __init__(self, crm_service: Any, publisher: Any) -> None:
        self._crm = crm_service
        self._publisher = publisher

    async def _apply(self, action: OfflineAction) -> str:
        """Write the action to the CRM. Returns the affected entity id."""
        entity = CRM_ENTITIES.get(action.entity_type)
        if entity is None:
            return action.entity_id
        create_schema, update_schema, suffix = entity
        org_id = action.organization_id

        if action.type == ActionType.CREATE:
            if action.created_entity_id is not None:
                return action.created_entity_id
            create = getattr(self._crm, f"create_{suffix}")
            created = await create(org_id, create_schema.model_validate(action.data), created_by=action.user_id)
            action.created_entity_id = created.id
            return created.id
        if action.type == ActionType.UPDATE:
            update = getattr(self._crm, f"update_{suffix}")
            # NotFoundError for an unknown record; the outbox retries then drops it
            await update(org_id, action.entity_id, update_schema.model_validate(action.data))
            return action.entity_id

        delete = getattr(self._crm, f"delete_{suffix}")
        try:
            await delete(org_id, action.entity_id)
        except NotFoundError:
            logger.info(
                "sync.delete_missing",
                entity_type=action.entity_type,
                entity_id=action.entity_id,
            )
        return action.entity_id

    async def __call__(self, action: OfflineAction) -> SyncEvent:
        entity_id = await self._apply(action)
        event = SyncEvent(
            id=str(uuid.uuid4()),
            type=event_type_for(action.entity_type),
            entity_type=action.entity_type,
            entity_id=entity_id,
            data={"action": action.type.value, **action.data},
            user_id=action.user_id,
            organization_id=action.organization_id,
            timestamp=datetime.now(timezone.utc),
        )
        await self._publisher.publish(event)
        return event
