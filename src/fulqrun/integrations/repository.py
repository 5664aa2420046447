"""Integration connection and sync log persistence.

Also serves as the connectors' ``store`` (status, sync log, config and
credential updates).
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulqrun.integrations.models import IntegrationConnectionModel, IntegrationSyncLogModel
from src.fulqrun.integrations.schemas import (
    IntegrationConnection,
    IntegrationCreate,
    IntegrationType,
    SyncLogEntry,
    SyncOperation,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


def _model_to_connection(model: IntegrationConnectionModel) -> IntegrationConnection:
    return IntegrationConnection(
        id=str(model.id),
        organization_id=str(model.organization_id),
        integration_type=model.integration_type,
        name=model.name,
        config=model.config or {},
        credentials=model.credentials or {},
        is_active=model.is_active,
        sync_status=model.sync_status,
        last_sync_at=model.last_sync_at,
        error_message=model.error_message,
        sync_frequency_minutes=model.sync_frequency_minutes,
        created_at=model.created_at,
    )


def _model_to_log(model: IntegrationSyncLogModel) -> SyncLogEntry:
    return SyncLogEntry(
        id=str(model.id),
        integration_id=str(model.integration_id),
        entity_type=model.entity_type,
        operation=model.operation,
        details=model.details or {},
        created_at=model.created_at,
    )


class IntegrationRepository:
    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create(
        self, organization_id: str, data: IntegrationCreate, created_by: str | None = None
    ) -> IntegrationConnection:
        async for session in self._session_factory():
            model = IntegrationConnectionModel(
                organization_id=uuid.UUID(organization_id),
                integration_type=data.integration_type.value,
                name=data.name,
                config=data.config,
                credentials=data.credentials,
                is_active=True,
                sync_status=SyncStatus.PENDING.value,
                sync_frequency_minutes=data.sync_frequency_minutes,
                created_by=uuid.UUID(created_by) if created_by else None,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "integration.created",
                organization_id=organization_id,
                integration_id=str(model.id),
                integration_type=model.integration_type,
            )
            return _model_to_connection(model)

    async def get(self, organization_id: str, integration_id: str) -> IntegrationConnection | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(IntegrationConnectionModel).where(
                    IntegrationConnectionModel.organization_id == uuid.UUID(organization_id),
                    IntegrationConnectionModel.id == uuid.UUID(integration_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_connection(model) if model else None

    async def get_active_by_type(
        self, organization_id: str, integration_type: IntegrationType
    ) -> IntegrationConnection | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(IntegrationConnectionModel)
                .where(
                    IntegrationConnectionModel.organization_id == uuid.UUID(organization_id),
                    IntegrationConnectionModel.integration_type == integration_type.value,
                    IntegrationConnectionModel.is_active.is_(True),
                )
                .order_by(IntegrationConnectionModel.created_at.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_connection(model) if model else None

    async def list_connections(self, organization_id: str) -> list[IntegrationConnection]:
        async for session in self._session_factory():
            result = await session.execute(
                select(IntegrationConnectionModel)
                .where(IntegrationConnectionModel.organization_id == uuid.UUID(organization_id))
                .order_by(IntegrationConnectionModel.created_at.desc())
            )
            return [_model_to_connection(m) for m in result.scalars().all()]

    async def delete(self, organization_id: str, integration_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(IntegrationConnectionModel).where(
                    IntegrationConnectionModel.organization_id == uuid.UUID(organization_id),
                    IntegrationConnectionModel.id == uuid.UUID(integration_id),
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def _update(self, organization_id: str, integration_id: str, values: dict[str, Any]) -> None:
        async for session in self._session_factory():
            result = await session.execute(
                update(IntegrationConnectionModel)
                .where(
                    IntegrationConnectionModel.organization_id == uuid.UUID(organization_id),
                    IntegrationConnectionModel.id == uuid.UUID(integration_id),
                )
                .values(**values)
            )
            await session.commit()
            if result.rowcount == 0:
                raise ValueError(f"Integration {integration_id} not found")

    # ── Connector store ─────────────────────────────────────────────────

    async def update_sync_status(
        self,
        organization_id: str,
        integration_id: str,
        status: SyncStatus,
        error_message: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"sync_status": status.value}
        if status == SyncStatus.SUCCESS:
            values["last_sync_at"] = datetime.now(timezone.utc)
            values["error_message"] = None
        elif error_message:
            values["error_message"] = error_message
        await self._update(organization_id, integration_id, values)

    async def update_config(self, organization_id: str, integration_id: str, config: dict[str, Any]) -> None:
        await self._update(organization_id, integration_id, {"config": config})

    async def update_credentials(
        self, organization_id: str, integration_id: str, credentials: dict[str, Any]
    ) -> None:
        await self._update(organization_id, integration_id, {"credentials": credentials})

    async def add_sync_log(
        self,
        organization_id: str,
        integration_id: str,
        entity_type: str,
        operation: SyncOperation,
        details: dict[str, Any],
    ) -> None:
        async for session in self._session_factory():
            session.add(IntegrationSyncLogModel(
                organization_id=uuid.UUID(organization_id),
                integration_id=uuid.UUID(integration_id),
                entity_type=entity_type,
                operation=operation.value,
                details=details,
            ))
            await session.commit()

    async def list_logs(self, organization_id: str, integration_id: str, limit: int = 100) -> list[SyncLogEntry]:
        async for session in self._session_factory():
            result = await session.execute(
                select(IntegrationSyncLogModel)
                .where(
                    IntegrationSyncLogModel.organization_id == uuid.UUID(organization_id),
                    IntegrationSyncLogModel.integration_id == uuid.UUID(integration_id),
                )
                .order_by(IntegrationSyncLogModel.created_at.desc())
                .limit(limit)
            )
            return [_model_to_log(m) for m in result.scalars().all()]
