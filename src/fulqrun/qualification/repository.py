"""Persistence for per-organization MEDDPICC configurations.

Every save deactivates the current row, inserts the next version as the
active one and appends a history entry, all in one transaction.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulqrun.qualification.config import MEDDPICCConfig
from src.fulqrun.qualification.models import (
    MEDDPICCConfigurationHistoryModel,
    MEDDPICCConfigurationModel,
)
from src.fulqrun.qualification.schemas import ConfigurationHistoryEntry, StoredConfiguration

logger = structlog.get_logger(__name__)


def _model_to_stored(model: MEDDPICCConfigurationModel) -> StoredConfiguration:
    return StoredConfiguration(
        id=str(model.id),
        organization_id=str(model.organization_id),
        name=model.name,
        description=model.description,
        version=model.version,
        is_active=model.is_active,
        configuration=MEDDPICCConfig.model_validate(model.configuration_data),
        created_by=str(model.created_by) if model.created_by else None,
        created_at=model.created_at,
    )


def _model_to_history(model: MEDDPICCConfigurationHistoryModel) -> ConfigurationHistoryEntry:
    return ConfigurationHistoryEntry(
        id=str(model.id),
        configuration_id=str(model.configuration_id) if model.configuration_id else None,
        change_type=model.change_type,
        previous_version=model.previous_version,
        new_version=model.new_version,
        change_reason=model.change_reason,
        changed_by=str(model.changed_by) if model.changed_by else None,
        changed_at=model.changed_at,
    )


class MEDDPICCConfigurationRepository:
    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get_active(self, organization_id: str) -> StoredConfiguration | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(MEDDPICCConfigurationModel)
                .where(
                    MEDDPICCConfigurationModel.organization_id == uuid.UUID(organization_id),
                    MEDDPICCConfigurationModel.is_active == True,  # noqa: E712
                )
                .order_by(MEDDPICCConfigurationModel.version.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_stored(model) if model else None

    async def save(
        self,
        organization_id: str,
        config: MEDDPICCConfig,
        name: str,
        description: str | None = None,
        user_id: str | None = None,
        change_reason: str | None = None,
    ) -> StoredConfiguration:
        org_uuid = uuid.UUID(organization_id)
        user_uuid = uuid.UUID(user_id) if user_id else None
        async for session in self._session_factory():
            result = await session.execute(
                select(MEDDPICCConfigurationModel)
                .where(MEDDPICCConfigurationModel.organization_id == org_uuid)
                .order_by(MEDDPICCConfigurationModel.version.desc())
                .limit(1)
            )
            latest = result.scalar_one_or_none()
            previous_version = latest.version if latest else None
            previous_data = latest.configuration_data if latest and latest.is_active else None

            await session.execute(
                update(MEDDPICCConfigurationModel)
                .where(
                    MEDDPICCConfigurationModel.organization_id == org_uuid,
                    MEDDPICCConfigurationModel.is_active == True,  # noqa: E712
                )
                .values(is_active=False)
            )
            model = MEDDPICCConfigurationModel(
                organization_id=org_uuid,
                name=name,
                description=description,
                version=(previous_version or 0) + 1,
                is_active=True,
                configuration_data=config.model_dump(mode="json"),
                created_by=user_uuid,
            )
            session.add(model)
            await session.flush()

            session.add(MEDDPICCConfigurationHistoryModel(
                organization_id=org_uuid,
                configuration_id=model.id,
                change_type="UPDATE" if latest else "CREATE",
                previous_version=previous_version,
                new_version=model.version,
                previous_configuration=previous_data,
                new_configuration=model.configuration_data,
                change_reason=change_reason,
                changed_by=user_uuid,
            ))
            await session.commit()
            await session.refresh(model)
            logger.info(
                "qualification.config_saved",
                organization_id=organization_id,
                version=model.version,
            )
            return _model_to_stored(model)

    async def deactivate(self, organization_id: str, user_id: str | None = None) -> bool:
        """Deactivate the active configuration. Returns False if none was active."""
        org_uuid = uuid.UUID(organization_id)
        async for session in self._session_factory():
            result = await session.execute(
                select(MEDDPICCConfigurationModel).where(
                    MEDDPICCConfigurationModel.organization_id == org_uuid,
                    MEDDPICCConfigurationModel.is_active == True,  # noqa: E712
                )
            )
            active = list(result.scalars().all())
            if not active:
                return False
            for model in active:
                model.is_active = False
                session.add(MEDDPICCConfigurationHistoryModel(
                    organization_id=org_uuid,
                    configuration_id=model.id,
                    change_type="DEACTIVATE",
                    previous_version=model.version,
                    previous_configuration=model.configuration_data,
                    change_reason="Reset to default",
                    changed_by=uuid.UUID(user_id) if user_id else None,
                ))
            await session.commit()
            return True

    async def history(self, organization_id: str, limit: int = 50) -> list[ConfigurationHistoryEntry]:
        async for session in self._session_factory():
            result = await session.execute(
                select(MEDDPICCConfigurationHistoryModel)
                .where(MEDDPICCConfigurationHistoryModel.organization_id == uuid.UUID(organization_id))
                .order_by(MEDDPICCConfigurationHistoryModel.changed_at.desc())
                .limit(limit)
            )
            return [_model_to_history(m) for m in result.scalars().all()]
