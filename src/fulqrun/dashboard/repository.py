"""Dashboard layout persistence, one row per (organization, user)."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulqrun.dashboard.models import DashboardLayoutModel
from src.fulqrun.dashboard.schemas import DashboardLayout
from src.fulqrun.dashboard.widgets import DashboardWidget

logger = structlog.get_logger(__name__)


def _model_to_layout(model: DashboardLayoutModel) -> DashboardLayout:
    return DashboardLayout(
        user_id=str(model.user_id),
        widgets=[DashboardWidget.model_validate(w) for w in model.widgets or []],
        updated_at=model.updated_at or model.created_at,
    )


class DashboardRepository:
    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get_layout(self, organization_id: str, user_id: str) -> DashboardLayout | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(DashboardLayoutModel).where(
                    DashboardLayoutModel.organization_id == uuid.UUID(organization_id),
                    DashboardLayoutModel.user_id == uuid.UUID(user_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_layout(model) if model else None

    async def save_layout(
        self, organization_id: str, user_id: str, widgets: list[DashboardWidget]
    ) -> DashboardLayout:
        payload = [w.model_dump(mode="json") for w in widgets]
        async for session in self._session_factory():
            result = await session.execute(
                select(DashboardLayoutModel).where(
                    DashboardLayoutModel.organization_id == uuid.UUID(organization_id),
                    DashboardLayoutModel.user_id == uuid.UUID(user_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = DashboardLayoutModel(
                    organization_id=uuid.UUID(organization_id),
                    user_id=uuid.UUID(user_id),
                    widgets=payload,
                )
                session.add(model)
            else:
                model.widgets = payload
            await session.commit()
            await session.refresh(model)
            logger.info(
                "dashboard.layout_saved",
                organization_id=organization_id,
                user_id=user_id,
                widgets=len(widgets),
            )
            return _model_to_layout(model)
