"""CRM repository -- async CRUD for leads, contacts and opportunities.

Uses the session_factory callable pattern; all methods take
organization_id as first argument. Update methods apply only the fields
that were set (``model_dump(exclude_none=True)``) and raise ValueError when
the row does not exist.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulqrun.crm.models import ContactModel, LeadModel, OpportunityModel
from src.fulqrun.crm.schemas import (
    ContactCreate,
    ContactRead,
    ContactUpdate,
    LeadCreate,
    LeadFilter,
    LeadRead,
    LeadUpdate,
    MEDDPICCResponse,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
)

logger = structlog.get_logger(__name__)

_UUID_FIELDS = frozenset({"contact_id", "lead_id", "assigned_to", "created_by"})


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _opt_uuid(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


def _apply(model: Any, values: dict[str, Any]) -> None:
    for field, value in values.items():
        if field in _UUID_FIELDS and isinstance(value, str):
            value = uuid.UUID(value)
        elif hasattr(value, "value"):
            value = value.value
        setattr(model, field, value)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_lead(model: LeadModel) -> LeadRead:
    return LeadRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        first_name=model.first_name,
        last_name=model.last_name,
        email=model.email,
        phone=model.phone,
        company=model.company,
        title=model.title,
        source=model.source,
        status=model.status,
        score=model.score or 0,
        notes=model.notes,
        created_by=_opt_str(model.created_by),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_contact(model: ContactModel) -> ContactRead:
    return ContactRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        first_name=model.first_name,
        last_name=model.last_name,
        email=model.email,
        phone=model.phone,
        title=model.title,
        company=model.company,
        notes=model.notes,
        external_id=model.external_id,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_opportunity(model: OpportunityModel) -> OpportunityRead:
    return OpportunityRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        name=model.name,
        contact_id=_opt_str(model.contact_id),
        lead_id=_opt_str(model.lead_id),
        stage=model.stage,
        value=model.value or 0.0,
        probability=model.probability or 0,
        close_date=model.close_date,
        assigned_to=_opt_str(model.assigned_to),
        notes=model.notes,
        meddpicc_responses=[MEDDPICCResponse.model_validate(r) for r in (model.meddpicc_responses or [])],
        meddpicc_score=model.meddpicc_score or 0,
        metrics=model.metrics,
        economic_buyer=model.economic_buyer,
        decision_criteria=model.decision_criteria,
        decision_process=model.decision_process,
        paper_process=model.paper_process,
        identify_pain=model.identify_pain,
        champion=model.champion,
        competition=model.competition,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class CRMRepository:
    """Async CRUD for the CRM entities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Leads ───────────────────────────────────────────────────────────────

    async def create_lead(
        self,
        organization_id: str,
        data: LeadCreate,
        score: int = 0,
        created_by: str | None = None,
    ) -> LeadRead:
        async for session in self._session_factory():
            model = LeadModel(
                organization_id=uuid.UUID(organization_id),
                first_name=data.first_name,
                last_name=data.last_name,
                email=data.email,
                phone=data.phone,
                company=data.company,
                title=data.title,
                source=data.source,
                status=data.status.value,
                score=score,
                notes=data.notes,
                created_by=_opt_uuid(created_by),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_lead(model)

    async def get_lead(self, organization_id: str, lead_id: str) -> LeadRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(LeadModel).where(
                    LeadModel.organization_id == uuid.UUID(organization_id),
                    LeadModel.id == uuid.UUID(lead_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_lead(model) if model else None

    async def list_leads(self, organization_id: str, filters: LeadFilter | None = None) -> list[LeadRead]:
        filters = filters or LeadFilter()
        async for session in self._session_factory():
            stmt = select(LeadModel).where(LeadModel.organization_id == uuid.UUID(organization_id))
            if filters.status is not None:
                stmt = stmt.where(LeadModel.status == filters.status.value)
            if filters.search:
                pattern = f"%{filters.search}%"
                stmt = stmt.where(or_(
                    LeadModel.first_name.ilike(pattern),
                    LeadModel.last_name.ilike(pattern),
                    LeadModel.email.ilike(pattern),
                    LeadModel.company.ilike(pattern),
                ))
            stmt = stmt.order_by(LeadModel.created_at.desc()).offset(filters.offset).limit(filters.limit)
            result = await session.execute(stmt)
            return [_model_to_lead(m) for m in result.scalars().all()]

    async def update_lead(
        self,
        organization_id: str,
        lead_id: str,
        data: LeadUpdate,
        score: int | None = None,
    ) -> LeadRead:
        async for session in self._session_factory():
            result = await session.execute(
                select(LeadModel).where(
                    LeadModel.organization_id == uuid.UUID(organization_id),
                    LeadModel.id == uuid.UUID(lead_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Lead {lead_id} not found")
            _apply(model, data.model_dump(exclude_none=True))
            if score is not None:
                model.score = score
            await session.commit()
            await session.refresh(model)
            return _model_to_lead(model)

    async def delete_lead(self, organization_id: str, lead_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(LeadModel).where(
                    LeadModel.organization_id == uuid.UUID(organization_id),
                    LeadModel.id == uuid.UUID(lead_id),
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def lead_status_scores(self, organization_id: str) -> list[tuple[str, int]]:
        """(status, score) for every lead, for statistics."""
        async for session in self._session_factory():
            result = await session.execute(
                select(LeadModel.status, LeadModel.score).where(
                    LeadModel.organization_id == uuid.UUID(organization_id)
                )
            )
            return [(row.status, row.score or 0) for row in result.all()]

    # ── Contacts ────────────────────────────────────────────────────────────

    async def create_contact(
        self, organization_id: str, data: ContactCreate, created_by: str | None = None
    ) -> ContactRead:
        async for session in self._session_factory():
            model = ContactModel(
                organization_id=uuid.UUID(organization_id),
                created_by=_opt_uuid(created_by),
                **data.model_dump(),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def get_contact(self, organization_id: str, contact_id: str) -> ContactRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ContactModel).where(
                    ContactModel.organization_id == uuid.UUID(organization_id),
                    ContactModel.id == uuid.UUID(contact_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_contact(model) if model else None

    async def get_contact_by_external_id(self, organization_id: str, external_id: str) -> ContactRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ContactModel).where(
                    ContactModel.organization_id == uuid.UUID(organization_id),
                    ContactModel.external_id == external_id,
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_contact(model) if model else None

    async def list_contacts(
        self, organization_id: str, search: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[ContactRead]:
        async for session in self._session_factory():
            stmt = select(ContactModel).where(ContactModel.organization_id == uuid.UUID(organization_id))
            if search:
                pattern = f"%{search}%"
                stmt = stmt.where(or_(
                    ContactModel.first_name.ilike(pattern),
                    ContactModel.last_name.ilike(pattern),
                    ContactModel.email.ilike(pattern),
                    ContactModel.company.ilike(pattern),
                ))
            stmt = stmt.order_by(ContactModel.last_name, ContactModel.first_name).offset(offset).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_contact(m) for m in result.scalars().all()]

    async def update_contact(
        self, organization_id: str, contact_id: str, data: ContactUpdate
    ) -> ContactRead:
        async for session in self._session_factory():
            result = await session.execute(
                select(ContactModel).where(
                    ContactModel.organization_id == uuid.UUID(organization_id),
                    ContactModel.id == uuid.UUID(contact_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Contact {contact_id} not found")
            _apply(model, data.model_dump(exclude_none=True))
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def delete_contact(self, organization_id: str, contact_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(ContactModel).where(
                    ContactModel.organization_id == uuid.UUID(organization_id),
                    ContactModel.id == uuid.UUID(contact_id),
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Opportunities ───────────────────────────────────────────────────────

    async def create_opportunity(
        self, organization_id: str, data: OpportunityCreate, created_by: str | None = None
    ) -> OpportunityRead:
        async for session in self._session_factory():
            values = data.model_dump(mode="json", exclude={"close_date"})
            model = OpportunityModel(organization_id=uuid.UUID(organization_id), close_date=data.close_date)
            _apply(model, values)
            model.created_by = _opt_uuid(created_by)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_opportunity(model)

    async def get_opportunity(self, organization_id: str, opportunity_id: str) -> OpportunityRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(OpportunityModel).where(
                    OpportunityModel.organization_id == uuid.UUID(organization_id),
                    OpportunityModel.id == uuid.UUID(opportunity_id),
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_opportunity(model) if model else None

    async def list_opportunities(
        self, organization_id: str, filters: OpportunityFilter | None = None
    ) -> list[OpportunityRead]:
        filters = filters or OpportunityFilter()
        async for session in self._session_factory():
            stmt = select(OpportunityModel).where(
                OpportunityModel.organization_id == uuid.UUID(organization_id)
            )
            if filters.stage is not None:
                stmt = stmt.where(OpportunityModel.stage == filters.stage.value)
            if filters.assigned_to:
                stmt = stmt.where(OpportunityModel.assigned_to == uuid.UUID(filters.assigned_to))
            if filters.assigned_to_any:
                stmt = stmt.where(
                    OpportunityModel.assigned_to.in_([uuid.UUID(u) for u in filters.assigned_to_any])
                )
            if filters.closed_from:
                stmt = stmt.where(OpportunityModel.close_date >= filters.closed_from)
            if filters.closed_to:
                stmt = stmt.where(OpportunityModel.close_date <= filters.closed_to)
            stmt = stmt.order_by(OpportunityModel.created_at.desc()).offset(filters.offset).limit(filters.limit)
            result = await session.execute(stmt)
            return [_model_to_opportunity(m) for m in result.scalars().all()]

    async def update_opportunity(
        self, organization_id: str, opportunity_id: str, data: OpportunityUpdate
    ) -> OpportunityRead:
        async for session in self._session_factory():
            result = await session.execute(
                select(OpportunityModel).where(
                    OpportunityModel.organization_id == uuid.UUID(organization_id),
                    OpportunityModel.id == uuid.UUID(opportunity_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Opportunity {opportunity_id} not found")
            values = data.model_dump(exclude_none=True, mode="json", exclude={"close_date"})
            _apply(model, values)
            if data.close_date is not None:
                model.close_date = data.close_date
            await session.commit()
            await session.refresh(model)
            return _model_to_opportunity(model)

    async def delete_opportunity(self, organization_id: str, opportunity_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(OpportunityModel).where(
                    OpportunityModel.organization_id == uuid.UUID(organization_id),
                    OpportunityModel.id == uuid.UUID(opportunity_id),
                )
            )
            await session.commit()
            return result.rowcount > 0
