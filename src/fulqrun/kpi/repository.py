"""KPI data repository -- SQL aggregations over the BI source tables.

Every method takes organization_id as its first argument (directly or via
KPICalculationParams) and returns plain numbers or rows; the engines do
the arithmetic.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import date, datetime, time, timezone
from typing import Any

import structlog
from sqlalchemy import and_, distinct, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulqrun.crm.models import LeadModel, OpportunityModel
from src.fulqrun.kpi.models import (
    CallActivityModel,
    FormularyAccessModel,
    HealthcareProviderModel,
    PrescriptionEventModel,
    SalesTargetModel,
    SampleDistributionModel,
)
from src.fulqrun.kpi.schemas import KPICalculationParams, SalesRep
from src.fulqrun.models.organization import User

logger = structlog.get_logger(__name__)

# Call outcomes counted as effective
POSITIVE_OUTCOMES = ("positive", "successful", "commitment", "prescribed")

SALES_ROLES = ("rep", "manager")


def _uuid(value: str) -> uuid.UUID:
    return uuid.UUID(value)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _day_end(day: date) -> datetime:
    return datetime.combine(day, time.max, tzinfo=timezone.utc)


def _prescription_filters(
    params: KPICalculationParams,
    start: date | None = None,
    end: date | None = None,
    include_product: bool = True,
) -> list[Any]:
    clauses = [
        PrescriptionEventModel.organization_id == _uuid(params.organization_id),
        PrescriptionEventModel.event_date >= (start or params.period_start),
        PrescriptionEventModel.event_date <= (end or params.period_end),
    ]
    if params.territory_id:
        clauses.append(PrescriptionEventModel.territory_id == params.territory_id)
    if params.hcp_id:
        clauses.append(PrescriptionEventModel.hcp_id == _uuid(params.hcp_id))
    if include_product and params.product_id:
        clauses.append(PrescriptionEventModel.product_id == params.product_id)
    return clauses


def _call_filters(params: KPICalculationParams) -> list[Any]:
    clauses = [
        CallActivityModel.organization_id == _uuid(params.organization_id),
        CallActivityModel.call_date >= params.period_start,
        CallActivityModel.call_date <= params.period_end,
    ]
    if params.territory_id:
        clauses.append(CallActivityModel.territory_id == params.territory_id)
    if params.rep_id:
        clauses.append(CallActivityModel.rep_id == _uuid(params.rep_id))
    if params.product_id:
        clauses.append(CallActivityModel.product_id == params.product_id)
    return clauses


class KPIRepository:
    """Read-only aggregations for the pharmaceutical and salesman KPI engines.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def _scalar(self, stmt: Any) -> Any:
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    # ── Prescriptions ───────────────────────────────────────────────────────

    async def sum_prescriptions(
        self,
        params: KPICalculationParams,
        prescription_type: str | None = None,
        start: date | None = None,
        end: date | None = None,
        include_product: bool = True,
    ) -> int:
        """Summed volume; every type counts toward TRx, ``nrx`` alone is NRx."""
        clauses = _prescription_filters(params, start, end, include_product)
        if prescription_type:
            clauses.append(PrescriptionEventModel.prescription_type == prescription_type)
        stmt = select(func.coalesce(func.sum(PrescriptionEventModel.volume), 0)).where(and_(*clauses))
        return int(await self._scalar(stmt) or 0)

    # ── Calls and HCPs ──────────────────────────────────────────────────────

    async def call_stats(self, params: KPICalculationParams) -> tuple[int, int, int]:
        """(total calls, calls with a positive outcome, unique HCPs called)."""
        stmt = select(
            func.count(CallActivityModel.id),
            func.count(CallActivityModel.id).filter(CallActivityModel.outcome.in_(POSITIVE_OUTCOMES)),
            func.count(distinct(CallActivityModel.hcp_id)),
        ).where(and_(*_call_filters(params)))
        async for session in self._session_factory():
            row = (await session.execute(stmt)).one()
            return int(row[0] or 0), int(row[1] or 0), int(row[2] or 0)

    async def count_active_hcps(self, params: KPICalculationParams, kol_only: bool = False) -> int:
        stmt = select(func.count(HealthcareProviderModel.id)).where(
            HealthcareProviderModel.organization_id == _uuid(params.organization_id),
            HealthcareProviderModel.is_active.is_(True),
        )
        if params.territory_id:
            stmt = stmt.where(HealthcareProviderModel.territory_id == params.territory_id)
        if kol_only:
            stmt = stmt.where(HealthcareProviderModel.is_kol.is_(True))
        return int(await self._scalar(stmt) or 0)

    async def count_engaged_kols(self, params: KPICalculationParams) -> int:
        """Distinct KOLs with at least one call in the period."""
        stmt = (
            select(func.count(distinct(CallActivityModel.hcp_id)))
            .join(HealthcareProviderModel, HealthcareProviderModel.id == CallActivityModel.hcp_id)
            .where(and_(*_call_filters(params)), HealthcareProviderModel.is_kol.is_(True))
        )
        return int(await self._scalar(stmt) or 0)

    # ── Samples and formulary ───────────────────────────────────────────────

    async def sum_samples(self, params: KPICalculationParams) -> int:
        stmt = select(func.coalesce(func.sum(SampleDistributionModel.quantity), 0)).where(
            SampleDistributionModel.organization_id == _uuid(params.organization_id),
            SampleDistributionModel.distributed_at >= _day_start(params.period_start),
            SampleDistributionModel.distributed_at <= _day_end(params.period_end),
        )
        if params.territory_id:
            stmt = stmt.where(SampleDistributionModel.territory_id == params.territory_id)
        if params.product_id:
            stmt = stmt.where(SampleDistributionModel.product_id == params.product_id)
        if params.hcp_id:
            stmt = stmt.where(SampleDistributionModel.hcp_id == _uuid(params.hcp_id))
        return int(await self._scalar(stmt) or 0)

    async def formulary_rows(self, organization_id: str, product_id: str | None = None) -> list[dict[str, Any]]:
        """coverage_level, status and tier of every formulary record (optionally one product)."""
        stmt = select(
            FormularyAccessModel.coverage_level,
            FormularyAccessModel.status,
            FormularyAccessModel.tier,
        ).where(FormularyAccessModel.organization_id == _uuid(organization_id))
        if product_id:
            stmt = stmt.where(FormularyAccessModel.product_id == product_id)
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [
                {"coverage_level": row.coverage_level, "status": row.status, "tier": row.tier}
                for row in result.all()
            ]

    # ── Salesman data ───────────────────────────────────────────────────────

    async def open_opportunities(
        self, organization_id: str, salesman_ids: list[str], start: date, end: date, stages: list[str]
    ) -> list[dict[str, Any]]:
        """Open opportunities created in [start, end] for the given owners."""
        stmt = select(
            OpportunityModel.stage,
            OpportunityModel.value,
            OpportunityModel.created_at,
        ).where(
            OpportunityModel.organization_id == _uuid(organization_id),
            OpportunityModel.assigned_to.in_([_uuid(s) for s in salesman_ids]),
            OpportunityModel.stage.in_(stages),
            OpportunityModel.created_at >= _day_start(start),
            OpportunityModel.created_at <= _day_end(end),
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [
                {"stage": row.stage, "value": row.value or 0.0, "created_at": row.created_at}
                for row in result.all()
            ]

    async def closed_deals(
        self, organization_id: str, salesman_ids: list[str], start: date, end: date, stages: list[str]
    ) -> list[dict[str, Any]]:
        """Deals in the given closed stages with a close date in [start, end]."""
        stmt = select(OpportunityModel.stage, OpportunityModel.value).where(
            OpportunityModel.organization_id == _uuid(organization_id),
            OpportunityModel.assigned_to.in_([_uuid(s) for s in salesman_ids]),
            OpportunityModel.stage.in_(stages),
            OpportunityModel.close_date >= start,
            OpportunityModel.close_date <= end,
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [{"stage": row.stage, "value": row.value or 0.0} for row in result.all()]

    async def sum_targets(
        self, organization_id: str, salesman_ids: list[str], period_type: str, start: date, end: date
    ) -> float:
        stmt = select(func.coalesce(func.sum(SalesTargetModel.target_value), 0.0)).where(
            SalesTargetModel.organization_id == _uuid(organization_id),
            SalesTargetModel.salesman_id.in_([_uuid(s) for s in salesman_ids]),
            SalesTargetModel.period_type == period_type,
            SalesTargetModel.period_start >= start,
            SalesTargetModel.period_end <= end,
        )
        return float(await self._scalar(stmt) or 0.0)

    async def direct_reports(self, organization_id: str, manager_id: str) -> list[str]:
        stmt = select(User.id).where(
            User.organization_id == _uuid(organization_id),
            User.manager_id == _uuid(manager_id),
            User.is_active.is_(True),
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [str(user_id) for user_id in result.scalars().all()]

    async def user_name(self, organization_id: str, user_id: str) -> str | None:
        stmt = select(User.full_name, User.email).where(
            User.organization_id == _uuid(organization_id),
            User.id == _uuid(user_id),
        )
        async for session in self._session_factory():
            row = (await session.execute(stmt)).one_or_none()
            if row is None:
                return None
            return row.full_name or row.email

    # ── Sales report data ───────────────────────────────────────────────────

    async def sales_opportunities(
        self, organization_id: str, start: date, end: date, user_ids: list[str] | None = None
    ) -> list[dict[str, Any]]:
        """Opportunities created or closing in [start, end]."""
        stmt = select(
            OpportunityModel.stage,
            OpportunityModel.value,
            OpportunityModel.contact_id,
            OpportunityModel.created_at,
            OpportunityModel.close_date,
        ).where(
            OpportunityModel.organization_id == _uuid(organization_id),
            or_(
                and_(OpportunityModel.close_date >= start, OpportunityModel.close_date <= end),
                and_(
                    OpportunityModel.created_at >= _day_start(start),
                    OpportunityModel.created_at <= _day_end(end),
                ),
            ),
        )
        if user_ids is not None:
            stmt = stmt.where(OpportunityModel.assigned_to.in_([_uuid(u) for u in user_ids]))
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [
                {
                    "stage": row.stage,
                    "value": row.value or 0.0,
                    "contact_id": str(row.contact_id) if row.contact_id else None,
                    "created_at": row.created_at,
                    "close_date": row.close_date,
                }
                for row in result.all()
            ]

    async def count_leads(
        self, organization_id: str, start: date, end: date, user_ids: list[str] | None = None
    ) -> int:
        stmt = select(func.count(LeadModel.id)).where(
            LeadModel.organization_id == _uuid(organization_id),
            LeadModel.created_at >= _day_start(start),
            LeadModel.created_at <= _day_end(end),
        )
        if user_ids is not None:
            stmt = stmt.where(LeadModel.created_by.in_([_uuid(u) for u in user_ids]))
        return int(await self._scalar(stmt) or 0)

    async def sum_quota(
        self, organization_id: str, start: date, end: date, user_ids: list[str] | None = None
    ) -> float:
        """Targets of every period type overlapping [start, end]."""
        stmt = select(func.coalesce(func.sum(SalesTargetModel.target_value), 0.0)).where(
            SalesTargetModel.organization_id == _uuid(organization_id),
            SalesTargetModel.period_start <= end,
            SalesTargetModel.period_end >= start,
        )
        if user_ids is not None:
            stmt = stmt.where(SalesTargetModel.salesman_id.in_([_uuid(u) for u in user_ids]))
        return float(await self._scalar(stmt) or 0.0)

    async def count_activities(
        self, organization_id: str, start: date, end: date, user_ids: list[str] | None = None
    ) -> int:
        stmt = select(func.count(CallActivityModel.id)).where(
            CallActivityModel.organization_id == _uuid(organization_id),
            CallActivityModel.call_date >= start,
            CallActivityModel.call_date <= end,
        )
        if user_ids is not None:
            stmt = stmt.where(CallActivityModel.rep_id.in_([_uuid(u) for u in user_ids]))
        return int(await self._scalar(stmt) or 0)

    async def list_sales_reps(self, organization_id: str, territory: str | None = None) -> list[SalesRep]:
        stmt = select(User.id, User.full_name, User.email, User.territory).where(
            User.organization_id == _uuid(organization_id),
            User.is_active.is_(True),
            User.role.in_(SALES_ROLES),
        )
        if territory:
            stmt = stmt.where(User.territory == territory)
        async for session in self._session_factory():
            result = await session.execute(stmt.order_by(User.full_name))
            return [
                SalesRep(id=str(row.id), name=row.full_name or row.email, territory=row.territory)
                for row in result.all()
            ]

    # ── Export series ───────────────────────────────────────────────────────

    async def daily_prescriptions(
        self,
        organization_id: str,
        start: date,
        end: date,
        territories: list[str] | None = None,
        products: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """TRx and NRx per (day, territory, product), oldest first."""
        nrx = func.coalesce(
            func.sum(PrescriptionEventModel.volume).filter(PrescriptionEventModel.prescription_type == "nrx"), 0
        )
        stmt = (
            select(
                PrescriptionEventModel.event_date,
                PrescriptionEventModel.territory_id,
                PrescriptionEventModel.product_id,
                func.coalesce(func.sum(PrescriptionEventModel.volume), 0).label("trx"),
                nrx.label("nrx"),
            )
            .where(
                PrescriptionEventModel.organization_id == _uuid(organization_id),
                PrescriptionEventModel.event_date >= start,
                PrescriptionEventModel.event_date <= end,
            )
            .group_by(
                PrescriptionEventModel.event_date,
                PrescriptionEventModel.territory_id,
                PrescriptionEventModel.product_id,
            )
            .order_by(PrescriptionEventModel.event_date)
        )
        if territories:
            stmt = stmt.where(PrescriptionEventModel.territory_id.in_(territories))
        if products:
            stmt = stmt.where(PrescriptionEventModel.product_id.in_(products))
        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [
                {
                    "date": row.event_date,
                    "territory": row.territory_id,
                    "product": row.product_id,
                    "trx": int(row.trx or 0),
                    "nrx": int(row.nrx or 0),
                }
                for row in result.all()
            ]
