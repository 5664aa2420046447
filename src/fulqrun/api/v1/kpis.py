"""Pharmaceutical KPI endpoints and downloadable sales performance reports."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from src.fulqrun.api.deps import get_organization, get_service, require_permission
from src.fulqrun.core.errors import ValidationFailedError
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.export.schemas import ReportFormat, ReportType
from src.fulqrun.kpi.definitions import get_kpi_definitions
from src.fulqrun.kpi.schemas import KPICalculation, KPICalculationParams, KPIDefinition
from src.fulqrun.models.organization import User

router = APIRouter(prefix="/api/v1/kpis", tags=["kpis"])

DEFAULT_PERIOD_DAYS = 30

_kpi_engine = get_service("kpi_engine", "KPI engine")
_report_builder = get_service("report_builder", "Report builder")


def _params(
    organization_id: str,
    period_start: date | None,
    period_end: date | None,
    territory_id: str | None,
    product_id: str | None,
    rep_id: str | None,
    hcp_id: str | None,
) -> KPICalculationParams:
    end = period_end or datetime.now(timezone.utc).date()
    start = period_start or end - timedelta(days=DEFAULT_PERIOD_DAYS)
    if start > end:
        raise ValidationFailedError("period_start must be on or before period_end")
    return KPICalculationParams(
        organization_id=organization_id,
        period_start=start,
        period_end=end,
        territory_id=territory_id,
        product_id=product_id,
        rep_id=rep_id,
        hcp_id=hcp_id,
    )


@router.get("", response_model=list[KPICalculation])
async def calculate_all(
    period_start: date | None = Query(None),
    period_end: date | None = Query(None),
    territory_id: str | None = Query(None),
    product_id: str | None = Query(None),
    rep_id: str | None = Query(None),
    hcp_id: str | None = Query(None),
    _: User = Depends(require_permission("bi.kpis.view")),
    org: OrganizationContext = Depends(get_organization),
    engine: Any = Depends(_kpi_engine),
):
    """Every KPI for the period (default: the last 30 days)."""
    params = _params(org.organization_id, period_start, period_end, territory_id, product_id, rep_id, hcp_id)
    return await engine.calculate_all_kpis(params)


@router.get("/definitions", response_model=list[KPIDefinition])
async def definitions(_: User = Depends(require_permission("bi.kpis.view"))):
    return get_kpi_definitions()


@router.get("/reports/export")
async def export_report(
    report_type: ReportType = Query(ReportType.EXECUTIVE),
    format: ReportFormat = Query(ReportFormat.CSV),
    period_start: date | None = Query(None),
    period_end: date | None = Query(None),
    user_id: str | None = Query(None, description="Limit trends to one rep"),
    territory: str | None = Query(None),
    _: User = Depends(require_permission("sales.reports")),
    org: OrganizationContext = Depends(get_organization),
    builder: Any = Depends(_report_builder),
):
    """Download an executive, territory, rep or trends report as CSV, Excel or PDF."""
    content, media_type, file_name = await builder.export(
        org.organization_id,
        report_type,
        format,
        start=period_start,
        end=period_end,
        user_id=user_id,
        territory=territory,
    )
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.get("/{kpi_id}", response_model=KPICalculation)
async def calculate_one(
    kpi_id: str,
    period_start: date | None = Query(None),
    period_end: date | None = Query(None),
    territory_id: str | None = Query(None),
    product_id: str | None = Query(None),
    rep_id: str | None = Query(None),
    hcp_id: str | None = Query(None),
    _: User = Depends(require_permission("bi.kpis.view")),
    org: OrganizationContext = Depends(get_organization),
    engine: Any = Depends(_kpi_engine),
):
    """One KPI by id; 404 for an unknown id."""
    params = _params(org.organization_id, period_start, period_end, territory_id, product_id, rep_id, hcp_id)
    return await engine.calculate(kpi_id, params)
