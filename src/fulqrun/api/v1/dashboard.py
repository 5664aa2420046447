"""Dashboard endpoints: per-user widget layouts, widget templates, widget
data, and the salesman KPI scorecard.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query

from src.fulqrun.api.deps import get_organization, get_service, require_permission
from src.fulqrun.core.errors import PermissionDeniedError, ValidationFailedError
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.dashboard.schemas import DashboardData, DashboardLayout, LayoutUpdate
from src.fulqrun.dashboard.widgets import WidgetTemplate
from src.fulqrun.kpi.schemas import SalesmanKPIParams, SalesmanKPIs, ViewMode
from src.fulqrun.models.organization import User
from src.fulqrun.rbac.defaults import ADMIN_ROLES

router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])

DEFAULT_PERIOD_DAYS = 30
# Base roles that may view other salesmen's scorecards
TEAM_VIEW_ROLES = ADMIN_ROLES | {"manager"}

_dashboard = get_service("dashboard_service", "Dashboard")
_salesman_engine = get_service("salesman_engine", "Salesman KPI engine")


@router.get("/layout", response_model=DashboardLayout)
async def get_layout(
    user: User = Depends(require_permission("dashboard.widgets.view")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_dashboard),
):
    """The user's saved layout, or the default one."""
    return await service.get_layout(org.organization_id, str(user.id))


@router.put("/layout", response_model=DashboardLayout)
async def save_layout(
    body: LayoutUpdate,
    user: User = Depends(require_permission("dashboard.widgets.customize")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_dashboard),
):
    return await service.save_layout(org.organization_id, str(user.id), body.widgets)


@router.get("/templates", response_model=list[WidgetTemplate])
async def get_templates(
    _: User = Depends(require_permission("dashboard.widgets.view")),
    service: Any = Depends(_dashboard),
):
    return service.templates()


@router.get("/data", response_model=DashboardData)
async def get_dashboard_data(
    user: User = Depends(require_permission("dashboard.widgets.view")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_dashboard),
):
    """Data for every widget on the user's layout. A failing widget carries ``error``."""
    layout = await service.get_layout(org.organization_id, str(user.id))
    widgets = await service.load_widget_data(org.organization_id, layout.widgets, user_id=str(user.id))
    return DashboardData(widgets=widgets, loaded_at=datetime.now(timezone.utc))


@router.get("/salesman-kpis", response_model=SalesmanKPIs)
async def get_salesman_kpis(
    salesman_id: str | None = Query(None, description="Defaults to the current user"),
    view_mode: ViewMode = Query(ViewMode.INDIVIDUAL),
    period_start: date | None = Query(None),
    period_end: date | None = Query(None),
    user: User = Depends(require_permission("bi.kpis.view")),
    org: OrganizationContext = Depends(get_organization),
    engine: Any = Depends(_salesman_engine),
):
    """Funnel health, win rate, revenue growth, deal size and target performance.

    ``rollup`` aggregates the salesman's whole reporting tree.
    """
    target_id = salesman_id or str(user.id)
    if target_id != str(user.id) and user.role not in TEAM_VIEW_ROLES:
        raise PermissionDeniedError("Cannot view another salesman's KPIs", {"salesman_id": target_id})

    end = period_end or datetime.now(timezone.utc).date()
    start = period_start or end - timedelta(days=DEFAULT_PERIOD_DAYS)
    if start > end:
        raise ValidationFailedError("period_start must be on or before period_end")
    return await engine.calculate(
        SalesmanKPIParams(
            organization_id=org.organization_id,
            salesman_id=target_id,
            period_start=start,
            period_end=end,
            view_mode=view_mode,
        )
    )
