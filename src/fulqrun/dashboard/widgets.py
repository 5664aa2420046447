"""Widget catalogue: widget types, the default layout and per-type templates.

Positions are on a 12-column grid.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WidgetType(str, Enum):
    KPI_CARD = "kpi_card"
    SALES_CHART = "sales_chart"
    TEAM_PERFORMANCE = "team_performance"
    PIPELINE_OVERVIEW = "pipeline_overview"
    RECENT_ACTIVITY = "recent_activity"
    LEAD_SCORING = "lead_scoring"
    REGIONAL_MAP = "regional_map"
    QUOTA_TRACKER = "quota_tracker"
    CONVERSION_FUNNEL = "conversion_funnel"
    MEDDPICC_SCORING = "meddpicc_scoring"
    # Pharmaceutical BI
    PHARMA_KPI_CARD = "pharma_kpi_card"
    TERRITORY_PERFORMANCE = "territory_performance"
    PRODUCT_PERFORMANCE = "product_performance"
    HCP_ENGAGEMENT = "hcp_engagement"
    SAMPLE_DISTRIBUTION = "sample_distribution"
    FORMULARY_ACCESS = "formulary_access"


class WidgetPosition(BaseModel):
    x: int = Field(ge=0, le=11)
    y: int = Field(ge=0)
    w: int = Field(ge=1, le=12)
    h: int = Field(ge=1)


class DashboardWidget(BaseModel):
    id: str = Field(..., min_length=1, max_length=100)
    type: WidgetType
    title: str
    position: WidgetPosition
    config: dict[str, Any] = Field(default_factory=dict)


class WidgetSize(BaseModel):
    w: int
    h: int


class WidgetTemplate(BaseModel):
    type: WidgetType
    name: str
    description: str
    default_size: WidgetSize


def _widget(widget_id: str, widget_type: WidgetType, title: str, x: int, y: int, w: int, h: int) -> DashboardWidget:
    return DashboardWidget(
        id=widget_id,
        type=widget_type,
        title=title,
        position=WidgetPosition(x=x, y=y, w=w, h=h),
    )


DEFAULT_WIDGETS: list[DashboardWidget] = [
    _widget("kpi-total-leads", WidgetType.KPI_CARD, "Total Leads", 0, 0, 3, 2),
    _widget("kpi-pipeline-value", WidgetType.KPI_CARD, "Pipeline Value", 3, 0, 3, 2),
    _widget("kpi-conversion-rate", WidgetType.KPI_CARD, "Conversion Rate", 6, 0, 3, 2),
    _widget("kpi-quota-achievement", WidgetType.KPI_CARD, "Quota Achievement", 9, 0, 3, 2),
    _widget("sales-chart", WidgetType.SALES_CHART, "Sales Performance", 0, 2, 6, 4),
    _widget("team-performance", WidgetType.TEAM_PERFORMANCE, "Team Performance", 6, 2, 6, 4),
    _widget("pipeline-overview", WidgetType.PIPELINE_OVERVIEW, "Pipeline Overview", 0, 6, 4, 4),
    _widget("recent-activity", WidgetType.RECENT_ACTIVITY, "Recent Activity", 4, 6, 4, 4),
    _widget("meddpicc-scoring", WidgetType.MEDDPICC_SCORING, "MEDDPICC Scoring", 8, 6, 4, 4),
]


def _template(widget_type: WidgetType, name: str, description: str, w: int, h: int) -> WidgetTemplate:
    return WidgetTemplate(type=widget_type, name=name, description=description, default_size=WidgetSize(w=w, h=h))


WIDGET_TEMPLATES: dict[WidgetType, WidgetTemplate] = {
    t.type: t
    for t in (
        _template(WidgetType.KPI_CARD, "KPI Card", "Display key performance indicators with trends", 3, 2),
        _template(WidgetType.SALES_CHART, "Sales Chart", "Visualize sales performance over time", 6, 4),
        _template(WidgetType.TEAM_PERFORMANCE, "Team Performance", "Track team member performance and quotas", 6, 4),
        _template(WidgetType.PIPELINE_OVERVIEW, "Pipeline Overview", "View sales pipeline by stage", 4, 4),
        _template(WidgetType.RECENT_ACTIVITY, "Recent Activity", "Show recent system activities", 4, 4),
        _template(WidgetType.LEAD_SCORING, "Lead Scoring", "Track lead quality and scoring", 4, 3),
        _template(WidgetType.REGIONAL_MAP, "Regional Map", "Geographic performance visualization", 6, 4),
        _template(WidgetType.QUOTA_TRACKER, "Quota Tracker", "Monitor quota achievement progress", 3, 3),
        _template(WidgetType.CONVERSION_FUNNEL, "Conversion Funnel", "Visualize conversion rates through stages", 6, 4),
        _template(WidgetType.MEDDPICC_SCORING, "MEDDPICC Scoring", "Track opportunity qualification scores", 4, 4),
        _template(
            WidgetType.PHARMA_KPI_CARD, "Pharmaceutical KPI",
            "Display pharmaceutical-specific KPIs (TRx, NRx, Market Share)", 3, 2,
        ),
        _template(
            WidgetType.TERRITORY_PERFORMANCE, "Territory Performance",
            "Territory-level pharmaceutical performance metrics", 6, 4,
        ),
        _template(
            WidgetType.PRODUCT_PERFORMANCE, "Product Performance",
            "Product-level sales and sample distribution metrics", 6, 4,
        ),
        _template(
            WidgetType.HCP_ENGAGEMENT, "HCP Engagement",
            "Healthcare provider engagement and interaction metrics", 4, 4,
        ),
        _template(
            WidgetType.SAMPLE_DISTRIBUTION, "Sample Distribution",
            "Sample distribution effectiveness and ROI analysis", 4, 4,
        ),
        _template(
            WidgetType.FORMULARY_ACCESS, "Formulary Access",
            "Formulary access metrics and payer coverage analysis", 4, 4,
        ),
    )
}
