"""Pydantic schemas for KPI calculations, definitions and salesman metrics."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class KPICalculationParams(BaseModel):
    """Filters for one calculation run. Dates are inclusive."""

    organization_id: str
    period_start: date
    period_end: date
    territory_id: str | None = None
    product_id: str | None = None
    rep_id: str | None = None
    hcp_id: str | None = None

    def cache_suffix(self) -> str:
        return ":".join([
            self.period_start.isoformat(),
            self.period_end.isoformat(),
            self.territory_id or "-",
            self.product_id or "-",
            self.rep_id or "-",
            self.hcp_id or "-",
        ])


class KPICalculation(BaseModel):
    kpi_id: str
    kpi_name: str
    value: float
    confidence: float = Field(ge=0.0, le=1.0)
    calculated_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class KPIThresholds(BaseModel):
    critical: float
    warning: float
    target: float


class KPIDefinition(BaseModel):
    id: str
    name: str
    description: str
    formula: str
    unit: str
    category: str
    thresholds: KPIThresholds


# ── Salesman KPIs ───────────────────────────────────────────────────────────


class ViewMode(str, Enum):
    INDIVIDUAL = "individual"
    ROLLUP = "rollup"


class SalesmanKPIParams(BaseModel):
    organization_id: str
    salesman_id: str
    period_start: date
    period_end: date
    view_mode: ViewMode = ViewMode.INDIVIDUAL


class StageFunnel(BaseModel):
    stage: str
    count: int = 0
    value: float = 0.0
    avg_days_in_stage: float = 0.0
    velocity_ratio: float = 0.0


class FunnelHealth(BaseModel):
    overall_score: float = 0.0
    opportunity_count: int = 0
    total_value: float = 0.0
    velocity_score: float = 0.0
    qualified_volume_score: float = 0.0
    stages: list[StageFunnel] = Field(default_factory=list)


class WinRate(BaseModel):
    win_rate: float = 0.0
    won: int = 0
    lost: int = 0
    total_closed: int = 0


class RevenueGrowth(BaseModel):
    growth_rate: float = 0.0
    current_revenue: float = 0.0
    previous_revenue: float = 0.0
    absolute_change: float = 0.0
    previous_period_start: date
    previous_period_end: date


class DealSize(BaseModel):
    average: float = 0.0
    total_value: float = 0.0
    count: int = 0
    median: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0


class TargetPerformance(BaseModel):
    period_type: str
    percentage: float = 0.0
    actual: float = 0.0
    target: float = 0.0
    variance: float = 0.0
    on_track: bool = False
    target_set: bool = False


class PerformanceVsTarget(BaseModel):
    weekly: TargetPerformance
    monthly: TargetPerformance
    annually: TargetPerformance


class SalesmanKPIs(BaseModel):
    salesman_id: str
    salesman_name: str | None = None
    view_mode: ViewMode
    period_start: date
    period_end: date
    team_size: int = 1
    calculated_at: datetime
    funnel_health: FunnelHealth
    win_rate: WinRate
    revenue_growth: RevenueGrowth
    deal_size: DealSize
    performance_vs_target: PerformanceVsTarget


# ── Sales KPIs (report exports) ─────────────────────────────────────────────


class SalesKPISummary(BaseModel):
    """The ten sales KPIs shown on executive, rep and territory reports."""

    win_rate: float = 0.0
    revenue: float = 0.0
    revenue_growth: float = 0.0
    avg_deal_size: float = 0.0
    sales_cycle_length: float = 0.0
    lead_conversion_rate: float = 0.0
    cac: float = 0.0
    quota_attainment: float = 0.0
    clv: float = 0.0
    pipeline_coverage: float = 0.0
    activities_per_rep: float = 0.0
    activities: int = 0


class SalesRep(BaseModel):
    id: str
    name: str
    territory: str | None = None
