"""Dashboard layouts and per-widget data loading.

Each widget type maps to one loader. ``load_widget_data`` runs the loaders
concurrently and reports a failing widget through ``WidgetData.error``
while the remaining widgets still load.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog

from src.fulqrun.crm.schemas import CLOSED_STAGES, OpportunityFilter, PeakStage
from src.fulqrun.crm.service import PEAK_ORDER
from src.fulqrun.dashboard.schemas import DashboardLayout, WidgetData
from src.fulqrun.dashboard.widgets import (
    DEFAULT_WIDGETS,
    WIDGET_TEMPLATES,
    DashboardWidget,
    WidgetTemplate,
    WidgetType,
)
from src.fulqrun.kpi.schemas import KPICalculationParams

logger = structlog.get_logger(__name__)

DEFAULT_PERIOD_DAYS = 30
RECENT_ACTIVITY_LIMIT = 10
MEDDPICC_TOP_LIMIT = 10
PIPELINE_LIMIT = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def meddpicc_status(score: int) -> str:
    if score >= 70:
        return "High"
    if score >= 50:
        return "Medium"
    return "Low"


def _sort_key(created_at: datetime | None) -> datetime:
    if created_at is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if created_at.tzinfo is None:
        return created_at.replace(tzinfo=timezone.utc)
    return created_at


class DashboardService:
    """Layouts per user and data for the widgets on them.

    Args:
        repository: DashboardRepository (or double).
        crm_service: CRMService for leads and opportunities.
        kpi_engine: KPIEngine for the pharmaceutical widgets.
        sales_calculator: SalesKPICalculator for quota and conversion cards.
        kpi_repository: KPIRepository for rep lists and prescription rollups.
        clock: Returns "now"; widget periods end on its date.
    """

    def __init__(
        self,
        repository: Any,
        crm_service: Any,
        kpi_engine: Any = None,
        sales_calculator: Any = None,
        kpi_repository: Any = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repository
        self._crm = crm_service
        self._kpi = kpi_engine
        self._sales = sales_calculator
        self._kpi_repo = kpi_repository
        self._clock = clock
        self._loaders: dict[WidgetType, Callable[[str, DashboardWidget, str | None], Awaitable[Any]]] = {
            WidgetType.KPI_CARD: self._kpi_card,
            WidgetType.SALES_CHART: self._sales_chart,
            WidgetType.TEAM_PERFORMANCE: self._team_performance,
            WidgetType.PIPELINE_OVERVIEW: self._pipeline_overview,
            WidgetType.RECENT_ACTIVITY: self._recent_activity,
            WidgetType.LEAD_SCORING: self._lead_scoring,
            WidgetType.REGIONAL_MAP: self._regional_map,
            WidgetType.QUOTA_TRACKER: self._quota_tracker,
            WidgetType.CONVERSION_FUNNEL: self._conversion_funnel,
            WidgetType.MEDDPICC_SCORING: self._meddpicc_scoring,
            WidgetType.PHARMA_KPI_CARD: self._pharma_kpi_card,
            WidgetType.TERRITORY_PERFORMANCE: self._territory_performance,
            WidgetType.PRODUCT_PERFORMANCE: self._product_performance,
            WidgetType.HCP_ENGAGEMENT: self._hcp_engagement,
            WidgetType.SAMPLE_DISTRIBUTION: self._sample_distribution,
            WidgetType.FORMULARY_ACCESS: self._formulary_access,
        }

    # ── Layouts ─────────────────────────────────────────────────────────

    async def get_layout(self, organization_id: str, user_id: str) -> DashboardLayout:
        layout = await self._repo.get_layout(organization_id, user_id)
        if layout is None:
            return DashboardLayout(
                user_id=user_id,
                widgets=[w.model_copy(deep=True) for w in DEFAULT_WIDGETS],
                is_default=True,
            )
        return layout

    async def save_layout(
        self, organization_id: str, user_id: str, widgets: list[DashboardWidget]
    ) -> DashboardLayout:
        return await self._repo.save_layout(organization_id, user_id, widgets)

    def templates(self) -> list[WidgetTemplate]:
        return list(WIDGET_TEMPLATES.values())

    # ── Widget data ─────────────────────────────────────────────────────

    async def load_widget_data(
        self, organization_id: str, widgets: list[DashboardWidget], user_id: str | None = None
    ) -> list[WidgetData]:
        results = await asyncio.gather(
            *(self._load(organization_id, widget, user_id) for widget in widgets),
            return_exceptions=True,
        )
        loaded = []
        for widget, result in zip(widgets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "dashboard.widget_failed",
                    organization_id=organization_id,
                    widget_id=widget.id,
                    widget_type=widget.type.value,
                    error=str(result),
                )
                loaded.append(WidgetData(widget_id=widget.id, type=widget.type, error=str(result)))
            else:
                loaded.append(WidgetData(widget_id=widget.id, type=widget.type, data=result))
        return loaded

    async def _load(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> Any:
        loader = self._loaders.get(widget.type)
        if loader is None:
            raise ValueError(f"No data loader for widget type {widget.type.value}")
        return await loader(organization_id, widget, user_id)

    def _period(self, widget: DashboardWidget) -> tuple[date, date]:
        days = int(widget.config.get("days", DEFAULT_PERIOD_DAYS))
        end = self._clock().date()
        return end - timedelta(days=days), end

    @staticmethod
    def _user_scope(widget: DashboardWidget, user_id: str | None) -> list[str] | None:
        if widget.config.get("scope") == "personal" and user_id:
            return [user_id]
        return None

    def _require_kpi_engine(self) -> Any:
        if self._kpi is None:
            raise RuntimeError("KPI engine is not configured")
        return self._kpi

    def _require_sales(self) -> Any:
        if self._sales is None:
            raise RuntimeError("Sales KPI calculator is not configured")
        return self._sales

    def _require_kpi_repository(self) -> Any:
        if self._kpi_repo is None:
            raise RuntimeError("KPI repository is not configured")
        return self._kpi_repo

    def _kpi_params(self, organization_id: str, widget: DashboardWidget) -> KPICalculationParams:
        start, end = self._period(widget)
        return KPICalculationParams(
            organization_id=organization_id,
            period_start=start,
            period_end=end,
            territory_id=widget.config.get("territory_id"),
            product_id=widget.config.get("product_id"),
            rep_id=widget.config.get("rep_id"),
        )

    async def _opportunities(self, organization_id: str, **filters: Any) -> list[Any]:
        return await self._crm.list_opportunities(
            organization_id, OpportunityFilter(limit=PIPELINE_LIMIT, **filters)
        )

    # ── CRM loaders ─────────────────────────────────────────────────────

    async def _kpi_card(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> dict[str, Any]:
        metric = widget.config.get("metric") or widget.id.removeprefix("kpi-")
        if metric == "total-leads":
            stats = await self._crm.lead_stats(organization_id)
            return {"metric": metric, "value": stats.total, "unit": "count"}
        if metric == "pipeline-value":
            opportunities = await self._opportunities(organization_id)
            value = sum(o.value for o in opportunities if o.stage not in CLOSED_STAGES)
            return {"metric": metric, "value": value, "unit": "currency"}
        if metric in ("conversion-rate", "quota-achievement"):
            start, end = self._period(widget)
            summary = await self._require_sales().calculate(
                organization_id, start, end, self._user_scope(widget, user_id)
            )
            value = summary.lead_conversion_rate if metric == "conversion-rate" else summary.quota_attainment
            return {"metric": metric, "value": value, "unit": "percentage"}
        raise ValueError(f"Unknown KPI card metric: {metric}")

    async def _sales_chart(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> list[dict]:
        start, end = self._period(widget)
        won = await self._opportunities(
            organization_id, stage=PeakStage.CLOSED_WON, closed_from=start, closed_to=end
        )
        revenue: dict[str, float] = defaultdict(float)
        for opportunity in won:
            revenue[opportunity.close_date.isoformat()] += opportunity.value
        return [{"date": day, "revenue": value} for day, value in sorted(revenue.items())]

    async def _team_performance(
        self, organization_id: str, widget: DashboardWidget, user_id: str | None
    ) -> list[dict]:
        reps = await self._require_kpi_repository().list_sales_reps(organization_id, widget.config.get("territory"))
        start, end = self._period(widget)
        sales = self._require_sales()
        summaries = await asyncio.gather(*(sales.calculate(organization_id, start, end, [r.id]) for r in reps))
        return [
            {
                "id": rep.id,
                "name": rep.name,
                "revenue": summary.revenue,
                "quota_attainment": summary.quota_attainment,
                "win_rate": summary.win_rate,
            }
            for rep, summary in zip(reps, summaries)
        ]

    async def _pipeline_overview(
        self, organization_id: str, widget: DashboardWidget, user_id: str | None
    ) -> list[dict]:
        opportunities = await self._opportunities(organization_id)
        stages = {stage: {"stage": stage, "count": 0, "value": 0.0} for stage in PEAK_ORDER}
        for opportunity in opportunities:
            bucket = stages.get(opportunity.stage)
            if bucket is None:
                continue
            bucket["count"] += 1
            bucket["value"] += opportunity.value
        return list(stages.values())

    async def _recent_activity(
        self, organization_id: str, widget: DashboardWidget, user_id: str | None
    ) -> list[dict]:
        leads, opportunities = await asyncio.gather(
            self._crm.list_leads(organization_id),
            self._opportunities(organization_id),
        )
        items = [
            {
                "kind": "lead",
                "id": lead.id,
                "title": f"{lead.first_name} {lead.last_name}",
                "status": lead.status,
                "created_at": lead.created_at,
            }
            for lead in leads
        ] + [
            {
                "kind": "opportunity",
                "id": o.id,
                "title": o.name,
                "status": o.stage,
                "created_at": o.created_at,
            }
            for o in opportunities
        ]
        items.sort(key=lambda item: _sort_key(item["created_at"]), reverse=True)
        return items[: int(widget.config.get("limit", RECENT_ACTIVITY_LIMIT))]

    async def _lead_scoring(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> dict:
        stats = await self._crm.lead_stats(organization_id)
        return {"total": stats.total, "distribution": stats.by_score}

    async def _regional_map(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> list[dict]:
        reps = await self._require_kpi_repository().list_sales_reps(organization_id)
        grouped: dict[str, list[str]] = defaultdict(list)
        for rep in reps:
            grouped[rep.territory or "Unassigned"].append(rep.id)
        names = sorted(grouped)
        start, end = self._period(widget)
        sales = self._require_sales()
        summaries = await asyncio.gather(
            *(sales.calculate(organization_id, start, end, grouped[name]) for name in names)
        )
        return [
            {"territory": name, "reps": len(grouped[name]), "revenue": s.revenue, "quota_attainment": s.quota_attainment}
            for name, s in zip(names, summaries)
        ]

    async def _quota_tracker(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> dict:
        start, end = self._period(widget)
        summary = await self._require_sales().calculate(
            organization_id, start, end, self._user_scope(widget, user_id)
        )
        return {
            "revenue": summary.revenue,
            "quota_attainment": summary.quota_attainment,
            "pipeline_coverage": summary.pipeline_coverage,
        }

    async def _conversion_funnel(
        self, organization_id: str, widget: DashboardWidget, user_id: str | None
    ) -> list[dict]:
        stats, opportunities = await asyncio.gather(
            self._crm.lead_stats(organization_id),
            self._opportunities(organization_id),
        )
        by_stage: dict[str, int] = defaultdict(int)
        for opportunity in opportunities:
            by_stage[opportunity.stage] += 1

        qualified = stats.by_status.get("qualified", 0) + stats.by_status.get("converted", 0)
        steps = [("leads", stats.total), ("qualified", qualified)]
        # An opportunity at a later stage has passed every earlier one
        remaining = len(opportunities) - by_stage[PeakStage.CLOSED_LOST.value]
        for stage in PEAK_ORDER:
            steps.append((stage, remaining))
            remaining -= by_stage[stage]
        steps.append((PeakStage.CLOSED_WON.value, by_stage[PeakStage.CLOSED_WON.value]))

        funnel = []
        previous = None
        for name, count in steps:
            rate = round(count / previous * 100, 1) if previous else None
            funnel.append({"step": name, "count": count, "conversion_rate": rate})
            previous = count
        return funnel

    async def _meddpicc_scoring(
        self, organization_id: str, widget: DashboardWidget, user_id: str | None
    ) -> list[dict]:
        opportunities = await self._opportunities(organization_id)
        open_opportunities = [o for o in opportunities if o.stage not in CLOSED_STAGES]
        open_opportunities.sort(key=lambda o: o.meddpicc_score, reverse=True)
        return [
            {
                "opportunity_id": o.id,
                "name": o.name,
                "score": o.meddpicc_score,
                "status": meddpicc_status(o.meddpicc_score),
            }
            for o in open_opportunities[: int(widget.config.get("limit", MEDDPICC_TOP_LIMIT))]
        ]

    # ── Pharmaceutical loaders ──────────────────────────────────────────

    async def _pharma_kpi_card(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> Any:
        kpi_id = widget.config.get("kpi_id")
        if not kpi_id:
            raise ValueError("Pharmaceutical KPI widget requires config.kpi_id")
        calculation = await self._require_kpi_engine().calculate(kpi_id, self._kpi_params(organization_id, widget))
        return calculation.model_dump(mode="json")

    async def _kpi_set(self, organization_id: str, widget: DashboardWidget, kpi_ids: list[str]) -> dict[str, Any]:
        engine = self._require_kpi_engine()
        params = self._kpi_params(organization_id, widget)
        calculations = await asyncio.gather(*(engine.calculate(kpi_id, params) for kpi_id in kpi_ids))
        return {c.kpi_id: c.model_dump(mode="json") for c in calculations}

    async def _hcp_engagement(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> dict:
        return await self._kpi_set(
            organization_id, widget, ["reach", "frequency", "call_effectiveness", "kol_engagement"]
        )

    async def _sample_distribution(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> dict:
        return await self._kpi_set(organization_id, widget, ["sample_to_script_ratio", "sample_efficiency"])

    async def _formulary_access(self, organization_id: str, widget: DashboardWidget, user_id: str | None) -> dict:
        kpi_ids = ["formulary_win_rate"]
        if widget.config.get("product_id"):
            kpi_ids.insert(0, "formulary_access")
        return await self._kpi_set(organization_id, widget, kpi_ids)

    async def _prescription_rollup(self, organization_id: str, widget: DashboardWidget, key: str) -> list[dict]:
        start, end = self._period(widget)
        daily = await self._require_kpi_repository().daily_prescriptions(organization_id, start, end)
        totals: dict[str, dict[str, Any]] = {}
        for row in daily:
            name = row[key] or "Unassigned"
            bucket = totals.setdefault(name, {key: name, "trx": 0, "nrx": 0})
            bucket["trx"] += row["trx"]
            bucket["nrx"] += row["nrx"]
        grand_total = sum(b["trx"] for b in totals.values())
        for bucket in totals.values():
            bucket["share"] = round(bucket["trx"] / grand_total * 100, 1) if grand_total else 0.0
        return sorted(totals.values(), key=lambda b: b["trx"], reverse=True)

    async def _territory_performance(
        self, organization_id: str, widget: DashboardWidget, user_id: str | None
    ) -> list[dict]:
        return await self._prescription_rollup(organization_id, widget, "territory")

    async def _product_performance(
        self, organization_id: str, widget: DashboardWidget, user_id: str | None
    ) -> list[dict]:
        return await self._prescription_rollup(organization_id, widget, "product")
