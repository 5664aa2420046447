"""Tests for DashboardService layouts and widget loaders, and the
/api/v1/dashboard endpoints.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.fulqrun.api.v1.dashboard import router as dashboard_router
from src.fulqrun.crm.schemas import LeadCreate, LeadStatus, OpportunityCreate, OpportunityUpdate, PeakStage
from src.fulqrun.crm.service import CRMService
from src.fulqrun.dashboard.schemas import DashboardLayout
from src.fulqrun.dashboard.service import DashboardService, meddpicc_status
from src.fulqrun.dashboard.widgets import DEFAULT_WIDGETS, WIDGET_TEMPLATES, DashboardWidget, WidgetType
from src.fulqrun.kpi.schemas import (
    KPICalculation,
    SalesKPISummary,
    SalesmanKPIs,
    SalesRep,
)

ORG = "11111111-1111-1111-1111-111111111111"
USER = "33333333-3333-3333-3333-333333333333"
NOW = datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)


class FakeDashboardRepository:
    def __init__(self) -> None:
        self.layouts: dict[tuple[str, str], DashboardLayout] = {}

    async def get_layout(self, organization_id, user_id):
        return self.layouts.get((organization_id, user_id))

    async def save_layout(self, organization_id, user_id, widgets):
        layout = DashboardLayout(user_id=user_id, widgets=widgets, updated_at=NOW)
        self.layouts[(organization_id, user_id)] = layout
        return layout


class StubSales:
    def __init__(self) -> None:
        self.scopes: list[list[str] | None] = []

    async def calculate(self, organization_id, start, end, user_ids=None):
        self.scopes.append(user_ids)
        return SalesKPISummary(
            revenue=1000.0 * len(user_ids or [None]),
            win_rate=50.0,
            quota_attainment=80.0,
            lead_conversion_rate=12.5,
            pipeline_coverage=2.0,
        )


class StubKPIRepository:
    async def list_sales_reps(self, organization_id, territory=None):
        reps = [
            SalesRep(id="r1", name="Ada", territory="North"),
            SalesRep(id="r2", name="Grace", territory="North"),
            SalesRep(id="r3", name="Marie", territory=None),
        ]
        return [r for r in reps if territory is None or r.territory == territory]

    async def daily_prescriptions(self, organization_id, start, end, territories=None, products=None):
        return [
            {"date": date(2026, 3, 2), "territory": "North", "product": "Cardiozen", "trx": 30, "nrx": 10},
            {"date": date(2026, 3, 3), "territory": "South", "product": "Cardiozen", "trx": 60, "nrx": 20},
            {"date": date(2026, 3, 4), "territory": None, "product": "Neurofix", "trx": 10, "nrx": 5},
        ]


class StubKPIEngine:
    def __init__(self) -> None:
        self.requests: list[tuple[str, object]] = []

    async def calculate(self, kpi_id, params):
        self.requests.append((kpi_id, params))
        return KPICalculation(kpi_id=kpi_id, kpi_name=kpi_id.upper(), value=42.0, confidence=0.9, calculated_at=NOW)


def _widget(widget_type: WidgetType, widget_id: str | None = None, **config) -> DashboardWidget:
    return DashboardWidget(
        id=widget_id or widget_type.value,
        type=widget_type,
        title=widget_type.value.replace("_", " ").title(),
        position={"x": 0, "y": 0, "w": 4, "h": 4},
        config=config,
    )


@pytest.fixture
def crm(crm_repo) -> CRMService:
    return CRMService(crm_repo)


@pytest.fixture
def kpi_engine() -> StubKPIEngine:
    return StubKPIEngine()


@pytest.fixture
def sales() -> StubSales:
    return StubSales()


@pytest.fixture
def service(crm, kpi_engine, sales) -> DashboardService:
    return DashboardService(
        FakeDashboardRepository(),
        crm,
        kpi_engine=kpi_engine,
        sales_calculator=sales,
        kpi_repository=StubKPIRepository(),
        clock=lambda: NOW,
    )


async def _load_one(service, widget, user_id=None):
    [result] = await service.load_widget_data(ORG, [widget], user_id=user_id)
    assert result.error is None, result.error
    return result.data


async def _opportunity(crm, name, stage=PeakStage.PROSPECTING, value=0.0, **fields):
    return await crm.create_opportunity(ORG, OpportunityCreate(name=name, stage=stage, value=value, **fields))


class TestLayouts:
    @pytest.mark.asyncio
    async def test_default_layout(self, service):
        layout = await service.get_layout(ORG, USER)
        assert layout.is_default is True
        assert [w.id for w in layout.widgets] == [w.id for w in DEFAULT_WIDGETS]

        layout.widgets[0].config["metric"] = "changed"
        assert DEFAULT_WIDGETS[0].config == {}

    @pytest.mark.asyncio
    async def test_saved_layout_is_returned(self, service):
        await service.save_layout(ORG, USER, [_widget(WidgetType.LEAD_SCORING)])
        layout = await service.get_layout(ORG, USER)
        assert layout.is_default is False
        assert [w.type for w in layout.widgets] == [WidgetType.LEAD_SCORING]

    def test_templates_cover_every_widget_type(self, service):
        assert {t.type for t in service.templates()} == set(WidgetType)
        assert WIDGET_TEMPLATES[WidgetType.KPI_CARD].default_size.w == 3

    def test_widget_position_stays_on_grid(self):
        with pytest.raises(ValueError):
            DashboardWidget.model_validate({
                "id": "x", "type": "kpi_card", "title": "X", "position": {"x": 12, "y": 0, "w": 1, "h": 1},
            })


class TestCRMWidgets:
    @pytest.mark.asyncio
    async def test_kpi_cards(self, service, crm, sales):
        await crm.create_lead(ORG, LeadCreate(first_name="Ada", last_name="Lovelace"))
        await _opportunity(crm, "Open", value=1000.0)
        await _opportunity(crm, "Won", stage=PeakStage.CLOSED_WON, value=9000.0)

        results = await service.load_widget_data(ORG, [
            _widget(WidgetType.KPI_CARD, "kpi-total-leads"),
            _widget(WidgetType.KPI_CARD, "kpi-pipeline-value"),
            _widget(WidgetType.KPI_CARD, "kpi-conversion-rate"),
            _widget(WidgetType.KPI_CARD, "quota", metric="quota-achievement", scope="personal"),
        ], user_id=USER)
        values = {r.widget_id: r.data["value"] for r in results}
        assert values == {
            "kpi-total-leads": 1,
            "kpi-pipeline-value": 1000.0,
            "kpi-conversion-rate": 12.5,
            "quota": 80.0,
        }
        assert sales.scopes == [None, [USER]]

    @pytest.mark.asyncio
    async def test_unknown_metric_is_reported_on_the_widget(self, service):
        [result] = await service.load_widget_data(ORG, [_widget(WidgetType.KPI_CARD, metric="nps")])
        assert result.data is None
        assert result.error == "Unknown KPI card metric: nps"

    @pytest.mark.asyncio
    async def test_failing_widget_does_not_block_others(self, crm):
        bare = DashboardService(FakeDashboardRepository(), crm, clock=lambda: NOW)
        results = await bare.load_widget_data(ORG, [
            _widget(WidgetType.QUOTA_TRACKER),
            _widget(WidgetType.LEAD_SCORING),
        ])
        assert results[0].error == "Sales KPI calculator is not configured"
        assert results[1].error is None
        assert results[1].data["total"] == 0

    @pytest.mark.asyncio
    async def test_sales_chart_sums_won_revenue_per_day(self, service, crm):
        await _opportunity(crm, "A", PeakStage.CLOSED_WON, 5000.0, close_date=date(2026, 3, 10))
        await _opportunity(crm, "B", PeakStage.CLOSED_WON, 1000.0, close_date=date(2026, 3, 10))
        await _opportunity(crm, "C", PeakStage.CLOSED_WON, 7000.0, close_date=date(2026, 1, 5))
        await _opportunity(crm, "D", PeakStage.KEY_DECISION, 9000.0, close_date=date(2026, 3, 12))
        data = await _load_one(service, _widget(WidgetType.SALES_CHART))
        assert data == [{"date": "2026-03-10", "revenue": 6000.0}]

    @pytest.mark.asyncio
    async def test_pipeline_overview(self, service, crm):
        await _opportunity(crm, "A", value=100.0)
        await _opportunity(crm, "B", value=200.0)
        await _opportunity(crm, "C", PeakStage.ADVANCING, 50.0)
        await _opportunity(crm, "D", PeakStage.CLOSED_LOST, 999.0)
        data = await _load_one(service, _widget(WidgetType.PIPELINE_OVERVIEW))
        assert data == [
            {"stage": "prospecting", "count": 2, "value": 300.0},
            {"stage": "engaging", "count": 0, "value": 0.0},
            {"stage": "advancing", "count": 1, "value": 50.0},
            {"stage": "key_decision", "count": 0, "value": 0.0},
        ]

    @pytest.mark.asyncio
    async def test_recent_activity_newest_first(self, service, crm, crm_repo):
        lead = await crm.create_lead(ORG, LeadCreate(first_name="Ada", last_name="Lovelace"))
        opportunity = await _opportunity(crm, "Hospital rollout")
        older = await _opportunity(crm, "Clinic pilot")
        crm_repo.leads[lead.id] = lead.model_copy(update={"created_at": NOW - timedelta(days=1)})
        crm_repo.opportunities[opportunity.id] = opportunity.model_copy(update={"created_at": NOW})
        crm_repo.opportunities[older.id] = older.model_copy(update={"created_at": NOW - timedelta(days=3)})

        data = await _load_one(service, _widget(WidgetType.RECENT_ACTIVITY, limit=2))
        assert [(item["kind"], item["title"]) for item in data] == [
            ("opportunity", "Hospital rollout"),
            ("lead", "Ada Lovelace"),
        ]

    @pytest.mark.asyncio
    async def test_conversion_funnel(self, service, crm):
        await crm.create_lead(ORG, LeadCreate(first_name="A", last_name="One"))
        await crm.create_lead(ORG, LeadCreate(first_name="B", last_name="Two"))
        await crm.create_lead(ORG, LeadCreate(first_name="C", last_name="Three", status=LeadStatus.QUALIFIED))
        await _opportunity(crm, "P")
        await _opportunity(crm, "E", PeakStage.ENGAGING)
        await _opportunity(crm, "W", PeakStage.CLOSED_WON)
        await _opportunity(crm, "L", PeakStage.CLOSED_LOST)

        data = await _load_one(service, _widget(WidgetType.CONVERSION_FUNNEL))
        assert [(s["step"], s["count"]) for s in data] == [
            ("leads", 3),
            ("qualified", 1),
            ("prospecting", 3),
            ("engaging", 2),
            ("advancing", 1),
            ("key_decision", 1),
            ("closed_won", 1),
        ]
        assert data[0]["conversion_rate"] is None
        assert data[1]["conversion_rate"] == 33.3
        assert data[3]["conversion_rate"] == 66.7

    @pytest.mark.asyncio
    async def test_meddpicc_scoring_lists_open_deals_by_score(self, service, crm):
        for name, score, stage in (
            ("Low", 30, PeakStage.PROSPECTING),
            ("High", 85, PeakStage.ADVANCING),
            ("Mid", 55, PeakStage.ENGAGING),
            ("Closed", 99, PeakStage.CLOSED_WON),
        ):
            opportunity = await _opportunity(crm, name, stage)
            await crm.update_opportunity(ORG, opportunity.id, OpportunityUpdate(meddpicc_score=score))

        data = await _load_one(service, _widget(WidgetType.MEDDPICC_SCORING))
        assert [(d["name"], d["status"]) for d in data] == [("High", "High"), ("Mid", "Medium"), ("Low", "Low")]

    def test_meddpicc_status_thresholds(self):
        assert meddpicc_status(70) == "High"
        assert meddpicc_status(69) == "Medium"
        assert meddpicc_status(50) == "Medium"
        assert meddpicc_status(49) == "Low"

    @pytest.mark.asyncio
    async def test_team_and_regional_widgets(self, service, sales):
        team = await _load_one(service, _widget(WidgetType.TEAM_PERFORMANCE, territory="North"))
        assert [m["name"] for m in team] == ["Ada", "Grace"]

        regions = await _load_one(service, _widget(WidgetType.REGIONAL_MAP))
        assert [(r["territory"], r["reps"], r["revenue"]) for r in regions] == [
            ("North", 2, 2000.0),
            ("Unassigned", 1, 1000.0),
        ]


class TestPharmaWidgets:
    @pytest.mark.asyncio
    async def test_pharma_kpi_card_uses_widget_filters(self, service, kpi_engine):
        data = await _load_one(
            service, _widget(WidgetType.PHARMA_KPI_CARD, kpi_id="trx", product_id="p1", days=7)
        )
        assert data["value"] == 42.0
        [(kpi_id, params)] = kpi_engine.requests
        assert kpi_id == "trx"
        assert params.product_id == "p1"
        assert (params.period_start, params.period_end) == (date(2026, 3, 24), date(2026, 3, 31))

    @pytest.mark.asyncio
    async def test_pharma_kpi_card_needs_kpi_id(self, service):
        [result] = await service.load_widget_data(ORG, [_widget(WidgetType.PHARMA_KPI_CARD)])
        assert result.error == "Pharmaceutical KPI widget requires config.kpi_id"

    @pytest.mark.asyncio
    async def test_kpi_sets(self, service):
        hcp = await _load_one(service, _widget(WidgetType.HCP_ENGAGEMENT))
        assert set(hcp) == {"reach", "frequency", "call_effectiveness", "kol_engagement"}

        samples = await _load_one(service, _widget(WidgetType.SAMPLE_DISTRIBUTION))
        assert set(samples) == {"sample_to_script_ratio", "sample_efficiency"}

        assert set(await _load_one(service, _widget(WidgetType.FORMULARY_ACCESS))) == {"formulary_win_rate"}
        with_product = await _load_one(service, _widget(WidgetType.FORMULARY_ACCESS, product_id="p1"))
        assert set(with_product) == {"formulary_access", "formulary_win_rate"}

    @pytest.mark.asyncio
    async def test_territory_and_product_rollups(self, service):
        territories = await _load_one(service, _widget(WidgetType.TERRITORY_PERFORMANCE))
        assert territories == [
            {"territory": "South", "trx": 60, "nrx": 20, "share": 60.0},
            {"territory": "North", "trx": 30, "nrx": 10, "share": 30.0},
            {"territory": "Unassigned", "trx": 10, "nrx": 5, "share": 10.0},
        ]
        products = await _load_one(service, _widget(WidgetType.PRODUCT_PERFORMANCE))
        assert [(p["product"], p["share"]) for p in products] == [("Cardiozen", 90.0), ("Neurofix", 10.0)]


# ── API ─────────────────────────────────────────────────────────────────────


class StubSalesmanEngine:
    def __init__(self) -> None:
        self.params = []

    async def calculate(self, params):
        self.params.append(params)
        return SalesmanKPIs.model_validate({
            "salesman_id": params.salesman_id,
            "view_mode": params.view_mode,
            "period_start": params.period_start,
            "period_end": params.period_end,
            "calculated_at": NOW,
            "funnel_health": {},
            "win_rate": {},
            "revenue_growth": {"previous_period_start": "2026-01-01", "previous_period_end": "2026-01-31"},
            "deal_size": {},
            "performance_vs_target": {
                "weekly": {"period_type": "weekly"},
                "monthly": {"period_type": "monthly"},
                "annually": {"period_type": "annually"},
            },
        })


class TestDashboardAPI:
    @pytest.fixture
    def salesman_engine(self) -> StubSalesmanEngine:
        return StubSalesmanEngine()

    @pytest.fixture
    def app_factory(self, make_app, service, salesman_engine):
        def build(user=None, **state):
            state.setdefault("dashboard_service", service)
            state.setdefault("salesman_engine", salesman_engine)
            return make_app(dashboard_router, user=user, **state)

        return build

    @pytest_asyncio.fixture
    async def client(self, app_factory):
        async with AsyncClient(transport=ASGITransport(app=app_factory()), base_url="http://test") as ac:
            yield ac

    @pytest.mark.asyncio
    async def test_layout_round_trip(self, client):
        assert (await client.get("/api/v1/dashboard/layout")).json()["is_default"] is True

        widget = _widget(WidgetType.LEAD_SCORING).model_dump(mode="json")
        resp = await client.put("/api/v1/dashboard/layout", json={"widgets": [widget]})
        assert resp.status_code == 200
        body = (await client.get("/api/v1/dashboard/layout")).json()
        assert body["is_default"] is False
        assert body["widgets"][0]["type"] == "lead_scoring"

    @pytest.mark.asyncio
    async def test_data_for_default_layout(self, client):
        body = (await client.get("/api/v1/dashboard/data")).json()
        assert [w["widget_id"] for w in body["widgets"]] == [w.id for w in DEFAULT_WIDGETS]
        assert all(w["error"] is None for w in body["widgets"])

    @pytest.mark.asyncio
    async def test_templates(self, client):
        assert len((await client.get("/api/v1/dashboard/templates")).json()) == len(WidgetType)

    @pytest.mark.asyncio
    async def test_own_salesman_kpis(self, app_factory, user_factory, salesman_engine):
        app = app_factory(user=user_factory("rep"))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get("/api/v1/dashboard/salesman-kpis", params={
                "period_start": "2026-03-01", "period_end": "2026-03-31", "view_mode": "rollup",
            })
        assert resp.status_code == 200
        [params] = salesman_engine.params
        assert params.salesman_id == USER
        assert params.view_mode.value == "rollup"

    @pytest.mark.asyncio
    async def test_rep_cannot_view_other_salesman(self, app_factory, user_factory):
        app = app_factory(user=user_factory("rep"))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get("/api/v1/dashboard/salesman-kpis", params={"salesman_id": "someone-else"})
        assert resp.status_code == 403
        assert resp.json()["details"] == {"salesman_id": "someone-else"}

    @pytest.mark.asyncio
    async def test_manager_can_view_team_member(self, app_factory, user_factory, salesman_engine):
        app = app_factory(user=user_factory("manager"))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get("/api/v1/dashboard/salesman-kpis", params={"salesman_id": "rep-7"})
        assert resp.status_code == 200
        assert salesman_engine.params[0].salesman_id == "rep-7"
        assert salesman_engine.params[0].period_end - salesman_engine.params[0].period_start == timedelta(days=30)

    @pytest.mark.asyncio
    async def test_inverted_period_is_400(self, client):
        resp = await client.get("/api/v1/dashboard/salesman-kpis", params={
            "period_start": "2026-04-01", "period_end": "2026-03-01",
        })
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_503_without_dashboard_service(self, app_factory):
        app = app_factory(dashboard_service=None)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get("/api/v1/dashboard/layout")
        assert resp.status_code == 503
        assert resp.json()["error"] == "Dashboard not initialized"
