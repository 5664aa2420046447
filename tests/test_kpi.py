"""Tests for the pharmaceutical KPI engine, salesman KPIs, the sales report
calculator and the /api/v1/kpis endpoints.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.fulqrun.api.v1.kpis import router as kpis_router
from src.fulqrun.core.errors import NotFoundError, ValidationFailedError
from src.fulqrun.kpi.definitions import KPI_DEFINITIONS
from src.fulqrun.kpi.engine import KPIEngine, formulary_win, previous_period, ratio
from src.fulqrun.kpi.sales import SalesKPICalculator, customer_lifetime_value
from src.fulqrun.kpi.salesman import SalesmanKPIEngine, median, prior_period, round2
from src.fulqrun.kpi.schemas import KPICalculationParams, SalesmanKPIParams, ViewMode

ORG = "11111111-1111-1111-1111-111111111111"
MARCH_START = date(2026, 3, 1)
MARCH_END = date(2026, 3, 31)


def _params(**overrides) -> KPICalculationParams:
    values = {"organization_id": ORG, "period_start": MARCH_START, "period_end": MARCH_END}
    values.update(overrides)
    return KPICalculationParams(**values)


class FakeKPIRepository:
    """KPIRepository double for the pharma queries."""

    def __init__(self) -> None:
        # (day, product, type, volume)
        self.prescriptions: list[tuple[date, str, str, int]] = []
        self.calls = (0, 0, 0)
        self.active_hcps = 0
        self.kols = 0
        self.engaged_kols = 0
        self.samples = 0
        self.formulary: list[dict] = []

    async def sum_prescriptions(self, params, prescription_type=None, start=None, end=None, include_product=True):
        start = start or params.period_start
        end = end or params.period_end
        return sum(
            volume for day, product, kind, volume in self.prescriptions
            if start <= day <= end
            and (prescription_type is None or kind == prescription_type)
            and (not include_product or params.product_id is None or product == params.product_id)
        )

    async def call_stats(self, params):
        return self.calls

    async def count_active_hcps(self, params, kol_only=False):
        return self.kols if kol_only else self.active_hcps

    async def count_engaged_kols(self, params):
        return self.engaged_kols

    async def sum_samples(self, params):
        return self.samples

    async def formulary_rows(self, organization_id, product_id=None):
        return self.formulary


@pytest.fixture
def kpi_repo() -> FakeKPIRepository:
    repo = FakeKPIRepository()
    repo.prescriptions = [
        (date(2026, 3, 5), "p1", "nrx", 30),
        (date(2026, 3, 10), "p1", "refill", 70),
        (date(2026, 3, 12), "p2", "nrx", 100),
        (date(2026, 2, 15), "p1", "nrx", 80),
    ]
    repo.calls = (40, 10, 8)
    repo.active_hcps = 16
    repo.kols = 5
    repo.engaged_kols = 2
    repo.samples = 300
    repo.formulary = [
        {"coverage_level": "preferred"},
        {"coverage_level": "standard", "status": "approved"},
        {"coverage_level": "not_covered", "tier": "tier1"},
        {"coverage_level": "restricted"},
    ]
    return repo


class TestHelpers:
    def test_ratio_zero_denominator(self):
        assert ratio(5, 0, 100) == 0.0
        assert ratio(1, 4, 100) == 25.0

    def test_previous_period_has_equal_length(self):
        start, end = previous_period(_params())
        assert end == date(2026, 2, 28)
        assert start == date(2026, 1, 29)
        assert prior_period(MARCH_START, MARCH_END) == (start, end)

    def test_formulary_win(self):
        assert formulary_win({"status": "approved"})
        assert formulary_win({"tier": "tier1"})
        assert not formulary_win({"coverage_level": "standard"})

    def test_definitions_cover_every_calculator(self, kpi_repo):
        assert set(KPIEngine(kpi_repo, cache_ttl=0).kpi_ids) == set(KPI_DEFINITIONS)
        assert len(KPI_DEFINITIONS) == 12


class TestKPIEngine:
    @pytest.mark.asyncio
    async def test_prescription_kpis(self, kpi_repo):
        engine = KPIEngine(kpi_repo)
        params = _params(product_id="p1")
        assert (await engine.calculate("trx", params)).value == 100
        assert (await engine.calculate("nrx", params)).value == 30
        share = await engine.calculate("market_share", params)
        assert share.value == 50.0
        assert share.metadata["market_trx"] == 200

    @pytest.mark.asyncio
    async def test_growth_against_previous_period(self, kpi_repo):
        growth = await KPIEngine(kpi_repo).calculate("growth", _params(product_id="p1"))
        assert growth.value == 25.0
        assert growth.metadata["previous_period"] == 80
        assert growth.confidence == 0.8

    @pytest.mark.asyncio
    async def test_engagement_kpis(self, kpi_repo):
        engine = KPIEngine(kpi_repo)
        params = _params()
        assert (await engine.calculate("call_effectiveness", params)).value == 25.0
        assert (await engine.calculate("reach", params)).value == 50.0
        assert (await engine.calculate("frequency", params)).value == 5.0
        assert (await engine.calculate("kol_engagement", params)).value == 40.0

    @pytest.mark.asyncio
    async def test_sample_kpis(self, kpi_repo):
        engine = KPIEngine(kpi_repo)
        params = _params()
        # 300 samples over 30 NRx for p1
        ratio_result = await engine.calculate("sample_to_script_ratio", _params(product_id="p1"))
        assert ratio_result.value == 10.0
        efficiency = await engine.calculate("sample_efficiency", params)
        assert efficiency.value == pytest.approx(200 / 300 * 100)
        assert efficiency.metadata["unit"] == "Rx per 100 samples"

    @pytest.mark.asyncio
    async def test_formulary_kpis(self, kpi_repo):
        engine = KPIEngine(kpi_repo)
        assert (await engine.calculate("formulary_access", _params(product_id="p1"))).value == 50.0
        assert (await engine.calculate("formulary_win_rate", _params())).value == 75.0

    @pytest.mark.asyncio
    async def test_zero_denominators_yield_zero(self):
        engine = KPIEngine(FakeKPIRepository())
        for kpi_id in ("call_effectiveness", "reach", "frequency", "formulary_win_rate", "growth"):
            assert (await engine.calculate(kpi_id, _params())).value == 0.0

    @pytest.mark.asyncio
    async def test_product_required(self, kpi_repo):
        engine = KPIEngine(kpi_repo)
        with pytest.raises(ValidationFailedError):
            await engine.calculate("market_share", _params())
        with pytest.raises(ValidationFailedError):
            await engine.calculate("formulary_access", _params())

    @pytest.mark.asyncio
    async def test_unknown_kpi(self, kpi_repo):
        with pytest.raises(NotFoundError):
            await KPIEngine(kpi_repo).calculate("nps", _params())

    @pytest.mark.asyncio
    async def test_calculate_all_skips_failures(self, kpi_repo):
        results = await KPIEngine(kpi_repo).calculate_all_kpis(_params())
        ids = {r.kpi_id for r in results}
        assert len(results) == 10
        assert "market_share" not in ids and "formulary_access" not in ids

    @pytest.mark.asyncio
    async def test_results_are_cached_per_filter_set(self, kpi_repo, fake_redis):
        engine = KPIEngine(kpi_repo, fake_redis, cache_ttl=60)
        first = await engine.calculate("trx", _params())
        kpi_repo.prescriptions.clear()

        cached = await engine.calculate("trx", _params())
        assert cached.value == first.value == 200
        assert any(k.startswith(f"o:{ORG}:kpi:trx:2026-03-01:2026-03-31") for k in fake_redis.strings)

        other = await engine.calculate("trx", _params(territory_id="north"))
        assert other.value == 0


# ── Salesman KPIs ───────────────────────────────────────────────────────────

NOW = datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)


class FakeSalesmanRepository:
    def __init__(self) -> None:
        self.open: list[dict] = []
        # (owner, stage, value, close_date)
        self.closed: list[tuple[str, str, float, date]] = []
        self.targets: dict[str, float] = {}
        self.reports: dict[str, list[str]] = {}
        self.names: dict[str, str] = {}

    async def open_opportunities(self, organization_id, salesman_ids, start, end, stages):
        return [o for o in self.open if o["owner"] in salesman_ids and o["stage"] in stages]

    async def closed_deals(self, organization_id, salesman_ids, start, end, stages):
        return [
            {"stage": stage, "value": value}
            for owner, stage, value, closed_on in self.closed
            if owner in salesman_ids and stage in stages and start <= closed_on <= end
        ]

    async def sum_targets(self, organization_id, salesman_ids, period_type, start, end):
        return self.targets.get(period_type, 0.0)

    async def direct_reports(self, organization_id, manager_id):
        return self.reports.get(manager_id, [])

    async def user_name(self, organization_id, user_id):
        return self.names.get(user_id)


@pytest.fixture
def salesman_repo() -> FakeSalesmanRepository:
    repo = FakeSalesmanRepository()
    repo.names = {"rep-1": "Ada Lovelace"}
    repo.open = [
        {"owner": "rep-1", "stage": "prospecting", "value": 1000.0, "created_at": NOW - timedelta(days=14)},
        {"owner": "rep-1", "stage": "engaging", "value": 5000.0, "created_at": NOW - timedelta(days=42)},
    ]
    repo.closed = [
        ("rep-1", "closed_won", 1000.0, date(2026, 3, 3)),
        ("rep-1", "closed_won", 2000.0, date(2026, 3, 9)),
        ("rep-1", "closed_won", 6000.0, date(2026, 3, 20)),
        ("rep-1", "closed_lost", 4000.0, date(2026, 3, 22)),
        ("rep-1", "closed_won", 6000.0, date(2026, 2, 10)),
    ]
    repo.targets = {"monthly": 10000.0, "annually": 9000.0}
    return repo


def _salesman_params(**overrides) -> SalesmanKPIParams:
    values = {
        "organization_id": ORG,
        "salesman_id": "rep-1",
        "period_start": MARCH_START,
        "period_end": MARCH_END,
    }
    values.update(overrides)
    return SalesmanKPIParams(**values)


class TestSalesmanKPIs:
    def test_round2_and_median(self):
        assert round2(66.6666) == 66.67
        assert round2(0.125) == 0.13
        assert median([3, 1, 2]) == 2
        assert median([4, 1, 3, 2]) == 2.5
        assert median([]) == 0.0

    @pytest.mark.asyncio
    async def test_funnel_health(self, salesman_repo):
        engine = SalesmanKPIEngine(salesman_repo, clock=lambda: NOW)
        funnel = await engine.funnel_health(ORG, ["rep-1"], MARCH_START, MARCH_END)
        # velocity (14/14*0.1 + 42/21*0.15) / 0.25 = 160%, volume 5000/10000 = 50%
        assert funnel.velocity_score == pytest.approx(160.0)
        assert funnel.qualified_volume_score == 50.0
        assert funnel.overall_score == pytest.approx(127.0)
        assert funnel.opportunity_count == 2
        engaging = next(s for s in funnel.stages if s.stage == "engaging")
        assert engaging.velocity_ratio == 2.0

    @pytest.mark.asyncio
    async def test_individual_scorecard(self, salesman_repo):
        engine = SalesmanKPIEngine(salesman_repo, clock=lambda: NOW)
        kpis = await engine.calculate(_salesman_params())

        assert kpis.salesman_name == "Ada Lovelace"
        assert kpis.team_size == 1
        assert (kpis.win_rate.won, kpis.win_rate.lost, kpis.win_rate.win_rate) == (3, 1, 75.0)
        assert kpis.deal_size.average == 3000.0
        assert kpis.deal_size.median == 2000.0
        assert (kpis.deal_size.minimum, kpis.deal_size.maximum) == (1000.0, 6000.0)
        assert kpis.revenue_growth.growth_rate == 50.0
        assert kpis.revenue_growth.previous_period_end == date(2026, 2, 28)

    @pytest.mark.asyncio
    async def test_performance_vs_target(self, salesman_repo):
        engine = SalesmanKPIEngine(salesman_repo, clock=lambda: NOW)
        targets = (await engine.calculate(_salesman_params())).performance_vs_target

        assert targets.monthly.percentage == 90.0
        assert targets.monthly.on_track is False
        assert targets.annually.percentage == 100.0
        assert targets.annually.on_track is True
        # no stored weekly target: 20% above what was achieved
        assert targets.weekly.target_set is False
        assert targets.weekly.target == pytest.approx(10800.0)
        assert targets.weekly.percentage == 83.33

    @pytest.mark.asyncio
    async def test_no_deals_is_all_zero(self):
        engine = SalesmanKPIEngine(FakeSalesmanRepository(), clock=lambda: NOW)
        kpis = await engine.calculate(_salesman_params())
        assert kpis.win_rate.win_rate == 0.0
        assert kpis.deal_size.count == 0
        assert kpis.performance_vs_target.monthly.percentage == 0.0
        assert kpis.funnel_health.overall_score == 0.0

    @pytest.mark.asyncio
    async def test_rollup_walks_reporting_tree(self, salesman_repo):
        salesman_repo.reports = {"mgr": ["rep-1", "rep-2"], "rep-1": ["rep-3"], "rep-3": ["mgr"]}
        engine = SalesmanKPIEngine(salesman_repo, clock=lambda: NOW)
        assert await engine.team_members(ORG, "mgr") == ["mgr", "rep-1", "rep-2", "rep-3"]

        kpis = await engine.calculate(_salesman_params(salesman_id="mgr", view_mode=ViewMode.ROLLUP))
        assert kpis.team_size == 4
        assert kpis.win_rate.total_closed == 4


# ── Sales report KPIs ───────────────────────────────────────────────────────


def _at(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, 9, 0, tzinfo=timezone.utc)


class FakeSalesRepository:
    def __init__(self) -> None:
        self.opportunities: list[dict] = []
        self.leads = 0
        self.quota = 0.0
        self.activities = 0

    async def sales_opportunities(self, organization_id, start, end, user_ids=None):
        return [
            o for o in self.opportunities
            if start <= o["created_at"].date() <= end or (o["close_date"] and start <= o["close_date"] <= end)
        ]

    async def count_leads(self, organization_id, start, end, user_ids=None):
        return self.leads

    async def sum_quota(self, organization_id, start, end, user_ids=None):
        return self.quota

    async def count_activities(self, organization_id, start, end, user_ids=None):
        return self.activities


@pytest.fixture
def sales_repo() -> FakeSalesRepository:
    repo = FakeSalesRepository()

    def opp(stage, value, contact, created, closes):
        return {"stage": stage, "value": value, "contact_id": contact, "created_at": _at(created), "close_date": closes}

    repo.opportunities = [
        opp("closed_won", 10000.0, "c1", date(2026, 2, 1), date(2026, 3, 10)),
        opp("closed_won", 20000.0, "c1", date(2026, 3, 1), date(2026, 3, 21)),
        opp("closed_lost", 5000.0, "c2", date(2026, 3, 2), date(2026, 3, 15)),
        opp("advancing", 30000.0, "c3", date(2026, 3, 5), date(2026, 3, 25)),
        opp("prospecting", 10000.0, None, date(2026, 3, 6), date(2026, 4, 30)),
        opp("closed_won", 15000.0, "c4", date(2026, 1, 5), date(2026, 2, 10)),
    ]
    repo.leads = 10
    repo.quota = 60000.0
    repo.activities = 62
    return repo


class TestSalesKPICalculator:
    @pytest.mark.asyncio
    async def test_summary(self, sales_repo):
        summary = await SalesKPICalculator(sales_repo).calculate(ORG, MARCH_START, MARCH_END)
        assert summary.win_rate == 66.67
        assert summary.revenue == 30000.0
        assert summary.revenue_growth == 100.0
        assert summary.avg_deal_size == 15000.0
        assert summary.sales_cycle_length == 28.5  # (37 + 20) / 2
        assert summary.lead_conversion_rate == 30.0
        assert summary.cac == 1500.0
        assert summary.quota_attainment == 50.0
        assert summary.pipeline_coverage == 0.5
        assert summary.activities_per_rep == 2.0

    @pytest.mark.asyncio
    async def test_activities_split_across_reps(self, sales_repo):
        summary = await SalesKPICalculator(sales_repo).calculate(
            ORG, MARCH_START, MARCH_END, user_ids=["rep-1", "rep-2"]
        )
        assert summary.activities_per_rep == 1.0

    @pytest.mark.asyncio
    async def test_empty_period(self):
        summary = await SalesKPICalculator(FakeSalesRepository()).calculate(ORG, MARCH_START, MARCH_END)
        assert summary.win_rate == 0.0
        assert summary.quota_attainment == 0.0
        assert summary.clv == 0.0

    def test_customer_lifetime_value(self):
        won = [
            {"value": 100.0, "contact_id": "c1", "close_date": date(2026, 1, 15)},
            {"value": 300.0, "contact_id": "c1", "close_date": date(2026, 7, 15)},
            {"value": 200.0, "contact_id": "c2", "close_date": date(2026, 3, 1)},
        ]
        # avg 200 x 1.5 purchases x 6 / 12 months
        assert customer_lifetime_value(won) == 150.0
        assert customer_lifetime_value([]) == 0.0


# ── API ─────────────────────────────────────────────────────────────────────


class TestKPIAPI:
    @pytest_asyncio.fixture
    async def client(self, make_app, kpi_repo):
        app = make_app(kpis_router, kpi_engine=KPIEngine(kpi_repo))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

    @pytest.mark.asyncio
    async def test_all_kpis_with_product(self, client):
        resp = await client.get("/api/v1/kpis", params={
            "period_start": "2026-03-01", "period_end": "2026-03-31", "product_id": "p1",
        })
        assert resp.status_code == 200
        assert len(resp.json()) == 12

    @pytest.mark.asyncio
    async def test_definitions(self, client):
        body = (await client.get("/api/v1/kpis/definitions")).json()
        assert {d["id"] for d in body} == set(KPI_DEFINITIONS)

    @pytest.mark.asyncio
    async def test_single_kpi(self, client):
        resp = await client.get("/api/v1/kpis/trx", params={"period_start": "2026-03-01", "period_end": "2026-03-31"})
        assert resp.json()["value"] == 200

    @pytest.mark.asyncio
    async def test_unknown_kpi_is_404(self, client):
        assert (await client.get("/api/v1/kpis/nps")).status_code == 404

    @pytest.mark.asyncio
    async def test_inverted_period_is_400(self, client):
        resp = await client.get("/api/v1/kpis/trx", params={"period_start": "2026-04-01", "period_end": "2026-03-01"})
        assert resp.status_code == 400
