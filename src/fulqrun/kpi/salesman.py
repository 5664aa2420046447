"""Salesman KPI engine -- funnel health, win rate, growth, deal size and
performance against target for one rep or a manager's whole team.

In rollup mode the salesman's reporting tree (users linked through
``manager_id``) is included.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog

from src.fulqrun.crm.schemas import PeakStage
from src.fulqrun.crm.scoring import round_half_up
from src.fulqrun.kpi.schemas import (
    DealSize,
    FunnelHealth,
    PerformanceVsTarget,
    RevenueGrowth,
    SalesmanKPIParams,
    SalesmanKPIs,
    StageFunnel,
    TargetPerformance,
    ViewMode,
    WinRate,
)

logger = structlog.get_logger(__name__)

STAGE_WEIGHTS = {
    PeakStage.PROSPECTING.value: 0.1,
    PeakStage.ENGAGING.value: 0.15,
    PeakStage.ADVANCING.value: 0.25,
    PeakStage.KEY_DECISION.value: 0.3,
}

HISTORICAL_AVG_DAYS = {
    PeakStage.PROSPECTING.value: 14,
    PeakStage.ENGAGING.value: 21,
    PeakStage.ADVANCING.value: 28,
    PeakStage.KEY_DECISION.value: 21,
}

DEFAULT_STAGE_WEIGHT = 0.1
DEFAULT_HISTORICAL_DAYS = 30

OPEN_STAGES = list(STAGE_WEIGHTS)
QUALIFIED_STAGES = frozenset({PeakStage.ENGAGING.value})
QUALIFIED_VOLUME_CEILING = 10_000

VELOCITY_WEIGHT = 0.7
VOLUME_WEIGHT = 0.3

# Effective target when none is stored: 20% above what was achieved
DEFAULT_TARGET_UPLIFT = 1.2
ON_TRACK_PERCENTAGE = 95

TARGET_PERIODS = ("weekly", "monthly", "annually")


def round2(value: float) -> float:
    return round_half_up(value * 100) / 100


def median(values: list[float]) -> float:
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def prior_period(start: date, end: date) -> tuple[date, date]:
    duration = end - start
    prior_end = start - timedelta(days=1)
    return prior_end - duration, prior_end


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SalesmanKPIEngine:
    """Computes the salesman dashboard metrics.

    Args:
        repository: KPIRepository (or double) exposing the salesman queries.
        clock: Returns "now"; days in stage are measured against it.
    """

    def __init__(self, repository: Any, clock: Callable[[], datetime] = _utcnow) -> None:
        self._repo = repository
        self._clock = clock

    async def team_members(self, organization_id: str, salesman_id: str) -> list[str]:
        """The salesman followed by everyone below them in the reporting tree."""
        members = [salesman_id]
        seen = {salesman_id}
        frontier = [salesman_id]
        while frontier:
            reports = await asyncio.gather(
                *(self._repo.direct_reports(organization_id, manager) for manager in frontier)
            )
            frontier = []
            for user_id in (u for batch in reports for u in batch):
                if user_id not in seen:
                    seen.add(user_id)
                    members.append(user_id)
                    frontier.append(user_id)
        return members

    async def calculate(self, params: SalesmanKPIParams) -> SalesmanKPIs:
        org = params.organization_id
        if params.view_mode == ViewMode.ROLLUP:
            salesman_ids = await self.team_members(org, params.salesman_id)
        else:
            salesman_ids = [params.salesman_id]

        start, end = params.period_start, params.period_end
        (
            name,
            funnel,
            win_rate,
            growth,
            deal_size,
            weekly,
            monthly,
            annually,
        ) = await asyncio.gather(
            self._repo.user_name(org, params.salesman_id),
            self.funnel_health(org, salesman_ids, start, end),
            self.win_rate(org, salesman_ids, start, end),
            self.revenue_growth(org, salesman_ids, start, end),
            self.average_deal_size(org, salesman_ids, start, end),
            *(self.performance_vs_target(org, salesman_ids, p, start, end) for p in TARGET_PERIODS),
        )

        logger.info(
            "kpi.salesman_calculated",
            organization_id=org,
            salesman_id=params.salesman_id,
            view_mode=params.view_mode.value,
            team_size=len(salesman_ids),
        )
        return SalesmanKPIs(
            salesman_id=params.salesman_id,
            salesman_name=name,
            view_mode=params.view_mode,
            period_start=start,
            period_end=end,
            team_size=len(salesman_ids),
            calculated_at=self._clock(),
            funnel_health=funnel,
            win_rate=win_rate,
            revenue_growth=growth,
            deal_size=deal_size,
            performance_vs_target=PerformanceVsTarget(weekly=weekly, monthly=monthly, annually=annually),
        )

    async def funnel_health(
        self, organization_id: str, salesman_ids: list[str], start: date, end: date
    ) -> FunnelHealth:
        """Overall = weighted average velocity x 0.7 + qualified volume x 0.3.

        Velocity per opportunity is days in stage over the stage's
        historical average, weighted by the stage weight. Days in stage are
        counted from creation.
        """
        opportunities = await self._repo.open_opportunities(organization_id, salesman_ids, start, end, OPEN_STAGES)
        now = self._clock()

        breakdown: dict[str, dict[str, float]] = {}
        weighted_velocity = 0.0
        total_weight = 0.0
        total_value = 0.0
        qualified_value = 0.0

        for opp in opportunities:
            stage = opp["stage"] or PeakStage.PROSPECTING.value
            value = opp["value"] or 0.0
            days = math.floor((now - opp["created_at"]).total_seconds() / 86400)

            bucket = breakdown.setdefault(stage, {"count": 0, "value": 0.0, "days": 0})
            bucket["count"] += 1
            bucket["value"] += value
            bucket["days"] += days
            total_value += value
            if stage in QUALIFIED_STAGES:
                qualified_value += value

            weight = STAGE_WEIGHTS.get(stage, DEFAULT_STAGE_WEIGHT)
            weighted_velocity += days / HISTORICAL_AVG_DAYS.get(stage, DEFAULT_HISTORICAL_DAYS) * weight
            total_weight += weight

        velocity = weighted_velocity / total_weight * 100 if total_weight else 0.0
        volume = min(qualified_value / QUALIFIED_VOLUME_CEILING * 100, 100.0)

        stages = []
        for stage, bucket in breakdown.items():
            avg_days = bucket["days"] / bucket["count"]
            stages.append(StageFunnel(
                stage=stage,
                count=int(bucket["count"]),
                value=bucket["value"],
                avg_days_in_stage=avg_days,
                velocity_ratio=avg_days / HISTORICAL_AVG_DAYS.get(stage, DEFAULT_HISTORICAL_DAYS),
            ))

        return FunnelHealth(
            overall_score=round2(velocity * VELOCITY_WEIGHT + volume * VOLUME_WEIGHT),
            opportunity_count=len(opportunities),
            total_value=total_value,
            velocity_score=round2(velocity),
            qualified_volume_score=round2(volume),
            stages=stages,
        )

    async def win_rate(self, organization_id: str, salesman_ids: list[str], start: date, end: date) -> WinRate:
        deals = await self._repo.closed_deals(
            organization_id,
            salesman_ids,
            start,
            end,
            [PeakStage.CLOSED_WON.value, PeakStage.CLOSED_LOST.value],
        )
        won = sum(1 for d in deals if d["stage"] == PeakStage.CLOSED_WON.value)
        lost = sum(1 for d in deals if d["stage"] == PeakStage.CLOSED_LOST.value)
        total = len(deals)
        return WinRate(
            win_rate=round2(won / total * 100) if total else 0.0,
            won=won,
            lost=lost,
            total_closed=total,
        )

    async def _won_values(
        self, organization_id: str, salesman_ids: list[str], start: date, end: date
    ) -> list[float]:
        deals = await self._repo.closed_deals(
            organization_id, salesman_ids, start, end, [PeakStage.CLOSED_WON.value]
        )
        return [d["value"] or 0.0 for d in deals]

    async def revenue_growth(
        self, organization_id: str, salesman_ids: list[str], start: date, end: date
    ) -> RevenueGrowth:
        prior_start, prior_end = prior_period(start, end)
        current_values, prior_values = await asyncio.gather(
            self._won_values(organization_id, salesman_ids, start, end),
            self._won_values(organization_id, salesman_ids, prior_start, prior_end),
        )
        current = sum(current_values)
        previous = sum(prior_values)
        growth = (current - previous) / previous * 100 if previous > 0 else 0.0
        return RevenueGrowth(
            growth_rate=round2(growth),
            current_revenue=current,
            previous_revenue=previous,
            absolute_change=current - previous,
            previous_period_start=prior_start,
            previous_period_end=prior_end,
        )

    async def average_deal_size(
        self, organization_id: str, salesman_ids: list[str], start: date, end: date
    ) -> DealSize:
        values = await self._won_values(organization_id, salesman_ids, start, end)
        if not values:
            return DealSize()
        total = sum(values)
        return DealSize(
            average=round2(total / len(values)),
            total_value=total,
            count=len(values),
            median=round2(median(values)),
            minimum=min(values),
            maximum=max(values),
        )

    async def performance_vs_target(
        self,
        organization_id: str,
        salesman_ids: list[str],
        period_type: str,
        start: date,
        end: date,
    ) -> TargetPerformance:
        actual = sum(await self._won_values(organization_id, salesman_ids, start, end))
        target = await self._repo.sum_targets(organization_id, salesman_ids, period_type, start, end)
        effective = target if target > 0 else actual * DEFAULT_TARGET_UPLIFT
        percentage = actual / effective * 100 if effective > 0 else 0.0
        return TargetPerformance(
            period_type=period_type,
            percentage=round2(percentage),
            actual=actual,
            target=effective,
            variance=actual - effective,
            on_track=percentage >= ON_TRACK_PERCENTAGE,
            target_set=target > 0,
        )
