"""Sales KPIs for report exports.

Computes the ten headline sales metrics for an organization, one rep, or
any set of reps over a date range:

- win rate, revenue growth, average deal size, sales cycle length
- lead conversion rate, customer acquisition cost, quota attainment
- customer lifetime value, pipeline coverage, activities per rep
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import date
from typing import Any

from src.fulqrun.crm.schemas import CLOSED_STAGES, PeakStage
from src.fulqrun.kpi.salesman import prior_period, round2
from src.fulqrun.kpi.schemas import SalesKPISummary

# Share of won deal value attributed to acquiring the customer
ACQUISITION_COST_RATE = 0.1

CONVERTED_STAGES = frozenset({
    PeakStage.ENGAGING.value,
    PeakStage.ADVANCING.value,
    PeakStage.KEY_DECISION.value,
    PeakStage.CLOSED_WON.value,
    PeakStage.CLOSED_LOST.value,
})


def _in_range(day: date | None, start: date, end: date) -> bool:
    return day is not None and start <= day <= end


def _created_on(opp: dict[str, Any]) -> date | None:
    created = opp.get("created_at")
    return created.date() if created is not None else None


def _months_between(first: date, last: date) -> int:
    return (last.year - first.year) * 12 + last.month - first.month


def customer_lifetime_value(won: list[dict[str, Any]]) -> float:
    """avg purchase x avg purchases per customer x (avg lifespan months / 12).

    Customers are grouped by contact; lifespan counts only customers with
    more than one purchase.
    """
    if not won:
        return 0.0
    by_customer: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for opp in won:
        if opp.get("contact_id"):
            by_customer[opp["contact_id"]].append(opp)
    if not by_customer:
        return 0.0

    avg_purchase = sum(o["value"] for o in won) / len(won)
    frequency = sum(len(v) for v in by_customer.values()) / len(by_customer)
    spans = [
        _months_between(min(o["close_date"] for o in v), max(o["close_date"] for o in v))
        for v in by_customer.values()
        if len(v) > 1
    ]
    lifespan = sum(spans) / len(spans) if spans else 0.0
    return avg_purchase * frequency * (lifespan / 12)


class SalesKPICalculator:
    """Args:
        repository: KPIRepository (or double) exposing the sales report queries.
    """

    def __init__(self, repository: Any) -> None:
        self._repo = repository

    async def calculate(
        self,
        organization_id: str,
        start: date,
        end: date,
        user_ids: list[str] | None = None,
    ) -> SalesKPISummary:
        prior_start, prior_end = prior_period(start, end)
        current, prior, leads, quota, activities = await asyncio.gather(
            self._repo.sales_opportunities(organization_id, start, end, user_ids),
            self._repo.sales_opportunities(organization_id, prior_start, prior_end, user_ids),
            self._repo.count_leads(organization_id, start, end, user_ids),
            self._repo.sum_quota(organization_id, start, end, user_ids),
            self._repo.count_activities(organization_id, start, end, user_ids),
        )

        closed = [o for o in current if o["stage"] in CLOSED_STAGES and _in_range(o["close_date"], start, end)]
        won = [o for o in closed if o["stage"] == PeakStage.CLOSED_WON.value]
        prior_won = [
            o for o in prior
            if o["stage"] == PeakStage.CLOSED_WON.value and _in_range(o["close_date"], prior_start, prior_end)
        ]
        revenue = sum(o["value"] for o in won)
        prior_revenue = sum(o["value"] for o in prior_won)

        cycle_days = [
            (o["close_date"] - _created_on(o)).days for o in won if _created_on(o) is not None
        ]
        converted = sum(
            1 for o in current
            if o["stage"] in CONVERTED_STAGES and _in_range(_created_on(o), start, end)
        )
        pipeline = sum(
            o["value"] for o in current
            if o["stage"] not in CLOSED_STAGES and _in_range(o["close_date"], start, end)
        )
        period_days = (end - start).days + 1
        rep_count = len(user_ids) if user_ids else 1

        return SalesKPISummary(
            win_rate=round2(len(won) / len(closed) * 100) if closed else 0.0,
            revenue=revenue,
            revenue_growth=round2((revenue - prior_revenue) / prior_revenue * 100) if prior_revenue > 0 else 0.0,
            avg_deal_size=round2(revenue / len(won)) if won else 0.0,
            sales_cycle_length=round2(sum(cycle_days) / len(cycle_days)) if cycle_days else 0.0,
            lead_conversion_rate=round2(converted / leads * 100) if leads else 0.0,
            cac=round2(revenue * ACQUISITION_COST_RATE / len(won)) if won else 0.0,
            quota_attainment=round2(revenue / quota * 100) if quota > 0 else 0.0,
            clv=round2(customer_lifetime_value(won)),
            pipeline_coverage=round2(pipeline / quota) if quota > 0 else 0.0,
            activities_per_rep=round2(activities / period_days / rep_count) if period_days > 0 else 0.0,
            activities=activities,
        )
