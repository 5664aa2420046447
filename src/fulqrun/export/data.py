"""Collects the prescription series behind a dashboard export."""

from __future__ import annotations

from collections import defaultdict
from typing import Any

from src.fulqrun.export.schemas import ExportConfiguration, ExportData, ExportRow


def build_rows(daily: list[dict[str, Any]]) -> list[ExportRow]:
    """ExportRows with each row's share of that day's total TRx."""
    day_totals: dict[Any, int] = defaultdict(int)
    for row in daily:
        day_totals[row["date"]] += row["trx"]
    return [
        ExportRow(
            date=row["date"],
            trx=row["trx"],
            nrx=row["nrx"],
            market_share=row["trx"] / day_totals[row["date"]] if day_totals[row["date"]] else 0.0,
            territory=row.get("territory"),
            product=row.get("product"),
        )
        for row in daily
    ]


def build_insights(rows: list[ExportRow]) -> list[str]:
    if not rows:
        return ["No prescription activity in the selected period"]

    insights: list[str] = []
    days = sorted({r.date for r in rows})
    midpoint = days[len(days) // 2]
    first = sum(r.trx for r in rows if r.date < midpoint)
    second = sum(r.trx for r in rows if r.date >= midpoint)
    if first:
        insights.append(f"TRx volume changed {(second - first) / first * 100:+.1f}% between the first and second half of the period")

    by_territory: dict[str, int] = defaultdict(int)
    by_product: dict[str, int] = defaultdict(int)
    for r in rows:
        by_territory[r.territory or "Unassigned"] += r.trx
        by_product[r.product or "Unknown"] += r.trx
    total = sum(by_product.values())

    territory, _ = max(by_territory.items(), key=lambda item: item[1])
    insights.append(f"{territory} territory has the highest TRx volume")
    product, product_trx = max(by_product.items(), key=lambda item: item[1])
    if total:
        insights.append(f"{product} leads with {product_trx / total * 100:.1f}% of prescriptions")
    return insights


class ExportDataCollector:
    """Args:
        kpi_repository: KPIRepository (or double) with ``daily_prescriptions``.
    """

    def __init__(self, kpi_repository: Any) -> None:
        self._repo = kpi_repository

    async def collect(self, organization_id: str, config: ExportConfiguration) -> ExportData:
        daily = await self._repo.daily_prescriptions(
            organization_id,
            config.time_range.start_date,
            config.time_range.end_date,
            territories=config.filters.territories or None,
            products=config.filters.products or None,
        )
        rows = build_rows(daily)
        return ExportData(
            rows=rows,
            territories=sorted({r.territory for r in rows if r.territory}),
            products=sorted({r.product for r in rows if r.product}),
            sales_reps=list(config.filters.sales_reps),
            insights=build_insights(rows),
        )
