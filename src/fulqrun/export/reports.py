"""Downloadable sales reports (executive, territory, rep, trends) as CSV,
Excel or PDF.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog

from src.fulqrun.core.monitoring import exports_total
from src.fulqrun.export import writers
from src.fulqrun.export.schemas import ReportFormat, ReportType
from src.fulqrun.kpi.schemas import SalesKPISummary

logger = structlog.get_logger(__name__)

DEFAULT_PERIOD_DAYS = 30
TREND_BUCKET_DAYS = 7

EXTENSIONS = {ReportFormat.CSV: "csv", ReportFormat.EXCEL: "xlsx", ReportFormat.PDF: "pdf"}
MEDIA_TYPES = {
    ReportFormat.CSV: writers.CSV_MEDIA_TYPE,
    ReportFormat.EXCEL: writers.EXCEL_MEDIA_TYPE,
    ReportFormat.PDF: writers.PDF_MEDIA_TYPE,
}

EXECUTIVE_HEADERS = ["Metric", "Current Value", "Previous Value", "Change %", "Target", "Performance Tier"]
TERRITORY_HEADERS = ["Territory", "Revenue", "Win Rate", "Quota Attainment", "Rep Count", "Growth Rate"]
REP_HEADERS = [
    "Rep Name",
    "Territory",
    "Revenue",
    "Win Rate",
    "Quota Attainment",
    "Activities/Day",
    "Avg Deal Size",
    "Sales Cycle Length",
    "Performance Tier",
]
TRENDS_HEADERS = ["Period", "Revenue", "Win Rate", "Quota Attainment", "Activities"]

# (label, SalesKPISummary field, target)
EXECUTIVE_METRICS = [
    ("Win Rate", "win_rate", "25%"),
    ("Revenue Growth", "revenue_growth", "15%"),
    ("Average Deal Size", "avg_deal_size", "$150,000"),
    ("Sales Cycle Length", "sales_cycle_length", "60 days"),
    ("Lead Conversion Rate", "lead_conversion_rate", "3%"),
    ("Customer Acquisition Cost", "cac", "$10,000"),
    ("Quota Attainment", "quota_attainment", "100%"),
    ("Customer Lifetime Value", "clv", "$100,000"),
    ("Pipeline Coverage", "pipeline_coverage", "3x"),
    ("Activities per Rep", "activities_per_rep", "15"),
]


def performance_tier(attainment: float) -> str:
    if attainment >= 120:
        return "excellent"
    if attainment >= 100:
        return "good"
    if attainment >= 80:
        return "average"
    return "below_average"


def default_period(today: date) -> tuple[date, date]:
    return today - timedelta(days=DEFAULT_PERIOD_DAYS), today


def report_file_name(report_type: ReportType, fmt: ReportFormat, today: date) -> str:
    return f"{report_type.value}-report-{today.isoformat()}.{EXTENSIONS[fmt]}"


def _change(current: float, previous: float) -> str:
    if not previous:
        return ""
    return f"{(current - previous) / previous * 100:.1f}"


def executive_rows(current: SalesKPISummary, previous: SalesKPISummary) -> list[list[Any]]:
    rows = []
    for label, field, target in EXECUTIVE_METRICS:
        value = getattr(current, field)
        prior = getattr(previous, field)
        tier = performance_tier(value) if field == "quota_attainment" else ""
        rows.append([label, value, prior, _change(value, prior), target, tier])
    return rows


class ReportBuilder:
    """Builds report tables from the sales KPI calculator.

    Args:
        calculator: SalesKPICalculator.
        repository: KPIRepository (or double) for the list of reps.
    """

    def __init__(self, calculator: Any, repository: Any) -> None:
        self._calculator = calculator
        self._repo = repository

    async def executive(
        self, organization_id: str, start: date, end: date, user_ids: list[str] | None
    ) -> list[list[Any]]:
        previous_end = start - timedelta(days=1)
        previous_start = previous_end - (end - start)
        current, previous = await asyncio.gather(
            self._calculator.calculate(organization_id, start, end, user_ids),
            self._calculator.calculate(organization_id, previous_start, previous_end, user_ids),
        )
        return executive_rows(current, previous)

    async def reps(
        self, organization_id: str, start: date, end: date, territory: str | None
    ) -> list[list[Any]]:
        reps = await self._repo.list_sales_reps(organization_id, territory)
        summaries = await asyncio.gather(
            *(self._calculator.calculate(organization_id, start, end, [rep.id]) for rep in reps)
        )
        return [
            [
                rep.name,
                rep.territory or "Unassigned",
                s.revenue,
                s.win_rate,
                s.quota_attainment,
                s.activities_per_rep,
                s.avg_deal_size,
                s.sales_cycle_length,
                performance_tier(s.quota_attainment),
            ]
            for rep, s in zip(reps, summaries)
        ]

    async def territories(
        self, organization_id: str, start: date, end: date, territory: str | None
    ) -> list[list[Any]]:
        reps = await self._repo.list_sales_reps(organization_id, territory)
        grouped: dict[str, list[str]] = defaultdict(list)
        for rep in reps:
            grouped[rep.territory or "Unassigned"].append(rep.id)
        names = sorted(grouped)
        summaries = await asyncio.gather(
            *(self._calculator.calculate(organization_id, start, end, grouped[name]) for name in names)
        )
        return [
            [name, s.revenue, s.win_rate, s.quota_attainment, len(grouped[name]), s.revenue_growth]
            for name, s in zip(names, summaries)
        ]

    async def trends(
        self, organization_id: str, start: date, end: date, user_ids: list[str] | None
    ) -> list[list[Any]]:
        buckets: list[tuple[date, date]] = []
        cursor = start
        while cursor <= end:
            bucket_end = min(cursor + timedelta(days=TREND_BUCKET_DAYS - 1), end)
            buckets.append((cursor, bucket_end))
            cursor = bucket_end + timedelta(days=1)
        summaries = await asyncio.gather(
            *(self._calculator.calculate(organization_id, s, e, user_ids) for s, e in buckets)
        )
        return [
            [s.isoformat(), summary.revenue, summary.win_rate, summary.quota_attainment, summary.activities]
            for (s, _), summary in zip(buckets, summaries)
        ]

    async def build(
        self,
        organization_id: str,
        report_type: ReportType,
        start: date,
        end: date,
        user_id: str | None = None,
        territory: str | None = None,
    ) -> tuple[list[str], list[list[Any]]]:
        user_ids = [user_id] if user_id else None
        if report_type == ReportType.EXECUTIVE:
            return EXECUTIVE_HEADERS, await self.executive(organization_id, start, end, user_ids)
        if report_type == ReportType.TERRITORY:
            return TERRITORY_HEADERS, await self.territories(organization_id, start, end, territory)
        if report_type == ReportType.REP:
            return REP_HEADERS, await self.reps(organization_id, start, end, territory)
        return TRENDS_HEADERS, await self.trends(organization_id, start, end, user_ids)

    async def export(
        self,
        organization_id: str,
        report_type: ReportType,
        fmt: ReportFormat,
        start: date | None = None,
        end: date | None = None,
        user_id: str | None = None,
        territory: str | None = None,
    ) -> tuple[bytes, str, str]:
        """Render a report. Returns (content, media type, file name)."""
        today = datetime.now(timezone.utc).date()
        default_start, default_end = default_period(today)
        start = start or default_start
        end = end or default_end

        headers, rows = await self.build(organization_id, report_type, start, end, user_id, territory)
        title = f"{report_type.value.capitalize()} Report"
        if fmt == ReportFormat.CSV:
            content = writers.csv_bytes(headers, rows)
        elif fmt == ReportFormat.EXCEL:
            content = writers.excel_bytes([(title, headers, rows)])
        else:
            content = writers.pdf_bytes(
                title=title,
                headers=headers,
                rows=rows,
                summary=[f"Period: {start.isoformat()} to {end.isoformat()}", f"Generated on {today.isoformat()}"],
                orientation="landscape" if len(headers) > 6 else "portrait",
                footer="This report was generated by FulQrun Sales Performance Management",
            )

        exports_total.labels(format=fmt.value, status="completed").inc()
        logger.info(
            "export.report_generated",
            organization_id=organization_id,
            report_type=report_type.value,
            format=fmt.value,
            rows=len(rows),
        )
        return content, MEDIA_TYPES[fmt], report_file_name(report_type, fmt, today)
