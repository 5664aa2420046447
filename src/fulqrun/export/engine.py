"""Dashboard export engine.

``export_dashboard`` validates the configuration, collects the data,
renders the requested format and stores the file for download. Progress
is reported through an optional callback as the export moves through
initializing, collecting_data, generating_charts, finalizing and then
completed or failed. Failures never raise; they come back as a failed
ExportResult carrying the error message.
"""

from __future__ import annotations

import json
import re
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from xml.sax.saxutils import escape

import structlog

from src.fulqrun.config import get_settings
from src.fulqrun.core.errors import ValidationFailedError
from src.fulqrun.core.monitoring import export_duration_seconds, exports_total
from src.fulqrun.export import writers
from src.fulqrun.export.schemas import (
    DateRange,
    ExportConfiguration,
    ExportData,
    ExportFormat,
    ExportProgress,
    ExportResult,
    ExportStatus,
    ExportSummary,
    ExportValidation,
    StoredFile,
)

logger = structlog.get_logger(__name__)

CSV_HEADERS = ["Date", "TRx", "NRx", "Market Share", "Territory", "Product"]
DEFAULT_METRICS = ["trx", "nrx", "market_share"]
METRIC_LABELS = {"trx": "TRx", "nrx": "NRx", "market_share": "Market Share"}

CHARTS_PER_EXPORT = 3
TABLES_PER_EXPORT = 2

EXTENSIONS = {
    ExportFormat.PDF: "pdf",
    ExportFormat.EXCEL: "xlsx",
    ExportFormat.CSV: "csv",
    ExportFormat.JSON: "json",
    ExportFormat.SVG: "svg",
    ExportFormat.POWERPOINT: "pptx",
    ExportFormat.PNG: "png",
}

ProgressCallback = Callable[[ExportProgress], Awaitable[None] | None]


def validate_export_config(config: ExportConfiguration) -> ExportValidation:
    errors: list[str] = []
    if not config.name.strip():
        errors.append("Export name is required")
    start, end = config.time_range.start_date, config.time_range.end_date
    if start is None or end is None:
        errors.append("Valid time range is required")
    elif start >= end:
        errors.append("Start date must be before end date")
    if config.metrics is not None and len(config.metrics) == 0:
        errors.append("At least one metric must be selected")
    return ExportValidation(is_valid=not errors, errors=errors)


def sanitize_file_name(name: str) -> str:
    """Non-alphanumerics become "_", runs collapse, ends are trimmed, lowercased."""
    cleaned = re.sub(r"[^a-zA-Z0-9]", "_", name)
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned.strip("_").lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Generators ──────────────────────────────────────────────────────────────


def _table_rows(data: ExportData) -> list[list[Any]]:
    return [
        [
            row.date.isoformat(),
            row.trx,
            row.nrx,
            f"{row.market_share * 100:.1f}%",
            row.territory or "",
            row.product or "",
        ]
        for row in data.rows
    ]


def _summary_rows(data: ExportData) -> list[list[Any]]:
    total_trx = sum(r.trx for r in data.rows)
    total_nrx = sum(r.nrx for r in data.rows)
    share = sum(r.market_share for r in data.rows) / len(data.rows) if data.rows else 0.0
    return [
        ["Total TRx", total_trx],
        ["Total NRx", total_nrx],
        ["Average Market Share", f"{share * 100:.1f}%"],
        ["Territories", len(data.territories)],
        ["Products", len(data.products)],
        ["Records", data.total_records],
    ]


def _period(config: ExportConfiguration) -> str:
    return f"{config.time_range.start_date.isoformat()} to {config.time_range.end_date.isoformat()}"


def generate_csv(config: ExportConfiguration, data: ExportData) -> bytes:
    return writers.csv_bytes(CSV_HEADERS, _table_rows(data))


def generate_json(config: ExportConfiguration, data: ExportData, export_id: str, generated_at: datetime) -> bytes:
    payload = {
        "metadata": {
            "export_id": export_id,
            "generated_at": generated_at.isoformat(),
            "configuration": config.model_dump(mode="json"),
            "version": "1.0",
        },
        "data": data.model_dump(mode="json"),
        "config": config.model_dump(mode="json"),
    }
    return json.dumps(payload, indent=2).encode("utf-8")


def generate_excel(config: ExportConfiguration, data: ExportData) -> bytes:
    sheets: list[writers.Sheet] = [("Summary", ["Metric", "Value"], _summary_rows(data))]
    if config.include_tables:
        sheets.append(("Detailed Data", CSV_HEADERS, _table_rows(data)))
    if config.layout.include_insights and data.insights:
        sheets.append(("Insights", ["Insight"], [[i] for i in data.insights]))
    return writers.excel_bytes(sheets)


def generate_pdf(config: ExportConfiguration, data: ExportData, generated_at: datetime) -> bytes:
    summary = [
        f"Period: {_period(config)}",
        f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M UTC')}",
    ]
    summary += [f"{label}: {value}" for label, value in _summary_rows(data)]
    return writers.pdf_bytes(
        title=config.layout.header_text or config.name,
        headers=CSV_HEADERS if config.include_tables else [],
        rows=_table_rows(data),
        summary=summary,
        notes=data.insights if config.layout.include_insights else (),
        orientation=config.layout.orientation,
        page_size=config.layout.page_size,
        footer=config.layout.footer_text,
    )


def _metric_totals(data: ExportData, metric: str) -> dict[str, float]:
    totals: dict[str, float] = defaultdict(float)
    counts: dict[str, int] = defaultdict(int)
    for row in data.rows:
        key = row.territory or "Unassigned"
        counts[key] += 1
        if metric == "market_share":
            totals[key] += row.market_share * 100
        else:
            totals[key] += getattr(row, metric, 0)
    if metric == "market_share":
        return {k: v / counts[k] for k, v in totals.items()}
    return dict(totals)


def generate_svg(config: ExportConfiguration, data: ExportData) -> bytes:
    """One bar chart per metric, bars per territory."""
    metrics = [m for m in (config.metrics or DEFAULT_METRICS) if m in METRIC_LABELS] or DEFAULT_METRICS
    width, panel_height, bar_area = 800, 220, 140
    height = 100 + panel_height * len(metrics)
    parts = [
        f'<svg width="{width}" height="{height}" xmlns="http://www.w3.org/2000/svg">',
        f'<rect width="{width}" height="{height}" fill="white"/>',
        f'<text x="50" y="40" font-family="Arial" font-size="24" fill="black">{escape(config.name)}</text>',
        f'<text x="50" y="66" font-family="Arial" font-size="14" fill="gray">{escape(_period(config))}</text>',
    ]
    for index, metric in enumerate(metrics):
        top = 100 + index * panel_height
        totals = _metric_totals(data, metric)
        peak = max(totals.values(), default=0) or 1
        parts.append(
            f'<text x="50" y="{top + 16}" font-family="Arial" font-size="16" fill="black">{METRIC_LABELS[metric]}</text>'
        )
        bar_width = (width - 100) / max(len(totals), 1)
        for position, (label, value) in enumerate(sorted(totals.items())):
            bar_height = value / peak * bar_area
            x = 50 + position * bar_width
            y = top + 30 + bar_area - bar_height
            parts.append(
                f'<rect x="{x + 4:.1f}" y="{y:.1f}" width="{bar_width - 8:.1f}" height="{bar_height:.1f}" fill="#3b82f6"/>'
            )
            parts.append(
                f'<text x="{x + bar_width / 2:.1f}" y="{top + 30 + bar_area + 16}" font-family="Arial" '
                f'font-size="12" text-anchor="middle" fill="#374151">{escape(label)}</text>'
            )
    parts.append("</svg>")
    return "\n".join(parts).encode("utf-8")


MEDIA_TYPES = {
    ExportFormat.PDF: writers.PDF_MEDIA_TYPE,
    ExportFormat.EXCEL: writers.EXCEL_MEDIA_TYPE,
    ExportFormat.CSV: writers.CSV_MEDIA_TYPE,
    ExportFormat.JSON: writers.JSON_MEDIA_TYPE,
    ExportFormat.SVG: writers.SVG_MEDIA_TYPE,
}


# ── Engine ──────────────────────────────────────────────────────────────────


class ExportEngine:
    """Generates dashboard exports for one organization at a time.

    Args:
        collector: ExportDataCollector (or double) with ``collect(org, config)``.
        file_store: ExportFileStore; None skips storing the file.
        clock: Returns "now" for ids, file names and expiry.
    """

    def __init__(
        self,
        collector: Any,
        file_store: Any = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = get_settings()
        self._collector = collector
        self._files = file_store
        self._clock = clock
        self._link_ttl = timedelta(days=settings.EXPORT_LINK_TTL_DAYS)
        self._download_base = settings.EXPORT_DOWNLOAD_BASE_URL.rstrip("/")

    def _render(self, config: ExportConfiguration, data: ExportData, export_id: str, now: datetime) -> bytes:
        if config.format == ExportFormat.CSV:
            return generate_csv(config, data)
        if config.format == ExportFormat.JSON:
            return generate_json(config, data, export_id, now)
        if config.format == ExportFormat.EXCEL:
            return generate_excel(config, data)
        if config.format == ExportFormat.PDF:
            return generate_pdf(config, data, now)
        if config.format == ExportFormat.SVG:
            return generate_svg(config, data)
        raise ValidationFailedError(f"Unsupported export format: {config.format.value}")

    async def export_dashboard(
        self,
        organization_id: str,
        config: ExportConfiguration,
        progress: ProgressCallback | None = None,
    ) -> ExportResult:
        started = time.perf_counter()
        now = self._clock()
        export_id = f"export-{int(now.timestamp() * 1000)}"

        async def report(status: ExportStatus, percent: int, step: str) -> None:
            if progress is None:
                return
            outcome = progress(ExportProgress(export_id=export_id, status=status, progress=percent, current_step=step))
            if outcome is not None:
                await outcome

        date_range = DateRange(start_date=config.time_range.start_date, end_date=config.time_range.end_date)
        try:
            await report(ExportStatus.INITIALIZING, 0, "Validating configuration...")
            validation = validate_export_config(config)
            if not validation.is_valid:
                raise ValidationFailedError(
                    f"Configuration validation failed: {', '.join(validation.errors)}",
                    details=validation.errors,
                )

            await report(ExportStatus.COLLECTING_DATA, 20, "Collecting pharmaceutical data...")
            data = await self._collector.collect(organization_id, config)

            await report(ExportStatus.GENERATING_CHARTS, 50, "Generating charts and visualizations...")
            content = self._render(config, data, export_id, now)
            file_name = f"{sanitize_file_name(config.name)}_{now.date().isoformat()}.{EXTENSIONS[config.format]}"

            await report(ExportStatus.FINALIZING, 90, "Finalizing export...")
            if self._files is not None:
                await self._files.save(
                    organization_id,
                    export_id,
                    StoredFile(
                        file_name=file_name,
                        media_type=MEDIA_TYPES[config.format],
                        content=content,
                        metadata={"configuration_id": config.id, "format": config.format.value},
                    ),
                    int(self._link_ttl.total_seconds()),
                )
        except Exception as e:
            message = e.message if isinstance(e, ValidationFailedError) else str(e)
            exports_total.labels(format=config.format.value, status="failed").inc()
            logger.warning(
                "export.failed",
                organization_id=organization_id,
                export_id=export_id,
                format=config.format.value,
                error=message,
            )
            await report(ExportStatus.FAILED, 100, message)
            return ExportResult(
                id=export_id,
                configuration_id=config.id,
                status=ExportStatus.FAILED,
                format=config.format,
                error=message,
                generated_at=now,
                summary=ExportSummary(date_range=date_range),
            )

        export_duration_seconds.labels(format=config.format.value).observe(time.perf_counter() - started)
        exports_total.labels(format=config.format.value, status="completed").inc()
        await report(ExportStatus.COMPLETED, 100, "Export completed successfully")
        logger.info(
            "export.completed",
            organization_id=organization_id,
            export_id=export_id,
            format=config.format.value,
            file_size=len(content),
            records=data.total_records,
        )
        return ExportResult(
            id=export_id,
            configuration_id=config.id,
            status=ExportStatus.COMPLETED,
            format=config.format,
            file_name=file_name,
            file_size=len(content),
            download_url=f"{self._download_base}/{export_id}/download",
            generated_at=now,
            expires_at=now + self._link_ttl,
            summary=ExportSummary(
                total_records=data.total_records,
                date_range=date_range,
                metrics=config.metrics or list(DEFAULT_METRICS),
                chart_count=CHARTS_PER_EXPORT if config.include_charts else 0,
                table_count=TABLES_PER_EXPORT if config.include_tables else 0,
            ),
        )

    async def get_file(self, organization_id: str, export_id: str) -> StoredFile | None:
        if self._files is None:
            return None
        return await self._files.load(organization_id, export_id)
