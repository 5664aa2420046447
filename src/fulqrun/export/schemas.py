"""Pydantic schemas for dashboard exports and report downloads."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ExportFormat(str, Enum):
    PDF = "pdf"
    EXCEL = "excel"
    CSV = "csv"
    JSON = "json"
    POWERPOINT = "powerpoint"
    PNG = "png"
    SVG = "svg"


class ExportReportType(str, Enum):
    EXECUTIVE_SUMMARY = "executive_summary"
    DETAILED_ANALYSIS = "detailed_analysis"
    COMPARISON_REPORT = "comparison_report"
    TREND_ANALYSIS = "trend_analysis"
    TERRITORY_PERFORMANCE = "territory_performance"
    PRODUCT_ANALYSIS = "product_analysis"
    SALES_ACTIVITY = "sales_activity"
    HCP_ENGAGEMENT = "hcp_engagement"
    CUSTOM = "custom"


class ExportStatus(str, Enum):
    INITIALIZING = "initializing"
    COLLECTING_DATA = "collecting_data"
    GENERATING_CHARTS = "generating_charts"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class TimeRange(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    label: str | None = None


class ExportFilters(BaseModel):
    territories: list[str] = Field(default_factory=list)
    products: list[str] = Field(default_factory=list)
    sales_reps: list[str] = Field(default_factory=list)
    hcp_types: list[str] = Field(default_factory=list)


class ExportLayout(BaseModel):
    orientation: str = Field(default="portrait", pattern="^(portrait|landscape)$")
    page_size: str = Field(default="a4", pattern="^(a4|letter|legal|tabloid)$")
    include_insights: bool = True
    include_benchmarks: bool = False
    header_text: str | None = None
    footer_text: str | None = None


class ExportSchedule(BaseModel):
    enabled: bool = False
    frequency: str = Field(default="weekly", pattern="^(daily|weekly|monthly|quarterly)$")
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    time: str = "09:00"
    recipients: list[str] = Field(default_factory=list)
    subject: str | None = None
    message: str | None = None


class ExportConfiguration(BaseModel):
    id: str | None = None
    name: str
    description: str | None = None
    format: ExportFormat
    report_type: ExportReportType = ExportReportType.EXECUTIVE_SUMMARY
    time_range: TimeRange
    filters: ExportFilters = Field(default_factory=ExportFilters)
    # None selects every metric; an empty list is rejected
    metrics: list[str] | None = None
    include_charts: bool = True
    include_tables: bool = True
    layout: ExportLayout = Field(default_factory=ExportLayout)
    schedule: ExportSchedule | None = None


class ExportValidation(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class ExportProgress(BaseModel):
    export_id: str
    status: ExportStatus
    progress: int = Field(ge=0, le=100)
    current_step: str


class DateRange(BaseModel):
    start_date: date | None = None
    end_date: date | None = None


class ExportSummary(BaseModel):
    total_records: int = 0
    date_range: DateRange
    metrics: list[str] = Field(default_factory=list)
    chart_count: int = 0
    table_count: int = 0


class ExportResult(BaseModel):
    id: str
    configuration_id: str | None = None
    status: ExportStatus
    format: ExportFormat
    file_name: str = ""
    file_size: int | None = None
    download_url: str | None = None
    error: str | None = None
    generated_at: datetime
    expires_at: datetime | None = None
    download_count: int = 0
    summary: ExportSummary


# ── Collected data ──────────────────────────────────────────────────────────


class ExportRow(BaseModel):
    date: date
    trx: int = 0
    nrx: int = 0
    market_share: float = 0.0
    territory: str | None = None
    product: str | None = None


class ExportData(BaseModel):
    rows: list[ExportRow] = Field(default_factory=list)
    territories: list[str] = Field(default_factory=list)
    products: list[str] = Field(default_factory=list)
    sales_reps: list[str] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)

    @property
    def total_records(self) -> int:
        return len(self.rows)


class StoredFile(BaseModel):
    """A generated file held for download."""

    file_name: str
    media_type: str
    content: bytes
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Report downloads ────────────────────────────────────────────────────────


class ReportType(str, Enum):
    EXECUTIVE = "executive"
    TERRITORY = "territory"
    REP = "rep"
    TRENDS = "trends"


class ReportFormat(str, Enum):
    CSV = "csv"
    EXCEL = "excel"
    PDF = "pdf"
