"""Pydantic schemas for dashboard layouts and widget data."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.fulqrun.dashboard.widgets import DashboardWidget, WidgetType


class DashboardLayout(BaseModel):
    user_id: str | None = None
    widgets: list[DashboardWidget]
    is_default: bool = False
    updated_at: datetime | None = None


class LayoutUpdate(BaseModel):
    widgets: list[DashboardWidget] = Field(..., max_length=50)


class WidgetData(BaseModel):
    """Loaded data for one widget; ``error`` replaces ``data`` when loading failed."""

    widget_id: str
    type: WidgetType
    data: Any = None
    error: str | None = None


class DashboardData(BaseModel):
    widgets: list[WidgetData]
    loaded_at: datetime
