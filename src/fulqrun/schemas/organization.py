"""Pydantic schemas for organization provisioning endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

SLUG_PATTERN = r"^[a-z0-9][a-z0-9-]*[a-z0-9]$"


class OrganizationCreate(BaseModel):
    """Request schema for provisioning a new organization."""

    slug: str = Field(
        ...,
        min_length=3,
        max_length=50,
        pattern=SLUG_PATTERN,
        description="Unique organization identifier (lowercase alphanumeric + hyphens)",
        examples=["acme-pharma", "northwind"],
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Human-readable organization name",
        examples=["Acme Pharma", "Northwind"],
    )


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    name: str
    schema_name: str
    is_active: bool = True
    created_at: datetime | None = None
