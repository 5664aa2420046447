"""Qualification API and persistence schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.fulqrun.crm.schemas import MEDDPICCResponse
from src.fulqrun.qualification.config import MEDDPICCConfig
from src.fulqrun.qualification.scoring import MEDDPICCAssessment


class ConfigurationValidation(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    total_weight: float | None = None


class StoredConfiguration(BaseModel):
    id: str
    organization_id: str
    name: str
    description: str | None = None
    version: int
    is_active: bool
    configuration: MEDDPICCConfig
    created_by: str | None = None
    created_at: datetime | None = None


class ConfigurationHistoryEntry(BaseModel):
    id: str
    configuration_id: str | None = None
    change_type: str
    previous_version: int | None = None
    new_version: int | None = None
    change_reason: str | None = None
    changed_by: str | None = None
    changed_at: datetime | None = None


class ConfigurationSave(BaseModel):
    configuration: dict[str, Any]
    name: str | None = None
    description: str | None = None
    change_reason: str | None = None


class ConfigurationImport(BaseModel):
    data: dict[str, Any]
    name: str | None = None
    description: str | None = None


class ScoreRequest(BaseModel):
    responses: list[MEDDPICCResponse] = Field(default_factory=list)


class OpportunityQualification(BaseModel):
    opportunity_id: str
    responses: list[MEDDPICCResponse] = Field(default_factory=list)
    assessment: MEDDPICCAssessment
    cached: bool = False
