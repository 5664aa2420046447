"""Pydantic schemas for leads, contacts and opportunities.

Defines:
- Enums: LeadStatus, PeakStage
- Leads: LeadCreate/Update/Read, LeadFilter, LeadStats, LeadConversion
- Contacts: ContactCreate/Update/Read
- Opportunities: OpportunityCreate/Update/Read, OpportunityFilter, MEDDPICCResponse
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    CLOSED = "closed"


class PeakStage(str, Enum):
    """PEAK pipeline stages (Prospecting, Engaging, Advancing, Key decision)."""

    PROSPECTING = "prospecting"
    ENGAGING = "engaging"
    ADVANCING = "advancing"
    KEY_DECISION = "key_decision"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


CLOSED_STAGES = frozenset({PeakStage.CLOSED_WON.value, PeakStage.CLOSED_LOST.value})

# Lead fields that feed the scoring rules; changing one triggers a rescore
SCORING_FIELDS = frozenset({"email", "phone", "company", "source", "title"})


# ── Leads ───────────────────────────────────────────────────────────────────


class LeadCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    source: str | None = None
    status: LeadStatus = LeadStatus.NEW
    notes: str | None = None


class LeadUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    source: str | None = None
    status: LeadStatus | None = None
    notes: str | None = None


class LeadRead(BaseModel):
    id: str
    organization_id: str
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    source: str | None = None
    status: str = LeadStatus.NEW.value
    score: int = 0
    notes: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LeadFilter(BaseModel):
    status: LeadStatus | None = None
    search: str | None = None
    limit: int = Field(default=100, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class LeadStats(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_score: dict[str, int] = Field(default_factory=dict)


class LeadConversion(BaseModel):
    lead_id: str
    name: str | None = None
    deal_value: float | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    contact_id: str | None = None


# ── Contacts ────────────────────────────────────────────────────────────────


class ContactCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str | None = None
    phone: str | None = None
    title: str | None = None
    company: str | None = None
    notes: str | None = None
    external_id: str | None = None


class ContactUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    title: str | None = None
    company: str | None = None
    notes: str | None = None


class ContactRead(BaseModel):
    id: str
    organization_id: str
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    title: str | None = None
    company: str | None = None
    notes: str | None = None
    external_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Opportunities ───────────────────────────────────────────────────────────


class MEDDPICCResponse(BaseModel):
    """One questionnaire answer. ``points`` is set for scale/choice answers."""

    pillar_id: str
    question_id: str
    answer: Any = None
    points: float | None = Field(default=None, ge=0, le=10)


class OpportunityCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=300)
    contact_id: str | None = None
    lead_id: str | None = None
    stage: PeakStage = PeakStage.PROSPECTING
    value: float = Field(default=0.0, ge=0)
    probability: int = Field(default=0, ge=0, le=100)
    close_date: date | None = None
    assigned_to: str | None = None
    notes: str | None = None
    meddpicc_responses: list[MEDDPICCResponse] = Field(default_factory=list)
    metrics: str | None = None
    economic_buyer: str | None = None
    decision_criteria: str | None = None
    decision_process: str | None = None
    paper_process: str | None = None
    identify_pain: str | None = None
    champion: str | None = None
    competition: str | None = None


class OpportunityUpdate(BaseModel):
    name: str | None = None
    contact_id: str | None = None
    stage: PeakStage | None = None
    value: float | None = Field(default=None, ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    close_date: date | None = None
    assigned_to: str | None = None
    notes: str | None = None
    meddpicc_responses: list[MEDDPICCResponse] | None = None
    meddpicc_score: int | None = Field(default=None, ge=0, le=100)
    metrics: str | None = None
    economic_buyer: str | None = None
    decision_criteria: str | None = None
    decision_process: str | None = None
    paper_process: str | None = None
    identify_pain: str | None = None
    champion: str | None = None
    competition: str | None = None


class OpportunityRead(BaseModel):
    id: str
    organization_id: str
    name: str
    contact_id: str | None = None
    lead_id: str | None = None
    stage: str = PeakStage.PROSPECTING.value
    value: float = 0.0
    probability: int = 0
    close_date: date | None = None
    assigned_to: str | None = None
    notes: str | None = None
    meddpicc_responses: list[MEDDPICCResponse] = Field(default_factory=list)
    meddpicc_score: int = 0
    metrics: str | None = None
    economic_buyer: str | None = None
    decision_criteria: str | None = None
    decision_process: str | None = None
    paper_process: str | None = None
    identify_pain: str | None = None
    champion: str | None = None
    competition: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def legacy_fields(self) -> dict[str, str | None]:
        return {
            "metrics": self.metrics,
            "economic_buyer": self.economic_buyer,
            "decision_criteria": self.decision_criteria,
            "decision_process": self.decision_process,
            "paper_process": self.paper_process,
            "identify_pain": self.identify_pain,
            "champion": self.champion,
            "competition": self.competition,
        }


class OpportunityFilter(BaseModel):
    stage: PeakStage | None = None
    assigned_to: str | None = None
    assigned_to_any: list[str] | None = None
    closed_from: date | None = None
    closed_to: date | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
