"""Lead endpoints: CRUD, search, stats, qualification, conversion to an
opportunity, and the organization's lead scoring rules.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.fulqrun.api.deps import get_organization, get_service, require_admin, require_permission
from src.fulqrun.core.errors import ValidationFailedError
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.crm.schemas import (
    LeadConversion,
    LeadCreate,
    LeadFilter,
    LeadRead,
    LeadStats,
    LeadStatus,
    LeadUpdate,
    OpportunityRead,
)
from src.fulqrun.crm.scoring import LeadScore, LeadScoringEngine, LeadScoringRule
from src.fulqrun.models.organization import User
from src.fulqrun.services.organization_provisioning import update_organization_settings

router = APIRouter(prefix="/api/v1/leads", tags=["leads"])

_crm = get_service("crm_service", "CRM")


# ── Request / Response Schemas ──────────────────────────────────────────────


class QualifyResponse(BaseModel):
    lead: LeadRead
    score: LeadScore


class ConvertRequest(BaseModel):
    """Opportunity details for a lead conversion; all optional."""

    name: str | None = None
    deal_value: float | None = Field(default=None, ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    contact_id: str | None = None


class ConvertResponse(BaseModel):
    lead: LeadRead
    opportunity: OpportunityRead


class ScoringRulesResponse(BaseModel):
    rules: list[LeadScoringRule]
    max_possible_score: int


class ScoringRulesUpdate(BaseModel):
    rules: list[LeadScoringRule]


def _rules_response(engine: LeadScoringEngine) -> ScoringRulesResponse:
    return ScoringRulesResponse(rules=engine.rules, max_possible_score=engine.max_possible_score())


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("", response_model=list[LeadRead])
async def list_leads(
    status_filter: LeadStatus | None = Query(None, alias="status"),
    search: str | None = Query(None, description="Matches name, email or company"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: User = Depends(require_permission("crm.leads.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    filters = LeadFilter(status=status_filter, search=search, limit=limit, offset=offset)
    return await crm.list_leads(org.organization_id, filters)


@router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
async def create_lead(
    body: LeadCreate,
    user: User = Depends(require_permission("crm.leads.create")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    """Create a lead. The score is computed from the organization's rules."""
    return await crm.create_lead(org.organization_id, body, created_by=str(user.id))


@router.get("/stats", response_model=LeadStats)
async def lead_stats(
    _: User = Depends(require_permission("crm.leads.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.lead_stats(org.organization_id)


@router.get("/scoring-rules", response_model=ScoringRulesResponse)
async def get_scoring_rules(
    _: User = Depends(require_permission("crm.leads.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return _rules_response(await crm.scoring_engine(org.organization_id))


@router.put("/scoring-rules", response_model=ScoringRulesResponse)
async def update_scoring_rules(
    body: ScoringRulesUpdate,
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
):
    """Replace the organization's scoring rules. Existing lead scores are not recomputed."""
    engine = LeadScoringEngine()
    try:
        engine.update_rules(body.rules)
    except ValueError as e:
        raise ValidationFailedError("Invalid scoring rules", {"error": str(e)})
    await update_organization_settings(
        org.organization_id,
        {"lead_scoring_rules": [r.model_dump(mode="json") for r in engine.rules]},
    )
    return _rules_response(engine)


@router.get("/{lead_id}", response_model=LeadRead)
async def get_lead(
    lead_id: str,
    _: User = Depends(require_permission("crm.leads.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.get_lead(org.organization_id, lead_id)


@router.patch("/{lead_id}", response_model=LeadRead)
async def update_lead(
    lead_id: str,
    body: LeadUpdate,
    _: User = Depends(require_permission("crm.leads.edit")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.update_lead(org.organization_id, lead_id, body)


@router.delete("/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_lead(
    lead_id: str,
    _: User = Depends(require_permission("crm.leads.delete")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    await crm.delete_lead(org.organization_id, lead_id)


@router.post("/{lead_id}/qualify", response_model=QualifyResponse)
async def qualify_lead(
    lead_id: str,
    _: User = Depends(require_permission("crm.leads.qualify")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    lead, score = await crm.qualify_lead(org.organization_id, lead_id)
    return QualifyResponse(lead=lead, score=score)


@router.post("/{lead_id}/convert", response_model=ConvertResponse, status_code=status.HTTP_201_CREATED)
async def convert_lead(
    lead_id: str,
    body: ConvertRequest,
    user: User = Depends(require_permission("crm.leads.convert")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    """Convert a lead into a prospecting-stage opportunity. 409 if already converted."""
    conversion = LeadConversion(lead_id=lead_id, **body.model_dump())
    lead, opportunity = await crm.convert_lead(org.organization_id, conversion, str(user.id))
    return ConvertResponse(lead=lead, opportunity=opportunity)
