"""Opportunity endpoints: CRUD, PEAK stage advancement behind stage gates,
and the opportunity's MEDDPICC questionnaire responses and score.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from src.fulqrun.api.deps import get_organization, get_service, require_permission
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.crm.schemas import (
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
    PeakStage,
)
from src.fulqrun.models.organization import User
from src.fulqrun.qualification.schemas import OpportunityQualification, ScoreRequest

router = APIRouter(prefix="/api/v1/opportunities", tags=["opportunities"])

_crm = get_service("crm_service", "CRM")
_meddpicc = get_service("meddpicc_service", "MEDDPICC scoring")


class StageUpdate(BaseModel):
    stage: PeakStage
    force: bool = False


@router.get("", response_model=list[OpportunityRead])
async def list_opportunities(
    stage: PeakStage | None = Query(None),
    assigned_to: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    _: User = Depends(require_permission("sales.opportunities.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    filters = OpportunityFilter(stage=stage, assigned_to=assigned_to, limit=limit, offset=offset)
    return await crm.list_opportunities(org.organization_id, filters)


@router.post("", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
async def create_opportunity(
    body: OpportunityCreate,
    user: User = Depends(require_permission("sales.opportunities.create")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.create_opportunity(org.organization_id, body, created_by=str(user.id))


@router.get("/{opportunity_id}", response_model=OpportunityRead)
async def get_opportunity(
    opportunity_id: str,
    _: User = Depends(require_permission("sales.opportunities.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.get_opportunity(org.organization_id, opportunity_id)


@router.patch("/{opportunity_id}", response_model=OpportunityRead)
async def update_opportunity(
    opportunity_id: str,
    body: OpportunityUpdate,
    _: User = Depends(require_permission("sales.opportunities.edit")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    """Update fields. Stage changes made here bypass the stage gates; use /stage for gated moves."""
    return await crm.update_opportunity(org.organization_id, opportunity_id, body)


@router.delete("/{opportunity_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_opportunity(
    opportunity_id: str,
    _: User = Depends(require_permission("sales.opportunities.delete")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    await crm.delete_opportunity(org.organization_id, opportunity_id)


@router.patch("/{opportunity_id}/stage", response_model=OpportunityRead)
async def advance_stage(
    opportunity_id: str,
    body: StageUpdate,
    _: User = Depends(require_permission("sales.pipeline.edit")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    """Move to another PEAK stage.

    Returns 409 with the failing gate when the MEDDPICC criteria for the
    transition are not met, unless ``force`` is set.
    """
    return await crm.advance_stage(org.organization_id, opportunity_id, body.stage, force=body.force)


@router.get("/{opportunity_id}/meddpicc", response_model=OpportunityQualification)
async def get_opportunity_meddpicc(
    opportunity_id: str,
    _: User = Depends(require_permission("qualification.meddpicc.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
    meddpicc: Any = Depends(_meddpicc),
):
    opportunity = await crm.get_opportunity(org.organization_id, opportunity_id)
    assessment = await meddpicc.get_opportunity_score(org.organization_id, opportunity_id)
    return OpportunityQualification(
        opportunity_id=opportunity_id,
        responses=opportunity.meddpicc_responses,
        assessment=assessment,
    )


@router.put("/{opportunity_id}/meddpicc", response_model=OpportunityQualification)
async def update_opportunity_meddpicc(
    opportunity_id: str,
    body: ScoreRequest,
    _: User = Depends(require_permission("qualification.meddpicc.edit")),
    org: OrganizationContext = Depends(get_organization),
    meddpicc: Any = Depends(_meddpicc),
):
    """Replace the questionnaire responses and persist the recomputed score."""
    assessment = await meddpicc.update_opportunity_score(
        org.organization_id, opportunity_id, body.responses
    )
    return OpportunityQualification(
        opportunity_id=opportunity_id,
        responses=body.responses,
        assessment=assessment,
    )
