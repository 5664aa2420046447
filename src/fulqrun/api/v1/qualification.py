"""Qualification endpoints: the active MEDDPICC configuration, stateless
scoring against it, and the PEAK stage catalogue.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from src.fulqrun.api.deps import get_current_user, get_organization, get_service, require_permission
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.models.organization import User
from src.fulqrun.qualification.config import PEAK_STAGES
from src.fulqrun.qualification.scoring import MEDDPICCAssessment, peak_stage_info
from src.fulqrun.qualification.schemas import ScoreRequest

router = APIRouter(prefix="/api/v1/qualification", tags=["qualification"])

_meddpicc_config = get_service("meddpicc_config_service", "MEDDPICC configuration")
_meddpicc = get_service("meddpicc_service", "MEDDPICC scoring")


@router.get("/config")
async def get_active_config(
    _: User = Depends(require_permission("qualification.meddpicc.view")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_meddpicc_config),
) -> dict[str, Any]:
    """The organization's active MEDDPICC configuration, or the default."""
    config = await service.get_active_configuration(org.organization_id)
    return config.model_dump(mode="json")


@router.post("/score", response_model=MEDDPICCAssessment)
async def score(
    body: ScoreRequest,
    _: User = Depends(require_permission("qualification.meddpicc.view")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_meddpicc),
):
    """Score responses without storing anything."""
    return await service.score_responses(org.organization_id, body.responses)


@router.get("/peak-stages")
async def peak_stages(_: User = Depends(get_current_user)) -> list[dict[str, Any]]:
    return [{"id": stage, **peak_stage_info(stage)} for stage in PEAK_STAGES]
