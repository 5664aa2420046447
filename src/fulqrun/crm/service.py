"""CRM service -- lead scoring, conversion and opportunity stage progression.

Sits between the API routes and CRMRepository:
- Leads are scored on create and rescored when a scoring field changes.
- Lead statistics bucket scores into hot/warm/cool/cold bands.
- Conversion creates a prospecting opportunity and marks the lead converted.
- Stage advancement is gated by MEDDPICC stage-gate readiness unless forced.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.fulqrun.core.errors import ConflictError, NotFoundError, ValidationFailedError
from src.fulqrun.crm.schemas import (
    CLOSED_STAGES,
    SCORING_FIELDS,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    LeadConversion,
    LeadCreate,
    LeadFilter,
    LeadRead,
    LeadStats,
    LeadStatus,
    LeadUpdate,
    OpportunityCreate,
    OpportunityFilter,
    OpportunityRead,
    OpportunityUpdate,
    PeakStage,
)
from src.fulqrun.crm.scoring import LeadScore, LeadScoringEngine

logger = structlog.get_logger(__name__)

# Stats bands are stricter than the scoring engine's hot/warm/cold categories
SCORE_BANDS = (("hot", 80), ("warm", 60), ("cool", 40))

PEAK_ORDER = [
    PeakStage.PROSPECTING.value,
    PeakStage.ENGAGING.value,
    PeakStage.ADVANCING.value,
    PeakStage.KEY_DECISION.value,
]


def score_band(score: int) -> str:
    for band, threshold in SCORE_BANDS:
        if score >= threshold:
            return band
    return "cold"


class CRMService:
    """Business rules over CRMRepository.

    Args:
        repository: CRMRepository or a test double exposing the same methods.
        settings_loader: Optional async callable returning an organization's
            settings dict; used to pick up custom lead scoring rules.
        gate_checker: Optional async callable
            ``(organization_id, opportunity) -> dict[str, list[str]]`` returning
            the unmet criteria of each configured gate, keyed ``"{from}_to_{to}"``.
            A transition without a configured gate is not gated.
    """

    def __init__(
        self,
        repository: Any,
        settings_loader: Callable[[str], Awaitable[dict | None]] | None = None,
        gate_checker: Callable[[str, OpportunityRead], Awaitable[dict[str, list[str]]]] | None = None,
    ) -> None:
        self._repo = repository
        self._settings_loader = settings_loader
        self._gate_checker = gate_checker

    async def scoring_engine(self, organization_id: str) -> LeadScoringEngine:
        if self._settings_loader is None:
            return LeadScoringEngine()
        return LeadScoringEngine.from_settings(await self._settings_loader(organization_id))

    # ── Leads ───────────────────────────────────────────────────────────────

    async def score_lead(self, organization_id: str, lead: dict[str, Any]) -> LeadScore:
        engine = await self.scoring_engine(organization_id)
        return engine.calculate_score(lead)

    async def create_lead(
        self, organization_id: str, data: LeadCreate, created_by: str | None = None
    ) -> LeadRead:
        score = await self.score_lead(organization_id, data.model_dump(mode="json"))
        lead = await self._repo.create_lead(organization_id, data, score=score.percentage, created_by=created_by)
        logger.info("crm.lead_created", organization_id=organization_id, lead_id=lead.id, score=lead.score)
        return lead

    async def get_lead(self, organization_id: str, lead_id: str) -> LeadRead:
        lead = await self._repo.get_lead(organization_id, lead_id)
        if lead is None:
            raise NotFoundError("Lead not found", {"lead_id": lead_id})
        return lead

    async def list_leads(self, organization_id: str, filters: LeadFilter | None = None) -> list[LeadRead]:
        return await self._repo.list_leads(organization_id, filters or LeadFilter())

    async def update_lead(self, organization_id: str, lead_id: str, data: LeadUpdate) -> LeadRead:
        current = await self.get_lead(organization_id, lead_id)
        changes = data.model_dump(exclude_none=True, mode="json")

        score = None
        if SCORING_FIELDS & changes.keys():
            merged = {**current.model_dump(mode="json"), **changes}
            score = (await self.score_lead(organization_id, merged)).percentage

        try:
            return await self._repo.update_lead(organization_id, lead_id, data, score=score)
        except ValueError:
            raise NotFoundError("Lead not found", {"lead_id": lead_id})

    async def delete_lead(self, organization_id: str, lead_id: str) -> None:
        if not await self._repo.delete_lead(organization_id, lead_id):
            raise NotFoundError("Lead not found", {"lead_id": lead_id})

    async def lead_stats(self, organization_id: str) -> LeadStats:
        rows = await self._repo.lead_status_scores(organization_id)
        by_status = {status.value: 0 for status in LeadStatus}
        by_score = {"hot": 0, "warm": 0, "cool": 0, "cold": 0}
        for status, score in rows:
            by_status[status] = by_status.get(status, 0) + 1
            by_score[score_band(score)] += 1
        return LeadStats(total=len(rows), by_status=by_status, by_score=by_score)

    async def qualify_lead(self, organization_id: str, lead_id: str) -> tuple[LeadRead, LeadScore]:
        """Mark a lead qualified and return it with its score breakdown."""
        lead = await self.get_lead(organization_id, lead_id)
        score = await self.score_lead(organization_id, lead.model_dump(mode="json"))
        lead = await self._repo.update_lead(
            organization_id,
            lead_id,
            LeadUpdate(status=LeadStatus.QUALIFIED),
            score=score.percentage,
        )
        logger.info("crm.lead_qualified", organization_id=organization_id, lead_id=lead_id)
        return lead, score

    async def convert_lead(
        self, organization_id: str, conversion: LeadConversion, user_id: str | None = None
    ) -> tuple[LeadRead, OpportunityRead]:
        lead = await self.get_lead(organization_id, conversion.lead_id)
        if lead.status == LeadStatus.CONVERTED.value:
            raise ConflictError("Lead already converted", {"lead_id": lead.id})

        name = conversion.name or f"{lead.company or f'{lead.first_name} {lead.last_name}'} Opportunity"
        opportunity = await self._repo.create_opportunity(
            organization_id,
            OpportunityCreate(
                name=name,
                lead_id=lead.id,
                contact_id=conversion.contact_id,
                stage=PeakStage.PROSPECTING,
                value=conversion.deal_value or 0.0,
                probability=conversion.probability or 0,
                assigned_to=user_id,
            ),
            created_by=user_id,
        )
        lead = await self._repo.update_lead(
            organization_id, lead.id, LeadUpdate(status=LeadStatus.CONVERTED)
        )
        logger.info(
            "crm.lead_converted",
            organization_id=organization_id,
            lead_id=lead.id,
            opportunity_id=opportunity.id,
        )
        return lead, opportunity

    # ── Contacts ────────────────────────────────────────────────────────────

    async def create_contact(
        self, organization_id: str, data: ContactCreate, created_by: str | None = None
    ) -> ContactRead:
        return await self._repo.create_contact(organization_id, data, created_by=created_by)

    async def get_contact(self, organization_id: str, contact_id: str) -> ContactRead:
        contact = await self._repo.get_contact(organization_id, contact_id)
        if contact is None:
            raise NotFoundError("Contact not found", {"contact_id": contact_id})
        return contact

    async def find_contact_by_external_id(self, organization_id: str, external_id: str) -> ContactRead | None:
        return await self._repo.get_contact_by_external_id(organization_id, external_id)

    async def list_contacts(
        self, organization_id: str, search: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[ContactRead]:
        return await self._repo.list_contacts(organization_id, search=search, limit=limit, offset=offset)

    async def update_contact(self, organization_id: str, contact_id: str, data: ContactUpdate) -> ContactRead:
        try:
            return await self._repo.update_contact(organization_id, contact_id, data)
        except ValueError:
            raise NotFoundError("Contact not found", {"contact_id": contact_id})

    async def delete_contact(self, organization_id: str, contact_id: str) -> None:
        if not await self._repo.delete_contact(organization_id, contact_id):
            raise NotFoundError("Contact not found", {"contact_id": contact_id})

    # ── Opportunities ───────────────────────────────────────────────────────

    async def create_opportunity(
        self, organization_id: str, data: OpportunityCreate, created_by: str | None = None
    ) -> OpportunityRead:
        opportunity = await self._repo.create_opportunity(organization_id, data, created_by=created_by)
        logger.info("crm.opportunity_created", organization_id=organization_id, opportunity_id=opportunity.id)
        return opportunity

    async def get_opportunity(self, organization_id: str, opportunity_id: str) -> OpportunityRead:
        opportunity = await self._repo.get_opportunity(organization_id, opportunity_id)
        if opportunity is None:
            raise NotFoundError("Opportunity not found", {"opportunity_id": opportunity_id})
        return opportunity

    async def list_opportunities(
        self, organization_id: str, filters: OpportunityFilter | None = None
    ) -> list[OpportunityRead]:
        return await self._repo.list_opportunities(organization_id, filters or OpportunityFilter())

    async def update_opportunity(
        self, organization_id: str, opportunity_id: str, data: OpportunityUpdate
    ) -> OpportunityRead:
        try:
            return await self._repo.update_opportunity(organization_id, opportunity_id, data)
        except ValueError:
            raise NotFoundError("Opportunity not found", {"opportunity_id": opportunity_id})

    async def delete_opportunity(self, organization_id: str, opportunity_id: str) -> None:
        if not await self._repo.delete_opportunity(organization_id, opportunity_id):
            raise NotFoundError("Opportunity not found", {"opportunity_id": opportunity_id})

    async def advance_stage(
        self,
        organization_id: str,
        opportunity_id: str,
        stage: PeakStage,
        force: bool = False,
    ) -> OpportunityRead:
        """Move an opportunity to ``stage``.

        Forward moves between consecutive PEAK stages must pass the stage
        gate for that transition. Moving backwards, closing, or passing
        ``force=True`` skips the gate.

        Raises:
            NotFoundError: Unknown opportunity.
            ValidationFailedError: The opportunity is already closed, or the
                move skips one or more PEAK stages.
            ConflictError: Gate criteria not met; details list the gate and
                its unmet criteria.
        """
        opportunity = await self.get_opportunity(organization_id, opportunity_id)
        current, target = opportunity.stage, stage.value
        if current == target:
            return opportunity
        if current in CLOSED_STAGES and not force:
            raise ValidationFailedError("Opportunity is already closed", {"stage": current})

        if not force and current in PEAK_ORDER and target in PEAK_ORDER:
            step = PEAK_ORDER.index(target) - PEAK_ORDER.index(current)
            if step > 1:
                raise ValidationFailedError(
                    "Stages cannot be skipped", {"from": current, "to": target}
                )
            if step == 1 and self._gate_checker is not None:
                gate_key = f"{current}_to_{target}"
                unmet = (await self._gate_checker(organization_id, opportunity)).get(gate_key)
                if unmet:
                    raise ConflictError(
                        "Stage gate criteria not met",
                        {"gate": gate_key, "from": current, "to": target, "unmet_criteria": unmet},
                    )

        updated = await self._repo.update_opportunity(
            organization_id, opportunity_id, OpportunityUpdate(stage=stage)
        )
        logger.info(
            "crm.opportunity_stage_changed",
            organization_id=organization_id,
            opportunity_id=opportunity_id,
            from_stage=current,
            to_stage=target,
            forced=force,
        )
        return updated
