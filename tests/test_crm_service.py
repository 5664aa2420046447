"""Tests for CRMService: lead scoring on write, conversion, stats and stage gates."""

from __future__ import annotations

import pytest

from src.fulqrun.core.errors import ConflictError, NotFoundError, ValidationFailedError
from src.fulqrun.crm.schemas import (
    ContactCreate,
    ContactUpdate,
    LeadConversion,
    LeadCreate,
    LeadFilter,
    LeadStatus,
    LeadUpdate,
    OpportunityCreate,
    PeakStage,
)
from src.fulqrun.crm.service import CRMService, score_band

ORG = "11111111-1111-1111-1111-111111111111"
OTHER_ORG = "22222222-2222-2222-2222-222222222222"


def _lead(**overrides) -> LeadCreate:
    values = {"first_name": "Ada", "last_name": "Lovelace"}
    values.update(overrides)
    return LeadCreate(**values)


class GateRecorder:
    """gate_checker double returning fixed unmet criteria and recording calls."""

    def __init__(self, unmet: dict[str, list[str]] | None = None) -> None:
        self.unmet = unmet or {}
        self.calls: list[str] = []

    async def __call__(self, organization_id, opportunity):
        self.calls.append(opportunity.id)
        return self.unmet


@pytest.fixture
def service(crm_repo):
    return CRMService(crm_repo)


class TestLeads:
    @pytest.mark.asyncio
    async def test_create_lead_stores_score_percentage(self, service, crm_repo):
        lead = await service.create_lead(ORG, _lead(email="a@b.co", company="Acme", source="referral"))
        # 20 + 35 + 40 of 193
        assert lead.score == 49
        assert crm_repo.leads[lead.id].score == 49

    @pytest.mark.asyncio
    async def test_custom_rules_from_settings(self, crm_repo):
        async def loader(organization_id):
            return {"lead_scoring_rules": [{
                "id": "any_email", "name": "Email", "field": "email",
                "condition": "is_not_empty", "points": 5,
            }]}

        service = CRMService(crm_repo, settings_loader=loader)
        lead = await service.create_lead(ORG, _lead(email="x@y.z"))
        assert lead.score == 100

    @pytest.mark.asyncio
    async def test_update_rescores_when_scoring_field_changes(self, service):
        lead = await service.create_lead(ORG, _lead())
        assert lead.score == 0
        updated = await service.update_lead(ORG, lead.id, LeadUpdate(source="referral"))
        assert updated.score == 21  # 40 / 193

    @pytest.mark.asyncio
    async def test_update_keeps_score_for_non_scoring_field(self, service):
        lead = await service.create_lead(ORG, _lead(source="referral"))
        updated = await service.update_lead(ORG, lead.id, LeadUpdate(notes="called twice"))
        assert updated.score == lead.score
        assert updated.notes == "called twice"

    @pytest.mark.asyncio
    async def test_get_lead_from_other_org_is_not_found(self, service):
        lead = await service.create_lead(ORG, _lead())
        with pytest.raises(NotFoundError):
            await service.get_lead(OTHER_ORG, lead.id)

    @pytest.mark.asyncio
    async def test_delete_missing_lead_raises(self, service):
        with pytest.raises(NotFoundError):
            await service.delete_lead(ORG, "00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_list_filters_by_status_and_search(self, service):
        await service.create_lead(ORG, _lead(company="Acme"))
        await service.create_lead(ORG, _lead(first_name="Grace", company="Navy", status=LeadStatus.CONTACTED))
        contacted = await service.list_leads(ORG, LeadFilter(status=LeadStatus.CONTACTED))
        assert [lead.first_name for lead in contacted] == ["Grace"]
        acme = await service.list_leads(ORG, LeadFilter(search="acm"))
        assert [lead.company for lead in acme] == ["Acme"]

    @pytest.mark.asyncio
    async def test_qualify_sets_status_and_returns_breakdown(self, service):
        lead = await service.create_lead(ORG, _lead(email="a@b.co"))
        qualified, score = await service.qualify_lead(ORG, lead.id)
        assert qualified.status == LeadStatus.QUALIFIED.value
        assert score.matched_rules[0].rule_id == "email_present"


class TestLeadStats:
    def test_score_bands(self):
        assert score_band(80) == "hot"
        assert score_band(79) == "warm"
        assert score_band(60) == "warm"
        assert score_band(40) == "cool"
        assert score_band(39) == "cold"

    @pytest.mark.asyncio
    async def test_stats_counts_every_status(self, service):
        await service.create_lead(ORG, _lead())
        await service.create_lead(
            ORG, _lead(email="a@b.co", phone="1", company="Acme Tech Company", source="referral")
        )
        stats = await service.lead_stats(ORG)
        assert stats.total == 2
        assert stats.by_status["new"] == 2
        assert stats.by_status["converted"] == 0
        assert sum(stats.by_score.values()) == 2
        assert stats.by_score["cold"] >= 1


class TestConversion:
    @pytest.mark.asyncio
    async def test_convert_creates_prospecting_opportunity(self, service, crm_repo):
        lead = await service.create_lead(ORG, _lead(company="Acme"))
        converted, opportunity = await service.convert_lead(
            ORG, LeadConversion(lead_id=lead.id, deal_value=5000, probability=20), user_id="u-1"
        )
        assert converted.status == LeadStatus.CONVERTED.value
        assert opportunity.name == "Acme Opportunity"
        assert opportunity.stage == PeakStage.PROSPECTING.value
        assert opportunity.lead_id == lead.id
        assert opportunity.value == 5000
        assert opportunity.assigned_to == "u-1"
        assert len(crm_repo.opportunities) == 1

    @pytest.mark.asyncio
    async def test_name_falls_back_to_person(self, service):
        lead = await service.create_lead(ORG, _lead())
        _, opportunity = await service.convert_lead(ORG, LeadConversion(lead_id=lead.id))
        assert opportunity.name == "Ada Lovelace Opportunity"

    @pytest.mark.asyncio
    async def test_converting_twice_conflicts(self, service):
        lead = await service.create_lead(ORG, _lead())
        await service.convert_lead(ORG, LeadConversion(lead_id=lead.id))
        with pytest.raises(ConflictError):
            await service.convert_lead(ORG, LeadConversion(lead_id=lead.id))


class TestContacts:
    @pytest.mark.asyncio
    async def test_update_missing_contact_is_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.update_contact(ORG, "missing", ContactUpdate(title="CFO"))

    @pytest.mark.asyncio
    async def test_find_by_external_id(self, service):
        await service.create_contact(ORG, ContactCreate(first_name="A", last_name="B", external_id="msgraph:1"))
        found = await service.find_contact_by_external_id(ORG, "msgraph:1")
        assert found is not None and found.first_name == "A"
        assert await service.find_contact_by_external_id(OTHER_ORG, "msgraph:1") is None


class TestStageProgression:
    async def _opportunity(self, service, stage=PeakStage.PROSPECTING):
        return await service.create_opportunity(ORG, OpportunityCreate(name="Deal", stage=stage))

    @pytest.mark.asyncio
    async def test_forward_move_with_gate_met(self, crm_repo):
        gate = GateRecorder({"prospecting_to_engaging": []})
        service = CRMService(crm_repo, gate_checker=gate)
        opportunity = await self._opportunity(service)
        moved = await service.advance_stage(ORG, opportunity.id, PeakStage.ENGAGING)
        assert moved.stage == "engaging"
        assert gate.calls == [opportunity.id]

    @pytest.mark.asyncio
    async def test_gate_not_met_conflicts(self, crm_repo):
        gate = GateRecorder({"prospecting_to_engaging": ["Pain identified", "Budget confirmed"]})
        service = CRMService(crm_repo, gate_checker=gate)
        opportunity = await self._opportunity(service)
        with pytest.raises(ConflictError) as exc_info:
            await service.advance_stage(ORG, opportunity.id, PeakStage.ENGAGING)
        assert exc_info.value.details["gate"] == "prospecting_to_engaging"
        assert exc_info.value.details["unmet_criteria"] == ["Pain identified", "Budget confirmed"]
        assert crm_repo.opportunities[opportunity.id].stage == "prospecting"

    @pytest.mark.asyncio
    async def test_transition_without_configured_gate_is_open(self, crm_repo):
        gate = GateRecorder({"engaging_to_advancing": ["Decision process mapped"]})
        service = CRMService(crm_repo, gate_checker=gate)
        opportunity = await self._opportunity(service)
        moved = await service.advance_stage(ORG, opportunity.id, PeakStage.ENGAGING)
        assert moved.stage == "engaging"
        assert gate.calls == [opportunity.id]

    @pytest.mark.asyncio
    async def test_force_skips_gate(self, crm_repo):
        gate = GateRecorder()
        service = CRMService(crm_repo, gate_checker=gate)
        opportunity = await self._opportunity(service)
        moved = await service.advance_stage(ORG, opportunity.id, PeakStage.ENGAGING, force=True)
        assert moved.stage == "engaging"
        assert gate.calls == []

    @pytest.mark.asyncio
    async def test_skipping_stages_is_rejected(self, service):
        opportunity = await self._opportunity(service)
        with pytest.raises(ValidationFailedError):
            await service.advance_stage(ORG, opportunity.id, PeakStage.ADVANCING)

    @pytest.mark.asyncio
    async def test_backward_move_skips_gate(self, crm_repo):
        gate = GateRecorder()
        service = CRMService(crm_repo, gate_checker=gate)
        opportunity = await self._opportunity(service, PeakStage.ADVANCING)
        moved = await service.advance_stage(ORG, opportunity.id, PeakStage.PROSPECTING)
        assert moved.stage == "prospecting"
        assert gate.calls == []

    @pytest.mark.asyncio
    async def test_closing_skips_gate(self, crm_repo):
        service = CRMService(crm_repo, gate_checker=GateRecorder())
        opportunity = await self._opportunity(service, PeakStage.ENGAGING)
        moved = await service.advance_stage(ORG, opportunity.id, PeakStage.CLOSED_WON)
        assert moved.stage == "closed_won"

    @pytest.mark.asyncio
    async def test_closed_opportunity_needs_force(self, service):
        opportunity = await self._opportunity(service, PeakStage.CLOSED_LOST)
        with pytest.raises(ValidationFailedError):
            await service.advance_stage(ORG, opportunity.id, PeakStage.KEY_DECISION)
        reopened = await service.advance_stage(ORG, opportunity.id, PeakStage.KEY_DECISION, force=True)
        assert reopened.stage == "key_decision"

    @pytest.mark.asyncio
    async def test_same_stage_is_a_no_op(self, crm_repo):
        gate = GateRecorder()
        service = CRMService(crm_repo, gate_checker=gate)
        opportunity = await self._opportunity(service)
        same = await service.advance_stage(ORG, opportunity.id, PeakStage.PROSPECTING)
        assert same.id == opportunity.id
        assert gate.calls == []

    @pytest.mark.asyncio
    async def test_unknown_opportunity(self, service):
        with pytest.raises(NotFoundError):
            await service.advance_stage(ORG, "missing", PeakStage.ENGAGING)
