"""Tests for MEDDPICC scoring, configuration validation/versioning and the
cached opportunity scoring service.
"""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from src.fulqrun.core.errors import ConflictError, NotFoundError, ValidationFailedError
from src.fulqrun.crm.schemas import MEDDPICCResponse, OpportunityCreate, PeakStage
from src.fulqrun.crm.service import CRMService
from src.fulqrun.qualification.config import DEFAULT_MEDDPICC_CONFIG, QuestionType
from src.fulqrun.qualification.configuration import validate_configuration
from src.fulqrun.qualification.scoring import (
    calculate_legacy_score,
    calculate_meddpicc_score,
    empty_assessment,
    form_completion,
    peak_stage_info,
    score_text_answer,
)
from src.fulqrun.qualification.service import MEDDPICCScoringService, score_cache_key

ORG = "11111111-1111-1111-1111-111111111111"

LONG_ANSWER = "We measured a specific cost of 2M per year and expect a quantified ROI within 9 months"


def _responses_for_pillars(*pillar_ids: str) -> list[MEDDPICCResponse]:
    """Full-marks answers for every question of the given pillars."""
    responses = []
    for pillar in DEFAULT_MEDDPICC_CONFIG.pillars:
        if pillar.id not in pillar_ids:
            continue
        for question in pillar.questions:
            if question.type == QuestionType.TEXT.value:
                answer = LONG_ANSWER
            else:
                answer = question.answers[0].text
            responses.append(MEDDPICCResponse(pillar_id=pillar.id, question_id=question.id, answer=answer))
    return responses


ALL_PILLARS = [p.id for p in DEFAULT_MEDDPICC_CONFIG.pillars]


# ── Pure scoring ────────────────────────────────────────────────────────────


class TestTextAnswers:
    def test_blank_answer_scores_zero(self):
        assert score_text_answer(None) == 0
        assert score_text_answer("   ") == 0

    def test_length_steps(self):
        assert score_text_answer("a") == 3
        assert score_text_answer("abc") == 5
        assert score_text_answer("a" * 10) == 7
        assert score_text_answer("a" * 25) == 9
        assert score_text_answer("a" * 50) == 10

    def test_keyword_bonus_is_capped(self):
        # 8 chars -> 5 points, three keywords capped at a bonus of 2
        assert score_text_answer("roi cost") == 7
        assert score_text_answer("roi cost impact") == 9

    def test_total_capped_at_ten(self):
        assert score_text_answer(LONG_ANSWER) == 10


class TestAssessment:
    def test_no_responses_is_poor(self):
        result = calculate_meddpicc_score([])
        assert result.overall_score == 0
        assert result.qualification_level == "Poor"
        assert set(result.pillar_scores) == set(ALL_PILLARS)
        assert len(result.next_actions) == len(ALL_PILLARS)
        assert not any(result.stage_gate_readiness.values())

    def test_full_marks_everywhere(self):
        result = calculate_meddpicc_score(_responses_for_pillars(*ALL_PILLARS))
        assert all(score == 100 for score in result.pillar_scores.values())
        assert result.overall_score == 100
        assert result.qualification_level == "Excellent"
        assert result.next_actions == []
        assert all(result.stage_gate_readiness.values())

    def test_overall_is_weight_averaged(self):
        # identifyPain carries 20 of the 120 total weight
        result = calculate_meddpicc_score(_responses_for_pillars("identifyPain"))
        assert result.pillar_scores["identifyPain"] == 100
        assert result.overall_score == 17

    def test_partial_text_answer_rounds_half_up(self):
        responses = [MEDDPICCResponse(pillar_id="metrics", question_id="current_cost", answer="roi cost")]
        result = calculate_meddpicc_score(responses)
        # 7 of 40 points
        assert result.pillar_scores["metrics"] == 18

    def test_choice_answer_by_text_and_by_points(self):
        by_text = MEDDPICCResponse(
            pillar_id="metrics", question_id="urgency_level", answer="High (Solve within 3 months)"
        )
        by_points = MEDDPICCResponse(pillar_id="metrics", question_id="urgency_level", answer="x", points=4)
        assert calculate_meddpicc_score([by_text]).pillar_scores["metrics"] == 20
        assert calculate_meddpicc_score([by_points]).pillar_scores["metrics"] == 10

    def test_choice_points_are_capped_at_question_max(self):
        # model_construct skips the field bounds
        oversized = MEDDPICCResponse.model_construct(
            pillar_id="metrics", question_id="urgency_level", answer="x", points=500
        )
        result = calculate_meddpicc_score([oversized])
        # 10 of 40 points
        assert result.pillar_scores["metrics"] == 25
        assert result.overall_score <= 100

    def test_response_points_must_be_within_question_range(self):
        with pytest.raises(ValidationError):
            MEDDPICCResponse(pillar_id="metrics", question_id="urgency_level", answer="x", points=500)
        with pytest.raises(ValidationError):
            MEDDPICCResponse(pillar_id="metrics", question_id="urgency_level", answer="x", points=-1)

    def test_first_gate_needs_pain_champion_and_buyer(self):
        result = calculate_meddpicc_score(
            _responses_for_pillars("identifyPain", "champion", "economicBuyer")
        )
        gates = result.stage_gate_readiness
        assert gates["prospecting_to_engaging"] is True
        assert gates["engaging_to_advancing"] is False
        assert result.unmet_gate_criteria["prospecting_to_engaging"] == []
        assert result.unmet_gate_criteria["engaging_to_advancing"] == [
            "Decision criteria established", "Decision process mapped",
        ]

    def test_litmus_score(self):
        responses = [
            MEDDPICCResponse(pillar_id="litmus", question_id="budget_confirmed", answer="Yes - Budget approved"),
            MEDDPICCResponse(pillar_id="litmus", question_id="decision_timeline", answer="No - Timeline unclear"),
        ]
        # (10 + 3) of 30
        assert calculate_meddpicc_score(responses).litmus_test_score == 43

    def test_empty_assessment_has_every_gate_closed(self):
        result = empty_assessment()
        assert result.qualification_level == "Poor"
        assert set(result.stage_gate_readiness) == {
            "prospecting_to_engaging", "engaging_to_advancing", "advancing_to_key_decision",
        }


class TestLegacyForm:
    def test_form_completion(self):
        assert form_completion({"metrics": "ROI known"}) == 12.5
        assert form_completion({"metrics": "  "}) == 0

    def test_legacy_score_is_weighted(self):
        assert calculate_legacy_score({"metrics": 10}) == 15
        assert calculate_legacy_score({}) == 0

    def test_peak_stage_info_falls_back_to_prospecting(self):
        assert peak_stage_info("advancing")["next_stage"] == "key_decision"
        assert peak_stage_info("unknown")["name"] == "Prospecting"


# ── Configuration validation ────────────────────────────────────────────────


def _config_dict(**overrides) -> dict:
    config = DEFAULT_MEDDPICC_CONFIG.model_dump(mode="json")
    config.update(overrides)
    return config


class TestValidation:
    def test_default_config_is_valid_with_weight_warning(self):
        result = validate_configuration(_config_dict())
        assert result.is_valid
        assert result.total_weight == 120
        assert "Total pillar weights sum to 120% instead of 100%" in result.warnings

    def test_missing_header_fields(self):
        result = validate_configuration(_config_dict(project_name="", version=None, framework=" "))
        assert not result.is_valid
        assert {"Project name is required", "Version is required", "Framework is required"} <= set(result.errors)

    def test_no_pillars(self):
        result = validate_configuration(_config_dict(pillars=[]))
        assert "At least one pillar is required" in result.errors
        assert result.total_weight is None

    def test_duplicate_pillar_and_question_ids(self):
        pillar = {
            "id": "p", "display_name": "P", "weight": 50,
            "questions": [
                {"id": "q", "text": "Q?", "type": "text"},
                {"id": "q", "text": "Again?", "type": "text"},
            ],
        }
        result = validate_configuration(_config_dict(pillars=[pillar, dict(pillar)]))
        assert 'Pillar 2: Duplicate ID "p"' in result.errors
        assert 'Pillar 1, Question 2: Duplicate ID "q"' in result.errors

    def test_scale_questions_need_answers(self):
        pillar = {
            "id": "p", "display_name": "P", "weight": 100,
            "questions": [{"id": "q", "text": "Rate", "type": "scale", "answers": []}],
        }
        result = validate_configuration(_config_dict(pillars=[pillar]))
        assert "Pillar 1, Question 1: Answers required for scale questions" in result.errors

    def test_weight_out_of_range(self):
        pillar = {"id": "p", "display_name": "P", "weight": 150, "questions": []}
        result = validate_configuration(_config_dict(pillars=[pillar]))
        assert "Pillar 1: Weight must be between 0 and 100" in result.errors
        assert "Pillar 1 (P): No questions defined" in result.warnings

    def test_missing_stage_gates_is_a_warning(self):
        result = validate_configuration(_config_dict(stage_gates=[]))
        assert result.is_valid
        assert "No stage gates defined: PEAK stage moves will not be gated" in result.warnings
        assert not any("stage gates" in w for w in validate_configuration(_config_dict()).warnings)

    def test_threshold_order_is_a_warning(self):
        thresholds = {"excellent": 50, "good": 60, "fair": 40, "poor": 20}
        result = validate_configuration(_config_dict(thresholds=thresholds))
        assert result.is_valid
        assert "Excellent threshold should be higher than good threshold" in result.warnings


# ── Configuration service ───────────────────────────────────────────────────


class TestConfigurationService:
    @pytest.mark.asyncio
    async def test_default_when_nothing_stored(self, config_service):
        config = await config_service.get_active_configuration(ORG)
        assert config is DEFAULT_MEDDPICC_CONFIG

    @pytest.mark.asyncio
    async def test_save_versions_configuration(self, config_service):
        first, _ = await config_service.save_configuration(ORG, _config_dict(version="2.0"), user_id="u1")
        second, validation = await config_service.save_configuration(ORG, _config_dict(version="2.1"))
        assert (first.version, second.version) == (1, 2)
        assert second.name == "Custom MEDDPICC Configuration"
        assert validation.warnings
        history = await config_service.get_configuration_history(ORG)
        assert [h.new_version for h in history] == [2, 1]
        assert (await config_service.get_active_configuration(ORG)).version == "2.1"

    @pytest.mark.asyncio
    async def test_invalid_configuration_is_not_saved(self, config_service, config_repo):
        with pytest.raises(ValidationFailedError) as exc_info:
            await config_service.save_configuration(ORG, _config_dict(pillars=[]))
        assert "At least one pillar is required" in exc_info.value.details["errors"]
        assert config_repo.active is None

    @pytest.mark.asyncio
    async def test_reset_returns_default(self, config_service):
        await config_service.save_configuration(ORG, _config_dict(version="9"))
        assert await config_service.reset_to_default(ORG) is DEFAULT_MEDDPICC_CONFIG
        assert await config_service.get_configuration_record(ORG) is None

    @pytest.mark.asyncio
    async def test_export_then_import(self, config_service):
        await config_service.save_configuration(ORG, _config_dict(version="3.0"), name="Pharma")
        exported = json.loads(await config_service.export_configuration(ORG, exported_by="u1"))
        assert exported["metadata"]["name"] == "Pharma"
        assert exported["metadata"]["exported_by"] == "u1"

        stored, _ = await config_service.import_configuration(ORG, json.dumps(exported))
        assert stored.name == "Pharma"
        assert stored.configuration.version == "3.0"

    @pytest.mark.asyncio
    async def test_import_rejects_bad_payloads(self, config_service):
        with pytest.raises(ValidationFailedError, match="not valid JSON"):
            await config_service.import_configuration(ORG, "{not json")
        with pytest.raises(ValidationFailedError, match="missing configuration"):
            await config_service.import_configuration(ORG, {"metadata": {}})


# ── Scoring service ─────────────────────────────────────────────────────────


@pytest.fixture
def scoring_service(crm_repo, config_service, fake_redis):
    return MEDDPICCScoringService(crm_repo, config_service, fake_redis, cache_ttl=60)


class TestScoringService:
    @pytest.mark.asyncio
    async def test_score_is_cached_per_opportunity(self, scoring_service, crm_repo, fake_redis):
        opportunity = await crm_repo.create_opportunity(
            ORG, OpportunityCreate(name="Deal", meddpicc_responses=_responses_for_pillars("champion"))
        )
        first = await scoring_service.get_opportunity_score(ORG, opportunity.id)
        assert first.pillar_scores["champion"] == 100
        assert f"o:{ORG}:{score_cache_key(opportunity.id)}" in fake_redis.strings

        crm_repo.opportunities[opportunity.id] = opportunity.model_copy(update={"meddpicc_responses": []})
        cached = await scoring_service.get_opportunity_score(ORG, opportunity.id)
        assert cached == first

    @pytest.mark.asyncio
    async def test_update_persists_score_and_invalidates_cache(self, scoring_service, crm_repo, fake_redis):
        opportunity = await crm_repo.create_opportunity(ORG, OpportunityCreate(name="Deal"))
        await scoring_service.get_opportunity_score(ORG, opportunity.id)

        assessment = await scoring_service.update_opportunity_score(
            ORG, opportunity.id, _responses_for_pillars(*ALL_PILLARS)
        )
        assert assessment.overall_score == 100
        stored = crm_repo.opportunities[opportunity.id]
        assert stored.meddpicc_score == 100
        assert len(stored.meddpicc_responses) > 0
        assert f"o:{ORG}:{score_cache_key(opportunity.id)}" not in fake_redis.strings

    @pytest.mark.asyncio
    async def test_legacy_fields_used_without_responses(self, scoring_service, crm_repo):
        opportunity = await crm_repo.create_opportunity(
            ORG, OpportunityCreate(name="Deal", identify_pain=LONG_ANSWER)
        )
        assessment = await scoring_service.get_opportunity_score(ORG, opportunity.id)
        # One of three identifyPain questions answered with full marks
        assert assessment.pillar_scores["identifyPain"] == 33

    @pytest.mark.asyncio
    async def test_unknown_opportunity(self, scoring_service):
        with pytest.raises(NotFoundError):
            await scoring_service.get_opportunity_score(ORG, "missing")

    @pytest.mark.asyncio
    async def test_fallback_returns_empty_assessment(self, scoring_service):
        result = await scoring_service.get_score_with_fallback(ORG, "missing")
        assert result.overall_score == 0
        assert result.qualification_level == "Poor"

    @pytest.mark.asyncio
    async def test_recalculate_all(self, scoring_service, crm_repo):
        for name in ("A", "B"):
            await crm_repo.create_opportunity(ORG, OpportunityCreate(name=name))
        assert await scoring_service.recalculate_all(ORG) == {"updated": 2, "errors": 0}

    @pytest.mark.asyncio
    async def test_works_without_redis(self, crm_repo, config_service):
        service = MEDDPICCScoringService(crm_repo, config_service, None, cache_ttl=60)
        opportunity = await crm_repo.create_opportunity(ORG, OpportunityCreate(name="Deal"))
        assert (await service.get_opportunity_score(ORG, opportunity.id)).overall_score == 0

    @pytest.mark.asyncio
    async def test_gate_readiness_drives_stage_moves(self, scoring_service, crm_repo):
        crm = CRMService(crm_repo, gate_checker=scoring_service.unmet_gate_criteria)
        blocked = await crm.create_opportunity(ORG, OpportunityCreate(name="Thin"))
        with pytest.raises(ConflictError):
            await crm.advance_stage(ORG, blocked.id, PeakStage.ENGAGING)

        ready = await crm.create_opportunity(ORG, OpportunityCreate(
            name="Qualified",
            meddpicc_responses=_responses_for_pillars("identifyPain", "champion", "economicBuyer"),
        ))
        moved = await crm.advance_stage(ORG, ready.id, PeakStage.ENGAGING)
        assert moved.stage == "engaging"

    @pytest.mark.asyncio
    async def test_stage_moves_are_open_without_configured_gates(self, scoring_service, config_service, crm_repo):
        await config_service.save_configuration(ORG, _config_dict(stage_gates=[]))
        crm = CRMService(crm_repo, gate_checker=scoring_service.unmet_gate_criteria)
        opportunity = await crm.create_opportunity(ORG, OpportunityCreate(name="Unscored"))
        moved = await crm.advance_stage(ORG, opportunity.id, PeakStage.ENGAGING)
        assert moved.stage == "engaging"
