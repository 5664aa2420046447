"""MEDDPICC scoring -- pure functions over a configuration and responses.

Scoring rules:
- Every question contributes 10 points to its pillar's maximum, answered or not.
- Text answers earn up to 10 points for length and quality keywords.
- Scale, yes/no and multiple-choice answers earn the response's ``points``,
  or the points of the answer option whose text matches.
- Pillar percentage = round_half_up(score / max * 100); the overall score is the
  weight-averaged pillar percentage.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.fulqrun.crm.schemas import MEDDPICCResponse
from src.fulqrun.crm.scoring import round_half_up
from src.fulqrun.qualification.config import (
    DEFAULT_MEDDPICC_CONFIG,
    GATE_CRITERIA,
    LEGACY_FIELDS,
    LITMUS_PILLAR_ID,
    PEAK_STAGES,
    MEDDPICCConfig,
    MEDDPICCQuestion,
    QuestionType,
    Thresholds,
)

QUESTION_MAX_POINTS = 10

QUALITY_KEYWORDS = (
    "specific",
    "measurable",
    "quantified",
    "roi",
    "impact",
    "cost",
    "savings",
    "efficiency",
    "revenue",
    "profit",
    "test",
    "quality",
    "improvement",
    "lives",
    "saved",
)
MAX_KEYWORD_BONUS = 2

# (minimum length, points) steps for text answers
LENGTH_STEPS = ((1, 3), (3, 2), (10, 2), (25, 2), (50, 1))


class MEDDPICCAssessment(BaseModel):
    pillar_scores: dict[str, int] = Field(default_factory=dict)
    overall_score: int = 0
    qualification_level: str = "Poor"
    litmus_test_score: int = 0
    next_actions: list[str] = Field(default_factory=list)
    stage_gate_readiness: dict[str, bool] = Field(default_factory=dict)
    unmet_gate_criteria: dict[str, list[str]] = Field(default_factory=dict)


def score_text_answer(answer: Any) -> int:
    """Points for a free-text answer: length steps plus a keyword bonus, capped at 10."""
    text = str(answer).strip() if answer is not None else ""
    if not text:
        return 0
    points = sum(step for min_len, step in LENGTH_STEPS if len(text) >= min_len)
    lowered = text.lower()
    keyword_hits = sum(1 for kw in QUALITY_KEYWORDS if kw in lowered)
    points += min(keyword_hits, MAX_KEYWORD_BONUS)
    return min(points, QUESTION_MAX_POINTS)


def score_choice_answer(question: MEDDPICCQuestion, response: MEDDPICCResponse) -> float:
    if response.points is not None:
        return min(max(response.points, 0), QUESTION_MAX_POINTS)
    for option in question.answers:
        if option.text == response.answer:
            return min(max(option.points, 0), QUESTION_MAX_POINTS)
    return 0


def _is_answered(response: MEDDPICCResponse | None) -> bool:
    if response is None or response.answer is None:
        return False
    return bool(str(response.answer).strip()) or response.points is not None


def score_question(question: MEDDPICCQuestion, response: MEDDPICCResponse | None) -> float:
    if not _is_answered(response):
        return 0
    if question.type == QuestionType.TEXT.value:
        return score_text_answer(response.answer)
    return score_choice_answer(question, response)


def qualification_level(score: float, thresholds: Thresholds) -> str:
    if score >= thresholds.excellent:
        return "Excellent"
    if score >= thresholds.good:
        return "Good"
    if score >= thresholds.fair:
        return "Fair"
    return "Poor"


def criterion_met(criterion: str, pillar_scores: dict[str, int]) -> bool:
    rule = GATE_CRITERIA.get(criterion)
    if rule is None:
        return False
    pillar_id, minimum = rule
    return pillar_scores.get(pillar_id, 0) >= minimum


def unmet_gate_criteria(config: MEDDPICCConfig, pillar_scores: dict[str, int]) -> dict[str, list[str]]:
    """Criteria still missing for each configured gate; an empty list means the gate is open."""
    return {
        gate.key: [c for c in gate.criteria if not criterion_met(c, pillar_scores)]
        for gate in config.stage_gates
    }


def calculate_meddpicc_score(
    responses: list[MEDDPICCResponse],
    config: MEDDPICCConfig | None = None,
) -> MEDDPICCAssessment:
    """Score a set of questionnaire responses against a configuration."""
    config = config or DEFAULT_MEDDPICC_CONFIG
    by_key = {(r.pillar_id, r.question_id): r for r in responses}

    pillar_scores: dict[str, int] = {}
    for pillar in config.pillars:
        score = 0.0
        max_score = 0
        for question in pillar.questions:
            score += score_question(question, by_key.get((pillar.id, question.id)))
            max_score += QUESTION_MAX_POINTS
        pillar_scores[pillar.id] = round_half_up(score / max_score * 100) if max_score > 0 else 0

    total_weight = sum(p.weight for p in config.pillars)
    weighted = sum(pillar_scores[p.id] / 100 * p.weight for p in config.pillars)
    overall = round_half_up(weighted / total_weight * 100) if total_weight > 0 else 0

    litmus_points = 0.0
    litmus_questions = config.litmus_test.questions
    for question in litmus_questions:
        litmus_points += score_question(question, by_key.get((LITMUS_PILLAR_ID, question.id)))
    litmus_max = len(litmus_questions) * QUESTION_MAX_POINTS
    litmus_score = round_half_up(litmus_points / litmus_max * 100) if litmus_max > 0 else 0

    unmet = unmet_gate_criteria(config, pillar_scores)

    next_actions = [
        f"Complete {p.display_name} assessment - currently {pillar_scores[p.id]}% complete"
        for p in config.pillars
        if pillar_scores[p.id] < 50
    ]

    return MEDDPICCAssessment(
        pillar_scores=pillar_scores,
        overall_score=overall,
        qualification_level=qualification_level(overall, config.thresholds),
        litmus_test_score=litmus_score,
        next_actions=next_actions,
        stage_gate_readiness={key: not missing for key, missing in unmet.items()},
        unmet_gate_criteria=unmet,
    )


def empty_assessment(config: MEDDPICCConfig | None = None) -> MEDDPICCAssessment:
    """A zeroed Poor assessment, used when scoring cannot run."""
    config = config or DEFAULT_MEDDPICC_CONFIG
    return MEDDPICCAssessment(
        pillar_scores={p.id: 0 for p in config.pillars},
        stage_gate_readiness={g.key: False for g in config.stage_gates},
        unmet_gate_criteria={g.key: list(g.criteria) for g in config.stage_gates},
    )


# ── Legacy form ─────────────────────────────────────────────────────────────


def calculate_legacy_score(fields: dict[str, float]) -> int:
    """Weighted score for the legacy form where each field is rated 0-10."""
    total = 0.0
    max_possible = 0.0
    for field, (_, weight) in LEGACY_FIELDS.items():
        total += (fields.get(field) or 0) / 10 * weight
        max_possible += weight
    return round_half_up(total / max_possible * 100) if max_possible else 0


def legacy_to_responses(
    fields: dict[str, str | None], config: MEDDPICCConfig | None = None
) -> list[MEDDPICCResponse]:
    """Map legacy single-text fields onto the first question of each pillar."""
    config = config or DEFAULT_MEDDPICC_CONFIG
    responses = []
    for field, (pillar_id, _) in LEGACY_FIELDS.items():
        value = fields.get(field)
        pillar = config.pillar(pillar_id)
        if not value or pillar is None or not pillar.questions:
            continue
        responses.append(MEDDPICCResponse(
            pillar_id=pillar_id,
            question_id=pillar.questions[0].id,
            answer=value,
        ))
    return responses


def form_completion(fields: dict[str, str | None]) -> float:
    """Percentage of legacy fields with a non-blank value."""
    filled = sum(1 for field in LEGACY_FIELDS if (fields.get(field) or "").strip())
    return filled / len(LEGACY_FIELDS) * 100


def peak_stage_info(stage: str) -> dict[str, str | None]:
    """Display info for a PEAK stage; unknown stages fall back to prospecting."""
    return dict(PEAK_STAGES.get(stage, PEAK_STAGES["prospecting"]))
