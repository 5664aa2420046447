"""MEDDPICC configuration model and the default question catalogue.

A configuration carries the pillar definitions (weight, questions and
answer options), the qualification thresholds, the litmus-test questions
and the PEAK stage gates. Organizations may store their own version; the
DEFAULT_MEDDPICC_CONFIG below is used otherwise.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class QuestionType(str, Enum):
    TEXT = "text"
    SCALE = "scale"
    YES_NO = "yes_no"
    MULTIPLE_CHOICE = "multiple_choice"


class AnswerOption(BaseModel):
    text: str
    points: float


class MEDDPICCQuestion(BaseModel):
    id: str
    text: str
    tooltip: str | None = None
    type: str = QuestionType.TEXT.value
    answers: list[AnswerOption] = Field(default_factory=list)
    required: bool = True


class MEDDPICCPillar(BaseModel):
    id: str
    display_name: str
    description: str = ""
    weight: float
    icon: str | None = None
    questions: list[MEDDPICCQuestion] = Field(default_factory=list)


class Thresholds(BaseModel):
    excellent: float = 80
    good: float = 60
    fair: float = 40
    poor: float = 20


class LitmusTest(BaseModel):
    display_name: str = "Final Qualification Gate"
    questions: list[MEDDPICCQuestion] = Field(default_factory=list)


class StageGate(BaseModel):
    from_stage: str
    to_stage: str
    criteria: list[str]

    @property
    def key(self) -> str:
        return f"{self.from_stage}_to_{self.to_stage}"


class MEDDPICCConfig(BaseModel):
    project_name: str
    version: str
    framework: str
    thresholds: Thresholds = Field(default_factory=Thresholds)
    pillars: list[MEDDPICCPillar] = Field(default_factory=list)
    litmus_test: LitmusTest = Field(default_factory=LitmusTest)
    stage_gates: list[StageGate] = Field(default_factory=list)

    @property
    def weights(self) -> dict[str, float]:
        return {p.id: p.weight for p in self.pillars}

    def pillar(self, pillar_id: str) -> MEDDPICCPillar | None:
        return next((p for p in self.pillars if p.id == pillar_id), None)


# ── Default catalogue ───────────────────────────────────────────────────────


def _text(qid: str, text: str, tooltip: str, required: bool = True) -> MEDDPICCQuestion:
    return MEDDPICCQuestion(id=qid, text=text, tooltip=tooltip, type=QuestionType.TEXT.value, required=required)


def _choice(qid: str, text: str, tooltip: str | None, qtype: QuestionType, answers: list[tuple[str, float]]) -> MEDDPICCQuestion:
    return MEDDPICCQuestion(
        id=qid,
        text=text,
        tooltip=tooltip,
        type=qtype.value,
        answers=[AnswerOption(text=a, points=p) for a, p in answers],
    )


DEFAULT_MEDDPICC_CONFIG = MEDDPICCConfig(
    project_name="CRM Integration of the MEDDPICC & PEAK Sales Qualification Module",
    version="1.0",
    framework="MEDD(I)PICC",
    thresholds=Thresholds(excellent=80, good=60, fair=40, poor=20),
    pillars=[
        MEDDPICCPillar(
            id="metrics",
            display_name="Metrics",
            description="Quantify the business impact and ROI",
            weight=15,
            icon="chart",
            questions=[
                _text("current_cost", "What is the current cost of the problem?",
                      "Quantify the financial impact of the current situation"),
                _text("expected_roi", "What is the expected ROI from solving this problem?",
                      "Calculate the return on investment"),
                _text("success_metrics", "How will success be measured?",
                      "Define specific KPIs and success criteria"),
                _choice("urgency_level", "How urgent is this problem?",
                        "Rate the urgency of solving this problem", QuestionType.SCALE, [
                            ("Critical (Must solve immediately)", 10),
                            ("High (Solve within 3 months)", 8),
                            ("Medium (Solve within 6 months)", 6),
                            ("Low (Solve within 12 months)", 4),
                            ("Not urgent", 2),
                        ]),
            ],
        ),
        MEDDPICCPillar(
            id="economicBuyer",
            display_name="Economic Buyer",
            description="Identify the person who can approve the budget",
            weight=20,
            icon="money",
            questions=[
                _text("budget_authority", "Who has the authority to approve this purchase?",
                      "Identify the person with budget approval power"),
                _text("influence_level", "What is their role and influence level?",
                      "Assess their position and decision-making power"),
                _choice("meeting_status", "Have we met with the economic buyer?",
                        "Confirm direct engagement with budget holder", QuestionType.YES_NO, [
                            ("Yes - Multiple meetings", 10),
                            ("Yes - One meeting", 7),
                            ("No - Scheduled", 4),
                            ("No - Not identified", 0),
                        ]),
                _text("budget_range", "What is their budget authority?",
                      "Understand their spending limits"),
            ],
        ),
        MEDDPICCPillar(
            id="decisionCriteria",
            display_name="Decision Criteria",
            description="Understand how they will evaluate solutions",
            weight=10,
            icon="clipboard",
            questions=[
                _text("key_criteria", "What are their key decision criteria?",
                      "List the main factors they will use to evaluate solutions"),
                _text("criteria_importance", "How important is each criterion?",
                      "Rank the criteria by importance"),
                _text("must_haves", "What are their must-haves vs nice-to-haves?",
                      "Distinguish between essential and optional features"),
            ],
        ),
        MEDDPICCPillar(
            id="decisionProcess",
            display_name="Decision Process",
            description="Map the approval workflow and timeline",
            weight=15,
            icon="gear",
            questions=[
                _text("process_steps", "What is their decision-making process?",
                      "Outline the steps in their decision process"),
                _text("stakeholders", "Who else needs to be involved?",
                      "Identify all decision influencers"),
                _text("timeline", "What is the timeline for decision?",
                      "Establish decision timeline and milestones"),
            ],
        ),
        MEDDPICCPillar(
            id="paperProcess",
            display_name="Paper Process",
            description="Document requirements and procurement process",
            weight=5,
            icon="document",
            questions=[
                _text("documentation", "What documentation is required?",
                      "List all required documents and forms"),
                _text("procurement", "What is their procurement process?",
                      "Understand their purchasing procedures"),
                _text("compliance", "Are there any compliance requirements?",
                      "Identify regulatory or policy requirements", required=False),
            ],
        ),
        MEDDPICCPillar(
            id="identifyPain",
            display_name="Identify Pain",
            description="Understand their pain points and challenges",
            weight=20,
            icon="alert",
            questions=[
                _text("biggest_challenge", "What is their biggest challenge?",
                      "Identify the primary pain point"),
                _text("consequences", "What happens if they don't solve this?",
                      "Understand the impact of inaction"),
                _text("previous_attempts", "What have they tried before?",
                      "Learn from their past solutions"),
            ],
        ),
        MEDDPICCPillar(
            id="implicatePain",
            display_name="Implicate Pain",
            description="Help them understand the full impact of their pain",
            weight=20,
            icon="lightbulb",
            questions=[
                _text("pain_amplification", "How can we help them understand the full impact?",
                      "Strategies to amplify pain recognition"),
                _text("urgency_creation", "What creates urgency for them?",
                      "Identify what motivates immediate action"),
                _text("stakeholder_impact", "Who else is affected by this pain?",
                      "Map pain impact across stakeholders"),
            ],
        ),
        MEDDPICCPillar(
            id="champion",
            display_name="Champion",
            description="Find internal advocate who will support you",
            weight=10,
            icon="trophy",
            questions=[
                _text("champion_identity", "Who is our internal champion?",
                      "Identify the person who will advocate for us"),
                _choice("champion_influence", "What is their influence level?",
                        "Assess their power and influence in the organization", QuestionType.SCALE, [
                            ("Very High (C-Level)", 10),
                            ("High (VP/Director)", 8),
                            ("Medium (Manager)", 6),
                            ("Low (Individual Contributor)", 4),
                            ("Unknown", 2),
                        ]),
                _choice("champion_commitment", "How committed are they to our solution?",
                        "Measure their level of commitment", QuestionType.SCALE, [
                            ("Fully committed", 10),
                            ("Strongly supportive", 8),
                            ("Moderately supportive", 6),
                            ("Neutral", 4),
                            ("Not committed", 2),
                        ]),
            ],
        ),
        MEDDPICCPillar(
            id="competition",
            display_name="Competition",
            description="Assess competitive landscape and positioning",
            weight=5,
            icon="swords",
            questions=[
                _text("competitors", "Who else are they considering?",
                      "Identify competing solutions"),
                _text("competitive_advantages", "What are our competitive advantages?",
                      "Define our unique value proposition"),
                _text("differentiation", "How do we differentiate ourselves?",
                      "Explain what makes us different"),
                _choice("win_probability", "What is our win probability?",
                        "Assess likelihood of winning", QuestionType.SCALE, [
                            ("Very High (90%+)", 10),
                            ("High (70-89%)", 8),
                            ("Medium (50-69%)", 6),
                            ("Low (30-49%)", 4),
                            ("Very Low (<30%)", 2),
                        ]),
            ],
        ),
    ],
    litmus_test=LitmusTest(
        display_name="Final Qualification Gate",
        questions=[
            _choice("budget_confirmed", "Is budget confirmed and available?", None, QuestionType.YES_NO, [
                ("Yes - Budget approved", 10),
                ("Yes - Budget allocated", 8),
                ("Yes - Budget identified", 6),
                ("No - Budget unclear", 2),
            ]),
            _choice("decision_timeline", "Is there a clear decision timeline?", None, QuestionType.YES_NO, [
                ("Yes - Specific date", 10),
                ("Yes - General timeframe", 7),
                ("No - Timeline unclear", 3),
            ]),
            _choice("champion_confirmed", "Do we have a confirmed champion?", None, QuestionType.YES_NO, [
                ("Yes - Strong champion", 10),
                ("Yes - Moderate champion", 7),
                ("No - No champion", 2),
            ]),
        ],
    ),
    stage_gates=[
        StageGate(
            from_stage="prospecting",
            to_stage="engaging",
            criteria=["Pain identified", "Champion identified", "Budget confirmed"],
        ),
        StageGate(
            from_stage="engaging",
            to_stage="advancing",
            criteria=["Economic buyer engaged", "Decision criteria established", "Decision process mapped"],
        ),
        StageGate(
            from_stage="advancing",
            to_stage="key_decision",
            criteria=["Paper process completed", "Competition neutralized", "Champion committed"],
        ),
    ],
)

LITMUS_PILLAR_ID = "litmus"

# Legacy single-text form: column -> (pillar id, weight)
LEGACY_FIELDS: dict[str, tuple[str, float]] = {
    "metrics": ("metrics", 15),
    "economic_buyer": ("economicBuyer", 20),
    "decision_criteria": ("decisionCriteria", 10),
    "decision_process": ("decisionProcess", 15),
    "paper_process": ("paperProcess", 5),
    "identify_pain": ("identifyPain", 20),
    "champion": ("champion", 10),
    "competition": ("competition", 5),
}

# Criterion -> (pillar id, minimum pillar percentage)
GATE_CRITERIA: dict[str, tuple[str, float]] = {
    "Pain identified": ("identifyPain", 50),
    "Champion identified": ("champion", 50),
    "Budget confirmed": ("economicBuyer", 50),
    "Economic buyer engaged": ("economicBuyer", 50),
    "Decision criteria established": ("decisionCriteria", 50),
    "Decision process mapped": ("decisionProcess", 50),
    "Paper process completed": ("paperProcess", 50),
    "Competition neutralized": ("competition", 50),
    "Champion committed": ("champion", 70),
}

PEAK_STAGES: dict[str, dict[str, str | None]] = {
    "prospecting": {
        "name": "Prospecting",
        "description": "Initial contact and qualification",
        "color": "blue",
        "next_stage": "engaging",
    },
    "engaging": {
        "name": "Engaging",
        "description": "Active communication and relationship building",
        "color": "yellow",
        "next_stage": "advancing",
    },
    "advancing": {
        "name": "Advancing",
        "description": "Solution presentation and negotiation",
        "color": "orange",
        "next_stage": "key_decision",
    },
    "key_decision": {
        "name": "Key Decision",
        "description": "Final decision and closing",
        "color": "green",
        "next_stage": None,
    },
}
