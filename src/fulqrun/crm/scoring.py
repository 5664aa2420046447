"""Rule-based lead scoring.

Each active rule that matches a lead adds its points to the lead's total.
The total is expressed as a percentage of the points available from all
active rules and bucketed into hot (>= 65), warm (>= 35) or cold.

Organizations may replace the default rule set; the override is stored
under ``lead_scoring_rules`` in the organization's settings JSON.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

HOT_THRESHOLD = 65
WARM_THRESHOLD = 35


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive scores (round() rounds to even)."""
    return math.floor(value + 0.5)


class RuleCondition(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


VALUELESS_CONDITIONS = frozenset({RuleCondition.IS_EMPTY.value, RuleCondition.IS_NOT_EMPTY.value})


class LeadScoringRule(BaseModel):
    id: str
    name: str
    field: str
    condition: str
    value: str | None = None
    points: int
    description: str = ""
    is_active: bool = True


class RuleMatch(BaseModel):
    rule_id: str
    rule_name: str
    field: str
    points: int


class LeadScore(BaseModel):
    total_score: int
    max_possible_score: int
    percentage: int
    category: str
    matched_rules: list[RuleMatch] = Field(default_factory=list)


def _rule(rule_id: str, name: str, field: str, condition: str, points: int, value: str | None = None) -> LeadScoringRule:
    return LeadScoringRule(id=rule_id, name=name, field=field, condition=condition, value=value, points=points)


DEFAULT_RULES: list[LeadScoringRule] = [
    _rule("email_present", "Email Present", "email", "is_not_empty", 20),
    _rule("cold_call", "Cold Call", "source", "equals", 5, "cold_call"),
    _rule("phone_present", "Phone Present", "phone", "is_not_empty", 15),
    _rule("company_present", "Company Present", "company", "is_not_empty", 35),
    _rule("website_source", "Website Source", "source", "equals", 15, "website"),
    _rule("social_media", "Social Media", "source", "equals", 15, "social_media"),
    _rule("referral", "Referral", "source", "equals", 40, "referral"),
    _rule("trade_show", "Trade Show", "source", "equals", 20, "trade_show"),
    _rule("cold_outreach", "Cold Outreach", "source", "equals", 5, "cold_outreach"),
    _rule("enterprise_company", "Enterprise Company", "company", "contains", 15, "company"),
    _rule("tech_company", "Technology Company", "company", "contains", 8, "tech"),
]


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def category_for(percentage: int) -> str:
    if percentage >= HOT_THRESHOLD:
        return "hot"
    if percentage >= WARM_THRESHOLD:
        return "warm"
    return "cold"


class LeadScoringEngine:
    """Scores leads against an ordered list of rules.

    Args:
        rules: Rule set to score with; defaults to a copy of DEFAULT_RULES.
    """

    def __init__(self, rules: list[LeadScoringRule] | None = None) -> None:
        self._rules = [r.model_copy() for r in (rules if rules is not None else DEFAULT_RULES)]

    @classmethod
    def from_settings(cls, settings: dict | None) -> LeadScoringEngine:
        """Engine for an organization's settings, falling back to the defaults."""
        raw = (settings or {}).get("lead_scoring_rules")
        if not raw:
            return cls()
        return cls([LeadScoringRule.model_validate(r) for r in raw])

    @property
    def rules(self) -> list[LeadScoringRule]:
        return list(self._rules)

    def max_possible_score(self) -> int:
        return sum(r.points for r in self._rules if r.is_active)

    @staticmethod
    def evaluate_rule(rule: LeadScoringRule, lead: dict[str, Any]) -> bool:
        value = lead.get(rule.field)
        condition = rule.condition

        if condition == RuleCondition.IS_EMPTY.value:
            return _is_empty(value)
        if condition == RuleCondition.IS_NOT_EMPTY.value:
            return not _is_empty(value)
        if value is None or rule.value is None:
            return False
        if condition == RuleCondition.EQUALS.value:
            return str(value) == rule.value

        text, needle = str(value).lower(), rule.value.lower()
        if condition == RuleCondition.CONTAINS.value:
            return needle in text
        if condition == RuleCondition.STARTS_WITH.value:
            return text.startswith(needle)
        if condition == RuleCondition.ENDS_WITH.value:
            return text.endswith(needle)
        return False

    def calculate_score(self, lead: dict[str, Any]) -> LeadScore:
        matched = [
            rule for rule in self._rules
            if rule.is_active and self.evaluate_rule(rule, lead)
        ]
        total = sum(r.points for r in matched)
        max_score = self.max_possible_score()
        percentage = round_half_up(total / max_score * 100) if max_score > 0 else 0
        return LeadScore(
            total_score=total,
            max_possible_score=max_score,
            percentage=percentage,
            category=category_for(percentage),
            matched_rules=[
                RuleMatch(rule_id=r.id, rule_name=r.name, field=r.field, points=r.points)
                for r in matched
            ],
        )

    # ── Rule management ─────────────────────────────────────────────────────

    @staticmethod
    def validate_rule(rule: LeadScoringRule) -> list[str]:
        """Return the problems with a rule; an empty list means valid."""
        errors = []
        if not rule.id:
            errors.append("Rule id is required")
        if not rule.name:
            errors.append("Rule name is required")
        if not rule.field:
            errors.append("Rule field is required")
        if rule.condition not in {c.value for c in RuleCondition}:
            errors.append(f"Unknown condition: {rule.condition}")
        if rule.points < 0:
            errors.append("Points must be zero or greater")
        if rule.condition not in VALUELESS_CONDITIONS and not rule.value:
            errors.append(f"A value is required for condition {rule.condition}")
        return errors

    def add_rule(self, rule: LeadScoringRule) -> None:
        errors = self.validate_rule(rule)
        if errors:
            raise ValueError("; ".join(errors))
        if any(r.id == rule.id for r in self._rules):
            raise ValueError(f"Rule {rule.id} already exists")
        self._rules.append(rule)

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.id != rule_id]
        return len(self._rules) < before

    def update_rules(self, rules: list[LeadScoringRule]) -> None:
        """Replace the whole rule set after validating every rule."""
        for rule in rules:
            errors = self.validate_rule(rule)
            if errors:
                raise ValueError(f"Rule {rule.id or '?'}: " + "; ".join(errors))
        self._rules = [r.model_copy() for r in rules]
