"""Tests for rule-based lead scoring."""

from __future__ import annotations

import pytest

from src.fulqrun.crm.scoring import (
    DEFAULT_RULES,
    LeadScoringEngine,
    LeadScoringRule,
    category_for,
    round_half_up,
)


def _rule(**overrides) -> LeadScoringRule:
    values = {
        "id": "r1",
        "name": "Rule",
        "field": "source",
        "condition": "equals",
        "value": "referral",
        "points": 10,
    }
    values.update(overrides)
    return LeadScoringRule(**values)


class TestDefaultRules:
    def test_max_possible_score_sums_active_rules(self):
        engine = LeadScoringEngine()
        assert engine.max_possible_score() == sum(r.points for r in DEFAULT_RULES) == 193

    def test_empty_lead_scores_zero_and_cold(self):
        score = LeadScoringEngine().calculate_score({})
        assert score.total_score == 0
        assert score.percentage == 0
        assert score.category == "cold"
        assert score.matched_rules == []

    def test_referral_with_full_contact_details(self):
        lead = {"email": "a@b.co", "phone": "555", "company": "Acme", "source": "referral"}
        score = LeadScoringEngine().calculate_score(lead)
        # 20 + 15 + 35 + 40 of 193
        assert score.total_score == 110
        assert score.percentage == 57
        assert score.category == "warm"
        assert {m.rule_id for m in score.matched_rules} == {
            "email_present", "phone_present", "company_present", "referral",
        }

    def test_contains_is_case_insensitive(self):
        score = LeadScoringEngine().calculate_score({"company": "NovaTech Company"})
        matched = {m.rule_id for m in score.matched_rules}
        assert {"company_present", "enterprise_company", "tech_company"} <= matched

    def test_blank_strings_count_as_empty(self):
        score = LeadScoringEngine().calculate_score({"email": "   ", "phone": ""})
        assert score.total_score == 0

    def test_default_rules_are_not_shared_between_engines(self):
        engine = LeadScoringEngine()
        engine.remove_rule("referral")
        assert any(r.id == "referral" for r in LeadScoringEngine().rules)


class TestConditions:
    @pytest.mark.parametrize(
        "condition,value,field_value,expected",
        [
            ("equals", "website", "website", True),
            ("equals", "website", "Website", False),
            ("contains", "pharma", "Big Pharma Inc", True),
            ("starts_with", "dr", "Dr. Who", True),
            ("ends_with", ".org", "charity.ORG", True),
            ("ends_with", ".org", "charity.com", False),
        ],
    )
    def test_value_conditions(self, condition, value, field_value, expected):
        rule = _rule(field="x", condition=condition, value=value)
        assert LeadScoringEngine.evaluate_rule(rule, {"x": field_value}) is expected

    def test_is_empty_matches_missing_field(self):
        rule = _rule(condition="is_empty", value=None)
        assert LeadScoringEngine.evaluate_rule(rule, {}) is True

    def test_missing_field_never_matches_value_condition(self):
        assert LeadScoringEngine.evaluate_rule(_rule(), {}) is False

    def test_unknown_condition_never_matches(self):
        rule = _rule(condition="regex")
        assert LeadScoringEngine.evaluate_rule(rule, {"source": "referral"}) is False


class TestPercentageAndCategory:
    def test_half_rounds_up(self):
        assert round_half_up(64.5) == 65
        assert round_half_up(34.49) == 34

    def test_category_thresholds(self):
        assert category_for(65) == "hot"
        assert category_for(64) == "warm"
        assert category_for(35) == "warm"
        assert category_for(34) == "cold"

    def test_inactive_rules_excluded_from_total_and_max(self):
        engine = LeadScoringEngine([
            _rule(id="a", points=10),
            _rule(id="b", points=30, is_active=False),
        ])
        score = engine.calculate_score({"source": "referral"})
        assert score.max_possible_score == 10
        assert score.percentage == 100
        assert score.category == "hot"

    def test_no_active_rules_gives_zero_percentage(self):
        engine = LeadScoringEngine([_rule(is_active=False)])
        assert engine.calculate_score({"source": "referral"}).percentage == 0


class TestRuleManagement:
    def test_add_rule_rejects_duplicate_id(self):
        engine = LeadScoringEngine([_rule()])
        with pytest.raises(ValueError, match="already exists"):
            engine.add_rule(_rule())

    def test_add_rule_requires_value_for_value_conditions(self):
        engine = LeadScoringEngine([])
        with pytest.raises(ValueError, match="value is required"):
            engine.add_rule(_rule(value=None))

    def test_validate_rule_collects_every_problem(self):
        errors = LeadScoringEngine.validate_rule(_rule(name="", condition="like", points=-1))
        assert "Rule name is required" in errors
        assert "Unknown condition: like" in errors
        assert "Points must be zero or greater" in errors

    def test_remove_rule(self):
        engine = LeadScoringEngine([_rule()])
        assert engine.remove_rule("r1") is True
        assert engine.remove_rule("r1") is False
        assert engine.max_possible_score() == 0

    def test_update_rules_is_all_or_nothing(self):
        engine = LeadScoringEngine([_rule()])
        with pytest.raises(ValueError):
            engine.update_rules([_rule(id="ok"), _rule(id="bad", condition="nope")])
        assert [r.id for r in engine.rules] == ["r1"]

    def test_from_settings_uses_stored_rules(self):
        settings = {"lead_scoring_rules": [_rule(id="custom", points=50).model_dump()]}
        engine = LeadScoringEngine.from_settings(settings)
        assert [r.id for r in engine.rules] == ["custom"]

    def test_from_settings_falls_back_to_defaults(self):
        assert len(LeadScoringEngine.from_settings(None).rules) == len(DEFAULT_RULES)
        assert len(LeadScoringEngine.from_settings({"lead_scoring_rules": []}).rules) == len(DEFAULT_RULES)
