"""Tests for targeting rules and mutual exclusion."""

import pytest

from src.domains.experimentation.errors import ConfigurationError
from src.domains.experimentation.models import (
    Assignment,
    ExperimentStatus,
    RuleOperator,
    TargetingRule,
)
from src.domains.experimentation.targeting import (
    excluded_by,
    matches,
    rule_matches,
    validate_rules,
)
from tests.conftest import make_experiment


class TestRuleMatches:
    def test_eq_and_neq(self):
        rule = TargetingRule(attribute="country", operator=RuleOperator.EQ, value="US")
        assert rule_matches({"country": "US"}, rule)
        assert not rule_matches({"country": "HT"}, rule)

        neq = TargetingRule(attribute="country", operator=RuleOperator.NEQ, value="US")
        assert rule_matches({"country": "HT"}, neq)
        assert not rule_matches({"country": "US"}, neq)

    def test_in_and_not_in(self):
        rule = TargetingRule(attribute="plan", operator=RuleOperator.IN, values=["pro", "team"])
        assert rule_matches({"plan": "pro"}, rule)
        assert not rule_matches({"plan": "free"}, rule)

        not_in = TargetingRule(attribute="plan", operator=RuleOperator.NOT_IN, values=["free"])
        assert rule_matches({"plan": "pro"}, not_in)
        assert not rule_matches({"plan": "free"}, not_in)

    def test_range_is_inclusive(self):
        rule = TargetingRule(
            attribute="age", operator=RuleOperator.RANGE, min_value=18, max_value=65
        )
        assert rule_matches({"age": 18}, rule)
        assert rule_matches({"age": 65}, rule)
        assert rule_matches({"age": 30.5}, rule)
        assert not rule_matches({"age": 17}, rule)
        assert not rule_matches({"age": 66}, rule)

    def test_open_ended_range(self):
        rule = TargetingRule(attribute="sessions", operator=RuleOperator.RANGE, min_value=10)
        assert rule_matches({"sessions": 1000}, rule)
        assert not rule_matches({"sessions": 9}, rule)

    def test_range_ignores_non_numeric(self):
        rule = TargetingRule(attribute="age", operator=RuleOperator.RANGE, min_value=0)
        assert not rule_matches({"age": "30"}, rule)
        assert not rule_matches({"age": True}, rule)

    def test_missing_attribute_never_matches(self):
        for rule in (
            TargetingRule(attribute="country", operator=RuleOperator.EQ, value="US"),
            TargetingRule(attribute="country", operator=RuleOperator.NEQ, value="US"),
            TargetingRule(attribute="country", operator=RuleOperator.NOT_IN, values=["US"]),
        ):
            assert not rule_matches({}, rule)


class TestMatches:
    def test_empty_rules_match_everyone(self):
        assert matches({}, [])
        assert matches(None, [])

    def test_rules_are_anded(self):
        rules = [
            TargetingRule(attribute="country", operator=RuleOperator.EQ, value="US"),
            TargetingRule(attribute="age", operator=RuleOperator.RANGE, min_value=18),
        ]
        assert matches({"country": "US", "age": 30}, rules)
        assert not matches({"country": "US", "age": 12}, rules)
        assert not matches({"country": "US"}, rules)

    def test_none_context_with_rules(self):
        rules = [TargetingRule(attribute="country", operator=RuleOperator.EQ, value="US")]
        assert not matches(None, rules)


class TestValidateRules:
    def test_valid_rules_pass(self):
        validate_rules(
            [
                TargetingRule(attribute="country", operator=RuleOperator.EQ, value="US"),
                TargetingRule(attribute="plan", operator=RuleOperator.IN, values=["pro"]),
                TargetingRule(attribute="age", operator=RuleOperator.RANGE, max_value=40),
            ]
        )

    @pytest.mark.parametrize(
        "rule",
        [
            TargetingRule(attribute="", operator=RuleOperator.EQ, value="US"),
            TargetingRule(attribute="country", operator=RuleOperator.EQ),
            TargetingRule(attribute="plan", operator=RuleOperator.IN),
            TargetingRule(attribute="age", operator=RuleOperator.RANGE),
            TargetingRule(attribute="age", operator=RuleOperator.RANGE, min_value=5, max_value=1),
        ],
    )
    def test_malformed_rules_rejected(self, rule):
        with pytest.raises(ConfigurationError):
            validate_rules([rule])


class TestMutualExclusion:
    @pytest.mark.asyncio
    async def test_not_excluded_without_assignments(self, assignment_store):
        assert not await excluded_by(assignment_store, "user-1", "exp-a", ["exp-b"])

    @pytest.mark.asyncio
    async def test_excluded_when_assigned_elsewhere(self, assignment_store):
        await assignment_store.put(
            Assignment(experiment_id="exp-b", subject_id="user-1", variant_id="control")
        )
        assert await excluded_by(assignment_store, "user-1", "exp-a", ["exp-b"])
        assert not await excluded_by(assignment_store, "user-2", "exp-a", ["exp-b"])

    @pytest.mark.asyncio
    async def test_own_assignment_does_not_exclude(self, assignment_store):
        await assignment_store.put(
            Assignment(experiment_id="exp-a", subject_id="user-1", variant_id="control")
        )
        assert not await excluded_by(assignment_store, "user-1", "exp-a", ["exp-a"])

    @pytest.mark.parametrize(
        "status,excluded",
        [
            (ExperimentStatus.RUNNING, True),
            (ExperimentStatus.PAUSED, True),
            (ExperimentStatus.COMPLETED, False),
            (ExperimentStatus.DRAFT, False),
        ],
    )
    @pytest.mark.asyncio
    async def test_only_live_experiments_exclude(
        self, assignment_store, repository, status, excluded
    ):
        await repository.save(make_experiment(experiment_id="exp-b", status=status))
        await assignment_store.put(
            Assignment(experiment_id="exp-b", subject_id="user-1", variant_id="control")
        )
        result = await excluded_by(assignment_store, "user-1", "exp-a", ["exp-b"], repository)
        assert result is excluded

    @pytest.mark.asyncio
    async def test_unknown_experiment_does_not_exclude(self, assignment_store, repository):
        await assignment_store.put(
            Assignment(experiment_id="exp-gone", subject_id="user-1", variant_id="control")
        )
        assert not await excluded_by(
            assignment_store, "user-1", "exp-a", ["exp-gone"], repository
        )
