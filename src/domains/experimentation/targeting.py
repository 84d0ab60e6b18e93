"""Targeting rules and mutual-exclusion checks.

Rules are evaluated in order against a subject's context map and combined
with logical AND. An attribute missing from the context never matches; it is
not an error.
"""

from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from .errors import ConfigurationError
from .models import ExperimentStatus, RuleOperator, TargetingRule
from .store import AssignmentStore, ExperimentRepository

logger = structlog.get_logger()

_MISSING = object()

_LIVE_STATUSES = (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED)


def validate_rules(rules: Iterable[TargetingRule]) -> None:
    """Reject malformed rules. Called at experiment creation."""
    for idx, rule in enumerate(rules):
        if not rule.attribute:
            raise ConfigurationError(f"Targeting rule {idx} has no attribute")
        op = rule.operator
        if op in (RuleOperator.EQ, RuleOperator.NEQ) and rule.value is None:
            raise ConfigurationError(f"Targeting rule {idx} ({op}) requires a value")
        if op in (RuleOperator.IN, RuleOperator.NOT_IN) and not rule.values:
            raise ConfigurationError(f"Targeting rule {idx} ({op}) requires values")
        if op == RuleOperator.RANGE:
            if rule.min_value is None and rule.max_value is None:
                raise ConfigurationError(f"Targeting rule {idx} (range) requires a bound")
            if (
                rule.min_value is not None
                and rule.max_value is not None
                and rule.min_value > rule.max_value
            ):
                raise ConfigurationError(
                    f"Targeting rule {idx} (range) has min {rule.min_value} "
                    f"> max {rule.max_value}"
                )


def rule_matches(context: Mapping[str, Any], rule: TargetingRule) -> bool:
    actual = context.get(rule.attribute, _MISSING)
    if actual is _MISSING:
        return False

    op = rule.operator
    if op == RuleOperator.EQ:
        return actual == rule.value
    if op == RuleOperator.NEQ:
        return actual != rule.value
    if op == RuleOperator.IN:
        return actual in rule.values
    if op == RuleOperator.NOT_IN:
        return actual not in rule.values
    if op == RuleOperator.RANGE:
        if isinstance(actual, bool) or not isinstance(actual, (int, float)):
            return False
        if rule.min_value is not None and actual < rule.min_value:
            return False
        if rule.max_value is not None and actual > rule.max_value:
            return False
        return True
    return False


def matches(context: Mapping[str, Any] | None, rules: Iterable[TargetingRule]) -> bool:
    """True when every rule passes. An empty rule set matches everyone."""
    ctx = context or {}
    return all(rule_matches(ctx, rule) for rule in rules)


async def excluded_by(
    store: AssignmentStore,
    subject_id: str,
    experiment_id: str,
    mutually_exclusive_ids: Iterable[str],
    repository: ExperimentRepository | None = None,
) -> bool:
    """True if the subject holds a live assignment in a listed experiment.

    With a repository, only listed experiments that are running or paused
    count; assignments left behind by completed or deleted experiments do not.
    Without one, every listed experiment is treated as live. Whichever
    experiment assigns the subject first keeps it.
    """
    for other_id in mutually_exclusive_ids:
        if other_id == experiment_id:
            continue
        if await store.get(subject_id, other_id) is None:
            continue
        if repository is not None:
            other = await repository.get(other_id)
            if other is None or other.status not in _LIVE_STATUSES:
                continue
        logger.info(
            "mutual_exclusion_blocked",
            subject_id=subject_id,
            experiment_id=experiment_id,
            blocking_experiment_id=other_id,
        )
        return True
    return False
