"""Experiment lifecycle: creation-time validation and status transitions."""

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

import structlog

from .errors import ConfigurationError
from .models import CreateExperimentRequest, Experiment, ExperimentStatus, GuardrailConfig
from .store import ExperimentRepository
from .targeting import validate_rules

logger = structlog.get_logger()

_WEIGHT_TOLERANCE = 1e-6

# Allowed source statuses for each target status
_TRANSITIONS: dict[ExperimentStatus, tuple[ExperimentStatus, ...]] = {
    ExperimentStatus.RUNNING: (ExperimentStatus.DRAFT, ExperimentStatus.PAUSED),
    ExperimentStatus.PAUSED: (ExperimentStatus.RUNNING,),
    ExperimentStatus.COMPLETED: (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED),
}

_EVENT_NAMES = {
    ExperimentStatus.RUNNING: "experiment_started",
    ExperimentStatus.PAUSED: "experiment_paused",
    ExperimentStatus.COMPLETED: "experiment_completed",
}


def validate_experiment(experiment: Experiment) -> None:
    """Fail fast on configuration that would break assignment or monitoring."""
    if not experiment.variants:
        raise ConfigurationError("Experiment must define at least one variant")

    ids = [v.variant_id for v in experiment.variants]
    if len(set(ids)) != len(ids):
        raise ConfigurationError(f"Duplicate variant ids: {ids}")

    total = sum(v.weight for v in experiment.variants)
    if abs(total - 100.0) > _WEIGHT_TOLERANCE:
        raise ConfigurationError(f"Variant weights must sum to 100, got {total}")

    controls = [v.variant_id for v in experiment.variants if v.is_control]
    if len(controls) != 1:
        raise ConfigurationError(
            f"Exactly one variant must be flagged control, got {len(controls)}"
        )

    validate_rules(experiment.targeting_rules)

    if experiment.experiment_id in experiment.mutually_exclusive_with:
        raise ConfigurationError("An experiment cannot be mutually exclusive with itself")

    validate_guardrail_metrics(experiment, experiment.guardrails)


def validate_guardrail_metrics(
    experiment: Experiment, guardrails: Iterable[GuardrailConfig]
) -> None:
    known_metrics = set(experiment.metrics)
    if experiment.primary_metric:
        known_metrics.add(experiment.primary_metric)
    for guardrail in guardrails:
        if guardrail.metric_name not in known_metrics:
            raise ConfigurationError(
                f"Guardrail references unknown metric '{guardrail.metric_name}'"
            )


async def create_experiment(
    repository: ExperimentRepository,
    request: CreateExperimentRequest,
) -> Experiment:
    """Create a new experiment in draft status."""
    experiment = Experiment(
        experiment_id=f"exp_{uuid.uuid4().hex[:12]}",
        status=ExperimentStatus.DRAFT,
        created_at=datetime.now(UTC),
        **request.model_dump(),
    )
    validate_experiment(experiment)
    await repository.save(experiment)

    logger.info(
        "experiment_created",
        experiment_id=experiment.experiment_id,
        name=experiment.name,
        variants=len(experiment.variants),
    )
    return experiment


async def get_experiment(
    repository: ExperimentRepository, experiment_id: str
) -> Experiment | None:
    return await repository.get(experiment_id)


async def list_experiments(
    repository: ExperimentRepository, status: ExperimentStatus | None = None
) -> list[Experiment]:
    return await repository.list_experiments(status)


async def start_experiment(
    repository: ExperimentRepository, experiment_id: str
) -> Experiment | None:
    """Start an experiment (draft/paused -> running)."""
    return await _transition(repository, experiment_id, ExperimentStatus.RUNNING)


async def pause_experiment(
    repository: ExperimentRepository, experiment_id: str, reason: str | None = None
) -> Experiment | None:
    """Pause an experiment (running -> paused). Assignments stop, existing ones stay."""
    return await _transition(repository, experiment_id, ExperimentStatus.PAUSED, reason=reason)


async def complete_experiment(
    repository: ExperimentRepository,
    experiment_id: str,
    reason: str | None = None,
    report: dict | None = None,
) -> Experiment | None:
    """Complete an experiment, recording why and the final report if given."""
    return await _transition(
        repository, experiment_id, ExperimentStatus.COMPLETED, reason=reason, report=report
    )


async def _transition(
    repository: ExperimentRepository,
    experiment_id: str,
    target: ExperimentStatus,
    reason: str | None = None,
    report: dict | None = None,
) -> Experiment | None:
    experiment = await repository.get(experiment_id)
    if not experiment:
        return None
    if experiment.status not in _TRANSITIONS[target]:
        logger.warning(
            "invalid_state_transition",
            experiment_id=experiment_id,
            current=experiment.status,
            target=target,
        )
        return experiment

    now = datetime.now(UTC)
    updates: dict = {"status": target}
    if target == ExperimentStatus.RUNNING and experiment.start_date is None:
        updates["start_date"] = now
    if target == ExperimentStatus.COMPLETED:
        updates["end_date"] = now
        if report is not None:
            updates["report"] = report
    if reason is not None:
        updates["stop_reason"] = reason

    updated = experiment.model_copy(update=updates)
    await repository.save(updated)

    logger.info(
        _EVENT_NAMES[target],
        experiment_id=experiment_id,
        previous=experiment.status,
        reason=reason,
    )
    return updated
