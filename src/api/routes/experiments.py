"""API routes for the A/B experimentation framework."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from src.api.dependencies import ExperimentServices, get_services
from src.domains.experimentation.analysis import analyze_experiment, build_report, recommend
from src.domains.experimentation.lifecycle import (
    complete_experiment,
    create_experiment,
    get_experiment,
    list_experiments,
    pause_experiment,
    start_experiment,
)
from src.domains.experimentation.models import (
    AnalysisKind,
    CreateExperimentRequest,
    Experiment,
    ExperimentStatus,
    GuardrailConfig,
    MetricSample,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/experiments", tags=["experiments"])


class AssignRequest(BaseModel):
    subject_id: str
    context: dict[str, Any] = Field(default_factory=dict)


class MetricRequest(BaseModel):
    variant_id: str
    metric_name: str
    value: float


class GuardrailCheckRequest(BaseModel):
    guardrails: list[GuardrailConfig] | None = None


def _found(experiment: Experiment | None, experiment_id: str) -> Experiment:
    if experiment is None:
        raise HTTPException(status_code=404, detail=f"Experiment '{experiment_id}' not found")
    return experiment


@router.post("")
async def create_experiment_endpoint(
    request: CreateExperimentRequest,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Create a new experiment."""
    exp = await create_experiment(services.repository, request)
    return exp.model_dump(mode="json")


@router.put("/{experiment_id}/start")
async def start_experiment_endpoint(
    experiment_id: str,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Start an experiment."""
    exp = await start_experiment(services.repository, experiment_id)
    return _found(exp, experiment_id).model_dump(mode="json")


@router.put("/{experiment_id}/pause")
async def pause_experiment_endpoint(
    experiment_id: str,
    reason: str | None = Query(None),
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Pause an experiment."""
    exp = await pause_experiment(services.repository, experiment_id, reason=reason)
    return _found(exp, experiment_id).model_dump(mode="json")


@router.put("/{experiment_id}/complete")
async def complete_experiment_endpoint(
    experiment_id: str,
    reason: str | None = Query(None),
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Complete an experiment and attach a final report on its primary metric."""
    exp = _found(await get_experiment(services.repository, experiment_id), experiment_id)

    report = None
    if exp.primary_metric and exp.control is not None:
        comparisons = await analyze_experiment(
            services.aggregator, exp, exp.primary_metric, config=services.config
        )
        report = build_report(exp, exp.primary_metric, comparisons)

    completed = await complete_experiment(
        services.repository,
        experiment_id,
        reason=reason,
        report=report.model_dump(mode="json") if report else None,
    )
    return _found(completed, experiment_id).model_dump(mode="json")


@router.get("")
async def list_experiments_endpoint(
    status: ExperimentStatus | None = Query(None),
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """List experiments, optionally filtered by status."""
    experiments = await list_experiments(services.repository, status)
    return {
        "experiments": [e.model_dump(mode="json") for e in experiments],
        "count": len(experiments),
    }


@router.get("/{experiment_id}")
async def get_experiment_endpoint(
    experiment_id: str,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Get experiment details."""
    exp = await get_experiment(services.repository, experiment_id)
    return _found(exp, experiment_id).model_dump(mode="json")


@router.post("/{experiment_id}/assign")
async def assign_endpoint(
    experiment_id: str,
    request: AssignRequest,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Assign a subject to a variant. ``assigned`` is false when the subject is
    not eligible (targeting, traffic, exclusion or experiment not running)."""
    exp = _found(await get_experiment(services.repository, experiment_id), experiment_id)
    assignment = await services.assignment_service.assign(
        exp, request.subject_id, request.context
    )
    if assignment is None:
        return {"assigned": False, "experiment_id": experiment_id, "variant_id": None}
    return {"assigned": True, **assignment.model_dump(mode="json")}


@router.get("/{experiment_id}/assignments/{subject_id}")
async def get_assignment_endpoint(
    experiment_id: str,
    subject_id: str,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    assignment = await services.assignment_service.get_assignment(subject_id, experiment_id)
    if assignment is None:
        raise HTTPException(status_code=404, detail="Assignment not found")
    return assignment.model_dump(mode="json")


@router.post("/{experiment_id}/metrics")
async def record_metric_endpoint(
    experiment_id: str,
    request: MetricRequest,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Record one metric observation for a variant."""
    exp = _found(await get_experiment(services.repository, experiment_id), experiment_id)
    if request.variant_id not in {v.variant_id for v in exp.variants}:
        raise HTTPException(status_code=400, detail=f"Unknown variant '{request.variant_id}'")
    await services.aggregator.record(
        MetricSample(
            experiment_id=experiment_id,
            variant_id=request.variant_id,
            metric_name=request.metric_name,
            value=request.value,
        )
    )
    return {"recorded": True}


@router.get("/{experiment_id}/results")
async def get_results_endpoint(
    experiment_id: str,
    metric: str | None = Query(None),
    kind: AnalysisKind = Query(AnalysisKind.CONVERSION),
    confidence: float | None = Query(None, gt=0, lt=1),
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Get statistical analysis results for an experiment."""
    exp = _found(await get_experiment(services.repository, experiment_id), experiment_id)
    metric_name = metric or exp.primary_metric or services.config.analysis.conversion_metric
    comparisons = await analyze_experiment(
        services.aggregator, exp, metric_name, kind, confidence, services.config
    )
    return {
        "experiment_id": experiment_id,
        "metric_name": metric_name,
        "comparisons": [c.model_dump(mode="json") for c in comparisons],
        "recommendation": recommend(comparisons),
    }


@router.post("/{experiment_id}/guardrails/check")
async def check_guardrails_endpoint(
    experiment_id: str,
    request: GuardrailCheckRequest | None = None,
    services: ExperimentServices = Depends(get_services),
) -> dict:
    """Run a guardrail check now, acting on violations."""
    _found(await get_experiment(services.repository, experiment_id), experiment_id)
    configs = request.guardrails if request else None
    results = await services.guardrail_monitor.check_guardrails(experiment_id, configs)
    return {
        "guardrails": [r.model_dump(mode="json") for r in results],
        "any_breached": any(r.violated for r in results),
    }
