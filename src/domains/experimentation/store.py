"""Collaborator interfaces and in-memory implementations.

The engine never touches storage directly: assignments, metric aggregates and
experiment state flow through the protocols below. The in-memory versions back
tests and the default service wiring; ``sql_store`` holds the PostgreSQL ones.
"""

import asyncio
import math
from collections import defaultdict
from typing import Protocol

import structlog

from .errors import AssignmentConflictError
from .models import (
    Assignment,
    Experiment,
    ExperimentStatus,
    GuardrailResult,
    MetricSample,
    VariantCounts,
    VariantStats,
)

logger = structlog.get_logger()


class AssignmentStore(Protocol):
    async def get(self, subject_id: str, experiment_id: str) -> Assignment | None: ...

    async def put(self, assignment: Assignment) -> None:
        """Persist an assignment.

        Idempotent on identical content; raises AssignmentConflictError when a
        different variant is already stored for the key.
        """
        ...


class MetricsAggregator(Protocol):
    async def get_variant_counts(self, experiment_id: str, variant_id: str) -> VariantCounts: ...

    async def get_variant_stats(
        self, experiment_id: str, variant_id: str, metric: str
    ) -> VariantStats: ...


class MetricsRecorder(Protocol):
    async def record(self, sample: MetricSample) -> None: ...


class ExperimentRepository(Protocol):
    async def get(self, experiment_id: str) -> Experiment | None: ...

    async def save(self, experiment: Experiment) -> None: ...

    async def list_experiments(
        self, status: ExperimentStatus | None = None
    ) -> list[Experiment]: ...


class Notifier(Protocol):
    async def notify(self, experiment: Experiment, violations: list[GuardrailResult]) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryAssignmentStore:
    """Assignment store keyed by (subject_id, experiment_id).

    Writes to the same key are serialized by a per-key lock; different keys
    never contend.
    """

    def __init__(self) -> None:
        self._assignments: dict[tuple[str, str], Assignment] = {}
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, subject_id: str, experiment_id: str) -> Assignment | None:
        return self._assignments.get((subject_id, experiment_id))

    async def put(self, assignment: Assignment) -> None:
        key = (assignment.subject_id, assignment.experiment_id)
        async with self._locks[key]:
            existing = self._assignments.get(key)
            if existing is None:
                self._assignments[key] = assignment
                return
            if existing.variant_id != assignment.variant_id:
                raise AssignmentConflictError(
                    assignment.subject_id, assignment.experiment_id, existing.variant_id
                )

    def __len__(self) -> int:
        return len(self._assignments)


class InMemoryMetricsAggregator:
    """Append-only sample log with on-demand aggregation.

    Conversion counts come from ``conversion_metric`` samples: every sample is
    an exposure, samples with value > 0 are successes.
    """

    def __init__(self, conversion_metric: str = "conversion") -> None:
        self._conversion_metric = conversion_metric
        self._samples: defaultdict[tuple[str, str, str], list[float]] = defaultdict(list)

    async def record(self, sample: MetricSample) -> None:
        key = (sample.experiment_id, sample.variant_id, sample.metric_name)
        self._samples[key].append(float(sample.value))

    async def get_variant_counts(self, experiment_id: str, variant_id: str) -> VariantCounts:
        values = self._samples.get((experiment_id, variant_id, self._conversion_metric), [])
        return VariantCounts(n=len(values), successes=sum(1 for v in values if v > 0))

    async def get_variant_stats(
        self, experiment_id: str, variant_id: str, metric: str
    ) -> VariantStats:
        values = self._samples.get((experiment_id, variant_id, metric), [])
        n = len(values)
        if n == 0:
            return VariantStats(mean=0.0, variance=0.0, n=0)
        mean = math.fsum(values) / n
        variance = math.fsum((x - mean) ** 2 for x in values) / (n - 1) if n > 1 else 0.0
        return VariantStats(mean=mean, variance=variance, n=n)


class InMemoryExperimentRepository:
    def __init__(self) -> None:
        self._experiments: dict[str, Experiment] = {}

    async def get(self, experiment_id: str) -> Experiment | None:
        return self._experiments.get(experiment_id)

    async def save(self, experiment: Experiment) -> None:
        self._experiments[experiment.experiment_id] = experiment

    async def list_experiments(self, status: ExperimentStatus | None = None) -> list[Experiment]:
        experiments = list(self._experiments.values())
        if status:
            experiments = [e for e in experiments if e.status == status]
        return experiments


class LoggingNotifier:
    """Notifier that only writes a structured log line.

    Real delivery (paging, chat, email) plugs in behind the same protocol.
    """

    async def notify(self, experiment: Experiment, violations: list[GuardrailResult]) -> None:
        logger.warning(
            "guardrail_alert",
            experiment_id=experiment.experiment_id,
            metrics=[v.metric_name for v in violations],
            variants=[v.variant_id for v in violations],
        )
