"""Process-wide experimentation services, injected into routes via Depends.

Tests swap the whole bundle with ``app.dependency_overrides[get_services]``.
"""

from dataclasses import dataclass

import structlog

from src.config import settings
from src.domains.experimentation.assignment import AssignmentService
from src.domains.experimentation.bandit import BanditRegistry
from src.domains.experimentation.config import ExperimentationConfig
from src.domains.experimentation.guardrails import GuardrailMonitor
from src.domains.experimentation.store import (
    AssignmentStore,
    ExperimentRepository,
    InMemoryAssignmentStore,
    InMemoryExperimentRepository,
    InMemoryMetricsAggregator,
    MetricsAggregator,
)

logger = structlog.get_logger()


@dataclass
class ExperimentServices:
    config: ExperimentationConfig
    repository: ExperimentRepository
    assignments: AssignmentStore
    aggregator: MetricsAggregator
    assignment_service: AssignmentService
    guardrail_monitor: GuardrailMonitor
    bandits: BanditRegistry


def build_services(
    config: ExperimentationConfig | None = None, backend: str | None = None
) -> ExperimentServices:
    config = config or ExperimentationConfig.from_env()
    backend = backend or settings.storage_backend
    conversion_metric = config.analysis.conversion_metric

    if backend == "postgres":
        from src.db.database import async_session_factory
        from src.domains.experimentation.sql_store import (
            SqlAssignmentStore,
            SqlExperimentRepository,
            SqlMetricsAggregator,
        )

        repository = SqlExperimentRepository(async_session_factory)
        assignments = SqlAssignmentStore(async_session_factory)
        aggregator = SqlMetricsAggregator(async_session_factory, conversion_metric)
    elif backend == "memory":
        repository = InMemoryExperimentRepository()
        assignments = InMemoryAssignmentStore()
        aggregator = InMemoryMetricsAggregator(conversion_metric)
    else:
        raise ValueError(f"Unknown storage backend '{backend}'")

    logger.info("experiment_services_built", backend=backend)
    return ExperimentServices(
        config=config,
        repository=repository,
        assignments=assignments,
        aggregator=aggregator,
        assignment_service=AssignmentService(assignments, config, repository),
        guardrail_monitor=GuardrailMonitor(repository, aggregator, config=config),
        bandits=BanditRegistry(config),
    )


_services: ExperimentServices | None = None


def get_services() -> ExperimentServices:
    """Get or create the global services bundle."""
    global _services
    if _services is None:
        _services = build_services()
    return _services
