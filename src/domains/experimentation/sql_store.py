"""PostgreSQL-backed collaborators.

Each class takes an ``async_sessionmaker`` and opens one short session per
call, so they can be shared across requests and the guardrail loop.
"""

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import ExperimentAssignmentDB, ExperimentDB, ExperimentMetricDB

from .errors import AssignmentConflictError
from .models import (
    Assignment,
    Experiment,
    ExperimentStatus,
    MetricSample,
    VariantCounts,
    VariantStats,
)

logger = structlog.get_logger()


class SqlAssignmentStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, subject_id: str, experiment_id: str) -> Assignment | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExperimentAssignmentDB).where(
                    ExperimentAssignmentDB.subject_id == subject_id,
                    ExperimentAssignmentDB.experiment_id == experiment_id,
                )
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return Assignment(
            experiment_id=row.experiment_id,
            subject_id=row.subject_id,
            variant_id=row.variant_id,
            assigned_at=row.assigned_at,
        )

    async def put(self, assignment: Assignment) -> None:
        """Insert unless present, then read back the stored variant.

        The unique constraint makes concurrent writers converge on one row;
        a loser with a different variant gets AssignmentConflictError.
        """
        async with self._session_factory() as session:
            stmt = (
                pg_insert(ExperimentAssignmentDB)
                .values(
                    subject_id=assignment.subject_id,
                    experiment_id=assignment.experiment_id,
                    variant_id=assignment.variant_id,
                    assigned_at=assignment.assigned_at,
                )
                .on_conflict_do_nothing(constraint="uq_subject_experiment")
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(ExperimentAssignmentDB.variant_id).where(
                    ExperimentAssignmentDB.subject_id == assignment.subject_id,
                    ExperimentAssignmentDB.experiment_id == assignment.experiment_id,
                )
            )
            stored_variant = result.scalar_one()

        if stored_variant != assignment.variant_id:
            raise AssignmentConflictError(
                assignment.subject_id, assignment.experiment_id, stored_variant
            )


class SqlMetricsAggregator:
    """Aggregates raw ``experiment_metrics`` rows in the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        conversion_metric: str = "conversion",
    ) -> None:
        self._session_factory = session_factory
        self._conversion_metric = conversion_metric

    async def record(self, sample: MetricSample) -> None:
        async with self._session_factory() as session:
            session.add(
                ExperimentMetricDB(
                    experiment_id=sample.experiment_id,
                    variant_id=sample.variant_id,
                    metric_name=sample.metric_name,
                    metric_value=sample.value,
                    recorded_at=sample.timestamp,
                )
            )
            await session.commit()

    async def get_variant_counts(self, experiment_id: str, variant_id: str) -> VariantCounts:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(ExperimentMetricDB.id),
                    func.sum(case((ExperimentMetricDB.metric_value > 0, 1), else_=0)),
                ).where(
                    ExperimentMetricDB.experiment_id == experiment_id,
                    ExperimentMetricDB.variant_id == variant_id,
                    ExperimentMetricDB.metric_name == self._conversion_metric,
                )
            )
            n, successes = result.one()
        return VariantCounts(n=int(n or 0), successes=int(successes or 0))

    async def get_variant_stats(
        self, experiment_id: str, variant_id: str, metric: str
    ) -> VariantStats:
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(ExperimentMetricDB.id),
                    func.avg(ExperimentMetricDB.metric_value),
                    func.var_samp(ExperimentMetricDB.metric_value),
                ).where(
                    ExperimentMetricDB.experiment_id == experiment_id,
                    ExperimentMetricDB.variant_id == variant_id,
                    ExperimentMetricDB.metric_name == metric,
                )
            )
            n, mean, variance = result.one()
        # var_samp is NULL for fewer than two rows
        return VariantStats(
            mean=float(mean or 0.0),
            variance=max(float(variance or 0.0), 0.0),
            n=int(n or 0),
        )


class SqlExperimentRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, experiment_id: str) -> Experiment | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExperimentDB).where(ExperimentDB.experiment_id == experiment_id)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return Experiment.model_validate(row.payload)

    async def save(self, experiment: Experiment) -> None:
        payload = experiment.model_dump(mode="json")
        stmt = pg_insert(ExperimentDB).values(
            experiment_id=experiment.experiment_id,
            name=experiment.name,
            status=experiment.status.value,
            payload=payload,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ExperimentDB.experiment_id],
            set_={
                "name": stmt.excluded.name,
                "status": stmt.excluded.status,
                "payload": stmt.excluded.payload,
                "updated_at": func.now(),
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug(
            "experiment_saved", experiment_id=experiment.experiment_id, status=experiment.status
        )

    async def list_experiments(self, status: ExperimentStatus | None = None) -> list[Experiment]:
        stmt = select(ExperimentDB).order_by(ExperimentDB.created_at.desc())
        if status:
            stmt = stmt.where(ExperimentDB.status == status.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [Experiment.model_validate(row.payload) for row in rows]
