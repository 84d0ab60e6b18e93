"""Assignment engine: stable subject -> variant decisions.

Allocation math is pure (see ``hashing``); the only shared mutable state is
the injected assignment store. Concurrent first-time requests for one key
always compute the same variant, so the store only has to absorb the
duplicate write. Requests for one subject that involve mutual exclusion are
serialized within this process; separate processes can still race.
"""

import asyncio
import weakref
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from .config import ExperimentationConfig, default_config
from .errors import AssignmentConflictError, ExperimentationError, TransientCollaboratorError
from .hashing import bucket, make_salt, select_variant
from .models import Assignment, Experiment, ExperimentStatus
from .store import AssignmentStore, ExperimentRepository
from .targeting import excluded_by, matches

logger = structlog.get_logger()


class AssignmentService:
    def __init__(
        self,
        store: AssignmentStore,
        config: ExperimentationConfig | None = None,
        repository: ExperimentRepository | None = None,
    ) -> None:
        self._store = store
        self._config = config or default_config
        # Resolves the status of mutually exclusive experiments
        self._repository = repository
        # Held only while a subject is being assigned; unused locks are collected
        self._subject_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def assign(
        self,
        experiment: Experiment,
        subject_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> Assignment | None:
        """Assign a subject to a variant deterministically.

        Returns None when the experiment is not running or the subject is
        filtered out by targeting, traffic allocation or mutual exclusion.
        """
        experiment_id = experiment.experiment_id
        if experiment.status != ExperimentStatus.RUNNING:
            return None

        # Existing assignment is immutable
        existing = await self.get_assignment(subject_id, experiment_id)
        if existing:
            return existing

        if not matches(context, experiment.targeting_rules):
            logger.debug("targeting_rejected", subject_id=subject_id, experiment_id=experiment_id)
            return None

        purposes = self._config.assignment
        traffic_bucket = bucket(subject_id, make_salt(experiment_id, purposes.traffic_purpose))
        if traffic_bucket >= experiment.traffic_pct:
            return None

        if not experiment.mutually_exclusive_with:
            return await self._persist(experiment, subject_id)

        # The exclusion check and the write must not interleave for one subject
        async with self._subject_lock(subject_id):
            if await self._excluded(experiment, subject_id):
                return None
            return await self._persist(experiment, subject_id)

    async def _excluded(self, experiment: Experiment, subject_id: str) -> bool:
        experiment_id = experiment.experiment_id
        try:
            return await excluded_by(
                self._store,
                subject_id,
                experiment_id,
                experiment.mutually_exclusive_with,
                self._repository,
            )
        except ExperimentationError:
            raise
        except Exception as exc:
            raise self._store_failure("exclusion_check", subject_id, experiment_id, exc) from exc

    async def _persist(self, experiment: Experiment, subject_id: str) -> Assignment | None:
        experiment_id = experiment.experiment_id
        purposes = self._config.assignment
        variant_bucket = bucket(subject_id, make_salt(experiment_id, purposes.variant_purpose))
        variant = select_variant(experiment.variants, variant_bucket)
        if variant is None:
            return None

        assignment = Assignment(
            experiment_id=experiment_id,
            subject_id=subject_id,
            variant_id=variant.variant_id,
            assigned_at=datetime.now(UTC),
        )
        try:
            await self._store.put(assignment)
        except AssignmentConflictError as conflict:
            # Someone else persisted first; theirs is the binding one
            logger.warning(
                "assignment_conflict",
                subject_id=subject_id,
                experiment_id=experiment_id,
                computed_variant_id=variant.variant_id,
                existing_variant_id=conflict.existing_variant_id,
            )
            stored = await self.get_assignment(subject_id, experiment_id)
            if stored is None:
                raise TransientCollaboratorError(
                    f"Assignment store reported a conflict for {subject_id}/{experiment_id} "
                    "but returned no assignment"
                ) from conflict
            return stored
        except ExperimentationError:
            raise
        except Exception as exc:
            raise self._store_failure("put", subject_id, experiment_id, exc) from exc

        logger.info(
            "user_assigned",
            subject_id=subject_id,
            experiment_id=experiment_id,
            variant_id=variant.variant_id,
            variant_bucket=variant_bucket,
        )
        return assignment

    def _subject_lock(self, subject_id: str) -> asyncio.Lock:
        lock = self._subject_locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._subject_locks[subject_id] = lock
        return lock

    async def get_assignment(self, subject_id: str, experiment_id: str) -> Assignment | None:
        """Retrieve the persisted assignment for a subject, if any."""
        try:
            return await self._store.get(subject_id, experiment_id)
        except ExperimentationError:
            raise
        except Exception as exc:
            raise self._store_failure("get", subject_id, experiment_id, exc) from exc

    @staticmethod
    def _store_failure(
        operation: str, subject_id: str, experiment_id: str, exc: Exception
    ) -> TransientCollaboratorError:
        logger.error(
            "assignment_store_failed",
            operation=operation,
            subject_id=subject_id,
            experiment_id=experiment_id,
            error=str(exc),
        )
        return TransientCollaboratorError(
            f"Assignment store {operation} failed for {subject_id}/{experiment_id}: {exc}"
        )
