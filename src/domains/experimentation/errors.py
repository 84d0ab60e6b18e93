"""Exception taxonomy for the experimentation engine."""


class ExperimentationError(Exception):
    """Base class for all experimentation errors."""


class ConfigurationError(ExperimentationError, ValueError):
    """Invalid experiment, targeting, or guardrail configuration.

    Raised when an experiment is created, never at assignment time.
    """


class InputError(ExperimentationError, ValueError):
    """Bad caller input: unknown bandit arm, empty analysis sample, etc."""


class TransientCollaboratorError(ExperimentationError):
    """An injected store or aggregator failed. Not retried here."""


class AssignmentConflictError(ExperimentationError):
    """A different assignment already exists for the (subject, experiment) key."""

    def __init__(self, subject_id: str, experiment_id: str, existing_variant_id: str) -> None:
        super().__init__(
            f"Subject {subject_id} already assigned to {existing_variant_id} "
            f"in experiment {experiment_id}"
        )
        self.subject_id = subject_id
        self.experiment_id = experiment_id
        self.existing_variant_id = existing_variant_id


class NumericalInstabilityError(ExperimentationError):
    """Matrix inversion failed a conditioning check."""
