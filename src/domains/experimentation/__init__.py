"""Experimentation domain: assignment, analysis, bandits and guardrails."""

from .analysis import (
    analyze_continuous,
    analyze_conversion,
    analyze_experiment,
    required_sample_size,
    sequential_boundary,
)
from .assignment import AssignmentService
from .bandit import BanditRegistry, LinUCBBandit, ThompsonSampler
from .errors import (
    AssignmentConflictError,
    ConfigurationError,
    ExperimentationError,
    InputError,
    NumericalInstabilityError,
    TransientCollaboratorError,
)
from .guardrails import GuardrailMonitor
from .hashing import bucket
from .models import (
    AnalysisResult,
    Assignment,
    Experiment,
    ExperimentStatus,
    GuardrailConfig,
    GuardrailResult,
    MetricSample,
    Variant,
)
from .targeting import excluded_by, matches

__all__ = [
    "AnalysisResult",
    "Assignment",
    "AssignmentConflictError",
    "AssignmentService",
    "BanditRegistry",
    "ConfigurationError",
    "Experiment",
    "ExperimentStatus",
    "ExperimentationError",
    "GuardrailConfig",
    "GuardrailMonitor",
    "GuardrailResult",
    "InputError",
    "LinUCBBandit",
    "MetricSample",
    "NumericalInstabilityError",
    "ThompsonSampler",
    "TransientCollaboratorError",
    "Variant",
    "analyze_continuous",
    "analyze_conversion",
    "analyze_experiment",
    "bucket",
    "excluded_by",
    "matches",
    "required_sample_size",
    "sequential_boundary",
]
