"""Experimentation engine configuration with sensible defaults."""

import os
from dataclasses import dataclass, field


@dataclass
class AssignmentSettings:
    """Salt purposes for the two independent hash buckets.

    Changing either tag reshuffles every subject in every experiment, so
    treat these as fixed once experiments are live.
    """

    traffic_purpose: str = "traffic"
    variant_purpose: str = "variant"


@dataclass
class AnalysisDefaults:
    confidence_level: float = 0.95
    power: float = 0.80
    # Metric name whose samples count as exposures (value 0) / conversions (value > 0)
    conversion_metric: str = "conversion"


@dataclass
class BanditSettings:
    """Priors and exploration knobs for both bandit flavours."""

    prior_successes: float = 1.0
    prior_failures: float = 1.0

    # LinUCB: bonus = ucb_alpha * sqrt(x' A^-1 x)
    ucb_alpha: float = 1.0
    # Identity prior scale for the precision matrix
    ridge_lambda: float = 1.0
    # 1-norm condition number above which inversion is rejected
    max_condition_number: float = 1e12


@dataclass
class GuardrailSettings:
    check_interval_seconds: int = 300
    alert_suppression_seconds: int = 3600
    severity_actions: dict[str, str] = field(
        default_factory=lambda: {
            "info": "alert",
            "warning": "pause",
            "critical": "stop",
        }
    )

    def __post_init__(self):
        unknown = set(self.severity_actions.values()) - {"alert", "pause", "stop"}
        if unknown:
            raise ValueError(f"Unknown guardrail actions: {sorted(unknown)}")


@dataclass
class ExperimentationConfig:
    assignment: AssignmentSettings = field(default_factory=AssignmentSettings)
    analysis: AnalysisDefaults = field(default_factory=AnalysisDefaults)
    bandit: BanditSettings = field(default_factory=BanditSettings)
    guardrails: GuardrailSettings = field(default_factory=GuardrailSettings)

    @classmethod
    def from_env(cls) -> "ExperimentationConfig":
        """Load config with env var overrides. Env vars use EXPERIMENT_ prefix."""
        config = cls()

        # Analysis overrides
        if v := os.getenv("EXPERIMENT_CONFIDENCE_LEVEL"):
            config.analysis.confidence_level = float(v)
        if v := os.getenv("EXPERIMENT_POWER"):
            config.analysis.power = float(v)
        if v := os.getenv("EXPERIMENT_CONVERSION_METRIC"):
            config.analysis.conversion_metric = v

        # Bandit overrides
        if v := os.getenv("EXPERIMENT_UCB_ALPHA"):
            config.bandit.ucb_alpha = float(v)
        if v := os.getenv("EXPERIMENT_RIDGE_LAMBDA"):
            config.bandit.ridge_lambda = float(v)
        if v := os.getenv("EXPERIMENT_MAX_CONDITION_NUMBER"):
            config.bandit.max_condition_number = float(v)

        # Guardrail overrides
        if v := os.getenv("EXPERIMENT_GUARDRAIL_INTERVAL_SECONDS"):
            config.guardrails.check_interval_seconds = int(v)
        if v := os.getenv("EXPERIMENT_ALERT_SUPPRESSION_SECONDS"):
            config.guardrails.alert_suppression_seconds = int(v)

        return config


# Module-level default instance
default_config = ExperimentationConfig()
