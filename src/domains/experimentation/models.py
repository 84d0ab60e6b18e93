"""Pydantic models for the experimentation domain."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# --- Enums ---


class ExperimentStatus(StrEnum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class RuleOperator(StrEnum):
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    NOT_IN = "not_in"
    RANGE = "range"


class GuardrailDirection(StrEnum):
    INCREASE = "increase"
    DECREASE = "decrease"


class GuardrailComparison(StrEnum):
    RELATIVE = "relative"
    ABSOLUTE = "absolute"


class GuardrailSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class GuardrailAction(StrEnum):
    ALERT = "alert"
    PAUSE = "pause"
    STOP = "stop"


class AnalysisKind(StrEnum):
    CONVERSION = "conversion"
    CONTINUOUS = "continuous"


# --- Experiment configuration ---


class Variant(BaseModel):
    variant_id: str
    name: str = ""
    weight: float = Field(ge=0, le=100)
    is_control: bool = False
    config: dict[str, Any] = Field(default_factory=dict)


class TargetingRule(BaseModel):
    attribute: str
    operator: RuleOperator
    value: Any = None  # eq / neq
    values: list[Any] = Field(default_factory=list)  # in / not_in
    min_value: float | None = None  # range, inclusive
    max_value: float | None = None  # range, inclusive


class GuardrailConfig(BaseModel):
    metric_name: str
    # Fractional for relative comparisons (0.10 = 10%), metric units for absolute
    threshold: float = Field(ge=0)
    direction: GuardrailDirection = GuardrailDirection.INCREASE
    comparison: GuardrailComparison = GuardrailComparison.RELATIVE
    severity: GuardrailSeverity = GuardrailSeverity.WARNING
    # None -> derived from severity via GuardrailSettings.severity_actions
    action: GuardrailAction | None = None


class CreateExperimentRequest(BaseModel):
    name: str
    description: str = ""
    hypothesis: str = ""
    variants: list[Variant]
    traffic_pct: float = Field(default=100.0, ge=0, le=100)
    targeting_rules: list[TargetingRule] = Field(default_factory=list)
    mutually_exclusive_with: list[str] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=list)
    primary_metric: str = ""
    guardrails: list[GuardrailConfig] = Field(default_factory=list)
    created_by: str = "system"


class Experiment(BaseModel):
    experiment_id: str
    name: str = ""
    description: str = ""
    hypothesis: str = ""
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variants: list[Variant] = Field(default_factory=list)
    traffic_pct: float = Field(default=100.0, ge=0, le=100)
    targeting_rules: list[TargetingRule] = Field(default_factory=list)
    mutually_exclusive_with: list[str] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=list)
    primary_metric: str = ""
    guardrails: list[GuardrailConfig] = Field(default_factory=list)
    stop_reason: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    created_by: str = "system"
    created_at: datetime | None = None
    report: dict | None = None

    @property
    def control(self) -> Variant | None:
        return next((v for v in self.variants if v.is_control), None)

    @property
    def treatments(self) -> list[Variant]:
        return [v for v in self.variants if not v.is_control]


# --- Assignment & observations ---


class Assignment(BaseModel):
    experiment_id: str
    subject_id: str
    variant_id: str
    assigned_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"frozen": True}


class MetricSample(BaseModel):
    experiment_id: str
    variant_id: str
    metric_name: str
    value: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"frozen": True}


class VariantCounts(BaseModel):
    n: int = Field(ge=0)
    successes: int = Field(ge=0)


class VariantStats(BaseModel):
    mean: float
    variance: float = Field(ge=0)
    n: int = Field(ge=0)


# --- Analysis output ---


class AnalysisResult(BaseModel):
    method: AnalysisKind
    is_significant: bool
    p_value: float
    confidence_interval: tuple[float, float]
    # None when the control value is zero
    relative_uplift: float | None
    absolute_uplift: float
    power: float
    statistic: float
    degrees_of_freedom: float | None = None
    control_value: float
    treatment_value: float
    confidence_level: float = 0.95


class SequentialBoundary(BaseModel):
    information_fraction: float
    alpha_spent: float
    upper_bound: float
    lower_bound: float


class VariantComparison(BaseModel):
    control_variant: str
    treatment_variant: str
    metric_name: str
    result: AnalysisResult


class GuardrailResult(BaseModel):
    experiment_id: str
    metric_name: str
    variant_id: str
    control_value: float
    treatment_value: float
    absolute_change: float
    relative_change: float | None  # None when the control value is zero
    threshold: float
    direction: GuardrailDirection
    comparison: GuardrailComparison
    severity: GuardrailSeverity
    action: GuardrailAction
    violated: bool
    action_taken: GuardrailAction | None = None
    description: str = ""


class ExperimentReport(BaseModel):
    experiment_id: str
    metric_name: str
    comparisons: list[VariantComparison] = Field(default_factory=list)
    guardrail_results: list[GuardrailResult] = Field(default_factory=list)
    recommendation: str = "inconclusive"  # ship / dont_ship / inconclusive
    generated_at: datetime | None = None
