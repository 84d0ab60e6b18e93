"""Frequentist analysis of two-arm experiments.

Two test families:
- Two-proportion z-test for conversion-rate metrics.
- Welch's t-test for continuous metrics (revenue, latency, ...).

Plus sample-size planning and an O'Brien-Fleming style alpha-spending
boundary for early stopping. Comparisons are always control vs one
treatment; experiments with several treatments get one comparison each.
"""

import math
from datetime import UTC, datetime

import structlog

from .config import ExperimentationConfig, default_config
from .distributions import norm_cdf, norm_ppf, norm_sf, t_ppf, t_sf
from .errors import ExperimentationError, InputError, TransientCollaboratorError
from .models import (
    AnalysisKind,
    AnalysisResult,
    Experiment,
    ExperimentReport,
    GuardrailResult,
    SequentialBoundary,
    VariantComparison,
    VariantCounts,
    VariantStats,
)
from .store import MetricsAggregator

logger = structlog.get_logger()


def _check_confidence(confidence: float) -> float:
    if not 0.0 < confidence < 1.0:
        raise InputError(f"Confidence level must be in (0, 1), got {confidence}")
    return 1.0 - confidence


def _relative(diff: float, baseline: float) -> float | None:
    return diff / baseline if baseline != 0 else None


def _achieved_power(effect: float, se: float, critical: float) -> float:
    """Two-sided power at the observed effect, normal approximation."""
    if se <= 0:
        return 0.0
    shift = abs(effect) / se
    return norm_cdf(shift - critical) + norm_cdf(-shift - critical)


def analyze_conversion(
    control: VariantCounts,
    treatment: VariantCounts,
    confidence: float = 0.95,
) -> AnalysisResult:
    """Two-proportion z-test on conversion counts.

    The z statistic uses the pooled proportion (null hypothesis of equal
    rates); the confidence interval for the difference uses per-arm variances.
    """
    alpha = _check_confidence(confidence)
    if control.n == 0 or treatment.n == 0:
        raise InputError(
            f"Both arms need observations (control n={control.n}, treatment n={treatment.n})"
        )
    if control.successes > control.n or treatment.successes > treatment.n:
        raise InputError("Successes cannot exceed sample size")

    p_c = control.successes / control.n
    p_t = treatment.successes / treatment.n
    diff = p_t - p_c

    pooled = (control.successes + treatment.successes) / (control.n + treatment.n)
    se_pooled = math.sqrt(pooled * (1.0 - pooled) * (1.0 / control.n + 1.0 / treatment.n))
    z = diff / se_pooled if se_pooled > 0 else 0.0
    p_value = min(1.0, 2.0 * norm_sf(abs(z)))

    se_diff = math.sqrt(p_c * (1.0 - p_c) / control.n + p_t * (1.0 - p_t) / treatment.n)
    z_crit = norm_ppf(1.0 - alpha / 2.0)
    ci = (diff - z_crit * se_diff, diff + z_crit * se_diff)

    return AnalysisResult(
        method=AnalysisKind.CONVERSION,
        is_significant=p_value < alpha,
        p_value=p_value,
        confidence_interval=ci,
        relative_uplift=_relative(diff, p_c),
        absolute_uplift=diff,
        power=_achieved_power(diff, se_diff, z_crit),
        statistic=z,
        control_value=p_c,
        treatment_value=p_t,
        confidence_level=confidence,
    )


def analyze_continuous(
    control: VariantStats,
    treatment: VariantStats,
    confidence: float = 0.95,
) -> AnalysisResult:
    """Welch's unequal-variance t-test from per-arm mean, variance and n."""
    alpha = _check_confidence(confidence)
    if control.n < 2 or treatment.n < 2:
        raise InputError(
            "Welch's t-test needs at least 2 observations per arm "
            f"(control n={control.n}, treatment n={treatment.n})"
        )

    diff = treatment.mean - control.mean
    var_c = control.variance / control.n
    var_t = treatment.variance / treatment.n
    se = math.sqrt(var_c + var_t)

    # Welch-Satterthwaite
    denom = var_c**2 / (control.n - 1) + var_t**2 / (treatment.n - 1)
    df = (var_c + var_t) ** 2 / denom if denom > 0 else float(control.n + treatment.n - 2)

    if se > 0:
        t_stat = diff / se
        p_value = min(1.0, 2.0 * t_sf(abs(t_stat), df))
        t_crit = t_ppf(1.0 - alpha / 2.0, df)
        power = _achieved_power(diff, se, t_crit)
    else:
        # Zero variance in both arms: any difference is exact, none is noise
        t_stat = 0.0
        p_value = 1.0 if diff == 0 else 0.0
        t_crit = 0.0
        power = 1.0 if diff != 0 else 0.0
    ci = (diff - t_crit * se, diff + t_crit * se)

    return AnalysisResult(
        method=AnalysisKind.CONTINUOUS,
        is_significant=p_value < alpha,
        p_value=p_value,
        confidence_interval=ci,
        relative_uplift=_relative(diff, control.mean),
        absolute_uplift=diff,
        power=power,
        statistic=t_stat,
        degrees_of_freedom=df,
        control_value=control.mean,
        treatment_value=treatment.mean,
        confidence_level=confidence,
    )


def required_sample_size(
    baseline_rate: float,
    mde: float,
    power: float = 0.80,
    confidence: float = 0.95,
) -> int:
    """Per-arm sample size for a two-sided two-proportion test.

    ``mde`` is relative: 0.10 means detecting a move from 10% to 11%.
    """
    alpha = _check_confidence(confidence)
    if not 0.0 < baseline_rate < 1.0:
        raise InputError(f"Baseline rate must be in (0, 1), got {baseline_rate}")
    if mde <= 0:
        raise InputError(f"Minimum detectable effect must be positive, got {mde}")
    if not 0.0 < power < 1.0:
        raise InputError(f"Power must be in (0, 1), got {power}")

    p1 = baseline_rate
    p2 = baseline_rate * (1.0 + mde)
    if p2 >= 1.0:
        raise InputError(f"Baseline {p1} with relative MDE {mde} exceeds a rate of 1")

    z_alpha = norm_ppf(1.0 - alpha / 2.0)
    z_beta = norm_ppf(power)
    p_bar = (p1 + p2) / 2.0

    numerator = (
        z_alpha * math.sqrt(2.0 * p_bar * (1.0 - p_bar))
        + z_beta * math.sqrt(p1 * (1.0 - p1) + p2 * (1.0 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)


def sequential_boundary(
    current_n: int,
    max_n: int,
    alpha: float = 0.05,
) -> SequentialBoundary:
    """O'Brien-Fleming style alpha-spending boundary.

    Alpha spent so far is ``alpha * (current_n / max_n) ** 2``; the boundary
    is the two-sided z critical value for that spend. Early looks get very
    wide boundaries, the final look recovers the nominal alpha.
    """
    if max_n <= 0:
        raise InputError(f"Planned maximum sample size must be positive, got {max_n}")
    if current_n < 0:
        raise InputError(f"Current sample size cannot be negative, got {current_n}")
    if not 0.0 < alpha < 1.0:
        raise InputError(f"Alpha must be in (0, 1), got {alpha}")

    fraction = min(current_n / max_n, 1.0)
    spent = alpha * fraction**2
    if spent <= 0:
        bound = math.inf
    else:
        # Lower tail keeps precision when the spend is tiny
        bound = -norm_ppf(spent / 2.0)

    return SequentialBoundary(
        information_fraction=fraction,
        alpha_spent=spent,
        upper_bound=bound,
        lower_bound=-bound,
    )


def crosses_boundary(statistic: float, boundary: SequentialBoundary) -> bool:
    """True when a z statistic lies outside the boundary, i.e. stop early."""
    return statistic >= boundary.upper_bound or statistic <= boundary.lower_bound


# ---------------------------------------------------------------------------
# Experiment-level analysis
# ---------------------------------------------------------------------------


async def _fetch_arm(
    aggregator: MetricsAggregator,
    experiment_id: str,
    variant_id: str,
    metric: str,
    kind: AnalysisKind,
) -> VariantCounts | VariantStats:
    try:
        if kind == AnalysisKind.CONVERSION:
            return await aggregator.get_variant_counts(experiment_id, variant_id)
        return await aggregator.get_variant_stats(experiment_id, variant_id, metric)
    except ExperimentationError:
        raise
    except Exception as exc:
        logger.error(
            "metrics_aggregator_failed",
            experiment_id=experiment_id,
            variant_id=variant_id,
            metric=metric,
            error=str(exc),
        )
        raise TransientCollaboratorError(
            f"Metrics aggregator failed for {experiment_id}/{variant_id}/{metric}: {exc}"
        ) from exc


async def analyze_experiment(
    aggregator: MetricsAggregator,
    experiment: Experiment,
    metric: str,
    kind: AnalysisKind = AnalysisKind.CONVERSION,
    confidence: float | None = None,
    config: ExperimentationConfig | None = None,
) -> list[VariantComparison]:
    """Compare every treatment against the control for one metric.

    Treatments without enough data are skipped rather than failing the whole
    experiment.
    """
    cfg = config or default_config
    level = confidence if confidence is not None else cfg.analysis.confidence_level
    control = experiment.control
    if control is None:
        raise InputError(f"Experiment {experiment.experiment_id} has no control variant")

    experiment_id = experiment.experiment_id
    control_data = await _fetch_arm(aggregator, experiment_id, control.variant_id, metric, kind)

    comparisons = []
    for treatment in experiment.treatments:
        data = await _fetch_arm(aggregator, experiment_id, treatment.variant_id, metric, kind)
        try:
            if kind == AnalysisKind.CONVERSION:
                result = analyze_conversion(control_data, data, level)
            else:
                result = analyze_continuous(control_data, data, level)
        except InputError as exc:
            logger.info(
                "analysis_skipped",
                experiment_id=experiment_id,
                variant_id=treatment.variant_id,
                metric=metric,
                reason=str(exc),
            )
            continue

        comparisons.append(
            VariantComparison(
                control_variant=control.variant_id,
                treatment_variant=treatment.variant_id,
                metric_name=metric,
                result=result,
            )
        )

    return comparisons


def recommend(
    comparisons: list[VariantComparison],
    guardrail_results: list[GuardrailResult] | None = None,
) -> str:
    """ship / dont_ship / inconclusive from significance and guardrails."""
    if any(g.violated for g in guardrail_results or []):
        return "dont_ship"
    significant = [c.result for c in comparisons if c.result.is_significant]
    if not significant:
        return "inconclusive"
    if any(r.absolute_uplift < 0 for r in significant):
        return "dont_ship"
    return "ship"


def build_report(
    experiment: Experiment,
    metric: str,
    comparisons: list[VariantComparison],
    guardrail_results: list[GuardrailResult] | None = None,
) -> ExperimentReport:
    return ExperimentReport(
        experiment_id=experiment.experiment_id,
        metric_name=metric,
        comparisons=comparisons,
        guardrail_results=guardrail_results or [],
        recommendation=recommend(comparisons, guardrail_results),
        generated_at=datetime.now(UTC),
    )
