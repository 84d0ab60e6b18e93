"""Tests for the statistical analyzer."""

import math
from unittest.mock import AsyncMock

import pytest

from src.domains.experimentation.analysis import (
    analyze_continuous,
    analyze_conversion,
    analyze_experiment,
    build_report,
    crosses_boundary,
    recommend,
    required_sample_size,
    sequential_boundary,
)
from src.domains.experimentation.distributions import norm_sf
from src.domains.experimentation.errors import InputError, TransientCollaboratorError
from src.domains.experimentation.models import (
    AnalysisKind,
    MetricSample,
    VariantCounts,
    VariantStats,
)
from tests.conftest import make_experiment


class TestConversion:
    def test_checkout_scenario(self):
        """10% vs 13% on 1000 users each is significant with ~30% uplift."""
        result = analyze_conversion(
            VariantCounts(n=1000, successes=100), VariantCounts(n=1000, successes=130)
        )
        assert result.method == AnalysisKind.CONVERSION
        assert result.p_value < 0.05
        assert result.is_significant
        assert result.relative_uplift == pytest.approx(0.30, abs=1e-9)
        assert result.absolute_uplift == pytest.approx(0.03, abs=1e-9)
        assert result.statistic == pytest.approx(2.1027, abs=1e-3)
        low, high = result.confidence_interval
        assert low < 0.03 < high
        assert low > 0

    def test_symmetry(self):
        a = VariantCounts(n=1200, successes=150)
        b = VariantCounts(n=900, successes=140)
        ab = analyze_conversion(a, b)
        ba = analyze_conversion(b, a)
        assert ab.p_value == pytest.approx(ba.p_value, rel=1e-12)
        assert ab.absolute_uplift == pytest.approx(-ba.absolute_uplift, rel=1e-12)
        assert ab.statistic == pytest.approx(-ba.statistic, rel=1e-12)
        assert ab.is_significant == ba.is_significant

    def test_no_difference(self):
        result = analyze_conversion(
            VariantCounts(n=500, successes=50), VariantCounts(n=500, successes=50)
        )
        assert result.p_value == pytest.approx(1.0)
        assert not result.is_significant

    def test_zero_sample_raises(self):
        with pytest.raises(InputError):
            analyze_conversion(VariantCounts(n=0, successes=0), VariantCounts(n=10, successes=1))

    def test_zero_control_rate_has_no_relative_uplift(self):
        result = analyze_conversion(
            VariantCounts(n=500, successes=0), VariantCounts(n=500, successes=20)
        )
        assert result.absolute_uplift == pytest.approx(0.04)
        assert result.relative_uplift is None

    def test_successes_above_n_raises(self):
        with pytest.raises(InputError):
            analyze_conversion(VariantCounts(n=10, successes=11), VariantCounts(n=10, successes=1))

    def test_confidence_level_changes_significance(self):
        control = VariantCounts(n=1000, successes=100)
        treatment = VariantCounts(n=1000, successes=130)
        assert analyze_conversion(control, treatment, 0.95).is_significant
        assert not analyze_conversion(control, treatment, 0.99).is_significant


class TestContinuous:
    def test_welch(self):
        result = analyze_continuous(
            VariantStats(mean=10.0, variance=4.0, n=50),
            VariantStats(mean=11.0, variance=9.0, n=40),
        )
        assert result.method == AnalysisKind.CONTINUOUS
        assert result.statistic == pytest.approx(1.0 / math.sqrt(0.305), rel=1e-9)
        assert 60 < result.degrees_of_freedom < 70
        assert 0.05 < result.p_value < 0.1
        assert not result.is_significant
        assert result.relative_uplift == pytest.approx(0.10)

    def test_large_effect_is_significant(self):
        result = analyze_continuous(
            VariantStats(mean=100.0, variance=25.0, n=200),
            VariantStats(mean=103.0, variance=25.0, n=200),
        )
        assert result.is_significant
        assert result.p_value < 1e-6

    def test_zero_variance(self):
        result = analyze_continuous(
            VariantStats(mean=5.0, variance=0.0, n=10),
            VariantStats(mean=6.0, variance=0.0, n=10),
        )
        assert result.p_value == 0.0
        assert result.is_significant

    def test_needs_two_observations(self):
        with pytest.raises(InputError):
            analyze_continuous(
                VariantStats(mean=1.0, variance=0.0, n=1),
                VariantStats(mean=2.0, variance=1.0, n=10),
            )


class TestSampleSize:
    def test_known_value(self):
        n = required_sample_size(0.10, 0.10)
        assert 14_000 < n < 15_500

    def test_monotonic_in_mde(self):
        sizes = [required_sample_size(0.10, mde) for mde in (0.02, 0.05, 0.1, 0.2, 0.5)]
        assert all(a > b for a, b in zip(sizes, sizes[1:]))

    def test_more_power_needs_more_subjects(self):
        assert required_sample_size(0.05, 0.2, power=0.9) > required_sample_size(
            0.05, 0.2, power=0.8
        )

    @pytest.mark.parametrize(
        "baseline,mde",
        [(0.0, 0.1), (1.0, 0.1), (0.1, 0.0), (0.1, -0.5), (0.6, 1.0)],
    )
    def test_invalid_inputs(self, baseline, mde):
        with pytest.raises(InputError):
            required_sample_size(baseline, mde)


class TestSequentialBoundary:
    def test_final_look_recovers_nominal_alpha(self):
        boundary = sequential_boundary(1000, 1000, alpha=0.05)
        assert boundary.alpha_spent == pytest.approx(0.05)
        assert boundary.upper_bound == pytest.approx(1.959964, abs=1e-5)
        assert boundary.lower_bound == pytest.approx(-1.959964, abs=1e-5)

    def test_early_looks_are_stricter(self):
        half = sequential_boundary(500, 1000)
        assert half.alpha_spent == pytest.approx(0.0125)
        assert half.upper_bound == pytest.approx(2.4977, abs=1e-3)
        quarter = sequential_boundary(250, 1000)
        assert quarter.upper_bound > half.upper_bound

    def test_no_data_yet(self):
        boundary = sequential_boundary(0, 1000)
        assert math.isinf(boundary.upper_bound)
        assert not crosses_boundary(10.0, boundary)

    def test_tiny_spend_keeps_finite_bound(self):
        boundary = sequential_boundary(1, 10**8, alpha=0.05)
        assert boundary.alpha_spent == pytest.approx(5e-18)
        assert math.isfinite(boundary.upper_bound)
        assert boundary.upper_bound > 8.0
        assert boundary.lower_bound == -boundary.upper_bound
        assert 2 * norm_sf(boundary.upper_bound) == pytest.approx(boundary.alpha_spent, rel=1e-6)

    def test_crossing(self):
        boundary = sequential_boundary(1000, 1000)
        assert crosses_boundary(2.5, boundary)
        assert crosses_boundary(-2.5, boundary)
        assert not crosses_boundary(1.0, boundary)

    def test_invalid(self):
        with pytest.raises(InputError):
            sequential_boundary(10, 0)


class TestExperimentAnalysis:
    @pytest.mark.asyncio
    async def test_analyze_experiment_conversion(self, aggregator):
        experiment = make_experiment()
        for variant_id, n, successes in (("control", 1000, 100), ("treatment_1", 1000, 130)):
            for i in range(n):
                await aggregator.record(
                    MetricSample(
                        experiment_id=experiment.experiment_id,
                        variant_id=variant_id,
                        metric_name="conversion",
                        value=1.0 if i < successes else 0.0,
                    )
                )

        comparisons = await analyze_experiment(aggregator, experiment, "conversion")
        assert len(comparisons) == 1
        assert comparisons[0].treatment_variant == "treatment_1"
        assert comparisons[0].result.is_significant
        assert recommend(comparisons) == "ship"

        report = build_report(experiment, "conversion", comparisons)
        assert report.recommendation == "ship"
        assert report.generated_at is not None

    @pytest.mark.asyncio
    async def test_treatments_without_data_are_skipped(self, aggregator):
        experiment = make_experiment(weights=(40, 30, 30))
        for variant_id in ("control", "treatment_1"):
            for value in (1.0, 2.0, 3.0, 4.0):
                await aggregator.record(
                    MetricSample(
                        experiment_id=experiment.experiment_id,
                        variant_id=variant_id,
                        metric_name="revenue",
                        value=value,
                    )
                )
        comparisons = await analyze_experiment(
            aggregator, experiment, "revenue", AnalysisKind.CONTINUOUS
        )
        assert [c.treatment_variant for c in comparisons] == ["treatment_1"]
        assert recommend(comparisons) == "inconclusive"

    @pytest.mark.asyncio
    async def test_aggregator_failure_is_transient(self):
        aggregator = AsyncMock()
        aggregator.get_variant_counts.side_effect = ConnectionError("db down")
        with pytest.raises(TransientCollaboratorError):
            await analyze_experiment(aggregator, make_experiment(), "conversion")

    @pytest.mark.asyncio
    async def test_continuous_aggregator_failure_is_transient(self):
        aggregator = AsyncMock()
        aggregator.get_variant_stats.side_effect = TimeoutError("query timed out")
        with pytest.raises(TransientCollaboratorError):
            await analyze_experiment(
                aggregator, make_experiment(), "revenue", AnalysisKind.CONTINUOUS
            )
