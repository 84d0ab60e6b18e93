"""Tests for Gauss-Jordan inversion and posterior samplers."""

import random
import statistics

import numpy as np
import pytest

from src.domains.experimentation.errors import NumericalInstabilityError
from src.domains.experimentation.linalg import invert_matrix
from src.domains.experimentation.sampling import beta_sample, gamma_sample, standard_normal


class TestInvertMatrix:
    def test_known_inverse(self):
        inverse = invert_matrix(np.array([[4.0, 7.0], [2.0, 6.0]]))
        np.testing.assert_allclose(inverse, [[0.6, -0.7], [-0.2, 0.4]], atol=1e-12)

    def test_needs_pivoting(self):
        swap = np.array([[0.0, 1.0], [1.0, 0.0]])
        np.testing.assert_allclose(invert_matrix(swap), swap)

    def test_matches_numpy_on_spd_matrix(self):
        rng = np.random.default_rng(3)
        m = rng.normal(size=(6, 6))
        spd = m @ m.T + np.eye(6)
        np.testing.assert_allclose(invert_matrix(spd), np.linalg.inv(spd), rtol=1e-9)

    def test_singular_matrix(self):
        with pytest.raises(NumericalInstabilityError):
            invert_matrix(np.array([[1.0, 2.0], [2.0, 4.0]]))

    def test_zero_matrix(self):
        with pytest.raises(NumericalInstabilityError):
            invert_matrix(np.zeros((3, 3)))

    def test_condition_limit(self):
        matrix = np.diag([1.0, 1e-4])
        invert_matrix(matrix, max_condition_number=1e5)
        with pytest.raises(NumericalInstabilityError):
            invert_matrix(matrix, max_condition_number=1e3)

    def test_non_square(self):
        with pytest.raises(ValueError):
            invert_matrix(np.ones((2, 3)))


class TestSampling:
    def test_standard_normal_moments(self):
        rng = random.Random(11)
        draws = [standard_normal(rng) for _ in range(20_000)]
        assert statistics.fmean(draws) == pytest.approx(0.0, abs=0.03)
        assert statistics.pvariance(draws) == pytest.approx(1.0, abs=0.05)

    @pytest.mark.parametrize("shape", [0.5, 1.0, 3.0, 20.0])
    def test_gamma_mean(self, shape):
        rng = random.Random(5)
        draws = [gamma_sample(shape, rng) for _ in range(20_000)]
        assert min(draws) > 0
        assert statistics.fmean(draws) == pytest.approx(shape, rel=0.05)

    def test_gamma_rejects_bad_shape(self):
        with pytest.raises(ValueError):
            gamma_sample(0.0, random.Random())

    def test_beta_mean(self):
        rng = random.Random(9)
        draws = [beta_sample(2.0, 5.0, rng) for _ in range(20_000)]
        assert all(0.0 <= d <= 1.0 for d in draws)
        assert statistics.fmean(draws) == pytest.approx(2.0 / 7.0, abs=0.01)
