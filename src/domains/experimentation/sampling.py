"""Random variate generators for posterior sampling.

All draws come from an explicit ``random.Random`` so bandits can be seeded
for reproducible simulations.
"""

import math
import random


def standard_normal(rng: random.Random) -> float:
    """One N(0, 1) draw via the Box-Muller transform."""
    u1 = rng.random()
    while u1 <= 0.0:
        u1 = rng.random()
    u2 = rng.random()
    return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


def gamma_sample(shape: float, rng: random.Random) -> float:
    """Gamma(shape, 1) draw using Marsaglia-Tsang rejection.

    For shape < 1 a Gamma(shape + 1) draw is boosted by U ** (1 / shape).
    """
    if shape <= 0:
        raise ValueError(f"Gamma shape must be positive, got {shape}")
    if shape < 1.0:
        u = rng.random()
        while u <= 0.0:
            u = rng.random()
        return gamma_sample(shape + 1.0, rng) * u ** (1.0 / shape)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)
    while True:
        x = standard_normal(rng)
        v = 1.0 + c * x
        if v <= 0.0:
            continue
        v = v * v * v
        u = rng.random()
        # Squeeze check first, log check only when it fails
        if u < 1.0 - 0.0331 * x**4:
            return d * v
        if u > 0.0 and math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
            return d * v


def beta_sample(alpha: float, beta: float, rng: random.Random) -> float:
    """Beta(alpha, beta) draw as X / (X + Y) with X, Y Gamma-distributed."""
    x = gamma_sample(alpha, rng)
    y = gamma_sample(beta, rng)
    total = x + y
    if total <= 0.0:
        return 0.5
    return x / total
