"""Dense matrix inversion for the contextual bandit's precision matrices."""

import numpy as np

from .errors import NumericalInstabilityError

_PIVOT_EPS = 1e-12


def invert_matrix(matrix: np.ndarray, max_condition_number: float = 1e12) -> np.ndarray:
    """Invert a square matrix by Gauss-Jordan elimination with partial pivoting.

    Raises NumericalInstabilityError when a pivot vanishes or the 1-norm
    condition estimate ``||A|| * ||A^-1||`` exceeds ``max_condition_number``.
    """
    a = np.array(matrix, dtype=float)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise ValueError(f"Expected a square matrix, got shape {a.shape}")
    n = a.shape[0]
    scale = float(np.max(np.abs(a))) if a.size else 0.0
    if scale == 0.0:
        raise NumericalInstabilityError("Cannot invert an all-zero matrix")

    augmented = np.hstack([a, np.eye(n)])
    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(augmented[col:, col])))
        pivot = augmented[pivot_row, col]
        if abs(pivot) <= _PIVOT_EPS * scale:
            raise NumericalInstabilityError(
                f"Matrix is singular to working precision (pivot {pivot:.3e} in column {col})"
            )
        if pivot_row != col:
            augmented[[col, pivot_row]] = augmented[[pivot_row, col]]
        augmented[col] /= augmented[col, col]
        for row in range(n):
            if row != col:
                factor = augmented[row, col]
                if factor != 0.0:
                    augmented[row] -= factor * augmented[col]

    inverse = augmented[:, n:]
    condition = np.linalg.norm(a, 1) * np.linalg.norm(inverse, 1)
    if not np.isfinite(condition) or condition > max_condition_number:
        raise NumericalInstabilityError(
            f"Condition number {condition:.3e} exceeds limit {max_condition_number:.3e}"
        )
    return inverse
