"""
Low-degree polynomials used by the depth models.

A polynomial of degree D with minimum degree m has D - m + 1 coefficients:

    p(z) = c_0 z^m + c_1 z^(m+1) + ... + c_(D-m) z^D

The same shape serves three purposes: the depth error function
sigma(z), the per-bin local undistortion polynomials and the global
undistortion polynomials.
"""

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np


@dataclass
class Polynomial:
    """
    Polynomial with an explicit minimum degree.

    Attributes:
        coefficients: Coefficients ordered from lowest to highest power.
        min_degree: Power of the first coefficient.
    """

    coefficients: np.ndarray = field(default_factory=lambda: np.zeros(1))
    min_degree: int = 0

    def __post_init__(self):
        self.coefficients = np.asarray(self.coefficients, dtype=np.float64).flatten()
        if self.min_degree < 0:
            raise ValueError(f"min_degree must be >= 0, got {self.min_degree}")

    @property
    def degree(self) -> int:
        return self.min_degree + len(self.coefficients) - 1

    @property
    def size(self) -> int:
        return len(self.coefficients)

    def __call__(self, z):
        return self.evaluate(z)

    def evaluate(self, z):
        """Evaluate at scalar or array ``z``."""
        return evaluate_polynomials(self.coefficients, z, self.min_degree)

    @classmethod
    def identity(cls, degree: int = 2, min_degree: int = 0) -> "Polynomial":
        """Polynomial with p(z) = z (requires min_degree <= 1 <= degree)."""
        if not min_degree <= 1 <= degree:
            raise ValueError("Identity needs min_degree <= 1 <= degree")
        coefficients = np.zeros(degree - min_degree + 1)
        coefficients[1 - min_degree] = 1.0
        return cls(coefficients, min_degree)


def vandermonde(z: np.ndarray, degree: int, min_degree: int = 0) -> np.ndarray:
    """Design matrix with columns z^min_degree ... z^degree."""
    z = np.asarray(z, dtype=np.float64)
    powers = np.arange(min_degree, degree + 1)
    return z[..., None] ** powers


def evaluate_polynomials(coefficients: np.ndarray, z, min_degree: int = 0):
    """
    Evaluate one polynomial per sample.

    Args:
        coefficients: (K,) shared coefficients or (N, K) per-sample coefficients.
        z: Scalar or (N,) evaluation points.
        min_degree: Power of the first coefficient.

    Returns:
        Values with the broadcast shape of z and the leading coefficient axes.
    """
    coefficients = np.asarray(coefficients, dtype=np.float64)
    z = np.asarray(z, dtype=np.float64)
    size = coefficients.shape[-1]
    basis = vandermonde(z, min_degree + size - 1, min_degree)
    return np.sum(coefficients * basis, axis=-1)


def fit_polynomial(
    x: np.ndarray,
    y: np.ndarray,
    degree: int,
    min_degree: int = 0,
    weights: np.ndarray = None,
):
    """
    Least-squares fit of y = p(x).

    Returns:
        Coefficients (degree - min_degree + 1,), or None when the design
        matrix is rank deficient (e.g. all samples share the same x).
    """
    A = vandermonde(x, degree, min_degree)
    b = np.asarray(y, dtype=np.float64)
    if weights is not None:
        w = np.sqrt(np.asarray(weights, dtype=np.float64))
        A = A * w[:, None]
        b = b * w
    coefficients, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    if rank < A.shape[1]:
        return None
    return coefficients


class DepthErrorFunction(Polynomial):
    """
    Expected standard deviation of a depth measurement as a function of depth.

    Used only to normalize residuals; calibration never changes it.
    The default models a structured-light sensor: sigma(z) = 0.0035 z^2.
    """

    def __init__(self, coefficients: Sequence[float] = (0.0, 0.0, 0.0035)):
        super().__init__(np.asarray(coefficients, dtype=np.float64), 0)
