"""Depth undistortion models."""

from .polynomial import DepthErrorFunction, Polynomial, fit_polynomial
from .models import GlobalModel, LocalModel

__all__ = [
    "Polynomial",
    "DepthErrorFunction",
    "fit_polynomial",
    "LocalModel",
    "GlobalModel",
]
