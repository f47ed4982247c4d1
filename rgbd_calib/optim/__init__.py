"""Nonlinear least squares: problem definition, solver and calibration residuals."""

from .problem import (
    AnalyticDiffCostFunction,
    CauchyLoss,
    NumericDiffCostFunction,
    ParameterBlock,
    Problem,
    UnitQuaternion,
)
from .solver import LevenbergMarquardtSolver, SolverOptions, SolverSummary

__all__ = [
    "Problem",
    "ParameterBlock",
    "UnitQuaternion",
    "NumericDiffCostFunction",
    "AnalyticDiffCostFunction",
    "CauchyLoss",
    "LevenbergMarquardtSolver",
    "SolverOptions",
    "SolverSummary",
]
