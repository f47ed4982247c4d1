"""
Nonlinear Least-Squares Problem Definition.

A problem is a set of parameter blocks and a set of residual blocks:

    minimize  1/2 * sum_i rho_i( || f_i(x_i1, ..., x_ik) ||^2 )

Each residual block f_i is a pure function of the values of the parameter
blocks it references; rho_i is an optional robust loss.

Manifolds:
==========
A parameter block lives on a manifold with an ambient size (the stored
vector) and a tangent size (the update dimension). The solver computes steps
in the tangent space and applies them with the manifold's retraction:

    Euclidean(n):     x <- x + delta                        (n, n)
    UnitQuaternion:   q <- normalize(exp(delta) * q)        (4, 3)

Quaternions follow the scipy convention [x, y, z, w]. The rotation update
is applied on the left, i.e. in the parent frame of the rotation.

Jacobians:
==========
``NumericDiffCostFunction`` estimates the Jacobian of every block by central
differences taken along the tangent directions of its manifold:

    J[:, j] = (f(x [+] h e_j) - f(x [+] -h e_j)) / (2 h)

``AnalyticDiffCostFunction`` takes a user Jacobian, also expressed in tangent
coordinates. The solver handles both the same way.

Robust losses:
==============
A loss maps the squared residual norm s to rho(s) with derivatives rho'(s)
and rho''(s). The residual and Jacobian are rescaled so that the Gauss-Newton
model of the rescaled block matches the second order model of rho
(Triggs correction):

    Cauchy(a):  rho(s) = a^2 log(1 + s / a^2)
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.spatial.transform import Rotation


# =============================================================================
# Manifolds
# =============================================================================

class Manifold(ABC):
    """Parameter space of a block: ambient representation + tangent updates."""

    ambient_size: int
    tangent_size: int

    @abstractmethod
    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        """Retraction: move ``x`` by the tangent vector ``delta``."""

    def step_sizes(self, x: np.ndarray, relative_step: float) -> np.ndarray:
        """Finite difference step per tangent direction."""
        return np.full(self.tangent_size, relative_step)


class Euclidean(Manifold):
    """Plain vector space of dimension ``size``."""

    def __init__(self, size: int):
        self.ambient_size = size
        self.tangent_size = size

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return x + delta

    def step_sizes(self, x: np.ndarray, relative_step: float) -> np.ndarray:
        return relative_step * np.maximum(np.abs(x), 1.0)

    def __repr__(self) -> str:
        return f"Euclidean({self.ambient_size})"


class UnitQuaternion(Manifold):
    """Unit quaternions [x, y, z, w] with left-multiplied rotation vector updates."""

    ambient_size = 4
    tangent_size = 3

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        rotation = Rotation.from_rotvec(delta) * Rotation.from_quat(x)
        q = rotation.as_quat()
        return q / np.linalg.norm(q)

    def __repr__(self) -> str:
        return "UnitQuaternion()"


class ParameterBlock:
    """
    Named optimization variable.

    Args:
        name: Unique block name.
        values: Initial values (ambient representation).
        manifold: Parameter space (Euclidean by default).
        constant: Keep the block fixed during optimization.
    """

    def __init__(
        self,
        name: str,
        values: np.ndarray,
        manifold: Optional[Manifold] = None,
        constant: bool = False,
    ):
        values = np.asarray(values, dtype=np.float64).flatten().copy()
        manifold = manifold or Euclidean(len(values))
        if manifold.ambient_size != len(values):
            raise ValueError(
                f"Block '{name}' has {len(values)} values, manifold expects {manifold.ambient_size}"
            )
        if isinstance(manifold, UnitQuaternion):
            norm = np.linalg.norm(values)
            if norm == 0:
                raise ValueError(f"Block '{name}': quaternion must be non-zero")
            values = values / norm

        self.name = name
        self.values = values
        self.manifold = manifold
        self.constant = constant

    @property
    def size(self) -> int:
        return self.manifold.ambient_size

    @property
    def tangent_size(self) -> int:
        return self.manifold.tangent_size

    def __repr__(self) -> str:
        state = ", constant" if self.constant else ""
        return f"ParameterBlock({self.name!r}, {self.manifold!r}{state})"


# =============================================================================
# Cost functions
# =============================================================================

ResidualFunction = Callable[..., np.ndarray]


class CostFunction(ABC):
    """
    Residual of one block, as a function of the values of its parameter blocks.

    Args:
        function: ``function(*values) -> residual`` (1-D array).
        num_residuals: Length of the residual vector.
    """

    def __init__(self, function: ResidualFunction, num_residuals: int):
        self.function = function
        self.num_residuals = int(num_residuals)

    def residuals(self, values: Sequence[np.ndarray]) -> np.ndarray:
        r = np.asarray(self.function(*values), dtype=np.float64).ravel()
        if len(r) != self.num_residuals:
            raise ValueError(f"Cost function returned {len(r)} residuals, expected {self.num_residuals}")
        return r

    @abstractmethod
    def jacobians(
        self,
        values: Sequence[np.ndarray],
        blocks: Sequence[ParameterBlock],
        residual: np.ndarray,
    ) -> List[Optional[np.ndarray]]:
        """
        Tangent-space Jacobians, one (num_residuals, tangent_size) matrix
        per block; None for constant blocks.
        """


class NumericDiffCostFunction(CostFunction):
    """Cost function differentiated by central differences in tangent space."""

    def __init__(
        self,
        function: ResidualFunction,
        num_residuals: int,
        relative_step: float = 1e-6,
    ):
        super().__init__(function, num_residuals)
        self.relative_step = relative_step

    def jacobians(self, values, blocks, residual):
        values = list(values)
        result: List[Optional[np.ndarray]] = []

        for k, block in enumerate(blocks):
            if block.constant:
                result.append(None)
                continue

            x = values[k]
            steps = block.manifold.step_sizes(x, self.relative_step)
            jacobian = np.empty((self.num_residuals, block.tangent_size))

            for j in range(block.tangent_size):
                delta = np.zeros(block.tangent_size)
                delta[j] = steps[j]
                values[k] = block.manifold.plus(x, delta)
                forward = self.residuals(values)
                values[k] = block.manifold.plus(x, -delta)
                backward = self.residuals(values)
                jacobian[:, j] = (forward - backward) / (2.0 * steps[j])

            values[k] = x
            result.append(jacobian)

        return result


class AnalyticDiffCostFunction(CostFunction):
    """
    Cost function with a user supplied Jacobian.

    Args:
        function: ``function(*values) -> residual``.
        jacobian: ``jacobian(*values) -> list`` of tangent-space Jacobians,
                  one per block.
        num_residuals: Length of the residual vector.
    """

    def __init__(
        self,
        function: ResidualFunction,
        jacobian: Callable[..., Sequence[np.ndarray]],
        num_residuals: int,
    ):
        super().__init__(function, num_residuals)
        self.jacobian = jacobian

    def jacobians(self, values, blocks, residual):
        jacobians = self.jacobian(*values)
        if len(jacobians) != len(blocks):
            raise ValueError(f"Analytic Jacobian returned {len(jacobians)} blocks, expected {len(blocks)}")
        result = []
        for block, jacobian in zip(blocks, jacobians):
            if block.constant:
                result.append(None)
                continue
            jacobian = np.asarray(jacobian, dtype=np.float64).reshape(self.num_residuals, block.tangent_size)
            result.append(jacobian)
        return result


# =============================================================================
# Robust losses
# =============================================================================

class LossFunction(ABC):
    """Robust loss rho(s) of the squared residual norm s."""

    @abstractmethod
    def evaluate(self, s: float) -> Tuple[float, float, float]:
        """Return (rho(s), rho'(s), rho''(s))."""

    def correct(
        self,
        residual: np.ndarray,
        jacobians: Sequence[Optional[np.ndarray]],
    ) -> Tuple[float, np.ndarray, List[Optional[np.ndarray]]]:
        """
        Apply the loss to one residual block.

        Returns:
            Tuple: (rho(s), corrected residual, corrected Jacobians).
        """
        s = float(residual @ residual)
        rho, rho1, rho2 = self.evaluate(s)
        sqrt_rho1 = np.sqrt(rho1)

        if s == 0.0 or rho2 <= 0.0:
            scaled = [None if J is None else sqrt_rho1 * J for J in jacobians]
            return rho, sqrt_rho1 * residual, scaled

        D = 1.0 + 2.0 * s * rho2 / rho1
        alpha = 1.0 - np.sqrt(max(D, 0.0))
        residual_scaling = sqrt_rho1 / (1.0 - alpha)
        outer = np.outer(residual, residual) * (alpha / s)
        scaled = [None if J is None else sqrt_rho1 * (J - outer @ J) for J in jacobians]
        return rho, residual_scaling * residual, scaled


class CauchyLoss(LossFunction):
    """rho(s) = a^2 log(1 + s / a^2)."""

    def __init__(self, scale: float = 1.0):
        self.b = scale * scale
        self.c = 1.0 / self.b

    def evaluate(self, s):
        sum_ = 1.0 + s * self.c
        inv = 1.0 / sum_
        return self.b * np.log(sum_), inv, -self.c * inv * inv


# =============================================================================
# Problem
# =============================================================================

class ResidualBlock:
    """Cost function + optional loss bound to parameter blocks."""

    def __init__(
        self,
        cost_function: CostFunction,
        blocks: List[ParameterBlock],
        loss: Optional[LossFunction] = None,
    ):
        self.cost_function = cost_function
        self.blocks = blocks
        self.loss = loss

    @property
    def num_residuals(self) -> int:
        return self.cost_function.num_residuals

    def cost(self, values: Sequence[np.ndarray]) -> float:
        """Half the (robustified) squared norm at the given values."""
        r = self.cost_function.residuals(values)
        s = float(r @ r)
        if self.loss is not None:
            s = self.loss.evaluate(s)[0]
        return 0.5 * s

    def linearize(
        self,
        values: Sequence[np.ndarray],
    ) -> Tuple[float, np.ndarray, List[Optional[np.ndarray]]]:
        """
        Evaluate the block and its Jacobians at the given values.

        Returns:
            Tuple: (cost, residual, Jacobians), residual and Jacobians already
            rescaled by the loss function.
        """
        r = self.cost_function.residuals(values)
        jacobians = self.cost_function.jacobians(values, self.blocks, r)
        if self.loss is None:
            return 0.5 * float(r @ r), r, jacobians
        rho, r, jacobians = self.loss.correct(r, jacobians)
        return 0.5 * rho, r, jacobians


class Problem:
    """Container of parameter blocks and residual blocks."""

    def __init__(self):
        self._blocks: Dict[str, ParameterBlock] = {}
        self.residual_blocks: List[ResidualBlock] = []

    def add_parameter_block(
        self,
        name: str,
        values: np.ndarray,
        manifold: Optional[Manifold] = None,
        constant: bool = False,
    ) -> ParameterBlock:
        """
        Register a parameter block.

        Raises:
            ValueError: If a block with the same name already exists.
        """
        if name in self._blocks:
            raise ValueError(f"Parameter block '{name}' already exists")
        block = ParameterBlock(name, values, manifold, constant)
        self._blocks[name] = block
        return block

    def block(self, name: str) -> ParameterBlock:
        if name not in self._blocks:
            raise KeyError(f"Unknown parameter block '{name}'")
        return self._blocks[name]

    def set_constant(self, name: str, constant: bool = True) -> None:
        self.block(name).constant = constant

    @property
    def parameter_blocks(self) -> List[ParameterBlock]:
        return list(self._blocks.values())

    @property
    def variable_blocks(self) -> List[ParameterBlock]:
        return [block for block in self._blocks.values() if not block.constant]

    @property
    def num_residuals(self) -> int:
        return sum(block.num_residuals for block in self.residual_blocks)

    def add_residual_block(
        self,
        cost_function: CostFunction,
        blocks: Sequence[Union[str, ParameterBlock]],
        loss: Optional[LossFunction] = None,
    ) -> ResidualBlock:
        """
        Register a residual block over existing parameter blocks.

        Args:
            cost_function: Residual and Jacobian provider.
            blocks: Parameter blocks (or their names), in the order the cost
                    function expects its arguments.
            loss: Optional robust loss.
        """
        resolved = [self.block(b) if isinstance(b, str) else b for b in blocks]
        for block in resolved:
            if self._blocks.get(block.name) is not block:
                raise ValueError(f"Parameter block '{block.name}' is not part of this problem")
        residual_block = ResidualBlock(cost_function, resolved, loss)
        self.residual_blocks.append(residual_block)
        return residual_block

    def evaluate(self) -> float:
        """Total cost at the current block values."""
        return sum(
            rb.cost([block.values for block in rb.blocks]) for rb in self.residual_blocks
        )
