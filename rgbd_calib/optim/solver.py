"""
Levenberg-Marquardt Solver.

Mathematical Background:
========================

At the current point x, with stacked (loss-corrected) residual r and
tangent-space Jacobian J, the step delta solves the damped normal equations

    (J^T J + lambda * D) delta = -J^T r,    D = diag(J^T J)

with lambda = 1 / mu and mu the trust region radius. The step is applied
with each block's manifold retraction. The gain ratio

    rho = (cost(x) - cost(x [+] delta)) / (model decrease)

accepts (rho > 1e-3) or rejects the step and grows or shrinks mu:

    accepted:  mu <- mu / max(1/3, 1 - (2 rho - 1)^3),  nu <- 2
    rejected:  mu <- mu / nu,                           nu <- 2 nu

Linear solvers:
===============
``sparse_normal``
    Assemble H = J^T J as a scipy sparse matrix and solve the damped system
    by Cholesky factorization (``scipy.linalg.cho_factor``). Only the
    factorization is dense; the normal equations are accumulated sparsely.

``sparse_schur``
    Split the variables into eliminated groups E_1 .. E_k (e.g. one
    checkerboard pose per view) and the remaining shared variables F.
    When no residual block touches two groups, H_EE is block diagonal and

        S = H_FF - H_FE H_EE^-1 H_EF
        S delta_F = -(g_F - H_FE H_EE^-1 g_E)
        delta_E = H_EE^-1 (-g_E - H_EF delta_F)

    only needs small dense inverses per group plus one reduced system.

``dense``
    Dense solve of the full damped system (small problems).

Non-convergence is not an error: the solver always leaves the best iterate
in the parameter blocks and reports why it stopped in ``SolverSummary``.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.linalg
import scipy.sparse as sp

from ..utils.logger import LoggerMixin
from .problem import ParameterBlock, Problem

LINEAR_SOLVERS = ("sparse_schur", "sparse_normal", "dense")

MIN_DIAGONAL = 1e-6
MAX_DIAGONAL = 1e32
MIN_RELATIVE_DECREASE = 1e-3


@dataclass
class SolverOptions:
    """
    Solver configuration.

    Attributes:
        max_iterations: Maximum number of LM iterations.
        linear_solver: One of ``LINEAR_SOLVERS``.
        elimination_groups: Block names eliminated together by the Schur
                            solver, one list per group.
        function_tolerance: Stop when the relative cost decrease is smaller.
        gradient_tolerance: Stop when the max-norm of the gradient is smaller.
        parameter_tolerance: Stop when the step is small relative to x.
        initial_trust_region_radius: Initial mu.
        max_workers: Threads used to linearize residual blocks (capped at 8).
    """

    max_iterations: int = 100
    linear_solver: str = "sparse_schur"
    elimination_groups: List[List[str]] = field(default_factory=list)
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    initial_trust_region_radius: float = 1e4
    max_workers: int = 8

    def __post_init__(self):
        if self.linear_solver not in LINEAR_SOLVERS:
            raise ValueError(
                f"Unknown linear solver '{self.linear_solver}', expected one of {LINEAR_SOLVERS}"
            )
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")


@dataclass
class SolverSummary:
    """Outcome of one solve."""

    initial_cost: float = 0.0
    final_cost: float = 0.0
    iterations: int = 0
    successful_steps: int = 0
    unsuccessful_steps: int = 0
    termination: str = "not_run"
    linear_solver: str = ""
    num_parameters: int = 0
    num_residuals: int = 0

    @property
    def is_converged(self) -> bool:
        return self.termination.startswith("converged")

    def brief_report(self) -> str:
        return (
            f"{self.linear_solver}: cost {self.initial_cost:.6g} -> {self.final_cost:.6g} "
            f"in {self.iterations} iterations ({self.termination})"
        )


class _StateLayout:
    """Offsets of the variable blocks in the tangent state vector."""

    def __init__(self, blocks: Sequence[ParameterBlock]):
        self.blocks = list(blocks)
        self.offsets: Dict[str, int] = {}
        self.sizes: Dict[str, int] = {}
        offset = 0
        for block in self.blocks:
            self.offsets[block.name] = offset
            self.sizes[block.name] = block.tangent_size
            offset += block.tangent_size
        self.size = offset

    def indices(self, names: Sequence[str]) -> np.ndarray:
        parts = [
            np.arange(self.offsets[name], self.offsets[name] + self.sizes[name])
            for name in names
        ]
        return np.concatenate(parts) if parts else np.zeros(0, dtype=np.int64)


class LevenbergMarquardtSolver(LoggerMixin):
    """
    Trust region solver for ``Problem`` instances.

    Args:
        options: Solver options.
    """

    def __init__(self, options: Optional[SolverOptions] = None):
        self.options = options or SolverOptions()

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _values(self, problem: Problem, state: Dict[str, np.ndarray], rb) -> List[np.ndarray]:
        return [state.get(block.name, block.values) for block in rb.blocks]

    def _cost(self, problem: Problem, state: Dict[str, np.ndarray], executor) -> float:
        costs = list(executor.map(
            lambda rb: rb.cost(self._values(problem, state, rb)),
            problem.residual_blocks,
        ))
        return float(sum(costs))

    def _linearize(
        self,
        problem: Problem,
        state: Dict[str, np.ndarray],
        layout: _StateLayout,
        executor,
    ) -> Tuple[float, np.ndarray, sp.csr_matrix]:
        """Cost, stacked residual and sparse Jacobian at ``state``."""
        residual_blocks = problem.residual_blocks
        results: List[Optional[tuple]] = [None] * len(residual_blocks)

        def work(index: int) -> None:
            rb = residual_blocks[index]
            results[index] = rb.linearize(self._values(problem, state, rb))

        list(executor.map(work, range(len(residual_blocks))))

        rows, cols, data, residuals = [], [], [], []
        cost = 0.0
        row_offset = 0
        for rb, (block_cost, r, jacobians) in zip(residual_blocks, results):
            cost += block_cost
            residuals.append(r)
            m = len(r)
            for block, J in zip(rb.blocks, jacobians):
                if J is None:
                    continue
                k = block.tangent_size
                col_offset = layout.offsets[block.name]
                rows.append(np.repeat(np.arange(m) + row_offset, k))
                cols.append(np.tile(np.arange(k) + col_offset, m))
                data.append(J.ravel())
            row_offset += m

        residual = np.concatenate(residuals) if residuals else np.zeros(0)
        if data:
            J = sp.coo_matrix(
                (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                shape=(row_offset, layout.size),
            ).tocsr()
        else:
            J = sp.csr_matrix((row_offset, layout.size))
        return cost, residual, J

    # -------------------------------------------------------------------------
    # Linear solvers
    # -------------------------------------------------------------------------

    def _solve_dense(self, H: np.ndarray, g: np.ndarray) -> np.ndarray:
        return scipy.linalg.solve(H, -g, assume_a="sym")

    def _solve_sparse_normal(self, H: sp.spmatrix, g: np.ndarray) -> np.ndarray:
        # H + D / mu is symmetric positive definite; a failed factorization
        # rejects the step
        factor = scipy.linalg.cho_factor(H.toarray(), lower=True)
        return scipy.linalg.cho_solve(factor, -g)

    def _solve_schur(
        self,
        H: sp.spmatrix,
        g: np.ndarray,
        groups: List[np.ndarray],
        shared: np.ndarray,
    ) -> np.ndarray:
        H = sp.csr_matrix(H)
        H_FF = H[shared][:, shared].toarray()
        S = H_FF.copy()
        rhs = -g[shared].copy()

        group_solutions = []
        for indices in groups:
            H_EE = H[indices][:, indices].toarray()
            H_EF = H[indices][:, shared].toarray()
            # Columns: [H_EE^-1 H_EF | H_EE^-1 g_E]
            solved = scipy.linalg.solve(
                H_EE, np.hstack([H_EF, g[indices][:, None]]), assume_a="sym"
            )
            S -= H_EF.T @ solved[:, :-1]
            rhs += H_EF.T @ solved[:, -1]
            group_solutions.append(solved)

        delta = np.zeros_like(g)
        delta_F = scipy.linalg.solve(S, rhs, assume_a="sym") if len(shared) else np.zeros(0)
        delta[shared] = delta_F

        for indices, solved in zip(groups, group_solutions):
            # H_EE^-1 (-g_E - H_EF delta_F)
            delta[indices] = -solved[:, -1] - solved[:, :-1] @ delta_F
        return delta

    def _schur_partition(
        self,
        problem: Problem,
        layout: _StateLayout,
    ) -> Optional[Tuple[List[np.ndarray], np.ndarray]]:
        """Tangent indices of the eliminated groups and of the shared variables."""
        variable = {block.name for block in layout.blocks}
        groups = [[name for name in group if name in variable] for group in self.options.elimination_groups]
        groups = [group for group in groups if group]
        if not groups:
            return None

        owner = {}
        for g_index, group in enumerate(groups):
            for name in group:
                if name in owner:
                    raise ValueError(f"Block '{name}' appears in two elimination groups")
                owner[name] = g_index

        for rb in problem.residual_blocks:
            touched = {owner[b.name] for b in rb.blocks if b.name in owner and not b.constant}
            if len(touched) > 1:
                raise ValueError("A residual block couples two elimination groups")

        eliminated = set(owner)
        shared_names = [block.name for block in layout.blocks if block.name not in eliminated]
        return [layout.indices(group) for group in groups], layout.indices(shared_names)

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def solve(self, problem: Problem) -> SolverSummary:
        """
        Minimize the problem cost in place.

        Returns:
            SolverSummary: Costs, iteration counts and termination reason.
        """
        options = self.options
        layout = _StateLayout(problem.variable_blocks)
        linear_solver = options.linear_solver

        summary = SolverSummary(
            linear_solver=linear_solver,
            num_parameters=layout.size,
            num_residuals=problem.num_residuals,
        )

        partition = None
        if linear_solver == "sparse_schur":
            partition = self._schur_partition(problem, layout)
            if partition is None:
                self.logger.debug("No elimination groups, using sparse normal equations")
                linear_solver = "sparse_normal"

        state = {block.name: block.values.copy() for block in layout.blocks}

        with ThreadPoolExecutor(max_workers=max(1, min(8, options.max_workers))) as executor:
            cost, residual, J = self._linearize(problem, state, layout, executor)
            summary.initial_cost = summary.final_cost = cost

            if layout.size == 0:
                summary.termination = "converged_no_variables"
                return summary

            mu = options.initial_trust_region_radius
            nu = 2.0
            termination = "max_iterations"

            for iteration in range(options.max_iterations):
                summary.iterations = iteration + 1
                H = (J.T @ J).tocsr()
                g = J.T @ residual

                if np.max(np.abs(g)) <= options.gradient_tolerance:
                    termination = "converged_gradient"
                    summary.iterations = iteration
                    break

                diagonal = np.clip(H.diagonal(), MIN_DIAGONAL, MAX_DIAGONAL)
                damped = H + sp.diags(diagonal / mu)

                try:
                    if linear_solver == "sparse_schur":
                        delta = self._solve_schur(damped, g, *partition)
                    elif linear_solver == "sparse_normal":
                        delta = self._solve_sparse_normal(damped, g)
                    else:
                        delta = self._solve_dense(damped.toarray(), g)
                except (np.linalg.LinAlgError, RuntimeError, ValueError) as e:
                    self.logger.debug(f"Iteration {iteration}: linear solve failed ({e})")
                    delta = None

                if delta is None or not np.all(np.isfinite(delta)):
                    summary.unsuccessful_steps += 1
                    mu /= nu
                    nu *= 2.0
                    continue

                x_norm = np.linalg.norm(np.concatenate([v for v in state.values()]))
                if np.linalg.norm(delta) <= options.parameter_tolerance * (x_norm + options.parameter_tolerance):
                    termination = "converged_parameter"
                    break

                candidate = {}
                for block in layout.blocks:
                    offset = layout.offsets[block.name]
                    step = delta[offset:offset + block.tangent_size]
                    candidate[block.name] = block.manifold.plus(state[block.name], step)

                new_cost = self._cost(problem, candidate, executor)
                # Decrease predicted by the undamped Gauss-Newton model
                model_decrease = -(g @ delta + 0.5 * delta @ (H @ delta))

                if np.isfinite(new_cost) and model_decrease > 0:
                    gain = (cost - new_cost) / model_decrease
                else:
                    gain = -np.inf

                self.logger.debug(
                    f"Iteration {iteration}: cost {cost:.6g} -> {new_cost:.6g}, "
                    f"gain {gain:.3g}, radius {mu:.3g}"
                )

                if gain > MIN_RELATIVE_DECREASE:
                    relative_decrease = (cost - new_cost) / cost if cost > 0 else 0.0
                    state = candidate
                    summary.successful_steps += 1
                    mu = mu / max(1.0 / 3.0, 1.0 - (2.0 * gain - 1.0) ** 3)
                    nu = 2.0
                    cost, residual, J = self._linearize(problem, state, layout, executor)
                    if relative_decrease <= options.function_tolerance:
                        termination = "converged_function"
                        break
                else:
                    summary.unsuccessful_steps += 1
                    mu /= nu
                    nu *= 2.0

        for block in layout.blocks:
            block.values = state[block.name]

        summary.final_cost = cost
        summary.termination = termination
        self.logger.debug(summary.brief_report())
        return summary
