"""
Nonlinear problem assembled from forms and its Newton solver.

Dirichlet dofs are eliminated: their values are set before the solve, their
gradient rows are ignored and the Newton system is restricted to the free dofs.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve

from openadjoint.core.config import NewtonConfig
from openadjoint.core.exceptions import DegenerateGeometryError, SolverConvergenceError
from openadjoint.solver.forms.form import Form

# Configure logging
logger = logging.getLogger(__name__)


class FullNLProblem:
    """Sum of forms over the full dof vector."""

    def __init__(self, forms: Sequence[Form], ndof: int, dirichlet_dofs: Optional[np.ndarray] = None):
        self.forms: List[Form] = list(forms)
        self.ndof = ndof
        self.dirichlet_dofs = np.asarray(dirichlet_dofs if dirichlet_dofs is not None else [], dtype=int)
        mask = np.ones(ndof, dtype=bool)
        mask[self.dirichlet_dofs] = False
        self.free_dofs = np.flatnonzero(mask)

    def init(self, x):
        for form in self.forms:
            form.init(x)

    def init_lagging(self, x):
        for form in self.forms:
            form.init_lagging(x)

    def update_lagging(self, x, iter_num):
        for form in self.forms:
            form.update_lagging(x, iter_num)

    @property
    def uses_lagging(self) -> bool:
        return any(form.uses_lagging for form in self.forms)

    def update_quantities(self, t, x):
        for form in self.forms:
            form.update_quantities(t, x)

    def value(self, x) -> float:
        return float(sum(form.value(x) for form in self.forms))

    def gradient(self, x) -> np.ndarray:
        g = np.zeros(self.ndof)
        for form in self.forms:
            g += form.first_derivative(x)
        return g

    def hessian(self, x) -> sp.csr_matrix:
        H = sp.csr_matrix((self.ndof, self.ndof))
        for form in self.forms:
            H = H + form.second_derivative(x)
        return H.tocsr()

    def reduced_gradient(self, x) -> np.ndarray:
        g = self.gradient(x)
        g[self.dirichlet_dofs] = 0.0
        return g

    def is_step_valid(self, x0, x1) -> bool:
        return all(form.is_step_valid(x0, x1) for form in self.forms)

    def max_step_size(self, x0, x1) -> float:
        return min([1.0] + [form.max_step_size(x0, x1) for form in self.forms])

    def line_search_begin(self, x0, x1):
        for form in self.forms:
            form.line_search_begin(x0, x1)

    def line_search_end(self):
        for form in self.forms:
            form.line_search_end()

    def solution_changed(self, x):
        for form in self.forms:
            form.solution_changed(x)


class NewtonSolver:
    """Projected Newton with a backtracking line search.

    Args:
        config: Solver tolerances and limits
    """

    def __init__(self, config: Optional[NewtonConfig] = None):
        self.config = config or NewtonConfig()
        self.iterations = 0

    def _direction(self, problem: FullNLProblem, x: np.ndarray, g: np.ndarray) -> np.ndarray:
        free = problem.free_dofs
        H = problem.hessian(x)[free][:, free].tocsc()
        dx = np.zeros_like(x)
        reg = 0.0
        scale = max(float(np.max(np.abs(H.diagonal()))) if H.shape[0] else 1.0, 1.0)
        for _ in range(8):
            A = H if reg == 0.0 else (H + reg * scale * sp.identity(H.shape[0], format='csc'))
            d = spsolve(A, -g[free])
            d = np.atleast_1d(d)
            if np.all(np.isfinite(d)) and float(np.dot(d, g[free])) < 0:
                dx[free] = d
                return dx
            reg = 1e-8 if reg == 0.0 else reg * 100.0
            logger.debug(f"Newton direction not descending, regularizing with {reg:.1e}")
        logger.warning("Falling back to gradient descent direction")
        dx[free] = -g[free]
        return dx

    def _line_search(self, problem: FullNLProblem, x, dx, f0, g) -> Optional[np.ndarray]:
        """Backtrack from the largest admissible step.

        A trial point is accepted on sufficient decrease of the energy. When
        the energy change is at roundoff level it is accepted if the reduced
        gradient shrinks instead.
        """
        cfg = self.config
        alpha = problem.max_step_size(x, x + dx)
        slope = float(np.dot(g, dx))
        roundoff = 1e-12 * max(1.0, abs(f0))
        grad_norm0 = float(np.max(np.abs(g))) if len(g) else 0.0
        problem.line_search_begin(x, x + dx)
        try:
            for _ in range(cfg.line_search_max_iterations):
                if alpha < cfg.line_search_min_step:
                    break
                x1 = x + alpha * dx
                if problem.is_step_valid(x, x1):
                    try:
                        f1 = problem.value(x1)
                    except DegenerateGeometryError:
                        f1 = np.inf
                    if np.isfinite(f1):
                        if f1 <= f0 + 1e-4 * alpha * slope:
                            return x1
                        if abs(f1 - f0) <= roundoff:
                            g1 = problem.reduced_gradient(x1)
                            if float(np.max(np.abs(g1))) < grad_norm0:
                                return x1
                alpha *= 0.5
        finally:
            problem.line_search_end()
        return None

    def minimize(self, problem: FullNLProblem, x: np.ndarray) -> np.ndarray:
        """Minimize ``problem`` starting from ``x`` (Dirichlet values already applied).

        Raises:
            SolverConvergenceError: If the line search fails, the steps stall above the
                gradient tolerance or the iteration limit is reached
        """
        cfg = self.config
        x = np.array(x, dtype=float)
        problem.init(x)
        f = problem.value(x)

        for it in range(cfg.max_iterations):
            self.iterations = it
            g = problem.reduced_gradient(x)
            grad_norm = float(np.max(np.abs(g))) if len(g) else 0.0
            logger.debug(f"Newton iter {it}: E={f:.12g} |grad|={grad_norm:.3e}")
            if grad_norm <= cfg.grad_norm:
                return x

            dx = self._direction(problem, x, g)
            x1 = self._line_search(problem, x, dx, f, g)
            if x1 is None:
                raise SolverConvergenceError(
                    f"Newton line search failed at iteration {it} (|grad|={grad_norm:.3e})")

            step = float(np.max(np.abs(x1 - x)))
            x = x1
            f = problem.value(x)
            problem.solution_changed(x)
            if step <= cfg.x_delta * (1.0 + float(np.max(np.abs(x)))):
                grad_norm = float(np.max(np.abs(problem.reduced_gradient(x))))
                if grad_norm <= cfg.grad_norm:
                    return x
                raise SolverConvergenceError(
                    f"Newton stalled at iteration {it} with |grad|={grad_norm:.3e} "
                    f"above tolerance {cfg.grad_norm:.1e}")

        g = problem.reduced_gradient(x)
        if float(np.max(np.abs(g))) <= cfg.grad_norm:
            return x
        raise SolverConvergenceError(f"Newton did not converge in {cfg.max_iterations} iterations")
