"""
Outer optimizers driving an :class:`AdjointNLProblem`.

Unconstrained drivers (gradient descent, L-BFGS) use a backtracking line
search that rejects invalid and degenerate trial points. Constrained problems
go through scipy's SLSQP or a method-of-moving-asymptotes driver for box
bounded designs with a single inequality constraint.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import minimize

from openadjoint.core.config import OptimizationConfig
from openadjoint.core.exceptions import (
    ConfigurationError, DegenerateGeometryError, IterationLimitReached, SolverConvergenceError,
)

# Configure logging
logger = logging.getLogger(__name__)


class TerminationReason(Enum):
    """Why an optimization run stopped."""
    CONVERGED = "converged"
    ITERATION_LIMIT = "iteration_limit"
    LINE_SEARCH_FAILED = "line_search_failed"


@dataclass
class OptimizationResult:
    """Final iterate and status of an optimization run."""
    x: np.ndarray
    fun: float
    iterations: int
    reason: TerminationReason
    grad_norm: float = float('nan')

    @property
    def success(self) -> bool:
        return self.reason == TerminationReason.CONVERGED


class NLSolver(ABC):
    """Base optimizer.

    Args:
        config: Optimizer settings
    """

    name = "base"

    def __init__(self, config: Optional[OptimizationConfig] = None):
        self.config = config or OptimizationConfig()

    @abstractmethod
    def minimize(self, problem, x0: np.ndarray) -> OptimizationResult:
        pass

    def _finish(self, problem, x, iterations, reason, grad_norm=float('nan')) -> OptimizationResult:
        problem.solution_changed(x)
        fun = problem.value(x)
        logger.info(f"{self.name}: {reason.value} after {iterations} iterations, objective = {fun:.6e}")
        if reason == TerminationReason.ITERATION_LIMIT and self.config.raise_on_iteration_limit:
            raise IterationLimitReached(f"{self.name} reached {iterations} iterations")
        return OptimizationResult(np.array(x, copy=True), fun, iterations, reason, grad_norm)

    def _bounds(self, n: int) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        if self.config.bounds is None:
            return None
        lower, upper = self.config.bounds
        return np.full(n, float(lower)), np.full(n, float(upper))


class GradientDescentSolver(NLSolver):
    """Steepest descent with a backtracking Armijo line search."""

    name = "GradientDescent"

    def reset(self, n: int) -> None:
        pass

    def compute_direction(self, g: np.ndarray) -> np.ndarray:
        return -g

    def update(self, s: np.ndarray, y: np.ndarray) -> None:
        pass

    def _line_search(self, problem, x, f, g, direction):
        """Backtrack from the largest safe step until the Armijo condition holds.

        Returns:
            tuple: ``(x1, f1)`` of the accepted point, or ``None``
        """
        cfg = self.config
        slope = float(g @ direction)
        step = cfg.initial_step_size
        bounds = self._bounds(len(x))
        try:
            step = min(step, problem.max_step_size(x, x + step * direction))
        except DegenerateGeometryError as e:
            logger.warning(f"Collision check failed: {e}")

        x_trial = x + step * direction
        problem.line_search_begin(x, x_trial)
        accepted = None
        try:
            for _ in range(cfg.line_search_max_iterations):
                x_trial = x + step * direction
                if bounds is not None:
                    x_trial = np.clip(x_trial, bounds[0], bounds[1])
                if problem.is_step_valid(x, x_trial):
                    try:
                        problem.solution_changed(x_trial)
                        f_trial = problem.value(x_trial)
                    except (DegenerateGeometryError, SolverConvergenceError) as e:
                        logger.warning(f"Rejected trial point at step {step:.3e}: {e}")
                        f_trial = np.inf
                    if np.isfinite(f_trial) and f_trial <= f + 1e-4 * step * slope:
                        accepted = (x_trial, f_trial)
                        break
                step *= 0.5
        finally:
            problem.line_search_end()
        return accepted

    def minimize(self, problem, x0):
        cfg = self.config
        x = np.array(x0, dtype=float)
        problem.init(x)
        f = problem.value(x)
        g = problem.gradient(x)
        g0_norm = np.linalg.norm(g)
        problem.post_step(0, x)
        self.reset(len(x))

        for it in range(1, cfg.max_iterations + 1):
            g_norm = float(np.linalg.norm(g))
            if g_norm <= cfg.grad_norm or g_norm <= cfg.relative_grad_norm * g0_norm:
                return self._finish(problem, x, it - 1, TerminationReason.CONVERGED, g_norm)

            direction = self.compute_direction(g)
            if g @ direction >= 0:
                logger.debug("Not a descent direction, resetting to steepest descent")
                self.reset(len(x))
                direction = -g
            result = self._line_search(problem, x, f, g, direction)
            if result is None and np.any(direction != -g):
                logger.debug("Line search failed, retrying along the steepest descent direction")
                self.reset(len(x))
                result = self._line_search(problem, x, f, g, -g)
            if result is None:
                return self._finish(problem, x, it - 1, TerminationReason.LINE_SEARCH_FAILED, g_norm)

            x_new, f_new = result
            g_new = problem.gradient(x_new)
            self.update(x_new - x, g_new - g)
            dx = float(np.linalg.norm(x_new - x))
            df = abs(f - f_new)
            x, f, g = x_new, f_new, g_new
            problem.post_step(it, x)

            if dx <= cfg.x_delta or df < cfg.f_delta:
                return self._finish(problem, x, it, TerminationReason.CONVERGED, float(np.linalg.norm(g)))

        return self._finish(problem, x, cfg.max_iterations, TerminationReason.ITERATION_LIMIT,
                            float(np.linalg.norm(g)))


class LBFGSSolver(GradientDescentSolver):
    """Limited-memory BFGS; two-loop recursion over the last ``history_size`` pairs."""

    name = "L-BFGS"

    def reset(self, n):
        self._pairs = deque(maxlen=max(1, self.config.history_size))

    def update(self, s, y):
        sy = float(s @ y)
        if sy > 1e-12 * np.linalg.norm(s) * np.linalg.norm(y):
            self._pairs.append((s, y, 1.0 / sy))

    def compute_direction(self, g):
        q = g.copy()
        alphas = []
        for s, y, rho in reversed(self._pairs):
            a = rho * (s @ q)
            alphas.append(a)
            q -= a * y
        if self._pairs:
            s, y, _ = self._pairs[-1]
            q *= (s @ y) / (y @ y)
        for (s, y, rho), a in zip(self._pairs, reversed(alphas)):
            b = rho * (y @ q)
            q += (a - b) * s
        return -q


class SLSQPSolver(NLSolver):
    """Sequential least squares programming through ``scipy.optimize.minimize``."""

    name = "SLSQP"

    def minimize(self, problem, x0):
        cfg = self.config
        x0 = np.array(x0, dtype=float)
        problem.init(x0)
        problem.post_step(0, x0)
        iteration = [0]

        def fun(x):
            problem.solution_changed(x)
            return problem.value(x)

        def jac(x):
            problem.solution_changed(x)
            return problem.gradient(x)

        def callback(x):
            iteration[0] += 1
            problem.post_step(iteration[0], x)

        bounds = self._bounds(len(x0))
        result = minimize(
            fun=fun,
            x0=x0,
            method='SLSQP',
            jac=jac,
            bounds=None if bounds is None else list(zip(*bounds)),
            constraints=problem.scipy_constraints(),
            options={'maxiter': cfg.max_iterations, 'ftol': max(cfg.f_delta, 1e-12)},
            callback=callback,
        )
        if result.success:
            reason = TerminationReason.CONVERGED
        elif result.status == 9:
            reason = TerminationReason.ITERATION_LIMIT
        else:
            logger.warning(f"SLSQP stopped: {result.message}")
            reason = TerminationReason.LINE_SEARCH_FAILED
        return self._finish(problem, result.x, iteration[0], reason)


def mma_update(itr, xval, xmin, xmax, xold1, xold2, df0dx, fval, dfdx, low, upp, move=0.2):
    """Method of moving asymptotes step for one linearized inequality constraint.

    The convex separable approximation of the objective is minimized subject
    to ``fval + dfdx . (x - xval) <= 0`` by bisection on the multiplier; the
    returned design is taken on the feasible side of the bracket.

    Returns:
        tuple: ``(xnew, low, upp)``
    """
    asyinit, asyincr, asydecr, albefa, raa0 = 0.5, 1.2, 0.7, 0.1, 1e-5
    span = xmax - xmin

    if itr <= 2:
        low = xval - asyinit * span
        upp = xval + asyinit * span
    else:
        # Widen the asymptotes along monotone moves, tighten on oscillation
        zzz = (xval - xold1) * (xold1 - xold2)
        factor = np.ones_like(xval)
        factor[zzz > 0] = asyincr
        factor[zzz < 0] = asydecr
        low = xval - factor * (xold1 - low)
        upp = xval + factor * (upp - xold1)
        low = np.clip(low, xval - 10.0 * span, xval - 0.01 * span)
        upp = np.clip(upp, xval + 0.01 * span, xval + 10.0 * span)

    alfa = np.maximum.reduce([low + albefa * (xval - low), xval - move * span, xmin])
    beta = np.minimum.reduce([upp - albefa * (upp - xval), xval + move * span, xmax])

    ux2 = (upp - xval) ** 2
    xl2 = (xval - low) ** 2
    p0 = (1.001 * np.maximum(df0dx, 0) + 0.001 * np.maximum(-df0dx, 0) + raa0 / span) * ux2
    q0 = (0.001 * np.maximum(df0dx, 0) + 1.001 * np.maximum(-df0dx, 0) + raa0 / span) * xl2
    P = np.maximum(dfdx, 0) * ux2
    Q = np.maximum(-dfdx, 0) * xl2

    def solve(lmid):
        s = np.sqrt((p0 + lmid * P) / (q0 + lmid * Q))
        return np.clip((low * s + upp) / (1.0 + s), alfa, beta)

    def linearized(x):
        return fval + dfdx @ (x - xval)

    xnew = solve(0.0)
    if linearized(xnew) <= 0:
        return xnew, low, upp

    l1, l2 = 0.0, 1e9
    for _ in range(200):
        lmid = 0.5 * (l1 + l2)
        if linearized(solve(lmid)) > 0:
            l1 = lmid
        else:
            l2 = lmid
        if (l2 - l1) / (l1 + l2 + 1e-10) < 1e-6:
            break
    return solve(l2), low, upp


class MMASolver(NLSolver):
    """Method of moving asymptotes for box-bounded designs with one constraint.

    Every accepted iterate decreases the objective and satisfies the
    constraint; a trial design is pulled back toward the current one until
    both hold.
    """

    name = "MMA"

    def minimize(self, problem, x0):
        cfg = self.config
        if problem.n_constraints != 1:
            raise ConfigurationError(f"MMA handles exactly one inequality constraint, got {problem.n_constraints}")
        x = np.array(x0, dtype=float)
        bounds = self._bounds(len(x))
        xmin, xmax = bounds if bounds is not None else (np.zeros(len(x)), np.ones(len(x)))
        x = np.clip(x, xmin, xmax)

        problem.init(x)
        f = problem.value(x)
        c = problem.constraint_values(x)[0]
        if c > 0:
            logger.warning(f"Initial design violates the constraint by {c:.3e}")
        problem.post_step(0, x)
        xold1, xold2 = x.copy(), x.copy()
        low, upp = xmin.copy(), xmax.copy()

        for it in range(1, cfg.max_iterations + 1):
            g = problem.gradient(x)
            dc = problem.constraint_gradients(x)[0]
            xnew, low, upp = mma_update(it, x, xmin, xmax, xold1, xold2, g, c, dc, low, upp, cfg.move_limit)

            accepted = None
            step = 1.0
            for _ in range(cfg.line_search_max_iterations):
                x_trial = x + step * (xnew - x)
                try:
                    problem.solution_changed(x_trial)
                    f_trial = problem.value(x_trial)
                    c_trial = problem.constraint_values(x_trial)[0]
                except (DegenerateGeometryError, SolverConvergenceError) as e:
                    logger.warning(f"Rejected trial point at step {step:.3e}: {e}")
                    f_trial, c_trial = np.inf, np.inf
                if f_trial < f and c_trial <= max(c, 0.0):
                    accepted = (x_trial, f_trial, c_trial)
                    break
                step *= 0.5
            if accepted is None:
                return self._finish(problem, x, it - 1, TerminationReason.LINE_SEARCH_FAILED)

            x_new, f_new, c = accepted
            xold2, xold1 = xold1, x.copy()
            dx = float(np.max(np.abs(x_new - x)))
            df = abs(f - f_new)
            x, f = x_new, f_new
            problem.post_step(it, x)
            if dx <= cfg.x_delta or df < cfg.f_delta:
                return self._finish(problem, x, it, TerminationReason.CONVERGED)

        return self._finish(problem, x, cfg.max_iterations, TerminationReason.ITERATION_LIMIT)


SOLVERS = {
    'gradient_descent': GradientDescentSolver,
    'lbfgs': LBFGSSolver,
    'slsqp': SLSQPSolver,
    'mma': MMASolver,
}


def make_nl_solver(config: Optional[OptimizationConfig] = None) -> NLSolver:
    """Create the optimizer named by ``config.algorithm``.

    Raises:
        ConfigurationError: For an unknown algorithm
    """
    config = config or OptimizationConfig()
    name = config.algorithm.lower().replace('-', '_')
    if name not in SOLVERS:
        raise ConfigurationError(f"Unknown optimization algorithm: {config.algorithm}. "
                                 f"Available algorithms: {sorted(SOLVERS)}")
    return SOLVERS[name](config)
