"""
Design-space problem handed to the outer optimizer.

The problem owns the objective tree, the constraint forms, the bindings and
the states. ``solution_changed(x)`` is the only place where states are
mutated and solved; values and gradients are cached for that design point.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from openadjoint.core.config import OptimizationConfig
from openadjoint.core.exceptions import ConfigurationError, InvalidStateError
from openadjoint.io.export import write_history_csv, write_state
from openadjoint.solver.adjoint_forms.adjoint_form import AdjointForm
from openadjoint.solver.adjoint_forms.composite_forms import InequalityConstraintForm

# Configure logging
logger = logging.getLogger(__name__)


class AdjointNLProblem:
    """Value, gradient and constraint interface over a set of simulations.

    Constraints are forms whose value must stay non-positive;
    :class:`InequalityConstraintForm` entries are expanded into their raw
    bound constraints.

    Args:
        form: Objective
        variable_to_simulations: Bindings pushing the design vector into the states
        states: Every state read by the objective or the constraints
        config: Optimizer settings (history file, export directory)
        constraints: Constraint forms ``g(x) <= 0``
    """

    def __init__(
        self,
        form: AdjointForm,
        variable_to_simulations: Sequence,
        states: Sequence,
        config: Optional[OptimizationConfig] = None,
        constraints: Optional[Sequence[AdjointForm]] = None,
    ):
        self.form = form
        self.variable_to_simulations = list(variable_to_simulations)
        self.states = list(states)
        self.config = config or OptimizationConfig()
        self.constraints: List[AdjointForm] = []
        for c in constraints or []:
            if isinstance(c, InequalityConstraintForm):
                self.constraints.extend(c.constraint_forms())
            else:
                self.constraints.append(c)

        bound_states = {v2s.state for v2s in self.variable_to_simulations}
        missing = bound_states - set(self.states)
        if missing:
            raise ConfigurationError(f"{len(missing)} bound states are not part of the problem")
        read_states = set(form.get_states())
        for c in self.constraints:
            read_states |= c.get_states()
        if read_states - set(self.states):
            raise ConfigurationError("The objective reads a state that is not part of the problem")

        self._x: Optional[np.ndarray] = None
        self._value: Optional[float] = None
        self._gradient: Optional[np.ndarray] = None
        self._constraint_values: Optional[np.ndarray] = None
        self._constraint_gradients: Optional[np.ndarray] = None
        self._records: List[Dict[str, float]] = []

    @property
    def n_constraints(self) -> int:
        return len(self.constraints)

    # Design point

    def init(self, x: np.ndarray) -> None:
        """Push the initial design and initialize the forms."""
        self.solution_changed(x)
        self.form.init(x)
        for c in self.constraints:
            c.init(x)

    def solution_changed(self, x: np.ndarray) -> None:
        """Push ``x`` into every binding and re-solve the states it changed.

        Raises:
            DomainError: If a parametrization rejects ``x``
            DegenerateGeometryError: If a state becomes degenerate
            SolverConvergenceError: If a forward solve fails
        """
        x = np.asarray(x, dtype=float)
        if self._x is not None and np.array_equal(x, self._x):
            return
        self._x = None
        self._value = None
        self._gradient = None
        self._constraint_values = None
        self._constraint_gradients = None

        for v2s in self.variable_to_simulations:
            v2s.update(x)
        for k, state in enumerate(self.states):
            if state.needs_solve:
                logger.debug(f"Solving state {k}")
                state.solve()

        self.form.solution_changed(x)
        for c in self.constraints:
            c.solution_changed(x)
        self._x = x.copy()

    def _check_point(self, x: np.ndarray) -> None:
        if self._x is None or not np.array_equal(np.asarray(x, dtype=float), self._x):
            raise InvalidStateError("Design point differs from the last solution_changed call")

    # Objective

    def value(self, x: np.ndarray) -> float:
        self._check_point(x)
        if self._value is None:
            self._value = float(self.form.value(x))
        return self._value

    def _form_gradient(self, form: AdjointForm, x: np.ndarray) -> np.ndarray:
        for state in self.states:
            state.solve_adjoint(form.compute_adjoint_rhs(x, state))
        return np.asarray(form.first_derivative(x), dtype=float)

    def gradient(self, x: np.ndarray) -> np.ndarray:
        """Total design gradient of the objective at the current design point.

        Raises:
            InvalidStateError: If ``x`` is not the point of the last ``solution_changed``
        """
        self._check_point(x)
        if self._gradient is None:
            self._gradient = self._form_gradient(self.form, x)
        return self._gradient.copy()

    # Constraints

    def constraint_values(self, x: np.ndarray) -> np.ndarray:
        self._check_point(x)
        if self._constraint_values is None:
            self._constraint_values = np.array([c.value(x) for c in self.constraints], dtype=float)
        return self._constraint_values.copy()

    def constraint_gradients(self, x: np.ndarray) -> np.ndarray:
        """Jacobian of the constraints, one row per constraint."""
        self._check_point(x)
        if self._constraint_gradients is None:
            rows = [self._form_gradient(c, x) for c in self.constraints]
            self._constraint_gradients = np.array(rows).reshape(len(rows), len(x))
        return self._constraint_gradients.copy()

    def scipy_constraints(self) -> List[Dict]:
        """Constraints in the ``scipy.optimize.minimize`` format (``fun >= 0``)."""
        constraints = []
        for i in range(self.n_constraints):
            def fun(x, i=i):
                self.solution_changed(x)
                return -self.constraint_values(x)[i]

            def jac(x, i=i):
                self.solution_changed(x)
                return -self.constraint_gradients(x)[i]

            constraints.append({'type': 'ineq', 'fun': fun, 'jac': jac})
        return constraints

    # Line search hooks

    def is_step_valid(self, x0: np.ndarray, x1: np.ndarray) -> bool:
        if not self.form.is_step_valid(x0, x1):
            return False
        return all(c.is_step_valid(x0, x1) for c in self.constraints)

    def max_step_size(self, x0: np.ndarray, x1: np.ndarray) -> float:
        step = self.form.max_step_size(x0, x1)
        for c in self.constraints:
            step = min(step, c.max_step_size(x0, x1))
        return step

    def line_search_begin(self, x0: np.ndarray, x1: np.ndarray) -> None:
        self.form.line_search_begin(x0, x1)
        for c in self.constraints:
            c.line_search_begin(x0, x1)

    def line_search_end(self) -> None:
        self.form.line_search_end()
        for c in self.constraints:
            c.line_search_end()

    # History

    def post_step(self, iteration: int, x: np.ndarray) -> None:
        """Record an accepted iterate; export the states if configured."""
        self.solution_changed(x)
        record = {'iteration': iteration, 'value': self.value(x)}
        if self._gradient is not None:
            record['grad_norm'] = float(np.linalg.norm(self._gradient))
        if self.constraints:
            for i, c in enumerate(self.constraint_values(x)):
                record[f'constraint_{i}'] = float(c)
        self._records.append(record)

        self.form.post_step(iteration, x)
        for c in self.constraints:
            c.post_step(iteration, x)

        export_dir = self.config.export_directory
        if export_dir:
            os.makedirs(export_dir, exist_ok=True)
            for k, state in enumerate(self.states):
                write_state(state, Path(export_dir) / f"state{k}_iter{iteration:04d}.vtu")

        logger.info(f"Iteration {iteration}: objective = {record['value']:.6e}")

    @property
    def history(self) -> pd.DataFrame:
        return pd.DataFrame(self._records)

    def save_history(self, path: Optional[Union[str, os.PathLike]] = None) -> None:
        path = path or self.config.history_file
        if path is None:
            raise ConfigurationError("No history file given")
        write_history_csv(self.history, path)

    # Diagnostics

    def finite_difference_check(self, x: np.ndarray, direction: Optional[np.ndarray] = None,
                                h: float = 1e-6, seed: int = 0):
        """Directional derivative of the objective: adjoint versus central difference.

        Returns:
            tuple: ``(adjoint, finite_difference)`` directional derivatives
        """
        x = np.asarray(x, dtype=float)
        if direction is None:
            direction = np.random.default_rng(seed).uniform(-1.0, 1.0, len(x))
        self.solution_changed(x)
        analytic = float(self.gradient(x) @ direction)

        values = []
        for sign in (1.0, -1.0):
            xs = x + sign * h * direction
            self.solution_changed(xs)
            values.append(self.value(xs))
        self.solution_changed(x)
        numeric = (values[0] - values[1]) / (2.0 * h)
        logger.debug(f"Directional derivative: adjoint {analytic:.10e}, finite difference {numeric:.10e}")
        return analytic, numeric
