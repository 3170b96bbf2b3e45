"""
Composite nodes of the objective tree.

A composite combines the values of its children with a scalar function and
applies the chain rule to both the partial gradients and the adjoint rhs, so
one adjoint solve per state covers the whole subtree.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from openadjoint.core.exceptions import ConfigurationError
from openadjoint.solver.adjoint_forms.adjoint_form import AdjointForm, StaticForm

# Configure logging
logger = logging.getLogger(__name__)


class CompositeForm(AdjointForm):
    """Scalar function of child form values."""

    def __init__(self, variable_to_simulations: Sequence, forms: Sequence[AdjointForm]):
        super().__init__(variable_to_simulations)
        self.forms: List[AdjointForm] = list(forms)
        if not self.forms:
            raise ConfigurationError(f"{type(self).__name__} needs at least one child form")

    def compose(self, inputs: np.ndarray) -> float:
        raise NotImplementedError

    def compose_grad(self, inputs: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _inputs(self, x):
        return np.array([f.value(x) for f in self.forms])

    def value_unweighted(self, x):
        return float(self.compose(self._inputs(x)))

    def compute_partial_gradient_unweighted(self, x):
        outer = self.compose_grad(self._inputs(x))
        grad = np.zeros(len(x))
        for c, form in zip(outer, self.forms):
            if c != 0.0:
                grad += c * form.compute_partial_gradient(x)
        return grad

    def compute_adjoint_rhs_unweighted(self, x, state):
        outer = self.compose_grad(self._inputs(x))
        rhs = np.zeros((state.ndof, state.n_solution_columns))
        for c, form in zip(outer, self.forms):
            if c != 0.0:
                rhs += c * form.compute_adjoint_rhs(x, state)
        return rhs

    def get_states(self):
        states = set()
        for form in self.forms:
            states |= form.get_states()
        return states

    def init(self, x):
        for form in self.forms:
            form.init(x)

    def solution_changed(self, x):
        for form in self.forms:
            form.solution_changed(x)

    def is_step_valid(self, x0, x1):
        return all(form.is_step_valid(x0, x1) for form in self.forms)

    def max_step_size(self, x0, x1):
        return min(form.max_step_size(x0, x1) for form in self.forms)

    def line_search_begin(self, x0, x1):
        for form in self.forms:
            form.line_search_begin(x0, x1)

    def line_search_end(self):
        for form in self.forms:
            form.line_search_end()

    def post_step(self, iteration, x):
        for form in self.forms:
            form.post_step(iteration, x)


class SumCompositeForm(CompositeForm):
    """Sum of the (weighted) children."""

    def compose(self, inputs):
        return np.sum(inputs)

    def compose_grad(self, inputs):
        return np.ones_like(inputs)


class PlusConstCompositeForm(CompositeForm):
    """``form + const``; with a negative constant this turns ``g <= c`` into ``g - c <= 0``."""

    def __init__(self, variable_to_simulations: Sequence, form: AdjointForm, const: float):
        super().__init__(variable_to_simulations, [form])
        self.const = float(const)

    def compose(self, inputs):
        return inputs[0] + self.const

    def compose_grad(self, inputs):
        return np.ones(1)


class PowerForm(CompositeForm):
    """``form ** power``."""

    def __init__(self, variable_to_simulations: Sequence, form: AdjointForm, power: float):
        super().__init__(variable_to_simulations, [form])
        self.power = float(power)

    def compose(self, inputs):
        return inputs[0] ** self.power

    def compose_grad(self, inputs):
        return np.array([self.power * inputs[0] ** (self.power - 1.0)])


class InequalityConstraintForm(CompositeForm):
    """Quadratic penalty of ``lower <= g <= upper``.

    ``max(0, g - upper)^2 + max(0, lower - g)^2``. The raw constraints
    ``g - upper <= 0`` and ``lower - g <= 0`` are available through
    :meth:`constraint_forms` for solvers that handle constraints directly.
    """

    def __init__(self, variable_to_simulations: Sequence, forms: Sequence[AdjointForm], bounds: Sequence[float]):
        super().__init__(variable_to_simulations, forms)
        if len(self.forms) != 1:
            raise ConfigurationError("InequalityConstraintForm wraps exactly one form")
        lower, upper = float(bounds[0]), float(bounds[1])
        if lower > upper:
            raise ConfigurationError(f"Invalid bounds [{lower}, {upper}]")
        self.lower, self.upper = lower, upper

    def compose(self, inputs):
        g = inputs[0]
        return max(0.0, g - self.upper) ** 2 + max(0.0, self.lower - g) ** 2

    def compose_grad(self, inputs):
        g = inputs[0]
        return np.array([2.0 * max(0.0, g - self.upper) - 2.0 * max(0.0, self.lower - g)])

    def constraint_values(self, x: np.ndarray) -> np.ndarray:
        """Raw ``[g - upper, lower - g]`` over the finite bounds."""
        g = self.forms[0].value(x)
        values = []
        if np.isfinite(self.upper):
            values.append(g - self.upper)
        if np.isfinite(self.lower):
            values.append(self.lower - g)
        return np.array(values)

    def constraint_forms(self) -> List[AdjointForm]:
        """Forms whose non-positivity encodes the bounds."""
        forms = []
        if np.isfinite(self.upper):
            forms.append(PlusConstCompositeForm(self.variable_to_simulations, self.forms[0], -self.upper))
        if np.isfinite(self.lower):
            negated = SumCompositeForm(self.variable_to_simulations, [self.forms[0]])
            negated.set_weight(-1.0)
            forms.append(PlusConstCompositeForm(self.variable_to_simulations, negated, self.lower))
        return forms


class TransientForm(CompositeForm):
    """Aggregate a per-step objective over a transient run.

    Policies: ``final`` (last step), ``uniform`` (``dt`` per step 1..T),
    ``simpson`` (composite Simpson over steps 0..T, trapezoid on a leftover
    interval) and ``steps`` (unit weight on the listed steps).

    Args:
        variable_to_simulations: All bindings of the design vector
        time_steps: Number of steps of the state
        dt: Time step
        transient_integral_type: Aggregation policy
        obj: Per-step objective
        steps: Steps aggregated by the ``steps`` policy
    """

    def __init__(self, variable_to_simulations: Sequence, time_steps: int, dt: float,
                 transient_integral_type: str, obj: StaticForm, steps: Optional[Sequence[int]] = None):
        super().__init__(variable_to_simulations, [obj])
        if not isinstance(obj, StaticForm):
            raise ConfigurationError("TransientForm aggregates a per-step form")
        if obj.state.time_steps != time_steps:
            raise ConfigurationError(
                f"TransientForm over {time_steps} steps bound to a state with {obj.state.time_steps} steps")
        self.obj = obj
        self.time_steps = int(time_steps)
        self.dt = float(dt)
        self.transient_integral_type = transient_integral_type
        self.steps = list(steps or [])
        self.weights = self.quadrature_weights()

    def quadrature_weights(self) -> np.ndarray:
        T, dt = self.time_steps, self.dt
        w = np.zeros(T + 1)
        kind = self.transient_integral_type
        if kind == 'final':
            w[T] = 1.0
        elif kind == 'uniform':
            w[1:] = dt
        elif kind == 'simpson':
            n = T if T % 2 == 0 else T - 1
            for i in range(0, n, 2):
                w[i] += dt / 3.0
                w[i + 1] += 4.0 * dt / 3.0
                w[i + 2] += dt / 3.0
            if n < T:
                w[T - 1] += dt / 2.0
                w[T] += dt / 2.0
        elif kind == 'steps':
            if not self.steps:
                raise ConfigurationError("Transient policy 'steps' needs a list of steps")
            for s in self.steps:
                if not 0 <= s <= T:
                    raise ConfigurationError(f"Step {s} outside [0, {T}]")
                w[s] += 1.0
        else:
            raise ConfigurationError(f"Unknown transient integral type: {kind}. "
                                     f"Available types: ['final', 'uniform', 'simpson', 'steps']")
        return w

    def value_unweighted(self, x):
        total = 0.0
        for t, w in enumerate(self.weights):
            if w != 0.0:
                total += w * self.obj.weight * self.obj.value_unweighted_step(t, x)
        return total

    def compute_partial_gradient_unweighted(self, x):
        grad = np.zeros(len(x))
        for t, w in enumerate(self.weights):
            if w != 0.0:
                grad += w * self.obj.weight * self.obj.compute_partial_gradient_unweighted_step(t, x)
        return grad

    def compute_adjoint_rhs_unweighted(self, x, state):
        rhs = np.zeros((state.ndof, state.n_solution_columns))
        if state is not self.obj.state:
            return rhs
        for t, w in enumerate(self.weights):
            if w != 0.0:
                rhs[:, t] = w * self.obj.weight * self.obj.compute_adjoint_rhs_unweighted_step(t, x, state)
        return rhs
