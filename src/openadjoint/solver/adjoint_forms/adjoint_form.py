"""
Nodes of the objective tree.

An adjoint form is a scalar function of the design vector through the
simulation states. Its gradient is the partial gradient (explicit dependence
on the bound parameters) plus the adjoint terms of every binding, which read
the adjoint fields solved for the rhs this form returns from
:meth:`AdjointForm.compute_adjoint_rhs`.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Set

import numpy as np

from openadjoint.solver.adjoint_tools import ParameterType


class AdjointForm(ABC):
    """Base node of the objective tree.

    Args:
        variable_to_simulations: All bindings of the design vector
    """

    def __init__(self, variable_to_simulations: Sequence = ()):
        self.variable_to_simulations = list(variable_to_simulations)
        self._weight = 1.0

    @property
    def weight(self) -> float:
        return self._weight

    def set_weight(self, weight: float) -> None:
        self._weight = float(weight)

    def init(self, x: np.ndarray) -> None:
        pass

    def value(self, x: np.ndarray) -> float:
        return self._weight * self.value_unweighted(x)

    @abstractmethod
    def value_unweighted(self, x: np.ndarray) -> float:
        pass

    def first_derivative(self, x: np.ndarray) -> np.ndarray:
        """Total design gradient; the adjoints of every state must be solved for this form."""
        grad = self.compute_partial_gradient(x)
        for v2s in self.variable_to_simulations:
            grad = grad + v2s.compute_adjoint_term(x)
        return grad

    def compute_partial_gradient(self, x: np.ndarray) -> np.ndarray:
        return self._weight * self.compute_partial_gradient_unweighted(x)

    def compute_partial_gradient_unweighted(self, x: np.ndarray) -> np.ndarray:
        return np.zeros(len(x))

    def compute_adjoint_rhs(self, x: np.ndarray, state) -> np.ndarray:
        """Derivative of the form with respect to the solution of ``state`` (ndof x columns)."""
        return self._weight * self.compute_adjoint_rhs_unweighted(x, state)

    def compute_adjoint_rhs_unweighted(self, x: np.ndarray, state) -> np.ndarray:
        return np.zeros((state.ndof, state.n_solution_columns))

    def get_states(self) -> Set:
        """States whose solution this form reads."""
        return set()

    def solution_changed(self, x: np.ndarray) -> None:
        pass

    def is_step_valid(self, x0: np.ndarray, x1: np.ndarray) -> bool:
        return True

    def max_step_size(self, x0: np.ndarray, x1: np.ndarray) -> float:
        return 1.0

    def line_search_begin(self, x0: np.ndarray, x1: np.ndarray) -> None:
        pass

    def line_search_end(self) -> None:
        pass

    def post_step(self, iteration: int, x: np.ndarray) -> None:
        pass

    # Helpers for forms reading the rest shape of one state

    def shape_bindings(self, state) -> List:
        return [v2s for v2s in self.variable_to_simulations
                if v2s.parameter_type == ParameterType.SHAPE and v2s.state is state]

    def candidate_vertices(self, state, x: np.ndarray) -> np.ndarray:
        """Rest positions ``state`` would have after pushing ``x`` through its shape bindings."""
        V = state.mesh.vertices.ravel().copy()
        for v2s in self.shape_bindings(state):
            V[v2s.get_output_indexing(x)] = v2s.parametrization.eval(x)
        return V.reshape(-1, 2)

    def pull_back_shape_term(self, state, term: np.ndarray, x: np.ndarray) -> np.ndarray:
        grad = np.zeros(len(x))
        for v2s in self.shape_bindings(state):
            grad += v2s.apply_parametrization_jacobian(term, x)
        return grad


class StaticForm(AdjointForm):
    """Form defined per time step; evaluated at ``time_step`` (last step by default).

    Args:
        variable_to_simulations: All bindings of the design vector
        state: State whose solution the form reads
        time_step: Evaluated solution column (negative counts from the end)
    """

    def __init__(self, variable_to_simulations: Sequence, state, time_step: int = -1):
        super().__init__(variable_to_simulations)
        self.state = state
        self.time_step = time_step

    def _step(self) -> int:
        return self.time_step % self.state.n_solution_columns

    def get_states(self):
        return {self.state}

    def value_unweighted(self, x):
        return self.value_unweighted_step(self._step(), x)

    def compute_partial_gradient_unweighted(self, x):
        return self.compute_partial_gradient_unweighted_step(self._step(), x)

    def compute_adjoint_rhs_unweighted(self, x, state):
        rhs = np.zeros((state.ndof, state.n_solution_columns))
        if state is self.state:
            rhs[:, self._step()] = self.compute_adjoint_rhs_unweighted_step(self._step(), x, state)
        return rhs

    @abstractmethod
    def value_unweighted_step(self, step: int, x: np.ndarray) -> float:
        pass

    def compute_partial_gradient_unweighted_step(self, step: int, x: np.ndarray) -> np.ndarray:
        return np.zeros(len(x))

    def compute_adjoint_rhs_unweighted_step(self, step: int, x: np.ndarray, state) -> np.ndarray:
        return np.zeros(state.ndof)
