"""
Base class of the energy terms summed by the nonlinear solver.

A form is a scalar function of the full displacement vector ``x`` together
with its gradient and sparse Hessian. The public entry points apply the form
weight; subclasses implement the unweighted quantities.
"""

from abc import ABC, abstractmethod

import numpy as np
import scipy.sparse as sp


class Form(ABC):
    """Weighted energy term with first and second derivatives."""

    def __init__(self):
        self._weight = 1.0
        self.enabled = True

    @property
    def weight(self) -> float:
        return self._weight

    def set_weight(self, weight: float) -> None:
        self._weight = float(weight)

    def init(self, x: np.ndarray) -> None:
        """Build caches that depend on the starting point."""
        pass

    def init_lagging(self, x: np.ndarray) -> None:
        """Freeze staggered quantities at ``x``."""
        pass

    def update_lagging(self, x: np.ndarray, iter_num: int) -> None:
        """Refresh lagged quantities between outer iterations."""
        self.init_lagging(x)

    @property
    def uses_lagging(self) -> bool:
        return False

    def update_quantities(self, t: float, x: np.ndarray) -> None:
        """Advance time-dependent data after step ``x`` was accepted."""
        pass

    def value(self, x: np.ndarray) -> float:
        if not self.enabled:
            return 0.0
        return self._weight * self.value_unweighted(x)

    def first_derivative(self, x: np.ndarray) -> np.ndarray:
        if not self.enabled:
            return np.zeros(len(x))
        return self._weight * self.first_derivative_unweighted(x)

    def second_derivative(self, x: np.ndarray) -> sp.csr_matrix:
        if not self.enabled:
            return sp.csr_matrix((len(x), len(x)))
        return (self._weight * self.second_derivative_unweighted(x)).tocsr()

    def is_step_valid(self, x0: np.ndarray, x1: np.ndarray) -> bool:
        return True

    def max_step_size(self, x0: np.ndarray, x1: np.ndarray) -> float:
        return 1.0

    def line_search_begin(self, x0: np.ndarray, x1: np.ndarray) -> None:
        pass

    def line_search_end(self) -> None:
        pass

    def solution_changed(self, new_x: np.ndarray) -> None:
        pass

    @abstractmethod
    def value_unweighted(self, x: np.ndarray) -> float:
        pass

    @abstractmethod
    def first_derivative_unweighted(self, x: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def second_derivative_unweighted(self, x: np.ndarray) -> sp.spmatrix:
        pass
