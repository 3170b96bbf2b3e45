"""
Maps between raw design vectors and physical quantities.

A parametrization is a function ``f: R^n -> R^m`` with a pullback
``apply_jacobian(g, x) = (df/dx)^T g``. Chains are evaluated first to last and
pulled back last to first.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np

from openadjoint.core.exceptions import DomainError


class Parametrization(ABC):
    """Base class of all design maps."""

    def size(self, x_size: int) -> int:
        """Output size for an input of size ``x_size``."""
        return x_size

    @abstractmethod
    def eval(self, x: np.ndarray) -> np.ndarray:
        pass

    def inverse_eval(self, y: np.ndarray) -> np.ndarray:
        raise DomainError(f"{type(self).__name__} has no inverse")

    @abstractmethod
    def apply_jacobian(self, grad: np.ndarray, x: np.ndarray) -> np.ndarray:
        pass

    def get_output_indexing(self, x: np.ndarray) -> np.ndarray:
        """Target coordinates written by the output of this map."""
        return np.arange(self.size(len(x)))


class CompositeParametrization(Parametrization):
    """Chain ``f_k(...f_1(x))`` of parametrizations; empty chains are the identity.

    Args:
        parametrizations: Links in evaluation order
    """

    def __init__(self, parametrizations: Optional[Sequence[Parametrization]] = None):
        self.parametrizations: List[Parametrization] = list(parametrizations or [])

    def size(self, x_size):
        for p in self.parametrizations:
            x_size = p.size(x_size)
        return x_size

    def _inputs(self, x):
        inputs = [np.asarray(x, dtype=float)]
        for p in self.parametrizations[:-1]:
            inputs.append(p.eval(inputs[-1]))
        return inputs

    def eval(self, x):
        y = np.asarray(x, dtype=float)
        for p in self.parametrizations:
            y = p.eval(y)
        return y

    def inverse_eval(self, y):
        x = np.asarray(y, dtype=float)
        for p in reversed(self.parametrizations):
            x = p.inverse_eval(x)
        return x

    def apply_jacobian(self, grad, x):
        grad = np.asarray(grad, dtype=float)
        if not self.parametrizations:
            return grad
        inputs = self._inputs(x)
        for p, xi in zip(reversed(self.parametrizations), reversed(inputs)):
            grad = p.apply_jacobian(grad, xi)
        return grad

    def get_output_indexing(self, x):
        if not self.parametrizations:
            return np.arange(len(x))
        inputs = self._inputs(x)
        return self.parametrizations[-1].get_output_indexing(inputs[-1])


class ExponentialMap(Parametrization):
    """Elementwise ``exp``, keeping a physical constant positive by optimizing its log.

    Args:
        from_index: First coordinate mapped (default 0)
        to_index: One past the last coordinate mapped (default: all)
    """

    def __init__(self, from_index: int = 0, to_index: Optional[int] = None):
        self.from_index = from_index
        self.to_index = to_index

    def _slice(self, n):
        return slice(self.from_index, n if self.to_index is None else self.to_index)

    def eval(self, x):
        y = np.array(x, dtype=float)
        s = self._slice(len(y))
        y[s] = np.exp(y[s])
        return y

    def inverse_eval(self, y):
        x = np.array(y, dtype=float)
        s = self._slice(len(x))
        if np.any(x[s] <= 0):
            raise DomainError("ExponentialMap inverse needs strictly positive values")
        x[s] = np.log(x[s])
        return x

    def apply_jacobian(self, grad, x):
        g = np.array(grad, dtype=float)
        s = self._slice(len(g))
        g[s] *= np.exp(np.asarray(x, dtype=float)[s])
        return g


class PowerMap(Parametrization):
    """Elementwise ``x ** power`` (SIMP penalization of densities)."""

    def __init__(self, power: float = 3.0):
        if power <= 0:
            raise DomainError(f"PowerMap needs a positive power, got {power}")
        self.power = float(power)

    def eval(self, x):
        return np.asarray(x, dtype=float) ** self.power

    def inverse_eval(self, y):
        y = np.asarray(y, dtype=float)
        if np.any(y < 0):
            raise DomainError("PowerMap inverse needs non-negative values")
        return y ** (1.0 / self.power)

    def apply_jacobian(self, grad, x):
        x = np.asarray(x, dtype=float)
        return np.asarray(grad, dtype=float) * self.power * x ** (self.power - 1.0)


class SliceMap(Parametrization):
    """Contiguous segment ``x[from_index:to_index]`` of the design vector.

    The map is not injective; ``inverse_eval`` returns the segment coordinates
    themselves so chains starting with a slice can recover their slice of an
    initial design.
    """

    def __init__(self, from_index: int, to_index: int):
        if from_index < 0 or to_index < from_index:
            raise DomainError(f"Invalid slice [{from_index}, {to_index})")
        self.from_index = from_index
        self.to_index = to_index

    def size(self, x_size):
        if x_size < self.to_index:
            raise DomainError(f"SliceMap [{self.from_index}, {self.to_index}) applied to a vector of size {x_size}")
        return self.to_index - self.from_index

    def eval(self, x):
        x = np.asarray(x, dtype=float)
        self.size(len(x))
        return x[self.from_index:self.to_index].copy()

    def inverse_eval(self, y):
        y = np.asarray(y, dtype=float)
        if len(y) != self.to_index - self.from_index:
            raise DomainError(f"SliceMap inverse expects {self.to_index - self.from_index} values, got {len(y)}")
        return y.copy()

    def apply_jacobian(self, grad, x):
        out = np.zeros(len(x))
        out[self.from_index:self.to_index] = grad
        return out
