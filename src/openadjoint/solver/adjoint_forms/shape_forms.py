"""
Objectives of the rest shape and of the design variables alone.

These forms never read a solution, so their adjoint rhs is zero and their
gradient is entirely partial.
"""

import logging
from typing import Iterable, Sequence

import numpy as np
import jax
import jax.numpy as jnp

from openadjoint.core.exceptions import DegenerateGeometryError
from openadjoint.fem import elements
from openadjoint.solver.adjoint_forms.adjoint_form import AdjointForm
from openadjoint.solver.forms.contact_form import ContactForm

# Configure logging
logger = logging.getLogger(__name__)


def _amips(X, Dm0_inv, area0):
    F = elements.edge_matrix(X) @ Dm0_inv
    return area0 * jnp.sum(F * F) / elements.det2(F)


_amips_values = jax.jit(jax.vmap(_amips))
_amips_gradients = jax.jit(jax.vmap(jax.grad(_amips)))


class _RestShapeForm(AdjointForm):
    """Form of the rest positions of one state."""

    def __init__(self, variable_to_simulations: Sequence, state):
        super().__init__(variable_to_simulations)
        self.state = state

    def vertices(self, x: np.ndarray) -> np.ndarray:
        return self.candidate_vertices(self.state, x)

    def compute_partial_gradient_unweighted(self, x):
        return self.pull_back_shape_term(self.state, self.shape_gradient(self.vertices(x)), x)

    def shape_gradient(self, V: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class AMIPSForm(_RestShapeForm):
    """Conformal distortion ``sum_e A0_e tr(F^T F) / det F`` of the map from the initial rest shape.

    Each element contributes at least ``2 A0_e``; inverted elements make the
    step invalid.
    """

    def __init__(self, variable_to_simulations: Sequence, state):
        super().__init__(variable_to_simulations, state)
        X0 = state.mesh.vertices[state.mesh.elements]
        Dm0 = np.stack([X0[:, 1] - X0[:, 0], X0[:, 2] - X0[:, 0]], axis=2)
        self.Dm0_inv = np.linalg.inv(Dm0)
        self.area0 = 0.5 * np.abs(np.linalg.det(Dm0))

    def _check(self, V):
        areas = self.state.mesh.signed_areas(V)
        if np.any(areas <= 0):
            raise DegenerateGeometryError(f"{int(np.sum(areas <= 0))} rest elements are inverted")

    def value_unweighted(self, x):
        V = self.vertices(x)
        self._check(V)
        return float(np.sum(_amips_values(V[self.state.mesh.elements], self.Dm0_inv, self.area0)))

    def shape_gradient(self, V):
        local = _amips_gradients(V[self.state.mesh.elements], self.Dm0_inv, self.area0)
        return self.state.assembler.scatter(local)

    def is_step_valid(self, x0, x1):
        return bool(np.all(self.state.mesh.signed_areas(self.vertices(x1)) > 0))


class BoundarySmoothingForm(_RestShapeForm):
    """Deviation of boundary vertices from the mean of their boundary neighbors.

    ``sum_i |r_i|^p`` with ``r_i = x_i - mean_j x_j``; with ``scale_invariant``
    each term is divided by the ``p``-th power of the mean neighbor distance.

    Args:
        variable_to_simulations: All bindings of the design vector
        state: State whose boundary is smoothed
        scale_invariant: Normalize by the local edge length
        power: Exponent ``p``
        surface_ids: Restrict to these boundary ids (all when empty)
    """

    def __init__(self, variable_to_simulations: Sequence, state, scale_invariant: bool = True,
                 power: float = 2.0, surface_ids: Iterable[int] = ()):
        super().__init__(variable_to_simulations, state)
        self.scale_invariant = scale_invariant
        self.power = float(power)
        self.surface_ids = list(surface_ids)
        mesh = state.mesh
        edges = mesh.boundary_edges[mesh.edge_mask(self.surface_ids or None)]
        rows = np.concatenate([edges[:, 0], edges[:, 1]])
        cols = np.concatenate([edges[:, 1], edges[:, 0]])
        self.nodes = np.unique(rows)
        degree = np.bincount(rows, minlength=mesh.n_vertices).astype(float)
        self._energy = self._build(rows, cols, degree)

    def _build(self, rows, cols, degree):
        nodes = self.nodes
        scale_invariant = self.scale_invariant
        power = self.power

        def energy(V):
            diff = V[rows] - V[cols]
            r = jnp.zeros_like(V).at[rows].add(diff)[nodes] / degree[nodes][:, None]
            terms = jnp.sum(r * r, axis=1) ** (0.5 * power)
            if scale_invariant:
                dist = jnp.zeros(V.shape[0]).at[rows].add(jnp.sqrt(jnp.sum(diff * diff, axis=1)))
                terms = terms / (dist[nodes] / degree[nodes]) ** power
            return jnp.sum(terms)

        return {'value': jax.jit(energy), 'gradient': jax.jit(jax.grad(energy))}

    def value_unweighted(self, x):
        if len(self.nodes) == 0:
            return 0.0
        return float(self._energy['value'](self.vertices(x)))

    def shape_gradient(self, V):
        if len(self.nodes) == 0:
            return np.zeros(V.size)
        return np.asarray(self._energy['gradient'](V)).ravel()


class CollisionBarrierForm(_RestShapeForm):
    """Unit-stiffness barrier keeping boundary vertices and edges of the rest shape apart."""

    def __init__(self, variable_to_simulations: Sequence, state, dhat: float):
        super().__init__(variable_to_simulations, state)
        self.dhat = float(dhat)
        self.barrier = ContactForm(state.mesh, dhat, barrier_stiffness=1.0)

    def _offset(self, V):
        # Rest positions move between calls; drop the active-set cache
        self.barrier.init(None)
        return (V - self.barrier.collision_mesh.mesh.vertices).ravel()

    def value_unweighted(self, x):
        return self.barrier.value_unweighted(self._offset(self.vertices(x)))

    def shape_gradient(self, V):
        return self.barrier.first_derivative_unweighted(self._offset(V))

    def is_step_valid(self, x0, x1):
        return self.barrier.is_step_valid(self._offset(self.vertices(x0)), self._offset(self.vertices(x1)))

    def max_step_size(self, x0, x1):
        return self.barrier.max_step_size(self._offset(self.vertices(x0)), self._offset(self.vertices(x1)))


class WeightedVolumeForm(AdjointForm):
    """``sum_e rho_e A_e`` with ``rho = parametrization(x)`` per element.

    Args:
        variable_to_simulations: All bindings of the design vector
        parametrization: Map from the design vector to element densities
        state: State providing the element areas
    """

    def __init__(self, variable_to_simulations: Sequence, parametrization, state):
        super().__init__(variable_to_simulations)
        self.parametrization = parametrization
        self.state = state

    def value_unweighted(self, x):
        rho = self.parametrization.eval(x)
        return float(rho @ self.state.mesh.element_areas())

    def compute_partial_gradient_unweighted(self, x):
        return self.parametrization.apply_jacobian(self.state.mesh.element_areas(), x)
