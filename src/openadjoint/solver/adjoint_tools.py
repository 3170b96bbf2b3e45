"""
Adjoint sensitivity routines.

Spatial-integral functionals are evaluated with the P1 quadrature of
:mod:`openadjoint.fem.elements`; their partial derivatives with respect to the
solution, the rest positions, the material and the macro strain come from jax.
Parameter terms contract the stored adjoint of a :class:`State` with the
parameter derivative of the discrete residual::

    dJ/dp = dJ/dp|_partial + sum_t lambda_t^T dR_t/dp
"""

import logging
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

import numpy as np
import jax
import jax.numpy as jnp

from openadjoint.core.exceptions import ConfigurationError
from openadjoint.fem import elements

# Configure logging
logger = logging.getLogger(__name__)


class ParameterType(Enum):
    """Kind of physical quantity a design variable controls."""
    SHAPE = "shape"
    MATERIAL = "material"
    FRICTION_COEFF = "friction_coefficient"
    DAMPING_COEFF = "damping_coefficient"
    INITIAL_CONDITION = "initial_condition"
    DIRICHLET_BC = "dirichlet_bc"
    MACRO_STRAIN = "macro_strain"


class SpatialIntegralType(Enum):
    """Domain of a spatial integral."""
    VOLUME = "volume"
    SURFACE = "surface"
    VERTEX_SUM = "vertex_sum"


class IntegrableFunctional:
    """Integrand ``j(u, grad_u, x, params)`` of a spatial integral.

    ``u`` is the displacement at a quadrature point (macro strain included),
    ``grad_u`` the displacement gradient, ``x`` the rest position. ``params``
    holds ``lambda``, ``mu``, ``normal`` (outward, surface integrals only),
    ``step`` and ``reference`` (the interpolated reference field, zero when
    unset). The integrand must be traceable by jax.

    Args:
        fn: Integrand
        name: Label used in logs
    """

    def __init__(self, fn: Callable, name: str = "functional"):
        self.fn = fn
        self.name = name
        self.reference: Optional[np.ndarray] = None
        self._kernels: Dict[str, Dict[str, Callable]] = {}

    def set_reference(self, reference: Optional[np.ndarray]) -> None:
        """Nodal reference values ``(n_vertices, 2)`` interpolated into ``params['reference']``."""
        self.reference = None if reference is None else np.asarray(reference, dtype=float).reshape(-1, 2)

    def _params(self, lam, mu, normal, reference, step):
        return {'lambda': lam, 'mu': mu, 'normal': normal, 'reference': reference, 'step': step}

    def _volume(self, U, X, E, lam, mu, R, step):
        grad_u = elements.displacement_gradient(U, X) + E
        area = elements.signed_area(X)
        total = 0.0
        for q in range(3):
            N = elements.TRIANGLE_QUADRATURE[q]
            xq = N @ X
            uq = N @ U + E @ xq
            p = self._params(lam, mu, jnp.zeros(2), N @ R, step)
            total = total + elements.TRIANGLE_WEIGHTS[q] * area * self.fn(uq, grad_u, xq, p)
        return total

    def _surface(self, U, X, E, lam, mu, R, step, Na, Nb):
        grad_u = elements.displacement_gradient(U, X) + E
        xa, xb = Na @ X, Nb @ X
        d = xb - xa
        length = jnp.sqrt(jnp.dot(d, d))
        normal = jnp.array([d[1], -d[0]]) / length
        total = 0.0
        for q in range(2):
            s = elements.EDGE_POINTS[q]
            N = (1.0 - s) * Na + s * Nb
            xq = N @ X
            uq = N @ U + E @ xq
            p = self._params(lam, mu, normal, N @ R, step)
            total = total + elements.EDGE_WEIGHTS[q] * length * self.fn(uq, grad_u, xq, p)
        return total

    def _vertex(self, u, x, E, R, step):
        p = self._params(0.0, 0.0, jnp.zeros(2), R, step)
        return self.fn(u + E @ x, E, x, p)

    def kernels(self, kind: str) -> Dict[str, Callable]:
        """Compiled value and partial-derivative kernels of one integral kind."""
        if kind in self._kernels:
            return self._kernels[kind]
        if kind == 'volume':
            f, axes = self._volume, (0, 0, None, 0, 0, 0, None)
            args = {'u': 0, 'x': 1, 'E': 2, 'material': (3, 4)}
        elif kind == 'surface':
            f, axes = self._surface, (0, 0, None, 0, 0, 0, None, 0, 0)
            args = {'u': 0, 'x': 1, 'E': 2, 'material': (3, 4)}
        else:
            f, axes = self._vertex, (0, 0, None, 0, None)
            args = {'u': 0, 'x': 1, 'E': 2}
        compiled = {'value': jax.jit(jax.vmap(f, in_axes=axes))}
        for name, argnums in args.items():
            compiled[name] = jax.jit(jax.vmap(jax.grad(f, argnums=argnums), in_axes=axes))
        self._kernels[kind] = compiled
        return compiled


class _IntegrationData:
    """Gathered element, edge or vertex arrays of one integral evaluation."""

    def __init__(self, state, j: IntegrableFunctional, u: np.ndarray, ids, kind: SpatialIntegralType, step: int):
        mesh = state.mesh
        ids = list(ids) if ids is not None else []
        U = np.asarray(u, dtype=float).reshape(-1, 2)
        R = j.reference if j.reference is not None else np.zeros_like(mesh.vertices)
        E = state.macro_strain
        self.kind = kind
        self.ndof = mesh.ndof
        self.n_elements = mesh.n_elements

        if kind == SpatialIntegralType.VOLUME:
            self.elements = np.flatnonzero(mesh.element_mask(ids))
            tris = mesh.elements[self.elements]
            self.nodes = tris
            self.args = (U[tris], mesh.vertices[tris], E, state.lam[self.elements], state.mu[self.elements],
                         R[tris], float(step))
            self.kernels = j.kernels('volume')
        elif kind == SpatialIntegralType.SURFACE:
            edges = np.flatnonzero(mesh.edge_mask(ids))
            self.elements = mesh.boundary_edge_elements[edges]
            tris = mesh.elements[self.elements]
            self.nodes = tris
            local = mesh.boundary_edge_local[edges]
            eye = np.eye(3)
            self.args = (U[tris], mesh.vertices[tris], E, state.lam[self.elements], state.mu[self.elements],
                         R[tris], float(step), eye[local[:, 0]], eye[local[:, 1]])
            self.kernels = j.kernels('surface')
        elif kind == SpatialIntegralType.VERTEX_SUM:
            nodes = mesh.boundary_nodes(ids) if ids else np.arange(mesh.n_vertices)
            self.elements = None
            self.nodes = nodes
            self.args = (U[nodes], mesh.vertices[nodes], E, R[nodes], float(step))
            self.kernels = j.kernels('vertex')
        else:
            raise ConfigurationError(f"Unknown spatial integral type: {kind}")

    @property
    def empty(self) -> bool:
        return len(self.nodes) == 0

    def value(self) -> float:
        if self.empty:
            return 0.0
        return float(np.sum(self.kernels['value'](*self.args)))

    def nodal(self, name: str) -> np.ndarray:
        """Scatter a per-node partial derivative into a vector over all dofs."""
        out = np.zeros(self.ndof)
        if self.empty:
            return out
        local = np.asarray(self.kernels[name](*self.args))
        dofs = (2 * np.asarray(self.nodes)[..., None] + np.arange(2)).reshape(-1)
        np.add.at(out, dofs, local.reshape(-1))
        return out

    def macro_strain(self) -> np.ndarray:
        if self.empty:
            return np.zeros(4)
        return np.asarray(self.kernels['E'](*self.args)).sum(axis=0).ravel()

    def material(self) -> np.ndarray:
        out = np.zeros(2 * self.n_elements)
        if self.empty or self.elements is None:
            return out
        d_lam, d_mu = self.kernels['material'](*self.args)
        np.add.at(out, self.elements, np.asarray(d_lam))
        np.add.at(out, self.n_elements + self.elements, np.asarray(d_mu))
        return out


class AdjointTools:
    """Stateless adjoint routines."""

    @staticmethod
    def integrate_objective(state, j: IntegrableFunctional, solution: np.ndarray, ids: Iterable[int],
                            spatial_integral_type: SpatialIntegralType, cur_step: int = 0) -> float:
        """Integral of ``j`` over the bodies, surfaces or vertices selected by ``ids`` (all if empty)."""
        return _IntegrationData(state, j, solution, ids, spatial_integral_type, cur_step).value()

    @staticmethod
    def dJ_du_step(state, j: IntegrableFunctional, solution: np.ndarray, ids: Iterable[int],
                   spatial_integral_type: SpatialIntegralType, cur_step: int = 0) -> np.ndarray:
        """Partial derivative of the integral with respect to the solution of one step."""
        return _IntegrationData(state, j, solution, ids, spatial_integral_type, cur_step).nodal('u')

    @staticmethod
    def compute_shape_derivative_functional_term(state, j: IntegrableFunctional, solution: np.ndarray,
                                                 ids: Iterable[int], spatial_integral_type: SpatialIntegralType,
                                                 cur_step: int = 0) -> np.ndarray:
        """Partial derivative of the integral with respect to the flattened rest positions."""
        return _IntegrationData(state, j, solution, ids, spatial_integral_type, cur_step).nodal('x')

    @staticmethod
    def compute_macro_strain_derivative_functional_term(state, j: IntegrableFunctional, solution: np.ndarray,
                                                        ids: Iterable[int],
                                                        spatial_integral_type: SpatialIntegralType,
                                                        cur_step: int = 0) -> np.ndarray:
        """Partial derivative with respect to the row-major macro strain (4 values)."""
        return _IntegrationData(state, j, solution, ids, spatial_integral_type, cur_step).macro_strain()

    @staticmethod
    def compute_material_derivative_functional_term(state, j: IntegrableFunctional, solution: np.ndarray,
                                                    ids: Iterable[int],
                                                    spatial_integral_type: SpatialIntegralType,
                                                    cur_step: int = 0) -> np.ndarray:
        """Partial derivative with respect to ``[lambda_e..., mu_e...]``."""
        if spatial_integral_type == SpatialIntegralType.VERTEX_SUM:
            return np.zeros(2 * state.mesh.n_elements)
        return _IntegrationData(state, j, solution, ids, spatial_integral_type, cur_step).material()

    # Parameter terms

    @staticmethod
    def dJ_shape_static_adjoint_term(state, sol: np.ndarray, adjoint: np.ndarray) -> np.ndarray:
        forms = state.prepare_step(0)
        asm = state.assembler
        term = asm.elastic_shape_term(state.kernels, sol, adjoint, state.lam, state.mu, state.macro_strain)
        term -= asm.rhs_shape_term(adjoint, state.body_force, state.neumann)
        if 'contact' in forms:
            term += forms['contact'].second_derivative(sol) @ adjoint
        return term

    @staticmethod
    def dJ_shape_transient_adjoint_term(state, adjoint_mat: np.ndarray) -> np.ndarray:
        asm = state.assembler
        term = np.zeros(state.ndof)
        for t in range(1, state.time_steps + 1):
            lam = adjoint_mat[:, t]
            if not np.any(lam):
                continue
            forms = state.prepare_step(t)
            u = state.solution[:, t]
            term += asm.elastic_shape_term(state.kernels, u, lam, state.lam, state.mu, state.macro_strain)
            term -= asm.rhs_shape_term(lam, state.body_force, state.neumann)
            term += asm.mass_shape_term(state.step_acceleration(t), lam, state.density)
            if 'damping' in forms:
                term += forms['damping'].shape_term(u, lam)
            if 'contact' in forms:
                term += forms['contact'].second_derivative(u) @ lam
        return term

    @staticmethod
    def dJ_material_static(state, sol: np.ndarray, adjoint: np.ndarray) -> np.ndarray:
        d_lam, d_mu = state.assembler.elastic_material_term(
            state.kernels, sol, adjoint, state.lam, state.mu, state.macro_strain)
        return np.concatenate([d_lam, d_mu])

    @staticmethod
    def dJ_material_transient(state, adjoint_mat: np.ndarray) -> np.ndarray:
        term = np.zeros(2 * state.mesh.n_elements)
        for t in range(1, state.time_steps + 1):
            if np.any(adjoint_mat[:, t]):
                term += AdjointTools.dJ_material_static(state, state.solution[:, t], adjoint_mat[:, t])
        return term

    @staticmethod
    def dJ_friction_transient(state, adjoint_mat: np.ndarray) -> np.ndarray:
        if 'friction' not in state.forms:
            raise ConfigurationError("Friction coefficient sensitivity needs a transient contact problem")
        term = 0.0
        for t in range(1, state.time_steps + 1):
            forms = state.prepare_step(t)
            term += float(adjoint_mat[:, t] @ forms['friction'].unit_coefficient_gradient(state.solution[:, t]))
        return np.array([term])

    @staticmethod
    def dJ_damping_transient(state, adjoint_mat: np.ndarray) -> np.ndarray:
        if 'damping' not in state.forms:
            raise ConfigurationError("Damping sensitivity needs a damped transient problem")
        term = np.zeros(2)
        for t in range(1, state.time_steps + 1):
            forms = state.prepare_step(t)
            term += forms['damping'].coefficient_term(state.solution[:, t], adjoint_mat[:, t])
        return term

    @staticmethod
    def dJ_initial_condition(state) -> np.ndarray:
        """``[dJ/du0, dJ/dv0]`` stored by the transient adjoint solve."""
        if state.initial_condition_adjoint_terms is None:
            raise ConfigurationError("Initial condition sensitivity needs a transient problem")
        du0, dv0 = state.initial_condition_adjoint_terms
        return np.concatenate([du0, dv0])

    @staticmethod
    def dJ_dirichlet_static(state, boundary_id: int) -> np.ndarray:
        nodes = state.dirichlet_nodes(boundary_id)
        terms = state.dirichlet_adjoint_terms[:, 0].reshape(-1, 2)
        return terms[nodes].sum(axis=0)

    @staticmethod
    def dJ_dirichlet_transient(state, boundary_id: int) -> np.ndarray:
        """Per step, per dimension sensitivity ``(time_steps * 2,)`` of one Dirichlet id."""
        nodes = state.dirichlet_nodes(boundary_id)
        out = np.zeros((state.time_steps, 2))
        for t in range(1, state.time_steps + 1):
            out[t - 1] = state.dirichlet_adjoint_terms[:, t].reshape(-1, 2)[nodes].sum(axis=0)
        return out.ravel()

    @staticmethod
    def dJ_macro_strain_adjoint_term(state, adjoint_mat: np.ndarray) -> np.ndarray:
        asm = state.assembler
        steps = range(1, state.time_steps + 1) if state.is_transient else [0]
        term = np.zeros((2, 2))
        for t in steps:
            if np.any(adjoint_mat[:, t]):
                term += asm.elastic_macro_strain_term(state.kernels, state.solution[:, t], adjoint_mat[:, t],
                                                      state.lam, state.mu, state.macro_strain)
        return term.ravel()

    @staticmethod
    def compute_adjoint_term(state, adjoints: np.ndarray, parameter_type: ParameterType,
                             boundary_id: Optional[int] = None) -> np.ndarray:
        """Dispatch to the parameter routine matching ``parameter_type``."""
        transient = state.is_transient
        if parameter_type == ParameterType.SHAPE:
            if transient:
                return AdjointTools.dJ_shape_transient_adjoint_term(state, adjoints)
            return AdjointTools.dJ_shape_static_adjoint_term(state, state.solution[:, 0], adjoints[:, 0])
        if parameter_type == ParameterType.MATERIAL:
            if transient:
                return AdjointTools.dJ_material_transient(state, adjoints)
            return AdjointTools.dJ_material_static(state, state.solution[:, 0], adjoints[:, 0])
        if parameter_type == ParameterType.FRICTION_COEFF:
            if not transient:
                raise ConfigurationError("Friction coefficient sensitivity needs a transient problem")
            return AdjointTools.dJ_friction_transient(state, adjoints)
        if parameter_type == ParameterType.DAMPING_COEFF:
            if not transient:
                raise ConfigurationError("Damping sensitivity needs a transient problem")
            return AdjointTools.dJ_damping_transient(state, adjoints)
        if parameter_type == ParameterType.INITIAL_CONDITION:
            return AdjointTools.dJ_initial_condition(state)
        if parameter_type == ParameterType.DIRICHLET_BC:
            if boundary_id is None:
                raise ConfigurationError("Dirichlet sensitivity needs a boundary id")
            if transient:
                return AdjointTools.dJ_dirichlet_transient(state, boundary_id)
            return AdjointTools.dJ_dirichlet_static(state, boundary_id)
        if parameter_type == ParameterType.MACRO_STRAIN:
            return AdjointTools.dJ_macro_strain_adjoint_term(state, adjoints)
        raise ConfigurationError(f"Unknown parameter type: {parameter_type}")
