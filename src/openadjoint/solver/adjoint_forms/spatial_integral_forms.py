"""
Objectives integrating a pointwise functional of the solution over the mesh.
"""

import logging
from abc import abstractmethod
from typing import Iterable, Optional, Sequence

import numpy as np
import jax
import jax.numpy as jnp

from openadjoint.core.exceptions import DomainError, InvalidStateError
from openadjoint.solver.adjoint_forms.adjoint_form import StaticForm
from openadjoint.solver.adjoint_tools import (
    AdjointTools, IntegrableFunctional, ParameterType, SpatialIntegralType,
)

# Configure logging
logger = logging.getLogger(__name__)


def _integral_type(kind) -> SpatialIntegralType:
    return kind if isinstance(kind, SpatialIntegralType) else SpatialIntegralType(kind)


class SpatialIntegralForm(StaticForm):
    """Integral of a functional over bodies, boundary ids or boundary vertices.

    Args:
        variable_to_simulations: All bindings of the design vector
        state: Integrated state
        ids: Body ids (volume) or boundary ids (surface, vertex sum); all when empty
        spatial_integral_type: Integration domain
        time_step: Evaluated solution column when used on its own
    """

    def __init__(self, variable_to_simulations: Sequence, state, ids: Iterable[int] = (),
                 spatial_integral_type=SpatialIntegralType.VOLUME, time_step: int = -1):
        super().__init__(variable_to_simulations, state, time_step)
        self.ids = list(ids)
        self.spatial_integral_type = _integral_type(spatial_integral_type)
        self._functional: Optional[IntegrableFunctional] = None

    @abstractmethod
    def get_integral_functional(self) -> IntegrableFunctional:
        pass

    def prepare_functional(self, j: IntegrableFunctional, step: int) -> None:
        """Hook run before every evaluation at ``step``."""
        pass

    def _functional_at(self, step: int) -> IntegrableFunctional:
        if self._functional is None:
            self._functional = self.get_integral_functional()
        self.prepare_functional(self._functional, step)
        return self._functional

    def _solution(self, step: int) -> np.ndarray:
        if self.state.needs_solve:
            raise InvalidStateError(f"{type(self).__name__} evaluated before the state was solved")
        return self.state.solution[:, step]

    def value_unweighted_step(self, step, x):
        j = self._functional_at(step)
        return AdjointTools.integrate_objective(
            self.state, j, self._solution(step), self.ids, self.spatial_integral_type, step)

    def compute_adjoint_rhs_unweighted_step(self, step, x, state):
        if state is not self.state:
            return np.zeros(state.ndof)
        j = self._functional_at(step)
        return AdjointTools.dJ_du_step(state, j, self._solution(step), self.ids, self.spatial_integral_type, step)

    def compute_partial_gradient_unweighted_step(self, step, x):
        grad = np.zeros(len(x))
        j = self._functional_at(step)
        args = (self.state, j, self._solution(step), self.ids, self.spatial_integral_type, step)
        for v2s in self.variable_to_simulations:
            if v2s.state is not self.state:
                continue
            if v2s.parameter_type == ParameterType.SHAPE:
                term = AdjointTools.compute_shape_derivative_functional_term(*args)
            elif v2s.parameter_type == ParameterType.MATERIAL:
                term = AdjointTools.compute_material_derivative_functional_term(*args)
            elif v2s.parameter_type == ParameterType.MACRO_STRAIN:
                term = AdjointTools.compute_macro_strain_derivative_functional_term(*args)
            else:
                continue
            grad += v2s.apply_parametrization_jacobian(term, x)
        return grad


class StressNormForm(SpatialIntegralForm):
    """``int |P(grad u)|^p``, ``P`` the first Piola-Kirchhoff stress of the state's material."""

    def __init__(self, variable_to_simulations: Sequence, state, ids: Iterable[int] = (),
                 power: float = 2.0, time_step: int = -1):
        super().__init__(variable_to_simulations, state, ids, SpatialIntegralType.VOLUME, time_step)
        self.power = float(power)

    def get_integral_functional(self):
        stress = jax.grad(self.state.kernels.density)
        power = self.power

        def fn(u, grad_u, x, params):
            P = stress(grad_u, params['lambda'], params['mu'])
            return jnp.sum(P * P) ** (0.5 * power)

        return IntegrableFunctional(fn, name="stress_norm")


class TargetForm(SpatialIntegralForm):
    """Squared distance to a reference deformation or to a target displacement.

    With a reference state the integrand is ``|x + u - (X_ref + u_ref)|^2``
    evaluated at the same step of the reference run; with a target
    displacement it is ``|u - u_target|^2``.
    """

    def __init__(self, variable_to_simulations: Sequence, state, ids: Iterable[int] = (),
                 spatial_integral_type=SpatialIntegralType.SURFACE, time_step: int = -1):
        super().__init__(variable_to_simulations, state, ids, spatial_integral_type, time_step)
        self.reference_state = None
        self.target_displacement: Optional[np.ndarray] = None

    def set_reference(self, reference_state, reference_ids: Optional[Iterable[int]] = None) -> None:
        """Track the deformed configuration of ``reference_state`` (same mesh topology)."""
        if reference_state.mesh.n_vertices != self.state.mesh.n_vertices:
            raise DomainError("Reference state must share the mesh topology of the optimized state")
        self.reference_state = reference_state
        self.target_displacement = None
        if reference_ids is not None:
            self.ids = list(reference_ids)
        self._functional = None

    def set_target_displacement(self, displacement) -> None:
        """Constant ``(2,)`` or nodal ``(n_vertices, 2)`` displacement target."""
        d = np.asarray(displacement, dtype=float)
        self.target_displacement = np.broadcast_to(d, self.state.mesh.vertices.shape).copy()
        self.reference_state = None
        self._functional = None

    def get_integral_functional(self):
        if self.reference_state is not None:
            def fn(u, grad_u, x, params):
                r = x + u - params['reference']
                return jnp.dot(r, r)
        elif self.target_displacement is not None:
            def fn(u, grad_u, x, params):
                r = u - params['reference']
                return jnp.dot(r, r)
        else:
            raise InvalidStateError("TargetForm has neither a reference state nor a target displacement")
        return IntegrableFunctional(fn, name="target")

    def prepare_functional(self, j, step):
        if self.reference_state is None:
            j.set_reference(self.target_displacement)
            return
        ref = self.reference_state
        if ref.needs_solve:
            logger.info("Solving reference state")
            ref.solve()
        column = min(step, ref.n_solution_columns - 1)
        j.set_reference(ref.mesh.vertices + ref.solution[:, column].reshape(-1, 2))


class PositionForm(SpatialIntegralForm):
    """``int (x + u)_dim`` over the selected bodies."""

    def __init__(self, variable_to_simulations: Sequence, state, dim: int, ids: Iterable[int] = (),
                 time_step: int = -1):
        super().__init__(variable_to_simulations, state, ids, SpatialIntegralType.VOLUME, time_step)
        if dim not in (0, 1):
            raise DomainError(f"Position component must be 0 or 1, got {dim}")
        self.dim = dim

    def get_integral_functional(self):
        dim = self.dim

        def fn(u, grad_u, x, params):
            return x[dim] + u[dim]

        return IntegrableFunctional(fn, name="position")


class VolumeForm(SpatialIntegralForm):
    """Area of the selected bodies."""

    def __init__(self, variable_to_simulations: Sequence, state, ids: Iterable[int] = (), time_step: int = -1):
        super().__init__(variable_to_simulations, state, ids, SpatialIntegralType.VOLUME, time_step)

    def get_integral_functional(self):
        def fn(u, grad_u, x, params):
            return jnp.ones(())

        return IntegrableFunctional(fn, name="volume")


class ComplianceForm(StaticForm):
    """External work ``f . u`` of body forces and tractions."""

    def _load(self) -> np.ndarray:
        return self.state.assembler.rhs(self.state.body_force, self.state.neumann)

    def value_unweighted_step(self, step, x):
        return float(self._load() @ self.state.solution[:, step])

    def compute_adjoint_rhs_unweighted_step(self, step, x, state):
        if state is not self.state:
            return np.zeros(state.ndof)
        return self._load()

    def compute_partial_gradient_unweighted_step(self, step, x):
        term = self.state.assembler.rhs_shape_term(
            self.state.solution[:, step], self.state.body_force, self.state.neumann)
        return self.pull_back_shape_term(self.state, term, x)
