"""
Bindings between the design vector and quantities inside a simulation state.

Every binding reads its target as a flat vector, overwrites the coordinates
given by its output indexing with the parametrization output and writes the
vector back, which invalidates the state's solution.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Union

import numpy as np

from openadjoint.core.exceptions import DomainError
from openadjoint.solver.adjoint_tools import AdjointTools, ParameterType
from openadjoint.solver.parametrization.parametrization import CompositeParametrization, Parametrization

# Configure logging
logger = logging.getLogger(__name__)

ParametrizationLike = Union[Parametrization, Sequence[Parametrization], None]


class VariableToSimulation(ABC):
    """Push a design vector into one state and pull adjoint terms back.

    Args:
        state: Target state
        parametrization: Map (or chain of maps) from the full design vector to the target values
        output_indexing: Target coordinates written; defaults to the parametrization's
    """

    parameter_type: ParameterType = None

    def __init__(self, state, parametrization: ParametrizationLike = None,
                 output_indexing: Optional[np.ndarray] = None):
        self.state = state
        if parametrization is None or isinstance(parametrization, (list, tuple)):
            parametrization = CompositeParametrization(parametrization)
        self.parametrization = parametrization
        self.output_indexing = None if output_indexing is None else np.asarray(output_indexing, dtype=int)

    @property
    def name(self) -> str:
        return self.parameter_type.value

    @abstractmethod
    def get_target(self) -> np.ndarray:
        """Current target values as a flat vector."""
        pass

    @abstractmethod
    def set_target(self, values: np.ndarray) -> None:
        pass

    def target_gradient(self, term: np.ndarray) -> np.ndarray:
        """Convert the physics-level term into a gradient over the target vector."""
        return term

    def get_output_indexing(self, x: Optional[np.ndarray] = None) -> np.ndarray:
        if self.output_indexing is not None:
            return self.output_indexing
        if x is None:
            indexing = getattr(self.parametrization, 'node_ids', None)
            if indexing is not None:
                return (2 * indexing[:, None] + np.arange(2)[None, :]).ravel()
            return np.arange(len(self.get_target()))
        return self.parametrization.get_output_indexing(x)

    def update(self, x: np.ndarray) -> None:
        """Write ``parametrization(x)`` into the target."""
        y = self.parametrization.eval(x)
        indexing = self.get_output_indexing(x)
        if len(indexing) != len(y):
            raise DomainError(f"{type(self).__name__}: {len(y)} values for {len(indexing)} target coordinates")
        target = np.array(self.get_target(), dtype=float)
        target[indexing] = y
        self.set_target(target)

    def compute_adjoint_term(self, x: np.ndarray) -> np.ndarray:
        """Adjoint contribution of this binding to the design gradient."""
        term = AdjointTools.compute_adjoint_term(self.state, self.state.get_adjoint_mat(), self.parameter_type)
        return self.apply_parametrization_jacobian(term, x)

    def apply_parametrization_jacobian(self, term: np.ndarray, x: np.ndarray) -> np.ndarray:
        """Pull a gradient over the physical target back to the design vector."""
        term = self.target_gradient(np.asarray(term, dtype=float))
        return self.parametrization.apply_jacobian(term[self.get_output_indexing(x)], x)

    def inverse_eval(self) -> np.ndarray:
        """Design values reproducing the current target (through ``inverse_eval`` of the chain)."""
        return self.parametrization.inverse_eval(self.get_target()[self.get_output_indexing()])


class ShapeVariableToSimulation(VariableToSimulation):
    """Rest positions of mesh vertices (flattened node-major)."""

    parameter_type = ParameterType.SHAPE

    def get_target(self):
        return self.state.mesh.vertices.ravel().copy()

    def set_target(self, values):
        self.state.set_vertices(values.reshape(-1, 2))


class ElasticVariableToSimulation(VariableToSimulation):
    """Per-element Lame parameters ``[lambda_e..., mu_e...]``."""

    parameter_type = ParameterType.MATERIAL

    def get_target(self):
        return np.concatenate([self.state.lam, self.state.mu])

    def set_target(self, values):
        n = self.state.mesh.n_elements
        if np.any(values[n:] <= 0):
            logger.warning("Non-positive shear modulus pushed to the state")
        self.state.set_materials(values[:n], values[n:])


class FrictionCoeffientVariableToSimulation(VariableToSimulation):
    """Global friction coefficient."""

    parameter_type = ParameterType.FRICTION_COEFF

    def get_target(self):
        return np.array([self.state.friction_coefficient])

    def set_target(self, values):
        self.state.set_friction_coefficient(values[0])


class DampingCoeffientVariableToSimulation(VariableToSimulation):
    """Kelvin-Voigt coefficients ``[psi, phi]``."""

    parameter_type = ParameterType.DAMPING_COEFF

    def get_target(self):
        if self.state.damping is None:
            return np.zeros(2)
        return self.state.damping.copy()

    def set_target(self, values):
        self.state.set_damping(values[0], values[1])


class InitialConditionVariableToSimulation(VariableToSimulation):
    """Initial displacement and velocity ``[u0..., v0...]``."""

    parameter_type = ParameterType.INITIAL_CONDITION

    def get_target(self):
        return np.concatenate([self.state.initial_displacement, self.state.initial_velocity])

    def set_target(self, values):
        n = self.state.ndof
        self.state.set_initial_condition(values[:n], values[n:])


class DirichletVariableToSimulation(VariableToSimulation):
    """Prescribed displacement of one boundary id; per time step for transient states.

    Args:
        state: Target state
        parametrization: Map to the Dirichlet values
        boundary_id: Dirichlet boundary id controlled by this binding
    """

    parameter_type = ParameterType.DIRICHLET_BC

    def __init__(self, state, parametrization: ParametrizationLike = None, boundary_id: int = 1,
                 output_indexing: Optional[np.ndarray] = None):
        super().__init__(state, parametrization, output_indexing)
        if boundary_id not in state.dirichlet:
            raise DomainError(f"Boundary {boundary_id} has no Dirichlet condition")
        self.boundary_id = boundary_id

    def get_target(self):
        return self.state.dirichlet[self.boundary_id].ravel().copy()

    def set_target(self, values):
        shape = self.state.dirichlet[self.boundary_id].shape
        self.state.set_dirichlet_values(self.boundary_id, values.reshape(shape))

    def compute_adjoint_term(self, x):
        term = AdjointTools.compute_adjoint_term(
            self.state, self.state.get_adjoint_mat(), self.parameter_type, self.boundary_id)
        return self.apply_parametrization_jacobian(term, x)


class MacroStrainVariableToSimulation(VariableToSimulation):
    """Homogeneous displacement gradient (row-major 2x2)."""

    parameter_type = ParameterType.MACRO_STRAIN

    def get_target(self):
        return self.state.macro_strain.ravel().copy()

    def set_target(self, values):
        self.state.set_macro_strain(values.reshape(2, 2))


class DensityVariableToSimulation(VariableToSimulation):
    """SIMP density scaling the Lame parameters captured at construction.

    ``lambda_e = lambda0_e (rho_min + (1 - rho_min) y_e)`` and likewise for ``mu``.

    Args:
        state: Target state
        parametrization: Map to the penalized densities ``y``
        min_density: Stiffness floor of void elements
    """

    parameter_type = ParameterType.MATERIAL

    def __init__(self, state, parametrization: ParametrizationLike = None, min_density: float = 1e-3,
                 output_indexing: Optional[np.ndarray] = None):
        super().__init__(state, parametrization, output_indexing)
        self.base_lam = state.lam.copy()
        self.base_mu = state.mu.copy()
        self.min_density = float(min_density)
        self.densities = np.ones(state.mesh.n_elements)

    def _interpolation(self, y):
        return self.min_density + (1.0 - self.min_density) * y

    def get_target(self):
        return self.densities.copy()

    def set_target(self, values):
        self.densities = np.asarray(values, dtype=float).copy()
        scale = self._interpolation(self.densities)
        self.state.set_materials(self.base_lam * scale, self.base_mu * scale)

    def target_gradient(self, term):
        n = self.state.mesh.n_elements
        return (1.0 - self.min_density) * (self.base_lam * term[:n] + self.base_mu * term[n:])
