"""
Simulation state: mesh, material and boundary data, forward and adjoint solves.

Static problems store one solution column. Transient problems store
``time_steps + 1`` columns, column 0 being the initial displacement. The
adjoint is stored with the same layout.
"""

import logging
from typing import Dict, Optional, Sequence, Union

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve

from openadjoint.core.config import ContactConfig, NewtonConfig, StateConfig
from openadjoint.core.exceptions import ConfigurationError, SolverConvergenceError
from openadjoint.fem.assembler import Assembler
from openadjoint.fem.elements import get_elastic_kernels
from openadjoint.fem.time_integrator import ImplicitEuler
from openadjoint.mesh.mesh import Mesh
from openadjoint.solver.forms import (
    BodyForm, ContactForm, DampingForm, ElasticForm, FrictionForm, InertiaForm,
)
from openadjoint.solver.nonlinear import FullNLProblem, NewtonSolver

# Configure logging
logger = logging.getLogger(__name__)


def convert_to_lame(E: Union[float, np.ndarray], nu: Union[float, np.ndarray]):
    """Plane-stress Lame parameters ``(lambda, mu)`` of a 2D body."""
    E = np.asarray(E, dtype=float)
    nu = np.asarray(nu, dtype=float)
    return E * nu / (1.0 - nu * nu), E / (2.0 * (1.0 + nu))


class State:
    """One discretized elasticity problem with its solution history.

    Args:
        mesh: Simulation mesh (owned and modified by shape updates)
        material: ``"NeoHookean"`` or ``"LinearElasticity"``
        E: Young's modulus (scalar or per element)
        nu: Poisson ratio (scalar or per element)
        rho: Mass density (scalar or per element)
        body_force: Force per unit area
        dirichlet: Boundary id to prescribed displacement (2,) or per step (time_steps, 2)
        neumann: Boundary id to traction (2,)
        dt: Time step of transient problems
        time_steps: Number of steps; zero for a static problem
        contact: Contact and friction settings
        damping: ``(psi, phi)`` Kelvin-Voigt coefficients of transient problems
        macro_strain: Homogeneous displacement gradient (2, 2)
        solver: Newton settings
    """

    def __init__(
        self,
        mesh: Mesh,
        material: str = "NeoHookean",
        E: Union[float, np.ndarray] = 1e4,
        nu: Union[float, np.ndarray] = 0.3,
        rho: Union[float, np.ndarray] = 1.0,
        body_force: Sequence[float] = (0.0, 0.0),
        dirichlet: Optional[Dict[int, np.ndarray]] = None,
        neumann: Optional[Dict[int, Sequence[float]]] = None,
        dt: Optional[float] = None,
        time_steps: int = 0,
        contact: Optional[ContactConfig] = None,
        damping: Optional[Sequence[float]] = None,
        macro_strain: Optional[np.ndarray] = None,
        solver: Optional[NewtonConfig] = None,
    ):
        self.mesh = mesh
        self.assembler = Assembler(mesh)
        try:
            self.kernels = get_elastic_kernels(material)
        except KeyError:
            raise ConfigurationError(f"Unknown material: {material}. "
                                     f"Available materials: ['LinearElasticity', 'NeoHookean']")
        self.material = material

        n_e = mesh.n_elements
        lam, mu = convert_to_lame(E, nu)
        self.lam = np.broadcast_to(lam, (n_e,)).astype(float).copy()
        self.mu = np.broadcast_to(mu, (n_e,)).astype(float).copy()
        self.density = np.broadcast_to(np.asarray(rho, dtype=float), (n_e,)).copy()

        self.body_force = np.asarray(body_force, dtype=float)
        self.neumann = {int(k): np.asarray(v, dtype=float) for k, v in (neumann or {}).items()}

        if time_steps < 0:
            raise ConfigurationError(f"time_steps must be non-negative, got {time_steps}")
        if time_steps > 0 and (dt is None or dt <= 0):
            raise ConfigurationError("Transient problems need a positive time step")
        self.time_steps = int(time_steps)
        self.dt = float(dt) if dt is not None else 0.0

        self.dirichlet: Dict[int, np.ndarray] = {}
        for bid, values in (dirichlet or {}).items():
            self.set_dirichlet_values(int(bid), values)

        self.contact = contact or ContactConfig()
        self.friction_coefficient = float(self.contact.friction_coefficient)
        self.damping = None if damping is None else np.asarray(damping, dtype=float)
        if self.damping is not None and not self.is_transient:
            raise ConfigurationError("Damping requires a transient problem")
        self.macro_strain = np.zeros((2, 2)) if macro_strain is None else np.asarray(macro_strain, dtype=float).reshape(2, 2)
        self.solver_config = solver or NewtonConfig()

        self.initial_displacement = np.zeros(mesh.ndof)
        self.initial_velocity = np.zeros(mesh.ndof)

        self.solution: Optional[np.ndarray] = None
        self.adjoint_mat: Optional[np.ndarray] = None
        self.dirichlet_adjoint_terms: Optional[np.ndarray] = None
        self.initial_condition_adjoint_terms = None
        self._friction_snapshots: Dict[int, dict] = {}
        self._forms = None
        self._mass = None
        self._needs_solve = True

    @classmethod
    def from_config(cls, config: StateConfig) -> 'State':
        """Build a state from its configuration section."""
        mesh_args = dict(config.mesh)
        if 'path' in mesh_args:
            mesh = Mesh.read(mesh_args['path'])
        elif mesh_args.get('type', 'rectangle') == 'rectangle':
            mesh = Mesh.rectangle(
                n=mesh_args.get('n', (4, 4)),
                size=mesh_args.get('size', (1.0, 1.0)),
                origin=mesh_args.get('origin', (0.0, 0.0)),
                body_id=mesh_args.get('body_id', 1),
            )
        else:
            raise ConfigurationError(f"Unknown mesh type: {mesh_args.get('type')}")

        materials = dict(config.materials)
        time = config.time or {}
        bc = config.boundary_conditions
        dirichlet = {int(d['id']): d['value'] for d in bc.get('dirichlet_boundary', [])}
        neumann = {int(d['id']): d['value'] for d in bc.get('neumann_boundary', [])}

        state = cls(
            mesh,
            material=materials.get('type', 'NeoHookean'),
            E=materials.get('E', 1e4),
            nu=materials.get('nu', 0.3),
            rho=materials.get('rho', 1.0),
            body_force=bc.get('rhs', (0.0, 0.0)),
            dirichlet=dirichlet,
            neumann=neumann,
            dt=time.get('dt'),
            time_steps=int(time.get('time_steps', 0)),
            contact=config.contact,
            damping=None if config.damping is None else (config.damping['psi'], config.damping['phi']),
            solver=config.solver,
        )
        ic = config.initial_conditions
        if ic:
            u0 = np.zeros(mesh.ndof)
            v0 = np.zeros(mesh.ndof)
            u0.reshape(-1, 2)[:] = np.asarray(ic.get('displacement', (0.0, 0.0)), dtype=float)
            v0.reshape(-1, 2)[:] = np.asarray(ic.get('velocity', (0.0, 0.0)), dtype=float)
            state.set_initial_condition(u0, v0)
        return state

    # Properties and accessors

    @property
    def is_transient(self) -> bool:
        return self.time_steps > 0

    @property
    def ndof(self) -> int:
        return self.mesh.ndof

    @property
    def n_solution_columns(self) -> int:
        return self.time_steps + 1 if self.is_transient else 1

    @property
    def needs_solve(self) -> bool:
        return self._needs_solve

    def invalidate(self) -> None:
        """Mark the stored solution as stale."""
        self._needs_solve = True
        self._forms = None
        self._mass = None

    def set_vertices(self, vertices: np.ndarray) -> None:
        self.mesh.vertices = np.asarray(vertices, dtype=float).reshape(-1, 2).copy()
        self.invalidate()

    def set_materials(self, lam: np.ndarray, mu: np.ndarray) -> None:
        self.lam = np.asarray(lam, dtype=float).copy()
        self.mu = np.asarray(mu, dtype=float).copy()
        self.invalidate()

    def set_friction_coefficient(self, mu: float) -> None:
        self.friction_coefficient = float(mu)
        self.invalidate()

    def set_damping(self, psi: float, phi: float) -> None:
        if not self.is_transient:
            raise ConfigurationError("Damping requires a transient problem")
        self.damping = np.array([psi, phi], dtype=float)
        self.invalidate()

    def set_initial_condition(self, displacement: np.ndarray, velocity: np.ndarray) -> None:
        self.initial_displacement = np.asarray(displacement, dtype=float).copy()
        self.initial_velocity = np.asarray(velocity, dtype=float).copy()
        self.invalidate()

    def set_macro_strain(self, strain: np.ndarray) -> None:
        self.macro_strain = np.asarray(strain, dtype=float).reshape(2, 2).copy()
        self.invalidate()

    def set_dirichlet_values(self, boundary_id: int, values) -> None:
        """Prescribe the displacement of a boundary id, constant or per time step."""
        values = np.asarray(values, dtype=float)
        if self.is_transient:
            values = np.broadcast_to(values, (self.time_steps, 2)).copy()
        elif values.shape != (2,):
            raise ConfigurationError(f"Static Dirichlet values must have shape (2,), got {values.shape}")
        self.dirichlet[int(boundary_id)] = values
        self.invalidate()

    def dirichlet_nodes(self, boundary_id: int) -> np.ndarray:
        """Nodes whose prescribed value comes from ``boundary_id`` (higher ids win on shared nodes)."""
        owner = self._dirichlet_owner()
        return np.array(sorted(v for v, bid in owner.items() if bid == boundary_id), dtype=int)

    def _dirichlet_owner(self) -> Dict[int, int]:
        owner = {}
        for bid in sorted(self.dirichlet):
            for v in self.mesh.boundary_nodes([bid]):
                owner[int(v)] = bid
        return owner

    def dirichlet_dofs(self) -> np.ndarray:
        nodes = np.array(sorted(self._dirichlet_owner()), dtype=int)
        return (2 * nodes[:, None] + np.arange(2)[None, :]).ravel()

    def dirichlet_values(self, step: int) -> np.ndarray:
        """Full vector holding the prescribed values of ``step`` on Dirichlet dofs."""
        x = np.zeros(self.ndof)
        for v, bid in self._dirichlet_owner().items():
            values = self.dirichlet[bid]
            x[2 * v:2 * v + 2] = values[step - 1] if self.is_transient else values
        return x

    def mass_matrix(self) -> sp.csr_matrix:
        if self._mass is None:
            self._mass = self.assembler.mass_matrix(self.density)
        return self._mass

    def average_mass(self) -> float:
        M = self.mass_matrix()
        return float(M.sum() / self.ndof)

    # Forms

    def build_forms(self) -> Dict[str, object]:
        """Create the energy terms of the current configuration."""
        self.assembler.refresh(self.mesh)
        forms = {
            'elastic': ElasticForm(self.assembler, self.kernels, self.lam, self.mu, self.macro_strain,
                                   check_inversion=self.material == 'NeoHookean'),
            'body': BodyForm(self.assembler, self.body_force, self.neumann, self.dirichlet_dofs()),
        }
        if self.contact.enabled:
            forms['contact'] = ContactForm(
                self.mesh, self.contact.dhat, self.contact.barrier_stiffness,
                self.contact.use_adaptive_barrier_stiffness, self.is_transient,
                self.contact.ccd_tolerance, self.contact.ccd_max_iterations)
        if self.is_transient:
            self.time_integrator = ImplicitEuler(self.dt)
            forms['inertia'] = InertiaForm(self.mass_matrix(), self.time_integrator)
            if self.damping is not None:
                forms['damping'] = DampingForm(self.assembler, self.damping[0], self.damping[1], self.dt)
            if self.contact.enabled:
                forms['friction'] = FrictionForm(forms['contact'], self.contact.epsv,
                                                 self.friction_coefficient, self.dt)
        return forms

    @property
    def forms(self) -> Dict[str, object]:
        if self._forms is None:
            self._forms = self.build_forms()
        return self._forms

    def predicted_displacement(self, step: int) -> np.ndarray:
        """Implicit Euler prediction ``u_{t-1} + dt v_{t-1}`` of a transient step."""
        if step == 1:
            return self.solution[:, 0] + self.dt * self.initial_velocity
        return 2.0 * self.solution[:, step - 1] - self.solution[:, step - 2]

    def step_acceleration(self, step: int) -> np.ndarray:
        return (self.solution[:, step] - self.predicted_displacement(step)) / self.dt ** 2

    def prepare_step(self, step: int) -> Dict[str, object]:
        """Configure the step-dependent forms as they were when ``step`` was solved."""
        forms = self.forms
        if self.is_transient and step >= 1:
            x_prev = self.solution[:, step - 1]
            for name in ('damping', 'friction'):
                if name in forms:
                    forms[name].update_quantities((step - 1) * self.dt, x_prev)
            if 'friction' in forms:
                forms['friction'].set_lagged_quantities(self._friction_snapshots[step])
        return forms

    # Forward solve

    def _newton(self) -> NewtonSolver:
        return NewtonSolver(self.solver_config)

    def _initialize_contact(self, forms, problem: FullNLProblem, x: np.ndarray) -> None:
        contact = forms.get('contact')
        if contact is None or not contact.use_adaptive_barrier_stiffness:
            return
        contact.enabled = False
        grad_energy = problem.reduced_gradient(x)
        contact.enabled = True
        contact.initialize_barrier_stiffness(x, grad_energy, self.average_mass())

    def solve(self) -> np.ndarray:
        """Solve the forward problem and store the solution history.

        Raises:
            DegenerateGeometryError: If the rest mesh is inverted
            SolverConvergenceError: If a Newton solve fails
        """
        self.assembler.refresh(self.mesh)
        self.assembler.check_rest_shape()
        self._forms = None
        self._mass = None
        if self.is_transient:
            self._solve_transient()
        else:
            self._solve_static()
        self._needs_solve = False
        self.adjoint_mat = None
        return self.solution

    def _solve_static(self) -> None:
        forms = self.forms
        problem = FullNLProblem(list(forms.values()), self.ndof, self.dirichlet_dofs())
        x = self.dirichlet_values(0)
        self._initialize_contact(forms, problem, x)
        logger.debug(f"Static solve with {self.ndof} dofs")
        x = self._newton().minimize(problem, x)
        self.solution = x[:, None].copy()

    def _solve_transient(self) -> None:
        forms = self.forms
        problem = FullNLProblem(list(forms.values()), self.ndof, self.dirichlet_dofs())
        dofs = problem.dirichlet_dofs
        newton = self._newton()

        self.solution = np.zeros((self.ndof, self.time_steps + 1))
        self.solution[:, 0] = self.initial_displacement
        self._friction_snapshots = {}
        self.time_integrator.init(self.initial_displacement, self.initial_velocity)
        problem.update_quantities(0.0, self.initial_displacement)

        x = self.initial_displacement.copy()
        for t in range(1, self.time_steps + 1):
            x0 = x.copy()
            x0[dofs] = self.dirichlet_values(t)[dofs]
            problem.init_lagging(x)
            if t == 1:
                self._initialize_contact(forms, problem, x0)

            x = newton.minimize(problem, x0)
            for k in range(1, self.solver_config.friction_iterations):
                problem.update_lagging(x, k)
                x = newton.minimize(problem, x)

            if 'friction' in forms:
                self._friction_snapshots[t] = forms['friction'].get_lagged_quantities()
            self.solution[:, t] = x
            self.time_integrator.update_quantities(x)
            problem.update_quantities(t * self.dt, x)
            logger.debug(f"Time step {t}/{self.time_steps} solved")

    # Adjoint solve

    def _step_hessian(self, step: int) -> sp.csr_matrix:
        forms = self.prepare_step(step)
        x = self.solution[:, step]
        H = sp.csr_matrix((self.ndof, self.ndof))
        for form in forms.values():
            H = H + form.second_derivative(x)
        return H.tocsr()

    def _coupling_hessians(self, step: int):
        """Damping and friction Hessians of ``step`` (zero when absent)."""
        forms = self.prepare_step(step)
        x = self.solution[:, step]
        zero = sp.csr_matrix((self.ndof, self.ndof))
        damping = forms['damping'].second_derivative(x) if 'damping' in forms else zero
        friction = forms['friction'].second_derivative(x) if 'friction' in forms else zero
        return damping, friction

    def _solve_free(self, H: sp.csr_matrix, b: np.ndarray) -> np.ndarray:
        free = np.setdiff1d(np.arange(self.ndof), self.dirichlet_dofs())
        lam = np.zeros(self.ndof)
        if not np.any(b[free]):
            return lam
        sol = spsolve(H[free][:, free].tocsc(), -b[free])
        if not np.all(np.isfinite(sol)):
            raise SolverConvergenceError("Adjoint solve produced non-finite values")
        lam[free] = sol
        return lam

    def solve_adjoint(self, rhs: np.ndarray) -> np.ndarray:
        """Solve the adjoint system for ``rhs`` (ndof x solution columns).

        Besides the adjoint, stores the Dirichlet and initial-condition
        sensitivities that reuse the same operators.
        """
        if self.solution is None or self._needs_solve:
            raise SolverConvergenceError("Adjoint requested before the forward solve")
        rhs = np.asarray(rhs, dtype=float).reshape(self.ndof, -1)
        if rhs.shape[1] != self.n_solution_columns:
            raise ConfigurationError(
                f"Adjoint rhs has {rhs.shape[1]} columns, expected {self.n_solution_columns}")

        if not np.any(rhs):
            self.adjoint_mat = np.zeros_like(rhs)
            self.dirichlet_adjoint_terms = np.zeros_like(rhs)
            if self.is_transient:
                self.initial_condition_adjoint_terms = (np.zeros(self.ndof), np.zeros(self.ndof))
            return self.adjoint_mat

        if not self.is_transient:
            H = self._step_hessian(0)
            lam = self._solve_free(H, rhs[:, 0])
            self.adjoint_mat = lam[:, None]
            self.dirichlet_adjoint_terms = (rhs[:, 0] + H @ lam)[:, None]
            return self.adjoint_mat

        T = self.time_steps
        M = self.mass_matrix()
        c = 1.0 / self.dt ** 2
        lam = np.zeros((self.ndof, T + 1))
        dirichlet_terms = np.zeros((self.ndof, T + 1))
        couplings = {}

        for t in range(T, 0, -1):
            b = rhs[:, t].copy()
            if t + 1 <= T:
                D1, F1 = couplings[t + 1]
                b += -2.0 * c * (M @ lam[:, t + 1]) - D1.T @ lam[:, t + 1] - F1.T @ lam[:, t + 1]
            if t + 2 <= T:
                b += c * (M @ lam[:, t + 2])
            H = self._step_hessian(t)
            couplings[t] = self._coupling_hessians(t)
            lam[:, t] = self._solve_free(H, b)
            dirichlet_terms[:, t] = b + H @ lam[:, t]

        D1, F1 = couplings[1]
        du0 = rhs[:, 0] - c * (M @ lam[:, 1]) - D1.T @ lam[:, 1] - F1.T @ lam[:, 1]
        if T >= 2:
            du0 += c * (M @ lam[:, 2])
        dv0 = -(M @ lam[:, 1]) / self.dt

        self.adjoint_mat = lam
        self.dirichlet_adjoint_terms = dirichlet_terms
        self.initial_condition_adjoint_terms = (du0, dv0)
        return lam

    def get_adjoint_mat(self) -> np.ndarray:
        if self.adjoint_mat is None:
            raise SolverConvergenceError("Adjoint has not been solved")
        return self.adjoint_mat
