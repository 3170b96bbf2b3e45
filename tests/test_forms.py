"""Finite-difference checks of the energy forms summed by the forward solver."""

import numpy as np
import pytest
import scipy.sparse as sp

from openadjoint.core.config import NewtonConfig
from openadjoint.core.exceptions import DegenerateGeometryError, InvalidStateError, SolverConvergenceError
from openadjoint.fem import Assembler, ImplicitEuler, State
from openadjoint.fem.elements import get_elastic_kernels
from openadjoint.solver.forms import (
    BodyForm, ContactForm, DampingForm, ElasticForm, FrictionForm, Form, InertiaForm, LaggedRegForm,
)
from openadjoint.solver.nonlinear import FullNLProblem, NewtonSolver


def check_gradient(form, x, h=1e-7, rtol=1e-5, seed=0):
    d = np.random.default_rng(seed).uniform(-1.0, 1.0, len(x))
    numeric = (form.value(x + h * d) - form.value(x - h * d)) / (2.0 * h)
    analytic = form.first_derivative(x) @ d
    assert analytic == pytest.approx(numeric, rel=rtol, abs=1e-9)


def check_hessian(form, x, h=1e-7, rtol=1e-5, seed=1):
    d = np.random.default_rng(seed).uniform(-1.0, 1.0, len(x))
    numeric = (form.first_derivative(x + h * d) - form.first_derivative(x - h * d)) / (2.0 * h)
    analytic = form.second_derivative(x) @ d
    scale = max(np.max(np.abs(numeric)), 1.0)
    np.testing.assert_allclose(analytic, numeric, rtol=rtol, atol=rtol * scale)


@pytest.fixture
def assembler(square_mesh):
    return Assembler(square_mesh)


@pytest.fixture
def small_displacement(square_mesh):
    return 1e-2 * np.random.default_rng(42).uniform(-1.0, 1.0, square_mesh.ndof)


@pytest.mark.parametrize("material", ["LinearElasticity", "NeoHookean"])
def test_elastic_form_derivatives(assembler, small_displacement, material):
    n = assembler.mesh.n_elements
    form = ElasticForm(assembler, get_elastic_kernels(material), np.full(n, 300.0), np.full(n, 200.0),
                       macro_strain=np.array([[0.01, 0.0], [0.005, -0.01]]))
    check_gradient(form, small_displacement)
    check_hessian(form, small_displacement)


def test_elastic_form_rejects_inversion(assembler):
    n = assembler.mesh.n_elements
    form = ElasticForm(assembler, get_elastic_kernels("NeoHookean"), np.ones(n), np.ones(n))
    x = np.zeros(assembler.ndof)
    x.reshape(-1, 2)[:, 0] = -2.0 * assembler.mesh.vertices[:, 0]
    with pytest.raises(DegenerateGeometryError):
        form.value(x)
    assert not form.is_step_valid(np.zeros_like(x), x)


def test_body_form_is_linear(assembler, small_displacement):
    form = BodyForm(assembler, np.array([0.0, -9.81]), {3: np.array([1.0, 0.0])})
    f = form.rhs()
    # total load: gravity over the unit square plus the traction on the right side
    assert f.reshape(-1, 2).sum(axis=0) == pytest.approx([1.0, -9.81])
    assert form.value(small_displacement) == pytest.approx(-f @ small_displacement)
    check_gradient(form, small_displacement)
    assert form.second_derivative(small_displacement).nnz == 0


def test_body_form_zeroes_dirichlet_rows(assembler):
    form = BodyForm(assembler, np.array([0.0, -1.0]), dirichlet_dofs=np.array([0, 1]), apply_DBC=True)
    assert np.all(form.rhs()[:2] == 0.0)


def test_inertia_form(assembler, small_displacement):
    M = assembler.mass_matrix(np.full(assembler.mesh.n_elements, 2.0))
    assert M.sum() == pytest.approx(2.0 * 2.0)
    integrator = ImplicitEuler(0.1)
    integrator.init(np.zeros(assembler.ndof), np.full(assembler.ndof, 0.5))
    form = InertiaForm(M, integrator)
    assert form.value(integrator.x_tilde()) == pytest.approx(0.0)
    check_gradient(form, small_displacement)
    check_hessian(form, small_displacement)


def test_damping_form(assembler, small_displacement):
    form = DampingForm(assembler, psi=3.0, phi=1.5, dt=0.1)
    form.update_quantities(0.0, 0.5 * small_displacement)
    assert form.value(0.5 * small_displacement) == pytest.approx(0.0)
    check_gradient(form, small_displacement)
    check_hessian(form, small_displacement)


def test_lagged_reg_form(small_displacement):
    form = LaggedRegForm(n_lagging_iters=1)
    form.init(np.zeros_like(small_displacement))
    assert form.value(small_displacement) == pytest.approx(0.5 * small_displacement @ small_displacement)
    check_gradient(form, small_displacement)
    form.update_lagging(small_displacement, 1)
    assert not form.enabled
    assert form.value(np.zeros_like(small_displacement)) == 0.0


def test_weight_and_enabled(assembler, small_displacement):
    form = DampingForm(assembler, psi=1.0, phi=1.0, dt=1.0)
    form.init(np.zeros_like(small_displacement))
    value = form.value(small_displacement)
    form.set_weight(3.0)
    assert form.value(small_displacement) == pytest.approx(3.0 * value)
    form.enabled = False
    assert form.value(small_displacement) == 0.0
    assert not np.any(form.first_derivative(small_displacement))


@pytest.fixture
def contact_form(two_body_mesh):
    return ContactForm(two_body_mesh, dhat=0.05, barrier_stiffness=10.0)


def test_contact_form_active_set(contact_form, two_body_mesh):
    x = np.zeros(two_body_mesh.ndof)
    pairs, P, d = contact_form.active_set(x)
    assert len(pairs) > 0
    assert np.all(d < 0.05 ** 2)
    assert np.min(d) == pytest.approx(0.02 ** 2)
    assert contact_form.value(x) > 0.0

    # separating the blocks beyond dhat switches the barrier off
    far = np.zeros_like(x)
    far.reshape(-1, 2)[15:, 1] = 0.1
    assert contact_form.value(far) == 0.0


def test_contact_form_derivatives(contact_form, two_body_mesh):
    x = 1e-3 * np.random.default_rng(3).uniform(-1.0, 1.0, two_body_mesh.ndof)
    check_gradient(contact_form, x, h=1e-8, rtol=1e-4)
    check_hessian(contact_form, x, h=1e-8, rtol=1e-4)


def test_contact_form_limits_steps(contact_form, two_body_mesh):
    x = np.zeros(two_body_mesh.ndof)
    x.reshape(-1, 2)[15:, 1] = -0.03
    # vertical approach: contact at 2/3 of the step, stopped 10% short of it
    alpha = contact_form.max_step_size(np.zeros_like(x), x)
    assert 0.0 < alpha < 2.0 / 3.0


def test_friction_form_derivatives(contact_form, two_body_mesh):
    friction = FrictionForm(contact_form, epsv=1e-3, mu=0.5, dt=1.0)
    x0 = np.zeros(two_body_mesh.ndof)
    friction.update_quantities(0.0, x0)
    friction.init_lagging(x0)
    # tangential slips of the order of the mollifier width exercise both branches
    x = 1e-3 * np.random.default_rng(5).uniform(-1.0, 1.0, two_body_mesh.ndof)
    check_gradient(friction, x, h=1e-9, rtol=1e-4)
    check_hessian(friction, x, h=1e-9, rtol=1e-4)
    assert friction.value(x) > 0.0
    np.testing.assert_allclose(0.5 * friction.unit_coefficient_gradient(x), friction.first_derivative(x))


def test_friction_form_needs_lagged_quantities(contact_form, two_body_mesh):
    friction = FrictionForm(contact_form, epsv=1e-3, mu=0.5, dt=1.0)
    x = np.zeros(two_body_mesh.ndof)
    friction.update_quantities(0.0, x)
    with pytest.raises(InvalidStateError):
        friction.value(x)
    assert friction.get_lagged_quantities() is None
    # without friction the contact set is never consulted
    friction.mu = 0.0
    assert friction.value(x) == 0.0


def test_newton_solves_linear_problem(assembler):
    mesh = assembler.mesh
    n = mesh.n_elements
    elastic = ElasticForm(assembler, get_elastic_kernels("LinearElasticity"), np.full(n, 100.0), np.full(n, 100.0))
    left = mesh.boundary_nodes([1])
    dofs = (2 * left[:, None] + np.arange(2)).ravel()
    body = BodyForm(assembler, np.array([0.0, -1.0]), dirichlet_dofs=dofs)
    problem = FullNLProblem([elastic, body], mesh.ndof, dofs)
    x = NewtonSolver().minimize(problem, np.zeros(mesh.ndof))
    assert np.max(np.abs(problem.reduced_gradient(x))) <= 1e-8
    assert np.all(x[dofs] == 0.0)
    assert x.reshape(-1, 2)[:, 1].min() < 0.0


class StiffQuadraticForm(Form):
    """``1/2 |x|^2`` paired with a Hessian far too large for it."""

    def value_unweighted(self, x):
        return 0.5 * float(x @ x)

    def first_derivative_unweighted(self, x):
        return x.copy()

    def second_derivative_unweighted(self, x):
        return 1e20 * sp.identity(len(x), format='csr')


def test_newton_raises_when_steps_stall():
    problem = FullNLProblem([StiffQuadraticForm()], 2)
    with pytest.raises(SolverConvergenceError):
        NewtonSolver().minimize(problem, np.ones(2))


@pytest.mark.parametrize("s", [0.0, 0.001, 0.004, 0.007, 0.01])
def test_newton_reaches_gradient_tolerance(cantilever, s):
    config = NewtonConfig(grad_norm=1e-8)
    state = cantilever(macro_strain=[[0.01, 0.0], [0.005, -0.005 + s]], solver=config)
    u = state.solve()[:, 0]
    problem = FullNLProblem(list(state.forms.values()), state.ndof, state.dirichlet_dofs())
    assert np.max(np.abs(problem.reduced_gradient(u))) <= config.grad_norm


def test_state_solves_static_and_transient(cantilever):
    static = cantilever()
    u = static.solve()
    assert u.shape == (static.ndof, 1)
    assert not static.needs_solve
    assert u[:, 0].reshape(-1, 2)[:, 1].min() < 0.0

    transient = cantilever(time_steps=3, dt=0.1)
    U = transient.solve()
    assert U.shape == (transient.ndof, 4)
    np.testing.assert_array_equal(U[:, 0], 0.0)
    assert np.all(np.isfinite(U))


def test_state_invalidation(cantilever):
    state = cantilever(material="LinearElasticity")
    state.solve()
    state.set_materials(2.0 * state.lam, 2.0 * state.mu)
    assert state.needs_solve


def test_contact_form_rejects_touching(contact_form, two_body_mesh):
    V = two_body_mesh.vertices
    x = np.zeros(two_body_mesh.ndof)
    x.reshape(-1, 2)[15:20, 1] = 0.5 - V[15:20, 1]
    assert not contact_form.is_step_valid(np.zeros_like(x), x)
    with pytest.raises(DegenerateGeometryError):
        contact_form.value(x)
