"""Adjoint gradients against central differences of the full forward solve."""

import numpy as np
import pytest

from openadjoint.core.config import NewtonConfig
from openadjoint.core.exceptions import ConfigurationError
from openadjoint.solver.adjoint_forms import (
    PositionForm, StressNormForm, TargetForm, TransientForm,
)
from openadjoint.solver.adjoint_nl_problem import AdjointNLProblem
from openadjoint.solver.adjoint_tools import SpatialIntegralType
from openadjoint.solver.parametrization import (
    ExponentialMap,
    PerBody2PerElem,
    VariableToBoundaryNodes,
    VariableToBoundaryNodesExclusive,
    VariableToInteriorNodes,
)
from openadjoint.solver.variable_to_simulation import (
    DampingCoeffientVariableToSimulation,
    DirichletVariableToSimulation,
    ElasticVariableToSimulation,
    FrictionCoeffientVariableToSimulation,
    InitialConditionVariableToSimulation,
    MacroStrainVariableToSimulation,
    ShapeVariableToSimulation,
)


def assert_adjoint_matches(form, v2s, state, x0, h=1e-6, rtol=1e-3, seed=0):
    # forward residuals must sit well below the differencing error
    state.solver_config = NewtonConfig(grad_norm=1e-10)
    problem = AdjointNLProblem(form, v2s, [state])
    analytic, numeric = problem.finite_difference_check(np.asarray(x0, dtype=float), h=h, seed=seed)
    assert abs(numeric) > 1e-12
    assert analytic == pytest.approx(numeric, rel=rtol)


def target_form(v2s, state, displacement=(0.0, -0.01)):
    form = TargetForm(v2s, state, [3], SpatialIntegralType.SURFACE)
    form.set_target_displacement(displacement)
    return form


def material_binding(state):
    return ElasticVariableToSimulation(state, [ExponentialMap(), PerBody2PerElem(state.mesh)])


# Static problems

def test_static_shape_gradient(cantilever):
    state = cantilever()
    v2s = [ShapeVariableToSimulation(state, VariableToBoundaryNodesExclusive([], state, [1]))]
    form = StressNormForm(v2s, state)
    assert_adjoint_matches(form, v2s, state, v2s[0].inverse_eval())


def test_static_material_gradient(cantilever):
    state = cantilever()
    v2s = [material_binding(state)]
    x0 = v2s[0].inverse_eval()
    assert len(x0) == 2
    assert_adjoint_matches(target_form(v2s, state), v2s, state, x0)


def test_static_linear_material_gradient(cantilever):
    state = cantilever(material="LinearElasticity")
    v2s = [material_binding(state)]
    assert_adjoint_matches(StressNormForm(v2s, state, power=3.0), v2s, state, v2s[0].inverse_eval())


def test_macro_strain_gradient(cantilever):
    state = cantilever()
    v2s = [MacroStrainVariableToSimulation(state)]
    form = StressNormForm(v2s, state)
    assert_adjoint_matches(form, v2s, state, [0.01, 0.0, 0.005, -0.005])


def test_static_dirichlet_gradient(cantilever):
    state = cantilever()
    v2s = [DirichletVariableToSimulation(state, None, boundary_id=1)]
    x0 = v2s[0].inverse_eval()
    np.testing.assert_array_equal(x0, [0.0, 0.0])
    assert_adjoint_matches(target_form(v2s, state), v2s, state, x0 + 0.001)


def test_static_contact_shape_gradient(contact_state):
    state = contact_state()
    v2s = [ShapeVariableToSimulation(state, VariableToBoundaryNodes([], state, [4]))]
    form = StressNormForm(v2s, state, ids=[1])
    assert_adjoint_matches(form, v2s, state, v2s[0].inverse_eval())


# Transient problems

def test_transient_shape_gradient(cantilever):
    state = cantilever(time_steps=3, dt=0.1)
    v2s = [ShapeVariableToSimulation(state, VariableToInteriorNodes([], state))]
    form = TransientForm(v2s, 3, 0.1, 'uniform', StressNormForm(v2s, state))
    assert_adjoint_matches(form, v2s, state, v2s[0].inverse_eval())


def test_transient_material_gradient(cantilever):
    state = cantilever(time_steps=3, dt=0.1)
    v2s = [material_binding(state)]
    form = TransientForm(v2s, 3, 0.1, 'simpson', target_form(v2s, state))
    assert_adjoint_matches(form, v2s, state, v2s[0].inverse_eval())


def test_initial_condition_gradient(cantilever):
    state = cantilever(time_steps=3, dt=0.1)
    v2s = [InitialConditionVariableToSimulation(state)]
    form = TransientForm(v2s, 3, 0.1, 'final', PositionForm(v2s, state, dim=1))
    x0 = v2s[0].inverse_eval()
    assert len(x0) == 2 * state.ndof
    assert_adjoint_matches(form, v2s, state, x0)


def test_damping_gradient(cantilever):
    state = cantilever(time_steps=3, dt=0.1, damping=(0.5, 0.5))
    v2s = [DampingCoeffientVariableToSimulation(state, [ExponentialMap()])]
    form = TransientForm(v2s, 3, 0.1, 'uniform', StressNormForm(v2s, state))
    assert_adjoint_matches(form, v2s, state, np.log([0.5, 0.5]))


def test_transient_dirichlet_gradient(cantilever):
    state = cantilever(time_steps=3, dt=0.1)
    v2s = [DirichletVariableToSimulation(state, None, boundary_id=1)]
    x0 = v2s[0].inverse_eval()
    assert x0.shape == (6,)
    form = TransientForm(v2s, 3, 0.1, 'steps', target_form(v2s, state), steps=[2, 3])
    assert_adjoint_matches(form, v2s, state, x0 + 0.001)


def test_friction_coefficient_gradient(contact_state):
    # one step: the lagged normal forces and tangents come from the initial state
    state = contact_state(time_steps=1, dt=0.1, friction_coefficient=0.2)
    v2s = [FrictionCoeffientVariableToSimulation(state)]
    form = TransientForm(v2s, 1, 0.1, 'final', PositionForm(v2s, state, dim=0, ids=[1]))
    assert_adjoint_matches(form, v2s, state, [0.2])


# Unsupported sensitivities

def test_static_friction_sensitivity_raises(contact_state):
    state = contact_state()
    v2s = [FrictionCoeffientVariableToSimulation(state)]
    problem = AdjointNLProblem(PositionForm(v2s, state, dim=0), v2s, [state])
    x = np.array([0.2])
    problem.solution_changed(x)
    with pytest.raises(ConfigurationError):
        problem.gradient(x)


def test_static_damping_raises(cantilever):
    state = cantilever()
    v2s = [DampingCoeffientVariableToSimulation(state)]
    problem = AdjointNLProblem(StressNormForm(v2s, state), v2s, [state])
    with pytest.raises(ConfigurationError):
        problem.solution_changed(np.array([0.1, 0.1]))
