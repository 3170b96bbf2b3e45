"""End-to-end optimization runs on small problems."""

import numpy as np
import pytest

from openadjoint.core.config import OptimizationConfig
from openadjoint.core.exceptions import ConfigurationError, IterationLimitReached
from openadjoint.mesh import Mesh
from openadjoint.fem import State
from openadjoint.solver.adjoint_forms import (
    ComplianceForm, PlusConstCompositeForm, TargetForm, TransientForm, WeightedVolumeForm,
)
from openadjoint.solver.adjoint_nl_problem import AdjointNLProblem
from openadjoint.solver.optimizer import TerminationReason, make_nl_solver
from openadjoint.solver.parametrization import (
    BSplineParametrization1DTo2D, ExponentialMap, LinearFilter, PerBody2PerElem, PowerMap,
    VariableToBoundaryNodes,
)
from openadjoint.solver.variable_to_simulation import (
    DensityVariableToSimulation, ElasticVariableToSimulation, ShapeVariableToSimulation,
)


def assert_monotone(history):
    values = history['value'].to_numpy()
    assert np.all(np.diff(values) < 0.0)


def material_identification(cantilever, config):
    """Recover the stiffness of a reference beam from its tip displacement."""
    reference = cantilever(material="LinearElasticity", E=2e4)
    state = cantilever(material="LinearElasticity", E=1e4)
    v2s = [ElasticVariableToSimulation(state, [ExponentialMap(), PerBody2PerElem(state.mesh)])]
    form = TargetForm(v2s, state, [3])
    form.set_reference(reference)
    problem = AdjointNLProblem(form, v2s, [state], config)
    return problem, v2s[0].inverse_eval()


def test_lbfgs_identifies_material(cantilever):
    problem, x0 = material_identification(cantilever, OptimizationConfig(algorithm='lbfgs', max_iterations=30))
    result = make_nl_solver(problem.config).minimize(problem, x0)
    history = problem.history
    assert_monotone(history)
    assert result.fun <= 1e-2 * history['value'].iloc[0]
    assert len(history) == result.iterations + 1


def test_slsqp_reduces_the_objective(cantilever):
    problem, x0 = material_identification(cantilever, OptimizationConfig(algorithm='slsqp', max_iterations=10))
    result = make_nl_solver(problem.config).minimize(problem, x0)
    assert result.fun < problem.history['value'].iloc[0]


def test_iteration_limit_can_raise(cantilever):
    config = OptimizationConfig(algorithm='gradient_descent', max_iterations=1, raise_on_iteration_limit=True)
    problem, x0 = material_identification(cantilever, config)
    with pytest.raises(IterationLimitReached):
        make_nl_solver(config).minimize(problem, x0)


def test_transient_bspline_shape_matching(cantilever):
    knots = [0.0, 0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 1.0]
    # the top boundary runs from the right corner to the left one
    control = np.array([[2.0, 1.0], [4.0 / 3.0, 1.0], [2.0 / 3.0, 1.0], [0.0, 1.0]])

    def bind(state):
        spline = BSplineParametrization1DTo2D(control, knots, num_vertices=5, exclude_ends=True)
        return ShapeVariableToSimulation(state, VariableToBoundaryNodes([spline], state, [4]))

    reference = cantilever(material="LinearElasticity", time_steps=4, dt=0.1)
    ref_binding = bind(reference)
    x0 = ref_binding.inverse_eval()
    np.testing.assert_allclose(x0, [4.0 / 3.0, 1.0, 2.0 / 3.0, 1.0], atol=1e-12)
    ref_binding.update(x0 + [0.0, 0.1, 0.0, -0.05])

    state = cantilever(material="LinearElasticity", time_steps=4, dt=0.1)
    v2s = [bind(state)]
    target = TargetForm(v2s, state)
    target.set_reference(reference)
    form = TransientForm(v2s, 4, 0.1, 'final', target)
    problem = AdjointNLProblem(form, v2s, [state], OptimizationConfig(max_iterations=40))

    result = make_nl_solver(problem.config).minimize(problem, x0)
    history = problem.history
    assert_monotone(history)
    assert result.reason == TerminationReason.CONVERGED
    assert result.fun <= 1e-12
    assert result.x[1] > 1.0 > result.x[3]


def test_mma_topology_optimization():
    mesh = Mesh.rectangle(n=(8, 4), size=(2.0, 1.0))
    state = State(mesh, material="LinearElasticity", E=1e3, nu=0.3,
                  dirichlet={1: (0.0, 0.0)}, neumann={3: (0.0, -1.0)})
    density_filter = LinearFilter(mesh, radius=0.4)
    v2s = [DensityVariableToSimulation(state, [density_filter, PowerMap(3.0)])]
    compliance = ComplianceForm(v2s, state)

    volume = WeightedVolumeForm(v2s, density_filter, state)
    volume.set_weight(1.0 / (0.5 * mesh.element_areas().sum()))
    constraint = PlusConstCompositeForm(v2s, volume, -1.0)

    config = OptimizationConfig(algorithm='mma', max_iterations=8, bounds=[0.0, 1.0])
    problem = AdjointNLProblem(compliance, v2s, [state], config, [constraint])
    x0 = np.full(mesh.n_elements, 0.45)
    result = make_nl_solver(config).minimize(problem, x0)

    history = problem.history
    assert_monotone(history)
    assert np.all(history['constraint_0'] <= 1e-8)
    assert result.fun < history['value'].iloc[0]
    assert np.all(result.x >= 0.0) and np.all(result.x <= 1.0)


def test_mma_needs_one_constraint(cantilever):
    problem, x0 = material_identification(cantilever, OptimizationConfig(algorithm='mma'))
    with pytest.raises(ConfigurationError):
        make_nl_solver(problem.config).minimize(problem, x0)


def test_unknown_algorithm():
    with pytest.raises(ConfigurationError):
        make_nl_solver(OptimizationConfig(algorithm='newton'))
    assert make_nl_solver(OptimizationConfig(algorithm='Gradient-Descent')).name == "GradientDescent"


def test_result_success_flag():
    from openadjoint.solver.optimizer import OptimizationResult
    assert OptimizationResult(np.zeros(1), 0.0, 3, TerminationReason.CONVERGED).success
    assert not OptimizationResult(np.zeros(1), 0.0, 3, TerminationReason.ITERATION_LIMIT).success
