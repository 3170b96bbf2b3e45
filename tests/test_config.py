"""Tests of run configurations, the component registry and the command-line entry point."""

import os

import numpy as np
import pytest
import yaml

from openadjoint.cli.app import build_problem, main
from openadjoint.core.config import RunConfig
from openadjoint.core.exceptions import ConfigurationError
from openadjoint.core.registry import (
    ComponentRegistry,
    create_design_vector,
    create_form,
    create_parametrization,
    create_state,
    register_form,
)
from openadjoint.fem import convert_to_lame
from openadjoint.solver.adjoint_forms import VolumeForm


def beam_state(E):
    return {
        'mesh': {'type': 'rectangle', 'n': [4, 2], 'size': [2.0, 1.0]},
        'materials': {'type': 'LinearElasticity', 'E': E, 'nu': 0.3},
        'boundary_conditions': {
            'dirichlet_boundary': [{'id': 1, 'value': [0.0, 0.0]}],
            'neumann_boundary': [{'id': 3, 'value': [0.0, -20.0]}],
        },
    }


def material_run(output_directory):
    """Identify the stiffness of state 1 by optimizing the Lame parameters of state 0."""
    lam, mu = convert_to_lame(1e4, 0.3)
    return {
        'states': [beam_state(1e4), beam_state(2e4)],
        'parameters': [{'number': 2, 'initial': [float(np.log(lam)), float(np.log(mu))]}],
        'variable_to_simulation': [{
            'type': 'elastic',
            'state': 0,
            'composition': [{'type': 'exp'}, {'type': 'per-body-to-per-elem', 'state': 0}],
        }],
        'functionals': [{'type': 'target', 'state': 0, 'surface_selection': [3], 'reference_state': 1}],
        'optimization': {'algorithm': 'lbfgs', 'max_iterations': 5},
        'output_directory': str(output_directory),
    }


@pytest.mark.parametrize("suffix", [".yaml", ".json"])
def test_run_config_round_trip(tmp_path, suffix):
    config = RunConfig.from_dict(material_run(tmp_path))
    path = tmp_path / f"run{suffix}"
    config.save(path)
    loaded = RunConfig.from_file(path)
    assert loaded.to_dict() == config.to_dict()
    assert loaded.states[0].materials['type'] == 'LinearElasticity'
    assert loaded.optimization.max_iterations == 5
    assert not loaded.states[0].is_transient


def test_run_config_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        RunConfig.from_file(tmp_path / "missing.yaml")
    bad = tmp_path / "run.txt"
    bad.write_text("states: []")
    with pytest.raises(ConfigurationError):
        RunConfig.from_file(bad)
    with pytest.raises(ConfigurationError):
        RunConfig.from_dict({'optimization': {'step': 1.0}})
    with pytest.raises(ConfigurationError):
        RunConfig.from_dict({'states': [{'contact': {'stiffness': 1.0}}]})


def test_create_state_from_dict():
    state = create_state({
        'mesh': {'type': 'rectangle', 'n': [2, 2]},
        'materials': {'type': 'NeoHookean', 'E': 100.0, 'nu': 0.25, 'rho': 2.0},
        'time': {'dt': 0.1, 'time_steps': 3},
        'initial_conditions': {'velocity': [1.0, 0.0]},
    })
    assert state.is_transient
    assert state.n_solution_columns == 4
    np.testing.assert_allclose(state.density, 2.0)
    np.testing.assert_allclose(state.initial_velocity.reshape(-1, 2), [[1.0, 0.0]] * 9)
    with pytest.raises(ConfigurationError):
        create_state({'mesh': {'type': 'circle'}})


def test_registry_rejects_unknown_types():
    with pytest.raises(ConfigurationError):
        create_form({'type': 'no-such-form'}, [], [])
    with pytest.raises(ConfigurationError):
        create_parametrization({'type': 'no-such-map'})
    with pytest.raises(ConfigurationError):
        create_parametrization({'radius': 1.0})
    available = ComponentRegistry.list_available_types()
    assert 'bspline' in available['parametrizations']
    assert 'transient_integral' in available['forms']
    assert 'shape' in available['variable_to_simulation']


def test_decorator_registration_and_weights(cantilever):
    @register_form("test-volume")
    def build(args, v2s, states):
        return VolumeForm(v2s, states[0])

    state = cantilever()
    form = create_form({'type': 'test-volume', 'weight': 0.5}, [], [state])
    assert isinstance(form, VolumeForm)
    assert form.weight == 0.5


def test_nested_forms_from_dicts(cantilever):
    state = cantilever(time_steps=2, dt=0.1)
    form = create_form({
        'type': 'sum',
        'functionals': [
            {'type': 'transient_integral', 'integral_type': 'final',
             'static_objective': {'type': 'stress_norm', 'power': 2}},
            {'type': 'inequality-constraint', 'bounds': [0.0, 1.0], 'objective': {'type': 'AMIPS'}},
        ],
    }, [], [state])
    assert len(form.forms) == 2
    np.testing.assert_array_equal(form.forms[0].weights, [0.0, 0.0, 1.0])
    with pytest.raises(ConfigurationError):
        create_form({'type': 'target', 'state': 0}, [], [state])
    with pytest.raises(ConfigurationError):
        create_form({'type': 'volume', 'state': 3}, [], [state])


def test_create_design_vector():
    x = create_design_vector([{'number': 2, 'initial': 1.0}, {'number': 1, 'initial': [3.0]}])
    np.testing.assert_array_equal(x, [1.0, 1.0, 3.0])
    assert len(create_design_vector([])) == 0
    with pytest.raises(ConfigurationError):
        create_design_vector([{'initial': 1.0}])


def test_build_problem(tmp_path):
    problem, x0 = build_problem(RunConfig.from_dict(material_run(tmp_path)))
    assert len(x0) == 2
    assert len(problem.states) == 2
    assert problem.n_constraints == 0
    problem.solution_changed(x0)
    assert problem.value(x0) > 0.0


def test_cli_runs_an_optimization(tmp_path):
    path = tmp_path / "run.yaml"
    with open(path, 'w') as f:
        yaml.safe_dump(material_run(tmp_path / "unused"), f)
    out = tmp_path / "out"
    assert main([str(path), '-o', str(out), '--plot']) == 0
    assert os.path.exists(out / "history.csv")
    assert os.path.exists(out / "history.png")


def test_cli_reports_failures(tmp_path):
    assert main([str(tmp_path / "missing.yaml")]) == 1
    data = material_run(tmp_path)
    data['functionals'] = []
    path = tmp_path / "empty.yaml"
    with open(path, 'w') as f:
        yaml.safe_dump(data, f)
    assert main([str(path)]) == 1
