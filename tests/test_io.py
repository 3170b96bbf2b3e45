"""Tests of state export, history files and convergence plots."""

import os

import meshio
import numpy as np
import pandas as pd
import pytest

from openadjoint.io import read_history_csv, write_history_csv, write_state
from openadjoint.visualization import plot_history


def test_write_solved_state(tmp_path, cantilever):
    state = cantilever(time_steps=2, dt=0.1)
    state.solve()
    path = tmp_path / "out" / "beam.vtu"
    write_state(state, path)
    data = meshio.read(path)
    u = data.point_data['displacement']
    assert u.shape == (state.mesh.n_vertices, 3)
    np.testing.assert_allclose(u[:, :2], state.solution[:, -1].reshape(-1, 2), rtol=1e-6, atol=1e-12)
    np.testing.assert_allclose(data.cell_data['lambda'][0], state.lam)

    write_state(state, tmp_path / "first.vtu", step=0)
    np.testing.assert_array_equal(meshio.read(tmp_path / "first.vtu").point_data['displacement'], 0.0)
    with pytest.raises(ValueError):
        write_state(state, tmp_path / "bad.vtu", step=3)


def test_write_unsolved_state(tmp_path, cantilever):
    state = cantilever()
    path = tmp_path / "rest.vtu"
    write_state(state, path)
    data = meshio.read(path)
    assert 'displacement' not in data.point_data
    np.testing.assert_allclose(data.points[:, :2], state.mesh.vertices)


def test_history_csv_round_trip(tmp_path):
    history = pd.DataFrame({'iteration': [0, 1, 2], 'value': [3.0, 2.0, 1.5],
                            'grad_norm': [1.0, 0.5, np.nan]})
    path = tmp_path / "logs" / "history.csv"
    write_history_csv(history, path)
    loaded = read_history_csv(path)
    pd.testing.assert_frame_equal(loaded, history)
    with pytest.raises(FileNotFoundError):
        read_history_csv(tmp_path / "missing.csv")


def test_plot_history(tmp_path):
    history = pd.DataFrame({'iteration': [0, 1, 2], 'value': [3.0, 2.0, 1.5],
                            'constraint_0': [-0.1, -0.05, 0.0]})
    path = tmp_path / "plots" / "history.png"
    fig = plot_history(history, title="run", save_path=str(path))
    assert os.path.exists(path)
    assert len(fig.axes) == 2

    fig = plot_history(history[['iteration', 'value']], log_scale=False)
    assert len(fig.axes) == 1
    assert fig.axes[0].get_yscale() == 'linear'

    with pytest.raises(ValueError):
        plot_history(pd.DataFrame())
