"""Shared fixtures: small meshes and states that solve in well under a second."""

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pytest

from openadjoint.core.config import ContactConfig
from openadjoint.fem import State
from openadjoint.mesh import Mesh


@pytest.fixture
def square_mesh():
    return Mesh.rectangle(n=(3, 3), size=(1.0, 1.0))


@pytest.fixture
def cantilever():
    """Factory of a beam clamped on the left and loaded on the right."""
    def build(n=(4, 2), material="NeoHookean", time_steps=0, dt=None, **kwargs):
        mesh = Mesh.rectangle(n=n, size=(2.0, 1.0))
        kwargs.setdefault('E', 1e4)
        kwargs.setdefault('nu', 0.3)
        kwargs.setdefault('dirichlet', {1: (0.0, 0.0)})
        kwargs.setdefault('neumann', {3: (0.0, -20.0)})
        return State(mesh, material=material, time_steps=time_steps, dt=dt, **kwargs)
    return build


@pytest.fixture
def two_body_mesh():
    """Two stacked blocks 0.02 apart, the upper one shifted sideways; it carries boundary ids 5 to 8."""
    lower = Mesh.rectangle(n=(4, 2), size=(1.0, 0.5), body_id=1)
    upper = Mesh.rectangle(n=(4, 2), size=(1.0, 0.5), origin=(0.1, 0.52), body_id=2)
    upper.boundary_ids = upper.boundary_ids + 4
    return Mesh.concatenate([lower, upper])


@pytest.fixture
def contact_state(two_body_mesh):
    """Factory of the stacked blocks pressed together through the upper lid.

    Transient runs also drag the lid sideways so the blocks slide.
    """
    def build(time_steps=0, dt=None, friction_coefficient=0.0, **kwargs):
        contact = ContactConfig(enabled=True, dhat=0.05, barrier_stiffness=1e4,
                                use_adaptive_barrier_stiffness=False,
                                friction_coefficient=friction_coefficient, epsv=1e-3)
        if time_steps == 0:
            lid = (0.0, -0.01)
        else:
            s = np.linspace(0.0, 1.0, time_steps + 1)[1:]
            lid = np.stack([0.02 * s, -0.01 * s], axis=1)
        kwargs.setdefault('dirichlet', {2: (0.0, 0.0), 8: lid})
        return State(two_body_mesh.copy(), material="LinearElasticity", E=1e3, nu=0.3,
                     contact=contact, time_steps=time_steps, dt=dt, **kwargs)
    return build
