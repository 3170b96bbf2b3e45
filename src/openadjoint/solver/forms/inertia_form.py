"""Inertia term of implicit time stepping."""

import numpy as np
import scipy.sparse as sp

from openadjoint.fem.time_integrator import ImplicitEuler
from openadjoint.solver.forms.form import Form


class InertiaForm(Form):
    """``1 / (2 dt^2) (x - x_pred)^T M (x - x_pred)``."""

    def __init__(self, mass: sp.spmatrix, time_integrator: ImplicitEuler):
        super().__init__()
        self.mass = sp.csr_matrix(mass)
        self.time_integrator = time_integrator

    def _scaling(self):
        return 1.0 / self.time_integrator.acceleration_scaling()

    def value_unweighted(self, x):
        d = x - self.time_integrator.x_tilde()
        return 0.5 * self._scaling() * float(d @ (self.mass @ d))

    def first_derivative_unweighted(self, x):
        return self._scaling() * (self.mass @ (x - self.time_integrator.x_tilde()))

    def second_derivative_unweighted(self, x):
        return self._scaling() * self.mass
