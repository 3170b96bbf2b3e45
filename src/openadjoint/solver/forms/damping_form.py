"""Kelvin-Voigt viscous damping potential."""

import numpy as np

from openadjoint.fem.assembler import Assembler
from openadjoint.fem.elements import get_elastic_kernels
from openadjoint.solver.forms.form import Form


class DampingForm(Form):
    """``1/dt sum_e A_e (psi |eps(dx)|^2 + phi/2 tr(eps(dx))^2)`` with ``dx = x - x_prev``.

    Args:
        assembler: Assembler of the simulated mesh
        psi: Shear damping coefficient
        phi: Bulk damping coefficient
        dt: Time step
    """

    def __init__(self, assembler: Assembler, psi: float, phi: float, dt: float):
        super().__init__()
        self.assembler = assembler
        self.kernels = get_elastic_kernels('LinearElasticity')
        self.psi = float(psi)
        self.phi = float(phi)
        self.dt = float(dt)
        self.x_prev = None
        self._zero_strain = np.zeros((2, 2))

    def coefficients(self):
        n = self.assembler.mesh.n_elements
        return np.full(n, self.phi), np.full(n, self.psi)

    def update_quantities(self, t, x):
        self.x_prev = np.array(x, dtype=float)

    def init(self, x):
        if self.x_prev is None:
            self.x_prev = np.array(x, dtype=float)

    def _delta(self, x):
        return x - (self.x_prev if self.x_prev is not None else np.zeros(len(x)))

    def value_unweighted(self, x):
        phi, psi = self.coefficients()
        return self.assembler.elastic_energy(self.kernels, self._delta(x), phi, psi, self._zero_strain) / self.dt

    def first_derivative_unweighted(self, x):
        phi, psi = self.coefficients()
        return self.assembler.elastic_gradient(self.kernels, self._delta(x), phi, psi, self._zero_strain) / self.dt

    def second_derivative_unweighted(self, x):
        phi, psi = self.coefficients()
        return self.assembler.elastic_hessian(self.kernels, self._delta(x), phi, psi, self._zero_strain) / self.dt

    def shape_term(self, x: np.ndarray, adjoint: np.ndarray) -> np.ndarray:
        """``adjoint^T d(grad D)/dX`` at ``x``."""
        phi, psi = self.coefficients()
        return self.assembler.elastic_shape_term(
            self.kernels, self._delta(x), adjoint, phi, psi, self._zero_strain) / self.dt

    def coefficient_term(self, x: np.ndarray, adjoint: np.ndarray) -> np.ndarray:
        """``adjoint^T d(grad D)/d(psi, phi)``."""
        phi, psi = self.coefficients()
        d_phi, d_psi = self.assembler.elastic_material_term(
            self.kernels, self._delta(x), adjoint, phi, psi, self._zero_strain)
        return np.array([np.sum(d_psi), np.sum(d_phi)]) / self.dt
