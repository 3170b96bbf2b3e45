"""Hyperelastic strain energy."""

import logging

import numpy as np

from openadjoint.core.exceptions import DegenerateGeometryError
from openadjoint.fem.assembler import Assembler
from openadjoint.fem.elements import ElasticKernels
from openadjoint.solver.forms.form import Form

# Configure logging
logger = logging.getLogger(__name__)


class ElasticForm(Form):
    """Sum of element energies ``A_e Psi(I + grad u + E_macro)``.

    Args:
        assembler: Assembler of the simulated mesh
        kernels: Element kernels of the material model
        lam: Per-element first Lame parameter
        mu: Per-element shear modulus
        macro_strain: Homogeneous displacement gradient added to every element
        check_inversion: Raise on inverted elements (needed for log-barrier materials)
    """

    def __init__(
        self,
        assembler: Assembler,
        kernels: ElasticKernels,
        lam: np.ndarray,
        mu: np.ndarray,
        macro_strain: np.ndarray = None,
        check_inversion: bool = True,
    ):
        super().__init__()
        self.assembler = assembler
        self.kernels = kernels
        self.lam = np.asarray(lam, dtype=float)
        self.mu = np.asarray(mu, dtype=float)
        self.macro_strain = np.zeros((2, 2)) if macro_strain is None else np.asarray(macro_strain, dtype=float)
        self.check_inversion = check_inversion

    def _check(self, x):
        if self.check_inversion:
            self.assembler.check_deformation(x, self.macro_strain)

    def value_unweighted(self, x):
        self._check(x)
        energy = self.assembler.elastic_energy(self.kernels, x, self.lam, self.mu, self.macro_strain)
        if not np.isfinite(energy):
            raise DegenerateGeometryError("Elastic energy is not finite")
        return energy

    def first_derivative_unweighted(self, x):
        self._check(x)
        return self.assembler.elastic_gradient(self.kernels, x, self.lam, self.mu, self.macro_strain)

    def second_derivative_unweighted(self, x):
        self._check(x)
        return self.assembler.elastic_hessian(self.kernels, x, self.lam, self.mu, self.macro_strain)

    def is_step_valid(self, x0, x1):
        try:
            return bool(np.isfinite(self.value_unweighted(x1)))
        except DegenerateGeometryError:
            logger.debug("Elastic step rejected: inverted element")
            return False
