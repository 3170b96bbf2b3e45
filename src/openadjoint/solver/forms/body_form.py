"""External work of body forces and Neumann tractions."""

from typing import Dict, Optional

import numpy as np
import scipy.sparse as sp

from openadjoint.fem.assembler import Assembler
from openadjoint.solver.forms.form import Form


class BodyForm(Form):
    """Potential ``-f . x`` of a constant body force and boundary tractions.

    Args:
        assembler: Assembler of the simulated mesh
        body_force: Force per unit area (2,)
        tractions: Map from boundary id to traction vector
        dirichlet_dofs: Constrained dofs
        apply_DBC: Zero the load on Dirichlet dofs
    """

    def __init__(
        self,
        assembler: Assembler,
        body_force: np.ndarray,
        tractions: Optional[Dict[int, np.ndarray]] = None,
        dirichlet_dofs: Optional[np.ndarray] = None,
        apply_DBC: bool = False,
    ):
        super().__init__()
        self.assembler = assembler
        self.body_force = np.asarray(body_force, dtype=float)
        self.tractions = tractions or {}
        self.dirichlet_dofs = np.asarray(dirichlet_dofs if dirichlet_dofs is not None else [], dtype=int)
        self.apply_DBC = apply_DBC
        self._rhs = None

    def rhs(self) -> np.ndarray:
        if self._rhs is None:
            f = self.assembler.rhs(self.body_force, self.tractions)
            if self.apply_DBC:
                f[self.dirichlet_dofs] = 0.0
            self._rhs = f
        return self._rhs

    def value_unweighted(self, x):
        return -float(np.dot(self.rhs(), x))

    def first_derivative_unweighted(self, x):
        return -self.rhs().copy()

    def second_derivative_unweighted(self, x):
        n = len(x)
        return sp.csr_matrix((n, n))
