"""
Lagged smoothed Coulomb friction.

Contact pairs, normal force magnitudes, closest-point coefficients and
tangents are frozen by :meth:`FrictionForm.init_lagging`; the remaining
dependence on ``x`` is through the tangential relative displacement
``s_k = T_k . (dp - (1 - a_k) da - a_k db)`` with ``d* = x - x_prev``.
"""

import logging
from typing import Dict, Optional

import numpy as np
import scipy.sparse as sp

from openadjoint.core.exceptions import InvalidStateError
from openadjoint.solver.forms.contact_form import ContactForm
from openadjoint.solver.forms.form import Form

# Configure logging
logger = logging.getLogger(__name__)


def f0_SF(y, eps):
    """Mollified ``|y|``: cubic below ``eps``, identity above."""
    return np.where(y < eps, -y ** 3 / (3.0 * eps ** 2) + y ** 2 / eps + eps / 3.0, y)


def f1_SF_over_y(y, eps):
    """``f0'(y) / y``, bounded at zero."""
    return np.where(y < eps, -y / eps ** 2 + 2.0 / eps, 1.0 / np.maximum(y, eps))


def f2_SF(y, eps):
    return np.where(y < eps, -2.0 * y / eps ** 2 + 2.0 / eps, 0.0)


class FrictionForm(Form):
    """``mu * sum_k lambda_k f0(|s_k|)`` with mollifier width ``epsv * dt``.

    Args:
        contact_form: Contact form providing the active set and normal forces
        epsv: Static/dynamic transition velocity
        mu: Friction coefficient
        dt: Time step
    """

    def __init__(self, contact_form: ContactForm, epsv: float, mu: float, dt: float):
        super().__init__()
        if epsv <= 0:
            raise ValueError(f"epsv must be positive, got {epsv}")
        self.contact_form = contact_form
        self.epsv = float(epsv)
        self.mu = float(mu)
        self.dt = float(dt)
        self.x_prev = None
        self._lagged = None

    @property
    def uses_lagging(self) -> bool:
        return True

    @property
    def epsilon(self) -> float:
        return self.epsv * self.dt

    def update_quantities(self, t, x):
        self.x_prev = np.array(x, dtype=float)

    def init(self, x):
        if self.x_prev is None:
            self.x_prev = np.array(x, dtype=float)

    def init_lagging(self, x):
        """Freeze the friction contact set at ``x``."""
        pairs, P, forces = self.contact_form.normal_forces(x)
        if len(pairs):
            e = P[:, 2] - P[:, 1]
            alpha = np.clip(np.einsum('ij,ij->i', P[:, 0] - P[:, 1], e) / np.einsum('ij,ij->i', e, e), 0.0, 1.0)
            n = P[:, 0] - (P[:, 1] + alpha[:, None] * e)
            n /= np.linalg.norm(n, axis=1)[:, None]
            tangents = np.stack([-n[:, 1], n[:, 0]], axis=1)
        else:
            alpha = np.zeros(0)
            tangents = np.zeros((0, 2))
        self._lagged = {'pairs': pairs, 'alpha': alpha, 'tangents': tangents, 'normal_forces': forces}
        logger.debug(f"Friction lagging with {len(pairs)} contacts")

    def get_lagged_quantities(self) -> Optional[Dict[str, np.ndarray]]:
        return None if self._lagged is None else {k: v.copy() for k, v in self._lagged.items()}

    def set_lagged_quantities(self, lagged: Dict[str, np.ndarray]) -> None:
        self._lagged = {k: np.array(v) for k, v in lagged.items()}

    def _jacobian(self, n_dof: int) -> sp.csr_matrix:
        """Sparse ``ds/dx`` of shape ``(n_contacts, ndof)``."""
        lagged = self._lagged
        pairs, alpha, T = lagged['pairs'], lagged['alpha'], lagged['tangents']
        n = len(pairs)
        coeff = np.stack([np.ones(n), -(1.0 - alpha), -alpha], axis=1)
        rows = np.repeat(np.arange(n), 6)
        cols = (2 * pairs[:, :, None] + np.arange(2)[None, None, :]).reshape(-1)
        vals = (coeff[:, :, None] * T[:, None, :]).reshape(-1)
        return sp.coo_matrix((vals, (rows, cols)), shape=(n, n_dof)).tocsr()

    def _tangential(self, x):
        if self._lagged is None:
            raise InvalidStateError("Friction evaluated before init_lagging froze its contact set")
        G = self._jacobian(len(x))
        x_prev = self.x_prev if self.x_prev is not None else np.zeros(len(x))
        return G, G @ (x - x_prev)

    def value_unweighted(self, x):
        if self.mu == 0:
            return 0.0
        G, s = self._tangential(x)
        forces = self._lagged['normal_forces']
        return self.mu * float(np.sum(forces * f0_SF(np.abs(s), self.epsilon)))

    def first_derivative_unweighted(self, x):
        if self.mu == 0:
            return np.zeros(len(x))
        G, s = self._tangential(x)
        forces = self._lagged['normal_forces']
        return self.mu * (G.T @ (forces * f1_SF_over_y(np.abs(s), self.epsilon) * s))

    def second_derivative_unweighted(self, x):
        if self.mu == 0:
            return sp.csr_matrix((len(x), len(x)))
        G, s = self._tangential(x)
        forces = self._lagged['normal_forces']
        D = sp.diags(self.mu * forces * f2_SF(np.abs(s), self.epsilon))
        return (G.T @ D @ G).tocsr()

    def unit_coefficient_gradient(self, x: np.ndarray) -> np.ndarray:
        """Gradient of the friction potential with ``mu = 1``."""
        G, s = self._tangential(x)
        forces = self._lagged['normal_forces']
        return G.T @ (forces * f1_SF_over_y(np.abs(s), self.epsilon) * s)
