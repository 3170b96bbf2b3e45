"""Material parametrizations: per-body broadcast and engineering constants."""

import numpy as np

from openadjoint.core.exceptions import DomainError
from openadjoint.mesh.mesh import Mesh
from openadjoint.solver.parametrization.parametrization import Parametrization


class PerBody2PerElem(Parametrization):
    """Broadcast one value per body to every element of that body.

    The input holds ``k`` fields of one value per body (body order follows the
    sorted body ids), the output ``k`` fields of one value per element, e.g.
    ``[lambda_b...]`` + ``[mu_b...]`` to ``[lambda_e...]`` + ``[mu_e...]``.
    """

    def __init__(self, mesh: Mesh):
        self.bodies = mesh.body_list()
        self.element_body = np.searchsorted(self.bodies, mesh.body_ids)
        self.n_elements = mesh.n_elements

    def _fields(self, n, per):
        if n % per != 0:
            raise DomainError(f"Vector of size {n} is not a multiple of {per}")
        return n // per

    def size(self, x_size):
        return self._fields(x_size, len(self.bodies)) * self.n_elements

    def eval(self, x):
        x = np.asarray(x, dtype=float)
        k = self._fields(len(x), len(self.bodies))
        return x.reshape(k, len(self.bodies))[:, self.element_body].ravel()

    def inverse_eval(self, y):
        y = np.asarray(y, dtype=float)
        k = self._fields(len(y), self.n_elements)
        Y = y.reshape(k, self.n_elements)
        X = np.zeros((k, len(self.bodies)))
        for b in range(len(self.bodies)):
            values = Y[:, self.element_body == b]
            X[:, b] = values.mean(axis=1)
            if not np.allclose(values, X[:, b:b + 1], rtol=1e-12, atol=0.0):
                raise DomainError(f"Values of body {self.bodies[b]} are not constant")
        return X.ravel()

    def apply_jacobian(self, grad, x):
        grad = np.asarray(grad, dtype=float)
        k = self._fields(len(grad), self.n_elements)
        G = grad.reshape(k, self.n_elements)
        out = np.zeros((k, len(self.bodies)))
        for i in range(k):
            np.add.at(out[i], self.element_body, G[i])
        return out.ravel()


class ENu2LambdaMu(Parametrization):
    """Young's modulus and Poisson ratio fields ``[E..., nu...]`` to plane-stress ``[lambda..., mu...]``."""

    def eval(self, x):
        x = np.asarray(x, dtype=float)
        n = len(x) // 2
        E, nu = x[:n], x[n:]
        return np.concatenate([E * nu / (1.0 - nu ** 2), E / (2.0 * (1.0 + nu))])

    def inverse_eval(self, y):
        y = np.asarray(y, dtype=float)
        n = len(y) // 2
        lam, mu = y[:n], y[n:]
        if np.any(mu <= 0) or np.any(lam + 2.0 * mu <= 0):
            raise DomainError("Lame parameters outside the admissible range")
        nu = lam / (lam + 2.0 * mu)
        E = 2.0 * mu * (1.0 + nu)
        return np.concatenate([E, nu])

    def apply_jacobian(self, grad, x):
        x = np.asarray(x, dtype=float)
        grad = np.asarray(grad, dtype=float)
        n = len(x) // 2
        E, nu = x[:n], x[n:]
        g_lam, g_mu = grad[:n], grad[n:]
        dlam_dE = nu / (1.0 - nu ** 2)
        dlam_dnu = E * (1.0 + nu ** 2) / (1.0 - nu ** 2) ** 2
        dmu_dE = 1.0 / (2.0 * (1.0 + nu))
        dmu_dnu = -E / (2.0 * (1.0 + nu) ** 2)
        return np.concatenate([g_lam * dlam_dE + g_mu * dmu_dE, g_lam * dlam_dnu + g_mu * dmu_dnu])
