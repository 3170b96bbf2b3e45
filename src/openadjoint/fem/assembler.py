"""
Global assembly of P1 element quantities.

Degrees of freedom are node-major: dof ``2 * v + k`` is component ``k`` of
vertex ``v``.
"""

import logging
from typing import Dict, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from openadjoint.core.exceptions import DegenerateGeometryError
from openadjoint.fem import elements
from openadjoint.mesh.mesh import Mesh

# Configure logging
logger = logging.getLogger(__name__)


class Assembler:
    """Scatter/gather between element kernels and global vectors and matrices."""

    def __init__(self, mesh: Mesh):
        self.mesh = mesh
        self._update_dof_maps()

    def _update_dof_maps(self) -> None:
        self.element_dofs = (2 * self.mesh.elements[:, :, None] + np.arange(2)[None, None, :]).reshape(-1, 6)
        rows = np.repeat(self.element_dofs, 6, axis=1).ravel()
        cols = np.tile(self.element_dofs, (1, 6)).ravel()
        self._rows, self._cols = rows, cols

    @property
    def ndof(self) -> int:
        return self.mesh.ndof

    def gather(self, u: np.ndarray) -> np.ndarray:
        """Element-local nodal values, shape ``(n_elements, 3, 2)``."""
        return np.asarray(u, dtype=float).reshape(-1, 2)[self.mesh.elements]

    def element_positions(self) -> np.ndarray:
        return self.mesh.vertices[self.mesh.elements]

    def scatter(self, local: np.ndarray) -> np.ndarray:
        """Sum element-local ``(n_elements, 3, 2)`` contributions into a global vector."""
        out = np.zeros(self.ndof)
        np.add.at(out, self.element_dofs.ravel(), np.asarray(local).reshape(-1))
        return out

    def scatter_matrix(self, local: np.ndarray) -> sp.csr_matrix:
        """Sum element ``(n_elements, 3, 2, 3, 2)`` blocks into a sparse matrix."""
        values = np.asarray(local).reshape(-1, 6, 6).ravel()
        return sp.coo_matrix((values, (self._rows, self._cols)), shape=(self.ndof, self.ndof)).tocsr()

    def check_rest_shape(self) -> np.ndarray:
        areas = self.mesh.signed_areas()
        if np.any(areas <= 0):
            raise DegenerateGeometryError(f"{int(np.sum(areas <= 0))} rest elements are inverted")
        return areas

    def check_deformation(self, u: np.ndarray, macro_strain: np.ndarray) -> None:
        """Raise if any deformed element is inverted."""
        X = self.element_positions()
        U = self.gather(u)
        Dm = np.stack([X[:, 1] - X[:, 0], X[:, 2] - X[:, 0]], axis=2)
        Ds = np.stack([U[:, 1] - U[:, 0], U[:, 2] - U[:, 0]], axis=2)
        F = np.eye(2)[None] + Ds @ np.linalg.inv(Dm) + macro_strain[None]
        J = F[:, 0, 0] * F[:, 1, 1] - F[:, 0, 1] * F[:, 1, 0]
        if np.any(J <= 0):
            raise DegenerateGeometryError(f"{int(np.sum(J <= 0))} elements are inverted")

    # Elasticity

    def elastic_energy(self, kernels, u, lam, mu, macro_strain) -> float:
        return float(np.sum(kernels.energy(self.gather(u), self.element_positions(), lam, mu, macro_strain)))

    def elastic_gradient(self, kernels, u, lam, mu, macro_strain) -> np.ndarray:
        return self.scatter(np.asarray(kernels.gradient(self.gather(u), self.element_positions(), lam, mu, macro_strain)))

    def elastic_hessian(self, kernels, u, lam, mu, macro_strain) -> sp.csr_matrix:
        return self.scatter_matrix(np.asarray(kernels.hessian(self.gather(u), self.element_positions(), lam, mu, macro_strain)))

    def elastic_shape_term(self, kernels, u, adjoint, lam, mu, macro_strain) -> np.ndarray:
        """``adjoint^T d(grad E)/dX`` as a vector over the flattened vertices."""
        term = kernels.shape_term(self.gather(u), self.element_positions(), lam, mu, macro_strain, self.gather(adjoint))
        return self.scatter(np.asarray(term))

    def elastic_material_term(self, kernels, u, adjoint, lam, mu, macro_strain) -> Tuple[np.ndarray, np.ndarray]:
        """Per-element ``adjoint^T d(grad E)/d(lambda, mu)``."""
        d_lam, d_mu = kernels.material_term(
            self.gather(u), self.element_positions(), lam, mu, macro_strain, self.gather(adjoint))
        return np.asarray(d_lam), np.asarray(d_mu)

    def elastic_macro_strain_term(self, kernels, u, adjoint, lam, mu, macro_strain) -> np.ndarray:
        term = kernels.macro_strain_term(
            self.gather(u), self.element_positions(), lam, mu, macro_strain, self.gather(adjoint))
        return np.asarray(term).sum(axis=0)

    # Mass

    def mass_matrix(self, density: np.ndarray) -> sp.csr_matrix:
        areas = self.mesh.signed_areas()
        local = (density * areas / 12.0)[:, None, None] * elements.MASS_PATTERN[None]
        blocks = np.einsum('eij,kl->eikjl', local, np.eye(2))
        return self.scatter_matrix(blocks)

    def mass_shape_term(self, a: np.ndarray, adjoint: np.ndarray, density: np.ndarray) -> np.ndarray:
        """``adjoint^T dM/dX a``."""
        term = elements.mass_shape_term(self.element_positions(), self.gather(a), self.gather(adjoint), density)
        return self.scatter(np.asarray(term))

    # External forces

    def rhs(self, body_force: np.ndarray, tractions: Dict[int, np.ndarray]) -> np.ndarray:
        """Consistent nodal forces of a constant body force and per-boundary tractions."""
        areas = self.mesh.signed_areas()
        local = np.broadcast_to((areas / 3.0)[:, None, None] * np.asarray(body_force)[None, None, :],
                                (self.mesh.n_elements, 3, 2))
        f = self.scatter(local)
        if tractions:
            f2 = f.reshape(-1, 2)
            _, lengths = self.mesh.edge_normals()
            for bid, t in tractions.items():
                mask = self.mesh.boundary_ids == bid
                for (a, b), length in zip(self.mesh.boundary_edges[mask], lengths[mask]):
                    f2[a] += 0.5 * length * np.asarray(t)
                    f2[b] += 0.5 * length * np.asarray(t)
        return f

    def rhs_shape_term(self, adjoint: np.ndarray, body_force: np.ndarray, tractions: Dict[int, np.ndarray]) -> np.ndarray:
        """``adjoint^T df/dX`` of :meth:`rhs`."""
        term = self.scatter(np.asarray(elements.body_shape_term(
            self.element_positions(), self.gather(adjoint), np.asarray(body_force, dtype=float))))
        if tractions:
            V = self.mesh.vertices
            L = np.asarray(adjoint).reshape(-1, 2)
            out = term.reshape(-1, 2)
            for bid, t in tractions.items():
                edges = self.mesh.boundary_edges[self.mesh.boundary_ids == bid]
                if len(edges) == 0:
                    continue
                t_arr = np.tile(np.asarray(t, dtype=float), (len(edges), 1))
                d_a, d_b = elements.traction_shape_term(
                    V[edges[:, 0]], V[edges[:, 1]], L[edges[:, 0]], L[edges[:, 1]], t_arr)
                np.add.at(out, edges[:, 0], np.asarray(d_a))
                np.add.at(out, edges[:, 1], np.asarray(d_b))
        return term

    def refresh(self, mesh: Optional[Mesh] = None) -> None:
        if mesh is not None:
            self.mesh = mesh
        self._update_dof_maps()
