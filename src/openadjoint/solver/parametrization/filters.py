"""Linear smoothing filters for densities and geometry."""

import logging
from typing import Optional

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import factorized
from scipy.spatial import cKDTree

from openadjoint.core.exceptions import DomainError
from openadjoint.mesh.mesh import Mesh
from openadjoint.solver.parametrization.parametrization import Parametrization

# Configure logging
logger = logging.getLogger(__name__)


class LinearFilter(Parametrization):
    """Cone-weighted average of element values within ``radius`` of each centroid.

    ``y_i = sum_j w_ij x_j / sum_j w_ij`` with ``w_ij = max(0, radius - |c_i - c_j|)``.
    """

    def __init__(self, mesh: Mesh, radius: float):
        if radius <= 0:
            raise DomainError(f"Filter radius must be positive, got {radius}")
        centroids = mesh.centroids()
        tree = cKDTree(centroids)
        neighbors = tree.query_ball_point(centroids, radius)
        rows = np.concatenate([np.full(len(nb), i) for i, nb in enumerate(neighbors)])
        cols = np.concatenate([np.asarray(nb, dtype=int) for nb in neighbors])
        weights = radius - np.linalg.norm(centroids[rows] - centroids[cols], axis=1)
        W = sp.coo_matrix((weights, (rows, cols)), shape=(mesh.n_elements, mesh.n_elements)).tocsr()
        row_sums = np.asarray(W.sum(axis=1)).ravel()
        self.matrix = sp.diags(1.0 / row_sums) @ W
        self.radius = radius
        logger.debug(f"Linear filter with {self.matrix.nnz} weights (radius {radius})")

    def size(self, x_size):
        if x_size != self.matrix.shape[1]:
            raise DomainError(f"LinearFilter expects {self.matrix.shape[1]} values, got {x_size}")
        return self.matrix.shape[0]

    def eval(self, x):
        self.size(len(x))
        return self.matrix @ np.asarray(x, dtype=float)

    def apply_jacobian(self, grad, x):
        return self.matrix.T @ np.asarray(grad, dtype=float)


class LaplacianSmoothing(Parametrization):
    """Graph-Laplacian smoothing ``y = (I + alpha L)^{-1} x`` applied per coordinate.

    Args:
        mesh: Mesh providing the vertex graph
        node_ids: Restrict the graph to these vertices (input and output follow this order)
        alpha: Smoothing strength
        boundary_only: Use boundary edges only
    """

    def __init__(self, mesh: Mesh, node_ids: Optional[np.ndarray] = None, alpha: float = 1.0,
                 boundary_only: bool = False):
        if alpha < 0:
            raise DomainError(f"Smoothing strength must be non-negative, got {alpha}")
        A = mesh.vertex_adjacency(node_ids, boundary_only=boundary_only)
        L = sp.diags(np.asarray(A.sum(axis=1)).ravel()) - A
        self.n_nodes = A.shape[0]
        self.operator = (sp.identity(self.n_nodes) + alpha * L).tocsc()
        self._solve = factorized(self.operator)
        self.alpha = alpha

    def _columns(self, v):
        v = np.asarray(v, dtype=float)
        if len(v) != 2 * self.n_nodes:
            raise DomainError(f"LaplacianSmoothing expects {2 * self.n_nodes} values, got {len(v)}")
        return v.reshape(-1, 2)

    def eval(self, x):
        X = self._columns(x)
        return np.stack([self._solve(X[:, k]) for k in range(2)], axis=1).ravel()

    def inverse_eval(self, y):
        Y = self._columns(y)
        return (self.operator @ Y).ravel()

    def apply_jacobian(self, grad, x):
        # the operator is symmetric
        return self.eval(grad)
