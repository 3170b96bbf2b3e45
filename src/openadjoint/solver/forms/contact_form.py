"""
Barrier contact between boundary vertices and boundary edges.

The barrier acts on squared point-edge distances ``d`` with the threshold
``dhat^2``::

    b(d) = -(d - dhat^2)^2 log(d / dhat^2)    for d < dhat^2, else 0

Pair energies are differentiated with jax. Candidate arrays are padded to
power-of-two lengths so the compiled kernels are reused across contact sets.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp
from scipy.spatial import cKDTree
import jax
import jax.numpy as jnp

from openadjoint.core.exceptions import DegenerateGeometryError
from openadjoint.mesh.mesh import Mesh
from openadjoint.solver.forms.form import Form

# Configure logging
logger = logging.getLogger(__name__)


def barrier(d, dhat_sq):
    return -(d - dhat_sq) ** 2 * np.log(d / dhat_sq)


def barrier_first_derivative(d, dhat_sq):
    return (dhat_sq - d) * (2.0 * np.log(d / dhat_sq) - dhat_sq / d + 1.0)


def barrier_second_derivative(d, dhat_sq):
    return (dhat_sq / d + 2.0) * dhat_sq / d - 2.0 * np.log(d / dhat_sq) - 3.0


def point_edge_distance_sq(P: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Squared distances and clamped edge parameters of ``P[:, 0]`` to edges ``P[:, 1] P[:, 2]``."""
    p, a, b = P[:, 0], P[:, 1], P[:, 2]
    e = b - a
    t = np.clip(np.einsum('ij,ij->i', p - a, e) / np.einsum('ij,ij->i', e, e), 0.0, 1.0)
    diff = p - (a + t[:, None] * e)
    return np.einsum('ij,ij->i', diff, diff), t


def _distance_sq(P):
    e = P[2] - P[1]
    t = jnp.clip(jnp.dot(P[0] - P[1], e) / jnp.dot(e, e), 0.0, 1.0)
    diff = P[0] - (P[1] + t * e)
    return jnp.dot(diff, diff)


def _pair_barrier(P, dhat_sq):
    d = _distance_sq(P)
    return -(d - dhat_sq) ** 2 * jnp.log(d / dhat_sq)


_barrier_value = jax.jit(jax.vmap(_pair_barrier, in_axes=(0, None)))
_barrier_gradient = jax.jit(jax.vmap(jax.grad(_pair_barrier), in_axes=(0, None)))
_barrier_hessian = jax.jit(jax.vmap(jax.hessian(_pair_barrier), in_axes=(0, None)))


def _padded(P: np.ndarray, dhat_sq: float) -> Tuple[np.ndarray, int]:
    n = len(P)
    size = 1 << max(int(np.ceil(np.log2(max(n, 1)))), 0)
    if size == n:
        return P, n
    # padding pairs sit at a fixed nonzero distance and are masked out afterwards
    h = np.sqrt(2.0 * dhat_sq)
    filler = np.array([[0.5, h], [0.0, 0.0], [1.0, 0.0]])
    return np.concatenate([P, np.broadcast_to(filler, (size - n, 3, 2))]), n


def pair_barrier_values(P: np.ndarray, dhat_sq: float) -> np.ndarray:
    Pp, n = _padded(P, dhat_sq)
    return np.asarray(_barrier_value(Pp, dhat_sq))[:n]


def pair_barrier_gradients(P: np.ndarray, dhat_sq: float) -> np.ndarray:
    Pp, n = _padded(P, dhat_sq)
    return np.asarray(_barrier_gradient(Pp, dhat_sq))[:n]


def pair_barrier_hessians(P: np.ndarray, dhat_sq: float) -> np.ndarray:
    Pp, n = _padded(P, dhat_sq)
    return np.asarray(_barrier_hessian(Pp, dhat_sq))[:n]


def scatter_pairs(pairs: np.ndarray, local: np.ndarray, ndof: int) -> np.ndarray:
    """Sum per-pair ``(n, 3, 2)`` vectors into a global dof vector."""
    out = np.zeros(ndof)
    dofs = (2 * pairs[:, :, None] + np.arange(2)[None, None, :]).reshape(-1)
    np.add.at(out, dofs, local.reshape(-1))
    return out


def scatter_pair_matrices(pairs: np.ndarray, local: np.ndarray, ndof: int) -> sp.csr_matrix:
    """Sum per-pair ``(n, 3, 2, 3, 2)`` blocks into a sparse matrix."""
    if len(pairs) == 0:
        return sp.csr_matrix((ndof, ndof))
    dofs = (2 * pairs[:, :, None] + np.arange(2)[None, None, :]).reshape(-1, 6)
    rows = np.repeat(dofs, 6, axis=1).ravel()
    cols = np.tile(dofs, (1, 6)).ravel()
    return sp.coo_matrix((local.reshape(-1), (rows, cols)), shape=(ndof, ndof)).tocsr()


class CollisionMesh:
    """Boundary vertices and edges of a mesh used for proximity queries."""

    def __init__(self, mesh: Mesh, vertices: Optional[np.ndarray] = None):
        self.mesh = mesh
        self.edges = mesh.boundary_edges
        self.boundary_vertices = mesh.boundary_nodes() if vertices is None else np.asarray(vertices, dtype=int)

    def positions(self, x: np.ndarray) -> np.ndarray:
        return self.mesh.vertices + np.asarray(x).reshape(-1, 2)

    def candidates(self, V: np.ndarray, radius: float) -> np.ndarray:
        """Vertex-edge pairs ``(v, a, b)`` whose distance may be below ``radius``."""
        if len(self.edges) == 0 or len(self.boundary_vertices) == 0:
            return np.zeros((0, 3), dtype=int)
        tree = cKDTree(V[self.boundary_vertices])
        a, b = V[self.edges[:, 0]], V[self.edges[:, 1]]
        centers = 0.5 * (a + b)
        radii = 0.5 * np.linalg.norm(b - a, axis=1) + radius
        pairs = []
        for k, hits in enumerate(tree.query_ball_point(centers, radii)):
            ea, eb = self.edges[k]
            for i in hits:
                v = self.boundary_vertices[i]
                if v != ea and v != eb:
                    pairs.append((v, ea, eb))
        return np.array(pairs, dtype=int).reshape(-1, 3)

    def bbox_diagonal(self) -> float:
        V = self.mesh.vertices
        return float(np.linalg.norm(V.max(axis=0) - V.min(axis=0)))


def initial_barrier_stiffness(
    bbox_diagonal: float,
    dhat: float,
    average_mass: float,
    grad_energy: np.ndarray,
    grad_barrier: np.ndarray,
    min_barrier_stiffness_scale: float = 1e11,
) -> Tuple[float, float]:
    """Adaptive barrier stiffness balancing the barrier against the other forces.

    Returns:
        Tuple of the stiffness and its upper bound
    """
    dhat_sq = dhat ** 2
    d0 = (1e-8 * bbox_diagonal) ** 2
    d0 = min(d0, 0.5 * dhat_sq)
    min_stiffness = 4.0 * d0 * barrier_second_derivative(d0, dhat_sq)
    min_stiffness = min_barrier_stiffness_scale * average_mass / min_stiffness
    max_stiffness = 100.0 * min_stiffness

    denom = float(np.dot(grad_barrier, grad_barrier))
    if denom <= 0.0:
        return min_stiffness, max_stiffness
    stiffness = -float(np.dot(grad_barrier, grad_energy)) / denom
    return float(np.clip(stiffness, min_stiffness, max_stiffness)), max_stiffness


class ContactForm(Form):
    """Barrier potential ``kappa * sum_k b(d_k)`` over active vertex-edge pairs.

    Args:
        mesh: Simulated mesh (rest positions are read at every evaluation)
        dhat: Activation distance
        barrier_stiffness: Stiffness ``kappa``
        use_adaptive_barrier_stiffness: Recompute ``kappa`` from the other forces
        is_time_dependent: Contact set changes over time steps
        ccd_tolerance: Smallest advancement of the collision check
        ccd_max_iterations: Iteration cap of the collision check
    """

    def __init__(
        self,
        mesh: Mesh,
        dhat: float,
        barrier_stiffness: float = 1e7,
        use_adaptive_barrier_stiffness: bool = False,
        is_time_dependent: bool = False,
        ccd_tolerance: float = 1e-6,
        ccd_max_iterations: int = 100,
    ):
        super().__init__()
        if dhat <= 0:
            raise ValueError(f"dhat must be positive, got {dhat}")
        self.collision_mesh = CollisionMesh(mesh)
        self.dhat = float(dhat)
        self.barrier_stiffness = float(barrier_stiffness)
        self.max_barrier_stiffness = float(barrier_stiffness)
        self.use_adaptive_barrier_stiffness = use_adaptive_barrier_stiffness
        self.is_time_dependent = is_time_dependent
        self.ccd_tolerance = ccd_tolerance
        self.ccd_max_iterations = ccd_max_iterations
        self.ccd_separation = 0.1
        self._cache_x = None
        self._cache = None

    @property
    def dhat_sq(self) -> float:
        return self.dhat ** 2

    @property
    def ndof(self) -> int:
        return self.collision_mesh.mesh.ndof

    def init(self, x):
        self._cache_x = None

    def active_set(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Active pairs, their coordinates ``(n, 3, 2)`` and squared distances.

        Raises:
            DegenerateGeometryError: If a pair touches or interpenetrates
        """
        if self._cache_x is not None and np.array_equal(self._cache_x, x):
            return self._cache
        V = self.collision_mesh.positions(x)
        pairs = self.collision_mesh.candidates(V, self.dhat)
        P = V[pairs]
        d, _ = point_edge_distance_sq(P) if len(pairs) else (np.zeros(0), None)
        if np.any(d <= 0):
            raise DegenerateGeometryError("Zero distance between boundary vertex and edge")
        keep = d < self.dhat_sq
        self._cache_x = np.array(x, copy=True)
        self._cache = (pairs[keep], P[keep], d[keep])
        return self._cache

    def value_unweighted(self, x):
        _, P, _ = self.active_set(x)
        if len(P) == 0:
            return 0.0
        return self.barrier_stiffness * float(np.sum(pair_barrier_values(P, self.dhat_sq)))

    def first_derivative_unweighted(self, x):
        pairs, P, _ = self.active_set(x)
        if len(P) == 0:
            return np.zeros(len(x))
        return self.barrier_stiffness * scatter_pairs(pairs, pair_barrier_gradients(P, self.dhat_sq), len(x))

    def second_derivative_unweighted(self, x):
        pairs, P, _ = self.active_set(x)
        if len(P) == 0:
            return sp.csr_matrix((len(x), len(x)))
        return self.barrier_stiffness * scatter_pair_matrices(pairs, pair_barrier_hessians(P, self.dhat_sq), len(x))

    def barrier_potential_gradient(self, x: np.ndarray) -> np.ndarray:
        """Gradient of the barrier potential without the stiffness."""
        pairs, P, _ = self.active_set(x)
        if len(P) == 0:
            return np.zeros(len(x))
        return scatter_pairs(pairs, pair_barrier_gradients(P, self.dhat_sq), len(x))

    def initialize_barrier_stiffness(self, x: np.ndarray, grad_energy: np.ndarray, average_mass: float) -> None:
        if not self.use_adaptive_barrier_stiffness:
            return
        self.barrier_stiffness, self.max_barrier_stiffness = initial_barrier_stiffness(
            self.collision_mesh.bbox_diagonal(), self.dhat, average_mass,
            grad_energy, self.barrier_potential_gradient(x))
        logger.debug(f"Adaptive barrier stiffness: {self.barrier_stiffness:.6g}")

    def normal_forces(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Active pairs with their contact force magnitudes ``-2 kappa b'(d) sqrt(d)``."""
        pairs, P, d = self.active_set(x)
        forces = -2.0 * self.barrier_stiffness * barrier_first_derivative(d, self.dhat_sq) * np.sqrt(d)
        return pairs, P, forces

    def is_step_valid(self, x0, x1):
        try:
            self.active_set(x1)
        except DegenerateGeometryError:
            return False
        return True

    def max_step_size(self, x0, x1):
        """Largest fraction of ``x1 - x0`` that keeps every pair separated.

        Conservative advancement: the distance of a vertex-edge pair shrinks at
        most by the largest relative endpoint displacement times the advance.
        """
        V0 = self.collision_mesh.positions(x0)
        D = self.collision_mesh.positions(x1) - V0
        max_disp = float(np.max(np.linalg.norm(D, axis=1))) if len(D) else 0.0
        if max_disp == 0.0:
            return 1.0
        pairs = self.collision_mesh.candidates(V0, 2.0 * max_disp + self.dhat)
        if len(pairs) == 0:
            return 1.0

        P0, dP = V0[pairs], D[pairs]
        speed = np.maximum(np.linalg.norm(dP[:, 0] - dP[:, 1], axis=1),
                           np.linalg.norm(dP[:, 0] - dP[:, 2], axis=1))
        d0 = np.sqrt(point_edge_distance_sq(P0)[0])
        separation = self.ccd_separation * d0

        t = np.zeros(len(pairs))
        done = speed <= 0.0
        t[done] = 1.0
        for _ in range(self.ccd_max_iterations):
            active = np.flatnonzero(~done)
            if len(active) == 0:
                break
            P = P0[active] + t[active, None, None] * dP[active]
            step = (np.sqrt(point_edge_distance_sq(P)[0]) - separation[active]) / speed[active]
            t_new = t[active] + np.maximum(step, 0.0)
            finished = (t_new >= 1.0) | (step <= self.ccd_tolerance)
            t[active] = np.minimum(t_new, 1.0)
            done[active[finished]] = True
        else:
            logger.debug("Collision check reached its iteration limit")

        return float(np.min(t))
