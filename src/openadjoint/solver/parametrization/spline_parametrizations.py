"""
Coarse-to-fine geometry maps: B-spline curves and bounded biharmonic weights.

Both maps are linear in their control coordinates, ``Y = B C`` with a fixed
basis matrix ``B``, so the pullback is ``B^T G`` and the inverse a least
squares fit.
"""

import logging
from typing import Iterable, Optional

import numpy as np
from scipy.interpolate import BSpline
from scipy.optimize import lsq_linear

from openadjoint.core.exceptions import ConfigurationError, DomainError
from openadjoint.solver.parametrization.parametrization import Parametrization

# Configure logging
logger = logging.getLogger(__name__)


def bspline_basis(knots: np.ndarray, degree: int, n_coefficients: int, params: np.ndarray) -> np.ndarray:
    """Dense ``(len(params), n_coefficients)`` matrix of B-spline basis values."""
    spline = BSpline(knots, np.eye(n_coefficients), degree, extrapolate=True)
    return np.asarray(spline(params))


class BSplineParametrization1DTo2D(Parametrization):
    """Planar B-spline curve sampled at uniformly spaced parameters.

    The design vector holds the control points row by row (``[x0, y0, x1, ...]``);
    the output holds the sampled points in the same layout.

    Args:
        initial_control_points: Control polygon (n, 2)
        knots: Knot vector; clamped curves use ``n + degree + 1`` knots,
            periodic curves ``n + 2 degree + 1`` uniformly spaced knots
        num_vertices: Number of curve samples
        exclude_ends: Keep the first and last control points fixed (open curves only)
        periodic: Closed curve; samples exclude the duplicated end point
    """

    def __init__(
        self,
        initial_control_points: np.ndarray,
        knots: np.ndarray,
        num_vertices: int,
        exclude_ends: bool = False,
        periodic: bool = False,
    ):
        control_points = np.asarray(initial_control_points, dtype=float)
        knots = np.asarray(knots, dtype=float)
        n = len(control_points)
        if control_points.ndim != 2 or control_points.shape[1] != 2:
            raise ConfigurationError(f"Control points must have shape (n, 2), got {control_points.shape}")
        if periodic and exclude_ends:
            raise ConfigurationError("exclude_ends is meaningless for a periodic curve")

        if periodic:
            degree2 = len(knots) - n - 1
            if degree2 <= 0 or degree2 % 2:
                raise ConfigurationError(f"Periodic curve with {n} control points cannot use {len(knots)} knots")
            degree = degree2 // 2
            params = np.linspace(knots[degree], knots[n + degree], num_vertices, endpoint=False)
            wrapped = bspline_basis(knots, degree, n + degree, params)
            basis = wrapped[:, :n].copy()
            basis[:, :degree] += wrapped[:, n:]
        else:
            degree = len(knots) - n - 1
            if degree < 1:
                raise ConfigurationError(f"Open curve with {n} control points cannot use {len(knots)} knots")
            params = np.linspace(knots[degree], knots[n], num_vertices)
            basis = bspline_basis(knots, degree, n, params)

        self.degree = degree
        self.knots = knots
        self.periodic = periodic
        self.exclude_ends = exclude_ends
        self.num_vertices = num_vertices
        self.initial_control_points = control_points

        free = np.arange(n)
        if exclude_ends:
            free = free[1:-1]
        fixed = np.setdiff1d(np.arange(n), free)
        self.free = free
        self.free_basis = basis[:, free]
        self.fixed_part = basis[:, fixed] @ control_points[fixed]
        logger.debug(f"B-spline of degree {degree} with {len(free)} free control points")

    def size(self, x_size):
        if x_size != 2 * len(self.free):
            raise DomainError(f"B-spline expects {2 * len(self.free)} control coordinates, got {x_size}")
        return 2 * self.num_vertices

    def eval(self, x):
        self.size(len(x))
        C = np.asarray(x, dtype=float).reshape(-1, 2)
        return (self.free_basis @ C + self.fixed_part).ravel()

    def inverse_eval(self, y):
        Y = np.asarray(y, dtype=float).reshape(-1, 2)
        if len(Y) != self.num_vertices:
            raise DomainError(f"B-spline inverse expects {self.num_vertices} points, got {len(Y)}")
        C, *_ = np.linalg.lstsq(self.free_basis, Y - self.fixed_part, rcond=None)
        return C.ravel()

    def apply_jacobian(self, grad, x):
        G = np.asarray(grad, dtype=float).reshape(-1, 2)
        return (self.free_basis.T @ G).ravel()


class BoundedBiharmonicWeights(Parametrization):
    """Handle positions to boundary-curve positions through bounded biharmonic weights.

    For every handle ``h`` the weights minimize ``|L w|^2`` on the curve graph
    with ``w = 1`` at ``h``, ``w = 0`` at the other handles and ``0 <= w <= 1``;
    the rows are then normalized to a partition of unity.

    Args:
        num_control_vertices: Number of handles, evenly spaced along the curve
        state: State whose mesh holds the curve
        surface_ids: Boundary ids forming the curve
        num_vertices: Expected number of curve vertices (checked when given)
    """

    def __init__(self, num_control_vertices: int, state, surface_ids: Iterable[int],
                 num_vertices: Optional[int] = None):
        mesh = state.mesh
        nodes = mesh.ordered_boundary_nodes(list(surface_ids))
        n = len(nodes)
        if num_vertices is not None and num_vertices != n:
            raise DomainError(f"Curve has {n} vertices, expected {num_vertices}")
        if not 2 <= num_control_vertices <= n:
            raise ConfigurationError(f"Need between 2 and {n} handles, got {num_control_vertices}")

        first, last = nodes[0], nodes[-1]
        closed = any((a == last and b == first) for a, b in mesh.boundary_edges)

        # uniform graph Laplacian of the (open or closed) chain
        L = np.zeros((n, n))
        for i in range(n - 1 + int(closed)):
            j = (i + 1) % n
            L[i, i] += 1.0
            L[j, j] += 1.0
            L[i, j] -= 1.0
            L[j, i] -= 1.0

        if closed:
            handles = (np.arange(num_control_vertices) * n) // num_control_vertices
        else:
            handles = np.round(np.linspace(0, n - 1, num_control_vertices)).astype(int)
        free = np.setdiff1d(np.arange(n), handles)

        W = np.zeros((n, num_control_vertices))
        for h in range(num_control_vertices):
            target = np.zeros(num_control_vertices)
            target[h] = 1.0
            W[handles, h] = target
            if len(free):
                result = lsq_linear(L[:, free], -L[:, handles] @ target, bounds=(0.0, 1.0), method='bvls')
                W[free, h] = result.x
        W /= np.maximum(W.sum(axis=1, keepdims=True), 1e-12)

        self.nodes = nodes
        self.handles = handles
        self.weights = W
        self.num_vertices = n

    def handle_positions(self, vertices: np.ndarray) -> np.ndarray:
        return np.asarray(vertices)[self.nodes[self.handles]].ravel()

    def size(self, x_size):
        if x_size != 2 * self.weights.shape[1]:
            raise DomainError(f"Expected {2 * self.weights.shape[1]} handle coordinates, got {x_size}")
        return 2 * self.num_vertices

    def eval(self, x):
        self.size(len(x))
        return (self.weights @ np.asarray(x, dtype=float).reshape(-1, 2)).ravel()

    def inverse_eval(self, y):
        Y = np.asarray(y, dtype=float).reshape(-1, 2)
        if len(Y) != self.num_vertices:
            raise DomainError(f"Expected {self.num_vertices} curve points, got {len(Y)}")
        H, *_ = np.linalg.lstsq(self.weights, Y, rcond=None)
        return H.ravel()

    def apply_jacobian(self, grad, x):
        return (self.weights.T @ np.asarray(grad, dtype=float).reshape(-1, 2)).ravel()
