"""
Differentiable P1 triangle kernels.

Element energies are written once as pure functions of the nodal
displacements ``U (3, 2)``, the rest positions ``X (3, 2)`` and the material
parameters. Gradients, Hessians and the mixed derivatives needed by the
adjoint (with respect to ``X``, the Lame parameters and the macro strain) are
derived automatically with jax and vectorized over elements with ``vmap``.
"""

from functools import lru_cache
from typing import Callable, Dict

import numpy as np
import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

# Degree-2 triangle quadrature in barycentric coordinates (weights sum to one)
TRIANGLE_QUADRATURE = np.array([
    [2.0 / 3.0, 1.0 / 6.0, 1.0 / 6.0],
    [1.0 / 6.0, 2.0 / 3.0, 1.0 / 6.0],
    [1.0 / 6.0, 1.0 / 6.0, 2.0 / 3.0],
])
TRIANGLE_WEIGHTS = np.full(3, 1.0 / 3.0)

# Two-point Gauss rule on [0, 1] (weights sum to one)
EDGE_POINTS = np.array([0.5 - 0.5 / np.sqrt(3.0), 0.5 + 0.5 / np.sqrt(3.0)])
EDGE_WEIGHTS = np.array([0.5, 0.5])

# Consistent P1 mass pattern, scaled by area / 12
MASS_PATTERN = np.array([[2.0, 1.0, 1.0], [1.0, 2.0, 1.0], [1.0, 1.0, 2.0]])


def edge_matrix(X):
    return jnp.stack([X[1] - X[0], X[2] - X[0]], axis=1)


def det2(A):
    return A[0, 0] * A[1, 1] - A[0, 1] * A[1, 0]


def inv2(A):
    return jnp.array([[A[1, 1], -A[0, 1]], [-A[1, 0], A[0, 0]]]) / det2(A)


def signed_area(X):
    return 0.5 * det2(edge_matrix(X))


def displacement_gradient(U, X):
    """Constant gradient of the P1 interpolant of ``U`` over the triangle ``X``."""
    return edge_matrix(U) @ inv2(edge_matrix(X))


def linear_elasticity_density(grad_u, lam, mu):
    """Small-strain energy density ``mu eps:eps + lam/2 tr(eps)^2``."""
    eps = 0.5 * (grad_u + grad_u.T)
    tr = jnp.trace(eps)
    return mu * jnp.sum(eps * eps) + 0.5 * lam * tr ** 2


def neo_hookean_density(grad_u, lam, mu):
    """Compressible Neo-Hookean density with ``F = I + grad_u``."""
    F = jnp.eye(2) + grad_u
    log_J = jnp.log(det2(F))
    return 0.5 * mu * (jnp.sum(F * F) - 2.0) - mu * log_J + 0.5 * lam * log_J ** 2


ENERGY_DENSITIES: Dict[str, Callable] = {
    'LinearElasticity': linear_elasticity_density,
    'NeoHookean': neo_hookean_density,
}


def make_element_energy(density: Callable) -> Callable:
    def energy(U, X, lam, mu, E):
        grad_u = displacement_gradient(U, X) + E
        return signed_area(X) * density(grad_u, lam, mu)
    return energy


class ElasticKernels:
    """Vectorized energy, gradient, Hessian and adjoint kernels of one material."""

    def __init__(self, density: Callable):
        energy = make_element_energy(density)
        axes = (0, 0, 0, 0, None)

        def adjoint_product(U, X, lam, mu, E, L):
            return jnp.vdot(jax.grad(energy)(U, X, lam, mu, E), L)

        adjoint_axes = (0, 0, 0, 0, None, 0)

        self.density = density
        self.energy = jax.jit(jax.vmap(energy, in_axes=axes))
        self.gradient = jax.jit(jax.vmap(jax.grad(energy), in_axes=axes))
        self.hessian = jax.jit(jax.vmap(jax.hessian(energy), in_axes=axes))
        self.shape_term = jax.jit(jax.vmap(jax.grad(adjoint_product, argnums=1), in_axes=adjoint_axes))
        self.material_term = jax.jit(jax.vmap(jax.grad(adjoint_product, argnums=(2, 3)), in_axes=adjoint_axes))
        self.macro_strain_term = jax.jit(jax.vmap(jax.grad(adjoint_product, argnums=4), in_axes=adjoint_axes))
        self.stress = jax.jit(jax.vmap(jax.grad(density), in_axes=(0, 0, 0)))


@lru_cache(maxsize=None)
def get_elastic_kernels(material: str) -> ElasticKernels:
    if material not in ENERGY_DENSITIES:
        raise KeyError(material)
    return ElasticKernels(ENERGY_DENSITIES[material])


def _mass_product(X, A, L, rho):
    # L^T M_e A with M_e = rho * area / 12 * (pattern kron I2)
    return rho * signed_area(X) / 12.0 * jnp.einsum('ij,ik,jk->', MASS_PATTERN, L, A)


def _body_work(X, L, b):
    return signed_area(X) / 3.0 * jnp.sum(L @ b)


def _traction_work(Xa, Xb, La, Lb, t):
    return 0.5 * jnp.linalg.norm(Xb - Xa) * jnp.dot(La + Lb, t)


mass_shape_term = jax.jit(jax.vmap(jax.grad(_mass_product, argnums=0), in_axes=(0, 0, 0, 0)))
body_shape_term = jax.jit(jax.vmap(jax.grad(_body_work, argnums=0), in_axes=(0, 0, None)))
traction_shape_term = jax.jit(jax.vmap(jax.grad(_traction_work, argnums=(0, 1)), in_axes=(0, 0, 0, 0, 0)))
