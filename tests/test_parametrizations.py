"""Tests of the design-vector parametrizations and their pullbacks."""

import numpy as np
import pytest

from openadjoint.core.exceptions import ConfigurationError, DomainError
from openadjoint.solver.parametrization import (
    BoundedBiharmonicWeights,
    BSplineParametrization1DTo2D,
    CompositeParametrization,
    ENu2LambdaMu,
    ExponentialMap,
    LaplacianSmoothing,
    LinearFilter,
    PerBody2PerElem,
    PowerMap,
    SliceMap,
    VariableToBoundaryNodes,
    VariableToBoundaryNodesExclusive,
    VariableToInteriorNodes,
)

CUBIC_KNOTS = [0.0, 0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 1.0]


def check_jacobian(param, x, h=1e-6, rtol=1e-6, seed=0):
    """Compare ``g . J d`` from central differences with ``(J^T g) . d``."""
    rng = np.random.default_rng(seed)
    x = np.asarray(x, dtype=float)
    d = rng.uniform(-1.0, 1.0, len(x))
    g = rng.uniform(-1.0, 1.0, param.size(len(x)))
    numeric = g @ (param.eval(x + h * d) - param.eval(x - h * d)) / (2.0 * h)
    analytic = param.apply_jacobian(g, x) @ d
    assert analytic == pytest.approx(numeric, rel=rtol, abs=1e-10)


def test_exponential_map_on_a_segment():
    p = ExponentialMap(from_index=1, to_index=3)
    x = np.array([0.5, 0.0, np.log(2.0), -1.0])
    np.testing.assert_allclose(p.eval(x), [0.5, 1.0, 2.0, -1.0])
    np.testing.assert_allclose(p.inverse_eval(p.eval(x)), x)
    check_jacobian(p, x)
    with pytest.raises(DomainError):
        p.inverse_eval(np.array([1.0, -1.0, 1.0, 1.0]))


def test_power_map():
    p = PowerMap(3.0)
    x = np.array([0.2, 0.5, 1.0])
    np.testing.assert_allclose(p.eval(x), x ** 3)
    np.testing.assert_allclose(p.inverse_eval(p.eval(x)), x)
    check_jacobian(p, x)
    with pytest.raises(DomainError):
        PowerMap(0.0)


def test_slice_map():
    p = SliceMap(1, 3)
    x = np.array([1.0, 2.0, 3.0, 4.0])
    np.testing.assert_array_equal(p.eval(x), [2.0, 3.0])
    np.testing.assert_array_equal(p.apply_jacobian(np.array([5.0, 6.0]), x), [0.0, 5.0, 6.0, 0.0])
    np.testing.assert_array_equal(p.inverse_eval(np.array([2.0, 3.0])), [2.0, 3.0])
    with pytest.raises(DomainError):
        SliceMap(2, 5).eval(np.zeros(3))
    with pytest.raises(DomainError):
        SliceMap(3, 1)


def test_composite_applies_chain_rule():
    chain = CompositeParametrization([ExponentialMap(), PowerMap(2.0)])
    x = np.array([-0.3, 0.1, 0.4])
    np.testing.assert_allclose(chain.eval(x), np.exp(2.0 * x))
    np.testing.assert_allclose(chain.inverse_eval(chain.eval(x)), x)
    g = np.array([1.0, -2.0, 0.5])
    np.testing.assert_allclose(chain.apply_jacobian(g, x), 2.0 * np.exp(2.0 * x) * g)
    check_jacobian(chain, x)


def test_empty_composite_is_identity():
    chain = CompositeParametrization()
    x = np.array([1.0, 2.0])
    np.testing.assert_array_equal(chain.eval(x), x)
    np.testing.assert_array_equal(chain.apply_jacobian(x, x), x)
    np.testing.assert_array_equal(chain.get_output_indexing(x), [0, 1])


def test_e_nu_to_lame():
    p = ENu2LambdaMu()
    x = np.array([1e4, 2e4, 0.3, 0.45])
    y = p.eval(x)
    np.testing.assert_allclose(y[:2], x[:2] * x[2:] / (1.0 - x[2:] ** 2))
    np.testing.assert_allclose(y[2:], x[:2] / (2.0 * (1.0 + x[2:])))
    np.testing.assert_allclose(p.inverse_eval(y), x, rtol=1e-12)
    check_jacobian(p, x, h=1e-5)
    with pytest.raises(DomainError):
        p.inverse_eval(np.array([1.0, -1.0]))


def test_per_body_to_per_element(two_body_mesh):
    p = PerBody2PerElem(two_body_mesh)
    n = two_body_mesh.n_elements
    x = np.array([1.0, 2.0, 10.0, 20.0])
    y = p.eval(x)
    assert p.size(4) == 2 * n
    lower = two_body_mesh.body_ids == 1
    np.testing.assert_array_equal(y[:n][lower], 1.0)
    np.testing.assert_array_equal(y[:n][~lower], 2.0)
    np.testing.assert_array_equal(y[n:][lower], 10.0)
    np.testing.assert_allclose(p.inverse_eval(y), x)
    check_jacobian(p, x)

    y[0] += 1.0
    with pytest.raises(DomainError):
        p.inverse_eval(y)


def test_linear_filter(square_mesh):
    f = LinearFilter(square_mesh, radius=0.5)
    n = square_mesh.n_elements
    np.testing.assert_allclose(f.eval(np.full(n, 0.7)), 0.7)
    x = np.random.default_rng(1).uniform(0.0, 1.0, n)
    y = f.eval(x)
    assert y.min() >= x.min() and y.max() <= x.max()
    check_jacobian(f, x)
    with pytest.raises(DomainError):
        LinearFilter(square_mesh, radius=0.0)
    with pytest.raises(DomainError):
        f.eval(np.zeros(n + 1))


def test_laplacian_smoothing(cantilever):
    mesh = cantilever().mesh
    nodes = mesh.ordered_boundary_nodes([4])
    p = LaplacianSmoothing(mesh, nodes, alpha=0.5, boundary_only=True)
    x = mesh.vertices[nodes].ravel() + 0.01 * np.random.default_rng(2).normal(size=2 * len(nodes))
    np.testing.assert_allclose(p.inverse_eval(p.eval(x)), x)
    # the smoothing keeps translations
    shift = np.tile([0.3, -0.1], len(nodes))
    np.testing.assert_allclose(p.eval(shift), shift)
    check_jacobian(p, x)
    with pytest.raises(DomainError):
        p.eval(np.zeros(3))


def test_clamped_bspline_interpolates_ends():
    control = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, -1.0], [3.0, 0.0]])
    p = BSplineParametrization1DTo2D(control, CUBIC_KNOTS, num_vertices=7)
    assert p.degree == 3
    Y = p.eval(control.ravel()).reshape(-1, 2)
    assert Y.shape == (7, 2)
    np.testing.assert_allclose(Y[0], control[0], atol=1e-14)
    np.testing.assert_allclose(Y[-1], control[-1], atol=1e-14)
    np.testing.assert_allclose(p.inverse_eval(Y.ravel()), control.ravel(), atol=1e-10)
    check_jacobian(p, control.ravel())


def test_bspline_keeps_excluded_ends_fixed():
    control = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0]])
    p = BSplineParametrization1DTo2D(control, CUBIC_KNOTS, num_vertices=5, exclude_ends=True)
    x = np.array([1.0, 0.5, 2.0, -0.5])
    assert p.size(4) == 10
    Y = p.eval(x).reshape(-1, 2)
    np.testing.assert_allclose(Y[0], [0.0, 0.0], atol=1e-14)
    np.testing.assert_allclose(Y[-1], [3.0, 0.0], atol=1e-14)
    np.testing.assert_allclose(p.inverse_eval(Y.ravel()), x, atol=1e-10)
    with pytest.raises(DomainError):
        p.eval(control.ravel())


def test_periodic_bspline():
    control = np.array([[1.0, 0.0], [0.0, 1.0], [-1.0, 0.0], [0.0, -1.0]])
    knots = np.arange(9, dtype=float)
    p = BSplineParametrization1DTo2D(control, knots, num_vertices=8, periodic=True)
    assert p.degree == 2
    Y = p.eval(control.ravel()).reshape(-1, 2)
    # uniform samples weigh every control point equally
    np.testing.assert_allclose(Y.mean(axis=0), control.mean(axis=0), atol=1e-14)
    same = np.tile([0.5, 0.25], 4)
    np.testing.assert_allclose(p.eval(same).reshape(-1, 2), np.tile([0.5, 0.25], (8, 1)))
    check_jacobian(p, control.ravel())


def test_bspline_rejects_bad_knots():
    control = np.zeros((4, 2))
    with pytest.raises(ConfigurationError):
        BSplineParametrization1DTo2D(control, [0.0, 0.0, 1.0, 1.0], num_vertices=5)
    with pytest.raises(ConfigurationError):
        BSplineParametrization1DTo2D(control, np.arange(8, dtype=float), num_vertices=5, periodic=True)
    with pytest.raises(ConfigurationError):
        BSplineParametrization1DTo2D(control, np.arange(9, dtype=float), num_vertices=5, periodic=True,
                                     exclude_ends=True)


def test_bounded_biharmonic_weights(cantilever):
    state = cantilever()
    p = BoundedBiharmonicWeights(3, state, [4], num_vertices=5)
    W = p.weights
    assert W.shape == (5, 3)
    assert np.all(W >= 0.0) and np.all(W <= 1.0 + 1e-12)
    np.testing.assert_allclose(W.sum(axis=1), 1.0)

    handles = p.handle_positions(state.mesh.vertices)
    np.testing.assert_allclose(p.eval(handles).reshape(-1, 2)[p.handles], handles.reshape(-1, 2))
    np.testing.assert_allclose(p.inverse_eval(p.eval(handles)), handles, atol=1e-12)
    check_jacobian(p, handles)

    with pytest.raises(DomainError):
        BoundedBiharmonicWeights(3, state, [4], num_vertices=6)
    with pytest.raises(ConfigurationError):
        BoundedBiharmonicWeights(1, state, [4])


def test_node_selectors(cantilever):
    state = cantilever()
    mesh = state.mesh

    top = VariableToBoundaryNodes([], state, [4])
    np.testing.assert_array_equal(top.node_ids, [14, 13, 12, 11, 10])
    x = top.current_values()
    np.testing.assert_array_equal(top.get_output_indexing(x)[:4], [28, 29, 26, 27])
    np.testing.assert_array_equal(mesh.vertices.ravel()[top.get_output_indexing(x)], x)
    with pytest.raises(DomainError):
        top.get_output_indexing(x[:-2])

    exclusive = VariableToBoundaryNodesExclusive([], state, [1])
    assert len(exclusive.node_ids) == 9
    assert not np.isin(mesh.boundary_nodes([1]), exclusive.node_ids).any()

    interior = VariableToInteriorNodes([], state)
    np.testing.assert_array_equal(interior.node_ids, [6, 7, 8])


def image_of(name, cantilever, two_body_mesh):
    """A parametrization and a point ``y`` in its range."""
    if name == "exp":
        return ExponentialMap(), np.array([0.5, 1.0, 2.0, 7.5])
    if name == "power":
        return PowerMap(3.0), np.array([0.008, 0.125, 1.0, 2.5])
    if name == "e-nu":
        p = ENu2LambdaMu()
        return p, p.eval(np.array([1e4, 2e4, 0.3, 0.45]))
    if name == "per-body":
        p = PerBody2PerElem(two_body_mesh)
        return p, p.eval(np.array([1.0, 2.0, 10.0, 20.0]))
    mesh = cantilever().mesh
    nodes = mesh.ordered_boundary_nodes([4])
    if name == "laplacian":
        p = LaplacianSmoothing(mesh, nodes, alpha=0.5, boundary_only=True)
        return p, mesh.vertices[nodes].ravel() + 0.01 * np.random.default_rng(3).normal(size=2 * len(nodes))
    if name == "bspline":
        control = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, -1.0], [3.0, 0.0]])
        p = BSplineParametrization1DTo2D(control, CUBIC_KNOTS, num_vertices=7)
        return p, p.eval(control.ravel())
    state = cantilever()
    p = BoundedBiharmonicWeights(3, state, [4], num_vertices=5)
    return p, p.eval(p.handle_positions(state.mesh.vertices) + 0.05)


@pytest.mark.parametrize("name", ["exp", "power", "e-nu", "per-body", "laplacian", "bspline", "bbw"])
def test_eval_recovers_inverse_image(name, cantilever, two_body_mesh):
    p, y = image_of(name, cantilever, two_body_mesh)
    np.testing.assert_allclose(p.eval(p.inverse_eval(y)), y, rtol=1e-12, atol=1e-12)
