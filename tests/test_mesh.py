"""Tests of the triangle mesh and its meshio conversion."""

import numpy as np
import pytest

from openadjoint.core.exceptions import DegenerateGeometryError, DomainError
from openadjoint.mesh import BOTTOM_ID, LEFT_ID, RIGHT_ID, TOP_ID, Mesh


def test_rectangle_counts(square_mesh):
    assert square_mesh.n_vertices == 16
    assert square_mesh.n_elements == 18
    assert square_mesh.ndof == 32
    assert len(square_mesh.boundary_edges) == 12
    assert square_mesh.boundary_id_list() == [LEFT_ID, BOTTOM_ID, RIGHT_ID, TOP_ID]
    assert np.all(square_mesh.signed_areas() > 0)
    assert square_mesh.element_areas().sum() == pytest.approx(1.0)


def test_clockwise_triangles_are_reoriented():
    mesh = Mesh([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]], [[0, 2, 1]])
    assert mesh.signed_areas()[0] == pytest.approx(0.5)
    np.testing.assert_array_equal(mesh.elements[0], [0, 1, 2])


def test_invalid_meshes_raise():
    with pytest.raises(DegenerateGeometryError):
        Mesh([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]], [[0, 1, 2]])
    with pytest.raises(DomainError):
        Mesh(np.zeros((3, 3)), [[0, 1, 2]])
    with pytest.raises(DomainError):
        Mesh.rectangle(n=(0, 2))


def test_boundary_queries(square_mesh):
    np.testing.assert_array_equal(square_mesh.boundary_nodes([BOTTOM_ID]), [0, 1, 2, 3])
    np.testing.assert_array_equal(square_mesh.interior_nodes(), [5, 6, 9, 10])
    # counter-clockwise orientation: bottom runs along +x, top along -x
    np.testing.assert_array_equal(square_mesh.ordered_boundary_nodes([BOTTOM_ID]), [0, 1, 2, 3])
    np.testing.assert_array_equal(square_mesh.ordered_boundary_nodes([TOP_ID]), [15, 14, 13, 12])
    assert len(square_mesh.ordered_boundary_nodes()) == 12


def test_edge_normals_point_outward(square_mesh):
    normals, lengths = square_mesh.edge_normals()
    bottom = square_mesh.boundary_ids == BOTTOM_ID
    right = square_mesh.boundary_ids == RIGHT_ID
    np.testing.assert_allclose(normals[bottom], np.tile([0.0, -1.0], (3, 1)), atol=1e-14)
    np.testing.assert_allclose(normals[right], np.tile([1.0, 0.0], (3, 1)), atol=1e-14)
    np.testing.assert_allclose(lengths, 1.0 / 3.0)


def test_vertex_adjacency(square_mesh):
    A = square_mesh.vertex_adjacency()
    assert (A != A.T).nnz == 0
    assert A[0, 1] == 1.0 and A[0, 15] == 0.0
    B = square_mesh.vertex_adjacency(boundary_only=True)
    np.testing.assert_array_equal(np.asarray(B.sum(axis=1)).ravel()[square_mesh.boundary_nodes()], 2.0)


def test_concatenate_keeps_tags(two_body_mesh):
    assert two_body_mesh.body_list() == [1, 2]
    assert two_body_mesh.boundary_id_list() == list(range(1, 9))
    assert two_body_mesh.n_vertices == 30
    np.testing.assert_array_equal(two_body_mesh.body_nodes(2), np.arange(15, 30))


def test_copy_is_independent(square_mesh):
    other = square_mesh.copy()
    other.vertices[0] += 1.0
    assert square_mesh.vertices[0, 0] == 0.0


def test_meshio_round_trip(tmp_path, two_body_mesh):
    filename = tmp_path / "blocks.vtu"
    two_body_mesh.write(filename)
    mesh = Mesh.read(filename)

    np.testing.assert_allclose(mesh.vertices, two_body_mesh.vertices)
    np.testing.assert_array_equal(mesh.elements, two_body_mesh.elements)
    np.testing.assert_array_equal(mesh.body_ids, two_body_mesh.body_ids)
    np.testing.assert_array_equal(mesh.boundary_edges, two_body_mesh.boundary_edges)
    np.testing.assert_array_equal(mesh.boundary_ids, two_body_mesh.boundary_ids)


def test_read_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Mesh.read(tmp_path / "missing.msh")
