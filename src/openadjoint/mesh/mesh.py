"""
Two-dimensional triangle meshes with body and boundary tags.

Boundary edges are stored with the orientation of their element (counter-
clockwise triangles), so the outward normal of an edge ``(a, b)`` is
``(y_b - y_a, x_a - x_b) / |b - a|``.
"""

import logging
import os
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import meshio
import numpy as np
import scipy.sparse as sp

from openadjoint.core.exceptions import DegenerateGeometryError, DomainError

# Configure logging
logger = logging.getLogger(__name__)

# Boundary ids of the structured rectangle generator
LEFT_ID = 1
BOTTOM_ID = 2
RIGHT_ID = 3
TOP_ID = 4


class Mesh:
    """P1 triangle mesh.

    Attributes:
        vertices: Rest positions, shape ``(n_vertices, 2)``.
        elements: Counter-clockwise triangles, shape ``(n_elements, 3)``.
        body_ids: Body id per element.
        boundary_edges: Oriented boundary edges, shape ``(n_edges, 2)``.
        boundary_ids: Boundary id per boundary edge.
        boundary_edge_elements: Element owning each boundary edge.
        boundary_edge_local: Local indices (in the owning element) of the edge end points.
    """

    dim = 2

    def __init__(
        self,
        vertices: np.ndarray,
        elements: np.ndarray,
        body_ids: Optional[np.ndarray] = None,
        boundary_ids: Optional[Dict[Tuple[int, int], int]] = None,
        default_boundary_id: int = 0,
    ):
        """Initialize the mesh.

        Args:
            vertices: Vertex coordinates (n, 2)
            elements: Triangle connectivity (m, 3); clockwise triangles are flipped
            body_ids: Optional per-element body ids (default 1)
            boundary_ids: Optional map from sorted vertex pairs to boundary ids
            default_boundary_id: Id of boundary edges missing from ``boundary_ids``

        Raises:
            DomainError: If the arrays have inconsistent shapes
            DegenerateGeometryError: If an element has zero area
        """
        self.vertices = np.array(vertices, dtype=float)
        self.elements = np.array(elements, dtype=int)

        if self.vertices.ndim != 2 or self.vertices.shape[1] != 2:
            raise DomainError(f"Expected vertices of shape (n, 2), got {self.vertices.shape}")
        if self.elements.ndim != 2 or self.elements.shape[1] != 3:
            raise DomainError(f"Expected triangles of shape (m, 3), got {self.elements.shape}")

        areas = self.signed_areas()
        if np.any(np.abs(areas) <= 0):
            raise DegenerateGeometryError("Mesh contains zero-area elements")
        flipped = areas < 0
        if np.any(flipped):
            logger.debug(f"Reorienting {int(flipped.sum())} clockwise elements")
            self.elements[flipped] = self.elements[flipped][:, [0, 2, 1]]

        if body_ids is None:
            self.body_ids = np.ones(self.n_elements, dtype=int)
        else:
            self.body_ids = np.asarray(body_ids, dtype=int).copy()
            if self.body_ids.shape != (self.n_elements,):
                raise DomainError("body_ids must have one entry per element")

        self._build_boundary(boundary_ids or {}, default_boundary_id)

    def _build_boundary(self, boundary_ids: Dict[Tuple[int, int], int], default_id: int) -> None:
        local_edges = [(0, 1), (1, 2), (2, 0)]
        owners: Dict[Tuple[int, int], List[Tuple[int, int, int]]] = {}
        for e, tri in enumerate(self.elements):
            for la, lb in local_edges:
                key = tuple(sorted((tri[la], tri[lb])))
                owners.setdefault(key, []).append((e, la, lb))

        edges, ids, elems, local = [], [], [], []
        for key, owner in owners.items():
            if len(owner) != 1:
                continue
            e, la, lb = owner[0]
            edges.append((self.elements[e, la], self.elements[e, lb]))
            ids.append(boundary_ids.get(key, default_id))
            elems.append(e)
            local.append((la, lb))

        order = np.lexsort((np.array([a for a, _ in edges]), np.array(ids))) if edges else np.array([], dtype=int)
        self.boundary_edges = np.array(edges, dtype=int).reshape(-1, 2)[order]
        self.boundary_ids = np.array(ids, dtype=int)[order]
        self.boundary_edge_elements = np.array(elems, dtype=int)[order]
        self.boundary_edge_local = np.array(local, dtype=int).reshape(-1, 2)[order]

    @property
    def n_vertices(self) -> int:
        return self.vertices.shape[0]

    @property
    def n_elements(self) -> int:
        return self.elements.shape[0]

    @property
    def ndof(self) -> int:
        return self.n_vertices * self.dim

    def copy(self) -> 'Mesh':
        other = Mesh.__new__(Mesh)
        other.vertices = self.vertices.copy()
        other.elements = self.elements.copy()
        other.body_ids = self.body_ids.copy()
        other.boundary_edges = self.boundary_edges.copy()
        other.boundary_ids = self.boundary_ids.copy()
        other.boundary_edge_elements = self.boundary_edge_elements.copy()
        other.boundary_edge_local = self.boundary_edge_local.copy()
        return other

    def signed_areas(self, vertices: Optional[np.ndarray] = None) -> np.ndarray:
        """Signed element areas (positive for counter-clockwise triangles)."""
        V = self.vertices if vertices is None else np.asarray(vertices).reshape(-1, 2)
        p0, p1, p2 = (V[self.elements[:, i]] for i in range(3))
        e1, e2 = p1 - p0, p2 - p0
        return 0.5 * (e1[:, 0] * e2[:, 1] - e1[:, 1] * e2[:, 0])

    def element_areas(self) -> np.ndarray:
        return np.abs(self.signed_areas())

    def centroids(self) -> np.ndarray:
        return self.vertices[self.elements].mean(axis=1)

    def body_list(self) -> List[int]:
        return sorted(set(self.body_ids.tolist()))

    def boundary_id_list(self) -> List[int]:
        return sorted(set(self.boundary_ids.tolist()))

    def edge_mask(self, ids: Optional[Iterable[int]] = None) -> np.ndarray:
        """Boolean mask of boundary edges whose id is in ``ids`` (all edges if empty)."""
        ids = list(ids) if ids is not None else []
        if not ids:
            return np.ones(len(self.boundary_edges), dtype=bool)
        return np.isin(self.boundary_ids, ids)

    def element_mask(self, body_ids: Optional[Iterable[int]] = None) -> np.ndarray:
        body_ids = list(body_ids) if body_ids is not None else []
        if not body_ids:
            return np.ones(self.n_elements, dtype=bool)
        return np.isin(self.body_ids, body_ids)

    def boundary_nodes(self, ids: Optional[Iterable[int]] = None) -> np.ndarray:
        """Sorted vertex indices on boundary edges with the given ids."""
        return np.unique(self.boundary_edges[self.edge_mask(ids)])

    def body_nodes(self, body_id: Optional[int] = None) -> np.ndarray:
        mask = self.element_mask(None if body_id is None else [body_id])
        return np.unique(self.elements[mask])

    def interior_nodes(self, body_id: Optional[int] = None) -> np.ndarray:
        """Vertices of a body (all bodies if None) that lie on no boundary edge."""
        return np.setdiff1d(self.body_nodes(body_id), self.boundary_nodes())

    def ordered_boundary_nodes(self, ids: Optional[Iterable[int]] = None) -> np.ndarray:
        """Vertices of the selected boundary, ordered along the edge orientation.

        Open chains start at the vertex without an incoming edge; closed loops
        start at their smallest vertex index. Several chains are concatenated
        in order of their start vertex.
        """
        edges = self.boundary_edges[self.edge_mask(ids)]
        if len(edges) == 0:
            return np.array([], dtype=int)

        nxt = {int(a): int(b) for a, b in edges}
        incoming = set(nxt.values())
        visited = set()
        ordered = []

        starts = sorted(v for v in nxt if v not in incoming)
        loops = sorted(nxt)
        for start in starts + loops:
            if start in visited:
                continue
            v = start
            while v is not None and v not in visited:
                visited.add(v)
                ordered.append(v)
                v = nxt.get(v)
        return np.array(ordered, dtype=int)

    def vertex_adjacency(self, nodes: Optional[np.ndarray] = None, boundary_only: bool = False) -> sp.csr_matrix:
        """Symmetric vertex adjacency matrix.

        Args:
            nodes: Restrict the graph to these vertices (indices of the result follow ``nodes``)
            boundary_only: Use only boundary edges instead of all element edges

        Returns:
            scipy.sparse.csr_matrix: 0/1 adjacency matrix
        """
        if boundary_only:
            edges = self.boundary_edges
        else:
            edges = np.vstack([self.elements[:, [0, 1]], self.elements[:, [1, 2]], self.elements[:, [2, 0]]])

        n = self.n_vertices
        A = sp.coo_matrix((np.ones(len(edges)), (edges[:, 0], edges[:, 1])), shape=(n, n)).tocsr()
        A = ((A + A.T) > 0).astype(float).tocsr()
        if nodes is not None:
            nodes = np.asarray(nodes, dtype=int)
            A = A[nodes][:, nodes].tocsr()
        return A

    def edge_normals(self, vertices: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Outward unit normals and lengths of all boundary edges."""
        V = self.vertices if vertices is None else np.asarray(vertices).reshape(-1, 2)
        d = V[self.boundary_edges[:, 1]] - V[self.boundary_edges[:, 0]]
        lengths = np.linalg.norm(d, axis=1)
        normals = np.stack([d[:, 1], -d[:, 0]], axis=1) / lengths[:, None]
        return normals, lengths

    @classmethod
    def rectangle(
        cls,
        n: Sequence[int] = (4, 4),
        size: Sequence[float] = (1.0, 1.0),
        origin: Sequence[float] = (0.0, 0.0),
        body_id: int = 1,
    ) -> 'Mesh':
        """Structured triangulation of an axis-aligned rectangle.

        Boundary ids: 1 left, 2 bottom, 3 right, 4 top.

        Args:
            n: Number of cells along x and y
            size: Width and height
            origin: Lower-left corner
            body_id: Body id of all elements

        Returns:
            Mesh: The generated mesh
        """
        nx, ny = int(n[0]), int(n[1])
        if nx < 1 or ny < 1:
            raise DomainError(f"Rectangle needs at least one cell per direction, got {n}")
        xs = origin[0] + np.linspace(0.0, size[0], nx + 1)
        ys = origin[1] + np.linspace(0.0, size[1], ny + 1)
        X, Y = np.meshgrid(xs, ys)
        vertices = np.stack([X.ravel(), Y.ravel()], axis=1)

        def vid(i, j):
            return j * (nx + 1) + i

        elements = []
        for j in range(ny):
            for i in range(nx):
                a, b, c, d = vid(i, j), vid(i + 1, j), vid(i + 1, j + 1), vid(i, j + 1)
                # alternate the diagonal to keep the mesh symmetric
                if (i + j) % 2 == 0:
                    elements += [(a, b, c), (a, c, d)]
                else:
                    elements += [(a, b, d), (b, c, d)]

        boundary_ids = {}
        for i in range(nx):
            boundary_ids[tuple(sorted((vid(i, 0), vid(i + 1, 0))))] = BOTTOM_ID
            boundary_ids[tuple(sorted((vid(i, ny), vid(i + 1, ny))))] = TOP_ID
        for j in range(ny):
            boundary_ids[tuple(sorted((vid(0, j), vid(0, j + 1))))] = LEFT_ID
            boundary_ids[tuple(sorted((vid(nx, j), vid(nx, j + 1))))] = RIGHT_ID

        return cls(vertices, np.array(elements), np.full(len(elements), body_id), boundary_ids)

    @classmethod
    def concatenate(cls, meshes: Sequence['Mesh']) -> 'Mesh':
        """Disjoint union of meshes, keeping body and boundary ids."""
        vertices, elements, body_ids = [], [], []
        boundary_ids = {}
        offset = 0
        for m in meshes:
            vertices.append(m.vertices)
            elements.append(m.elements + offset)
            body_ids.append(m.body_ids)
            for (a, b), bid in zip(m.boundary_edges, m.boundary_ids):
                boundary_ids[tuple(sorted((int(a) + offset, int(b) + offset)))] = int(bid)
            offset += m.n_vertices
        return cls(np.vstack(vertices), np.vstack(elements), np.concatenate(body_ids), boundary_ids)

    @classmethod
    def from_meshio(cls, mesh: meshio.Mesh, default_boundary_id: int = 1) -> 'Mesh':
        """Convert a meshio mesh (triangles plus optional tagged lines).

        Body ids are read from the ``body_id`` or ``gmsh:physical`` cell data of
        the triangle blocks, boundary ids from the same data on line blocks.
        """
        vertices = np.asarray(mesh.points)[:, :2]
        elements, body_ids = [], []
        boundary_ids = {}

        def block_tags(k, keys):
            for key in keys:
                if key in mesh.cell_data:
                    return np.asarray(mesh.cell_data[key][k]).astype(int)
            return None

        for k, block in enumerate(mesh.cells):
            if block.type == 'triangle':
                tags = block_tags(k, ('body_id', 'gmsh:physical'))
            else:
                tags = block_tags(k, ('boundary_id', 'gmsh:physical'))
            if block.type == 'triangle':
                elements.append(block.data)
                body_ids.append(tags if tags is not None else np.ones(len(block.data), dtype=int))
            elif block.type == 'line' and tags is not None:
                for (a, b), tag in zip(block.data, tags):
                    boundary_ids[tuple(sorted((int(a), int(b))))] = int(tag)

        if not elements:
            raise DomainError("Mesh contains no triangle cells")

        return cls(vertices, np.vstack(elements), np.concatenate(body_ids), boundary_ids, default_boundary_id)

    @classmethod
    def read(cls, filename: Union[str, os.PathLike], default_boundary_id: int = 1) -> 'Mesh':
        """Read a mesh file with meshio.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        if not os.path.exists(filename):
            raise FileNotFoundError(f"Mesh file not found: {filename}")
        logger.info(f"Reading mesh file: {filename}")
        return cls.from_meshio(meshio.read(filename), default_boundary_id)

    def to_meshio(
        self,
        point_data: Optional[Dict[str, np.ndarray]] = None,
        cell_data: Optional[Dict[str, np.ndarray]] = None,
    ) -> meshio.Mesh:
        """Convert to a meshio mesh with triangle and boundary line blocks."""
        points = np.hstack([self.vertices, np.zeros((self.n_vertices, 1))])
        cells = [("triangle", self.elements), ("line", self.boundary_edges)]
        data = {
            'body_id': [self.body_ids, np.zeros(len(self.boundary_edges), dtype=int)],
            'boundary_id': [np.zeros(self.n_elements, dtype=int), self.boundary_ids],
        }
        for name, values in (cell_data or {}).items():
            values = np.asarray(values)
            pad = np.zeros((len(self.boundary_edges),) + values.shape[1:], dtype=values.dtype)
            data[name] = [values, pad]
        return meshio.Mesh(points, cells, point_data=point_data or {}, cell_data=data)

    def write(self, filename: Union[str, os.PathLike], **kwargs) -> None:
        logger.info(f"Writing mesh file: {filename}")
        self.to_meshio(**kwargs).write(filename)
