"""Parametrization chains whose output is a selection of mesh vertex coordinates."""

from typing import Iterable, Optional, Sequence

import numpy as np

from openadjoint.core.exceptions import DomainError
from openadjoint.solver.parametrization.parametrization import CompositeParametrization, Parametrization


class VariableToNodes(CompositeParametrization):
    """Chain writing node-major coordinates of ``node_ids`` into the flattened vertex array.

    Args:
        parametrizations: Links in evaluation order
        state: State owning the mesh
        node_ids: Target vertices, in output order
    """

    def __init__(self, parametrizations: Optional[Sequence[Parametrization]], state, node_ids: Iterable[int]):
        super().__init__(parametrizations)
        self.node_ids = np.asarray(list(node_ids), dtype=int)
        self.state = state

    def get_output_indexing(self, x):
        size = self.size(len(x))
        if size != 2 * len(self.node_ids):
            raise DomainError(f"Chain produces {size} values for {len(self.node_ids)} nodes")
        return (2 * self.node_ids[:, None] + np.arange(2)[None, :]).ravel()

    def current_values(self) -> np.ndarray:
        """Current coordinates of the target nodes, node-major."""
        return self.state.mesh.vertices[self.node_ids].ravel()


class VariableToBoundaryNodes(VariableToNodes):
    """Nodes of the given boundary ids, ordered along the boundary."""

    def __init__(self, parametrizations, state, surface_ids: Iterable[int]):
        super().__init__(parametrizations, state, state.mesh.ordered_boundary_nodes(list(surface_ids)))


class VariableToBoundaryNodesExclusive(VariableToNodes):
    """All boundary nodes except those touching the excluded boundary ids."""

    def __init__(self, parametrizations, state, excluded_surface_ids: Iterable[int]):
        mesh = state.mesh
        excluded = mesh.boundary_nodes(list(excluded_surface_ids)) if excluded_surface_ids else np.array([], dtype=int)
        super().__init__(parametrizations, state, np.setdiff1d(mesh.boundary_nodes(), excluded))


class VariableToInteriorNodes(VariableToNodes):
    """Vertices of a body (all bodies if None) not lying on the boundary."""

    def __init__(self, parametrizations, state, body_id: Optional[int] = None):
        super().__init__(parametrizations, state, state.mesh.interior_nodes(body_id))
