"""Mesh data structures and I/O."""

from openadjoint.mesh.mesh import Mesh, LEFT_ID, BOTTOM_ID, RIGHT_ID, TOP_ID

__all__ = ["Mesh", "LEFT_ID", "BOTTOM_ID", "RIGHT_ID", "TOP_ID"]
