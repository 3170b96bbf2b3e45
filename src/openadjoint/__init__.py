"""
OpenAdjoint - Differentiable elasticity simulation and adjoint design optimization.

Forward problems are solved by Newton's method over a sum of energy forms;
objective trees are differentiated with respect to shape, material, friction,
damping, initial condition, Dirichlet and macro strain parameters through
the adjoint method and handed to gradient-based optimizers.
"""

__version__ = "0.1.0"

from openadjoint.mesh import Mesh
from openadjoint.fem import State, convert_to_lame
from openadjoint.solver.adjoint_tools import AdjointTools, ParameterType, SpatialIntegralType
from openadjoint.solver.adjoint_nl_problem import AdjointNLProblem
from openadjoint.solver.optimizer import make_nl_solver

__all__ = [
    "Mesh", "State", "convert_to_lame",
    "AdjointTools", "ParameterType", "SpatialIntegralType",
    "AdjointNLProblem", "make_nl_solver",
]
