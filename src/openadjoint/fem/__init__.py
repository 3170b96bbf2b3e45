"""P1 finite element discretization, time integration and simulation states."""

from openadjoint.fem.assembler import Assembler
from openadjoint.fem.time_integrator import ImplicitEuler
from openadjoint.fem.state import State, convert_to_lame

__all__ = ["Assembler", "ImplicitEuler", "State", "convert_to_lame"]
