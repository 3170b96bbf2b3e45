"""Core configuration, errors and component registry."""

from openadjoint.core.config import (
    ContactConfig,
    NewtonConfig,
    OptimizationConfig,
    RunConfig,
    StateConfig,
)
from openadjoint.core.exceptions import (
    ConfigurationError,
    DegenerateGeometryError,
    DomainError,
    InvalidStateError,
    IterationLimitReached,
    OpenAdjointError,
    SolverConvergenceError,
)

__all__ = [
    "ContactConfig", "NewtonConfig", "OptimizationConfig", "RunConfig", "StateConfig",
    "ConfigurationError", "DegenerateGeometryError", "DomainError", "InvalidStateError",
    "IterationLimitReached", "OpenAdjointError", "SolverConvergenceError",
]
