"""
Exception hierarchy for OpenAdjoint.

Degenerate trial points are the only failures expected to be handled locally
(by a line search backing off); every other error propagates to the driver.
"""


class OpenAdjointError(Exception):
    """Base class for all OpenAdjoint exceptions."""
    pass


class DomainError(OpenAdjointError, ValueError):
    """Raised when a map is inverted outside its invertible domain or chained with mismatched sizes."""
    pass


class DegenerateGeometryError(OpenAdjointError, ArithmeticError):
    """Raised when an energy is undefined at a trial point (inverted element, zero-distance contact)."""
    pass


class SolverConvergenceError(OpenAdjointError, RuntimeError):
    """Raised when a forward or adjoint solve does not reach its tolerance."""
    pass


class ConfigurationError(OpenAdjointError, ValueError):
    """Raised when a setup is invalid (unknown type, missing binding, unsupported parameter)."""
    pass


class InvalidStateError(OpenAdjointError, RuntimeError):
    """Raised when a quantity is requested at a design point that was never pushed to the states."""
    pass


class IterationLimitReached(OpenAdjointError, RuntimeError):
    """Raised by optimizer drivers configured to fail on hitting the iteration limit."""
    pass
