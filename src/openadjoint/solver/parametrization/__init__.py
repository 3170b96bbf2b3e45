"""Design-vector parametrizations."""

from openadjoint.solver.parametrization.parametrization import (
    Parametrization,
    CompositeParametrization,
    ExponentialMap,
    PowerMap,
    SliceMap,
)
from openadjoint.solver.parametrization.elastic_parametrizations import PerBody2PerElem, ENu2LambdaMu
from openadjoint.solver.parametrization.filters import LinearFilter, LaplacianSmoothing
from openadjoint.solver.parametrization.spline_parametrizations import (
    BSplineParametrization1DTo2D,
    BoundedBiharmonicWeights,
)
from openadjoint.solver.parametrization.node_parametrizations import (
    VariableToNodes,
    VariableToBoundaryNodes,
    VariableToBoundaryNodesExclusive,
    VariableToInteriorNodes,
)

__all__ = [
    "Parametrization",
    "CompositeParametrization",
    "ExponentialMap",
    "PowerMap",
    "SliceMap",
    "PerBody2PerElem",
    "ENu2LambdaMu",
    "LinearFilter",
    "LaplacianSmoothing",
    "BSplineParametrization1DTo2D",
    "BoundedBiharmonicWeights",
    "VariableToNodes",
    "VariableToBoundaryNodes",
    "VariableToBoundaryNodesExclusive",
    "VariableToInteriorNodes",
]
