"""Objective and constraint forms of the design optimization."""

from openadjoint.solver.adjoint_forms.adjoint_form import AdjointForm, StaticForm
from openadjoint.solver.adjoint_forms.composite_forms import (
    CompositeForm,
    SumCompositeForm,
    PlusConstCompositeForm,
    PowerForm,
    InequalityConstraintForm,
    TransientForm,
)
from openadjoint.solver.adjoint_forms.spatial_integral_forms import (
    SpatialIntegralForm,
    StressNormForm,
    TargetForm,
    PositionForm,
    VolumeForm,
    ComplianceForm,
)
from openadjoint.solver.adjoint_forms.shape_forms import (
    AMIPSForm,
    BoundarySmoothingForm,
    CollisionBarrierForm,
    WeightedVolumeForm,
)

__all__ = [
    "AdjointForm",
    "StaticForm",
    "CompositeForm",
    "SumCompositeForm",
    "PlusConstCompositeForm",
    "PowerForm",
    "InequalityConstraintForm",
    "TransientForm",
    "SpatialIntegralForm",
    "StressNormForm",
    "TargetForm",
    "PositionForm",
    "VolumeForm",
    "ComplianceForm",
    "AMIPSForm",
    "BoundarySmoothingForm",
    "CollisionBarrierForm",
    "WeightedVolumeForm",
]
