"""Energy forms summed by the nonlinear solver."""

from openadjoint.solver.forms.form import Form
from openadjoint.solver.forms.body_form import BodyForm
from openadjoint.solver.forms.elastic_form import ElasticForm
from openadjoint.solver.forms.inertia_form import InertiaForm
from openadjoint.solver.forms.contact_form import ContactForm
from openadjoint.solver.forms.friction_form import FrictionForm
from openadjoint.solver.forms.lagged_reg_form import LaggedRegForm
from openadjoint.solver.forms.damping_form import DampingForm

__all__ = [
    "Form",
    "BodyForm",
    "ElasticForm",
    "InertiaForm",
    "ContactForm",
    "FrictionForm",
    "LaggedRegForm",
    "DampingForm",
]
