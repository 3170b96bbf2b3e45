"""Registry of configurable components and factories building them from nested dicts."""

import logging
from typing import Any, Callable, Dict, List, Sequence

import numpy as np

from openadjoint.core.config import StateConfig
from openadjoint.core.exceptions import ConfigurationError

# Configure logging
logger = logging.getLogger(__name__)


class ComponentRegistry:
    """Registry of builder functions for forms, parametrizations and bindings."""

    _forms: Dict[str, Callable] = {}
    _parametrizations: Dict[str, Callable] = {}
    _variable_to_simulations: Dict[str, Callable] = {}

    @classmethod
    def register_form(cls, name: str, builder: Callable) -> None:
        cls._forms[name] = builder

    @classmethod
    def register_parametrization(cls, name: str, builder: Callable) -> None:
        cls._parametrizations[name] = builder

    @classmethod
    def register_variable_to_simulation(cls, name: str, builder: Callable) -> None:
        cls._variable_to_simulations[name] = builder

    @classmethod
    def get_form(cls, name: str) -> Callable:
        if name not in cls._forms:
            raise ConfigurationError(f"Unknown form type: {name}. "
                                     f"Available types: {sorted(cls._forms.keys())}")
        return cls._forms[name]

    @classmethod
    def get_parametrization(cls, name: str) -> Callable:
        if name not in cls._parametrizations:
            raise ConfigurationError(f"Unknown parametrization type: {name}. "
                                     f"Available types: {sorted(cls._parametrizations.keys())}")
        return cls._parametrizations[name]

    @classmethod
    def get_variable_to_simulation(cls, name: str) -> Callable:
        if name not in cls._variable_to_simulations:
            raise ConfigurationError(f"Unknown variable to simulation type: {name}. "
                                     f"Available types: {sorted(cls._variable_to_simulations.keys())}")
        return cls._variable_to_simulations[name]

    @classmethod
    def list_available_types(cls) -> Dict[str, List[str]]:
        return {
            'forms': sorted(cls._forms.keys()),
            'parametrizations': sorted(cls._parametrizations.keys()),
            'variable_to_simulation': sorted(cls._variable_to_simulations.keys()),
        }


# Decorators for easy registration
def register_form(name: str):
    """Decorator to register a form builder ``(args, variable_to_simulations, states)``."""
    def decorator(fn):
        ComponentRegistry.register_form(name, fn)
        return fn
    return decorator


def register_parametrization(name: str):
    """Decorator to register a parametrization builder ``(args, states)``."""
    def decorator(fn):
        ComponentRegistry.register_parametrization(name, fn)
        return fn
    return decorator


def register_variable_to_simulation(name: str):
    """Decorator to register a binding builder ``(args, states)``."""
    def decorator(fn):
        ComponentRegistry.register_variable_to_simulation(name, fn)
        return fn
    return decorator


def _require(args: Dict[str, Any], key: str, context: str):
    if key not in args:
        raise ConfigurationError(f"{context}: missing required key '{key}'")
    return args[key]


def _state(args: Dict[str, Any], states: Sequence, context: str):
    index = int(args.get('state', 0))
    if not 0 <= index < len(states):
        raise ConfigurationError(f"{context}: state index {index} out of range ({len(states)} states)")
    return states[index]


# Factories

def create_state(config) -> 'State':
    """Build a state from a :class:`StateConfig` or its dict form."""
    from openadjoint.fem.state import State

    if isinstance(config, dict):
        config = StateConfig.from_dict(config)
    return State.from_config(config)


def create_parametrization(args: Dict[str, Any], states: Sequence = ()):
    builder = ComponentRegistry.get_parametrization(_require(args, 'type', "parametrization"))
    return builder(args, states)


def create_composition(composition: Sequence[Dict[str, Any]], states: Sequence = ()) -> List:
    return [create_parametrization(p, states) for p in composition or []]


def create_variable_to_simulation(args: Dict[str, Any], states: Sequence):
    builder = ComponentRegistry.get_variable_to_simulation(_require(args, 'type', "variable_to_simulation"))
    return builder(args, states)


def create_form(args: Dict[str, Any], variable_to_simulations: Sequence, states: Sequence):
    """Build an objective tree; the optional ``weight`` key scales the node."""
    builder = ComponentRegistry.get_form(_require(args, 'type', "functional"))
    form = builder(args, variable_to_simulations, states)
    if 'weight' in args:
        form.set_weight(float(args['weight']))
    return form


def create_design_vector(parameters: Sequence[Dict[str, Any]]) -> np.ndarray:
    """Concatenate the ``initial`` values of the parameter blocks (``number`` entries each)."""
    blocks = []
    for p in parameters:
        n = int(_require(p, 'number', "parameter"))
        initial = np.broadcast_to(np.asarray(p.get('initial', 0.0), dtype=float), (n,))
        blocks.append(initial)
    return np.concatenate(blocks) if blocks else np.zeros(0)


# Built-in parametrizations

@register_parametrization("slice")
def _build_slice(args, states):
    from openadjoint.solver.parametrization import SliceMap
    return SliceMap(int(_require(args, 'from', "slice")), int(_require(args, 'to', "slice")))


@register_parametrization("exp")
def _build_exp(args, states):
    from openadjoint.solver.parametrization import ExponentialMap
    return ExponentialMap(int(args.get('from', 0)), args.get('to'))


@register_parametrization("power")
def _build_power(args, states):
    from openadjoint.solver.parametrization import PowerMap
    return PowerMap(float(args.get('power', 3.0)))


@register_parametrization("per-body-to-per-elem")
def _build_per_body(args, states):
    from openadjoint.solver.parametrization import PerBody2PerElem
    return PerBody2PerElem(_state(args, states, "per-body-to-per-elem").mesh)


@register_parametrization("E-nu-to-lambda-mu")
def _build_e_nu(args, states):
    from openadjoint.solver.parametrization import ENu2LambdaMu
    return ENu2LambdaMu()


@register_parametrization("linear-filter")
def _build_linear_filter(args, states):
    from openadjoint.solver.parametrization import LinearFilter
    state = _state(args, states, "linear-filter")
    return LinearFilter(state.mesh, float(_require(args, 'radius', "linear-filter")))


@register_parametrization("laplacian-smoothing")
def _build_laplacian(args, states):
    from openadjoint.solver.parametrization import LaplacianSmoothing
    state = _state(args, states, "laplacian-smoothing")
    return LaplacianSmoothing(state.mesh, args.get('nodes'), float(args.get('alpha', 1.0)),
                              bool(args.get('boundary_only', False)))


@register_parametrization("bspline")
def _build_bspline(args, states):
    from openadjoint.solver.parametrization import BSplineParametrization1DTo2D
    return BSplineParametrization1DTo2D(
        np.asarray(_require(args, 'control_points', "bspline"), dtype=float),
        np.asarray(_require(args, 'knots', "bspline"), dtype=float),
        int(_require(args, 'num_vertices', "bspline")),
        exclude_ends=bool(args.get('exclude_ends', False)),
        periodic=bool(args.get('periodic', False)),
    )


@register_parametrization("bounded-biharmonic-weights")
def _build_bbw(args, states):
    from openadjoint.solver.parametrization import BoundedBiharmonicWeights
    return BoundedBiharmonicWeights(
        int(_require(args, 'num_control_vertices', "bounded-biharmonic-weights")),
        _state(args, states, "bounded-biharmonic-weights"),
        _require(args, 'surface_selection', "bounded-biharmonic-weights"),
        args.get('num_vertices'),
    )


# Built-in bindings

def _shape_composition(args, states, state):
    from openadjoint.solver.parametrization import (
        VariableToBoundaryNodes, VariableToBoundaryNodesExclusive, VariableToInteriorNodes, VariableToNodes,
    )

    chain = create_composition(args.get('composition', []), states)
    selection = args.get('selection', 'all')
    if selection == 'boundary':
        return VariableToBoundaryNodes(chain, state, _require(args, 'surface_selection', "shape"))
    if selection == 'boundary-exclusive':
        return VariableToBoundaryNodesExclusive(chain, state, args.get('exclude_surface_selection', []))
    if selection == 'interior':
        return VariableToInteriorNodes(chain, state, args.get('volume_selection'))
    if selection == 'nodes':
        return VariableToNodes(chain, state, _require(args, 'nodes', "shape"))
    if selection == 'all':
        return VariableToNodes(chain, state, np.arange(state.mesh.n_vertices))
    raise ConfigurationError(f"Unknown shape selection: {selection}. "
                             f"Available selections: ['all', 'boundary', 'boundary-exclusive', 'interior', 'nodes']")


@register_variable_to_simulation("shape")
def _build_shape(args, states):
    from openadjoint.solver.variable_to_simulation import ShapeVariableToSimulation
    state = _state(args, states, "shape")
    return ShapeVariableToSimulation(state, _shape_composition(args, states, state))


def _simple_binding(cls_name):
    def build(args, states):
        from openadjoint.solver import variable_to_simulation as v2s_module
        cls = getattr(v2s_module, cls_name)
        state = _state(args, states, cls_name)
        return cls(state, create_composition(args.get('composition', []), states), args.get('indexing'))
    return build


register_variable_to_simulation("elastic")(_simple_binding("ElasticVariableToSimulation"))
register_variable_to_simulation("friction")(_simple_binding("FrictionCoeffientVariableToSimulation"))
register_variable_to_simulation("damping")(_simple_binding("DampingCoeffientVariableToSimulation"))
register_variable_to_simulation("initial")(_simple_binding("InitialConditionVariableToSimulation"))
register_variable_to_simulation("macro-strain")(_simple_binding("MacroStrainVariableToSimulation"))


@register_variable_to_simulation("dirichlet")
def _build_dirichlet(args, states):
    from openadjoint.solver.variable_to_simulation import DirichletVariableToSimulation
    return DirichletVariableToSimulation(
        _state(args, states, "dirichlet"),
        create_composition(args.get('composition', []), states),
        int(_require(args, 'boundary_id', "dirichlet")),
        args.get('indexing'),
    )


@register_variable_to_simulation("density")
def _build_density(args, states):
    from openadjoint.solver.variable_to_simulation import DensityVariableToSimulation
    return DensityVariableToSimulation(
        _state(args, states, "density"),
        create_composition(args.get('composition', []), states),
        float(args.get('min_density', 1e-3)),
    )


# Built-in forms

def _children(args, key, v2s, states):
    return [create_form(a, v2s, states) for a in _require(args, key, args.get('type', 'composite'))]


@register_form("sum")
def _build_sum(args, v2s, states):
    from openadjoint.solver.adjoint_forms import SumCompositeForm
    return SumCompositeForm(v2s, _children(args, 'functionals', v2s, states))


@register_form("plus-const")
def _build_plus_const(args, v2s, states):
    from openadjoint.solver.adjoint_forms import PlusConstCompositeForm
    return PlusConstCompositeForm(v2s, create_form(_require(args, 'objective', "plus-const"), v2s, states),
                                  float(_require(args, 'value', "plus-const")))


@register_form("power")
def _build_power_form(args, v2s, states):
    from openadjoint.solver.adjoint_forms import PowerForm
    return PowerForm(v2s, create_form(_require(args, 'objective', "power"), v2s, states),
                     float(args.get('power', 2.0)))


@register_form("inequality-constraint")
def _build_inequality(args, v2s, states):
    from openadjoint.solver.adjoint_forms import InequalityConstraintForm
    bounds = args.get('bounds', [-np.inf, 0.0])
    return InequalityConstraintForm(v2s, [create_form(_require(args, 'objective', "inequality-constraint"),
                                                      v2s, states)], bounds)


@register_form("transient_integral")
def _build_transient(args, v2s, states):
    from openadjoint.solver.adjoint_forms import TransientForm
    state = _state(args, states, "transient_integral")
    static = dict(_require(args, 'static_objective', "transient_integral"))
    static.setdefault('state', args.get('state', 0))
    return TransientForm(v2s, state.time_steps, state.dt, args.get('integral_type', 'uniform'),
                         create_form(static, v2s, states), args.get('steps'))


@register_form("stress_norm")
def _build_stress(args, v2s, states):
    from openadjoint.solver.adjoint_forms import StressNormForm
    return StressNormForm(v2s, _state(args, states, "stress_norm"), args.get('volume_selection', []),
                          float(args.get('power', 2.0)))


@register_form("target")
def _build_target(args, v2s, states):
    from openadjoint.solver.adjoint_forms import TargetForm
    form = TargetForm(v2s, _state(args, states, "target"), args.get('surface_selection', []),
                      args.get('integral_type', 'surface'))
    if 'reference_state' in args:
        form.set_reference(states[int(args['reference_state'])])
    elif 'target_displacement' in args:
        form.set_target_displacement(args['target_displacement'])
    else:
        raise ConfigurationError("target: needs 'reference_state' or 'target_displacement'")
    return form


@register_form("position")
def _build_position(args, v2s, states):
    from openadjoint.solver.adjoint_forms import PositionForm
    return PositionForm(v2s, _state(args, states, "position"), int(_require(args, 'dim', "position")),
                        args.get('volume_selection', []))


@register_form("volume")
def _build_volume(args, v2s, states):
    from openadjoint.solver.adjoint_forms import VolumeForm
    return VolumeForm(v2s, _state(args, states, "volume"), args.get('volume_selection', []))


@register_form("compliance")
def _build_compliance(args, v2s, states):
    from openadjoint.solver.adjoint_forms import ComplianceForm
    return ComplianceForm(v2s, _state(args, states, "compliance"))


@register_form("AMIPS")
def _build_amips(args, v2s, states):
    from openadjoint.solver.adjoint_forms import AMIPSForm
    return AMIPSForm(v2s, _state(args, states, "AMIPS"))


@register_form("boundary_smoothing")
def _build_smoothing(args, v2s, states):
    from openadjoint.solver.adjoint_forms import BoundarySmoothingForm
    return BoundarySmoothingForm(v2s, _state(args, states, "boundary_smoothing"),
                                 bool(args.get('scale_invariant', True)), float(args.get('power', 2.0)),
                                 args.get('surface_selection', []))


@register_form("collision_barrier")
def _build_collision(args, v2s, states):
    from openadjoint.solver.adjoint_forms import CollisionBarrierForm
    return CollisionBarrierForm(v2s, _state(args, states, "collision_barrier"),
                                float(_require(args, 'dhat', "collision_barrier")))


@register_form("weighted_volume")
def _build_weighted_volume(args, v2s, states):
    from openadjoint.solver.adjoint_forms import WeightedVolumeForm
    from openadjoint.solver.parametrization import CompositeParametrization
    chain = CompositeParametrization(create_composition(args.get('composition', []), states))
    return WeightedVolumeForm(v2s, chain, _state(args, states, "weighted_volume"))
