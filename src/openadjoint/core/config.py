"""Configuration management for simulation and design optimization runs."""

import json
from pathlib import Path
from typing import Dict, List, Any, Optional, Union
from dataclasses import dataclass, field, asdict

import yaml

from .exceptions import ConfigurationError


@dataclass
class NewtonConfig:
    """Configuration for the forward Newton solver."""
    max_iterations: int = 100
    grad_norm: float = 1e-8
    x_delta: float = 1e-14
    line_search_max_iterations: int = 40
    line_search_min_step: float = 1e-12
    friction_iterations: int = 1


@dataclass
class ContactConfig:
    """Configuration for the barrier contact model."""
    enabled: bool = False
    dhat: float = 1e-3
    barrier_stiffness: float = 1e7
    use_adaptive_barrier_stiffness: bool = True
    friction_coefficient: float = 0.0
    epsv: float = 1e-3
    ccd_tolerance: float = 1e-6
    ccd_max_iterations: int = 100


@dataclass
class StateConfig:
    """Configuration of one simulation state.

    ``mesh`` either names a file (``{"path": "part.msh"}``) or a structured
    rectangle (``{"type": "rectangle", "n": [nx, ny], "size": [w, h]}``).
    """
    mesh: Dict[str, Any] = field(default_factory=lambda: {"type": "rectangle", "n": [4, 4]})
    materials: Dict[str, Any] = field(default_factory=lambda: {"type": "NeoHookean", "E": 1e4, "nu": 0.3, "rho": 1.0})
    time: Optional[Dict[str, Any]] = None
    boundary_conditions: Dict[str, Any] = field(default_factory=dict)
    initial_conditions: Dict[str, Any] = field(default_factory=dict)
    contact: ContactConfig = field(default_factory=ContactConfig)
    damping: Optional[Dict[str, float]] = None
    solver: NewtonConfig = field(default_factory=NewtonConfig)

    @property
    def is_transient(self) -> bool:
        return self.time is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StateConfig':
        """Create a state configuration from a dictionary."""
        config_data = dict(data)
        try:
            config_data['contact'] = ContactConfig(**data.get('contact', {}))
            config_data['solver'] = NewtonConfig(**data.get('solver', {}))
            return cls(**config_data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid state configuration: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OptimizationConfig:
    """Configuration for the outer optimizer."""
    algorithm: str = "lbfgs"
    max_iterations: int = 50
    grad_norm: float = 1e-8
    relative_grad_norm: float = 1e-7
    f_delta: float = 0.0
    x_delta: float = 1e-12
    history_size: int = 6
    line_search_max_iterations: int = 30
    initial_step_size: float = 1.0
    bounds: Optional[List[float]] = None
    move_limit: float = 0.2
    raise_on_iteration_limit: bool = False
    history_file: Optional[str] = None
    export_directory: Optional[str] = None


@dataclass
class RunConfig:
    """Main configuration of an optimization run."""
    states: List[StateConfig] = field(default_factory=list)
    parameters: List[Dict[str, Any]] = field(default_factory=list)
    variable_to_simulation: List[Dict[str, Any]] = field(default_factory=list)
    functionals: List[Dict[str, Any]] = field(default_factory=list)
    constraints: List[Dict[str, Any]] = field(default_factory=list)
    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)
    output_directory: str = "."

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> 'RunConfig':
        """Load configuration from YAML or JSON file."""
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                data = yaml.safe_load(f)
            elif config_path.suffix.lower() == '.json':
                data = json.load(f)
            else:
                raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}")

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunConfig':
        """Create configuration from dictionary."""
        config_data = dict(data)
        config_data['states'] = [StateConfig.from_dict(s) for s in data.get('states', [])]
        try:
            config_data['optimization'] = OptimizationConfig(**data.get('optimization', {}))
            return cls(**config_data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid run configuration: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    def save(self, config_path: Union[str, Path]) -> None:
        """Save configuration to file."""
        config_path = Path(config_path)
        data = self.to_dict()

        with open(config_path, 'w') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                yaml.dump(data, f, default_flow_style=False, indent=2)
            elif config_path.suffix.lower() == '.json':
                json.dump(data, f, indent=2)
            else:
                raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}")
