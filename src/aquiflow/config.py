"""Simulation configuration for AquiFlow.

All run-time settings live in small dataclasses grouped under
:class:`SimulationConfig`. The top boundary tags are part of the
configuration: the assembler and the stream engine never assume a tag value.
"""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

# face tag of the top boundary for colorized box meshes, keyed by dimension
DEFAULT_TOP_BOUNDARY_IDS = {2: (3,), 3: (5,)}


@dataclass
class SolverConfig:
    """Settings of the preconditioned conjugate gradient solve.

    Attributes:
        tolerance: Absolute threshold on the residual 2-norm.
        max_iterations: Iteration cap. If None the number of global DOFs is used.
        amg_strength: Strength-of-connection measure passed to pyamg.
        amg_max_coarse: Size of the coarsest AMG level.
    """
    tolerance: float = 1e-8
    max_iterations: Optional[int] = None
    amg_strength: str = 'symmetric'
    amg_max_coarse: int = 10

    def __post_init__(self) -> None:
        if self.tolerance <= 0:
            raise ValueError(f'Solver tolerance must be positive. Got: {self.tolerance}')
        if self.max_iterations is not None and self.max_iterations < 1:
            raise ValueError(f'max_iterations must be >= 1 or None. Got: {self.max_iterations}')


@dataclass
class RefinementConfig:
    """Fixed-number refinement settings."""
    top_fraction: float = 0.3
    bottom_fraction: float = 0.03
    max_level: int = 16

    def __post_init__(self) -> None:
        validate_fractions(self.top_fraction, self.bottom_fraction)
        if not 1 <= self.max_level <= 28:
            raise ValueError(f'max_level must be between 1 and 28. Got: {self.max_level}')


@dataclass
class StreamConfig:
    """Stream input settings.

    Attributes:
        stream_file: Path of the stream segment file. None disables streams.
        axis_tolerance: Tolerance used to detect near-zero length and
            axis-aligned segments (absolute, in model length units).
    """
    stream_file: Optional[str] = None
    axis_tolerance: float = 0.1

    def __post_init__(self) -> None:
        if self.axis_tolerance < 0:
            raise ValueError(f'axis_tolerance must be >= 0. Got: {self.axis_tolerance}')


@dataclass
class OutputConfig:
    """Where and how solution snapshots are written."""
    directory: str = '.'
    prefix: str = 'solution-'
    enabled: bool = True


@dataclass
class SimulationConfig:
    """Top level configuration of a groundwater flow run.

    Attributes:
        dim: Space dimension of the mesh (2 or 3).
        top_boundary_ids: Face tags where recharge and streams are applied.
            Defaults to the top face tag of a colorized box mesh.
        cell_quadrature: Gauss points per direction for cell integrals.
        face_quadrature: Gauss points per direction for face integrals.
        solver: Linear solver settings.
        refinement: Refinement settings.
        streams: Stream settings.
        output: Output settings.

    Example:
        >>> cfg = SimulationConfig.from_dict({'dim': 3, 'solver': {'tolerance': 1e-10}})
        >>> cfg.top_boundary_ids
        (5,)
    """
    dim: int = 3
    top_boundary_ids: Optional[Tuple[int, ...]] = None
    cell_quadrature: int = 2
    face_quadrature: int = 2
    solver: SolverConfig = field(default_factory=SolverConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    streams: StreamConfig = field(default_factory=StreamConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def __post_init__(self) -> None:
        if self.dim not in (2, 3):
            raise ValueError(f'Only 2D and 3D meshes are supported. Got dim={self.dim}')
        if self.top_boundary_ids is None:
            self.top_boundary_ids = DEFAULT_TOP_BOUNDARY_IDS[self.dim]
        else:
            self.top_boundary_ids = tuple(int(i) for i in self.top_boundary_ids)
        for name in ('cell_quadrature', 'face_quadrature'):
            if getattr(self, name) < 1:
                raise ValueError(f'{name} must be >= 1. Got: {getattr(self, name)}')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationConfig":
        """Build a configuration from a (possibly nested) dictionary.

        Unknown keys raise a ValueError so that typos do not pass silently.
        """
        sections = {
            'solver': SolverConfig,
            'refinement': RefinementConfig,
            'streams': StreamConfig,
            'output': OutputConfig,
        }
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f'Unknown configuration keys: {sorted(unknown)}. Available keys: {sorted(known)}')
        kwargs = {}
        for key, value in data.items():
            if key in sections and isinstance(value, dict):
                section_cls = sections[key]
                bad = set(value) - set(section_cls.__dataclass_fields__)
                if bad:
                    raise ValueError(f"Unknown keys in '{key}' section: {sorted(bad)}")
                kwargs[key] = section_cls(**value)
            else:
                kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "SimulationConfig":
        """Load a configuration from a JSON file."""
        with open(path, encoding='utf-8') as fh:
            return cls.from_dict(json.load(fh))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['top_boundary_ids'] = list(self.top_boundary_ids)
        return data


def validate_fractions(top_fraction: float, bottom_fraction: float) -> None:
    """Check the fixed-number refinement fractions.

    Raises:
        ValueError: If a fraction is outside [0, 1] or their sum exceeds 1.
    """
    for name, value in (('top_fraction', top_fraction), ('bottom_fraction', bottom_fraction)):
        if not 0.0 <= value <= 1.0:
            raise ValueError(f'{name} must be in [0, 1]. Got: {value}')
    if top_fraction + bottom_fraction > 1.0:
        raise ValueError(
            f'top_fraction + bottom_fraction must not exceed 1. '
            f'Got: {top_fraction} + {bottom_fraction}'
        )
