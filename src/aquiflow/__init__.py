"""AquiFlow: adaptive steady-state groundwater flow with stream recharge.

This package solves the steady-state groundwater head equation with Q1
finite elements on MPI-distributed, adaptively refined quadrilateral and
hexahedral meshes. Wells and buffered stream footprints on the top boundary
act as sources.
"""

from .config import (
    OutputConfig,
    RefinementConfig,
    SimulationConfig,
    SolverConfig,
    StreamConfig,
)
from .core.constraints import ConstraintCycleError, ConstraintSet
from .core.dofs import DistributedDofField
from .core.mesh import AquiferMesh, CoarseGrid
from .core.model import GmshModel
from .core.simulation import GroundwaterFlow, SimulationResult, SimulationState
from .fem.assembler import SystemAssembler
from .fem.estimator import ErrorEstimatorRefiner
from .fem.functions import ConstantConductivity
from .fem.solver import LinearSolver, SolverReport
from .geometry.index import StreamIndex
from .geometry.line import StreamCatalog, StreamLoadError, StreamSegment
from .geometry.point import PointWellHandler
from .geometry.polygon import ClipResult, clip_polygons
from .geometry.recharge import StreamContribution, StreamRechargeEngine
from .logging_config import setup_logging
from .utils.output import SolutionWriter
from .utils.preprocessing import (
    merge_many_multilinestring_into_one_linestring,
    simplify_keeping_topology,
    streams_from_lines,
    write_stream_file,
)
from .utils.timing import ComputingTimer

__version__ = "0.1.0"
__author__ = "AquiFlow Contributors"

__all__ = [
    "AquiferMesh",
    "ClipResult",
    "CoarseGrid",
    "ComputingTimer",
    "ConstantConductivity",
    "ConstraintCycleError",
    "ConstraintSet",
    "DistributedDofField",
    "ErrorEstimatorRefiner",
    "GmshModel",
    "GroundwaterFlow",
    "LinearSolver",
    "OutputConfig",
    "PointWellHandler",
    "RefinementConfig",
    "SimulationConfig",
    "SimulationResult",
    "SimulationState",
    "SolutionWriter",
    "SolverConfig",
    "SolverReport",
    "StreamCatalog",
    "StreamConfig",
    "StreamContribution",
    "StreamIndex",
    "StreamLoadError",
    "StreamRechargeEngine",
    "StreamSegment",
    "SystemAssembler",
    "clip_polygons",
    "merge_many_multilinestring_into_one_linestring",
    "setup_logging",
    "simplify_keeping_topology",
    "streams_from_lines",
    "write_stream_file",
]
