"""Steady-state groundwater flow driver.

One iteration runs the phases

    SETUP -> SOURCE_INJECTION -> ASSEMBLE -> SOLVE -> OUTPUT

and :meth:`GroundwaterFlow.simulate_and_refine` appends ESTIMATE_AND_REFINE,
after which the next iteration starts again from SETUP on the new mesh.
Every phase is collective: all ranks must call the same methods in the same
order.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np

from ..config import SimulationConfig
from ..fem.assembler import SystemAssembler
from ..fem.element import Q1Element
from ..fem.estimator import ErrorEstimatorRefiner
from ..fem.functions import ScalarField, TensorField
from ..fem.solver import LinearSolver, SolverReport
from ..fem.system import GhostedVector, LinearSystem, SystemAccumulator
from ..geometry.line import StreamCatalog
from ..geometry.point import PointWellHandler
from ..geometry.recharge import StreamRechargeEngine
from ..utils.output import SolutionWriter
from ..utils.timing import ComputingTimer
from .dofs import DistributedDofField
from .mesh import AquiferMesh
from .parallel import allgather_concat

logger = logging.getLogger(__name__)


class SimulationState(Enum):
    IDLE = 'idle'
    SETUP = 'setup'
    SOURCE_INJECTION = 'source_injection'
    ASSEMBLE = 'assemble'
    SOLVE = 'solve'
    OUTPUT = 'output'
    ESTIMATE_AND_REFINE = 'estimate_and_refine'


@dataclass
class SimulationResult:
    """Summary of one simulation iteration.

    Attributes:
        iteration: Iteration index passed by the caller.
        n_active_cells: Active cells of the mesh that was solved on.
        n_dofs: Global number of DOFs.
        solver: Convergence report of the linear solve.
        n_refined: Cells refined after the solve (0 without refinement).
        n_coarsened: Parents coarsened after the solve.
        output_file: Master output file, on rank 0 when output is enabled.
    """
    iteration: int
    n_active_cells: int
    n_dofs: int
    solver: SolverReport
    n_refined: int = 0
    n_coarsened: int = 0
    output_file: Optional[Path] = None


class GroundwaterFlow:
    """Adaptive steady-state groundwater flow simulation.

    Args:
        mesh: The aquifer mesh. It is refined in place.
        conductivity: Hydraulic conductivity, a number, a ``dim`` vector of
            principal values, a ``(dim, dim)`` tensor or a callable on points.
        recharge: Recharge rate on the top boundary faces, or None.
        dirichlet: Map from boundary tag to prescribed head.
        config: Simulation settings. Defaults to ``SimulationConfig(dim=mesh.dim)``.
        wells: Point wells, or None.
        streams: Stream catalog or recharge engine. If None and the
            configuration names a stream file, the file is loaded.
        writer: Output writer. Defaults to one built from the output settings.

    Example:
        >>> mesh = AquiferMesh.box((0, 0, -50), (1000, 1000, 0), (4, 4, 1))
        >>> flow = GroundwaterFlow(mesh, conductivity=10.0, recharge=1e-4, dirichlet={0: 100.0})
        >>> for it in range(3):
        ...     flow.simulate_and_refine(it)
    """

    def __init__(self, mesh: AquiferMesh, conductivity: TensorField, recharge: Optional[ScalarField] = None,
                 dirichlet: Optional[Dict[int, ScalarField]] = None, config: Optional[SimulationConfig] = None,
                 wells: Optional[PointWellHandler] = None,
                 streams: Optional[Union[StreamCatalog, StreamRechargeEngine]] = None,
                 writer: Optional[SolutionWriter] = None) -> None:
        self.config = config if config is not None else SimulationConfig(dim=mesh.dim)
        if self.config.dim != mesh.dim:
            raise ValueError(f'Configuration is for dim={self.config.dim} but the mesh has dim={mesh.dim}')
        self.mesh = mesh
        self.comm = mesh.comm
        self.conductivity = conductivity
        self.recharge = recharge
        self.dirichlet = dict(dirichlet or {})
        self.wells = wells

        if streams is None and self.config.streams.stream_file is not None:
            streams = StreamCatalog.load(self.config.streams.stream_file, self.config.streams.axis_tolerance)
        if isinstance(streams, StreamCatalog):
            streams = StreamRechargeEngine(streams, dim=mesh.dim)
        self.streams = streams

        if writer is None and self.config.output.enabled:
            writer = SolutionWriter(self.config.output.directory, self.config.output.prefix, self.comm)
        self.writer = writer

        self.element = Q1Element(mesh.dim)
        self.dof_field = DistributedDofField(mesh, self.element)
        self.assembler = SystemAssembler(
            self.element, cell_points=self.config.cell_quadrature, face_points=self.config.face_quadrature,
            top_boundary_ids=self.config.top_boundary_ids,
        )
        self.solver = LinearSolver(self.config.solver, self.comm)
        self.estimator = ErrorEstimatorRefiner(
            self.element, face_points=self.config.face_quadrature + 1, max_level=self.config.refinement.max_level
        )
        self.timer = ComputingTimer(self.comm)

        self.state = SimulationState.IDLE
        self.system: Optional[LinearSystem] = None
        self.solution: Optional[GhostedVector] = None
        self.report: Optional[SolverReport] = None
        self._accumulator: Optional[SystemAccumulator] = None
        self._solved_generation: Optional[int] = None

    def _require(self, condition: bool, message: str) -> None:
        if not condition:
            raise RuntimeError(f'{message} (current state: {self.state.value})')

    def setup_system(self) -> int:
        """Distribute the DOFs and build the constraints. Collective.

        Returns:
            Global number of DOFs.
        """
        self.state = SimulationState.SETUP
        with self.timer.scope('setup'):
            logger.info('Setting up system...')
            self.dof_field.setup(self.dirichlet)
            self.system = None
            self._accumulator = None
        logger.info('   Number of active cells: %d', self.mesh.n_active_cells)
        logger.info('   Number of degrees of freedom: %d', self.dof_field.n_dofs)
        return self.dof_field.n_dofs

    def inject_sources(self) -> int:
        """Add well and stream contributions to a fresh accumulator. Collective.

        Returns:
            Number of point contributions added on this rank.
        """
        self._require(
            self.state == SimulationState.SETUP and self.dof_field.is_current(),
            'Sources need a current DOF field. Call setup_system() first.'
        )
        self.state = SimulationState.SOURCE_INJECTION
        with self.timer.scope('sources'):
            acc = self.dof_field.new_accumulator()
            constraints = self.dof_field.constraints
            n_added = 0
            if self.wells is not None:
                n_added += self.wells.add_contributions(acc, self.mesh, self.dof_field, constraints)
            if self.streams is not None:
                n_added += self.streams.add_contributions(
                    acc, self.mesh, self.dof_field, constraints, self.config.top_boundary_ids
                )
            self._accumulator = acc
        logger.debug('Added %d source contributions on rank %d', n_added, self.mesh.rank)
        return n_added

    def assemble_system(self) -> LinearSystem:
        """Assemble conductivity and recharge terms and finalize the system. Collective."""
        self._require(
            self.state == SimulationState.SOURCE_INJECTION and self._accumulator is not None,
            'Assembly continues the source accumulator. Call inject_sources() first.'
        )
        self.state = SimulationState.ASSEMBLE
        with self.timer.scope('assemble'):
            logger.info('Assembling system...')
            self.system = self.assembler.assemble(
                self.mesh, self.dof_field, self.conductivity, self.recharge, accumulator=self._accumulator
            )
            self._accumulator = None
        return self.system

    def solve(self) -> SolverReport:
        """Solve the assembled system. Collective.

        Non-convergence is logged and reported, the (possibly inaccurate)
        solution is kept.
        """
        self._require(
            self.state == SimulationState.ASSEMBLE and self.system is not None,
            'No assembled system. Call assemble_system() first.'
        )
        self.state = SimulationState.SOLVE
        with self.timer.scope('solve'):
            logger.info('Solving system...')
            self.solution, self.report = self.solver.solve(self.system, self.dof_field)
            self._solved_generation = self.mesh.generation
        logger.info('   Solved in %d iterations.', self.report.iterations)
        return self.report

    def _has_current_solution(self) -> bool:
        return self.solution is not None and self._solved_generation == self.mesh.generation

    def output(self, iteration: int) -> Optional[Path]:
        """Write the current solution. Collective.

        Returns:
            The master file path on rank 0, None elsewhere or when output is
            disabled.
        """
        self._require(self._has_current_solution(), 'No current solution. Call solve() first.')
        self.state = SimulationState.OUTPUT
        if self.writer is None:
            return None
        with self.timer.scope('output'):
            logger.info('Printing results...')
            return self.writer.write(iteration, self.mesh, self.dof_field, self.solution, self.conductivity)

    def refine(self, top_fraction: Optional[float] = None, bottom_fraction: Optional[float] = None):
        """Estimate errors and refine/coarsen the mesh by fixed fractions. Collective.

        After this call the DOF field, system and solution are out of date.

        Returns:
            Number of refined cells and of coarsened parents.
        """
        self._require(self._has_current_solution(), 'Refinement needs a current solution. Call solve() first.')
        top = self.config.refinement.top_fraction if top_fraction is None else top_fraction
        bottom = self.config.refinement.bottom_fraction if bottom_fraction is None else bottom_fraction
        self.state = SimulationState.ESTIMATE_AND_REFINE
        with self.timer.scope('refine'):
            errors = self.estimator.estimate(self.mesh, self.dof_field, self.solution)
            n_refined, n_coarsened = self.estimator.refine(self.mesh, errors, top, bottom)
        logger.info('   Refined %d cells, coarsened %d; %d active cells',
                    n_refined, n_coarsened, self.mesh.n_active_cells)
        self.state = SimulationState.IDLE
        return n_refined, n_coarsened

    def simulate(self, iteration: int) -> SimulationResult:
        """Run setup, source injection, assembly, solve and output once."""
        self.setup_system()
        self.inject_sources()
        self.assemble_system()
        report = self.solve()
        output_file = self.output(iteration)
        self.state = SimulationState.IDLE
        return SimulationResult(
            iteration, self.mesh.n_active_cells, self.dof_field.n_dofs, report, output_file=output_file
        )

    def simulate_and_refine(self, iteration: int, top_fraction: Optional[float] = None,
                            bottom_fraction: Optional[float] = None) -> SimulationResult:
        """Run :meth:`simulate` and then refine the mesh for the next iteration.

        Fractions default to the refinement settings of the configuration.
        """
        result = self.simulate(iteration)
        result.n_refined, result.n_coarsened = self.refine(top_fraction, bottom_fraction)
        return result

    def refine_near_streams(self, cycles: int = 1) -> int:
        """Refine the cells whose top face overlaps a stream. Collective.

        Returns:
            Total number of refined cells, balance refinements included.
        """
        if self.streams is None or not self.streams.enabled:
            return 0
        total = 0
        for cycle in range(cycles):
            with self.timer.scope('stream refinement'):
                owned = self.streams.flag_cells_for_refinement(self.mesh, self.config.top_boundary_ids)
                flags = allgather_concat(self.comm, np.asarray(owned, dtype=np.int64))
                flags = [int(c) for c in flags if self.mesh.level(c) < self.config.refinement.max_level]
                if not flags:
                    break
                n_refined, _ = self.mesh.execute_coarsening_and_refinement(flags, ())
            total += n_refined
            logger.info('Stream refinement cycle %d: %d cells refined, %d active cells',
                        cycle, n_refined, self.mesh.n_active_cells)
        return total

    def timing_summary(self):
        """Per-phase wall time table, logged on rank 0. Collective."""
        return self.timer.log_summary()
