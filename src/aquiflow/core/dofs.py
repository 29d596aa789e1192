"""Degrees of freedom of a continuous Q1 field on an AquiferMesh."""

import logging
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
from mpi4py import MPI

from ..fem.element import Q1Element
from ..fem.functions import ScalarField, evaluate_scalar
from ..fem.system import DofPartition, SparsityPattern, SystemAccumulator
from .constraints import ConstraintSet
from .mesh import AquiferMesh, Key, morton_code
from .parallel import exchange_by_owner

logger = logging.getLogger(__name__)


class DistributedDofField:
    """One DOF per mesh vertex, distributed over MPI ranks.

    A vertex is owned by the lowest rank owning one of the active cells it is
    a corner of. Owned DOFs get contiguous global indices per rank. After any
    mesh refinement the field is out of date and :meth:`setup` must be called
    again before it is used.

    Args:
        mesh: The mesh the field lives on.
        element: Finite element. Defaults to Q1 of the mesh dimension.

    Attributes:
        partition: Ownership ranges of the global DOFs.
        constraints: Closed hanging-vertex and Dirichlet constraints covering
            the locally relevant DOFs and their dependencies.
        pattern: Sparsity pattern of the owned matrix rows.
        locally_relevant_dofs: DOFs of the owned and ghost cells.

    Example:
        >>> field = DistributedDofField(mesh)
        >>> partition, constraints, pattern = field.setup({0: 10.0, 1: 5.0})
        >>> partition.n_dofs
        45
    """

    def __init__(self, mesh: AquiferMesh, element: Optional[Q1Element] = None) -> None:
        self.mesh = mesh
        self.comm: MPI.Comm = mesh.comm
        self.element = element if element is not None else Q1Element(mesh.dim)
        if self.element.dim != mesh.dim:
            raise ValueError(f'Element dimension {self.element.dim} does not match mesh dimension {mesh.dim}')
        self.partition: Optional[DofPartition] = None
        self.constraints: Optional[ConstraintSet] = None
        self.pattern: Optional[SparsityPattern] = None
        self.locally_relevant_dofs = np.empty(0, dtype=np.int64)
        self._index: Dict[Key, int] = {}
        self._keys: List[Key] = []
        self._cell_dofs: Dict[int, np.ndarray] = {}
        self._generation: Optional[int] = None

    @property
    def n_dofs(self) -> int:
        self.check_current()
        return self.partition.n_dofs

    def is_current(self) -> bool:
        return self._generation is not None and self._generation == self.mesh.generation

    def check_current(self) -> None:
        if not self.is_current():
            raise RuntimeError('DOF field is out of date with the mesh. Call setup() first.')

    def setup(self, dirichlet: Optional[Mapping[int, ScalarField]] = None
              ) -> Tuple[DofPartition, ConstraintSet, SparsityPattern]:
        """Number the DOFs, build the constraints and the sparsity pattern. Collective.

        Args:
            dirichlet: Map from boundary tag to prescribed head (number or
                callable on ``(n, dim)`` points).

        Returns:
            The partition, the closed constraint set and the sparsity pattern.
        """
        mesh = self.mesh
        comm = self.comm
        rank = comm.Get_rank()
        owned_cells = mesh.locally_owned_cells()

        owned_keys = {key for cell in owned_cells for key in mesh.corner_keys(cell) if mesh.vertex_owner(key) == rank}
        owned_keys = sorted(owned_keys, key=morton_code)
        counts = comm.allgather(len(owned_keys))
        offsets = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)
        self.partition = DofPartition(offsets, rank)

        self._keys = [key for part in comm.allgather(owned_keys) for key in part]
        self._index = {key: i for i, key in enumerate(self._keys)}
        self._cell_dofs = {}
        if len(self._keys) != mesh.n_vertices:
            raise RuntimeError(
                f'DOF numbering is inconsistent: {len(self._keys)} DOFs for '
                f'{mesh.n_vertices} mesh vertices'
            )

        relevant_cells = np.concatenate([owned_cells, mesh.ghost_cells()])
        relevant = {int(d) for cell in relevant_cells for d in self.cell_dofs(cell)}
        self.locally_relevant_dofs = np.asarray(sorted(relevant), dtype=np.int64)

        self.constraints = self._make_constraints(relevant_cells, dirichlet or {})
        self.pattern = self._make_pattern(owned_cells)
        self._generation = mesh.generation
        logger.debug(
            'DOF setup: %d global DOFs, %d owned, %d constraint lines',
            self.partition.n_dofs, self.partition.n_owned, len(self.constraints)
        )
        return self.partition, self.constraints, self.pattern

    def cell_dofs(self, cell: int) -> np.ndarray:
        """Global DOF of every corner of an active cell, in local vertex order."""
        dofs = self._cell_dofs.get(cell)
        if dofs is None:
            dofs = np.asarray([self._index[key] for key in self.mesh.corner_keys(cell)], dtype=np.int64)
            self._cell_dofs[cell] = dofs
        return dofs

    def dof_of(self, key: Key) -> int:
        return self._index[key]

    def support_points(self, dofs: np.ndarray) -> np.ndarray:
        """Physical position of the vertex of every DOF."""
        return self.mesh.points_from_keys([self._keys[int(d)] for d in dofs])

    def new_accumulator(self) -> SystemAccumulator:
        self.check_current()
        return SystemAccumulator(self.partition, self.pattern, self.comm)

    def _make_constraints(self, relevant_cells: np.ndarray,
                          dirichlet: Mapping[int, ScalarField]) -> ConstraintSet:
        mesh = self.mesh
        constraints = ConstraintSet()

        # hanging vertices first, following chains to coarser levels
        candidates = set()
        queue = [(key, mesh.level(cell)) for cell in relevant_cells for key in mesh.corner_keys(cell)]
        seen = set()
        while queue:
            key, level = queue.pop()
            if (key, level) in seen:
                continue
            seen.add((key, level))
            candidates.add(key)
            deps = mesh.hanging_constraint(key, level)
            if deps is None:
                continue
            constraints.add_line(self._index[key], [(self._index[d], w) for d, w in deps])
            queue.extend((d, level - 1) for d, _ in deps)

        # Dirichlet values on vertices that are not hanging
        by_tag: Dict[int, List[Key]] = {}
        for key in sorted(candidates):
            if constraints.is_constrained(self._index[key]):
                continue
            for tag in mesh.vertex_boundary_ids(key):
                if tag in dirichlet:
                    by_tag.setdefault(tag, []).append(key)
                    break
        for tag, keys in by_tag.items():
            values = evaluate_scalar(dirichlet[tag], mesh.points_from_keys(keys))
            for key, value in zip(keys, values):
                constraints.add_line(self._index[key], (), float(value))

        constraints.close()
        return constraints

    def _make_pattern(self, owned_cells: np.ndarray) -> SparsityPattern:
        part = self.partition
        rows, cols = [], []
        for cell in owned_cells:
            r, c = self.constraints.stencil(self.cell_dofs(cell))
            rows.append(r)
            cols.append(c)
        rows = np.concatenate(rows) if rows else np.empty(0, dtype=np.int64)
        cols = np.concatenate(cols) if cols else np.empty(0, dtype=np.int64)
        rows, cols = exchange_by_owner(self.comm, part.owner_of(rows), rows, cols)
        return SparsityPattern.from_entries(rows - part.start, cols, part.n_owned, part.n_dofs)

    def interpolate(self, func: Callable[[np.ndarray], np.ndarray]) -> np.ndarray:
        """Values of a function at the owned DOF support points."""
        self.check_current()
        return evaluate_scalar(func, self.support_points(self.partition.owned_range()))
