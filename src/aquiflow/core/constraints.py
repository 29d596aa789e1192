"""Affine constraints on degrees of freedom.

A constraint line reads ``u[dof] = sum(w * u[dep]) + g``. Hanging-vertex
lines carry interpolation weights and no inhomogeneity, Dirichlet lines carry
no dependencies and the boundary value as inhomogeneity.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

Line = List[Tuple[int, float]]


class ConstraintCycleError(ValueError):
    """Raised when constraint lines depend on each other in a cycle."""


class ConstraintSet:
    """Set of affine constraint lines indexed by global DOF.

    Lines are added first and the set is then closed, which resolves chains
    so that no line depends on a constrained DOF. Only a closed set can be
    used to copy local contributions into a global system.

    Example:
        >>> cs = ConstraintSet()
        >>> cs.add_line(4, [(0, 0.5), (1, 0.5)])
        True
        >>> cs.add_line(0, inhomogeneity=2.0)
        True
        >>> cs.close()
        >>> cs.line(4)
        ([(1, 0.5)], 1.0)
    """

    def __init__(self) -> None:
        self._lines: Dict[int, Line] = {}
        self._inhomogeneity: Dict[int, float] = {}
        self.closed = False

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, dof: int) -> bool:
        return int(dof) in self._lines

    def is_constrained(self, dof: int) -> bool:
        return int(dof) in self._lines

    def add_line(self, dof: int, entries: Iterable[Tuple[int, float]] = (),
                 inhomogeneity: float = 0.0) -> bool:
        """Constrain a DOF.

        Returns:
            False if the DOF was already constrained (the first line wins).
        """
        if self.closed:
            raise RuntimeError('Constraint set is closed. Create a new set to add lines.')
        dof = int(dof)
        if dof in self._lines:
            return False
        self._lines[dof] = [(int(d), float(w)) for d, w in entries]
        self._inhomogeneity[dof] = float(inhomogeneity)
        return True

    def line(self, dof: int) -> Tuple[Line, float]:
        return self._lines[int(dof)], self._inhomogeneity[int(dof)]

    @property
    def constrained_dofs(self) -> np.ndarray:
        return np.asarray(sorted(self._lines), dtype=np.int64)

    def dependencies(self) -> np.ndarray:
        """DOFs that appear on the right-hand side of some line."""
        deps = {d for entries in self._lines.values() for d, _ in entries}
        return np.asarray(sorted(deps), dtype=np.int64)

    def close(self) -> None:
        """Resolve chains of lines.

        Raises:
            ConstraintCycleError: If the lines contain a cycle.
        """
        if self.closed:
            return
        resolved: Dict[int, Tuple[Line, float]] = {}

        def resolve(dof: int, stack: set) -> Tuple[Line, float]:
            if dof in resolved:
                return resolved[dof]
            if dof in stack:
                raise ConstraintCycleError(f'Cyclic constraint through DOF {dof}')
            stack.add(dof)
            weights: Dict[int, float] = defaultdict(float)
            inhom = self._inhomogeneity[dof]
            for dep, w in self._lines[dof]:
                if dep in self._lines:
                    sub_entries, sub_inhom = resolve(dep, stack)
                    for d, w2 in sub_entries:
                        weights[d] += w * w2
                    inhom += w * sub_inhom
                else:
                    weights[dep] += w
            stack.discard(dof)
            resolved[dof] = (sorted((d, w) for d, w in weights.items() if w != 0.0), inhom)
            return resolved[dof]

        for dof in list(self._lines):
            resolve(dof, set())
        self._lines = {d: entries for d, (entries, _) in resolved.items()}
        self._inhomogeneity = {d: inhom for d, (_, inhom) in resolved.items()}
        self.closed = True
        logger.debug('Closed constraint set with %d lines', len(self._lines))

    def _check_closed(self) -> None:
        if not self.closed:
            raise RuntimeError('Constraint set is not closed. Call close() first.')

    def expand(self, dof: int) -> Tuple[Line, float]:
        """Unconstrained DOFs a DOF stands for, and its inhomogeneity."""
        dof = int(dof)
        if dof in self._lines:
            return self._lines[dof], self._inhomogeneity[dof]
        return [(dof, 1.0)], 0.0

    def stencil(self, local_dofs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Matrix positions a cell with these DOFs writes to."""
        self._check_closed()
        local_dofs = np.asarray(local_dofs, dtype=np.int64)
        if not any(int(d) in self._lines for d in local_dofs):
            n = len(local_dofs)
            return np.repeat(local_dofs, n), np.tile(local_dofs, n)
        targets = sorted({d for dof in local_dofs for d, _ in self.expand(dof)[0]})
        targets = np.asarray(targets, dtype=np.int64)
        constrained = np.asarray([d for d in local_dofs if int(d) in self._lines], dtype=np.int64)
        n = len(targets)
        rows = np.concatenate([np.repeat(targets, n), constrained])
        cols = np.concatenate([np.tile(targets, n), constrained])
        return rows, cols

    def distribute_local_to_global(self, cell_matrix: Optional[np.ndarray], cell_rhs: Optional[np.ndarray],
                                   local_dofs: np.ndarray, accumulator) -> None:
        """Copy a cell contribution into a global system, applying the constraints.

        Constrained rows receive only a diagonal entry equal to the mean
        absolute diagonal of the cell matrix and a zero right-hand side.
        Inhomogeneities of constrained columns are moved to the right-hand side.

        Args:
            cell_matrix: ``(n, n)`` cell matrix, or None for a right-hand side only.
            cell_rhs: ``(n,)`` cell vector, or None for a matrix only.
            local_dofs: Global DOF of every local shape function.
            accumulator: Object with ``add_matrix_entries`` and ``add_rhs_entries``.
        """
        self._check_closed()
        local_dofs = np.asarray(local_dofs, dtype=np.int64)
        n = len(local_dofs)
        expansions = [self.expand(d) for d in local_dofs]
        plain = all(int(d) not in self._lines for d in local_dofs)

        if cell_matrix is not None:
            cell_matrix = np.asarray(cell_matrix, dtype=np.float64)
            if plain:
                accumulator.add_matrix_entries(np.repeat(local_dofs, n), np.tile(local_dofs, n), cell_matrix.ravel())
            else:
                rows, cols, vals = [], [], []
                rhs_rows, rhs_vals = [], []
                for i in range(n):
                    entries_i, _ = expansions[i]
                    for j in range(n):
                        kij = cell_matrix[i, j]
                        if kij == 0.0:
                            continue
                        entries_j, g_j = expansions[j]
                        for a, wa in entries_i:
                            for b, wb in entries_j:
                                rows.append(a)
                                cols.append(b)
                                vals.append(wa * wb * kij)
                            if g_j != 0.0:
                                rhs_rows.append(a)
                                rhs_vals.append(-wa * kij * g_j)
                diag = np.abs(np.diag(cell_matrix))
                scale = float(diag.mean()) if diag.mean() > 0.0 else 1.0
                for d in local_dofs:
                    if int(d) in self._lines:
                        rows.append(int(d))
                        cols.append(int(d))
                        vals.append(scale)
                accumulator.add_matrix_entries(
                    np.asarray(rows, dtype=np.int64), np.asarray(cols, dtype=np.int64),
                    np.asarray(vals, dtype=np.float64)
                )
                if rhs_rows:
                    accumulator.add_rhs_entries(
                        np.asarray(rhs_rows, dtype=np.int64), np.asarray(rhs_vals, dtype=np.float64)
                    )

        if cell_rhs is not None:
            cell_rhs = np.asarray(cell_rhs, dtype=np.float64)
            if plain:
                accumulator.add_rhs_entries(local_dofs, cell_rhs)
            else:
                rhs_rows, rhs_vals = [], []
                for i in range(n):
                    for a, wa in expansions[i][0]:
                        rhs_rows.append(a)
                        rhs_vals.append(wa * cell_rhs[i])
                if rhs_rows:
                    accumulator.add_rhs_entries(
                        np.asarray(rhs_rows, dtype=np.int64), np.asarray(rhs_vals, dtype=np.float64)
                    )

    def distribute(self, vector) -> None:
        """Set every constrained entry of a vector from its line.

        Args:
            vector: Object supporting ``vector[index]`` reads and writes for
                the constrained DOFs and their dependencies, e.g. a
                :class:`~aquiflow.fem.system.GhostedVector`. Lines for DOFs the
                vector does not hold are skipped.
        """
        self._check_closed()
        for dof, entries in self._lines.items():
            if dof not in vector:
                continue
            value = self._inhomogeneity[dof]
            for dep, w in entries:
                value += w * vector[dep]
            vector[dof] = value
