"""Distributed preconditioned conjugate gradient solver.

The matrix rows are distributed by DOF ownership. Every rank preconditions
its diagonal block with a smoothed aggregation AMG hierarchy (block Jacobi
over ranks), which is a symmetric positive definite preconditioner, so plain
PCG applies.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pyamg
import scipy.sparse as sp
from mpi4py import MPI

from ..config import SolverConfig
from ..core.dofs import DistributedDofField
from ..core.parallel import fetch_values
from .system import GhostedVector, LinearSystem

logger = logging.getLogger(__name__)


@dataclass
class SolverReport:
    """Convergence information of a linear solve."""
    iterations: int
    residual: float
    initial_residual: float
    converged: bool
    n_dofs: int


class DistributedOperator:
    """Owned rows of a distributed matrix with the ghost exchange of its matvec."""

    def __init__(self, system: LinearSystem, comm: MPI.Comm) -> None:
        part = system.partition
        matrix = system.matrix.tocsr()
        self.comm = comm
        self.partition = part
        cols = matrix.indices.astype(np.int64)
        owned = (cols >= part.start) & (cols < part.end)
        self.ghost_columns = np.unique(cols[~owned])
        local_cols = np.empty_like(cols)
        local_cols[owned] = cols[owned] - part.start
        local_cols[~owned] = part.n_owned + np.searchsorted(self.ghost_columns, cols[~owned])
        n_local = part.n_owned + len(self.ghost_columns)
        self.matrix = sp.csr_matrix((matrix.data, local_cols, matrix.indptr), shape=(part.n_owned, n_local))
        self.diagonal_block = self.matrix[:, :part.n_owned].tocsr()

    def matvec(self, x: np.ndarray) -> np.ndarray:
        ghosts = fetch_values(self.comm, self.partition.offsets, x, self.ghost_columns)
        return self.matrix @ np.concatenate([x, ghosts])

    def dot(self, a: np.ndarray, b: np.ndarray) -> float:
        return self.comm.allreduce(float(a @ b), op=MPI.SUM)


class LinearSolver:
    """CG with a block-Jacobi AMG preconditioner.

    Args:
        config: Solver settings. The iteration cap defaults to the number of
            global DOFs and the stopping test is absolute on the residual norm.
        comm: MPI communicator.

    Example:
        >>> solver = LinearSolver(SolverConfig(tolerance=1e-8), comm)
        >>> solution, report = solver.solve(system, dof_field)
    """

    def __init__(self, config: Optional[SolverConfig] = None, comm: Optional[MPI.Comm] = None) -> None:
        self.config = config if config is not None else SolverConfig()
        self.comm = comm if comm is not None else MPI.COMM_WORLD

    def _preconditioner(self, block: sp.csr_matrix):
        if block.shape[0] == 0:
            return lambda r: r.copy()
        ml = pyamg.smoothed_aggregation_solver(
            block, strength=self.config.amg_strength, max_coarse=self.config.amg_max_coarse
        )
        logger.debug('AMG hierarchy with %d levels on %d rows', len(ml.levels), block.shape[0])
        prec = ml.aspreconditioner(cycle='V')
        return lambda r: prec @ r

    def cg(self, op: DistributedOperator, rhs: np.ndarray) -> Tuple[np.ndarray, SolverReport]:
        """Run PCG from a zero initial guess on the owned rows. Collective."""
        tol = self.config.tolerance
        n_dofs = op.partition.n_dofs
        max_it = self.config.max_iterations if self.config.max_iterations is not None else max(n_dofs, 1)
        precondition = self._preconditioner(op.diagonal_block)

        x = np.zeros_like(rhs)
        r = rhs.copy()
        res = np.sqrt(op.dot(r, r))
        initial = res
        it = 0
        converged = res <= tol
        if not converged:
            z = precondition(r)
            p = z.copy()
            rz = op.dot(r, z)
            while it < max_it:
                q = op.matvec(p)
                pq = op.dot(p, q)
                if pq <= 0.0:
                    logger.warning('CG breakdown at iteration %d: p.Ap = %g', it, pq)
                    break
                alpha = rz / pq
                x += alpha * p
                r -= alpha * q
                it += 1
                res = np.sqrt(op.dot(r, r))
                if res <= tol:
                    converged = True
                    break
                z = precondition(r)
                rz_new = op.dot(r, z)
                p = z + (rz_new / rz) * p
                rz = rz_new
        return x, SolverReport(it, float(res), float(initial), bool(converged), n_dofs)

    def solve(self, system: LinearSystem, dof_field: DistributedDofField) -> Tuple[GhostedVector, SolverReport]:
        """Solve the system and fill in the constrained DOFs. Collective.

        Returns:
            The solution with ghost values for the locally relevant DOFs and
            the constraint dependencies, and the convergence report.
        """
        dof_field.check_current()
        op = DistributedOperator(system, self.comm)
        owned, report = self.cg(op, system.rhs)
        if not report.converged:
            logger.warning(
                'CG did not converge in %d iterations: residual %.3e > tolerance %.3e',
                report.iterations, report.residual, self.config.tolerance
            )
        constraints = dof_field.constraints
        needed = np.union1d(dof_field.locally_relevant_dofs, constraints.dependencies())
        needed = np.union1d(needed, constraints.constrained_dofs)
        solution = GhostedVector.from_owned(self.comm, system.partition, owned, needed)
        constraints.distribute(solution)
        return solution, report
