"""Unit tests for the distributed CG solver."""

import logging
import sys
from pathlib import Path

import numpy as np
import pytest
import scipy.sparse as sp
from mpi4py import MPI
from scipy.sparse.linalg import spsolve

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from aquiflow.config import SolverConfig
from aquiflow.core.dofs import DistributedDofField
from aquiflow.fem.assembler import SystemAssembler
from aquiflow.fem.element import Q1Element
from aquiflow.fem.solver import DistributedOperator, LinearSolver
from aquiflow.fem.system import DofPartition, LinearSystem


def laplacian_system(n):
    matrix = sp.diags([-np.ones(n - 1), 2.0 * np.ones(n), -np.ones(n - 1)], [-1, 0, 1], format='csr')
    partition = DofPartition(np.array([0, n]), 0)
    return LinearSystem(matrix, np.ones(n), partition)


def test_cg_matches_direct_solve():
    system = laplacian_system(20)
    solver = LinearSolver(SolverConfig(tolerance=1e-12), MPI.COMM_SELF)
    x, report = solver.cg(DistributedOperator(system, MPI.COMM_SELF), system.rhs)
    np.testing.assert_allclose(x, spsolve(system.matrix.tocsc(), system.rhs), rtol=1e-8)
    assert report.converged
    assert report.iterations <= 20
    assert report.n_dofs == 20
    assert report.initial_residual == pytest.approx(np.sqrt(20.0))


def test_zero_rhs_needs_no_iterations():
    system = laplacian_system(5)
    solver = LinearSolver(comm=MPI.COMM_SELF)
    x, report = solver.cg(DistributedOperator(system, MPI.COMM_SELF), np.zeros(5))
    assert report.iterations == 0
    assert report.converged
    np.testing.assert_array_equal(x, np.zeros(5))


def test_operator_on_one_rank_has_no_ghosts():
    system = laplacian_system(4)
    op = DistributedOperator(system, MPI.COMM_SELF)
    assert len(op.ghost_columns) == 0
    np.testing.assert_allclose(op.matvec(np.ones(4)), [1.0, 0.0, 0.0, 1.0])


def test_invalid_config():
    with pytest.raises(ValueError, match="tolerance must be positive"):
        SolverConfig(tolerance=0.0)
    with pytest.raises(ValueError, match="max_iterations must be >= 1"):
        SolverConfig(max_iterations=0)


class TestSolveOnMesh:

    def assemble(self, mesh):
        field = DistributedDofField(mesh)
        field.setup({0: 10.0, 1: 6.0})
        assembler = SystemAssembler(Q1Element(2), top_boundary_ids=(3,))
        system = assembler.assemble(mesh, field, conductivity=5.0, recharge=1e-3)
        return field, system

    def test_constrained_dofs_are_filled_in(self, mesh_2d):
        field, system = self.assemble(mesh_2d)
        solver = LinearSolver(SolverConfig(tolerance=1e-12), MPI.COMM_SELF)
        solution, report = solver.solve(system, field)
        assert report.converged
        assert solution[field.dof_of((0, 0))] == pytest.approx(10.0)
        assert solution[field.dof_of((4 << 30, 2 << 30))] == pytest.approx(6.0)

    def test_non_convergence_is_a_warning(self, mesh_2d, caplog):
        mesh_2d.refine_global(1)
        field, system = self.assemble(mesh_2d)
        solver = LinearSolver(SolverConfig(tolerance=1e-30, max_iterations=1), MPI.COMM_SELF)
        with caplog.at_level(logging.WARNING, logger="aquiflow"):
            solution, report = solver.solve(system, field)
        assert not report.converged
        assert report.iterations == 1
        assert "did not converge" in caplog.text
        assert solution[field.dof_of((0, 0))] == pytest.approx(10.0)

    def test_stale_field_is_rejected(self, mesh_2d):
        field, system = self.assemble(mesh_2d)
        mesh_2d.refine_global(1)
        with pytest.raises(RuntimeError, match="out of date"):
            LinearSolver(comm=MPI.COMM_SELF).solve(system, field)
