"""Unit tests for the system assembler."""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from aquiflow.core.dofs import DistributedDofField
from aquiflow.core.mesh import AquiferMesh
from aquiflow.core.simulation import GroundwaterFlow
from aquiflow.fem.assembler import SystemAssembler, recharge_weight
from aquiflow.fem.element import Q1Element

UNIT_SQUARE_STIFFNESS = np.array([
    [4.0, -1.0, -1.0, -2.0],
    [-1.0, 4.0, -2.0, -1.0],
    [-1.0, -2.0, 4.0, -1.0],
    [-2.0, -1.0, -1.0, 4.0],
]) / 6.0


@pytest.fixture
def unit_cell(comm):
    return AquiferMesh.box((0.0, 0.0), (1.0, 1.0), (1, 1), comm=comm)


class TestSystemAssembler:

    def test_construction_builds_both_rules(self):
        assembler = SystemAssembler(Q1Element(2), top_boundary_ids=(3,))
        points, weights = assembler.face_rule
        assert points.shape == (2, 1)
        assert weights.sum() == pytest.approx(1.0)
        assert assembler.cell_rule[0].shape == (4, 2)
        assert assembler.top_boundary_ids == frozenset({3})

    def test_custom_point_counts(self):
        assembler = SystemAssembler(Q1Element(3), cell_points=3, face_points=1)
        assert assembler.cell_rule[0].shape == (27, 3)
        assert assembler.face_rule[0].shape == (1, 2)

    def test_unit_square_stiffness(self, unit_cell):
        assembler = SystemAssembler(Q1Element(2), top_boundary_ids=(3,))
        matrix = assembler.cell_matrix(unit_cell.cell_vertices(0), 1.0)
        np.testing.assert_allclose(matrix, UNIT_SQUARE_STIFFNESS, atol=1e-12)

    def test_recharge_lands_on_the_top_face(self, unit_cell):
        field = DistributedDofField(unit_cell)
        field.setup()
        assembler = SystemAssembler(Q1Element(2), top_boundary_ids=(3,))
        system = assembler.assemble(unit_cell, field, conductivity=1.0, recharge=2.0)

        dofs = field.cell_dofs(0)
        np.testing.assert_allclose(system.rhs[dofs], [0.0, 0.0, 1.0, 1.0], atol=1e-12)
        dense = system.matrix.toarray()
        np.testing.assert_allclose(dense[np.ix_(dofs, dofs)], UNIT_SQUARE_STIFFNESS, atol=1e-12)

    def test_untagged_faces_get_no_recharge(self, unit_cell):
        field = DistributedDofField(unit_cell)
        field.setup()
        assembler = SystemAssembler(Q1Element(2), top_boundary_ids=(99,))
        system = assembler.assemble(unit_cell, field, conductivity=1.0, recharge=2.0)
        np.testing.assert_allclose(system.rhs, 0.0)

    def test_recharge_weight_of_a_sloped_face(self):
        assert recharge_weight(np.array([[0.0, 0.0], [3.0, 4.0]]), 5.0) == pytest.approx(0.6)
        assert recharge_weight(np.array([[0.0, 0.0], [3.0, 4.0]]), 0.0) == 0.0

    def test_orchestrator_builds_its_assembler(self, mesh_2d):
        flow = GroundwaterFlow(mesh_2d, conductivity=1.0)
        assert flow.assembler.top_boundary_ids == frozenset({3})
        assert flow.assembler.face_rule[0].shape == (2, 1)
