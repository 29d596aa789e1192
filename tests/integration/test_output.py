"""Integration tests for the VTU solution writer."""

import sys
from pathlib import Path

import meshio
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from aquiflow.config import OutputConfig, SimulationConfig
from aquiflow.core.simulation import GroundwaterFlow
from aquiflow.utils.output import SolutionWriter, pvtu_record, visit_record


def test_simulation_writes_iteration_files(mesh_2d, tmp_path):
    config = SimulationConfig(dim=2, output=OutputConfig(directory=str(tmp_path / 'out'), prefix='head-'))
    flow = GroundwaterFlow(mesh_2d, conductivity=2.0, dirichlet={0: 10.0, 1: 6.0}, config=config)
    result = flow.simulate(4)

    assert result.output_file == tmp_path / 'out' / 'head-004.pvtu'
    assert result.output_file.exists()
    assert (tmp_path / 'out' / 'head-004.0000.vtu').exists()
    visit = (tmp_path / 'out' / 'head-004.visit').read_text().splitlines()
    assert visit == ['!NBLOCKS 1', 'head-004.0000.vtu']

    piece = meshio.read(tmp_path / 'out' / 'head-004.0000.vtu')
    assert len(piece.points) == 15
    assert piece.cells[0].type == 'quad'
    assert len(piece.cells[0].data) == 8
    np.testing.assert_allclose(piece.point_data['Head'], 10.0 - piece.points[:, 0], atol=1e-6)
    np.testing.assert_allclose(piece.cell_data['Conductivity'][0], 2.0)
    np.testing.assert_allclose(piece.cell_data['subdomain'][0], 0.0)


def test_hexahedra_are_written_in_vtk_order(mesh_3d, tmp_path):
    config = SimulationConfig(dim=3, output=OutputConfig(directory=str(tmp_path)))
    flow = GroundwaterFlow(mesh_3d, conductivity=1.0, dirichlet={0: 1.0}, config=config)
    flow.simulate(0)

    piece = meshio.read(tmp_path / 'solution-000.0000.vtu')
    hexes = piece.cells[0].data
    assert piece.cells[0].type == 'hexahedron'
    # VTK hexahedra list the bottom face counter-clockwise, then the top face
    first = piece.points[hexes[0]]
    np.testing.assert_allclose(first[:4, 2], first[0, 2])
    np.testing.assert_allclose(first[4:, 2], first[4, 2])
    edge_a = first[1] - first[0]
    edge_b = first[3] - first[0]
    assert np.cross(edge_a, edge_b)[2] > 0.0


def test_disabled_output(mesh_2d, tmp_path):
    config = SimulationConfig(dim=2, output=OutputConfig(directory=str(tmp_path / 'none'), enabled=False))
    flow = GroundwaterFlow(mesh_2d, conductivity=1.0, dirichlet={0: 1.0}, config=config)
    assert flow.writer is None
    assert flow.simulate(0).output_file is None
    assert not (tmp_path / 'none').exists()


def test_file_names():
    writer = SolutionWriter('results', prefix='solution-')
    assert writer.piece_name(12, 3) == 'solution-012.0003.vtu'
    assert writer.master_name(12, 'pvtu') == 'solution-012.pvtu'


def test_master_records():
    xml = pvtu_record(['a.vtu', 'b.vtu'], ['Head'], ['subdomain'])
    assert '<Piece Source="a.vtu"/>' in xml
    assert '<Piece Source="b.vtu"/>' in xml
    assert 'Name="Head"' in xml and 'Name="subdomain"' in xml
    assert visit_record(['a.vtu', 'b.vtu']) == '!NBLOCKS 2\na.vtu\nb.vtu\n'


def test_writer_needs_a_solution(mesh_2d, tmp_path):
    config = SimulationConfig(dim=2, output=OutputConfig(directory=str(tmp_path)))
    flow = GroundwaterFlow(mesh_2d, conductivity=1.0, config=config)
    with pytest.raises(RuntimeError, match="No current solution"):
        flow.output(0)
