"""Integration tests for the groundwater flow driver."""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent / "fixtures"))

from aquiflow.config import OutputConfig, SimulationConfig, SolverConfig, StreamConfig
from aquiflow.core.simulation import GroundwaterFlow, SimulationState
from aquiflow.geometry.point import PointWellHandler
from aquiflow.geometry.recharge import StreamRechargeEngine


def quiet_config(dim, **kwargs):
    return SimulationConfig(
        dim=dim, solver=SolverConfig(tolerance=1e-10), output=OutputConfig(enabled=False), **kwargs
    )


def all_heads(flow):
    dofs = np.arange(flow.dof_field.n_dofs)
    return flow.dof_field.support_points(dofs), flow.solution.values_at(dofs)


class TestLinearHead:
    """A head drop between two fixed sides gives a linear head."""

    def test_uniform_mesh(self, mesh_2d):
        flow = GroundwaterFlow(mesh_2d, conductivity=5.0, dirichlet={0: 10.0, 1: 6.0}, config=quiet_config(2))
        result = flow.simulate(0)
        assert result.solver.converged
        assert result.n_dofs == 15
        points, heads = all_heads(flow)
        np.testing.assert_allclose(heads, 10.0 - points[:, 0], atol=1e-7)
        assert flow.state == SimulationState.IDLE

    def test_hanging_vertices(self, mesh_2d):
        mesh_2d.execute_coarsening_and_refinement([mesh_2d.find_cell(0, (1, 0))])
        flow = GroundwaterFlow(mesh_2d, conductivity=5.0, dirichlet={0: 10.0, 1: 6.0}, config=quiet_config(2))
        result = flow.simulate(0)
        assert result.n_dofs == 20
        points, heads = all_heads(flow)
        np.testing.assert_allclose(heads, 10.0 - points[:, 0], atol=1e-7)

    def test_anisotropic_conductivity(self, mesh_3d):
        flow = GroundwaterFlow(
            mesh_3d, conductivity=[2.0, 1.0, 0.1], dirichlet={0: 1.0, 1: 0.0}, config=quiet_config(3)
        )
        flow.simulate(0)
        points, heads = all_heads(flow)
        np.testing.assert_allclose(heads, 1.0 - points[:, 0] / 10.0, atol=1e-7)


def test_zero_problem(mesh_2d):
    flow = GroundwaterFlow(mesh_2d, conductivity=1.0, dirichlet={0: 0.0}, config=quiet_config(2))
    result = flow.simulate(0)
    assert result.solver.iterations == 0
    np.testing.assert_array_equal(all_heads(flow)[1], 0.0)


def test_recharge_raises_the_head(mesh_2d):
    flow = GroundwaterFlow(mesh_2d, conductivity=1.0, recharge=0.5, dirichlet={0: 0.0}, config=quiet_config(2))
    flow.simulate(0)
    points, heads = all_heads(flow)
    # all recharge leaves through the x = 0 side: head grows away from it
    assert np.all(heads[points[:, 0] > 0.0] > 0.0)
    far = heads[np.isclose(points[:, 0], 4.0)]
    near = heads[np.isclose(points[:, 0], 1.0)]
    assert far.mean() > near.mean()


def test_well_pumping_lowers_the_head(mesh_3d):
    wells = PointWellHandler.from_points([(7.5, 5.0, -5.0)], [-2.0])
    flow = GroundwaterFlow(mesh_3d, conductivity=1.0, dirichlet={0: 10.0}, config=quiet_config(3), wells=wells)
    flow.simulate(0)
    _, heads = all_heads(flow)
    assert heads.min() < 10.0
    assert flow.solution[flow.dof_field.dof_of((0, 0, 0))] == pytest.approx(10.0)


class TestAdaptiveLoop:

    def test_refinement_cycles(self, mesh_2d):
        flow = GroundwaterFlow(
            mesh_2d, conductivity=1.0, recharge=1e-3, dirichlet={0: 10.0}, config=quiet_config(2)
        )
        n_cells = []
        for it in range(3):
            result = flow.simulate_and_refine(it)
            assert result.iteration == it
            assert result.solver.converged
            assert result.n_refined >= 1
            n_cells.append(result.n_active_cells)
            assert flow.state == SimulationState.IDLE
            assert mesh_2d.is_balanced()
        assert n_cells[0] < n_cells[1] < n_cells[2]
        assert not flow.dof_field.is_current()

    def test_timing_summary(self, mesh_2d):
        flow = GroundwaterFlow(mesh_2d, conductivity=1.0, dirichlet={0: 1.0}, config=quiet_config(2))
        flow.simulate_and_refine(0)
        summary = flow.timing_summary()
        assert set(summary['section']) == {'setup', 'sources', 'assemble', 'solve', 'refine'}


class TestPhaseOrder:

    def make_flow(self, mesh):
        return GroundwaterFlow(mesh, conductivity=1.0, dirichlet={0: 1.0}, config=quiet_config(2))

    def test_refine_before_solve(self, mesh_2d):
        with pytest.raises(RuntimeError, match="Refinement needs a current solution"):
            self.make_flow(mesh_2d).refine()

    def test_sources_before_setup(self, mesh_2d):
        with pytest.raises(RuntimeError, match="Call setup_system\\(\\) first"):
            self.make_flow(mesh_2d).inject_sources()

    def test_solve_before_assembly(self, mesh_2d):
        flow = self.make_flow(mesh_2d)
        flow.setup_system()
        flow.inject_sources()
        with pytest.raises(RuntimeError, match="current state: source_injection"):
            flow.solve()

    def test_solution_is_stale_after_refinement(self, mesh_2d):
        flow = self.make_flow(mesh_2d)
        flow.simulate(0)
        mesh_2d.refine_global(1)
        with pytest.raises(RuntimeError, match="No current solution"):
            flow.output(0)

    def test_dimension_mismatch(self, mesh_2d):
        with pytest.raises(ValueError, match="dim=3 but the mesh has dim=2"):
            GroundwaterFlow(mesh_2d, conductivity=1.0, config=SimulationConfig(dim=3))


class TestStreams:

    def test_stream_file_from_config(self, mesh_3d, stream_file):
        config = quiet_config(3, streams=StreamConfig(stream_file=str(stream_file)))
        flow = GroundwaterFlow(mesh_3d, conductivity=1.0, dirichlet={0: 0.0}, config=config)
        assert isinstance(flow.streams, StreamRechargeEngine)
        assert len(flow.streams.catalog) == 2

        n_refined = flow.refine_near_streams(1)
        assert n_refined > 0
        assert mesh_3d.n_active_cells > 4

        result = flow.simulate(0)
        assert result.solver.converged
        _, heads = all_heads(flow)
        assert heads.max() > 0.0
        assert flow.solution[flow.dof_field.dof_of((0, 0, 0))] == 0.0

    def test_streams_on_2d_mesh_are_disabled(self, mesh_2d, stream_file):
        config = quiet_config(2, streams=StreamConfig(stream_file=str(stream_file)))
        flow = GroundwaterFlow(mesh_2d, conductivity=1.0, dirichlet={0: 0.0}, config=config)
        assert flow.refine_near_streams(2) == 0
        result = flow.simulate(0)
        assert result.solver.iterations == 0
