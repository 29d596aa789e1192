"""Integration tests for GmshModel with real GMSH."""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import gmsh_required


def test_model_requires_context():
    from aquiflow.core.model import GmshModel

    model = GmshModel("outside")
    with pytest.raises(RuntimeError, match="is not initialized"):
        model.synchronize()
    with pytest.raises(RuntimeError, match="is not initialized"):
        model.structured_box((0, 0), (1, 1), (1, 1))

@pytest.mark.gmsh
@gmsh_required
def test_context_manager_finalizes_on_error():
    from aquiflow.core.model import GmshModel

    model = GmshModel("exception_test")
    with pytest.raises(ValueError, match="boom"):
        with model:
            assert model._initialized
            raise ValueError("boom")
    assert not model._initialized

    # a new model can be opened after the failure
    with GmshModel("after_exception") as other:
        other.synchronize()

@pytest.mark.gmsh
@gmsh_required
def test_structured_box_2d():
    from aquiflow.core.model import GmshModel

    with GmshModel("box2d") as model:
        grid = model.structured_box((0, 0), (10, 5), (4, 2))
        quality = model.get_element_quality()

    assert grid.shape == (4, 2)
    np.testing.assert_allclose(grid.vertices[1, 2], (2.5, 5.0))
    assert len(quality) == 8
    assert quality.index.name == 'element'
    assert (quality['minSJ'] > 0.99).all()

@pytest.mark.gmsh
@gmsh_required
def test_structured_box_3d_with_elevation():
    from aquiflow.core.model import GmshModel

    with GmshModel("box3d") as model:
        grid = model.structured_box(
            (0, 0, -20), (100, 80, 0), (4, 4, 2), top=lambda xy: 10.0 + 0.1 * xy[:, 0]
        )
        quality = model.get_element_quality(3)

    assert grid.shape == (4, 4, 2)
    assert len(quality) == 32
    np.testing.assert_allclose(grid.vertices[4, 0, 2], (100.0, 0.0, 20.0))
    np.testing.assert_allclose(grid.vertices[0, 0, 0], (0.0, 0.0, -20.0))

@pytest.mark.gmsh
@gmsh_required
def test_grid_feeds_the_mesh(comm):
    from aquiflow.core.mesh import AquiferMesh
    from aquiflow.core.model import GmshModel

    with GmshModel("mesh_input") as model:
        grid = model.structured_box((0, 0, -10), (10, 10, 0), (2, 2, 1))
    mesh = AquiferMesh(grid, comm)
    assert mesh.n_active_cells == 4
    np.testing.assert_allclose(mesh.cell_vertices(0)[-1], (5.0, 5.0, 0.0))

@pytest.mark.gmsh
@gmsh_required
def test_quality_without_mesh():
    from aquiflow.core.model import QUALITY_MEASURES, GmshModel

    with GmshModel("empty") as model:
        quality = model.get_element_quality()
    assert quality.empty
    assert list(quality.columns) == QUALITY_MEASURES

@pytest.mark.gmsh
@gmsh_required
def test_invalid_box_arguments():
    from aquiflow.core.model import GmshModel

    with GmshModel("invalid") as model:
        with pytest.raises(ValueError, match="Upper corner must exceed"):
            model.structured_box((0, 0), (0, 1), (1, 1))
        with pytest.raises(ValueError, match="Elevation functions need a 3D box"):
            model.structured_box((0, 0), (1, 1), (1, 1), top=lambda xy: xy[:, 0] + 1.0)
