"""Test configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest
from mpi4py import MPI

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent / "fixtures"))

def gmsh_available():
    """Check if GMSH is available."""
    try:
        import gmsh
        gmsh.initialize()
        gmsh.finalize()
        return True
    except Exception:
        return False

# Mark for skipping GMSH tests when not available
gmsh_required = pytest.mark.skipif(
    not gmsh_available(),
    reason="GMSH not available"
)

@pytest.fixture
def comm():
    """Single-process communicator so tests do not depend on mpirun."""
    return MPI.COMM_SELF

@pytest.fixture
def mesh_2d(comm):
    """4 x 2 box mesh of [0, 4] x [0, 2]."""
    from aquiflow.core.mesh import AquiferMesh
    return AquiferMesh.box((0.0, 0.0), (4.0, 2.0), (4, 2), comm=comm)

@pytest.fixture
def mesh_3d(comm):
    """2 x 2 x 1 box mesh of [0, 10] x [0, 10] x [-10, 0]."""
    from aquiflow.core.mesh import AquiferMesh
    return AquiferMesh.box((0.0, 0.0, -10.0), (10.0, 10.0, 0.0), (2, 2, 1), comm=comm)

@pytest.fixture
def stream_file(tmp_path):
    """Stream file with one horizontal and one diagonal segment."""
    from sample_streams import STREAM_FILE_TEXT
    path = tmp_path / "streams.txt"
    path.write_text(STREAM_FILE_TEXT)
    return path
