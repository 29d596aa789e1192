#import libraries for the groundwater model
import logging
from pathlib import Path

import geopandas as gpd
import numpy as np
from mpi4py import MPI
from shapely.geometry import LineString, Point

import aquiflow
from aquiflow.core.model import HAS_GMSH

# run with e.g. `mpirun -n 4 python stream_valley_adaptive.py`
SCRIPT_DIR = Path(__file__).resolve().parent
wdout = SCRIPT_DIR / "output"

aquiflow.setup_logging(logging.INFO, log_file=str(SCRIPT_DIR / "stream_valley.log"))
logger = logging.getLogger("aquiflow.examples")

# Streams
# a river along the valley axis and a tributary joining it from the north
rivers = gpd.GeoDataFrame(
    {'rate': [2e-3, 1e-3], 'half_width': [15.0, 5.0]},
    geometry=[
        LineString([(0, 400), (300, 420), (650, 380), (1000, 400)]),
        LineString([(500, 800), (560, 600), (620, 390)]),
    ],
    crs='EPSG:32618',
)
# split the lines into one record per straight segment and save them
records = aquiflow.streams_from_lines(rivers, tolerance=1.0)
stream_file = SCRIPT_DIR / "streams.txt"
if MPI.COMM_WORLD.Get_rank() == 0:
    aquiflow.write_stream_file(records, stream_file)
MPI.COMM_WORLD.Barrier()

# Wells
wells_gdf = gpd.GeoDataFrame(
    {'rate': [-5.0, -2.5], 'screen_z': [-30.0, -20.0]},
    geometry=[Point(250, 250), Point(750, 600)],
    crs='EPSG:32618',
)
wells = aquiflow.PointWellHandler()
wells.set_gdf_well(wells_gdf, z_column='screen_z')

# Coarse grid
# 1000 m x 800 m valley with its base at -50 m and the ground surface sloping down to the river
def ground_surface(xy):
    return 20.0 + 0.02 * np.abs(xy[:, 1] - 400.0)

lower, upper, subdivisions = (0.0, 0.0, -50.0), (1000.0, 800.0, 0.0), (10, 8, 2)
if HAS_GMSH:
    with aquiflow.GmshModel("stream_valley") as gmsh_model:
        grid = gmsh_model.structured_box(lower, upper, subdivisions, top=ground_surface)
        quality = gmsh_model.get_element_quality()
    logger.info('Coarse grid quality: min scaled Jacobian %.3f', quality['minSJ'].min())
else:
    grid = aquiflow.CoarseGrid.box(lower, upper, subdivisions).with_elevation(ground_surface)
mesh = aquiflow.AquiferMesh(grid)

# Simulation settings
config = aquiflow.SimulationConfig.from_dict({
    'dim': 3,
    'solver': {'tolerance': 1e-10},
    'refinement': {'top_fraction': 0.3, 'bottom_fraction': 0.03, 'max_level': 6},
    'streams': {'stream_file': str(stream_file), 'axis_tolerance': 0.1},
    'output': {'directory': str(wdout), 'prefix': 'solution-'},
})

# Anisotropic conductivity: horizontal 10 m/d, vertical 1 m/d
conductivity = aquiflow.ConstantConductivity([10.0, 10.0, 1.0])
# fixed head on the west and east sides of the valley
dirichlet = {0: 25.0, 1: 20.0}

flow = aquiflow.GroundwaterFlow(
    mesh, conductivity, recharge=2e-4, dirichlet=dirichlet, config=config, wells=wells
)

# refine once around the streams before the adaptive loop
flow.refine_near_streams(cycles=1)

for cycle in range(4):
    logger.info('Cycle %d:', cycle)
    result = flow.simulate_and_refine(cycle)
    logger.info('   %d cells, %d DOFs, solver converged: %s',
                result.n_active_cells, result.n_dofs, result.solver.converged)

flow.timing_summary()
