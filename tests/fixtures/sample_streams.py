"""Sample stream and well data for testing."""

import geopandas as gpd
import numpy as np
from shapely.geometry import LineString, MultiLineString, Point

STREAM_FILE_TEXT = """2
0.0 5.0 10.0 5.0 2.0 1.0
0.0 0.0 8.0 6.0 1.5 0.5
"""


class RecordingAccumulator:
    """Collects matrix and right-hand side entries instead of assembling them."""

    def __init__(self):
        self.rows, self.cols, self.vals = [], [], []
        self.rhs_rows, self.rhs_vals = [], []

    def add_matrix_entries(self, rows, cols, values):
        self.rows.extend(np.asarray(rows).tolist())
        self.cols.extend(np.asarray(cols).tolist())
        self.vals.extend(np.asarray(values).tolist())

    def add_rhs_entries(self, rows, values):
        self.rhs_rows.extend(np.asarray(rows).tolist())
        self.rhs_vals.extend(np.asarray(values).tolist())

    def rhs_total(self):
        return float(np.sum(self.rhs_vals))

    def rhs_vector(self, n):
        out = np.zeros(n)
        np.add.at(out, np.asarray(self.rhs_rows, dtype=np.int64), np.asarray(self.rhs_vals))
        return out


def create_stream_records():
    """Horizontal stream along y = 5 across a 10 x 10 domain."""
    return [(0.0, 5.0, 10.0, 5.0, 2.0, 1.0)]

def create_stream_lines():
    """Stream lines with rate and half-width columns."""
    main = LineString([(0, 0), (10, 0), (10, 10)])
    tributary = LineString([(5, -5), (5, 0)])
    gdf = gpd.GeoDataFrame(
        {'rate': [2.0, 1.0], 'half_width': [1.0, 0.5]},
        geometry=[main, tributary], crs='EPSG:32618'
    )
    return gdf

def create_multiline_stream():
    """One stream stored as a MultiLineString with two touching parts."""
    multiline = MultiLineString([[(0, 0), (4, 0)], [(4, 0), (4, 3)]])
    return gpd.GeoDataFrame({'rate': [1.0], 'half_width': [0.5]}, geometry=[multiline], crs='EPSG:32618')

def create_wells():
    """Two wells with screen elevations."""
    gdf = gpd.GeoDataFrame(
        {'rate': [-3.0, 1.5], 'screen_z': [-5.0, -2.0]},
        geometry=[Point(2.5, 2.5), Point(7.5, 5.0)], crs='EPSG:32618'
    )
    return gdf
