"""GIS preprocessing of stream lines for AquiFlow."""

import logging
from pathlib import Path
from typing import Optional, Union

import geopandas as gpd
import pandas as pd
import shapely.ops
import topojson as tp

from ..geometry.line import RECORD_COLUMNS

logger = logging.getLogger(__name__)


def merge_many_multilinestring_into_one_linestring(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Merge the parts of every MultiLineString into a single LineString.

    Args:
        gdf: A GeoDataFrame containing MultiLineString geometries.

    Returns:
        The GeoDataFrame with merged LineString geometries.

    Raises:
        ValueError: If there is no MultiLineString to merge.
        RuntimeError: If some parts cannot be merged into one line.
    """
    if not any(gdf.geom_type == 'MultiLineString'):
        available_types = gdf.geom_type.unique()
        raise ValueError(
            f'GeoDataFrame must contain MultiLineString geometries. Found geometry types: {available_types}'
        )
    gdf = gdf.copy()
    gdf.geometry = gdf.geometry.apply(
        lambda g: shapely.ops.linemerge(g, directed=True) if g.geom_type == 'MultiLineString' else g
    )
    if not all(gdf.geom_type == 'LineString'):
        remaining_types = gdf.geom_type[gdf.geom_type != 'LineString'].unique()
        raise RuntimeError(f'LineString merging failed. Non-LineString geometries remain: {remaining_types}')
    return gdf


def simplify_keeping_topology(gdf: gpd.GeoDataFrame, tolerance: float) -> gpd.GeoDataFrame:
    """Simplify geometries while keeping shared vertices shared.

    Uses TopoJSON topology-preserving simplification, so that tributaries
    stay connected to the main stream.

    Args:
        gdf: Geometries to simplify.
        tolerance: Simplification tolerance in model length units.
    """
    topo = tp.Topology(gdf, prequantize=False)
    simple = topo.toposimplify(tolerance).to_gdf()
    gdf = gdf.copy()
    gdf.geometry = simple.geometry.values
    return gdf


def streams_from_lines(gdf: gpd.GeoDataFrame, rate_column: str = 'rate', width_column: str = 'half_width',
                       tolerance: Optional[float] = None, keep_topology: bool = False,
                       merge_parts: bool = False) -> pd.DataFrame:
    """Split stream lines into straight segment records.

    Every pair of consecutive vertices of every line becomes one record
    ``(ax, ay, bx, by, rate, half_width)`` carrying the attributes of its line.

    Args:
        gdf: LineString or MultiLineString stream geometries.
        rate_column: Column with the recharge rate of each line.
        width_column: Column with the half-width of each line.
        tolerance: If given, lines are simplified with this tolerance first.
        keep_topology: Simplify with TopoJSON so that junctions are kept.
        merge_parts: Merge the parts of MultiLineStrings into one line
            instead of treating every part as its own line.

    Returns:
        DataFrame with the record columns, usable with
        :meth:`StreamCatalog.from_records`.
    """
    valid_types = ['LineString', 'MultiLineString']
    if not all(gdf.geom_type.isin(valid_types)):
        invalid_types = gdf.geom_type[~gdf.geom_type.isin(valid_types)].unique()
        raise ValueError(f'All geometries must be LineString or MultiLineString. Found: {invalid_types}')
    for col in (rate_column, width_column):
        if col not in gdf.columns:
            raise ValueError(f"Column '{col}' not found. Available columns: {list(gdf.columns)}")

    lines = gdf[[rate_column, width_column, gdf.geometry.name]]
    if any(lines.geom_type == 'MultiLineString') and merge_parts:
        lines = merge_many_multilinestring_into_one_linestring(lines)
    elif any(lines.geom_type == 'MultiLineString'):
        lines = lines.explode(index_parts=False).reset_index(drop=True)
    if tolerance is not None:
        if keep_topology:
            lines = simplify_keeping_topology(lines, tolerance)
        else:
            logger.warning('Stream lines are simplified without keeping topology, check the junctions')
            lines = lines.copy()
            lines.geometry = lines.geometry.simplify(tolerance)

    records = []
    for geom, rate, width in zip(lines.geometry, lines[rate_column], lines[width_column]):
        coords = list(geom.coords)
        for (ax, ay, *_), (bx, by, *_) in zip(coords[:-1], coords[1:]):
            records.append((ax, ay, bx, by, float(rate), float(width)))
    return pd.DataFrame(records, columns=RECORD_COLUMNS)


def write_stream_file(records: pd.DataFrame, path: Union[str, Path]) -> None:
    """Write segment records in the whitespace-separated stream file format."""
    missing = [c for c in RECORD_COLUMNS if c not in records.columns]
    if missing:
        raise ValueError(f'Records are missing columns {missing}. Available columns: {list(records.columns)}')
    with open(path, 'w', encoding='utf-8') as fh:
        fh.write(f'{len(records)}\n')
        records[RECORD_COLUMNS].to_csv(fh, sep=' ', header=False, index=False)

