"""Unit tests for preprocessing utilities."""

import logging
import sys
from pathlib import Path

import geopandas as gpd
import pytest
from shapely.geometry import LineString, MultiLineString, Point

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent / "fixtures"))

from aquiflow.geometry.line import StreamCatalog
from aquiflow.utils.preprocessing import (
    merge_many_multilinestring_into_one_linestring,
    simplify_keeping_topology,
    streams_from_lines,
    write_stream_file,
)
from sample_streams import create_multiline_stream, create_stream_lines


class TestMergeMultiLineString:
    """Test multilinestring merging function."""

    def test_merge_multilinestring_basic(self):
        line1 = LineString([(0, 0), (1, 1)])
        line2 = LineString([(1, 1), (2, 2)])
        multiline = MultiLineString([line1, line2])
        gdf = gpd.GeoDataFrame({'id': [1]}, geometry=[multiline])

        result = merge_many_multilinestring_into_one_linestring(gdf)

        assert all(result.geom_type == 'LineString')
        assert len(result) == 1
        # input is left untouched
        assert gdf.geom_type.iloc[0] == 'MultiLineString'

    def test_no_multilinestring_raises_error(self):
        line = LineString([(0, 0), (1, 1)])
        gdf = gpd.GeoDataFrame({'id': [1]}, geometry=[line])

        with pytest.raises(ValueError, match="GeoDataFrame must contain MultiLineString geometries"):
            merge_many_multilinestring_into_one_linestring(gdf)

    def test_disconnected_parts_raise(self):
        multiline = MultiLineString([[(0, 0), (1, 0)], [(5, 5), (6, 5)]])
        gdf = gpd.GeoDataFrame({'id': [1]}, geometry=[multiline])

        with pytest.raises(RuntimeError, match="LineString merging failed"):
            merge_many_multilinestring_into_one_linestring(gdf)


class TestSimplifyKeepingTopology:
    """Test topology-preserving simplification."""

    def test_simplify_preserves_dataframe_structure(self):
        gdf = create_stream_lines()
        result = simplify_keeping_topology(gdf, 0.1)

        assert len(result) == 2
        assert list(result.columns) == ['rate', 'half_width', 'geometry']
        assert result['rate'].tolist() == [2.0, 1.0]
        assert all(result.geom_type == 'LineString')


class TestStreamsFromLines:
    """Splitting stream lines into segment records."""

    def test_one_record_per_segment(self):
        records = streams_from_lines(create_stream_lines())
        assert len(records) == 3
        assert tuple(records.iloc[0]) == (0.0, 0.0, 10.0, 0.0, 2.0, 1.0)
        assert tuple(records.iloc[2]) == (5.0, -5.0, 5.0, 0.0, 1.0, 0.5)

    def test_records_feed_the_catalog(self):
        catalog = StreamCatalog.from_records(streams_from_lines(create_stream_lines()))
        assert len(catalog) == 3
        assert catalog.get_stream_rate((10.5, 5.0)) == 2.0

    def test_multilinestring_parts(self):
        exploded = streams_from_lines(create_multiline_stream())
        merged = streams_from_lines(create_multiline_stream(), merge_parts=True)
        assert len(exploded) == 2
        assert len(merged) == 2
        assert tuple(merged.iloc[1][['ax', 'ay', 'bx', 'by']]) == (4.0, 0.0, 4.0, 3.0)

    def test_simplification_drops_vertices(self, caplog):
        gdf = gpd.GeoDataFrame(
            {'rate': [1.0], 'half_width': [1.0]},
            geometry=[LineString([(0, 0), (5, 0.01), (10, 0)])]
        )
        with caplog.at_level(logging.WARNING, logger="aquiflow"):
            records = streams_from_lines(gdf, tolerance=0.1)
        assert len(records) == 1
        assert "without keeping topology" in caplog.text

    def test_missing_column_raises(self):
        gdf = create_stream_lines().drop(columns='half_width')
        with pytest.raises(ValueError, match="Column 'half_width' not found"):
            streams_from_lines(gdf)

    def test_invalid_geometry_raises(self):
        gdf = gpd.GeoDataFrame({'rate': [1.0], 'half_width': [1.0]}, geometry=[Point(0, 0)])
        with pytest.raises(ValueError, match="All geometries must be LineString or MultiLineString"):
            streams_from_lines(gdf)


def test_write_stream_file(tmp_path):
    records = streams_from_lines(create_stream_lines())
    path = tmp_path / "streams.txt"
    write_stream_file(records, path)

    lines = path.read_text().splitlines()
    assert lines[0] == '3'
    catalog = StreamCatalog.load(path)
    assert [s.rate for s in catalog] == [2.0, 2.0, 1.0]


def test_write_stream_file_missing_columns(tmp_path):
    records = streams_from_lines(create_stream_lines()).drop(columns='rate')
    with pytest.raises(ValueError, match="missing columns"):
        write_stream_file(records, tmp_path / "streams.txt")
