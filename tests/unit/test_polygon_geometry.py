"""Unit tests for planar polygon helpers."""

import sys
from pathlib import Path

import numpy as np
import pytest
from shapely.geometry import Polygon

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from aquiflow.geometry.polygon import (
    ClipResult,
    bounding_box,
    clip_polygons,
    face_footprint,
    outline_polygon,
    point_in_outline,
    polygon_area,
    triangulate_outline,
)

UNIT_SQUARE = [(0, 0), (1, 0), (1, 1), (0, 1)]
STREAM_OUTLINE = [(0, -1), (0, 1), (10, 1), (10, -1)]


class TestClipPolygons:
    """Exact polygon intersection."""

    def test_unit_square_inside_stream(self):
        result = clip_polygons(UNIT_SQUARE, STREAM_OUTLINE)
        assert result.is_ok
        assert not result.is_empty
        assert result.area == pytest.approx(1.0)
        assert result.centroid == pytest.approx((0.5, 0.5))

    def test_partial_overlap(self):
        footprint = [(8, 0), (12, 0), (12, 4), (8, 4)]
        result = clip_polygons(footprint, STREAM_OUTLINE)
        assert result.area == pytest.approx(2.0)
        assert result.centroid == pytest.approx((9.0, 0.5))

    def test_disjoint_polygons_are_empty(self):
        footprint = [(20, 20), (21, 20), (21, 21), (20, 21)]
        result = clip_polygons(footprint, STREAM_OUTLINE)
        assert result.is_ok
        assert result.is_empty
        assert result.centroid is None

    def test_touching_polygons_are_empty(self):
        footprint = [(10, 0), (11, 0), (11, 1), (10, 1)]
        assert clip_polygons(footprint, STREAM_OUTLINE).is_empty

    def test_degenerate_outline_is_skipped(self):
        result = clip_polygons(UNIT_SQUARE, [(0, 0), (1, 1)])
        assert not result.is_ok
        assert "fewer than 3 vertices" in result.reason

    def test_invalid_outline_is_skipped(self):
        bowtie = [(0, 0), (1, 1), (1, 0), (0, 1)]
        result = clip_polygons(UNIT_SQUARE, bowtie)
        assert not result.is_ok
        assert "invalid polygon" in result.reason

    def test_accepts_shapely_polygons(self):
        result = clip_polygons(Polygon(UNIT_SQUARE), Polygon(STREAM_OUTLINE))
        assert result.area == pytest.approx(1.0)


def test_clip_result_constructors():
    assert ClipResult.empty().is_empty
    skipped = ClipResult.skipped("boom")
    assert not skipped.is_ok and not skipped.is_empty
    hit = ClipResult.intersection(2, (1, 2))
    assert hit.centroid == (1.0, 2.0) and hit.area == 2.0


def test_triangulate_outline():
    triangles = triangulate_outline(STREAM_OUTLINE)
    assert len(triangles) == 2
    np.testing.assert_array_equal(triangles[0], [(0, -1), (0, 1), (10, 1)])
    np.testing.assert_array_equal(triangles[1], [(0, -1), (10, 1), (10, -1)])
    assert sum(polygon_area(t) for t in triangles) == pytest.approx(20.0)
    assert len(triangulate_outline(STREAM_OUTLINE[:3])) == 1
    assert triangulate_outline(STREAM_OUTLINE[:2]) == []


def test_face_footprint_is_cyclic():
    lexicographic = np.array([(0, 0, 5), (2, 0, 5), (0, 3, 6), (2, 3, 6)], dtype=float)
    footprint = face_footprint(lexicographic)
    np.testing.assert_array_equal(footprint, [(0, 0), (2, 0), (2, 3), (0, 3)])
    assert Polygon(footprint).is_valid
    with pytest.raises(ValueError, match="needs 4 vertices"):
        face_footprint(lexicographic[:3])


def test_area_and_bounds():
    assert polygon_area(STREAM_OUTLINE) == pytest.approx(20.0)
    assert polygon_area(STREAM_OUTLINE[:2]) == 0.0
    assert bounding_box(STREAM_OUTLINE) == (0.0, -1.0, 10.0, 1.0)
    with pytest.raises(ValueError, match="empty polygon"):
        bounding_box([])


def test_point_in_outline():
    assert point_in_outline(STREAM_OUTLINE, (5, 0))
    assert point_in_outline(STREAM_OUTLINE, (10, 1))
    assert not point_in_outline(STREAM_OUTLINE, (5, 2))
    assert not point_in_outline(STREAM_OUTLINE[:2], (0, 0))
    assert outline_polygon(STREAM_OUTLINE[:2]) is None
