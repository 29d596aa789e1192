"""Planar polygon helpers for AquiFlow.

Pure value-in/value-out functions on coordinate arrays: stream outlines and
cell footprints are plain ``(n, 2)`` arrays and shapely geometries are only
built where an exact polygon operation is needed.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import shapely
from shapely.errors import GEOSException
from shapely.geometry import Polygon
from shapely.validation import explain_validity

PolygonLike = Union[Polygon, Sequence[Sequence[float]], np.ndarray]

# cyclic order of the 4 corners of a lexicographically ordered quadrilateral face
QUAD_CYCLE = (0, 1, 3, 2)


@dataclass(frozen=True)
class ClipResult:
    """Outcome of intersecting two polygons.

    A result is either an intersection (possibly empty, ``area == 0``) or a
    skipped candidate carrying the reason why the intersection could not be
    computed.

    Attributes:
        area: Area of the intersection.
        centroid: Centroid ``(x, y)`` of the intersection, None when empty.
        reason: Why the candidate was skipped, None for a computed intersection.
    """
    area: float = 0.0
    centroid: Optional[Tuple[float, float]] = None
    reason: Optional[str] = None

    @classmethod
    def intersection(cls, area: float, centroid: Tuple[float, float]) -> "ClipResult":
        return cls(area=float(area), centroid=(float(centroid[0]), float(centroid[1])))

    @classmethod
    def empty(cls) -> "ClipResult":
        return cls()

    @classmethod
    def skipped(cls, reason: str) -> "ClipResult":
        return cls(reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.reason is None

    @property
    def is_empty(self) -> bool:
        return self.is_ok and self.area <= 0.0


def as_coordinates(polygon: PolygonLike) -> np.ndarray:
    """Return the vertices of a polygon as an ``(n, 2)`` array (not closed)."""
    if isinstance(polygon, Polygon):
        coords = np.asarray(polygon.exterior.coords, dtype=np.float64)[:-1, :2]
        return coords
    coords = np.asarray(polygon, dtype=np.float64)
    if coords.size == 0:
        return np.empty((0, 2), dtype=np.float64)
    if coords.ndim != 2 or coords.shape[1] < 2:
        raise ValueError(f'Polygon coordinates must have shape (n, 2). Got: {coords.shape}')
    return coords[:, :2]


def outline_polygon(polygon: PolygonLike) -> Optional[Polygon]:
    """Build a shapely polygon, or None if there are fewer than 3 vertices."""
    if isinstance(polygon, Polygon):
        return polygon
    coords = as_coordinates(polygon)
    if len(coords) < 3:
        return None
    return Polygon(coords)


def polygon_area(polygon: PolygonLike) -> float:
    """Unsigned area of a simple polygon given by its vertices (shoelace formula)."""
    coords = as_coordinates(polygon)
    if len(coords) < 3:
        return 0.0
    x, y = coords[:, 0], coords[:, 1]
    return 0.5 * abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def bounding_box(polygon: PolygonLike) -> Tuple[float, float, float, float]:
    """Axis-aligned bounding box ``(xmin, ymin, xmax, ymax)``."""
    coords = as_coordinates(polygon)
    if len(coords) == 0:
        raise ValueError('Cannot compute the bounding box of an empty polygon')
    xmin, ymin = coords.min(axis=0)
    xmax, ymax = coords.max(axis=0)
    return float(xmin), float(ymin), float(xmax), float(ymax)


def triangulate_outline(outline: PolygonLike) -> List[np.ndarray]:
    """Split a convex outline into triangles fanning out from its first vertex.

    A full 4-vertex outline gives the two triangles on either side of the
    0-2 diagonal. Outlines with fewer than 3 vertices give no triangles.
    """
    coords = as_coordinates(outline)
    return [coords[[0, k, k + 1]].copy() for k in range(1, len(coords) - 1)]


def face_footprint(face_vertices: np.ndarray) -> np.ndarray:
    """Project a lexicographically ordered quadrilateral face onto the xy plane.

    Args:
        face_vertices: ``(4, 3)`` face corners in lexicographic order.

    Returns:
        ``(4, 2)`` footprint in cyclic order.
    """
    face_vertices = np.asarray(face_vertices, dtype=np.float64)
    if face_vertices.shape[0] != 4:
        raise ValueError(f'A quadrilateral face needs 4 vertices. Got: {face_vertices.shape[0]}')
    return face_vertices[list(QUAD_CYCLE), :2].copy()


def point_in_outline(outline: PolygonLike, point: Sequence[float]) -> bool:
    """True if the point lies inside or on the boundary of the outline."""
    poly = outline_polygon(outline)
    if poly is None:
        return False
    return bool(poly.covers(shapely.Point(float(point[0]), float(point[1]))))


def clip_polygons(subject: PolygonLike, clip: PolygonLike) -> ClipResult:
    """Exact intersection of two polygons.

    Args:
        subject: First polygon, usually a cell footprint.
        clip: Second polygon, usually a stream outline.

    Returns:
        A ClipResult with the intersection area and centroid, an empty result
        when the polygons do not overlap, or a skipped result when one of the
        polygons is degenerate or the geometry engine fails.
    """
    try:
        poly_a = outline_polygon(subject)
        poly_b = outline_polygon(clip)
        if poly_a is None or poly_b is None:
            return ClipResult.skipped('polygon with fewer than 3 vertices')
        for poly in (poly_a, poly_b):
            if not poly.is_valid:
                return ClipResult.skipped(f'invalid polygon: {explain_validity(poly)}')
        inter = poly_a.intersection(poly_b)
    except (GEOSException, ValueError) as exc:
        return ClipResult.skipped(f'polygon intersection failed: {exc}')

    if inter.is_empty or inter.area <= 0.0:
        return ClipResult.empty()
    centroid = inter.centroid
    return ClipResult.intersection(inter.area, (centroid.x, centroid.y))
