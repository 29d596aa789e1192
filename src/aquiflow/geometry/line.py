"""Stream segment geometry for AquiFlow.

A stream is a set of straight segments, each with a recharge rate and a
half-width. Every segment is buffered into a quadrilateral outline, which is
split into two triangles for spatial indexing.
"""

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import LineString, Polygon

from .polygon import bounding_box, outline_polygon, point_in_outline, triangulate_outline

logger = logging.getLogger(__name__)

RECORD_COLUMNS = ['ax', 'ay', 'bx', 'by', 'rate', 'half_width']


class StreamLoadError(Exception):
    """Raised when a stream segment file cannot be read or parsed."""


def line_line_intersection(b1: float, m1: float, b2: float, m2: float) -> Optional[Tuple[float, float]]:
    """Intersection of the lines ``y = m1 x + b1`` and ``y = m2 x + b2``.

    Returns None for parallel lines or when the result is not finite.
    """
    denom = m1 - m2
    if abs(denom) <= 1e-12 * max(1.0, abs(m1), abs(m2)):
        return None
    x = (b2 - b1) / denom
    y = m1 * x + b1
    if not (math.isfinite(x) and math.isfinite(y)):
        return None
    return x, y


def build_outline(a: Sequence[float], b: Sequence[float], half_width: float,
                  axis_tolerance: float = 0.1) -> Tuple[Tuple[float, float], ...]:
    """Buffer the segment AB into a quadrilateral outline.

    The vertices are returned in cyclic order: A on the lower offset line,
    A on the upper offset line, B on the upper offset line, B on the lower
    offset line. Segments whose x or y extent is below ``axis_tolerance`` are
    treated as axis-aligned and offset along the other axis.

    Args:
        a: Start point (x, y).
        b: End point (x, y).
        half_width: Distance of the offset lines from the segment.
        axis_tolerance: Absolute tolerance for axis-aligned detection.

    Returns:
        Tuple of 4 vertices, or fewer when an intersection is missing.
    """
    ax, ay = float(a[0]), float(a[1])
    bx, by = float(b[0]), float(b[1])
    w = float(half_width)
    dx, dy = bx - ax, by - ay

    if abs(dx) < axis_tolerance and abs(dy) < axis_tolerance:
        logger.warning(
            'Stream segment (%g, %g)-(%g, %g) is shorter than the axis tolerance %g; '
            'it is buffered as a vertical segment', ax, ay, bx, by, axis_tolerance
        )

    if abs(dx) < axis_tolerance:
        # vertical: offset lines are x = const
        return ((ax - w, ay), (ax + w, ay), (bx + w, by), (bx - w, by))
    if abs(dy) < axis_tolerance:
        # horizontal: offset lines are y = const
        return ((ax, ay - w), (ax, ay + w), (bx, by + w), (bx, by - w))

    slope = dy / dx
    intercept = ay - slope * ax
    shift = w * math.sqrt(slope * slope + 1.0)
    lower, upper = intercept - shift, intercept + shift
    perp = -1.0 / slope
    perp_a = ay - perp * ax
    perp_b = by - perp * bx

    corners = (
        line_line_intersection(perp_a, perp, lower, slope),
        line_line_intersection(perp_a, perp, upper, slope),
        line_line_intersection(perp_b, perp, upper, slope),
        line_line_intersection(perp_b, perp, lower, slope),
    )
    return tuple(c for c in corners if c is not None)


@dataclass(frozen=True, eq=False)
class StreamSegment:
    """A buffered straight stream segment.

    Args:
        a: Start point (x, y).
        b: End point (x, y).
        rate: Recharge rate per unit area of the stream footprint.
        half_width: Half of the stream width.
        segment_id: Position of the segment in its catalog.
        axis_tolerance: Tolerance for axis-aligned and degenerate detection.

    Example:
        >>> seg = StreamSegment((0, 0), (10, 0), rate=5.0, half_width=1.0)
        >>> seg.outline
        ((0.0, -1.0), (0.0, 1.0), (10.0, 1.0), (10.0, -1.0))
    """
    a: Tuple[float, float]
    b: Tuple[float, float]
    rate: float
    half_width: float
    segment_id: int = 0
    axis_tolerance: float = 0.1
    outline: Tuple[Tuple[float, float], ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.half_width < 0:
            raise ValueError(f'Stream half-width must be >= 0. Got: {self.half_width}')
        object.__setattr__(self, 'a', (float(self.a[0]), float(self.a[1])))
        object.__setattr__(self, 'b', (float(self.b[0]), float(self.b[1])))
        object.__setattr__(self, 'rate', float(self.rate))
        object.__setattr__(self, 'half_width', float(self.half_width))
        object.__setattr__(
            self, 'outline', build_outline(self.a, self.b, self.half_width, self.axis_tolerance)
        )

    @property
    def length(self) -> float:
        return math.hypot(self.b[0] - self.a[0], self.b[1] - self.a[1])

    @property
    def outline_array(self) -> np.ndarray:
        return np.asarray(self.outline, dtype=np.float64).reshape(-1, 2)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Bounding box of the outline, or of the segment when the outline is empty."""
        if self.outline:
            return bounding_box(self.outline_array)
        return bounding_box(np.array([self.a, self.b]))

    @property
    def polygon(self) -> Optional[Polygon]:
        return outline_polygon(self.outline_array)

    def triangles(self) -> List[np.ndarray]:
        return triangulate_outline(self.outline_array)


class StreamCatalog:
    """Ordered collection of stream segments.

    The catalog owns the segments, the triangles of their outlines and the
    segment id of every triangle. Segment ids are positions in the catalog.

    Args:
        segments: Initial segments. Their ids are reassigned to their position.
        axis_tolerance: Tolerance used for segments added later.

    Example:
        >>> catalog = StreamCatalog.load('streams.txt')
        >>> catalog.get_stream_rate((5.0, 0.5))
        5.0
    """

    def __init__(self, segments: Iterable[StreamSegment] = (), axis_tolerance: float = 0.1) -> None:
        self.axis_tolerance = axis_tolerance
        self.segments: List[StreamSegment] = []
        self.triangles: List[np.ndarray] = []
        self.triangle_ids: List[int] = []
        self._polygons: List[Optional[Polygon]] = []
        for seg in segments:
            self.add_segment(seg.a, seg.b, seg.rate, seg.half_width)

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self) -> Iterator[StreamSegment]:
        return iter(self.segments)

    def __getitem__(self, segment_id: int) -> StreamSegment:
        return self.segments[segment_id]

    def add_segment(self, a: Sequence[float], b: Sequence[float], rate: float,
                    half_width: float) -> StreamSegment:
        """Append a segment and index its outline triangles."""
        seg = StreamSegment(a, b, rate, half_width, len(self.segments), self.axis_tolerance)
        self.segments.append(seg)
        self._polygons.append(seg.polygon)
        for tri in seg.triangles():
            self.triangles.append(tri)
            self.triangle_ids.append(seg.segment_id)
        return seg

    def polygon(self, segment_id: int) -> Optional[Polygon]:
        return self._polygons[segment_id]

    @classmethod
    def from_records(cls, records: Union[pd.DataFrame, Iterable[Sequence[float]]],
                     axis_tolerance: float = 0.1) -> "StreamCatalog":
        """Build a catalog from ``(ax, ay, bx, by, rate, half_width)`` records.

        Args:
            records: DataFrame with the record columns, or an iterable of
                6-value sequences.
            axis_tolerance: Tolerance for axis-aligned detection.
        """
        if isinstance(records, pd.DataFrame):
            missing = [c for c in RECORD_COLUMNS if c not in records.columns]
            if missing:
                raise ValueError(
                    f'Stream records are missing columns {missing}. '
                    f'Available columns: {list(records.columns)}'
                )
            rows = records[RECORD_COLUMNS].to_numpy(dtype=np.float64)
        else:
            rows = [tuple(float(v) for v in rec) for rec in records]
        catalog = cls(axis_tolerance=axis_tolerance)
        for row in rows:
            if len(row) != 6:
                raise ValueError(f'A stream record needs 6 values. Got: {len(row)}')
            ax, ay, bx, by, rate, half_width = row
            catalog.add_segment((ax, ay), (bx, by), rate, half_width)
        return catalog

    @classmethod
    def load(cls, path: Union[str, Path], axis_tolerance: float = 0.1) -> "StreamCatalog":
        """Read a stream segment file.

        The first token of the file is the number of segments N, followed by
        N records of whitespace-separated numbers ``ax ay bx by rate half_width``
        (one record per line, extra tokens on a line are ignored).

        Raises:
            StreamLoadError: If the file is missing or malformed.
        """
        path = Path(path)
        try:
            with open(path, encoding='utf-8') as fh:
                lines = [ln for ln in fh.read().splitlines() if ln.strip()]
        except OSError as exc:
            raise StreamLoadError(f'Cannot open stream file {path}: {exc}') from exc

        if not lines:
            raise StreamLoadError(f'Stream file {path} is empty')
        try:
            n_segments = int(lines[0].split()[0])
        except ValueError as exc:
            raise StreamLoadError(
                f'First token of {path} must be the number of segments. Found: {lines[0]!r}'
            ) from exc
        if n_segments < 0:
            raise StreamLoadError(f'Number of segments must be >= 0. Found: {n_segments}')
        if len(lines) - 1 < n_segments:
            raise StreamLoadError(
                f'Stream file {path} declares {n_segments} segments but only '
                f'{len(lines) - 1} records were found'
            )

        records = []
        for lineno, line in enumerate(lines[1:n_segments + 1], start=2):
            tokens = line.split()
            if len(tokens) < 6:
                raise StreamLoadError(f'{path}:{lineno}: expected 6 values. Found: {len(tokens)}')
            try:
                values = [float(t) for t in tokens[:6]]
            except ValueError as exc:
                raise StreamLoadError(f'{path}:{lineno}: {exc}') from exc
            if not all(math.isfinite(v) for v in values):
                raise StreamLoadError(f'{path}:{lineno}: non-finite value in {tokens[:6]}')
            records.append(values)

        catalog = cls.from_records(records, axis_tolerance=axis_tolerance)
        logger.info('Loaded %d stream segments from %s', len(catalog), path)
        return catalog

    @classmethod
    def from_geodataframe(cls, gdf: gpd.GeoDataFrame, rate_column: str = 'rate',
                          width_column: str = 'half_width',
                          axis_tolerance: float = 0.1) -> "StreamCatalog":
        """Build a catalog from 2-point LineString geometries.

        Use :func:`aquiflow.utils.preprocessing.streams_from_lines` first to
        split longer lines into segments.
        """
        for col in (rate_column, width_column):
            if col not in gdf.columns:
                raise ValueError(f"Column '{col}' not found. Available columns: {list(gdf.columns)}")
        if not all(gdf.geom_type == 'LineString'):
            invalid = gdf.geom_type[gdf.geom_type != 'LineString'].unique()
            raise ValueError(f'All geometries must be LineString. Found: {invalid}')

        catalog = cls(axis_tolerance=axis_tolerance)
        for geom, rate, width in zip(gdf.geometry, gdf[rate_column], gdf[width_column]):
            coords = list(geom.coords)
            if len(coords) != 2:
                raise ValueError(f'Stream lines must have exactly 2 vertices. Got: {len(coords)}')
            catalog.add_segment(coords[0][:2], coords[1][:2], rate, width)
        return catalog

    def to_geodataframe(self, crs: Optional[str] = None) -> gpd.GeoDataFrame:
        """Outlines of all segments as a GeoDataFrame (None geometry for degenerate outlines)."""
        data = {
            'segment_id': [s.segment_id for s in self.segments],
            'rate': [s.rate for s in self.segments],
            'half_width': [s.half_width for s in self.segments],
            'length': [s.length for s in self.segments],
            'centerline': [LineString([s.a, s.b]) for s in self.segments],
        }
        gdf = gpd.GeoDataFrame(data, geometry=list(self._polygons), crs=crs)
        return gdf

    def get_stream_rate(self, point: Sequence[float]) -> float:
        """Rate of the first segment whose outline contains the point, else 0.

        Only the x and y coordinates of the point are used.
        """
        x, y = float(point[0]), float(point[1])
        for seg in self.segments:
            xmin, ymin, xmax, ymax = seg.bounds
            if not (xmin <= x <= xmax and ymin <= y <= ymax):
                continue
            if point_in_outline(seg.outline_array, (x, y)):
                return seg.rate
        return 0.0

    def to_records(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(s.a[0], s.a[1], s.b[0], s.b[1], s.rate, s.half_width) for s in self.segments],
            columns=RECORD_COLUMNS,
        )

