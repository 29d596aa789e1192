"""Spatial index over stream outline triangles."""

from typing import Sequence, Set, TYPE_CHECKING

import numpy as np
import shapely
from shapely.geometry import Polygon
from shapely.strtree import STRtree

from .polygon import PolygonLike, bounding_box

if TYPE_CHECKING:
    from .line import StreamCatalog


class StreamIndex:
    """Bounding volume hierarchy of stream triangles.

    Each triangle carries the id of the segment it came from. Queries are
    conservative: every segment whose triangles have a bounding box that
    overlaps the query box is returned, and exact clipping happens later.

    Args:
        triangles: Sequence of ``(3, 2)`` triangle vertex arrays.
        segment_ids: Segment id of every triangle.

    Example:
        >>> index = StreamIndex.from_catalog(catalog)
        >>> index.query(footprint)
        {0, 3}
    """

    def __init__(self, triangles: Sequence[np.ndarray], segment_ids: Sequence[int]) -> None:
        if len(triangles) != len(segment_ids):
            raise ValueError(
                f'Every triangle needs a segment id. Got {len(triangles)} triangles '
                f'and {len(segment_ids)} ids'
            )
        self._triangles = [Polygon(np.asarray(t, dtype=np.float64)[:, :2]) for t in triangles]
        self._segment_ids = np.asarray(segment_ids, dtype=np.int64)
        self._tree = STRtree(self._triangles) if self._triangles else None

    @classmethod
    def build(cls, triangles: Sequence[np.ndarray], segment_ids: Sequence[int]) -> "StreamIndex":
        """Pack the index once. It is not modified afterwards."""
        return cls(triangles, segment_ids)

    @classmethod
    def from_catalog(cls, catalog: "StreamCatalog") -> "StreamIndex":
        return cls.build(catalog.triangles, catalog.triangle_ids)

    def __len__(self) -> int:
        return len(self._triangles)

    def query(self, footprint: PolygonLike) -> Set[int]:
        """Segment ids whose triangles may overlap the footprint's bounding box."""
        if self._tree is None:
            return set()
        box = shapely.box(*bounding_box(footprint))
        hits = self._tree.query(box)
        return set(self._segment_ids[np.asarray(hits, dtype=np.int64)].tolist())
