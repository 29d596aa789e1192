"""Stream recharge on the top boundary of the mesh.

For every top face, the footprint of the face is clipped against the outline
of every candidate stream segment. A non-empty intersection contributes
``rate * area`` to the right-hand side, applied as a point source at the
centroid of the intersection.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..fem.element import Q1Element, embed_face_points
from .index import StreamIndex
from .line import StreamCatalog
from .polygon import ClipResult, PolygonLike, clip_polygons, face_footprint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamContribution:
    """Recharge of one stream segment into one footprint.

    Attributes:
        centroid: Centroid ``(x, y)`` of the intersection.
        weighted_rate: Segment rate times intersection area.
        segment_id: Id of the segment in its catalog.
        area: Intersection area.
    """
    centroid: Tuple[float, float]
    weighted_rate: float
    segment_id: int
    area: float


class StreamRechargeEngine:
    """Turn stream segments into right-hand side contributions.

    Streams are only supported on 3D meshes. On other meshes the engine is
    disabled and contributes nothing.

    Args:
        catalog: The stream segments.
        dim: Dimension of the mesh the engine is used with.
        index: Prebuilt index of the catalog triangles.

    Attributes:
        n_skipped: Number of segment/footprint pairs whose intersection could
            not be computed.

    Example:
        >>> engine = StreamRechargeEngine(StreamCatalog.load('streams.txt'))
        >>> engine.recharge([(0, 0), (1, 0), (1, 1), (0, 1)])
        [StreamContribution(centroid=(0.5, 0.5), weighted_rate=5.0, segment_id=0, area=1.0)]
    """

    def __init__(self, catalog: StreamCatalog, dim: int = 3, index: Optional[StreamIndex] = None) -> None:
        self.catalog = catalog
        self.dim = dim
        self.index = index if index is not None else StreamIndex.from_catalog(catalog)
        self.enabled = dim == 3
        self.n_skipped = 0
        self._face_map = Q1Element(2)
        if not self.enabled:
            logger.warning('Streams are only supported on 3D meshes. Got dim=%d; streams are ignored.', dim)

    def clip_candidates(self, footprint: PolygonLike) -> List[Tuple[int, ClipResult]]:
        """Clip the footprint against every segment the index returns."""
        results = []
        for segment_id in sorted(self.index.query(footprint)):
            outline = self.catalog[segment_id].outline_array
            results.append((segment_id, clip_polygons(footprint, outline)))
        return results

    def recharge(self, footprint: PolygonLike) -> List[StreamContribution]:
        """Contributions of all stream segments overlapping a footprint.

        Candidates whose intersection fails are skipped with a warning and
        the remaining candidates are still processed.
        """
        if not self.enabled:
            return []
        contributions = []
        for segment_id, result in self.clip_candidates(footprint):
            if not result.is_ok:
                self.n_skipped += 1
                logger.warning('Skipping stream segment %d: %s', segment_id, result.reason)
                continue
            if result.is_empty:
                continue
            rate = self.catalog[segment_id].rate
            contributions.append(StreamContribution(result.centroid, rate * result.area, segment_id, result.area))
        return contributions

    def _top_faces(self, mesh, cell: int, top_boundary_ids: Sequence[int]) -> List[int]:
        return [
            face for face in range(2 * mesh.dim)
            if mesh.face_boundary_id(cell, face) in top_boundary_ids
        ]

    def face_reference_point(self, face_vertices: np.ndarray, face: int, xy: Sequence[float]) -> np.ndarray:
        """Cell reference coordinates of the point of a face above ``xy``."""
        st = self._face_map.inverse_map(face_vertices[:, :2], np.asarray(xy, dtype=np.float64))
        if st is None:
            raise ValueError(f'Cannot map point {tuple(xy)} onto a face with a degenerate footprint')
        return embed_face_points(np.clip(st, 0.0, 1.0), face, self.dim)

    def add_contributions(self, accumulator, mesh, dof_field, constraints,
                          top_boundary_ids: Sequence[int]) -> int:
        """Add stream recharge on the top faces of the owned cells.

        Returns:
            Number of contributions added on this rank.
        """
        if not self.enabled:
            return 0
        if mesh.dim != self.dim:
            raise ValueError(f'Engine was built for dim={self.dim} but the mesh has dim={mesh.dim}')
        top = set(top_boundary_ids)
        element = dof_field.element
        n_added = 0
        for cell in mesh.locally_owned_cells():
            for face in self._top_faces(mesh, cell, top):
                fverts = mesh.face_vertices(cell, face)
                contributions = self.recharge(face_footprint(fverts))
                if not contributions:
                    continue
                rhs = np.zeros(element.n_dofs)
                for c in contributions:
                    xi = self.face_reference_point(fverts, face, c.centroid)
                    rhs += c.weighted_rate * element.shape_values(xi)[0]
                constraints.distribute_local_to_global(None, rhs, dof_field.cell_dofs(cell), accumulator)
                n_added += len(contributions)
        return n_added

    def flag_cells_for_refinement(self, mesh, top_boundary_ids: Sequence[int]) -> List[int]:
        """Owned cells whose top face overlaps a stream outline."""
        if not self.enabled:
            return []
        top = set(top_boundary_ids)
        flagged = []
        for cell in mesh.locally_owned_cells():
            for face in self._top_faces(mesh, cell, top):
                footprint = face_footprint(mesh.face_vertices(cell, face))
                hits = [res for _, res in self.clip_candidates(footprint) if res.is_ok and not res.is_empty]
                if hits:
                    flagged.append(int(cell))
                    break
        return flagged
