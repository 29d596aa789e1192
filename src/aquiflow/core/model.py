"""Core GMSH model wrapper for AquiFlow.

Builds structured quadrilateral and hexahedral coarse grids with gmsh
(transfinite curves, recombined surfaces and layered extrusion) and converts
them into a :class:`CoarseGrid`.
"""

import logging
from typing import Callable, Optional, Sequence

import numpy as np
import pandas as pd

from .mesh import CoarseGrid

try:
    import gmsh
    HAS_GMSH = True
except ImportError:
    gmsh = None
    HAS_GMSH = False

logger = logging.getLogger(__name__)

QUALITY_MEASURES = ['minSICN', 'minDetJac', 'maxDetJac', 'minSJ', 'minEdge', 'maxEdge', 'volume']


class GmshModel:
    """GMSH model wrapper with automatic resource management.

    GMSH is initialized when entering the context and finalized when leaving
    it, also when an exception is raised inside the block.

    Args:
        name: Name identifier for the GMSH model.

    Attributes:
        name: The model name used in GMSH.

    Example:
        >>> with GmshModel("aquifer") as model:
        ...     grid = model.structured_box((0, 0, -50), (1000, 800, 0), (10, 8, 2))
        ...     quality = model.get_element_quality()
    """
    def __init__(self, name: str) -> None:
        self.name = name
        self._initialized = False

    def __enter__(self) -> "GmshModel":
        """Initialize GMSH and add the model.

        Raises:
            ImportError: If gmsh is not installed.
            RuntimeError: If GMSH is already initialized for this model.
        """
        if not HAS_GMSH:
            raise ImportError(
                "GMSH is required for this operation but is not installed. "
                "Please install GMSH using: pip install gmsh"
            )
        if self._initialized:
            raise RuntimeError(f"GMSH model '{self.name}' is already initialized")

        gmsh.initialize()
        gmsh.option.setNumber('General.Terminal', 0)
        gmsh.model.add(self.name)
        self._initialized = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.finalize()

    def finalize(self) -> None:
        """Finalize GMSH. Safe to call more than once."""
        if self._initialized:
            try:
                gmsh.finalize()
            except Exception as e:
                logger.warning('GMSH finalization failed: %s', e)
            finally:
                self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                f"GMSH model '{self.name}' is not initialized. "
                "Use 'with GmshModel(name) as model:' pattern."
            )

    def synchronize(self) -> None:
        self._ensure_initialized()
        gmsh.model.geo.synchronize()

    def write(self, filename: str) -> None:
        """Write the GMSH model to a file (typically ``.msh``)."""
        self._ensure_initialized()
        gmsh.write(filename)

    def structured_box(self, lower: Sequence[float], upper: Sequence[float], subdivisions: Sequence[int],
                       top: Optional[Callable[[np.ndarray], np.ndarray]] = None,
                       bottom: Optional[Callable[[np.ndarray], np.ndarray]] = None) -> CoarseGrid:
        """Mesh a box with structured quadrilaterals or hexahedra.

        The horizontal rectangle is meshed with transfinite curves and
        recombined into quadrilaterals. In 3D it is extruded in
        ``subdivisions[2]`` recombined layers.

        Args:
            lower: Lower corner, 2 or 3 coordinates.
            upper: Upper corner.
            subdivisions: Cells per direction.
            top: Optional top elevation function of the horizontal position.
            bottom: Optional bottom elevation function.

        Returns:
            The coarse grid with the vertex positions of the gmsh mesh.

        Raises:
            ValueError: If the corners or subdivisions are inconsistent.
            RuntimeError: If GMSH is not initialized or the mesh is not
                structured as requested.
        """
        self._ensure_initialized()
        lower = np.asarray(lower, dtype=np.float64)
        upper = np.asarray(upper, dtype=np.float64)
        dim = len(lower)
        if dim not in (2, 3) or len(upper) != dim or len(subdivisions) != dim:
            raise ValueError(
                f'lower, upper and subdivisions must all have 2 or 3 entries. '
                f'Got: {len(lower)}, {len(upper)} and {len(subdivisions)}'
            )
        if np.any(upper <= lower):
            raise ValueError(f'Upper corner must exceed the lower corner. Got: {lower} and {upper}')
        n = [int(s) for s in subdivisions]
        if min(n) < 1:
            raise ValueError(f'Subdivisions must be >= 1. Got: {n}')

        z0 = lower[2] if dim == 3 else 0.0
        corners = [(lower[0], lower[1]), (upper[0], lower[1]), (upper[0], upper[1]), (lower[0], upper[1])]
        p_ind = [gmsh.model.geo.addPoint(x, y, z0) for x, y in corners]
        l_ind = [gmsh.model.geo.addLine(p_ind[i], p_ind[(i + 1) % 4]) for i in range(4)]
        for i, line in enumerate(l_ind):
            gmsh.model.geo.mesh.setTransfiniteCurve(line, n[i % 2] + 1)
        loop = gmsh.model.geo.addCurveLoop(l_ind)
        surface = gmsh.model.geo.addPlaneSurface([loop])
        gmsh.model.geo.mesh.setTransfiniteSurface(surface)
        gmsh.model.geo.mesh.setRecombine(2, surface)
        if dim == 3:
            gmsh.model.geo.extrude([(2, surface)], 0, 0, upper[2] - lower[2], numElements=[n[2]], recombine=True)
        self.synchronize()
        gmsh.model.mesh.generate(dim)

        _, coords, _ = gmsh.model.mesh.getNodes()
        coords = np.asarray(coords, dtype=np.float64).reshape(-1, 3)[:, :dim]
        spacing = (upper - lower) / np.asarray(n)
        logical = np.rint((coords - lower) / spacing).astype(np.int64)
        expected = int(np.prod([k + 1 for k in n]))
        if len(np.unique(logical, axis=0)) != expected or len(coords) != expected:
            raise RuntimeError(
                f'GMSH mesh is not structured: expected {expected} nodes. Got: {len(coords)}'
            )
        vertices = np.empty(tuple(k + 1 for k in n) + (dim,))
        vertices[tuple(logical.T)] = coords
        logger.info('Structured gmsh grid with %d coarse cells', int(np.prod(n)))

        grid = CoarseGrid(vertices)
        if top is not None:
            if dim != 3:
                raise ValueError('Elevation functions need a 3D box')
            grid = grid.with_elevation(top, bottom)
        return grid

    def get_element_quality(self, dim: Optional[int] = None) -> pd.DataFrame:
        """Quality measures of all mesh elements of a dimension.

        Args:
            dim: Element dimension. Defaults to the highest one with elements.

        Returns:
            DataFrame with one row per element and the columns
            ``minSICN``, ``minDetJac``, ``maxDetJac``, ``minSJ``,
            ``minEdge``, ``maxEdge`` and ``volume``. Empty if there is no mesh.

        Example:
            >>> with GmshModel("test") as model:
            ...     model.structured_box((0, 0), (10, 10), (4, 4))
            ...     poor = model.get_element_quality().query('minSJ < 0.3')
        """
        self._ensure_initialized()
        dims = [dim] if dim is not None else [3, 2]
        etags = []
        for d in dims:
            _, tags, _ = gmsh.model.mesh.getElements(dim=d)
            if tags and len(tags[0]):
                etags = np.concatenate(tags)
                break
        if len(etags) == 0:
            return pd.DataFrame(columns=QUALITY_MEASURES)
        qualities = {name: gmsh.model.mesh.getElementQualities(etags, name) for name in QUALITY_MEASURES}
        return pd.DataFrame(qualities, index=pd.Index(etags, name='element'))
