"""Adaptive quadrilateral and hexahedral meshes for AquiFlow.

A mesh is a forest of quadtrees/octrees rooted at the cells of a logically
structured coarse grid. Cells live in an arena and are addressed by stable
integer ids. Vertex positions are given by integer lattice keys: a key is the
position of the vertex in units of a cell at level ``LATTICE_LEVEL``, and is
mapped to physical space through the trilinear map of the coarse grid.

Every rank holds the full hierarchy. Active cells are sorted along a Morton
curve and split into contiguous chunks, one per rank.
"""

import itertools
import logging
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from mpi4py import MPI

from ..fem.element import Q1Element, corner_bits, face_corners

logger = logging.getLogger(__name__)

LATTICE_LEVEL = 30

Key = Tuple[int, ...]


def morton_code(key: Key) -> int:
    """Interleave the bits of the coordinates of an integer point."""
    dim = len(key)
    code = 0
    n_bits = max(c.bit_length() for c in key)
    for b in range(n_bits):
        for k, c in enumerate(key):
            code |= ((c >> b) & 1) << (b * dim + k)
    return code


class CoarseGrid:
    """Logically structured grid of coarse cells.

    Args:
        vertices: Array of shape ``(n0+1, n1+1[, n2+1], dim)`` with the
            physical position of every grid vertex.

    Example:
        >>> grid = CoarseGrid.box((0, 0, -50), (1000, 800, 0), (10, 8, 2))
        >>> grid.shape
        (10, 8, 2)
    """

    def __init__(self, vertices: np.ndarray) -> None:
        vertices = np.asarray(vertices, dtype=np.float64)
        dim = vertices.shape[-1]
        if dim not in (2, 3) or vertices.ndim != dim + 1:
            raise ValueError(
                f'Coarse grid vertices must have shape (n0+1, ..., dim) with dim 2 or 3. Got: {vertices.shape}'
            )
        self.shape = tuple(int(s) - 1 for s in vertices.shape[:-1])
        if min(self.shape) < 1:
            raise ValueError(f'Coarse grid needs at least one cell per direction. Got: {self.shape}')
        self.vertices = vertices
        self.dim = dim
        self._bits = corner_bits(dim)

    @classmethod
    def box(cls, lower: Sequence[float], upper: Sequence[float],
            subdivisions: Optional[Sequence[int]] = None) -> "CoarseGrid":
        """Axis-aligned box split into ``subdivisions`` cells per direction."""
        lower = np.asarray(lower, dtype=np.float64)
        upper = np.asarray(upper, dtype=np.float64)
        if lower.shape != upper.shape:
            raise ValueError(f'lower and upper must have the same length. Got: {lower.shape} and {upper.shape}')
        dim = lower.shape[0]
        if subdivisions is None:
            subdivisions = (1,) * dim
        if len(subdivisions) != dim:
            raise ValueError(f'Expected {dim} subdivisions. Got: {len(subdivisions)}')
        if np.any(upper <= lower):
            raise ValueError(f'Upper corner must exceed the lower corner. Got: {lower} and {upper}')
        axes = [np.linspace(lower[k], upper[k], int(subdivisions[k]) + 1) for k in range(dim)]
        return cls(np.stack(np.meshgrid(*axes, indexing='ij'), axis=-1))

    def with_elevation(self, top: Callable[[np.ndarray], np.ndarray],
                       bottom: Optional[Callable[[np.ndarray], np.ndarray]] = None) -> "CoarseGrid":
        """Stretch the vertical (last) coordinate between two surfaces.

        Args:
            top: Maps ``(n, dim-1)`` horizontal positions to top elevations.
            bottom: Same for the bottom surface. Defaults to the current bottom.

        Returns:
            A new CoarseGrid with the same topology.
        """
        v = self.vertices.copy()
        z = v[..., -1]
        zmin, zmax = z.min(), z.max()
        flat = v[..., :-1].reshape(-1, self.dim - 1)
        ztop = np.asarray(top(flat), dtype=np.float64).reshape(z.shape)
        if bottom is None:
            zbot = np.full(z.shape, zmin)
        else:
            zbot = np.asarray(bottom(flat), dtype=np.float64).reshape(z.shape)
        if np.any(ztop <= zbot):
            raise ValueError('Top elevation must lie above the bottom elevation everywhere')
        v[..., -1] = zbot + (z - zmin) / (zmax - zmin) * (ztop - zbot)
        return CoarseGrid(v)

    @property
    def n_cells(self) -> int:
        return int(np.prod(self.shape))

    def map_points(self, u: np.ndarray) -> np.ndarray:
        """Physical position of points given in coarse-cell units."""
        u = np.atleast_2d(np.asarray(u, dtype=np.float64))
        shape = np.asarray(self.shape)
        cell = np.clip(np.floor(u).astype(np.int64), 0, shape - 1)
        xi = u - cell
        out = np.zeros((u.shape[0], self.dim))
        for bits in self._bits:
            weight = np.prod(np.where(bits == 1, xi, 1.0 - xi), axis=1)
            out += weight[:, None] * self.vertices[tuple((cell + bits).T)]
        return out


class AquiferMesh:
    """Distributed adaptive mesh of an aquifer.

    Args:
        coarse: The coarse grid the trees are rooted at.
        comm: MPI communicator. Defaults to ``MPI.COMM_WORLD``.
        boundary_ids: Tag of each of the ``2 * dim`` outer faces of the
            coarse grid, in face order (x-min, x-max, y-min, y-max, ...).
            Defaults to the face number itself.

    Attributes:
        generation: Counter bumped at every topology change. Objects derived
            from the mesh compare it to detect that they are out of date.

    Example:
        >>> mesh = AquiferMesh.box((0, 0, 0), (100, 100, 10), (4, 4, 1))
        >>> mesh.refine_global(1)
        >>> mesh.n_active_cells
        128
    """

    def __init__(self, coarse: CoarseGrid, comm: Optional[MPI.Comm] = None,
                 boundary_ids: Optional[Sequence[int]] = None) -> None:
        self.coarse = coarse
        self.dim = coarse.dim
        self.comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()
        n_faces = 2 * self.dim
        if boundary_ids is None:
            self.boundary_ids = tuple(range(n_faces))
        else:
            self.boundary_ids = tuple(int(b) for b in boundary_ids)
            if len(self.boundary_ids) != n_faces:
                raise ValueError(f'Expected {n_faces} boundary ids. Got: {len(self.boundary_ids)}')
        self.element = Q1Element(self.dim)
        self._bits = corner_bits(self.dim)
        self._faces = [face_corners(self.dim, f) for f in range(n_faces)]
        self._ring = [
            off for off in itertools.product((-1, 0, 1, 2), repeat=self.dim)
            if not all(o in (0, 1) for o in off)
        ]

        self._level: List[int] = []
        self._anchor: List[Key] = []
        self._parent: List[int] = []
        self._children: List[Optional[List[int]]] = []
        self._active: List[bool] = []
        self._lookup: Dict[Tuple[int, Key], int] = {}
        self._free: List[int] = []
        self._corner_cache: Dict[int, List[Key]] = {}
        self._vertex_cache: Dict[int, np.ndarray] = {}
        self.generation = 0

        for anchor in itertools.product(*(range(n) for n in coarse.shape)):
            self._new_cell(0, tuple(anchor), -1)
        self._update()

    @classmethod
    def box(cls, lower: Sequence[float], upper: Sequence[float],
            subdivisions: Optional[Sequence[int]] = None, comm: Optional[MPI.Comm] = None,
            boundary_ids: Optional[Sequence[int]] = None) -> "AquiferMesh":
        return cls(CoarseGrid.box(lower, upper, subdivisions), comm, boundary_ids)

    # cell access

    def _new_cell(self, level: int, anchor: Key, parent: int) -> int:
        if self._free:
            # ids released by coarsening are reused
            cid = self._free.pop()
            self._level[cid] = level
            self._anchor[cid] = anchor
            self._parent[cid] = parent
            self._children[cid] = None
            self._active[cid] = True
        else:
            cid = len(self._level)
            self._level.append(level)
            self._anchor.append(anchor)
            self._parent.append(parent)
            self._children.append(None)
            self._active.append(True)
        self._lookup[(level, anchor)] = cid
        return cid

    @property
    def n_active_cells(self) -> int:
        return len(self._active_cells)

    @property
    def active_cells(self) -> np.ndarray:
        """Active cell ids in partition (Morton) order."""
        return self._active_cells

    def locally_owned_cells(self) -> np.ndarray:
        return self._owned

    def ghost_cells(self) -> np.ndarray:
        """Active cells of other ranks that share a vertex with an owned cell."""
        return self._ghosts

    def owner(self, cell: int) -> int:
        return int(self._owner[cell])

    def level(self, cell: int) -> int:
        return self._level[cell]

    def anchor(self, cell: int) -> Key:
        return self._anchor[cell]

    def parent(self, cell: int) -> Optional[int]:
        p = self._parent[cell]
        return None if p < 0 else p

    def children(self, cell: int) -> Tuple[int, ...]:
        kids = self._children[cell]
        return tuple(kids) if kids is not None else ()

    def is_active(self, cell: int) -> bool:
        return 0 <= cell < len(self._active) and self._active[cell]

    def find_cell(self, level: int, anchor: Sequence[int]) -> Optional[int]:
        return self._lookup.get((level, tuple(anchor)))

    def max_level(self) -> int:
        return max(self._level[c] for c in self._active_cells)

    # geometry

    def corner_keys(self, cell: int) -> List[Key]:
        """Lattice keys of the cell corners in lexicographic order."""
        keys = self._corner_cache.get(cell)
        if keys is None:
            shift = LATTICE_LEVEL - self._level[cell]
            a = self._anchor[cell]
            keys = [tuple((a[k] + int(b[k])) << shift for k in range(self.dim)) for b in self._bits]
            self._corner_cache[cell] = keys
        return keys

    def points_from_keys(self, keys: Iterable[Key]) -> np.ndarray:
        lattice = np.asarray(list(keys), dtype=np.float64).reshape(-1, self.dim)
        return self.coarse.map_points(lattice / float(1 << LATTICE_LEVEL))

    def cell_vertices(self, cell: int) -> np.ndarray:
        """``(2**dim, dim)`` physical corner coordinates."""
        verts = self._vertex_cache.get(cell)
        if verts is None:
            verts = self.points_from_keys(self.corner_keys(cell))
            self._vertex_cache[cell] = verts
        return verts

    def face_vertices(self, cell: int, face: int) -> np.ndarray:
        return self.cell_vertices(cell)[self._faces[face]]

    def barycenter(self, cell: int) -> np.ndarray:
        return self.cell_vertices(cell).mean(axis=0)

    def cell_diameter(self, cell: int) -> float:
        v = self.cell_vertices(cell)
        return float(np.max(np.linalg.norm(v[:, None, :] - v[None, :, :], axis=-1)))

    def face_boundary_id(self, cell: int, face: int) -> Optional[int]:
        """Tag of the face if it lies on the outer boundary, else None."""
        k, side = divmod(face, 2)
        a = self._anchor[cell][k]
        if side == 0 and a == 0:
            return self.boundary_ids[face]
        if side == 1 and a + 1 == self.coarse.shape[k] << self._level[cell]:
            return self.boundary_ids[face]
        return None

    def vertex_boundary_ids(self, key: Key) -> List[int]:
        """Tags of the outer faces a vertex lies on, in face order."""
        ids = []
        for k in range(self.dim):
            if key[k] == 0:
                ids.append(self.boundary_ids[2 * k])
            if key[k] == self.coarse.shape[k] << LATTICE_LEVEL:
                ids.append(self.boundary_ids[2 * k + 1])
        return ids

    @property
    def n_vertices(self) -> int:
        return len(self._vertex_cells)

    def vertex_cells(self, key: Key) -> List[int]:
        """Active cells having the vertex as a corner."""
        return self._vertex_cells.get(key, [])

    def vertex_owner(self, key: Key) -> int:
        return int(min(self._owner[c] for c in self._vertex_cells[key]))

    def locate_point(self, point: Sequence[float],
                     cells: Optional[Iterable[int]] = None) -> Optional[Tuple[int, np.ndarray]]:
        """Find the cell containing a point and its reference coordinates.

        Args:
            point: Physical coordinates.
            cells: Candidate cells. Defaults to the locally owned cells.

        Returns:
            ``(cell, xi)`` for the first candidate containing the point, or None.
        """
        point = np.asarray(point, dtype=np.float64)[:self.dim]
        candidates = self._owned if cells is None else cells
        for cell in candidates:
            verts = self.cell_vertices(cell)
            lo, hi = verts.min(axis=0), verts.max(axis=0)
            tol = 1e-10 * max(1.0, float(np.max(hi - lo)))
            if np.any(point < lo - tol) or np.any(point > hi + tol):
                continue
            xi = self.element.contains(verts, point)
            if xi is not None:
                return int(cell), xi
        return None

    # neighbours and hanging vertices

    def neighbor_leaf(self, cell: int, face: int, xi: np.ndarray) -> Optional[Tuple[int, np.ndarray]]:
        """Active cell across a face at a point of that face.

        Args:
            cell: Active cell.
            face: Local face number.
            xi: Reference coordinates of a point on the face.

        Returns:
            ``(neighbor, neighbor_xi)`` or None on the outer boundary.
        """
        k, side = divmod(face, 2)
        level = self._level[cell]
        anchor = list(self._anchor[cell])
        anchor[k] += 1 if side else -1
        if anchor[k] < 0 or anchor[k] >= self.coarse.shape[k] << level:
            return None
        xi = np.array(xi, dtype=np.float64)
        xi[k] = 1.0 - side

        while (level, tuple(anchor)) not in self._lookup:
            xi = (np.array([a % 2 for a in anchor]) + xi) / 2.0
            anchor = [a // 2 for a in anchor]
            level -= 1
        nbr = self._lookup[(level, tuple(anchor))]

        while not self._active[nbr]:
            bits = [int(xi[j] >= 0.5) for j in range(self.dim)]
            bits[k] = 1 - side
            xi = 2.0 * xi - np.asarray(bits)
            child = sum(b << j for j, b in enumerate(bits))
            nbr = self._children[nbr][child]
        return nbr, np.clip(xi, 0.0, 1.0)

    def hanging_constraint(self, key: Key, level: int) -> Optional[List[Tuple[Key, float]]]:
        """Interpolation weights of a hanging vertex.

        Args:
            key: Lattice key of a corner of an active cell.
            level: Level of that active cell.

        Returns:
            ``[(dependency_key, weight), ...]`` if the vertex lies on an edge
            or face of an active cell one level coarser, else None.
        """
        if level == 0:
            return None
        shift = LATTICE_LEVEL - level
        c = [p >> shift for p in key]
        odd = [k for k in range(self.dim) if c[k] % 2 == 1]
        if not odd or len(odd) == self.dim:
            return None

        coarse_level = level - 1
        # anchors of the coarser cells that would have this edge or face
        choices = []
        for k in range(self.dim):
            if k in odd:
                choices.append((c[k] // 2,))
            else:
                choices.append((c[k] // 2 - 1, c[k] // 2))
        found = False
        for anchor in itertools.product(*choices):
            cid = self._lookup.get((coarse_level, anchor))
            if cid is not None and self._active[cid]:
                found = True
                break
        if not found:
            return None

        weight = 1.0 / (1 << len(odd))
        deps = []
        for signs in itertools.product((-1, 1), repeat=len(odd)):
            q = list(c)
            for k, s in zip(odd, signs):
                q[k] += s
            deps.append((tuple(v << shift for v in q), weight))
        return deps

    def is_balanced(self) -> bool:
        """True if no active cell touches an active cell two or more levels finer."""
        return not any(self._touches_refined_region(c) for c in self._active_cells)

    # refinement

    def refine_global(self, times: int = 1) -> None:
        for _ in range(times):
            self.execute_coarsening_and_refinement(self._active_cells.tolist(), ())

    def execute_coarsening_and_refinement(self, refine: Iterable[int] = (),
                                          coarsen: Iterable[int] = ()) -> Tuple[int, int]:
        """Apply refinement and coarsening flags in one transaction.

        Refinement wins over coarsening. Flagged cells are refined first, then
        neighbours are refined until the mesh is 2:1 balanced across faces,
        edges and vertices. A parent is coarsened only when all its children
        are active and flagged and the result stays balanced.

        Every rank must call this with the same flags.

        Returns:
            Number of refined cells (including balance refinements) and
            number of coarsened parents.
        """
        refine_set = {int(c) for c in refine if self.is_active(int(c))}
        too_fine = {c for c in refine_set if self._level[c] >= LATTICE_LEVEL - 2}
        if too_fine:
            logger.warning('Ignoring refinement of %d cells at the finest lattice level', len(too_fine))
            refine_set -= too_fine
        coarsen_set = {int(c) for c in coarsen if self.is_active(int(c))} - refine_set

        for cell in sorted(refine_set):
            self._refine_cell(cell)
        n_balance = self._balance()

        parents = sorted({self._parent[c] for c in coarsen_set if self._active[c] and self._parent[c] >= 0})
        n_coarsened = 0
        for p in parents:
            kids = self._children[p]
            if kids is None:
                continue
            if not all(self._active[k] and k in coarsen_set for k in kids):
                continue
            if self._touches_refined_region(p):
                continue
            self._coarsen_cell(p)
            n_coarsened += 1

        n_refined = len(refine_set) + n_balance
        if n_refined or n_coarsened:
            self._update()
        logger.debug(
            'Refined %d cells (%d for balance), coarsened %d parents; %d active cells',
            n_refined, n_balance, n_coarsened, self.n_active_cells
        )
        return n_refined, n_coarsened

    def _refine_cell(self, cell: int) -> None:
        level = self._level[cell] + 1
        a = self._anchor[cell]
        kids = [
            self._new_cell(level, tuple(2 * a[k] + int(b[k]) for k in range(self.dim)), cell)
            for b in self._bits
        ]
        self._children[cell] = kids
        self._active[cell] = False

    def _coarsen_cell(self, cell: int) -> None:
        for kid in self._children[cell]:
            self._active[kid] = False
            del self._lookup[(self._level[kid], self._anchor[kid])]
            self._corner_cache.pop(kid, None)
            self._vertex_cache.pop(kid, None)
            self._parent[kid] = -1
        self._free.extend(reversed(self._children[cell]))
        self._children[cell] = None
        self._active[cell] = True

    def _touches_refined_region(self, cell: int) -> bool:
        # a refined region one level finer than the cell and touching it means
        # an active cell two levels finer touches it
        level = self._level[cell] + 1
        base = [2 * a for a in self._anchor[cell]]
        for off in self._ring:
            cid = self._lookup.get((level, tuple(b + o for b, o in zip(base, off))))
            if cid is not None and not self._active[cid]:
                return True
        return False

    def _balance(self) -> int:
        n_refined = 0
        changed = True
        while changed:
            changed = False
            for cell in [c for c, a in enumerate(self._active) if a]:
                if self._active[cell] and self._touches_refined_region(cell):
                    self._refine_cell(cell)
                    n_refined += 1
                    changed = True
        return n_refined

    def _lattice_anchor(self, cell: int) -> Key:
        shift = LATTICE_LEVEL - self._level[cell]
        return tuple(a << shift for a in self._anchor[cell])

    def _update(self) -> None:
        active = [c for c, a in enumerate(self._active) if a]
        active.sort(key=lambda c: morton_code(self._lattice_anchor(c)))
        self._active_cells = np.asarray(active, dtype=np.int64)
        n = len(active)
        owners = (np.arange(n, dtype=np.int64) * self.size) // n
        self._owner = np.full(len(self._level), -1, dtype=np.int64)
        self._owner[self._active_cells] = owners
        self._owned = self._active_cells[owners == self.rank]

        vertex_cells: Dict[Key, List[int]] = defaultdict(list)
        for cell in active:
            for key in self.corner_keys(cell):
                vertex_cells[key].append(cell)
        self._vertex_cells = dict(vertex_cells)

        ghosts = set()
        for cell in self._owned:
            for key in self.corner_keys(cell):
                for other in self._vertex_cells[key]:
                    if self._owner[other] != self.rank:
                        ghosts.add(other)
        self._ghosts = np.asarray(sorted(ghosts), dtype=np.int64)
        self.generation += 1
