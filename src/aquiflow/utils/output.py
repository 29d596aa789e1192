"""Parallel VTU output of the head solution.

Every rank writes the cells it owns to its own ``.vtu`` file with meshio.
Rank 0 also writes a ``.pvtu`` master file and a ``.visit`` record that list
the per-rank files of an iteration.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

import meshio
import numpy as np
from mpi4py import MPI

from ..fem.functions import TensorField, evaluate_tensor

logger = logging.getLogger(__name__)

# lexicographic to VTK vertex order
VTK_ORDER = {2: [0, 1, 3, 2], 3: [0, 1, 3, 2, 4, 5, 7, 6]}
VTK_CELL_TYPE = {2: 'quad', 3: 'hexahedron'}


class SolutionWriter:
    """Write head snapshots as partitioned VTU files.

    Files of iteration ``n`` are named ``<prefix><nnn>.<rrrr>.vtu`` for rank
    ``r`` plus ``<prefix><nnn>.pvtu`` and ``<prefix><nnn>.visit``.

    Args:
        directory: Output directory, created if needed.
        prefix: File name prefix.
        comm: MPI communicator.

    Example:
        >>> writer = SolutionWriter('results', prefix='solution-')
        >>> writer.write(0, mesh, dof_field, solution, conductivity)
    """

    def __init__(self, directory: Union[str, Path] = '.', prefix: str = 'solution-',
                 comm: Optional[MPI.Comm] = None) -> None:
        self.directory = Path(directory)
        self.prefix = prefix
        self.comm = comm if comm is not None else MPI.COMM_WORLD

    def piece_name(self, iteration: int, rank: int) -> str:
        return f'{self.prefix}{iteration:03d}.{rank:04d}.vtu'

    def master_name(self, iteration: int, extension: str) -> str:
        return f'{self.prefix}{iteration:03d}.{extension}'

    def build_mesh(self, mesh, dof_field, solution, conductivity: Optional[TensorField] = None) -> meshio.Mesh:
        """meshio mesh of the owned cells with the head and cell data."""
        cells = mesh.locally_owned_cells()
        dim = mesh.dim
        cell_dofs = np.array([dof_field.cell_dofs(c) for c in cells], dtype=np.int64).reshape(-1, 1 << dim)
        dofs = np.unique(cell_dofs)
        points = dof_field.support_points(dofs) if len(dofs) else np.empty((0, dim))
        if dim == 2:
            points = np.column_stack([points, np.zeros(len(points))])
        connectivity = np.searchsorted(dofs, cell_dofs)[:, VTK_ORDER[dim]]
        head = solution.values_at(dofs)

        subdomain = np.full(len(cells), float(mesh.rank))
        cell_data = {'subdomain': [subdomain]}
        if conductivity is not None:
            if len(cells):
                centers = np.array([mesh.barycenter(c) for c in cells])
                kxx = evaluate_tensor(conductivity, centers)[:, 0, 0]
            else:
                kxx = np.empty(0)
            cell_data['Conductivity'] = [kxx]
        return meshio.Mesh(
            points, [(VTK_CELL_TYPE[dim], connectivity)], point_data={'Head': head}, cell_data=cell_data
        )

    def write(self, iteration: int, mesh, dof_field, solution,
              conductivity: Optional[TensorField] = None) -> Optional[Path]:
        """Write the files of one iteration. Collective.

        Returns:
            Path of the ``.pvtu`` master file on rank 0, None on other ranks.
        """
        rank = self.comm.Get_rank()
        size = self.comm.Get_size()
        if rank == 0:
            self.directory.mkdir(parents=True, exist_ok=True)
        self.comm.Barrier()

        piece = self.directory / self.piece_name(iteration, rank)
        meshio.write(piece, self.build_mesh(mesh, dof_field, solution, conductivity), file_format='vtu')
        self.comm.Barrier()
        if rank != 0:
            return None

        pieces = [self.piece_name(iteration, r) for r in range(size)]
        cell_arrays = ['subdomain'] + (['Conductivity'] if conductivity is not None else [])
        master = self.directory / self.master_name(iteration, 'pvtu')
        master.write_text(pvtu_record(pieces, ['Head'], cell_arrays), encoding='utf-8')
        visit = self.directory / self.master_name(iteration, 'visit')
        visit.write_text(visit_record(pieces), encoding='utf-8')
        logger.info('Wrote %s', master)
        return master


def pvtu_record(pieces: List[str], point_arrays: List[str], cell_arrays: List[str]) -> str:
    """XML of a parallel unstructured grid file listing the pieces."""
    lines = [
        '<?xml version="1.0"?>',
        '<VTKFile type="PUnstructuredGrid" version="0.1" byte_order="LittleEndian">',
        '  <PUnstructuredGrid GhostLevel="0">',
        '    <PPointData Scalars="{}">'.format(point_arrays[0] if point_arrays else ''),
    ]
    lines += [f'      <PDataArray type="Float64" Name="{name}"/>' for name in point_arrays]
    lines += ['    </PPointData>', '    <PCellData>']
    lines += [f'      <PDataArray type="Float64" Name="{name}"/>' for name in cell_arrays]
    lines += [
        '    </PCellData>',
        '    <PPoints>',
        '      <PDataArray type="Float64" NumberOfComponents="3"/>',
        '    </PPoints>',
    ]
    lines += [f'    <Piece Source="{piece}"/>' for piece in pieces]
    lines += ['  </PUnstructuredGrid>', '</VTKFile>', '']
    return '\n'.join(lines)


def visit_record(pieces: List[str]) -> str:
    """VisIt master file listing the pieces as blocks of one time step."""
    return '\n'.join([f'!NBLOCKS {len(pieces)}'] + pieces + [''])
