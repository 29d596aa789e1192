"""Point wells for AquiFlow."""

import logging
from typing import Optional, Sequence

import geopandas as gpd
import numpy as np

logger = logging.getLogger(__name__)


class PointWellHandler:
    """Pumping and injection wells acting as point sources.

    A well adds ``rate * phi_i(x_w)`` to the right-hand side of the cell that
    contains it. Positive rates inject water, negative rates pump it out.

    Args:
        rate_column: Column of the well rates in the input GeoDataFrame.

    Attributes:
        gdf_well: GeoDataFrame with the well locations and rates.
        points: ``(n, 2)`` or ``(n, 3)`` well coordinates.
        rates: ``(n,)`` well rates.

    Example:
        >>> wells = PointWellHandler()
        >>> wells.set_gdf_well(wells_gdf, z_column='screen_z')
        >>> wells.add_contributions(accumulator, mesh, dof_field, constraints)
    """

    def __init__(self, rate_column: str = 'rate') -> None:
        self.rate_column = rate_column
        self.gdf_well: Optional[gpd.GeoDataFrame] = None
        self.points = np.empty((0, 3))
        self.rates = np.empty(0)

    def set_gdf_well(self, gdf_well: gpd.GeoDataFrame, z_column: Optional[str] = None) -> None:
        """Set the wells from Point geometries.

        Args:
            gdf_well: Wells with a rate column. The elevation is taken from
                ``z_column`` if given, else from the z of the geometry if any.
            z_column: Optional column with the well screen elevation.
        """
        if not all(gdf_well.geom_type == 'Point'):
            invalid_types = gdf_well.geom_type[gdf_well.geom_type != 'Point'].unique()
            raise ValueError(f'All geometries must be Point type. Found: {invalid_types}')
        if self.rate_column not in gdf_well.columns:
            available_cols = list(gdf_well.columns)
            raise ValueError(
                f"Column '{self.rate_column}' must exist in GeoDataFrame. Available columns: {available_cols}"
            )
        x = gdf_well.geometry.x.to_numpy()
        y = gdf_well.geometry.y.to_numpy()
        if z_column is not None:
            if z_column not in gdf_well.columns:
                raise ValueError(f"Column '{z_column}' not found. Available columns: {list(gdf_well.columns)}")
            points = np.column_stack([x, y, gdf_well[z_column].to_numpy(dtype=np.float64)])
        elif gdf_well.geometry.has_z.all() and len(gdf_well):
            points = np.column_stack([x, y, gdf_well.geometry.z.to_numpy()])
        else:
            points = np.column_stack([x, y])
        self.gdf_well = gdf_well
        self.points = points.astype(np.float64)
        self.rates = gdf_well[self.rate_column].to_numpy(dtype=np.float64)

    @classmethod
    def from_points(cls, points: Sequence[Sequence[float]], rates: Sequence[float]) -> "PointWellHandler":
        handler = cls()
        handler.points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        handler.rates = np.asarray(rates, dtype=np.float64).ravel()
        if len(handler.points) != len(handler.rates):
            raise ValueError(f'Expected one rate per well. Got {len(handler.points)} wells and {len(handler.rates)} rates')
        return handler

    def __len__(self) -> int:
        return len(self.rates)

    def add_contributions(self, accumulator, mesh, dof_field, constraints) -> int:
        """Add the well sources to the right-hand side. Collective.

        Each well is assigned to the lowest rank that owns a cell containing
        it, so a well on a partition boundary is counted once.

        Args:
            accumulator: System accumulator of the current assembly.
            mesh: The mesh.
            dof_field: A DOF field current with the mesh.
            constraints: Closed constraint set of the DOF field.

        Returns:
            Number of wells added on this rank.
        """
        if len(self) == 0:
            return 0
        if self.points.shape[1] < mesh.dim:
            raise ValueError(
                f'Wells need {mesh.dim} coordinates on a {mesh.dim}D mesh. Got: {self.points.shape[1]}'
            )
        located = [mesh.locate_point(p) for p in self.points]
        found = np.array([loc is not None for loc in located], dtype=bool)
        all_found = mesh.comm.allgather(found)
        first_rank = np.full(len(self), -1)
        for rank in reversed(range(len(all_found))):
            first_rank[all_found[rank]] = rank

        missing = np.flatnonzero(first_rank < 0)
        if len(missing) and mesh.rank == 0:
            logger.warning('%d wells lie outside the mesh and are ignored', len(missing))

        element = dof_field.element
        n_added = 0
        for i, loc in enumerate(located):
            if loc is None or first_rank[i] != mesh.rank:
                continue
            cell, xi = loc
            rhs = self.rates[i] * element.shape_values(xi)[0]
            constraints.distribute_local_to_global(None, rhs, dof_field.cell_dofs(cell), accumulator)
            n_added += 1
        return n_added
