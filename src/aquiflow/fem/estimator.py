"""Kelly error estimator and fixed-number refinement.

The indicator of a cell is built from the jump of the normal derivative of
the head across its interior faces:

    eta_K^2 = sum_F h_F / 24 * integral_F [d u / d n]^2

Faces on the outer boundary contribute nothing.
"""

import logging
from typing import Tuple

import numpy as np

from ..config import validate_fractions
from ..core.dofs import DistributedDofField
from ..core.mesh import AquiferMesh
from ..core.parallel import allgather_concat
from .element import Q1Element
from .quadrature import face_quadrature
from .system import GhostedVector

logger = logging.getLogger(__name__)


class ErrorEstimatorRefiner:
    """Estimate per-cell errors and flag cells by fixed fractions.

    Args:
        element: Finite element of the solution.
        face_points: Gauss points per direction on faces.
        max_level: Cells at this level are never flagged for refinement.
    """

    def __init__(self, element: Q1Element, face_points: int = 3, max_level: int = 16) -> None:
        self.element = element
        self.face_rule = face_quadrature(face_points, element.dim)
        self.max_level = max_level

    def _gradient(self, mesh: AquiferMesh, dof_field: DistributedDofField, solution: GhostedVector,
                  cell: int, xi: np.ndarray) -> np.ndarray:
        grads = self.element.gradients_at(mesh.cell_vertices(cell), xi)[0]
        return grads.T @ solution.values_at(dof_field.cell_dofs(cell))

    def estimate(self, mesh: AquiferMesh, dof_field: DistributedDofField, solution: GhostedVector) -> np.ndarray:
        """Error indicator of every locally owned cell, in owned-cell order."""
        dof_field.check_current()
        owned = mesh.locally_owned_cells()
        errors = np.zeros(len(owned))
        for i, cell in enumerate(owned):
            vertices = mesh.cell_vertices(cell)
            u = solution.values_at(dof_field.cell_dofs(cell))
            eta2 = 0.0
            for face in range(2 * mesh.dim):
                if mesh.face_boundary_id(cell, face) is not None:
                    continue
                fv = self.element.face_reinit(vertices, face, self.face_rule)
                own_grad = np.einsum('qvd,v->qd', fv.gradients, u)
                jumps = np.empty(len(fv.JxW))
                for q, xi in enumerate(fv.ref_points):
                    nbr, nbr_xi = mesh.neighbor_leaf(cell, face, xi)
                    nbr_grad = self._gradient(mesh, dof_field, solution, nbr, nbr_xi)
                    jumps[q] = fv.normals[q] @ (own_grad[q] - nbr_grad)
                fverts = mesh.face_vertices(cell, face)
                h = float(np.max(np.linalg.norm(fverts[:, None, :] - fverts[None, :, :], axis=-1)))
                eta2 += h / 24.0 * float(fv.JxW @ jumps ** 2)
            errors[i] = np.sqrt(eta2)
        return errors

    def flag_fixed_number(self, mesh: AquiferMesh, errors: np.ndarray, top_fraction: float,
                          bottom_fraction: float) -> Tuple[np.ndarray, np.ndarray]:
        """Select the cells with the largest and smallest indicators. Collective.

        Of the N active cells, the ``int(top_fraction * N)`` with the largest
        indicator are flagged for refinement and the ``int(bottom_fraction * N)``
        with the smallest for coarsening. Ties are broken by cell id.

        Returns:
            Cell ids to refine and to coarsen, identical on every rank.
        """
        validate_fractions(top_fraction, bottom_fraction)
        owned = mesh.locally_owned_cells()
        if len(errors) != len(owned):
            raise ValueError(f'Expected one indicator per owned cell ({len(owned)}). Got: {len(errors)}')
        cells = allgather_concat(mesh.comm, owned.astype(np.int64))
        all_errors = allgather_concat(mesh.comm, np.asarray(errors, dtype=np.float64))
        n = len(cells)
        n_top = int(top_fraction * n)
        n_bottom = int(bottom_fraction * n)
        order = np.lexsort((cells, -all_errors))
        refine = cells[order[:n_top]]
        coarsen = cells[order[n - n_bottom:]] if n_bottom else np.empty(0, dtype=np.int64)
        refine = np.asarray([c for c in refine if mesh.level(c) < self.max_level], dtype=np.int64)
        return refine, coarsen

    def refine(self, mesh: AquiferMesh, errors: np.ndarray, top_fraction: float,
               bottom_fraction: float) -> Tuple[int, int]:
        """Flag by fixed fractions and execute the mesh transaction. Collective."""
        refine, coarsen = self.flag_fixed_number(mesh, errors, top_fraction, bottom_fraction)
        logger.debug('Flagged %d cells for refinement and %d for coarsening', len(refine), len(coarsen))
        return mesh.execute_coarsening_and_refinement(refine.tolist(), coarsen.tolist())
