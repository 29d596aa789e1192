"""Assembly of the steady-state groundwater flow system.

For every locally owned cell the conductivity matrix

    K_e[i, j] = sum_q grad(phi_i) . K(x_q) . grad(phi_j) * JxW_q

and, on faces tagged as top boundary, the recharge vector

    F_e[i] = sum_q phi_i(x_q) * R(x_q) * JxW_q * w_R

are computed and copied into the global system through the constraints.
``w_R`` is the ratio of the horizontal projection of the face to its true
area, so that recharge is applied per unit of map area.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from ..core.dofs import DistributedDofField
from ..core.mesh import AquiferMesh
from ..geometry.polygon import face_footprint
from .element import Q1Element
from .functions import ScalarField, TensorField, evaluate_scalar, evaluate_tensor
from .quadrature import face_quadrature, gauss_points_weights_hypercube
from .system import LinearSystem, SystemAccumulator

logger = logging.getLogger(__name__)


def recharge_weight(face_vertices: np.ndarray, face_area: float) -> float:
    """Ratio of the horizontal projection of a face to its true area.

    Args:
        face_vertices: Lexicographically ordered face corners, ``(2, 2)`` in
            2D or ``(4, 3)`` in 3D.
        face_area: True area (length in 2D) of the face.
    """
    if face_area <= 0.0:
        return 0.0
    face_vertices = np.asarray(face_vertices, dtype=np.float64)
    if face_vertices.shape[1] == 2:
        projected = abs(face_vertices[1, 0] - face_vertices[0, 0])
    else:
        xy = face_footprint(face_vertices)
        x, y = xy[:, 0], xy[:, 1]
        projected = 0.5 * abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))
    return float(projected / face_area)


class SystemAssembler:
    """Assemble the conductivity matrix and recharge vector of owned cells.

    Args:
        element: Finite element of the DOF field.
        cell_points: Gauss points per direction in cells.
        face_points: Gauss points per direction on faces.
        top_boundary_ids: Face tags that receive recharge.

    Example:
        >>> assembler = SystemAssembler(Q1Element(3), top_boundary_ids=(5,))
        >>> system = assembler.assemble(mesh, dof_field, conductivity=10.0, recharge=1e-3)
    """

    def __init__(self, element: Q1Element, cell_points: int = 2, face_points: int = 2,
                 top_boundary_ids: Sequence[int] = (5,)) -> None:
        self.element = element
        self.cell_rule = gauss_points_weights_hypercube(cell_points, element.dim)
        self.face_rule = face_quadrature(face_points, element.dim)
        self.top_boundary_ids = frozenset(int(t) for t in top_boundary_ids)

    def cell_matrix(self, vertices: np.ndarray, conductivity: TensorField) -> np.ndarray:
        values = self.element.reinit(vertices, self.cell_rule)
        k = evaluate_tensor(conductivity, values.points)
        return np.einsum('qid,qde,qje,q->ij', values.gradients, k, values.gradients, values.JxW)

    def cell_recharge(self, mesh: AquiferMesh, cell: int, recharge: ScalarField) -> np.ndarray:
        vertices = mesh.cell_vertices(cell)
        rhs = np.zeros(self.element.n_dofs)
        for face in range(2 * mesh.dim):
            tag = mesh.face_boundary_id(cell, face)
            if tag is None or tag not in self.top_boundary_ids:
                continue
            fv = self.element.face_reinit(vertices, face, self.face_rule)
            weight = recharge_weight(mesh.face_vertices(cell, face), fv.area)
            rates = evaluate_scalar(recharge, fv.points)
            rhs += fv.values.T @ (rates * fv.JxW) * weight
        return rhs

    def assemble(self, mesh: AquiferMesh, dof_field: DistributedDofField, conductivity: TensorField,
                 recharge: Optional[ScalarField] = None,
                 accumulator: Optional[SystemAccumulator] = None) -> LinearSystem:
        """Assemble and compress the global system. Collective.

        Args:
            mesh: The mesh.
            dof_field: A DOF field that is current with the mesh.
            conductivity: Hydraulic conductivity tensor field.
            recharge: Recharge rate on the top boundary, or None.
            accumulator: Accumulator that may already hold point-source
                contributions. A new one is created if None.

        Returns:
            The compressed owned block of the system.
        """
        dof_field.check_current()
        acc = accumulator if accumulator is not None else dof_field.new_accumulator()
        constraints = dof_field.constraints
        for cell in mesh.locally_owned_cells():
            matrix = self.cell_matrix(mesh.cell_vertices(cell), conductivity)
            rhs = self.cell_recharge(mesh, cell, recharge) if recharge is not None else None
            constraints.distribute_local_to_global(matrix, rhs, dof_field.cell_dofs(cell), acc)
        return acc.compress()
