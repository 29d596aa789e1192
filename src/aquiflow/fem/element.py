"""Trilinear (Q1) tensor-product element.

Vertices of the reference cell [0, 1]^dim are numbered lexicographically:
bit ``k`` of the vertex number is the reference coordinate in direction ``k``.
Face ``2k`` is the face ``xi_k = 0`` and face ``2k + 1`` the face ``xi_k = 1``.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

Quadrature = Tuple[np.ndarray, np.ndarray]


def corner_bits(dim: int) -> np.ndarray:
    """``(2**dim, dim)`` array of reference corner coordinates."""
    n = 1 << dim
    return np.array([[(v >> k) & 1 for k in range(dim)] for v in range(n)], dtype=np.int64)


def face_corners(dim: int, face: int) -> np.ndarray:
    """Local vertex numbers on a face, in lexicographic order of the face."""
    k, side = divmod(face, 2)
    bits = corner_bits(dim)
    return np.flatnonzero(bits[:, k] == side)


def embed_face_points(face_points: np.ndarray, face: int, dim: int) -> np.ndarray:
    """Map points of the reference face ``[0, 1]^(dim-1)`` onto a cell face."""
    face_points = np.atleast_2d(np.asarray(face_points, dtype=np.float64))
    k, side = divmod(face, 2)
    return np.insert(face_points, k, float(side), axis=1)


@dataclass
class CellValues:
    """Shape data of one cell at the quadrature points."""
    points: np.ndarray
    JxW: np.ndarray
    values: np.ndarray
    gradients: np.ndarray


@dataclass
class FaceValues:
    """Shape data of one cell face at the face quadrature points."""
    points: np.ndarray
    ref_points: np.ndarray
    JxW: np.ndarray
    values: np.ndarray
    gradients: np.ndarray
    normals: np.ndarray

    @property
    def area(self) -> float:
        return float(self.JxW.sum())


class Q1Element:
    """Isoparametric bilinear (2D) or trilinear (3D) Lagrange element.

    Args:
        dim: Space dimension, 2 or 3.

    Example:
        >>> element = Q1Element(3)
        >>> element.n_dofs
        8
    """

    def __init__(self, dim: int) -> None:
        if dim not in (2, 3):
            raise ValueError(f'Q1 elements are available in 2D and 3D. Got dim={dim}')
        self.dim = dim
        self.n_dofs = 1 << dim
        self.bits = corner_bits(dim)
        self.faces = [face_corners(dim, f) for f in range(2 * dim)]

    def shape_values(self, xi: np.ndarray) -> np.ndarray:
        """Shape functions at reference points, shape ``(nq, n_dofs)``."""
        xi = np.atleast_2d(np.asarray(xi, dtype=np.float64))
        values = np.ones((xi.shape[0], self.n_dofs))
        for k in range(self.dim):
            values *= np.where(self.bits[:, k] == 1, xi[:, k, None], 1.0 - xi[:, k, None])
        return values

    def shape_gradients(self, xi: np.ndarray) -> np.ndarray:
        """Reference gradients of the shape functions, shape ``(nq, n_dofs, dim)``."""
        xi = np.atleast_2d(np.asarray(xi, dtype=np.float64))
        nq = xi.shape[0]
        grads = np.ones((nq, self.n_dofs, self.dim))
        for d in range(self.dim):
            for k in range(self.dim):
                if k == d:
                    factor = np.where(self.bits[:, k] == 1, 1.0, -1.0)[None, :]
                else:
                    factor = np.where(self.bits[:, k] == 1, xi[:, k, None], 1.0 - xi[:, k, None])
                grads[:, :, d] *= factor
        return grads

    def jacobians(self, vertices: np.ndarray, xi: np.ndarray) -> np.ndarray:
        """``J[q, i, j] = dx_i / dxi_j`` at the reference points."""
        return np.einsum('vi,qvj->qij', vertices, self.shape_gradients(xi))

    def reinit(self, vertices: np.ndarray, quadrature: Quadrature) -> CellValues:
        """Evaluate shape data on a cell.

        Args:
            vertices: ``(n_dofs, dim)`` physical vertex coordinates.
            quadrature: Reference points and weights.
        """
        xi, weights = quadrature
        values = self.shape_values(xi)
        ref_grads = self.shape_gradients(xi)
        jac = np.einsum('vi,qvj->qij', vertices, ref_grads)
        det = np.linalg.det(jac)
        if np.any(det <= 0.0):
            raise ValueError(f'Cell is inverted or degenerate. Found Jacobian determinant {det.min():g}')
        inv = np.linalg.inv(jac)
        # grad_x N = J^{-T} grad_xi N
        grads = np.einsum('qvj,qji->qvi', ref_grads, inv)
        return CellValues(values @ vertices, det * weights, values, grads)

    def face_reinit(self, vertices: np.ndarray, face: int, quadrature: Quadrature) -> FaceValues:
        """Evaluate shape data on a face, including outward unit normals."""
        face_xi, weights = quadrature
        xi = embed_face_points(face_xi, face, self.dim)
        k, side = divmod(face, 2)
        values = self.shape_values(xi)
        ref_grads = self.shape_gradients(xi)
        jac = np.einsum('vi,qvj->qij', vertices, ref_grads)
        tangent_dirs = [j for j in range(self.dim) if j != k]
        if self.dim == 3:
            normal = np.cross(jac[:, :, tangent_dirs[0]], jac[:, :, tangent_dirs[1]])
        else:
            t = jac[:, :, tangent_dirs[0]]
            normal = np.stack([t[:, 1], -t[:, 0]], axis=-1)
        measure = np.linalg.norm(normal, axis=1)
        normal = normal / measure[:, None]
        outward = jac[:, :, k] * (1.0 if side else -1.0)
        sign = np.sign(np.einsum('qi,qi->q', normal, outward))
        normal *= np.where(sign == 0, 1.0, sign)[:, None]
        grads = np.einsum('qvj,qji->qvi', ref_grads, np.linalg.inv(jac))
        return FaceValues(values @ vertices, xi, measure * weights, values, grads, normal)

    def gradients_at(self, vertices: np.ndarray, xi: np.ndarray) -> np.ndarray:
        """Physical gradients of the shape functions at reference points."""
        ref_grads = self.shape_gradients(xi)
        jac = np.einsum('vi,qvj->qij', vertices, ref_grads)
        return np.einsum('qvj,qji->qvi', ref_grads, np.linalg.inv(jac))

    def inverse_map(self, vertices: np.ndarray, point: np.ndarray, tol: float = 1e-12,
                    max_iterations: int = 50) -> Optional[np.ndarray]:
        """Reference coordinates of a physical point, by Newton iteration.

        The result may lie outside [0, 1]^dim when the point is outside the
        cell. Returns None if the iteration does not converge.
        """
        point = np.asarray(point, dtype=np.float64)[:self.dim]
        xi = np.full(self.dim, 0.5)
        scale = max(float(np.ptp(vertices, axis=0).max()), 1e-300)
        for _ in range(max_iterations):
            x = (self.shape_values(xi) @ vertices)[0]
            residual = point - x
            if np.linalg.norm(residual) <= tol * scale:
                return xi
            jac = self.jacobians(vertices, xi)[0]
            try:
                step = np.linalg.solve(jac, residual)
            except np.linalg.LinAlgError:
                return None
            xi = xi + step
            if np.linalg.norm(step) <= tol:
                return xi
        return None

    def contains(self, vertices: np.ndarray, point: np.ndarray, tol: float = 1e-10) -> Optional[np.ndarray]:
        """Reference coordinates of the point if it lies in the cell, else None."""
        xi = self.inverse_map(vertices, point)
        if xi is None or np.any(xi < -tol) or np.any(xi > 1.0 + tol):
            return None
        return np.clip(xi, 0.0, 1.0)
