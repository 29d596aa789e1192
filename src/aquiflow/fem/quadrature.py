"""Gauss-Legendre quadrature on the unit interval and the unit hypercube."""

from typing import Tuple

import numpy as np


def gauss_points_weights_edge(n_points: int) -> Tuple[np.ndarray, np.ndarray]:
    """Gauss points and weights on [0, 1].

    Args:
        n_points: Number of integration points (exact for degree 2n-1).

    Returns:
        Points of shape ``(n,)`` and weights of shape ``(n,)`` summing to 1.
    """
    if n_points < 1:
        raise ValueError(f'Unsupported number of Gauss points: {n_points}. n_points must be >= 1.')
    x, w = np.polynomial.legendre.leggauss(n_points)
    return 0.5 * (x + 1.0), 0.5 * w


def gauss_points_weights_hypercube(n_points: int, dim: int) -> Tuple[np.ndarray, np.ndarray]:
    """Tensor-product Gauss rule on [0, 1]^dim.

    The first coordinate runs fastest, matching the lexicographic vertex order
    of the elements.

    Returns:
        Points of shape ``(n**dim, dim)`` and weights of shape ``(n**dim,)``.
    """
    if dim < 1:
        raise ValueError(f'Quadrature dimension must be >= 1. Got: {dim}')
    x, w = gauss_points_weights_edge(n_points)
    grids = np.meshgrid(*([x] * dim), indexing='ij')
    weights = np.meshgrid(*([w] * dim), indexing='ij')
    # reverse so that axis 0 varies fastest after ravel
    points = np.stack([g.transpose().ravel() for g in grids], axis=-1)
    wprod = np.prod(np.stack([g.transpose().ravel() for g in weights], axis=-1), axis=-1)
    return points, wprod


def face_quadrature(n_points: int, dim: int) -> Tuple[np.ndarray, np.ndarray]:
    """Gauss rule on the reference face of a ``dim``-dimensional cell."""
    return gauss_points_weights_hypercube(n_points, dim - 1)
