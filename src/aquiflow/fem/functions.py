"""Coefficient fields evaluated at batches of points.

A scalar field maps ``(n, dim)`` points to ``(n,)`` values and a tensor field
maps them to ``(n, dim, dim)`` matrices. Plain numbers and callables are
accepted wherever a field is expected.
"""

from typing import Callable, Sequence, Union

import numpy as np

ScalarField = Union[float, Callable[[np.ndarray], np.ndarray]]
TensorField = Union[float, Sequence[float], np.ndarray, Callable[[np.ndarray], np.ndarray]]


class ConstantFunction:
    """Scalar field with the same value everywhere."""

    def __init__(self, value: float) -> None:
        self.value = float(value)

    def __call__(self, points: np.ndarray) -> np.ndarray:
        return np.full(np.atleast_2d(points).shape[0], self.value)

    def __repr__(self) -> str:
        return f'ConstantFunction({self.value!r})'


class ConstantConductivity:
    """Hydraulic conductivity tensor that does not vary in space.

    Args:
        value: A scalar (isotropic), a sequence of ``dim`` diagonal values or a
            full ``(dim, dim)`` matrix.

    Example:
        >>> k = ConstantConductivity([10.0, 10.0, 1.0])
        >>> k(np.zeros((2, 3))).shape
        (2, 3, 3)
    """

    def __init__(self, value: Union[float, Sequence[float], np.ndarray]) -> None:
        arr = np.asarray(value, dtype=np.float64)
        if arr.ndim > 2 or (arr.ndim == 2 and arr.shape[0] != arr.shape[1]):
            raise ValueError(f'Conductivity must be a scalar, a diagonal or a square matrix. Got shape: {arr.shape}')
        if arr.ndim == 2 and not np.allclose(arr, arr.T):
            raise ValueError('Conductivity tensor must be symmetric')
        self.value = arr

    def tensor(self, dim: int) -> np.ndarray:
        if self.value.ndim == 0:
            return float(self.value) * np.eye(dim)
        if self.value.ndim == 1:
            if self.value.shape[0] != dim:
                raise ValueError(f'Expected {dim} diagonal conductivities. Got: {self.value.shape[0]}')
            return np.diag(self.value)
        if self.value.shape[0] != dim:
            raise ValueError(f'Expected a {dim}x{dim} conductivity tensor. Got: {self.value.shape}')
        return self.value

    def __call__(self, points: np.ndarray) -> np.ndarray:
        points = np.atleast_2d(points)
        tensor = self.tensor(points.shape[1])
        return np.broadcast_to(tensor, (points.shape[0],) + tensor.shape).copy()


def as_scalar_field(field: ScalarField) -> Callable[[np.ndarray], np.ndarray]:
    if callable(field):
        return field
    return ConstantFunction(field)


def as_tensor_field(field: TensorField) -> Callable[[np.ndarray], np.ndarray]:
    if callable(field):
        return field
    return ConstantConductivity(field)


def evaluate_scalar(field: ScalarField, points: np.ndarray) -> np.ndarray:
    """Evaluate a scalar field, checking the result shape."""
    points = np.atleast_2d(points)
    values = np.asarray(as_scalar_field(field)(points), dtype=np.float64)
    if values.ndim == 0:
        values = np.full(points.shape[0], float(values))
    if values.shape != (points.shape[0],):
        raise ValueError(f'Scalar field must return shape ({points.shape[0]},). Got: {values.shape}')
    return values


def evaluate_tensor(field: TensorField, points: np.ndarray) -> np.ndarray:
    """Evaluate a tensor field; scalar results are expanded to isotropic tensors."""
    points = np.atleast_2d(points)
    n, dim = points.shape
    values = np.asarray(as_tensor_field(field)(points), dtype=np.float64)
    if values.shape == (n,):
        values = values[:, None, None] * np.eye(dim)[None, :, :]
    if values.shape != (n, dim, dim):
        raise ValueError(f'Conductivity field must return shape ({n}, {dim}, {dim}). Got: {values.shape}')
    return values
