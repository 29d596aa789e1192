"""Distributed linear algebra containers.

Rows of the global system are split into contiguous ownership ranges, one
per rank. Matrices are stored as scipy CSR blocks of the owned rows with
global column indices.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import scipy.sparse as sp
from mpi4py import MPI

from ..core.parallel import concat_arrays, exchange_by_owner, fetch_values

logger = logging.getLogger(__name__)


@dataclass
class DofPartition:
    """Contiguous ownership ranges of the global DOFs.

    Attributes:
        offsets: ``(size + 1,)`` array; rank ``r`` owns ``[offsets[r], offsets[r+1])``.
        rank: Rank of the calling process.
    """
    offsets: np.ndarray
    rank: int

    @property
    def n_dofs(self) -> int:
        return int(self.offsets[-1])

    @property
    def start(self) -> int:
        return int(self.offsets[self.rank])

    @property
    def end(self) -> int:
        return int(self.offsets[self.rank + 1])

    @property
    def n_owned(self) -> int:
        return self.end - self.start

    def owned_range(self) -> np.ndarray:
        return np.arange(self.start, self.end, dtype=np.int64)

    def owner_of(self, indices: np.ndarray) -> np.ndarray:
        return np.searchsorted(self.offsets, np.asarray(indices, dtype=np.int64), side='right') - 1

    def is_owned(self, indices: np.ndarray) -> np.ndarray:
        indices = np.asarray(indices, dtype=np.int64)
        return (indices >= self.start) & (indices < self.end)


class SparsityPattern:
    """Nonzero structure of the owned rows of a distributed matrix.

    Args:
        indptr: CSR row pointer of the owned rows.
        indices: Sorted global column indices per row.
        n_cols: Number of global columns.
    """

    def __init__(self, indptr: np.ndarray, indices: np.ndarray, n_cols: int) -> None:
        self.indptr = np.asarray(indptr, dtype=np.int64)
        self.indices = np.asarray(indices, dtype=np.int64)
        self.n_rows = len(self.indptr) - 1
        self.n_cols = int(n_cols)
        rows = np.repeat(np.arange(self.n_rows, dtype=np.int64), np.diff(self.indptr))
        self._keys = rows * self.n_cols + self.indices

    @classmethod
    def from_entries(cls, local_rows: np.ndarray, cols: np.ndarray, n_rows: int, n_cols: int) -> "SparsityPattern":
        """Build a pattern from (possibly repeated) row/column pairs."""
        local_rows = np.asarray(local_rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        coo = sp.coo_matrix(
            (np.ones(len(local_rows), dtype=np.int8), (local_rows, cols)), shape=(n_rows, n_cols)
        )
        csr = coo.tocsr()
        csr.sum_duplicates()
        csr.sort_indices()
        return cls(csr.indptr, csr.indices, n_cols)

    @property
    def nnz(self) -> int:
        return len(self.indices)

    def positions(self, local_rows: np.ndarray, cols: np.ndarray) -> np.ndarray:
        """Index in the CSR data array of every (row, column) entry.

        Raises:
            KeyError: If an entry is not part of the pattern.
        """
        query = np.asarray(local_rows, dtype=np.int64) * self.n_cols + np.asarray(cols, dtype=np.int64)
        pos = np.searchsorted(self._keys, query)
        if len(self._keys) == 0:
            bad = np.ones(len(query), dtype=bool)
        else:
            bad = (pos >= len(self._keys)) | (self._keys[np.minimum(pos, len(self._keys) - 1)] != query)
        if np.any(bad):
            i = int(np.flatnonzero(bad)[0])
            raise KeyError(
                f'Entry ({int(query[i] // self.n_cols)}, {int(query[i] % self.n_cols)}) '
                f'is not part of the sparsity pattern'
            )
        return pos


@dataclass
class LinearSystem:
    """Owned rows of a compressed global system ``A u = F``."""
    matrix: sp.csr_matrix
    rhs: np.ndarray
    partition: DofPartition


class SystemAccumulator:
    """Accumulate-only buffer for matrix and right-hand side contributions.

    Contributions may target rows owned by any rank. :meth:`compress` sends
    them to their owners and sums them into a :class:`LinearSystem`. After
    compression the accumulator accepts no more entries.

    Args:
        partition: Ownership ranges of the DOFs.
        pattern: Sparsity pattern of the owned rows.
        comm: MPI communicator.
    """

    def __init__(self, partition: DofPartition, pattern: SparsityPattern, comm: MPI.Comm) -> None:
        self.partition = partition
        self.pattern = pattern
        self.comm = comm
        self._rows: List[np.ndarray] = []
        self._cols: List[np.ndarray] = []
        self._vals: List[np.ndarray] = []
        self._rhs_rows: List[np.ndarray] = []
        self._rhs_vals: List[np.ndarray] = []
        self.compressed = False

    def _check_open(self) -> None:
        if self.compressed:
            raise RuntimeError('System was already compressed. Create a new accumulator to add entries.')

    def add_matrix_entries(self, rows: np.ndarray, cols: np.ndarray, values: np.ndarray) -> None:
        self._check_open()
        self._rows.append(np.asarray(rows, dtype=np.int64))
        self._cols.append(np.asarray(cols, dtype=np.int64))
        self._vals.append(np.asarray(values, dtype=np.float64))

    def add_rhs_entries(self, rows: np.ndarray, values: np.ndarray) -> None:
        self._check_open()
        self._rhs_rows.append(np.asarray(rows, dtype=np.int64))
        self._rhs_vals.append(np.asarray(values, dtype=np.float64))

    def compress(self) -> LinearSystem:
        """Exchange off-rank entries and build the owned block. Collective."""
        self._check_open()
        self.compressed = True
        part = self.partition

        rows = concat_arrays(self._rows, np.int64)
        cols = concat_arrays(self._cols, np.int64)
        vals = concat_arrays(self._vals, np.float64)
        rows, cols, vals = exchange_by_owner(self.comm, part.owner_of(rows), rows, cols, vals)
        data = np.zeros(self.pattern.nnz)
        np.add.at(data, self.pattern.positions(rows - part.start, cols), vals)
        matrix = sp.csr_matrix(
            (data, self.pattern.indices.copy(), self.pattern.indptr.copy()),
            shape=(part.n_owned, part.n_dofs),
        )

        rhs_rows = concat_arrays(self._rhs_rows, np.int64)
        rhs_vals = concat_arrays(self._rhs_vals, np.float64)
        rhs_rows, rhs_vals = exchange_by_owner(self.comm, part.owner_of(rhs_rows), rhs_rows, rhs_vals)
        rhs = np.zeros(part.n_owned)
        np.add.at(rhs, rhs_rows - part.start, rhs_vals)

        self._rows, self._cols, self._vals = [], [], []
        self._rhs_rows, self._rhs_vals = [], []
        return LinearSystem(matrix, rhs, part)


class GhostedVector:
    """Owned entries of a distributed vector plus local copies of ghost entries.

    Supports ``vector[i]`` reads and writes for owned and ghost global
    indices, which is what :meth:`ConstraintSet.distribute` needs. Writes to
    ghost entries stay local to the rank.
    """

    def __init__(self, partition: DofPartition, owned: np.ndarray,
                 ghost_indices: Optional[np.ndarray] = None, ghost_values: Optional[np.ndarray] = None) -> None:
        self.partition = partition
        self.owned = np.asarray(owned, dtype=np.float64)
        if len(self.owned) != partition.n_owned:
            raise ValueError(f'Expected {partition.n_owned} owned values. Got: {len(self.owned)}')
        gi = np.empty(0, dtype=np.int64) if ghost_indices is None else np.asarray(ghost_indices, dtype=np.int64)
        gv = np.empty(0) if ghost_values is None else np.asarray(ghost_values, dtype=np.float64)
        order = np.argsort(gi)
        self.ghost_indices = gi[order]
        self.ghost_values = gv[order].copy()

    @classmethod
    def from_owned(cls, comm: MPI.Comm, partition: DofPartition, owned: np.ndarray,
                   ghost_indices: np.ndarray) -> "GhostedVector":
        """Fill the ghost entries from their owners. Collective."""
        ghost_indices = np.unique(np.asarray(ghost_indices, dtype=np.int64))
        ghost_indices = ghost_indices[~partition.is_owned(ghost_indices)]
        values = fetch_values(comm, partition.offsets, owned, ghost_indices)
        return cls(partition, owned, ghost_indices, values)

    def _ghost_position(self, index: int) -> int:
        pos = int(np.searchsorted(self.ghost_indices, index))
        if pos >= len(self.ghost_indices) or self.ghost_indices[pos] != index:
            raise KeyError(f'Index {index} is neither owned nor a ghost of rank {self.partition.rank}')
        return pos

    def __contains__(self, index: int) -> bool:
        index = int(index)
        if self.partition.start <= index < self.partition.end:
            return True
        pos = int(np.searchsorted(self.ghost_indices, index))
        return pos < len(self.ghost_indices) and self.ghost_indices[pos] == index

    def __getitem__(self, index: int) -> float:
        index = int(index)
        if self.partition.start <= index < self.partition.end:
            return float(self.owned[index - self.partition.start])
        return float(self.ghost_values[self._ghost_position(index)])

    def __setitem__(self, index: int, value: float) -> None:
        index = int(index)
        if self.partition.start <= index < self.partition.end:
            self.owned[index - self.partition.start] = value
        else:
            self.ghost_values[self._ghost_position(index)] = value

    def values_at(self, indices: np.ndarray) -> np.ndarray:
        """Vectorised read of owned and ghost entries."""
        indices = np.asarray(indices, dtype=np.int64)
        out = np.empty(len(indices))
        owned = self.partition.is_owned(indices)
        out[owned] = self.owned[indices[owned] - self.partition.start]
        if np.any(~owned):
            ghosts = indices[~owned]
            pos = np.searchsorted(self.ghost_indices, ghosts)
            pos_c = np.minimum(pos, max(len(self.ghost_indices) - 1, 0))
            if len(self.ghost_indices) == 0 or np.any(self.ghost_indices[pos_c] != ghosts):
                raise KeyError(f'Some indices are neither owned nor ghosts of rank {self.partition.rank}')
            out[~owned] = self.ghost_values[pos_c]
        return out

    def l2_norm(self, comm: MPI.Comm) -> float:
        return float(np.sqrt(comm.allreduce(float(self.owned @ self.owned), op=MPI.SUM)))
