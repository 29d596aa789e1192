"""Point-to-point helpers on top of mpi4py collectives.

All functions are collective: every rank of the communicator must call them,
even with nothing to send.
"""

from typing import Sequence, Tuple

import numpy as np
from mpi4py import MPI


def concat_arrays(parts: Sequence[np.ndarray], dtype) -> np.ndarray:
    parts = [p for p in parts if len(p)]
    if not parts:
        return np.empty(0, dtype=dtype)
    return np.concatenate(parts).astype(dtype, copy=False)


def exchange_by_owner(comm: MPI.Comm, owners: np.ndarray, *arrays: np.ndarray) -> Tuple[np.ndarray, ...]:
    """Send entry ``i`` of every array to rank ``owners[i]``.

    Returns:
        The arrays received from all ranks, concatenated in rank order.
    """
    owners = np.asarray(owners, dtype=np.int64)
    arrays = tuple(np.asarray(a) for a in arrays)
    size = comm.Get_size()
    if size == 1:
        return arrays
    order = np.argsort(owners, kind='stable')
    counts = np.bincount(owners, minlength=size)
    bounds = np.concatenate([[0], np.cumsum(counts)])
    outgoing = [
        tuple(a[order[bounds[r]:bounds[r + 1]]] for a in arrays) for r in range(size)
    ]
    incoming = comm.alltoall(outgoing)
    return tuple(
        concat_arrays([msg[i] for msg in incoming], arrays[i].dtype) for i in range(len(arrays))
    )


def fetch_values(comm: MPI.Comm, offsets: np.ndarray, owned_values: np.ndarray,
                 indices: np.ndarray) -> np.ndarray:
    """Read entries of a distributed vector.

    Args:
        comm: Communicator.
        offsets: ``(size + 1,)`` ownership ranges of the vector.
        owned_values: Locally owned part of the vector.
        indices: Global indices to read (any rank may own them).

    Returns:
        Values at ``indices``, in the same order.
    """
    indices = np.asarray(indices, dtype=np.int64)
    rank = comm.Get_rank()
    size = comm.Get_size()
    if size == 1:
        return np.asarray(owned_values)[indices - offsets[0]]
    owners = np.searchsorted(offsets, indices, side='right') - 1
    order = np.argsort(owners, kind='stable')
    counts = np.bincount(owners, minlength=size)
    bounds = np.concatenate([[0], np.cumsum(counts)])
    requests = [indices[order[bounds[r]:bounds[r + 1]]] for r in range(size)]
    asked = comm.alltoall(requests)
    answers = [np.asarray(owned_values)[req - offsets[rank]] for req in asked]
    replies = comm.alltoall(answers)
    values = np.empty(len(indices), dtype=np.asarray(owned_values).dtype)
    values[order] = concat_arrays(replies, values.dtype)
    return values


def allgather_concat(comm: MPI.Comm, array: np.ndarray) -> np.ndarray:
    """Concatenate a per-rank array over all ranks, in rank order."""
    array = np.asarray(array)
    return concat_arrays(comm.allgather(array), array.dtype)


