"""
MPI Substrate Bindings

This module wraps the handful of `mpi4py` primitives the rest of NodeScope is
built on: rank/size queries, communicator splits, collectives (barrier,
broadcast, reduce) and one-sided shared-memory windows.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

Higher layers never call `mpi4py` directly. Going through these wrappers
gives two guarantees:

-   **Uniform failures**: an `MPI.Exception` raised by a group operation is
    re-raised as `CommunicatorError`, one raised by a window operation as
    `SharedMemoryError`. The failing operation and the calling rank are
    logged first and the original exception is chained as `__cause__`.
-   **Typed, Pythonic signatures**: reduction ops are named (`"max"`,
    `"min"`, `"sum"`), non-participation in a split is expressed as
    `color=None`, and window queries return plain integers.

All collective wrappers block until every participating process issues the
matching call. There is no timeout: a process that never arrives deadlocks
the group.

.. code-block:: python

    from NodeScope.core.communication import split_shared, reduce_scalar

    node_comm = split_shared(MPI.COMM_WORLD, key=MPI.COMM_WORLD.Get_rank())
    slowest = reduce_scalar(elapsed, "max", node_comm)  # None except on root

===============================================================================
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Tuple, Type

import torch
from mpi4py import MPI

from .errors import CommunicatorError, NodeScopeError, SharedMemoryError

logger = logging.getLogger(__name__)

# Largest number of elements sent in one Bcast call
BROADCAST_CHUNK_SIZE = int(1e8)

_REDUCE_OPS = {
    "max": MPI.MAX,
    "min": MPI.MIN,
    "sum": MPI.SUM,
}


def _safe_rank(comm: Optional[MPI.Comm]) -> Optional[int]:
    if comm is None or comm == MPI.COMM_NULL:
        return None
    try:
        return comm.Get_rank()
    except MPI.Exception:
        return None


@contextmanager
def _guard(operation: str, comm: Optional[MPI.Comm], error_cls: Type[NodeScopeError]) -> Iterator[None]:
    """Translate MPI failures inside the block into `error_cls`."""
    try:
        yield
    except MPI.Exception as e:
        rank = _safe_rank(comm)
        logger.error("Rank %s: %s failed with error %s", rank, operation, e.Get_error_string())
        raise error_cls(f"{operation} failed: {e.Get_error_string()}", operation=operation, rank=rank) from e


def _reduce_op(op: str) -> MPI.Op:
    try:
        return _REDUCE_OPS[op]
    except KeyError:
        raise ValueError(f"Unknown reduction operation: {op}") from None


# ============================================================================
# Group queries and splits
# ============================================================================

def comm_rank(comm: MPI.Comm) -> int:
    """Rank of the calling process in `comm`."""
    with _guard("comm_rank", None, CommunicatorError):
        return comm.Get_rank()


def comm_size(comm: MPI.Comm) -> int:
    """Number of processes in `comm`."""
    with _guard("comm_size", None, CommunicatorError):
        return comm.Get_size()


def split_shared(comm: MPI.Comm, key: int) -> MPI.Comm:
    """
    Splits `comm` into one sub-communicator per shared-memory domain (node).

    Args:
        comm (MPI.Comm): The communicator to split. Collective over `comm`.
        key (int): Ordering key for ranks inside each new communicator.

    Returns:
        MPI.Comm: The node-local communicator of the calling process.
    """
    with _guard("split_shared", comm, CommunicatorError):
        return comm.Split_type(MPI.COMM_TYPE_SHARED, key=key)


def split(comm: MPI.Comm, color: Optional[int], key: int) -> MPI.Comm:
    """
    Splits `comm` by color.

    Args:
        comm (MPI.Comm): The communicator to split. Collective over `comm`.
        color (Optional[int]): Group selector. `None` means the calling process
            takes part in the collective call but joins no group.
        key (int): Ordering key for ranks inside each new communicator.

    Returns:
        MPI.Comm: The new communicator, or `MPI.COMM_NULL` when `color` is None.
    """
    with _guard("split", comm, CommunicatorError):
        return comm.Split(MPI.UNDEFINED if color is None else color, key)


def free_comm(comm: MPI.Comm) -> None:
    """Frees a derived communicator. `COMM_NULL` and the predefined ones are ignored."""
    if comm in (MPI.COMM_NULL, MPI.COMM_WORLD, MPI.COMM_SELF):
        return
    with _guard("free_comm", comm, CommunicatorError):
        comm.Free()


# ============================================================================
# Collectives
# ============================================================================

def barrier(comm: MPI.Comm) -> None:
    """Blocks until every process of `comm` has entered the barrier."""
    with _guard("barrier", comm, CommunicatorError):
        comm.Barrier()


def broadcast_object(obj: Any, comm: MPI.Comm, root: int = 0) -> Any:
    """
    Broadcasts a picklable Python object from `root`.

    Returns:
        Any: `obj` on the root, the received object everywhere else.
    """
    with _guard("broadcast_object", comm, CommunicatorError):
        return comm.bcast(obj, root=root)


def gather_object(obj: Any, comm: MPI.Comm, root: int = 0) -> Optional[list]:
    """Gathers one picklable object per rank; the list is returned on `root` only."""
    with _guard("gather_object", comm, CommunicatorError):
        return comm.gather(obj, root=root)


def reduce_scalar(value: float, op: str, comm: MPI.Comm, root: int = 0) -> Optional[float]:
    """
    Reduces one scalar to `root`.

    Args:
        value (float): Local contribution.
        op (str): One of "max", "min" or "sum".
        comm (MPI.Comm): Communicator to reduce over.
        root (int): Rank receiving the result.

    Returns:
        Optional[float]: The reduced value on `root`, None on every other rank.
    """
    mpi_op = _reduce_op(op)
    with _guard(f"reduce[{op}]", comm, CommunicatorError):
        return comm.reduce(value, op=mpi_op, root=root)


def allreduce_scalar(value: float, op: str, comm: MPI.Comm) -> float:
    """Reduces one scalar and makes the result available on every rank."""
    mpi_op = _reduce_op(op)
    with _guard(f"allreduce[{op}]", comm, CommunicatorError):
        return comm.allreduce(value, op=mpi_op)


def broadcast(tensor: torch.Tensor, comm: MPI.Comm, root: int = 0) -> torch.Tensor:
    """
    Broadcasts the contents of a CPU tensor in place.

    The payload is split into chunks of at most `BROADCAST_CHUNK_SIZE`
    elements so that element counts never overflow the 32-bit count argument
    of MPI_Bcast.

    Args:
        tensor (torch.Tensor): Contiguous CPU tensor, same shape on every rank.
        comm (MPI.Comm): Communicator to broadcast over.
        root (int): Rank holding the source data.

    Returns:
        torch.Tensor: `tensor`, now holding the root's data.
    """
    if not tensor.is_contiguous():
        raise ValueError("broadcast requires a contiguous tensor")
    if comm_size(comm) <= 1:
        return tensor
    flat = tensor.view(-1)
    with _guard("broadcast", comm, CommunicatorError):
        for offset in range(0, flat.numel(), BROADCAST_CHUNK_SIZE):
            chunk = flat[offset:offset + BROADCAST_CHUNK_SIZE]
            comm.Bcast(chunk, root=root)
    return tensor


# ============================================================================
# One-sided shared windows
# ============================================================================

def window_allocate_shared(nbytes: int, itemsize: int, comm: MPI.Comm) -> MPI.Win:
    """
    Collectively allocates a shared-memory window over a node communicator.

    Each process contributes `nbytes`; the default contiguous layout places
    the contributions back to back in rank order.
    """
    with _guard("window_allocate_shared", comm, SharedMemoryError):
        return MPI.Win.Allocate_shared(nbytes, itemsize, comm=comm)


def window_shared_query(win: MPI.Win, rank: int = 0) -> Tuple[int, int, int]:
    """
    Locates the segment contributed by `rank` to a shared window.

    Returns:
        Tuple[int, int, int]: (base address, segment size in bytes, displacement unit).
    """
    with _guard("window_shared_query", None, SharedMemoryError):
        buf, itemsize = win.Shared_query(rank)
        return buf.address, buf.nbytes, itemsize


def map_address(address: int, nbytes: int) -> MPI.buffer:
    """Exposes `nbytes` of memory starting at `address` as a writable buffer."""
    with _guard("map_address", None, SharedMemoryError):
        return MPI.buffer.fromaddress(address, nbytes)


def window_fence(win: MPI.Win, assertion: int = 0) -> None:
    """Collective RMA synchronisation point for every process of the window's group."""
    with _guard("window_fence", None, SharedMemoryError):
        win.Fence(assertion)


def window_free(win: MPI.Win) -> None:
    """Collectively releases a window."""
    with _guard("window_free", None, SharedMemoryError):
        win.Free()


def wtime() -> float:
    """Wall-clock time in seconds since an arbitrary point in the past."""
    return MPI.Wtime()
