"""
Node-Shared Memory Segments

This module lets the processes of one node map a single physical buffer
instead of each holding a private copy. A `SharedSegment` owns an MPI shared
window over the node communicator and exposes its memory as a
`torch.Tensor` of the requested logical shape.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

Allocation is spread over the node. For a logical size of 10 elements on a
node with 4 processes, `local_partition_size` gives:

.. code-block:: text

    node rank     0   1   2   3
    local size    3   3   2   2        (10 // 4 = 2, remainder 2 -> ranks 0, 1)
    offset        0   3   6   8

Each process contributes its local size to `MPI.Win.Allocate_shared`. With
the default contiguous layout the contributions are laid out back to back, so
the node-rank-0 base address starts one buffer of exactly 10 elements that
every process maps in full.

Visibility rules:
-   The buffer has no locking. Writers either keep to their own partition
    (`local_view()`) or bracket cross-partition access with `fence()`.
-   `fence()` is collective over the node: every node-local process must call
    it the same number of times in the same order, or the node deadlocks.

.. code-block:: python

    from NodeScope.core.shared import SharedSegment

    with SharedSegment((1003,), topology) as segment:
        segment.fence()
        if topology.node_rank == 1:
            segment.object.zero_()
            segment.object[25] = 15.0
        segment.fence()
        assert segment.object[25] == 15.0     # on every node-local process

===============================================================================
"""

import logging
import math
import warnings
from typing import Sequence, Union

import torch
from mpi4py import MPI

from .communication import (
    barrier,
    map_address,
    window_allocate_shared,
    window_fence,
    window_free,
    window_shared_query,
)
from .errors import SharedMemoryError
from .process_groups import Topology

logger = logging.getLogger(__name__)


def local_partition_size(logical_size: int, node_size: int, node_rank: int) -> int:
    """
    Number of elements the process `node_rank` contributes to a segment.

    The remainder of `logical_size / node_size` goes one element each to the
    lowest node ranks, so sizes sum to `logical_size` and differ by at most one.
    """
    if node_size <= 0:
        raise ValueError(f"node_size must be positive, got {node_size}")
    if not 0 <= node_rank < node_size:
        raise ValueError(f"node_rank {node_rank} outside [0, {node_size})")
    if logical_size < 0:
        raise ValueError(f"logical_size must be non-negative, got {logical_size}")
    return logical_size // node_size + (1 if logical_size % node_size > node_rank else 0)


def partition_offset(logical_size: int, node_size: int, node_rank: int) -> int:
    """Index of the first element of the partition owned by `node_rank`."""
    base, remainder = divmod(logical_size, node_size)
    return node_rank * base + min(node_rank, remainder)


def _element_size(dtype: torch.dtype) -> int:
    return torch.empty((), dtype=dtype).element_size()


class SharedSegment:
    """
    A node-shared buffer viewed as a tensor.

    Ownership of the window is exclusive: the segment cannot be copied,
    `move()` hands the window to a new segment, and `free()` releases it once.
    Views handed out by `object` and `local_view()` point into the window and
    must not be used after the owning segment is freed.
    """
    def __init__(self, shape: Union[int, Sequence[int]], topology: Topology,
                 dtype: torch.dtype = torch.float64):
        """
        Collectively allocates the segment over `topology.node_comm`.

        Args:
            shape: Logical shape of the shared tensor.
            topology (Topology): Provides the node communicator, rank and size.
            dtype (torch.dtype): Element type.

        Raises:
            SharedMemoryError: If the window cannot be allocated or queried.
        """
        if isinstance(shape, int):
            shape = (shape,)
        self._shape = torch.Size(shape)
        self._dtype = dtype
        self._size = math.prod(self._shape)
        self._node_comm = topology.node_comm
        self._node_rank = topology.node_rank
        self._local_size = local_partition_size(self._size, topology.node_size, topology.node_rank)
        self._offset = partition_offset(self._size, topology.node_size, topology.node_rank)
        self._win = MPI.WIN_NULL
        self._tensor = None
        self._allocate()

    def _allocate(self):
        itemsize = _element_size(self._dtype)
        win = window_allocate_shared(self._local_size * itemsize, itemsize, self._node_comm)
        try:
            address, _, _ = window_shared_query(win, 0)
            if self._size > 0:
                buffer = map_address(address, self._size * itemsize)
                tensor = torch.frombuffer(buffer, dtype=self._dtype, count=self._size).view(self._shape)
            else:
                tensor = torch.empty(self._shape, dtype=self._dtype)
        except Exception:
            window_free(win)
            raise
        self._win = win
        self._tensor = tensor
        barrier(self._node_comm)
        logger.debug(
            "Allocated shared segment: shape=%s dtype=%s local_size=%d offset=%d",
            tuple(self._shape), self._dtype, self._local_size, self._offset,
        )

    @classmethod
    def like(cls, template: torch.Tensor, topology: Topology, copy_data: bool = False) -> "SharedSegment":
        """
        Allocates a segment with the shape and dtype of an existing tensor.

        Args:
            template (torch.Tensor): Logical shape and dtype source.
            topology (Topology): Node layout.
            copy_data (bool): Node rank 0 copies `template` into the segment
                between two fences, so every node-local process sees the data
                on return.
        """
        segment = cls(template.shape, topology, dtype=template.dtype)
        if copy_data:
            segment.fence()
            if segment._node_rank == 0:
                segment.object.copy_(template)
            segment.fence()
        return segment

    def move(self) -> "SharedSegment":
        """
        Transfers ownership of the window to a new segment.

        The source keeps its shape information but no longer owns a window:
        `owns_window` is False, `win` is `MPI.WIN_NULL` and data access raises.
        """
        moved = SharedSegment.__new__(SharedSegment)
        moved.__dict__.update(self.__dict__)
        self._win = MPI.WIN_NULL
        self._tensor = None
        return moved

    def __copy__(self):
        raise TypeError("SharedSegment owns an MPI window and cannot be copied; use move()")

    def __deepcopy__(self, memo):
        raise TypeError("SharedSegment owns an MPI window and cannot be copied; use move()")

    def __reduce__(self):
        raise TypeError("SharedSegment cannot be pickled")

    def free(self):
        """Collectively releases the window if this segment still owns it."""
        if self._win == MPI.WIN_NULL:
            return
        win = self._win
        self._win = MPI.WIN_NULL
        self._tensor = None
        window_free(win)

    def __del__(self):
        # Freeing is collective and cannot run from the garbage collector
        if getattr(self, "_win", MPI.WIN_NULL) != MPI.WIN_NULL:
            warnings.warn(
                f"{self!r} was not freed; call free() on every node-local process "
                f"or use it as a context manager",
                ResourceWarning,
                stacklevel=2,
            )

    def __enter__(self) -> "SharedSegment":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.free()

    def _require_window(self, operation: str):
        if self._win == MPI.WIN_NULL:
            raise SharedMemoryError("segment does not own a window", operation=operation)

    def fence(self, assertion: int = 0):
        """
        Synchronises window access across the node.

        Writes issued by any node-local process before its fence are visible
        to all node-local processes after their matching fence.
        """
        self._require_window("fence")
        window_fence(self._win, assertion)

    @property
    def object(self) -> torch.Tensor:
        """The logical tensor bound to the shared buffer."""
        self._require_window("object")
        return self._tensor

    def local_view(self) -> torch.Tensor:
        """Flat view of the elements this process contributed."""
        self._require_window("local_view")
        return self._tensor.view(-1)[self._offset:self._offset + self._local_size]

    @property
    def owns_window(self) -> bool:
        return self._win != MPI.WIN_NULL

    @property
    def win(self) -> MPI.Win:
        return self._win

    @property
    def local_size(self) -> int:
        return self._local_size

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def size(self) -> int:
        return self._size

    @property
    def shape(self) -> torch.Size:
        return self._shape

    @property
    def dtype(self) -> torch.dtype:
        return self._dtype

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        return (
            f"SharedSegment(shape={tuple(self._shape)}, dtype={self._dtype}, "
            f"local_size={self._local_size}, owns_window={self.owns_window})"
        )
