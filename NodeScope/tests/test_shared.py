"""
Tests for Node-Shared Memory Segments.

The partitioning tests are pure arithmetic. The segment tests allocate real
MPI shared windows over the node communicator of `COMM_WORLD`; the
cross-process visibility checks only do something when the node hosts more
than one process (e.g. `mpiexec -n 2` on one machine).
"""

import copy
import warnings

import pytest
import torch
from mpi4py import MPI

from ..core.communication import window_fence
from ..core.errors import SharedMemoryError
from ..core import shared
from ..core.shared import SharedSegment, local_partition_size, partition_offset


@pytest.mark.parametrize("node_size", [1, 2, 3, 4, 7, 16])
@pytest.mark.parametrize("logical_size", [0, 1, 5, 16, 1003, 10**6 + 3])
def test_partition_sums_and_balance(logical_size, node_size):
    sizes = [local_partition_size(logical_size, node_size, r) for r in range(node_size)]
    assert sum(sizes) == logical_size
    assert max(sizes) - min(sizes) <= 1
    # remainder goes to the lowest ranks
    assert sizes == sorted(sizes, reverse=True)


def test_partition_offsets_are_contiguous():
    logical_size, node_size = 10, 4
    offsets = [partition_offset(logical_size, node_size, r) for r in range(node_size)]
    sizes = [local_partition_size(logical_size, node_size, r) for r in range(node_size)]
    assert sizes == [3, 3, 2, 2]
    assert offsets == [0, 3, 6, 8]


@pytest.mark.parametrize("args", [(10, 0, 0), (10, 2, 2), (10, 2, -1), (-1, 2, 0)])
def test_partition_rejects_invalid_input(args):
    with pytest.raises(ValueError):
        local_partition_size(*args)


def test_local_sizes_sum_over_node(topology):
    with SharedSegment((1003,), topology) as segment:
        total = topology.node_comm.allreduce(segment.local_size, op=MPI.SUM)
        assert total == 1003
        assert segment.size == 1003
        assert segment.object.shape == torch.Size([1003])
        assert segment.object.dtype == torch.float64


def test_segment_round_trip(topology):
    with SharedSegment((1003,), topology) as segment:
        if topology.node_size == 1:
            segment.object.zero_()
            segment.object[25] = 15.0
            assert segment.object[25].item() == 15.0
            return

        segment.fence()
        if topology.node_rank == 1:
            segment.object.zero_()
        segment.fence()
        assert torch.count_nonzero(segment.object).item() == 0
        segment.fence()
        if topology.node_rank == 1:
            segment.object[25] = 15.0
        segment.fence()
        if topology.node_rank != 1:
            data = segment.object
            assert data[25].item() == 15.0
            assert torch.count_nonzero(data).item() == 1


def test_local_views_partition_the_buffer(topology):
    with SharedSegment((4, 5), topology, dtype=torch.float32) as segment:
        segment.fence()
        segment.local_view().fill_(float(topology.node_rank + 1))
        segment.fence()
        flat = segment.object.view(-1)
        for r in range(topology.node_size):
            start = partition_offset(segment.size, topology.node_size, r)
            length = local_partition_size(segment.size, topology.node_size, r)
            assert torch.all(flat[start:start + length] == r + 1)
        segment.fence()


def test_like_copies_template(topology):
    template = torch.arange(12, dtype=torch.float64).view(3, 4)
    with SharedSegment.like(template, topology, copy_data=True) as segment:
        assert segment.shape == template.shape
        assert torch.equal(segment.object, template)


def test_move_transfers_ownership(topology):
    segment = SharedSegment((8,), topology)
    win = segment.win
    moved = segment.move()

    assert moved.owns_window
    assert moved.win == win
    assert not segment.owns_window
    assert segment.win == MPI.WIN_NULL
    assert moved.size == 8
    with pytest.raises(SharedMemoryError):
        segment.object
    with pytest.raises(SharedMemoryError):
        segment.fence()

    segment.free()  # no window, nothing to release
    moved.free()
    assert not moved.owns_window
    moved.free()


def test_unfreed_segment_warns_on_collection(topology):
    segment = SharedSegment((4,), topology)
    moved = segment.move()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        segment.__del__()  # moved-from segments own nothing
    with pytest.warns(ResourceWarning, match="was not freed"):
        moved.__del__()

    moved.free()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        moved.__del__()


def test_failed_query_releases_window(topology, monkeypatch):
    released = []
    free_window = shared.window_free

    def failing_query(win, rank):
        raise SharedMemoryError("query failed", operation="window_shared_query")

    def recording_free(win):
        released.append(win)
        free_window(win)

    monkeypatch.setattr(shared, "window_shared_query", failing_query)
    monkeypatch.setattr(shared, "window_free", recording_free)
    with pytest.raises(SharedMemoryError, match="query failed"):
        SharedSegment((8,), topology)
    assert len(released) == 1


def test_segment_cannot_be_copied(topology):
    with SharedSegment((4,), topology) as segment:
        with pytest.raises(TypeError):
            copy.copy(segment)
        with pytest.raises(TypeError):
            copy.deepcopy(segment)


def test_empty_segment(topology):
    with SharedSegment((0,), topology) as segment:
        assert segment.local_size == 0
        assert segment.object.numel() == 0


def test_fence_failure_is_shared_memory_error():
    class BrokenWin:
        def Fence(self, assertion):
            raise MPI.Exception(MPI.ERR_WIN)

    with pytest.raises(SharedMemoryError) as excinfo:
        window_fence(BrokenWin())
    assert excinfo.value.operation == "window_fence"
    assert isinstance(excinfo.value.__cause__, MPI.Exception)
