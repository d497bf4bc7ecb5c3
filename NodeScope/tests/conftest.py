"""
Pytest Configuration and Fixtures for MPI Testing.

This module provides pytest fixtures to run NodeScope tests both as a single
process (`pytest`) and as an MPI job
(`mpiexec -n 2 python -m pytest NodeScope/tests`).

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

Every rank of an MPI job runs the same test session, so collective tests line
up naturally as long as all ranks run or skip the same tests:

-   **`mpi_env` fixture**: Yields `MPI.COMM_WORLD`. Tests marked with
    `@pytest.mark.world_size(N)` are skipped on every rank when the job does
    not have exactly N processes. A barrier after each test keeps ranks in
    step.
-   **`topology` fixture**: Builds a fresh `Topology` from `COMM_WORLD` and
    frees its communicators after the test.
-   **`profiler` fixture**: A debug-mode `Profiler` driven by a manual clock,
    so durations are exact.

===============================================================================
"""

import pytest
from mpi4py import MPI
from typing import Generator

from ..core.process_groups import Topology, build_topology, free_topology
from ..utils.profiling import Profiler


class ManualClock:
    """Time source advanced explicitly by the test."""
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(scope="function")
def mpi_env(request: pytest.FixtureRequest) -> Generator[MPI.Intracomm, None, None]:
    """
    Provides the global communicator and enforces the `world_size` marker.

    Usage:
        @pytest.mark.world_size(2)
        def test_two_ranks(mpi_env):
            assert mpi_env.Get_size() == 2
    """
    comm = MPI.COMM_WORLD
    marker = request.node.get_closest_marker("world_size")
    if marker is not None and comm.Get_size() != marker.args[0]:
        pytest.skip(f"Test requires world_size={marker.args[0]}, but job has {comm.Get_size()} processes")

    yield comm

    comm.Barrier()


@pytest.fixture(scope="function")
def topology(mpi_env) -> Generator[Topology, None, None]:
    topo = build_topology(mpi_env)
    yield topo
    free_topology(topo)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def profiler(clock) -> Profiler:
    return Profiler(name="test", debug=True, clock=clock)
