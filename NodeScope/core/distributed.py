"""
MPI Environment Initialization and Management.

This module contains utilities for:
- Obtaining the global communicator (MPI is initialised on `mpi4py` import)
- Rank and world size queries usable before or without a Topology
- Cleanup of the communicators derived by NodeScope
"""

import logging

from mpi4py import MPI

logger = logging.getLogger(__name__)


def setup_distributed() -> MPI.Intracomm:
    """
    Returns the global communicator, initialising MPI if needed.

    `mpi4py` calls MPI_Init on import by default; this also covers programs
    that disabled that with `mpi4py.rc.initialize = False`.
    """
    if not MPI.Is_initialized():
        MPI.Init()
    comm = MPI.COMM_WORLD
    logger.debug("MPI initialised: rank %d of %d", comm.Get_rank(), comm.Get_size())
    return comm


def cleanup_distributed():
    """
    Releases the communicators derived by the process-wide topology.

    MPI itself is finalised by `mpi4py` at interpreter exit.
    """
    from .process_groups import reset_topology
    reset_topology()


def get_rank() -> int:
    """Get the global rank of the current process."""
    if MPI.Is_initialized() and not MPI.Is_finalized():
        return MPI.COMM_WORLD.Get_rank()
    return 0


def get_world_size() -> int:
    """Get the total number of processes."""
    if MPI.Is_initialized() and not MPI.Is_finalized():
        return MPI.COMM_WORLD.Get_size()
    return 1


def is_main_process() -> bool:
    """Check if this is the main process (rank 0)."""
    return get_rank() == 0
