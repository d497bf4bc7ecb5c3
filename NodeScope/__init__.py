"""
NodeScope - Node-aware MPI utilities for distributed applications

A small library built on mpi4py providing:
- Communicator topology (node-local, internode and device groups)
- Node-shared memory segments exposed as torch tensors
- A hierarchical, MPI-reduced event profiler

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "NodeScope Team"

from .core import (
    NodeScopeError,
    CommunicatorError,
    SharedMemoryError,
    ConfigurationError,
    ProtocolViolation,
    WrongEventState,
    Topology,
    TopologyManager,
    init_topology,
    get_topology,
    setup_distributed,
    cleanup_distributed,
    SharedSegment,
    load_nodescope_config,
)
from .utils import Profiler, get_profiler, setup_logger, log_rank_0

__all__ = [
    # Core
    'init_topology',
    'get_topology',
    'Topology',
    'TopologyManager',
    'setup_distributed',
    'cleanup_distributed',
    'SharedSegment',
    'load_nodescope_config',

    # Profiling and logging
    'Profiler',
    'get_profiler',
    'setup_logger',
    'log_rank_0',

    # Errors
    'NodeScopeError',
    'CommunicatorError',
    'SharedMemoryError',
    'ConfigurationError',
    'ProtocolViolation',
    'WrongEventState',
]
