"""
Core utilities for NodeScope.

This module contains fundamental abstractions for:
- MPI substrate bindings
- Communicator topology (node, internode and device groups)
- Node-shared memory segments
- Configuration and error types
"""

from .errors import (
    NodeScopeError,
    CommunicatorError,
    SharedMemoryError,
    ConfigurationError,
    ProtocolViolation,
    WrongEventState,
)
from .config import (
    TopologyConfig,
    ProfilerConfig,
    NodeScopeConfig,
    load_config,
    build_config,
    load_nodescope_config,
)
from .distributed import setup_distributed, cleanup_distributed
from .process_groups import (
    GroupInfo,
    Topology,
    TopologyHolder,
    TopologyManager,
    build_topology,
    setup_device_group,
    init_topology,
    get_topology,
)
from .shared import SharedSegment, local_partition_size, partition_offset
from .communication import broadcast

__all__ = [
    'NodeScopeError',
    'CommunicatorError',
    'SharedMemoryError',
    'ConfigurationError',
    'ProtocolViolation',
    'WrongEventState',
    'TopologyConfig',
    'ProfilerConfig',
    'NodeScopeConfig',
    'load_config',
    'build_config',
    'load_nodescope_config',
    'setup_distributed',
    'cleanup_distributed',
    'GroupInfo',
    'Topology',
    'TopologyHolder',
    'TopologyManager',
    'build_topology',
    'setup_device_group',
    'init_topology',
    'get_topology',
    'SharedSegment',
    'local_partition_size',
    'partition_offset',
    'broadcast',
]
