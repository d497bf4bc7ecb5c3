"""
Communicator Topology

This module derives the communicators a NodeScope application works with from
one global communicator, and keeps the result as a process-wide, build-once
`Topology`.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

Two nodes with three processes each, launched with `mpiexec -n 6`:

.. code-block:: text

    global ranks      node 0: 0 1 2        node 1: 3 4 5
    node group        ranks   0 1 2                0 1 2
    internode group   ranks   0 - -                1 - -     (- = sentinel -1)
    node_index                0 0 0                1 1 1

With `devices_per_node=2, devices_total=4` the device group holds the global
ranks 0, 1, 3, 4 and ranks 2 and 5 get the sentinel.

.. code-block:: python

    from NodeScope.core.process_groups import init_topology

    topology = init_topology()          # collective, built exactly once
    node_comm = topology.node_comm      # for shared segments
    topology.internode_rank             # -1 unless node_rank == 0

===============================================================================
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from mpi4py import MPI

from .communication import (
    allreduce_scalar,
    broadcast_object,
    comm_rank,
    comm_size,
    free_comm,
    gather_object,
    split,
    split_shared,
)
from .config import TopologyConfig
from .errors import ConfigurationError, NodeScopeError, ProtocolViolation

logger = logging.getLogger(__name__)

GROUP_NAMES = ('global', 'node', 'internode', 'device')


@dataclass(frozen=True)
class GroupInfo:
    """
    A communicator together with the calling process's rank and size in it.

    Processes that are not members carry `MPI.COMM_NULL` and rank/size -1.
    """
    comm: Any
    rank: int
    size: int

    @classmethod
    def sentinel(cls) -> "GroupInfo":
        return cls(MPI.COMM_NULL, -1, -1)

    @property
    def participates(self) -> bool:
        return self.rank >= 0


@dataclass(frozen=True)
class Topology:
    """
    Immutable view of the communicators derived from the global communicator.

    `node_index` and `node_count` are the internode rank and size of the node
    leader, known on every process of the node (the internode group itself
    only exists on leaders).
    """
    global_group: GroupInfo
    node_group: GroupInfo
    internode_group: GroupInfo
    node_index: int
    node_count: int
    device_group: Optional[GroupInfo] = None

    @property
    def global_comm(self):
        return self.global_group.comm

    @property
    def global_rank(self) -> int:
        return self.global_group.rank

    @property
    def global_size(self) -> int:
        return self.global_group.size

    @property
    def node_comm(self):
        return self.node_group.comm

    @property
    def node_rank(self) -> int:
        return self.node_group.rank

    @property
    def node_size(self) -> int:
        return self.node_group.size

    @property
    def internode_comm(self):
        return self.internode_group.comm

    @property
    def internode_rank(self) -> int:
        return self.internode_group.rank

    @property
    def internode_size(self) -> int:
        return self.internode_group.size

    @property
    def has_device_group(self) -> bool:
        return self.device_group is not None

    @property
    def device_comm(self):
        return (self.device_group or GroupInfo.sentinel()).comm

    @property
    def device_rank(self) -> int:
        return (self.device_group or GroupInfo.sentinel()).rank

    @property
    def device_size(self) -> int:
        return (self.device_group or GroupInfo.sentinel()).size

    def get_group(self, name: str) -> GroupInfo:
        """
        Look up a group by name ('global', 'node', 'internode' or 'device').

        Raises:
            KeyError: For any other name.
        """
        if name not in GROUP_NAMES:
            raise KeyError(f"Unknown group '{name}', expected one of {GROUP_NAMES}")
        if name == 'device':
            return self.device_group or GroupInfo.sentinel()
        return getattr(self, f"{name}_group")


# ============================================================================
# Builders
# ============================================================================

def setup_node_group(global_comm, global_rank: int) -> GroupInfo:
    """Splits the global communicator into one group per shared-memory domain."""
    node_comm = split_shared(global_comm, key=global_rank)
    return GroupInfo(node_comm, comm_rank(node_comm), comm_size(node_comm))


def setup_internode_group(global_comm, global_rank: int, node_rank: int) -> GroupInfo:
    """
    Groups the node leaders (node rank 0) across nodes.

    Every process of `global_comm` must call this; non-leaders receive the
    sentinel.

    Raises:
        ProtocolViolation: If global rank 0 does not end up as internode rank 0.
    """
    if node_rank == 0:
        internode_comm = split(global_comm, 0, key=global_rank)
        internode_rank = comm_rank(internode_comm)
        internode_size = comm_size(internode_comm)
        if global_rank == 0 and internode_rank != global_rank:
            raise ProtocolViolation(
                f"root rank mismatch: global rank 0 has internode rank {internode_rank}",
                operation="setup_internode_group",
                rank=global_rank,
            )
        return GroupInfo(internode_comm, internode_rank, internode_size)
    split(global_comm, None, key=global_rank)
    return GroupInfo.sentinel()


def setup_device_group(global_comm, global_rank: int, node_rank: int,
                       devices_per_node: int, devices_total: int) -> GroupInfo:
    """
    Groups the processes that drive a device: the first `devices_per_node`
    processes of every node.

    Every process of `global_comm` must call this. Existing groups are never
    modified, so a failure leaves them usable.

    Args:
        global_comm: Communicator to split.
        global_rank (int): Rank in `global_comm`, used as ordering key.
        node_rank (int): Rank in the node group.
        devices_per_node (int): Number of devices on each node.
        devices_total (int): Expected size of the resulting group.

    Returns:
        GroupInfo: The device group, or the sentinel for non-members.

    Raises:
        ConfigurationError: If the group size differs from `devices_total`.
            Raised on every process, members or not.
    """
    if node_rank < devices_per_node:
        devices_comm = split(global_comm, 0, key=global_rank)
        group = GroupInfo(devices_comm, comm_rank(devices_comm), comm_size(devices_comm))
    else:
        split(global_comm, None, key=global_rank)
        group = GroupInfo.sentinel()

    # Only members see the group size, so every process counts them
    joined = int(allreduce_scalar(1 if group.participates else 0, "sum", global_comm))
    if joined != devices_total:
        free_comm(group.comm)
        raise ConfigurationError(
            f"device group size mismatch: {joined} processes joined, {devices_total} devices declared",
            operation="setup_device_group",
            rank=global_rank,
        )
    return group


def build_topology(global_comm=None, devices_per_node: Optional[int] = None,
                   devices_total: Optional[int] = None) -> Topology:
    """
    Derives node-local, internode and optionally device groups. Collective
    over `global_comm`.

    Args:
        global_comm: The global communicator (defaults to `MPI.COMM_WORLD`).
        devices_per_node (Optional[int]): Devices per node; with `devices_total`
            requests a device group.
        devices_total (Optional[int]): Expected number of device processes.

    Returns:
        Topology: The derived, immutable topology.

    Raises:
        ConfigurationError: If the device group does not match `devices_total`.
            The node and internode groups built so far are freed first.
    """
    if global_comm is None:
        global_comm = MPI.COMM_WORLD
    global_rank = comm_rank(global_comm)
    global_size = comm_size(global_comm)

    node_group = setup_node_group(global_comm, global_rank)
    internode_group = setup_internode_group(global_comm, global_rank, node_group.rank)

    # Leaders tell the rest of their node which node this is
    node_index, node_count = broadcast_object(
        (internode_group.rank, internode_group.size), node_group.comm, root=0
    )

    device_group = None
    if devices_per_node is not None and devices_total is not None:
        try:
            device_group = setup_device_group(
                global_comm, global_rank, node_group.rank, devices_per_node, devices_total
            )
        except NodeScopeError:
            free_comm(internode_group.comm)
            free_comm(node_group.comm)
            raise

    if global_rank == 0:
        logger.info(
            "Inter-node communicator has %d cores. Intra-node communicator has %d cores.",
            internode_group.size, node_group.size,
        )

    return Topology(
        global_group=GroupInfo(global_comm, global_rank, global_size),
        node_group=node_group,
        internode_group=internode_group,
        node_index=node_index,
        node_count=node_count,
        device_group=device_group,
    )


def free_topology(topology: Topology):
    """Frees every derived communicator of `topology`. Collective."""
    if topology.device_group is not None:
        free_comm(topology.device_group.comm)
    free_comm(topology.internode_group.comm)
    free_comm(topology.node_group.comm)


# ============================================================================
# Process-wide holder
# ============================================================================

class TopologyHolder:
    """
    Holds the process-wide Topology: built once on first initialisation and
    read-only afterwards.
    """
    def __init__(self):
        self._topology: Optional[Topology] = None
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._topology is not None

    def initialize(self, comm=None, config: Optional[TopologyConfig] = None) -> Topology:
        """
        Builds the topology on the first call and returns it on every call.

        Raises:
            ConfigurationError: If called again with a different communicator.
        """
        with self._lock:
            if self._topology is not None:
                if comm is not None and comm != self._topology.global_comm:
                    raise ConfigurationError(
                        "topology already initialised from a different communicator",
                        operation="TopologyHolder.initialize",
                    )
                return self._topology
            config = config or TopologyConfig()
            self._topology = build_topology(
                comm, devices_per_node=config.devices_per_node, devices_total=config.devices_total
            )
            return self._topology

    def get(self) -> Topology:
        if self._topology is None:
            raise ConfigurationError("topology has not been initialised", operation="TopologyHolder.get")
        return self._topology

    def reset(self):
        """Frees the derived communicators and forgets the topology. Collective."""
        with self._lock:
            if self._topology is not None:
                free_topology(self._topology)
                self._topology = None


_HOLDER = TopologyHolder()


def init_topology(comm=None, config: Optional[TopologyConfig] = None) -> Topology:
    """Initialises (once) and returns the process-wide topology."""
    return _HOLDER.initialize(comm, config)


def get_topology() -> Topology:
    """Returns the process-wide topology; `init_topology` must have run."""
    return _HOLDER.get()


def reset_topology():
    _HOLDER.reset()


# ============================================================================
# Manager
# ============================================================================

class TopologyManager:
    """
    Entry point for applications that want named access to the groups.

    Wraps a Topology (the process-wide one unless given explicitly) and
    resolves groups by name for the profiler and other consumers.
    """
    def __init__(self, comm=None, config: Optional[TopologyConfig] = None,
                 topology: Optional[Topology] = None):
        """
        Args:
            comm: Global communicator used when the process-wide topology is
                built by this call.
            config (Optional[TopologyConfig]): Device layout for that build.
            topology (Optional[Topology]): Adopt an already built topology instead.
        """
        self.topology = topology if topology is not None else init_topology(comm, config)

    def get_group(self, name: str):
        """
        Get the communicator of a named group.

        Args:
            name (str): 'global', 'node', 'internode' or 'device'.

        Returns:
            The communicator, `MPI.COMM_NULL` if this process is not a member.
        """
        return self.topology.get_group(name).comm

    def get_all_groups(self) -> Dict[str, Any]:
        """Returns the groups this process is a member of, keyed by name."""
        groups = {}
        for name in GROUP_NAMES:
            info = self.topology.get_group(name)
            if info.participates:
                groups[name] = info.comm
        return groups

    def print_topology_info(self):
        """
        Logs the rank of every process in every group. Collective over the
        global group; only global rank 0 logs.
        """
        t = self.topology
        row = (t.global_rank, t.node_index, t.node_rank, t.internode_rank, t.device_rank)
        rows = gather_object(row, t.global_comm, root=0)
        if t.global_rank != 0:
            return
        lines = [
            "=" * 60,
            "Communicator Topology",
            "=" * 60,
            f"Nodes: {t.node_count}   Processes: {t.global_size}",
            "-" * 60,
            "Global Rank | Node | Node Rank | Internode Rank | Device Rank",
            "-" * 60,
        ]
        for g, n, nr, ir, dr in rows:
            lines.append(f"{g:11d} | {n:4d} | {nr:9d} | {ir:14d} | {dr:11d}")
        lines.append("=" * 60)
        logger.info("\n".join(lines))
