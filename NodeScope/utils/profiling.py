"""
Performance Profiling Utilities.

A `Profiler` measures named, nested regions of code on each process and can
print them locally or as one report reduced over a communicator.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

Events form a forest. Starting an event while another one is open makes it a
child of the open one; ending it returns to the parent:

.. code-block:: python

    profiler = Profiler("solver")
    profiler.start("iteration")
    profiler.start("exchange")      # child of "iteration"
    ...
    profiler.end()                  # back in "iteration"
    profiler.end()                  # nothing open
    profiler.print(topology.global_comm)

Nodes live in an arena (`Profiler.nodes`) and refer to each other by index:
a node's `children` maps names to indices and `parent` is an index or None.

Global reports
--------------
Processes may have taken different code paths and recorded different trees,
so children cannot be matched by position. `report(comm)` therefore runs in
two phases, both driven by rank 0 of `comm` (the authority):

1.  Shape synchronisation: level by level the names every process recorded
    are gathered to the authority, which adds zero-duration stand-ins for
    the ones it lacks. It then broadcasts how many events the level has and
    their names in its own order, and every other process creates stand-ins
    for the names it has not recorded.
2.  Reduction: walking the authority's tree again, every duration is reduced
    with max, min and sum (avg = sum / size) to the authority, which alone
    produces the text.

After a global report all processes hold trees of the same shape.

===============================================================================
"""

import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, TextIO

from ..core.communication import (
    broadcast_object,
    comm_rank,
    comm_size,
    gather_object,
    reduce_scalar,
    wtime,
)
from ..core.config import ProfilerConfig
from ..core.errors import WrongEventState

SEPARATOR = "====================="


@dataclass
class EventNode:
    """A timed region. `parent` and the values of `children` are arena indices."""
    index: int
    name: str
    start: float = 0.0
    duration: float = 0.0
    active: bool = False
    accumulate: bool = False
    parent: Optional[int] = None
    children: Dict[str, int] = field(default_factory=dict)


class Profiler:
    """
    Hierarchical event timer for one process.

    Not thread safe; use one profiler per thread or add external locking.
    """
    def __init__(self, name: Optional[str] = None, debug: Optional[bool] = None,
                 clock: Optional[Callable[[], float]] = None,
                 config: Optional[ProfilerConfig] = None):
        """
        Args:
            name (Optional[str]): Printed in report headers.
            debug (Optional[bool]): Raise `WrongEventState` when an active event
                is started again. Defaults to `config.debug`.
            clock (Optional[Callable[[], float]]): Time source in seconds,
                `MPI.Wtime` by default.
            config (Optional[ProfilerConfig]): Defaults for name, debug, precision.
        """
        config = config or ProfilerConfig()
        self.name = config.name if name is None else name
        self.debug = config.debug if debug is None else debug
        self.precision = config.precision
        self._clock = clock or wtime
        self.nodes: List[EventNode] = []
        self._roots: Dict[str, int] = {}
        self._current: Optional[int] = None

    # ------------------------------------------------------------------
    # Tree helpers
    # ------------------------------------------------------------------

    def _scope(self, parent: Optional[int]) -> Dict[str, int]:
        return self._roots if parent is None else self.nodes[parent].children

    def _ordered(self, parent: Optional[int]) -> List[str]:
        # roots print alphabetically, children in the order they were first seen
        scope = self._scope(parent)
        return sorted(scope) if parent is None else list(scope)

    def _get_or_create(self, name: str, parent: Optional[int]) -> EventNode:
        scope = self._scope(parent)
        if name not in scope:
            node = EventNode(index=len(self.nodes), name=name, parent=parent)
            self.nodes.append(node)
            scope[name] = node.index
        return self.nodes[scope[name]]

    def _find(self, name: str, parent: Optional[int]) -> Optional[EventNode]:
        scope = self._scope(parent)
        for child in self._ordered(parent):
            if child == name:
                return self.nodes[scope[child]]
            found = self._find(name, scope[child])
            if found is not None:
                return found
        return None

    def _check_not_active(self, name: str):
        # the target itself, or an open event of the same name further up
        target = self._scope(self._current).get(name)
        if target is not None and self.nodes[target].active:
            raise WrongEventState(f"event '{name}' is already active", operation="start")
        index = self._current
        while index is not None:
            node = self.nodes[index]
            if node.name == name and node.active:
                raise WrongEventState(f"event '{name}' is already active", operation="start")
            index = node.parent

    @property
    def current(self) -> Optional[EventNode]:
        """The innermost active event, or None."""
        return None if self._current is None else self.nodes[self._current]

    @property
    def roots(self) -> Dict[str, EventNode]:
        return {name: self.nodes[index] for name, index in self._roots.items()}

    def node(self, index: int) -> EventNode:
        return self.nodes[index]

    # ------------------------------------------------------------------
    # Event control
    # ------------------------------------------------------------------

    def add(self, name: str):
        """
        Register a root-level event without starting it.

        Idempotent. Added events appear in reports with zero duration even if
        they never run.
        """
        self._get_or_create(name, None)

    def start(self, name: str, accumulate: bool = False):
        """
        Start measuring `name`.

        Inside an open event `name` becomes (or reuses) a child of it,
        otherwise a root event. The started event becomes the current one.

        Args:
            name (str): Event name.
            accumulate (bool): Add this interval to the stored duration
                instead of replacing it.

        Raises:
            WrongEventState: In debug mode, if the event is already active.
        """
        if self.debug:
            self._check_not_active(name)
        node = self._get_or_create(name, self._current)
        node.accumulate = accumulate
        node.active = True
        self._current = node.index
        node.start = self._clock()

    def end(self):
        """
        Stop the current event and make its parent current.

        Does nothing when no event is open.
        """
        if self._current is None:
            return
        now = self._clock()
        node = self.nodes[self._current]
        if node.accumulate:
            node.duration += now - node.start
        else:
            node.duration = now - node.start
        node.active = False
        self._current = node.parent

    def reset(self):
        """Zero the duration and active flag of every child of the current event."""
        if self._current is None:
            return
        for index in self.nodes[self._current].children.values():
            child = self.nodes[index]
            child.duration = 0.0
            child.active = False

    def event(self, name: str) -> EventNode:
        """
        Return the event called `name`.

        Looks in the current scope first (children of the open event, or the
        roots), then searches the whole forest depth first. An unknown name
        is created in the current scope.
        """
        scope = self._scope(self._current)
        if name in scope:
            return self.nodes[scope[name]]
        found = self._find(name, None)
        if found is not None:
            return found
        return self._get_or_create(name, self._current)

    @contextmanager
    def timed(self, name: str, accumulate: bool = False) -> Iterator[EventNode]:
        """Time the enclosed block as event `name`."""
        self.start(name, accumulate)
        try:
            yield self.nodes[self._current]
        finally:
            self.end()

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def _title(self) -> str:
        return self.name + (" " if self.name else "") + "timing: "

    def _format_local(self, parent: Optional[int], prefix: str, lines: List[str]):
        scope = self._scope(parent)
        for name in self._ordered(parent):
            node = self.nodes[scope[name]]
            head = f"{prefix}Event '{name}' took "
            lines.append(f"{head:<45}{node.duration:.{self.precision}f} s.")
            self._format_local(node.index, prefix + "  ", lines)

    def _sync_events(self, comm, rank: int, parent: Optional[int]):
        peer_names = gather_object(self._ordered(parent), comm)
        if rank == 0:
            for names in peer_names[1:]:
                for name in names:
                    self._get_or_create(name, parent)
        names = self._ordered(parent) if rank == 0 else None
        count = broadcast_object(len(names) if rank == 0 else None, comm)
        for i in range(count):
            name = broadcast_object(names[i] if rank == 0 else None, comm)
            node = self._get_or_create(name, parent)
            self._sync_events(comm, rank, node.index)

    def _reduce_events(self, comm, rank: int, size: int, parent: Optional[int],
                       prefix: str, lines: List[str]):
        names = self._ordered(parent) if rank == 0 else None
        count = broadcast_object(len(names) if rank == 0 else None, comm)
        scope = self._scope(parent)
        for i in range(count):
            name = broadcast_object(names[i] if rank == 0 else None, comm)
            node = self.nodes[scope[name]]
            slowest = reduce_scalar(node.duration, "max", comm)
            fastest = reduce_scalar(node.duration, "min", comm)
            total = reduce_scalar(node.duration, "sum", comm)
            if rank == 0:
                head = f"{prefix}Event '{name}' took"
                lines.append(f"{head:<45} {slowest:13.6f} {fastest:13.6f} {total / size:13.6f} s.")
            self._reduce_events(comm, rank, size, node.index, prefix + "  ", lines)

    def report(self, comm=None) -> Optional[str]:
        """
        Build the timing report.

        Args:
            comm: When given, produce the global report over this communicator.
                Collective: every process of `comm` must call it. Only rank 0
                gets the text, the others get None.

        Returns:
            Optional[str]: The report text.

        Raises:
            CommunicatorError: If a broadcast or reduction fails.
        """
        if comm is None:
            lines = [self._title()]
            self._format_local(None, "", lines)
            lines.append(SEPARATOR)
            return "\n".join(lines) + "\n"

        rank = comm_rank(comm)
        size = comm_size(comm)
        self._sync_events(comm, rank, None)
        lines: List[str] = []
        if rank == 0:
            lines.append(f"{self._title():<43}{'max':>13}{'min':>13}{'avg':>13}")
        self._reduce_events(comm, rank, size, None, "", lines)
        if rank != 0:
            return None
        lines.append(SEPARATOR)
        return "\n".join(lines) + "\n"

    def print(self, comm=None, file: Optional[TextIO] = None):
        """Write `report(comm)` to `file` (stdout by default) when there is one."""
        text = self.report(comm)
        if text is None:
            return
        out = file or sys.stdout
        out.write(text)
        out.flush()


_DEFAULT_PROFILER: Optional[Profiler] = None


def get_profiler() -> Profiler:
    """Process-wide default profiler, created on first use."""
    global _DEFAULT_PROFILER
    if _DEFAULT_PROFILER is None:
        _DEFAULT_PROFILER = Profiler()
    return _DEFAULT_PROFILER
