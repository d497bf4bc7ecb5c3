"""
Exception Taxonomy

Every failure raised by NodeScope derives from `NodeScopeError`. None of them
are meant to be retried: a failed collective means the processes have already
diverged, and a failed window allocation or a size mismatch needs the
environment fixed before a rerun can succeed.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

.. code-block:: python

    from NodeScope.core.errors import CommunicatorError

    try:
        topology = init_topology()
    except CommunicatorError as e:
        # e.operation == "split_shared", e.rank == <global rank>
        MPI.COMM_WORLD.Abort(1)

===============================================================================
"""

from typing import Optional


class NodeScopeError(RuntimeError):
    """
    Base class for all NodeScope errors.

    Args:
        message (str): Human readable description.
        operation (Optional[str]): Name of the failing operation.
        rank (Optional[int]): Rank of the process that observed the failure.
    """
    def __init__(self, message: str, operation: Optional[str] = None, rank: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.rank = rank

    def __str__(self) -> str:
        parts = []
        if self.rank is not None:
            parts.append(f"[rank {self.rank}]")
        if self.operation:
            parts.append(f"{self.operation}:")
        parts.append(self.message)
        return " ".join(parts)


class CommunicatorError(NodeScopeError):
    """Group split, query or collective operation failed."""


class SharedMemoryError(NodeScopeError):
    """Shared window allocation, query, fence or release failed."""


class ConfigurationError(NodeScopeError):
    """Declared sizes or settings do not match the running environment."""


class ProtocolViolation(NodeScopeError):
    """Group splitting produced an inconsistent result (e.g. root rank mismatch)."""


class WrongEventState(NodeScopeError):
    """A profiler event was started while it was already active."""
