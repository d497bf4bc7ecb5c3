"""
Utility Functions for NodeScope.
"""

from .logging import setup_logger, log_rank_0
from .profiling import EventNode, Profiler, get_profiler

__all__ = [
    'setup_logger',
    'log_rank_0',
    'EventNode',
    'Profiler',
    'get_profiler',
]
