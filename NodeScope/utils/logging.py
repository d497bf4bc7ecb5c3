"""
Distributed Logging Utilities.
"""

import logging
import os
from typing import Optional

from ..core.distributed import get_rank

LOG_FORMAT = "%(asctime)s [rank %(rank)d] %(levelname)s %(name)s: %(message)s"


class RankFilter(logging.Filter):
    """Stamps every record with the global MPI rank of the emitting process."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = get_rank()
        return True


def rank_log_file(log_file: str, rank: int) -> str:
    """'run.log' -> 'run.rank3.log'"""
    stem, suffix = os.path.splitext(log_file)
    return f"{stem}.rank{rank}{suffix}"


def setup_logger(
    name: str = 'NodeScope',
    level: int = logging.INFO,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Setup logger with a rank-stamped format for MPI runs.

    Calling it again replaces the handlers installed by the previous call
    instead of stacking them.

    Args:
        name: Logger name. The default 'NodeScope' also covers the package's own modules.
        level: Logging level.
        log_file: Optional path; each rank writes its own file derived from it.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, "_nodescope", False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]
    if log_file is not None:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(rank_log_file(log_file, get_rank())))

    for handler in handlers:
        handler._nodescope = True
        handler.setFormatter(formatter)
        handler.addFilter(RankFilter())
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def log_rank_0(message: str, level: int = logging.INFO, name: str = 'NodeScope'):
    """
    Log message only from rank 0 to avoid duplicate logs.
    """
    if get_rank() == 0:
        logging.getLogger(name).log(level, message)
