"""Utility functions for abundex.

Example:
    >>> from abundex.utils import setup_logging, Timer
    >>> setup_logging(verbosity=1)
"""

from abundex.utils.logging import (
    ProgressLogger,
    Timer,
    get_logger,
    setup_logging,
)

__all__ = [
    "ProgressLogger",
    "Timer",
    "get_logger",
    "setup_logging",
]
