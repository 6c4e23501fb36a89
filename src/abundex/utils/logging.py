"""Logging configuration for abundex.

This module provides logging setup for abundex, with rich console output
and optional file output.

Features:
    - Rich console handler on the ``abundex`` logger
    - File logging for debugging
    - Configurable verbosity levels
    - Progress and timing helpers for long operations

Example:
    >>> from abundex.utils.logging import setup_logging, get_logger
    >>> setup_logging(verbosity=2)
    >>> logger = get_logger(__name__)
    >>> logger.info("Quantification started")
"""

import logging
import time
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

# =============================================================================
# Constants
# =============================================================================

# Name of the package logger every module logger hangs off
LOGGER_NAME = "abundex"

# File log format
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Rich console format
RICH_FORMAT = "%(message)s"

# Log levels by verbosity
VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
}


# =============================================================================
# Setup Functions
# =============================================================================


def setup_logging(
    verbosity: int = 1,
    log_file: Path | str | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Configure logging for abundex.

    Args:
        verbosity: Verbosity level (0=warning, 1=info, 2=debug).
        log_file: Optional file to log to (always at debug level).
        console: Rich console for the handler (stderr if None).

    Returns:
        The configured package logger.
    """
    level = VERBOSITY_LEVELS.get(max(verbosity, 0), logging.DEBUG)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if log_file is not None else level)
    logger.handlers.clear()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_time=False,
        show_path=False,
    )
    console_handler.setFormatter(logging.Formatter(RICH_FORMAT))
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a module.

    Args:
        name: Module name (typically __name__).

    Returns:
        Logger instance.
    """
    return logging.getLogger(name)


# =============================================================================
# Progress Logging
# =============================================================================


class ProgressLogger:
    """Logger for long-running operations with progress tracking.

    Attributes:
        logger: The underlying logger.
        total: Total number of items, or None when unknown.
        interval: Items between log messages.

    Example:
        >>> progress = ProgressLogger(logger, interval=100_000, description="Reading alignments")
        >>> for read in reads:
        ...     progress.update()
        >>> progress.finish()
    """

    def __init__(
        self,
        logger: logging.Logger,
        total: int | None = None,
        interval: int = 100_000,
        description: str = "Processing",
    ) -> None:
        self.logger = logger
        self.total = total
        self.interval = max(1, interval)
        self.description = description
        self.count = 0

    def update(self, n: int = 1) -> None:
        """Advance the counter, logging every ``interval`` items."""
        before = self.count // self.interval
        self.count += n
        if self.count // self.interval == before and self.count != self.total:
            return
        if self.total:
            pct = 100 * self.count / self.total
            self.logger.info(f"{self.description}: {self.count:,}/{self.total:,} ({pct:.1f}%)")
        else:
            self.logger.info(f"{self.description}: {self.count:,}")

    def finish(self) -> None:
        """Mark progress as complete."""
        self.logger.info(f"{self.description}: complete ({self.count:,} items)")


# =============================================================================
# Timing Utilities
# =============================================================================


class Timer:
    """Context manager for timing operations.

    Example:
        >>> with Timer("EM", logger):
        ...     estimator.estimate(classes, table)
        # Logs: "EM completed in 1.23s"
    """

    def __init__(self, description: str, logger: logging.Logger | None = None) -> None:
        self.description = description
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.start_time: float = 0
        self.elapsed: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed = time.perf_counter() - self.start_time
        self.logger.info(f"{self.description} completed in {self.elapsed:.2f}s")
