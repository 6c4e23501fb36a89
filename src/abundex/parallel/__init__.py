"""Parallelization utilities for abundex.

Filtering batches and bootstrap replicates are independent and run on a
thread pool; the EM estimator manages its own per-iteration pool.

Example:
    >>> from abundex.parallel import ParallelExecutor, batched
    >>> executor = ParallelExecutor(n_workers=4)
    >>> results, stats = executor.map_batches(func, list(batched(reads, 10_000)))
"""

from abundex.parallel.executor import (
    ExecutionStats,
    ExecutorBackend,
    ParallelExecutor,
    TaskResult,
    batched,
)

__all__: list[str] = [
    "ExecutionStats",
    "ExecutorBackend",
    "ParallelExecutor",
    "TaskResult",
    "batched",
]
