"""Local parallel execution using threads.

This module runs independent batches of work (filtering batches of reads,
bootstrap replicates) on a thread pool and hands results back in
submission order, so downstream reductions are deterministic whatever the
completion order.

Features:
    - Serial and threaded backends
    - Progress callbacks
    - Per-task timing and error capture

Example:
    >>> from abundex.parallel.executor import ParallelExecutor
    >>> executor = ParallelExecutor(n_workers=8)
    >>> results, stats = executor.map_batches(filter_batch, batches)
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Sequence, TypeVar

import attrs

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


# =============================================================================
# Enums
# =============================================================================


class ExecutorBackend(Enum):
    """Available execution backends."""

    SERIAL = "serial"
    THREADS = "threads"


# =============================================================================
# Data Structures
# =============================================================================


@attrs.define(slots=True)
class TaskResult:
    """Result from one batch."""

    task_id: str
    success: bool
    result: Any | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "success": self.success,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@attrs.define(slots=True)
class ExecutionStats:
    """Statistics from parallel execution."""

    total_tasks: int
    successful: int
    failed: int
    total_duration: float
    mean_task_duration: float
    max_task_duration: float

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "total_tasks": self.total_tasks,
            "successful": self.successful,
            "failed": self.failed,
            "total_duration": round(self.total_duration, 3),
            "mean_task_duration": round(self.mean_task_duration, 3),
            "max_task_duration": round(self.max_task_duration, 3),
        }


# =============================================================================
# Batching
# =============================================================================


def batched(items: Iterable[T], batch_size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most ``batch_size`` items."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


# =============================================================================
# Parallel Executor
# =============================================================================


class ParallelExecutor:
    """Execute independent tasks on a thread pool.

    Results are always returned in the order the tasks were submitted.

    Example:
        >>> executor = ParallelExecutor(n_workers=4)
        >>> results, stats = executor.map_batches(func, batches)
        >>> print(f"Processed {stats.successful}/{stats.total_tasks} batches")
    """

    def __init__(
        self,
        n_workers: int = 1,
        backend: ExecutorBackend | str = ExecutorBackend.THREADS,
        progress_callback: Callable[[int, int, str], None] | None = None,
    ) -> None:
        """Initialize executor.

        Args:
            n_workers: Number of worker threads (1 = serial).
            backend: Execution backend.
            progress_callback: Called with (completed, total, task_id).
        """
        self.n_workers = max(1, n_workers)
        self.backend = ExecutorBackend(backend) if isinstance(backend, str) else backend
        self.progress_callback = progress_callback

        if self.n_workers == 1:
            self.backend = ExecutorBackend.SERIAL

    def map_batches(
        self,
        func: Callable[[T], R],
        batches: Sequence[T],
        continue_on_error: bool = False,
    ) -> tuple[list[TaskResult], ExecutionStats]:
        """Apply ``func`` to each batch.

        Args:
            func: Function taking one batch.
            batches: Batches to process.
            continue_on_error: If False, the first failure is re-raised.

        Returns:
            Tuple of (results in submission order, execution_stats).
        """
        if not batches:
            return [], ExecutionStats(
                total_tasks=0,
                successful=0,
                failed=0,
                total_duration=0.0,
                mean_task_duration=0.0,
                max_task_duration=0.0,
            )

        logger.debug(
            f"Processing {len(batches)} batches with {self.n_workers} workers "
            f"(backend={self.backend.value})"
        )

        start_time = time.time()
        if self.backend == ExecutorBackend.SERIAL:
            results = self._execute_serial(func, batches, continue_on_error)
        else:
            results = self._execute_threaded(func, batches, continue_on_error)

        total_duration = time.time() - start_time
        successful = sum(1 for r in results if r.success)
        durations = [r.duration_seconds for r in results]

        stats = ExecutionStats(
            total_tasks=len(results),
            successful=successful,
            failed=len(results) - successful,
            total_duration=total_duration,
            mean_task_duration=sum(durations) / len(durations),
            max_task_duration=max(durations),
        )
        return results, stats

    def map_items(
        self,
        func: Callable[[T], R],
        items: Sequence[T],
        batch_size: int = 1,
        continue_on_error: bool = False,
    ) -> list[R]:
        """Apply ``func`` to every item, batching items across workers.

        Returns:
            Results of ``func`` in item order.
        """
        batches = list(batched(items, batch_size))

        def run_batch(batch: list[T]) -> list[R]:
            return [func(item) for item in batch]

        results, _ = self.map_batches(run_batch, batches, continue_on_error)
        return [value for r in results if r.success for value in r.result]

    def _run_timed(self, func: Callable, batch: Any, task_id: str) -> TaskResult:
        start_time = time.time()
        try:
            result = func(batch)
        except Exception as e:
            return TaskResult(
                task_id=task_id,
                success=False,
                error=str(e),
                result=e,
                duration_seconds=time.time() - start_time,
            )
        return TaskResult(
            task_id=task_id,
            success=True,
            result=result,
            duration_seconds=time.time() - start_time,
        )

    def _handle(
        self,
        task_result: TaskResult,
        completed: int,
        total: int,
        continue_on_error: bool,
    ) -> None:
        if self.progress_callback:
            self.progress_callback(completed, total, task_result.task_id)

        if not task_result.success:
            error = task_result.result
            task_result.result = None
            if not continue_on_error:
                logger.error(f"Task {task_result.task_id} failed: {task_result.error}")
                raise error
            logger.warning(f"Task {task_result.task_id} failed: {task_result.error}")

    def _execute_serial(
        self,
        func: Callable,
        batches: Sequence,
        continue_on_error: bool,
    ) -> list[TaskResult]:
        """Serial execution with progress tracking."""
        results = []
        total = len(batches)

        for i, batch in enumerate(batches):
            task_result = self._run_timed(func, batch, f"batch_{i:06d}")
            self._handle(task_result, i + 1, total, continue_on_error)
            results.append(task_result)

        return results

    def _execute_threaded(
        self,
        func: Callable,
        batches: Sequence,
        continue_on_error: bool,
    ) -> list[TaskResult]:
        """Threaded execution with results kept in submission order."""
        results = []
        total = len(batches)

        with ThreadPoolExecutor(max_workers=self.n_workers) as executor:
            futures: list[Future] = [
                executor.submit(self._run_timed, func, batch, f"batch_{i:06d}")
                for i, batch in enumerate(batches)
            ]

            for i, future in enumerate(futures):
                task_result = future.result()
                try:
                    self._handle(task_result, i + 1, total, continue_on_error)
                except Exception:
                    for pending in futures[i + 1 :]:
                        pending.cancel()
                    raise
                results.append(task_result)

        return results

