"""Tests for abundex.parallel.executor module.

Tests cover:
- TaskResult and ExecutionStats data structures
- ParallelExecutor with serial and threaded backends
- Batching
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from abundex.parallel.executor import (
    ExecutionStats,
    ExecutorBackend,
    ParallelExecutor,
    TaskResult,
    batched,
)


# =============================================================================
# Data Structure Tests
# =============================================================================


class TestTaskResult:
    """Tests for TaskResult data structure."""

    def test_to_dict(self):
        result = TaskResult(task_id="batch_000001", success=True, result=[1], duration_seconds=1.23456)
        data = result.to_dict()
        assert data["task_id"] == "batch_000001"
        assert data["success"] is True
        assert data["duration_seconds"] == 1.235
        assert "result" not in data


class TestExecutionStats:
    """Tests for ExecutionStats data structure."""

    def test_to_dict(self):
        stats = ExecutionStats(
            total_tasks=4,
            successful=3,
            failed=1,
            total_duration=2.0004,
            mean_task_duration=0.5,
            max_task_duration=0.9,
        )
        data = stats.to_dict()
        assert data["total_tasks"] == 4
        assert data["failed"] == 1
        assert data["total_duration"] == 2.0


# =============================================================================
# Batching Tests
# =============================================================================


class TestBatched:
    """Tests for batched."""

    def test_even_split(self):
        assert list(batched(range(6), 3)) == [[0, 1, 2], [3, 4, 5]]

    def test_remainder(self):
        assert list(batched(range(5), 2)) == [[0, 1], [2, 3], [4]]

    def test_empty(self):
        assert list(batched([], 4)) == []

    def test_consumes_iterator_lazily(self):
        source = iter(range(10))
        first = next(batched(source, 3))
        assert first == [0, 1, 2]
        assert next(source) == 3

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            list(batched([1], 0))


# =============================================================================
# Executor Tests
# =============================================================================


class TestParallelExecutor:
    """Tests for ParallelExecutor."""

    def test_single_worker_is_serial(self):
        executor = ParallelExecutor(n_workers=1, backend="threads")
        assert executor.backend is ExecutorBackend.SERIAL

    def test_empty_batches(self):
        results, stats = ParallelExecutor(n_workers=2).map_batches(len, [])
        assert results == []
        assert stats.total_tasks == 0

    @pytest.mark.parametrize("n_workers", [1, 4])
    def test_results_in_submission_order(self, n_workers):
        def slow_sum(batch):
            # Earlier batches finish later
            time.sleep(0.01 * (5 - batch[0]))
            return sum(batch)

        batches = [[i, 10] for i in range(5)]
        results, stats = ParallelExecutor(n_workers=n_workers).map_batches(slow_sum, batches)

        assert [r.result for r in results] == [10, 11, 12, 13, 14]
        assert [r.task_id for r in results] == [f"batch_{i:06d}" for i in range(5)]
        assert stats.successful == 5

    def test_runs_on_multiple_threads(self):
        seen = set()
        barrier = threading.Barrier(2, timeout=5)

        def record_thread(batch):
            barrier.wait()
            seen.add(threading.get_ident())
            return batch

        ParallelExecutor(n_workers=2).map_batches(record_thread, [[1], [2]])
        assert len(seen) == 2

    @pytest.mark.parametrize("n_workers", [1, 3])
    def test_error_propagates(self, n_workers):
        def fail_on_two(batch):
            if batch == [2]:
                raise ValueError("bad batch")
            return batch

        with pytest.raises(ValueError, match="bad batch"):
            ParallelExecutor(n_workers=n_workers).map_batches(fail_on_two, [[1], [2], [3]])

    def test_continue_on_error(self):
        def fail_on_two(batch):
            if batch == [2]:
                raise ValueError("bad batch")
            return batch

        results, stats = ParallelExecutor(n_workers=2).map_batches(
            fail_on_two, [[1], [2], [3]], continue_on_error=True
        )

        assert [r.success for r in results] == [True, False, True]
        assert results[1].error == "bad batch"
        assert results[1].result is None
        assert stats.failed == 1

    def test_progress_callback(self):
        callback = MagicMock()
        ParallelExecutor(n_workers=1, progress_callback=callback).map_batches(len, [[1], [2]])

        assert callback.call_count == 2
        callback.assert_called_with(2, 2, "batch_000001")

    def test_map_items(self):
        executor = ParallelExecutor(n_workers=3)
        assert executor.map_items(lambda x: x * x, list(range(7)), batch_size=2) == [
            0, 1, 4, 9, 16, 25, 36,
        ]

