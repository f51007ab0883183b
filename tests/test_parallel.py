"""Tests for the parallel processing utilities."""

import threading
import time

import pytest

from gridregime.utils.parallel import (
    CancellationToken,
    ParallelProcessor,
    ProcessingResult,
    default_workers,
)


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initially_not_cancelled(self) -> None:
        """Test a fresh token is not cancelled."""
        assert not CancellationToken().cancelled

    def test_cancel(self) -> None:
        """Test cancel sets the flag."""
        token = CancellationToken()
        token.cancel()
        assert token.cancelled


class TestParallelProcessor:
    """Tests for ParallelProcessor."""

    def test_default_workers(self) -> None:
        """Test the default pool size is positive."""
        assert default_workers() >= 1
        assert ParallelProcessor(lambda x: x).max_concurrency == default_workers()

    def test_results_in_order(self) -> None:
        """Test results keep submission order despite completion order."""

        def work(x: int) -> int:
            time.sleep(0.01 * (5 - x))
            return x * x

        results = ParallelProcessor(work, max_concurrency=5).process(list(range(5)))
        assert [r.index for r in results] == [0, 1, 2, 3, 4]
        assert [r.result for r in results] == [0, 1, 4, 9, 16]
        assert all(r.success and r.attempts == 1 for r in results)

    def test_failure_captured(self) -> None:
        """Test an exception becomes a failed result."""
        errors: list[tuple[int, Exception]] = []

        def work(x: int) -> int:
            if x == 1:
                raise ValueError("bad item")
            return x

        processor = ParallelProcessor(
            work, max_concurrency=2, on_error=lambda i, e: errors.append((i, e))
        )
        results = processor.process([0, 1, 2])

        assert results[1].success is False
        assert isinstance(results[1].error, ValueError)
        assert results[0].result == 0 and results[2].result == 2
        assert [i for i, _ in errors] == [1]

    def test_retries(self) -> None:
        """Test failing items are retried before giving up."""
        attempts: dict[int, int] = {}
        lock = threading.Lock()

        def work(x: int) -> int:
            with lock:
                attempts[x] = attempts.get(x, 0) + 1
                count = attempts[x]
            if count < 3:
                raise RuntimeError("try again")
            return x

        ok = ParallelProcessor(work, max_concurrency=1, retries=2).process([7])
        assert ok[0].success
        assert ok[0].attempts == 3

        attempts.clear()
        failed = ParallelProcessor(work, max_concurrency=1, retries=1).process([7])
        assert not failed[0].success
        assert failed[0].attempts == 2

    def test_cancelled_items_skipped(self) -> None:
        """Test items not started after cancellation are skipped."""
        token = CancellationToken()

        def work(x: int) -> int:
            token.cancel()
            return x

        results = ParallelProcessor(work, max_concurrency=1, cancel=token).process([0, 1, 2])
        assert results[0].success
        assert all(r.skipped and not r.success for r in results[1:])

    def test_progress(self) -> None:
        """Test progress is reported for every item."""
        calls: list[tuple[int, int]] = []
        ParallelProcessor(
            lambda x: x, max_concurrency=2, on_progress=lambda c, t: calls.append((c, t))
        ).process([1, 2, 3])
        assert calls[-1] == (3, 3)
        assert len(calls) == 3

    def test_processing_result_is_frozen(self) -> None:
        """Test results are immutable values."""
        result = ProcessingResult(index=0, result=1, error=None, success=True)
        with pytest.raises(AttributeError):
            result.success = False  # type: ignore[misc]
