"""Parallel processing utilities for gridregime.

Provides a bounded thread pool that runs independent tasks, retries failed
tasks, honours a cooperative cancellation signal, and returns results in
submission order regardless of completion order.
"""

import logging
import os
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Generic, TypeVar

from tenacity import Retrying, stop_after_attempt

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def default_workers() -> int:
    """Worker count matching the available CPU parallelism."""
    return os.cpu_count() or 1


class CancellationToken:
    """Pipeline-wide cancellation signal.

    Workers check it between units of work and unwind after finishing the
    one in flight.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class ProcessingResult(Generic[R]):
    """Result of processing a single item."""

    index: int
    result: R | None
    error: Exception | None
    success: bool
    attempts: int = 0
    skipped: bool = False


class ParallelProcessor(Generic[T, R]):
    """Process items in parallel with concurrency control.

    Uses ThreadPoolExecutor; numpy and the netCDF readers release the GIL
    for the heavy parts of each task.
    """

    def __init__(
        self,
        process_fn: Callable[[T], R],
        max_concurrency: int | None = None,
        retries: int = 0,
        cancel: CancellationToken | None = None,
        on_progress: Callable[[int, int], None] | None = None,
        on_error: Callable[[int, Exception], None] | None = None,
    ) -> None:
        """Initialize parallel processor.

        Args:
            process_fn: Function to process each item.
            max_concurrency: Maximum number of concurrent operations
                (defaults to the CPU count).
            retries: Extra attempts for an item whose processing raises.
            cancel: Items not yet started are skipped once this is cancelled.
            on_progress: Callback for progress updates (completed, total).
            on_error: Callback for items that failed every attempt (index, error).
        """
        self.process_fn = process_fn
        self.max_concurrency = max_concurrency or default_workers()
        self.retries = retries
        self.cancel = cancel
        self.on_progress = on_progress
        self.on_error = on_error

    def _run_with_retry(self, index: int, item: T) -> ProcessingResult[R]:
        if self.cancel is not None and self.cancel.cancelled:
            return ProcessingResult(
                index=index, result=None, error=None, success=False, skipped=True
            )

        attempts = 0
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.retries + 1),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        logger.warning(f"Retrying item {index} (attempt {attempts})")
                    result = self.process_fn(item)
        except Exception as e:
            logger.error(f"Error processing item {index} after {attempts} attempt(s): {e}")
            if self.on_error:
                self.on_error(index, e)
            return ProcessingResult(
                index=index, result=None, error=e, success=False, attempts=attempts
            )

        return ProcessingResult(
            index=index, result=result, error=None, success=True, attempts=attempts
        )

    def process(self, items: list[T]) -> list[ProcessingResult[R]]:
        """Process all items in parallel.

        Args:
            items: List of items to process.

        Returns:
            List of processing results in original order.
        """
        results: list[ProcessingResult[R] | None] = [None] * len(items)
        completed = 0

        with ThreadPoolExecutor(max_workers=self.max_concurrency) as executor:
            futures = {
                executor.submit(self._run_with_retry, i, item): i
                for i, item in enumerate(items)
            }

            for future in as_completed(futures):
                processing_result = future.result()
                results[futures[future]] = processing_result

                completed += 1
                if self.on_progress:
                    self.on_progress(completed, len(items))

        return [r for r in results if r is not None]
