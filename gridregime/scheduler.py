"""Chunk scheduling for parallel feature extraction.

Splits the unit range ``[0, N)`` into contiguous chunks and extracts them
on a bounded worker pool. Each worker returns an immutable ChunkResult;
the scheduler only reorders and merges them.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import NamedTuple

from gridregime.analysis.feature_extractor import ChunkResult, FeatureExtractor
from gridregime.errors import SourceError
from gridregime.utils.parallel import CancellationToken, ParallelProcessor

logger = logging.getLogger(__name__)


class ChunkSpec(NamedTuple):
    """A contiguous range of units processed together."""

    index: int
    start: int
    stop: int


def plan_chunks(n_units: int, chunk_size: int) -> list[ChunkSpec]:
    """Split ``[0, n_units)`` into chunks of at most ``chunk_size`` units."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [
        ChunkSpec(index=i, start=start, stop=min(start + chunk_size, n_units))
        for i, start in enumerate(range(0, n_units, chunk_size))
    ]


@dataclass(frozen=True)
class ScheduleResult:
    """Chunk results in ascending unit order."""

    chunks: tuple[ChunkResult, ...]
    cancelled: bool = False

    @property
    def failed_chunks(self) -> list[ChunkResult]:
        return [c for c in self.chunks if c.chunk_failed]

    @property
    def n_units(self) -> int:
        return sum(c.n_units for c in self.chunks)


class ChunkScheduler:
    """Drive chunk-local feature extraction across a worker pool.

    A chunk whose extraction raises is retried; if it fails again its units
    are reported as a chunk failure and the run continues. Only when every
    chunk fails is the run aborted.
    """

    def __init__(
        self,
        max_workers: int | None = None,
        retries: int = 1,
        chunk_timeout: float | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            max_workers: Worker pool size (defaults to the CPU count).
            retries: Extra attempts for a failed chunk.
            chunk_timeout: Seconds one attempt may take; checked between reads.
        """
        self.max_workers = max_workers
        self.retries = retries
        self.chunk_timeout = chunk_timeout

    def run(
        self,
        extractor: FeatureExtractor,
        chunk_size: int,
        cancel: CancellationToken | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> ScheduleResult:
        """Extract every chunk of the extractor's unit range.

        Args:
            extractor: Feature extractor bound to an open source.
            chunk_size: Maximum units per chunk.
            cancel: Chunks not yet started are skipped once cancelled.
            on_progress: Callback (completed_chunks, total_chunks).

        Returns:
            ScheduleResult with chunk results ordered by unit index.

        Raises:
            SourceError: If every chunk fails.
        """
        specs = plan_chunks(extractor.n_units, chunk_size)
        if not specs:
            return ScheduleResult(chunks=())

        def extract(spec: ChunkSpec) -> ChunkResult:
            deadline = (
                time.monotonic() + self.chunk_timeout
                if self.chunk_timeout is not None
                else None
            )
            return extractor.extract_range(spec.start, spec.stop, deadline=deadline)

        processor: ParallelProcessor[ChunkSpec, ChunkResult] = ParallelProcessor(
            process_fn=extract,
            max_concurrency=self.max_workers,
            retries=self.retries,
            cancel=cancel,
            on_progress=on_progress,
        )

        logger.info(
            f"Extracting {extractor.n_units} units in {len(specs)} chunk(s) "
            f"of up to {chunk_size}"
        )
        outcomes = processor.process(specs)

        chunks: list[ChunkResult] = []
        cancelled = False
        for spec, outcome in zip(specs, outcomes):
            if outcome.skipped:
                cancelled = True
                continue
            if outcome.success and outcome.result is not None:
                chunks.append(outcome.result)
                continue

            reason = str(outcome.error) if outcome.error else "unknown error"
            logger.warning(
                f"Chunk {spec.index} [{spec.start}, {spec.stop}) failed after "
                f"{outcome.attempts} attempt(s): {reason}"
            )
            chunks.append(
                ChunkResult.failed(
                    spec.start,
                    spec.stop,
                    extractor.feature_length,
                    reason,
                    attempts=outcome.attempts,
                )
            )

        if chunks and all(c.chunk_failed for c in chunks) and not cancelled:
            reasons = "; ".join(
                f"[{c.start}, {c.stop}): {c.chunk_reason}" for c in chunks
            )
            raise SourceError(f"Every chunk failed: {reasons}")

        return ScheduleResult(chunks=tuple(chunks), cancelled=cancelled)
