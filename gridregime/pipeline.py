"""Main gridregime pipeline orchestrating extraction, clustering and aggregation.

This module provides the main entry point for reducing a gridded dataset to
a table of cluster assignments:

1. Open the array source
2. Extract one feature vector per reduction unit, chunk-parallel
3. Standardize features over the full unit range (optional)
4. Fit k-means for every candidate k and keep the best
5. Aggregate one output row per unit
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np
import xarray as xr
from pydantic import BaseModel, Field

from gridregime.analysis.aggregator import ResultAggregator, ResultTable
from gridregime.analysis.clusterer import KMeansEngine
from gridregime.analysis.feature_extractor import FeatureExtractor, FeatureNormalizer
from gridregime.config import Config, PipelineConfig
from gridregime.errors import InsufficientData, PipelineCancelled
from gridregime.models.schemas import ClusterModel
from gridregime.scheduler import ChunkScheduler, ScheduleResult
from gridregime.source import ArraySource
from gridregime.utils.parallel import CancellationToken

logger = logging.getLogger(__name__)


class RunMetadata(BaseModel):
    """Metadata for a pipeline run."""

    source: str = Field(default="", description="Source file or dataset identifier")
    run_date: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the pipeline was run",
    )
    unit_axis: str = ""
    total_units: int = 0
    total_chunks: int = 0
    failed_chunks: int = 0
    feature_names: list[str] = Field(default_factory=list)
    constant_features: list[str] = Field(
        default_factory=list, description="Zero-variance components excluded from distances"
    )
    normalized: bool = False


class PipelineResult(BaseModel):
    """Complete result of a pipeline run."""

    metadata: RunMetadata = Field(default_factory=RunMetadata)
    table: ResultTable = Field(default_factory=ResultTable)
    model: ClusterModel | None = None
    cancelled: bool = False


class GridRegimePipeline:
    """Orchestrates the reduction of a gridded dataset into cluster regimes."""

    def __init__(self, config: Config | PipelineConfig | None = None) -> None:
        """Initialize the pipeline.

        Args:
            config: Root or pipeline configuration. If None, uses defaults.
        """
        if isinstance(config, PipelineConfig):
            config = Config(pipeline=config)
        self.config = config or Config()

    @property
    def settings(self) -> PipelineConfig:
        return self.config.pipeline

    def run(
        self,
        source: str | Path | ArraySource | xr.Dataset,
        cancel: CancellationToken | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> PipelineResult:
        """Run the pipeline.

        Args:
            source: Path to a netCDF file or directory, an open ArraySource,
                or an in-memory dataset.
            cancel: Cancellation signal checked between chunks and iterations.
            on_progress: Callback (completed_chunks, total_chunks).

        Returns:
            PipelineResult with the output table and the model.

        Raises:
            SourceError: If the source cannot be opened or every chunk fails.
            InsufficientData: If too few valid feature vectors remain.
        """
        if isinstance(source, ArraySource):
            return self._run(source, cancel, on_progress)

        if isinstance(source, xr.Dataset):
            array_source = ArraySource.from_xarray(source)
        else:
            array_source = ArraySource.open(source)

        with array_source:
            return self._run(array_source, cancel, on_progress)

    def _run(
        self,
        source: ArraySource,
        cancel: CancellationToken | None,
        on_progress: Callable[[int, int], None] | None,
    ) -> PipelineResult:
        cfg = self.settings

        extractor = FeatureExtractor(
            source,
            variables=cfg.variables,
            unit_axis=cfg.unit_axis,
            reduction_mode=dict(cfg.reduction_mode),
        )
        logger.info(
            f"Reducing {extractor.n_units} units along '{cfg.unit_axis}' "
            f"to features {extractor.feature_names}"
        )

        scheduler = ChunkScheduler(
            max_workers=cfg.max_workers,
            retries=cfg.chunk_retries,
            chunk_timeout=cfg.chunk_timeout,
        )
        schedule = scheduler.run(extractor, cfg.chunk_size, cancel, on_progress)

        metadata = RunMetadata(
            source=source.source,
            unit_axis=cfg.unit_axis,
            total_units=extractor.n_units,
            total_chunks=len(schedule.chunks),
            failed_chunks=len(schedule.failed_chunks),
            feature_names=extractor.feature_names,
            normalized=cfg.normalize,
        )
        aggregator = ResultAggregator(
            extractor.feature_names,
            {
                name: source.dataset[name].values
                for name in source.unit_coord_names(cfg.unit_axis)
            },
        )

        if schedule.cancelled:
            logger.warning("Cancelled during extraction; skipping clustering")
            table = aggregator.aggregate(schedule.chunks, None, cancelled=True)
            return PipelineResult(metadata=metadata, table=table, cancelled=True)

        unit_ids, features, valid = self._collect(schedule, extractor.feature_length)
        active = np.ones(extractor.feature_length, dtype=bool)

        if cfg.normalize:
            normalizer = FeatureNormalizer(extractor.feature_names)
            for chunk in schedule.chunks:
                normalizer.partial_fit(chunk.features[chunk.valid_mask])
            if normalizer.fitted:
                features = normalizer.transform(features)
                active = ~normalizer.constant_mask
                metadata.constant_features = normalizer.constant_features
                if metadata.constant_features:
                    logger.warning(
                        f"Constant features excluded from distances: "
                        f"{metadata.constant_features}"
                    )

        engine = KMeansEngine(
            candidate_k=cfg.candidate_values(),
            max_iterations=cfg.max_iterations,
            tolerance=cfg.tolerance,
            seed=cfg.seed,
            max_workers=cfg.max_workers,
            silhouette_sample_size=cfg.silhouette_sample_size,
            norm_method=cfg.norm_method,
        )

        model: ClusterModel | None = None
        cancelled = False
        try:
            model = engine.fit(
                features[valid],
                unit_ids[valid],
                extractor.feature_names,
                active=active,
                cancel=cancel,
            )
            cancelled = model.cancelled
        except InsufficientData as e:
            excluded = self._excluded_counts(schedule)
            excluded.update(e.excluded)
            logger.error(f"Cannot build a cluster model: {e}")
            raise InsufficientData(e.required, e.available, excluded) from e
        except PipelineCancelled:
            logger.warning("Cancelled before any candidate fit completed")
            cancelled = True

        table = aggregator.aggregate(schedule.chunks, model, engine.non_finite, cancelled)
        return PipelineResult(
            metadata=metadata, table=table, model=model, cancelled=cancelled
        )

    @staticmethod
    def _collect(
        schedule: ScheduleResult, n_features: int
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Concatenate chunk results in unit order."""
        if not schedule.chunks:
            return (
                np.empty(0, dtype=np.int64),
                np.empty((0, n_features)),
                np.empty(0, dtype=bool),
            )
        unit_ids = np.concatenate(
            [np.arange(c.start, c.stop, dtype=np.int64) for c in schedule.chunks]
        )
        features = np.vstack([c.features for c in schedule.chunks])
        valid = np.concatenate([c.valid_mask for c in schedule.chunks])
        return unit_ids, features, valid

    @staticmethod
    def _excluded_counts(schedule: ScheduleResult) -> dict[str, int]:
        counts: dict[str, int] = {}
        for chunk in schedule.chunks:
            if chunk.chunk_failed:
                key = "chunk failure"
                counts[key] = counts.get(key, 0) + chunk.n_units
            else:
                failed = int((~chunk.valid_mask).sum())
                if failed:
                    key = "extraction failure"
                    counts[key] = counts.get(key, 0) + failed
        return counts


def run_pipeline(
    source: str | Path | ArraySource | xr.Dataset,
    config: Config | None = None,
    **overrides: Any,
) -> PipelineResult:
    """Convenience function to run the pipeline with keyword overrides.

    Args:
        source: Path, ArraySource, or in-memory dataset.
        config: Base configuration. If None, uses defaults.
        **overrides: PipelineConfig fields to override (e.g. ``candidate_k=3``).

    Returns:
        PipelineResult.
    """
    config = config or Config()
    if overrides:
        pipeline_cfg = PipelineConfig(**{**config.pipeline.model_dump(), **overrides})
        config = Config(pipeline=pipeline_cfg, output=config.output)

    pipeline = GridRegimePipeline(config=config)
    return pipeline.run(source)
