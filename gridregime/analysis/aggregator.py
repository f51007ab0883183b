"""Merge chunk results and the cluster model into the output table.

Every reduction unit of a completed chunk yields exactly one ResultRow,
in ascending unit order. Units that could not be clustered keep their row
with an "unclustered" status and a reason.
"""

import logging
from collections import Counter
from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from pydantic import BaseModel, Field

from gridregime.analysis.feature_extractor import ChunkResult
from gridregime.errors import NonFiniteFeature
from gridregime.models.schemas import (
    RESULT_COLUMNS,
    CandidateScore,
    ClusterModel,
    ClusterSummary,
    ResultRow,
    UnitStatus,
)
from gridregime.source import to_python

logger = logging.getLogger(__name__)


class ResultTable(BaseModel):
    """Per-unit rows plus per-cluster and per-candidate summaries."""

    rows: list[ResultRow] = Field(default_factory=list)
    coord_columns: list[str] = Field(
        default_factory=list, description="Coordinate columns after unit_id"
    )
    clusters: list[ClusterSummary] = Field(default_factory=list)
    scores: list[CandidateScore] = Field(default_factory=list)
    k: int | None = Field(default=None, description="Selected cluster count")
    cancelled: bool = False

    def status_counts(self) -> dict[UnitStatus, int]:
        """Number of rows per status."""
        counts = Counter(row.status for row in self.rows)
        return {status: counts.get(status, 0) for status in UnitStatus}

    def columns(self) -> list[str]:
        """The fixed output column schema."""
        first, *rest = RESULT_COLUMNS
        return [first, *self.coord_columns, *rest]

    def to_dataframe(self) -> pd.DataFrame:
        """Rows as a DataFrame following the fixed column schema."""
        df = pd.DataFrame([row.to_record() for row in self.rows], columns=self.columns())
        df["cluster_index"] = df["cluster_index"].astype("Int64")
        df["distance_to_centroid"] = df["distance_to_centroid"].astype("float64")
        return df

    def summary_dataframe(self) -> pd.DataFrame:
        """One row per cluster: count, SSE and centroid components."""
        records = []
        for cluster in self.clusters:
            record: dict[str, Any] = {
                "cluster_index": cluster.cluster_index,
                "count": cluster.count,
                "sse": cluster.sse,
            }
            record.update({f"centroid_{k}": v for k, v in cluster.centroid.items()})
            record.update({f"mean_{k}": v for k, v in cluster.raw_centroid.items()})
            records.append(record)
        return pd.DataFrame(records)

    def scores_dataframe(self) -> pd.DataFrame:
        """One row per candidate k with its validity metrics."""
        return pd.DataFrame([score.model_dump() for score in self.scores])


class ResultAggregator:
    """Build the ResultTable from chunk results and a finalized ClusterModel."""

    def __init__(
        self,
        feature_names: list[str],
        unit_coords: dict[str, NDArray[Any]] | None = None,
    ) -> None:
        """Initialize the aggregator.

        Args:
            feature_names: Names of all feature components (raw order).
            unit_coords: Coordinate arrays along the unit axis, by name.
        """
        self.feature_names = list(feature_names)
        self.unit_coords = dict(unit_coords or {})

    def _coords(self, unit_id: int) -> dict[str, Any]:
        return {name: to_python(values[unit_id]) for name, values in self.unit_coords.items()}

    def aggregate(
        self,
        chunks: Sequence[ChunkResult],
        model: ClusterModel | None,
        non_finite: Sequence[NonFiniteFeature] = (),
        cancelled: bool = False,
    ) -> ResultTable:
        """Merge everything into one ordered table.

        Args:
            chunks: Chunk results in ascending unit order.
            model: The finalized model, or None if cancellation left none.
            non_finite: Units excluded by the engine.
            cancelled: Whether the run was cancelled.

        Returns:
            ResultTable with one row per unit of every chunk present.
        """
        non_finite_by_unit = {e.unit_id: e for e in non_finite}
        assignments = model.assignments if model is not None else {}
        distances = model.distances if model is not None else {}

        rows: list[ResultRow] = []
        for chunk in sorted(chunks, key=lambda c: c.start):
            for offset, reason in enumerate(chunk.failures):
                unit_id = chunk.start + offset
                row = self._row(
                    unit_id, chunk, reason, assignments, distances, non_finite_by_unit
                )
                if row is not None:
                    rows.append(row)

        table = ResultTable(
            rows=rows,
            coord_columns=list(self.unit_coords),
            clusters=self._summaries(chunks, model) if model is not None else [],
            scores=list(model.scores) if model is not None else [],
            k=model.k if model is not None else None,
            cancelled=cancelled,
        )

        counts = table.status_counts()
        logger.info(
            "Aggregated "
            + ", ".join(f"{n} {status.value}" for status, n in counts.items() if n)
        )
        return table

    def _row(
        self,
        unit_id: int,
        chunk: ChunkResult,
        reason: str,
        assignments: dict[int, int],
        distances: dict[int, float],
        non_finite: dict[int, NonFiniteFeature],
    ) -> ResultRow | None:
        coords = self._coords(unit_id)
        if chunk.chunk_failed:
            return ResultRow(
                unit_id=unit_id,
                coords=coords,
                status=UnitStatus.CHUNK_FAILURE,
                detail=chunk.chunk_reason,
            )
        if reason:
            return ResultRow(
                unit_id=unit_id,
                coords=coords,
                status=UnitStatus.EXTRACTION_FAILURE,
                detail=reason,
            )
        if unit_id in non_finite:
            return ResultRow(
                unit_id=unit_id,
                coords=coords,
                status=UnitStatus.NON_FINITE,
                detail=str(non_finite[unit_id]),
            )
        if unit_id in assignments:
            return ResultRow(
                unit_id=unit_id,
                coords=coords,
                cluster_index=assignments[unit_id],
                distance_to_centroid=distances[unit_id],
                status=UnitStatus.CLUSTERED,
            )
        # Valid unit without a model: only reachable after cancellation
        return None

    def _summaries(
        self, chunks: Sequence[ChunkResult], model: ClusterModel
    ) -> list[ClusterSummary]:
        raw_sums = np.zeros((model.k, len(self.feature_names)))
        for chunk in chunks:
            for offset in range(chunk.n_units):
                cluster = model.assignments.get(chunk.start + offset)
                if cluster is not None:
                    raw_sums[cluster] += chunk.features[offset]

        summaries = []
        for centroid in model.centroids:
            raw_mean = (
                raw_sums[centroid.index] / centroid.count
                if centroid.count
                else np.full(len(self.feature_names), np.nan)
            )
            summaries.append(
                ClusterSummary(
                    cluster_index=centroid.index,
                    count=centroid.count,
                    sse=centroid.sse,
                    centroid=dict(zip(model.feature_names, centroid.values)),
                    raw_centroid=dict(zip(self.feature_names, raw_mean.tolist())),
                )
            )
        return summaries
