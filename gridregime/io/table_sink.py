"""Delimited-text output of pipeline results."""

import logging
from pathlib import Path

import pandas as pd

from gridregime.analysis.aggregator import ResultTable

logger = logging.getLogger(__name__)


def _write_csv(df: pd.DataFrame, output_path: str | Path, float_format: str | None) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=False, float_format=float_format)
    logger.info(f"Wrote {len(df)} rows to {output_path}")
    return output_path


def write_table(
    table: ResultTable, output_path: str | Path, float_precision: int = 6
) -> Path:
    """Write the per-unit table.

    Columns: ``unit_id``, one column per unit-axis coordinate,
    ``cluster_index`` (empty when unclustered), ``distance_to_centroid``
    and ``status``.
    """
    return _write_csv(table.to_dataframe(), output_path, f"%.{float_precision}g")


def write_cluster_summary(
    table: ResultTable, output_path: str | Path, float_precision: int = 6
) -> Path:
    """Write one row per cluster with counts and centroid statistics."""
    return _write_csv(table.summary_dataframe(), output_path, f"%.{float_precision}g")


def write_candidate_scores(table: ResultTable, output_path: str | Path) -> Path:
    """Write the candidate-k score table with three decimals."""
    return _write_csv(table.scores_dataframe(), output_path, "%.3f")
