"""Tests for writing result tables."""

from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from gridregime.config import PipelineConfig
from gridregime.io.table_sink import (
    write_candidate_scores,
    write_cluster_summary,
    write_table,
)
from gridregime.pipeline import GridRegimePipeline, PipelineResult


@pytest.fixture
def result(fill_value_dataset: xr.Dataset) -> PipelineResult:
    """A finished run with one unclustered unit."""
    return GridRegimePipeline(PipelineConfig(candidate_k=(2, 3))).run(fill_value_dataset)


class TestWriteTable:
    """Tests for write_table."""

    def test_columns_and_rows(self, tmp_path: Path, result: PipelineResult) -> None:
        """Test the written table follows the fixed schema."""
        path = write_table(result.table, tmp_path / "nested" / "assignments.csv")

        assert path.exists()
        df = pd.read_csv(path)
        assert list(df.columns) == [
            "unit_id",
            "time",
            "cluster_index",
            "distance_to_centroid",
            "status",
        ]
        assert df["unit_id"].tolist() == [0, 1, 2, 3, 4]
        assert df.loc[4, "status"] == "unclustered: extraction failure"
        assert np.isnan(df.loc[4, "cluster_index"])
        assert df["cluster_index"].iloc[:4].notna().all()

    def test_precision(self, tmp_path: Path, result: PipelineResult) -> None:
        """Test distances are written with the requested precision."""
        path = write_table(result.table, tmp_path / "a.csv", float_precision=3)
        for value in pd.read_csv(path)["distance_to_centroid"].dropna():
            assert value == float(f"{value:.3g}")


class TestWriteSummaries:
    """Tests for the summary and score tables."""

    def test_cluster_summary(self, tmp_path: Path, result: PipelineResult) -> None:
        """Test one row per cluster."""
        path = write_cluster_summary(result.table, tmp_path / "clusters.csv")
        df = pd.read_csv(path)
        assert len(df) == result.table.k
        assert df["count"].sum() == 4
        assert "mean_temperature" in df.columns

    def test_candidate_scores(self, tmp_path: Path, result: PipelineResult) -> None:
        """Test scores are written with three decimals."""
        path = write_candidate_scores(result.table, tmp_path / "scores.csv")
        df = pd.read_csv(path)
        assert df["k"].tolist() == [2, 3]

        header, first = path.read_text().splitlines()[:2]
        validity = first.split(",")[header.split(",").index("validity")]
        assert len(validity.split(".")[1]) == 3

    def test_candidate_scores_total(self, tmp_path: Path, result: PipelineResult) -> None:
        """Test the composite total score is written for every fitted candidate."""
        path = write_candidate_scores(result.table, tmp_path / "scores.csv")
        df = pd.read_csv(path)
        assert "total_score" in df.columns
        assert df["total_score"].notna().all()
        # Probability-normalized indices sum to one across the candidates
        assert df["total_score"].sum() == pytest.approx(1.0, abs=2e-3)
