"""Tests for feature extraction and normalization."""

import time
from unittest.mock import patch

import numpy as np
import pytest
import xarray as xr

from gridregime.analysis.feature_extractor import (
    ChunkResult,
    FeatureExtractor,
    FeatureNormalizer,
)
from gridregime.errors import ChunkFailure, ExtractionFailure, SourceError
from gridregime.models.schemas import ReductionMode
from gridregime.source import ArraySource


def _series_source(values: list[float], name: str = "v") -> ArraySource:
    ds = xr.Dataset(
        {name: ("time", np.array(values, dtype=float))},
        coords={"time": np.arange(len(values))},
    )
    return ArraySource.from_xarray(ds)


class TestReductionPlan:
    """Tests for resolving the reduction plan at construction."""

    def test_defaults_to_mean_for_fields(self, grid_source: ArraySource) -> None:
        """Test variables with extra axes default to mean."""
        extractor = FeatureExtractor(grid_source, unit_axis="time")
        assert extractor.feature_names == ["t2m_mean", "wind_mean"]
        assert extractor.feature_length == 2
        assert extractor.n_units == 40

    def test_defaults_to_raw_scalar(self, scenario_dataset: xr.Dataset) -> None:
        """Test scalar-per-unit variables default to raw-scalar."""
        source = ArraySource.from_xarray(scenario_dataset)
        extractor = FeatureExtractor(source, ["temperature", "pressure"], unit_axis="time")
        assert extractor.feature_names == ["temperature", "pressure"]
        assert [p.mode for p in extractor.plans] == [ReductionMode.RAW_SCALAR] * 2

    def test_explicit_modes(self, grid_source: ArraySource) -> None:
        """Test configured modes name their features."""
        extractor = FeatureExtractor(
            grid_source,
            ["t2m", "wind"],
            reduction_mode={"t2m": "variance", "wind": ReductionMode.MAX},
        )
        assert extractor.feature_names == ["t2m_variance", "wind_max"]

    def test_raw_scalar_rejects_fields(self, grid_source: ArraySource) -> None:
        """Test raw-scalar on a multi-value slice raises ValueError."""
        with pytest.raises(ValueError, match="20 values per unit"):
            FeatureExtractor(grid_source, ["t2m"], reduction_mode={"t2m": "raw-scalar"})

    def test_mode_for_unselected_variable(self, grid_source: ArraySource) -> None:
        """Test a mode for a variable that is not selected raises ValueError."""
        with pytest.raises(ValueError, match="unselected"):
            FeatureExtractor(grid_source, ["t2m"], reduction_mode={"wind": "mean"})

    def test_unknown_mode(self, grid_source: ArraySource) -> None:
        """Test an unknown mode raises ValueError."""
        with pytest.raises(ValueError):
            FeatureExtractor(grid_source, ["t2m"], reduction_mode={"t2m": "median"})

    def test_unknown_variable(self, grid_source: ArraySource) -> None:
        """Test an unknown variable raises SourceError."""
        with pytest.raises(SourceError, match="Unknown variable"):
            FeatureExtractor(grid_source, ["sst"])

    def test_unknown_unit_axis(self, grid_source: ArraySource) -> None:
        """Test an unknown unit axis raises SourceError."""
        with pytest.raises(SourceError, match="Unknown unit axis"):
            FeatureExtractor(grid_source, ["t2m"], unit_axis="member")

    def test_spatial_unit_axis(self, grid_source: ArraySource, grid_dataset: xr.Dataset) -> None:
        """Test units can run along a spatial dimension."""
        extractor = FeatureExtractor(grid_source, ["t2m"], unit_axis="lat")
        chunk = extractor.extract_range(0, 4)
        expected = grid_dataset["t2m"].mean(dim=["time", "lon"]).values
        np.testing.assert_allclose(chunk.features[:, 0], expected)


class TestExtractRange:
    """Tests for chunk extraction."""

    def test_reductions(self, grid_source: ArraySource, grid_dataset: xr.Dataset) -> None:
        """Test each reducer collapses the per-unit slice."""
        extractor = FeatureExtractor(
            grid_source,
            ["t2m", "wind"],
            reduction_mode={"t2m": "min", "wind": "variance"},
        )
        chunk = extractor.extract_range(5, 10)

        assert chunk.features.shape == (5, 2)
        t2m = grid_dataset["t2m"].values[5:10].reshape(5, -1)
        wind = grid_dataset["wind"].values[5:10].reshape(5, -1)
        np.testing.assert_allclose(chunk.features[:, 0], t2m.min(axis=1))
        np.testing.assert_allclose(chunk.features[:, 1], wind.var(axis=1))
        assert chunk.failures == ("",) * 5
        assert chunk.valid_mask.all()

    def test_fill_value_is_extraction_failure(self, fill_value_dataset: xr.Dataset) -> None:
        """Test a raw-scalar fill value fails only its unit."""
        extractor = FeatureExtractor(ArraySource.from_xarray(fill_value_dataset))
        chunk = extractor.extract_range(0, 5)

        assert chunk.failures[4] == "temperature: missing value"
        assert chunk.failures[:4] == ("",) * 4
        assert np.isnan(chunk.features[4]).all()
        np.testing.assert_array_equal(chunk.valid_mask, [True, True, True, True, False])

    def test_partial_missing_is_ignored(self) -> None:
        """Test reductions skip missing values within a unit."""
        data = np.array([[1.0, np.nan, 3.0], [np.nan, np.nan, np.nan]])
        ds = xr.Dataset({"v": (("time", "cell"), data)})
        extractor = FeatureExtractor(ArraySource.from_xarray(ds), ["v"])
        chunk = extractor.extract_range(0, 2)

        assert chunk.features[0, 0] == pytest.approx(2.0)
        assert chunk.failures[1] == "v: all values missing"

    def test_present_non_finite_value_is_kept(self) -> None:
        """Test infinite data is left in the vector, not an extraction failure."""
        extractor = FeatureExtractor(_series_source([1.0, np.inf, 2.0]))
        chunk = extractor.extract_range(0, 3)

        assert chunk.failures == ("", "", "")
        assert np.isinf(chunk.features[1, 0])

    def test_block_failure_falls_back_to_units(self, grid_source: ArraySource) -> None:
        """Test a failing block read is retried unit by unit."""
        extractor = FeatureExtractor(grid_source, ["t2m"])
        expected = extractor.extract_range(0, 4).features

        with patch.object(grid_source, "read_block", side_effect=SourceError("disk hiccup")):
            chunk = extractor.extract_range(0, 4)

        np.testing.assert_allclose(chunk.features, expected)
        assert chunk.valid_mask.all()

    def test_unit_read_failure_stays_local(self, grid_source: ArraySource) -> None:
        """Test one unreadable unit does not fail the chunk."""
        extractor = FeatureExtractor(grid_source, ["t2m"])
        read_slice = grid_source.read_slice

        def flaky(name: str, index: int, axis: str) -> np.ndarray:
            if index == 2:
                raise SourceError("bad record")
            return read_slice(name, index, axis)

        with (
            patch.object(grid_source, "read_block", side_effect=SourceError("bad block")),
            patch.object(grid_source, "read_slice", side_effect=flaky),
        ):
            chunk = extractor.extract_range(0, 4)

        assert chunk.failures[2] == "t2m: SourceError: bad record"
        np.testing.assert_array_equal(chunk.valid_mask, [True, True, False, True])

    def test_every_unit_failing_is_chunk_failure(self, grid_source: ArraySource) -> None:
        """Test a chunk with no readable unit raises ChunkFailure."""
        extractor = FeatureExtractor(grid_source, ["t2m"])
        with (
            patch.object(grid_source, "read_block", side_effect=SourceError("gone")),
            patch.object(grid_source, "read_slice", side_effect=SourceError("gone")),
        ):
            with pytest.raises(ChunkFailure, match=r"Chunk \[0, 3\)"):
                extractor.extract_range(0, 3)

    def test_deadline(self, grid_source: ArraySource) -> None:
        """Test a passed deadline raises ChunkFailure."""
        extractor = FeatureExtractor(grid_source, ["t2m"])
        with pytest.raises(ChunkFailure, match="timed out"):
            extractor.extract_range(0, 4, deadline=time.monotonic() - 1.0)


class TestUnitAccess:
    """Tests for single-unit and lazy access."""

    def test_extract_unit(self, scenario_dataset: xr.Dataset) -> None:
        """Test extracting one unit's vector."""
        extractor = FeatureExtractor(
            ArraySource.from_xarray(scenario_dataset), ["temperature", "pressure"]
        )
        np.testing.assert_allclose(extractor.extract_unit(1), [10.2, 1.1])

    def test_extract_unit_failure(self, fill_value_dataset: xr.Dataset) -> None:
        """Test a failed unit raises ExtractionFailure."""
        extractor = FeatureExtractor(ArraySource.from_xarray(fill_value_dataset))
        with pytest.raises(ExtractionFailure) as exc_info:
            extractor.extract_unit(4)
        assert exc_info.value.unit_id == 4
        assert exc_info.value.reason == "temperature: missing value"

    def test_unit(self, scenario_dataset: xr.Dataset) -> None:
        """Test a unit resolves its coordinates."""
        extractor = FeatureExtractor(ArraySource.from_xarray(scenario_dataset), ["pressure"])
        unit = extractor.unit(2)
        assert unit.index == 2
        assert str(unit.coords["time"].date()) == "2024-01-03"

    def test_iter_features_is_restartable(self, grid_source: ArraySource) -> None:
        """Test the lazy sequence is finite and can be walked twice."""
        extractor = FeatureExtractor(grid_source, ["t2m"])
        first = list(extractor.iter_features(batch_size=7))
        second = list(extractor.iter_features(batch_size=13))

        assert len(first) == 40
        assert [u.index for u, _, _ in first] == list(range(40))
        for (_, a, _), (_, b, _) in zip(first, second):
            np.testing.assert_array_equal(a, b)

    def test_iter_features_reports_failures(self, fill_value_dataset: xr.Dataset) -> None:
        """Test failed units are yielded with their reason."""
        extractor = FeatureExtractor(ArraySource.from_xarray(fill_value_dataset))
        reasons = [reason for _, _, reason in extractor.iter_features()]
        assert reasons == ["", "", "", "", "temperature: missing value"]


class TestChunkResult:
    """Tests for the ChunkResult value."""

    def test_failed(self) -> None:
        """Test a failed chunk marks every unit invalid."""
        result = ChunkResult.failed(10, 13, n_features=2, reason="timed out", attempts=2)
        assert result.n_units == 3
        assert result.chunk_failed
        assert result.features.shape == (3, 2)
        assert np.isnan(result.features).all()
        assert not result.valid_mask.any()
        assert result.attempts == 2


class TestFeatureNormalizer:
    """Tests for FeatureNormalizer."""

    def test_partial_fit_matches_full_statistics(self) -> None:
        """Test chunk-wise statistics equal whole-range statistics."""
        rng = np.random.default_rng(3)
        X = rng.normal(5.0, 2.0, (50, 3))
        normalizer = FeatureNormalizer(["a", "b", "c"])
        for start in range(0, 50, 16):
            normalizer.partial_fit(X[start : start + 16])

        np.testing.assert_allclose(normalizer.mean, X.mean(axis=0))
        np.testing.assert_allclose(normalizer.scale, X.std(axis=0))
        Z = normalizer.transform(X)
        np.testing.assert_allclose(Z.mean(axis=0), 0.0, atol=1e-12)
        np.testing.assert_allclose(Z.std(axis=0), 1.0)

    def test_non_finite_rows_skipped(self) -> None:
        """Test rows with missing components do not enter the statistics."""
        X = np.array([[1.0, 2.0], [3.0, np.nan], [5.0, 4.0]])
        normalizer = FeatureNormalizer(["a", "b"]).partial_fit(X)
        np.testing.assert_allclose(normalizer.mean, [3.0, 3.0])

        Z = normalizer.transform(X)
        assert np.isnan(Z[1, 1])

    def test_constant_component(self) -> None:
        """Test zero-variance components are flagged and left unscaled."""
        X = np.array([[1.0, 7.0], [2.0, 7.0], [3.0, 7.0]])
        normalizer = FeatureNormalizer(["a", "level"]).partial_fit(X)

        np.testing.assert_array_equal(normalizer.constant_mask, [False, True])
        assert normalizer.constant_features == ["level"]
        np.testing.assert_allclose(normalizer.transform(X)[:, 1], 7.0)

    def test_unfitted(self) -> None:
        """Test statistics require at least one finite row."""
        normalizer = FeatureNormalizer(["a"]).partial_fit(np.array([[np.nan]]))
        assert not normalizer.fitted
        with pytest.raises(RuntimeError, match="has not seen"):
            normalizer.transform(np.zeros((1, 1)))
