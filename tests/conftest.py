"""Shared pytest fixtures for gridregime tests."""

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from gridregime.config import PipelineConfig
from gridregime.source import ArraySource


@pytest.fixture
def scenario_dataset() -> xr.Dataset:
    """A 10x10 grid with 3 time steps and two per-step scalar variables.

    Feature vectors are [10.0, 1.0], [10.2, 1.1] and [50.0, 9.0].
    """
    time = pd.date_range("2024-01-01", periods=3, freq="D")
    lat = np.linspace(50.0, 54.5, 10)
    lon = np.linspace(3.0, 7.5, 10)
    field = np.broadcast_to(
        np.array([10.0, 10.2, 50.0])[:, np.newaxis, np.newaxis], (3, 10, 10)
    ).copy()
    return xr.Dataset(
        {
            "temperature": ("time", np.array([10.0, 10.2, 50.0])),
            "pressure": ("time", np.array([1.0, 1.1, 9.0])),
            "temperature_field": (("time", "lat", "lon"), field),
        },
        coords={"time": time, "lat": lat, "lon": lon},
    )


@pytest.fixture
def scenario_config() -> PipelineConfig:
    """Configuration for the two-variable scenario."""
    return PipelineConfig(
        variables=["temperature", "pressure"],
        unit_axis="time",
        reduction_mode={"temperature": "raw-scalar", "pressure": "raw-scalar"},
        candidate_k=[2, 3],
        chunk_size=2,
        max_workers=2,
    )


@pytest.fixture
def fill_value_dataset() -> xr.Dataset:
    """Five time steps; unit 4 holds the declared fill value."""
    temperature = xr.DataArray(
        np.array([1.0, 1.5, 8.0, 8.4, -999.0]),
        dims="time",
        attrs={"_FillValue": -999.0, "units": "degC"},
    )
    return xr.Dataset(
        {"temperature": temperature},
        coords={"time": np.arange(5)},
    )


@pytest.fixture
def grid_dataset() -> xr.Dataset:
    """A (time, lat, lon) grid with two regimes of spatial fields."""
    rng = np.random.default_rng(0)
    n_time = 40
    base = np.where(np.arange(n_time) % 2 == 0, 0.0, 20.0)
    values = base[:, np.newaxis, np.newaxis] + rng.normal(0.0, 0.5, (n_time, 4, 5))
    wind = np.abs(rng.normal(5.0, 1.0, (n_time, 4, 5)))
    return xr.Dataset(
        {
            "t2m": (("time", "lat", "lon"), values),
            "wind": (("time", "lat", "lon"), wind),
        },
        coords={
            "time": pd.date_range("2023-06-01", periods=n_time, freq="6h"),
            "lat": [50.0, 51.0, 52.0, 53.0],
            "lon": [3.0, 4.0, 5.0, 6.0, 7.0],
        },
    )


@pytest.fixture
def grid_source(grid_dataset: xr.Dataset) -> ArraySource:
    """ArraySource over the in-memory grid dataset."""
    return ArraySource.from_xarray(grid_dataset)


@pytest.fixture
def two_blobs() -> np.ndarray:
    """Two well separated groups of 2-D points."""
    rng = np.random.default_rng(1)
    a = rng.normal(0.0, 0.3, (30, 2))
    b = rng.normal(5.0, 0.3, (30, 2))
    return np.vstack([a, b])
