"""Array source adapter for gridregime.

Wraps an ``xarray.Dataset`` opened from a netCDF file (or a directory of
netCDF files) and exposes read-only access to named variables, their
dimensions and coordinates, and slices along a chosen unit axis.

Fill values are decoded to NaN so downstream code has a single missing-value
marker.
"""

import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import xarray as xr
from numpy.typing import NDArray

from gridregime.errors import SourceError
from gridregime.models.schemas import (
    DatasetInfo,
    DimensionInfo,
    VariableInfo,
    VariableStats,
)

logger = logging.getLogger(__name__)

FILL_ATTRIBUTES = ("_FillValue", "missing_value")


def to_python(value: Any) -> Any:
    """Convert a numpy scalar (or datetime64) to a plain Python value."""
    if isinstance(value, np.datetime64):
        return pd.Timestamp(value)
    if isinstance(value, np.timedelta64):
        return pd.Timedelta(value)
    if isinstance(value, np.generic):
        return value.item()
    return value


def _collect_input_files(path: Path) -> list[Path]:
    """Resolve a file or a directory of ``.nc`` files."""
    if not path.exists():
        raise SourceError(f"Input path does not exist: {path}")
    if path.is_file():
        return [path]

    files = sorted(p for p in path.rglob("*.nc") if p.is_file())
    if not files:
        raise SourceError(f"No .nc files found in directory: {path}")
    return files


class ArraySource:
    """Read-only access to a gridded dataset.

    Example:
        >>> with ArraySource.open("era5_t2m.nc") as source:
        ...     print(source.variable_names)
        ...     block = source.read_block("t2m", 0, 10, unit_axis="time")
    """

    def __init__(self, dataset: xr.Dataset, source: str = "") -> None:
        """Wrap an already opened dataset.

        Args:
            dataset: The dataset to expose.
            source: Path or identifier, used in messages.

        Raises:
            SourceError: If a coordinate disagrees with its dimension length.
        """
        self._dataset = dataset
        self.source = source
        self._closed = False
        self._validate()

    @classmethod
    def open(cls, path: str | Path) -> "ArraySource":
        """Open a netCDF file or a directory of netCDF files.

        Args:
            path: File path, or directory whose ``*.nc`` files are combined
                by their coordinates.

        Returns:
            An ArraySource owning the file handle(s).

        Raises:
            SourceError: If the path is unreadable or the container is malformed.
        """
        path = Path(path)
        files = _collect_input_files(path)

        datasets: list[xr.Dataset] = []
        try:
            for file_path in files:
                datasets.append(xr.open_dataset(file_path))
            if len(datasets) == 1:
                dataset = datasets[0]
            else:
                dataset = xr.combine_by_coords(datasets, combine_attrs="drop_conflicts")
        except (OSError, ValueError, RuntimeError, KeyError) as e:
            for opened in datasets:
                opened.close()
            raise SourceError(f"Failed to open dataset '{path}': {e}") from e

        logger.info(f"Opened {len(files)} file(s) from {path}")
        return cls(dataset, source=str(path))

    @classmethod
    def from_xarray(cls, dataset: xr.Dataset, source: str = "<memory>") -> "ArraySource":
        """Wrap an in-memory dataset."""
        return cls(dataset, source=source)

    def _validate(self) -> None:
        for name, coord in self._dataset.coords.items():
            for dim, length in zip(coord.dims, coord.shape):
                declared = self._dataset.sizes.get(dim)
                if declared is not None and declared != length:
                    raise SourceError(
                        f"Coordinate '{name}' has length {length} along '{dim}', "
                        f"but the dimension declares {declared}"
                    )

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release the underlying file handle(s)."""
        if not self._closed:
            self._dataset.close()
            self._closed = True

    def __enter__(self) -> "ArraySource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @property
    def dataset(self) -> xr.Dataset:
        """The wrapped dataset (treat as read-only)."""
        return self._dataset

    @property
    def variable_names(self) -> list[str]:
        """Names of the data variables, in dataset order."""
        return [str(name) for name in self._dataset.data_vars]

    @property
    def dims(self) -> dict[str, int]:
        """Dimension name to declared length."""
        return {str(dim): int(size) for dim, size in self._dataset.sizes.items()}

    def coords(self, dim: str) -> NDArray[Any]:
        """Coordinate values of a dimension (a range index if none are stored)."""
        if dim not in self._dataset.sizes:
            raise SourceError(f"Unknown dimension '{dim}' in {self.source}")
        if dim in self._dataset.coords:
            return np.asarray(self._dataset[dim].values)
        return np.arange(self._dataset.sizes[dim])

    def variable_info(self, name: str) -> VariableInfo:
        """Describe one variable."""
        var = self._get_variable(name)
        fill = self._fill_value(var)
        return VariableInfo(
            name=name,
            dims=[str(d) for d in var.dims],
            shape=[int(s) for s in var.shape],
            dtype=str(var.dtype),
            fill_value=float(fill) if fill is not None else None,
        )

    def describe(self) -> DatasetInfo:
        """Describe dimensions and variables of the dataset."""
        dimensions = []
        for dim, length in self.dims.items():
            values = (
                [to_python(v) for v in self._dataset[dim].values]
                if dim in self._dataset.coords
                else []
            )
            dimensions.append(DimensionInfo(name=dim, length=length, coords=values))

        return DatasetInfo(
            source=self.source,
            dimensions=dimensions,
            variables=[self.variable_info(name) for name in self.variable_names],
        )

    def unit_count(self, unit_axis: str) -> int:
        """Number of reduction units along ``unit_axis``."""
        if unit_axis not in self._dataset.sizes:
            raise SourceError(f"Unknown unit axis '{unit_axis}' in {self.source}")
        return int(self._dataset.sizes[unit_axis])

    def unit_coord_names(self, unit_axis: str) -> list[str]:
        """Coordinates defined along the unit axis alone (the axis coordinate first)."""
        self.unit_count(unit_axis)
        names = [
            str(name)
            for name, coord in self._dataset.coords.items()
            if coord.dims == (unit_axis,)
        ]
        names.sort(key=lambda n: n != unit_axis)
        return names

    def unit_coords(self, unit_axis: str, index: int) -> dict[str, Any]:
        """Coordinate values of one reduction unit."""
        self._check_index(unit_axis, index)
        return {
            name: to_python(self._dataset[name].values[index])
            for name in self.unit_coord_names(unit_axis)
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_slice(
        self, variable_name: str, unit_index: int, unit_axis: str
    ) -> NDArray[np.float64]:
        """Read one unit's slice of a variable.

        Args:
            variable_name: Variable to read.
            unit_index: Index along the unit axis.
            unit_axis: Dimension enumerating the units.

        Returns:
            Float array over the remaining dimensions, fill values as NaN.

        Raises:
            SourceError: If the variable is unknown, does not span the unit
                axis, or the index is out of range.
        """
        var = self._get_variable(variable_name)
        self._check_spans(var, variable_name, unit_axis)
        self._check_index(unit_axis, unit_index)
        return self._load(var.isel({unit_axis: unit_index}), variable_name)

    def read_block(
        self, variable_name: str, start: int, stop: int, unit_axis: str
    ) -> NDArray[np.float64]:
        """Read units ``[start, stop)`` of a variable, unit axis first."""
        var = self._get_variable(variable_name)
        self._check_spans(var, variable_name, unit_axis)
        n_units = self.unit_count(unit_axis)
        if not 0 <= start <= stop <= n_units:
            raise SourceError(
                f"Unit range [{start}, {stop}) out of bounds for '{unit_axis}' "
                f"(length {n_units})"
            )
        block = var.isel({unit_axis: slice(start, stop)}).transpose(unit_axis, ...)
        return self._load(block, variable_name)

    def _load(self, var: xr.DataArray, name: str) -> NDArray[np.float64]:
        if not np.issubdtype(var.dtype, np.number):
            raise SourceError(f"Variable '{name}' is not numeric ({var.dtype})")
        try:
            values = np.asarray(var.values, dtype=np.float64)
        except (OSError, RuntimeError, ValueError) as e:
            raise SourceError(f"Failed to read '{name}' from {self.source}: {e}") from e

        fill = self._fill_value(var, encoded=False)
        if fill is not None:
            values = np.where(values == fill, np.nan, values)
        return values

    def _get_variable(self, name: str) -> xr.DataArray:
        if self._closed:
            raise SourceError(f"Source {self.source} is closed")
        if name not in self._dataset.data_vars:
            raise SourceError(f"Unknown variable '{name}' in {self.source}")
        return self._dataset[name]

    def _check_spans(self, var: xr.DataArray, name: str, unit_axis: str) -> None:
        if unit_axis not in var.dims:
            raise SourceError(
                f"Variable '{name}' does not span unit axis '{unit_axis}' "
                f"(dims: {', '.join(map(str, var.dims))})"
            )

    def _check_index(self, unit_axis: str, index: int) -> None:
        n_units = self.unit_count(unit_axis)
        if not 0 <= index < n_units:
            raise SourceError(
                f"Unit index {index} out of range for '{unit_axis}' (length {n_units})"
            )

    @staticmethod
    def _fill_value(var: xr.DataArray, encoded: bool = True) -> float | None:
        # Decoding moves the marker from attrs into encoding and masks it to NaN
        sources = (var.attrs, var.encoding) if encoded else (var.attrs,)
        for source in sources:
            for attribute in FILL_ATTRIBUTES:
                value = source.get(attribute)
                if value is not None:
                    return float(np.asarray(value).ravel()[0])
        return None

    # ------------------------------------------------------------------
    # Point access
    # ------------------------------------------------------------------

    def _select_nearest(
        self, variable_name: str, nearest: dict[str, float]
    ) -> xr.DataArray:
        var = self._get_variable(variable_name)
        for dim in nearest:
            if dim not in var.dims:
                raise SourceError(f"Variable '{variable_name}' has no dimension '{dim}'")
            if dim not in self._dataset.coords:
                raise SourceError(f"Dimension '{dim}' has no coordinate values")
        if not nearest:
            return var
        return var.sel(nearest, method="nearest")

    def probe(self, variable_name: str, **nearest: float) -> VariableStats:
        """Summary statistics of a variable at the nearest grid point.

        Args:
            variable_name: Variable to summarize.
            **nearest: Coordinate values to select by nearest neighbour,
                e.g. ``lat=52.1, lon=4.3``.

        Returns:
            VariableStats over every value left after selection.
        """
        selected = self._select_nearest(variable_name, nearest)
        values = self._load(selected, variable_name).ravel()
        finite = values[np.isfinite(values)]

        selection = {
            dim: to_python(selected[dim].values) for dim in nearest if dim in selected.coords
        }
        stats = VariableStats(
            variable=variable_name,
            selection=selection,
            total_count=int(values.size),
            finite_count=int(finite.size),
        )
        if finite.size == 0:
            return stats

        return stats.model_copy(
            update={
                "mean": float(finite.mean()),
                "std": float(finite.std(ddof=0)),
                "min": float(finite.min()),
                "max": float(finite.max()),
            }
        )

    def point_series(
        self, variable_name: str, unit_axis: str, **nearest: float
    ) -> pd.DataFrame:
        """Values of a variable along ``unit_axis`` at the nearest grid point."""
        selected = self._select_nearest(variable_name, nearest)
        if selected.dims != (unit_axis,):
            raise SourceError(
                f"Selection of '{variable_name}' leaves dims {selected.dims}, "
                f"expected only '{unit_axis}'"
            )
        values = self._load(selected, variable_name)
        return pd.DataFrame(
            {unit_axis: self.coords(unit_axis), variable_name: values}
        )
