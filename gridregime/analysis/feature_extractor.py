"""Feature extraction for grid-cell/time-slice clustering.

This module walks an array source along a unit axis and turns each
reduction unit into a fixed-length feature vector, one component per
selected variable:

1. raw-scalar: the variable already holds one value per unit
2. mean / variance / min / max: extra axes are collapsed per unit,
   ignoring missing values

Feature components can be standardized with per-component statistics
accumulated over the whole unit range (see FeatureNormalizer).
"""

import logging
import time
import warnings
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np
from numpy.typing import NDArray
from sklearn.preprocessing import StandardScaler

from gridregime.errors import ChunkFailure, ExtractionFailure, SourceError
from gridregime.models.schemas import ReductionMode, ReductionUnit
from gridregime.source import ArraySource

logger = logging.getLogger(__name__)

Reducer = Callable[[NDArray[np.float64]], NDArray[np.float64]]


def _flatten_units(block: NDArray[np.float64]) -> NDArray[np.float64]:
    return block.reshape(block.shape[0], -1)


def _reduce_raw(block: NDArray[np.float64]) -> NDArray[np.float64]:
    return _flatten_units(block)[:, 0]


def _nan_reducer(fn: Callable[..., NDArray[np.float64]]) -> Reducer:
    def reduce(block: NDArray[np.float64]) -> NDArray[np.float64]:
        flat = _flatten_units(block)
        # All-missing units reduce to NaN and are reported by the caller
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            return fn(flat, axis=1)

    return reduce


REDUCERS: dict[ReductionMode, Reducer] = {
    ReductionMode.RAW_SCALAR: _reduce_raw,
    ReductionMode.MEAN: _nan_reducer(np.nanmean),
    ReductionMode.VARIANCE: _nan_reducer(np.nanvar),
    ReductionMode.MIN: _nan_reducer(np.nanmin),
    ReductionMode.MAX: _nan_reducer(np.nanmax),
}


class VariablePlan(NamedTuple):
    """Resolved extraction step for one variable."""

    variable: str
    mode: ReductionMode
    feature_name: str
    reducer: Reducer


@dataclass(frozen=True)
class ChunkResult:
    """Features extracted for units ``[start, stop)``.

    Rows of ``features`` belonging to failed units are all-NaN and the
    matching entry of ``failures`` holds the reason ("" for valid units).
    """

    start: int
    stop: int
    features: NDArray[np.float64]
    failures: tuple[str, ...]
    chunk_failed: bool = False
    chunk_reason: str = ""
    attempts: int = 1
    elapsed: float = field(default=0.0, compare=False)

    @property
    def n_units(self) -> int:
        return self.stop - self.start

    @property
    def valid_mask(self) -> NDArray[np.bool_]:
        """Units that produced a feature vector."""
        if self.chunk_failed:
            return np.zeros(self.n_units, dtype=bool)
        return np.array([not reason for reason in self.failures], dtype=bool)

    @classmethod
    def failed(
        cls, start: int, stop: int, n_features: int, reason: str, attempts: int = 1
    ) -> "ChunkResult":
        """Result for a chunk that could not be processed at all."""
        return cls(
            start=start,
            stop=stop,
            features=np.full((stop - start, n_features), np.nan),
            failures=tuple(reason for _ in range(stop - start)),
            chunk_failed=True,
            chunk_reason=reason,
            attempts=attempts,
        )


class FeatureExtractor:
    """Extract one feature vector per reduction unit of an array source.

    The reduction plan is resolved once at construction; extraction of a
    unit range is then a pure read-and-reduce over the source.

    Example:
        >>> extractor = FeatureExtractor(
        ...     source, ["t2m", "msl"], unit_axis="time",
        ...     reduction_mode={"t2m": ReductionMode.MEAN},
        ... )
        >>> chunk = extractor.extract_range(0, 100)
        >>> chunk.features.shape
        (100, 2)
    """

    def __init__(
        self,
        source: ArraySource,
        variables: list[str] | None = None,
        unit_axis: str = "time",
        reduction_mode: dict[str, ReductionMode | str] | None = None,
    ) -> None:
        """Initialize the feature extractor.

        Args:
            source: Array source to read from.
            variables: Variables to include. If empty, every variable spanning
                the unit axis is used.
            unit_axis: Dimension enumerating the reduction units.
            reduction_mode: Per-variable reduction. Unlisted variables use
                raw-scalar when they hold one value per unit, mean otherwise.

        Raises:
            SourceError: If a variable or the unit axis is unknown.
            ValueError: If a reduction mode does not fit its variable.
        """
        self.source = source
        self.unit_axis = unit_axis
        self.n_units = source.unit_count(unit_axis)

        if not variables:
            variables = [
                name
                for name in source.variable_names
                if unit_axis in source.variable_info(name).dims
            ]
            if not variables:
                raise SourceError(f"No variable spans unit axis '{unit_axis}'")

        modes = {name: ReductionMode(mode) for name, mode in (reduction_mode or {}).items()}
        unknown_modes = set(modes) - set(variables)
        if unknown_modes:
            raise ValueError(
                f"Reduction mode given for unselected variables: {sorted(unknown_modes)}"
            )

        self.plans = [self._plan_variable(name, modes.get(name)) for name in variables]

    def _plan_variable(self, name: str, mode: ReductionMode | None) -> VariablePlan:
        info = self.source.variable_info(name)
        if self.unit_axis not in info.dims:
            raise SourceError(
                f"Variable '{name}' does not span unit axis '{self.unit_axis}'"
            )

        per_unit = 1
        for dim, size in zip(info.dims, info.shape):
            if dim != self.unit_axis:
                per_unit *= size

        if mode is None:
            mode = ReductionMode.RAW_SCALAR if per_unit == 1 else ReductionMode.MEAN
        if mode == ReductionMode.RAW_SCALAR and per_unit != 1:
            raise ValueError(
                f"Variable '{name}' has {per_unit} values per unit; "
                f"raw-scalar needs exactly one (use mean/variance/min/max)"
            )
        if per_unit == 0:
            raise ValueError(f"Variable '{name}' has no values per unit")

        feature_name = name if mode == ReductionMode.RAW_SCALAR else f"{name}_{mode.value}"
        return VariablePlan(name, mode, feature_name, REDUCERS[mode])

    @property
    def feature_names(self) -> list[str]:
        """Ordered feature component names."""
        return [plan.feature_name for plan in self.plans]

    @property
    def feature_length(self) -> int:
        return len(self.plans)

    def unit(self, index: int) -> ReductionUnit:
        """Resolve a reduction unit and its coordinates."""
        return ReductionUnit(index=index, coords=self.source.unit_coords(self.unit_axis, index))

    def extract_range(
        self, start: int, stop: int, deadline: float | None = None
    ) -> ChunkResult:
        """Extract feature vectors for units ``[start, stop)``.

        Each variable is read as one block; when the block read fails the
        variable is re-read unit by unit so failures stay local to units.

        Args:
            start: First unit index.
            stop: One past the last unit index.
            deadline: ``time.monotonic()`` value after which extraction is
                abandoned (checked between reads).

        Returns:
            ChunkResult with one row per unit.

        Raises:
            ChunkFailure: If every unit of a variable fails to read, or the
                deadline passes.
        """
        started = time.monotonic()
        n = stop - start
        features = np.full((n, self.feature_length), np.nan)
        failures = ["" for _ in range(n)]

        for j, plan in enumerate(self.plans):
            self._check_deadline(start, stop, deadline)
            try:
                block = self.source.read_block(plan.variable, start, stop, self.unit_axis)
                features[:, j], has_data = self._reduce(plan, block)
            except SourceError as e:
                logger.warning(
                    f"Block read of '{plan.variable}' for units [{start}, {stop}) "
                    f"failed, retrying per unit: {e}"
                )
                features[:, j], has_data = self._extract_per_unit(
                    plan, start, stop, failures, deadline
                )

            # NaN from arithmetic on present values (e.g. inf - inf) is left
            # for the engine to report as a non-finite feature
            for i in np.flatnonzero(~has_data):
                if not failures[i]:
                    failures[i] = self._missing_reason(plan)

        for i, reason in enumerate(failures):
            if reason:
                features[i] = np.nan
                logger.debug(f"Unit {start + i}: extraction failure ({reason})")

        return ChunkResult(
            start=start,
            stop=stop,
            features=features,
            failures=tuple(failures),
            elapsed=time.monotonic() - started,
        )

    @staticmethod
    def _reduce(
        plan: VariablePlan, block: NDArray[np.float64]
    ) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
        """Reduce a unit-first block; also report which units hold any value."""
        has_data = ~np.isnan(_flatten_units(block)).all(axis=1)
        return plan.reducer(block), has_data

    def _extract_per_unit(
        self,
        plan: VariablePlan,
        start: int,
        stop: int,
        failures: list[str],
        deadline: float | None,
    ) -> tuple[NDArray[np.float64], NDArray[np.bool_]]:
        column = np.full(stop - start, np.nan)
        has_data = np.zeros(stop - start, dtype=bool)
        read_errors = 0
        for i in range(stop - start):
            self._check_deadline(start, stop, deadline)
            try:
                values = self.source.read_slice(plan.variable, start + i, self.unit_axis)
            except SourceError as e:
                read_errors += 1
                if not failures[i]:
                    failures[i] = f"{plan.variable}: {type(e).__name__}: {e}"
                continue
            reduced, present = self._reduce(plan, values[np.newaxis, ...])
            column[i] = reduced[0]
            has_data[i] = present[0]

        if read_errors == stop - start:
            raise ChunkFailure(start, stop, f"every read of '{plan.variable}' failed")
        return column, has_data

    @staticmethod
    def _missing_reason(plan: VariablePlan) -> str:
        if plan.mode == ReductionMode.RAW_SCALAR:
            return f"{plan.variable}: missing value"
        return f"{plan.variable}: all values missing"

    @staticmethod
    def _check_deadline(start: int, stop: int, deadline: float | None) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise ChunkFailure(start, stop, "timed out")

    def extract_unit(self, index: int) -> NDArray[np.float64]:
        """Feature vector of a single unit.

        Raises:
            ExtractionFailure: If the unit yields no usable vector.
        """
        try:
            chunk = self.extract_range(index, index + 1)
        except ChunkFailure as e:
            raise ExtractionFailure(index, e.reason) from e
        if chunk.failures[0]:
            raise ExtractionFailure(index, chunk.failures[0])
        return chunk.features[0].copy()

    def iter_features(
        self, start: int = 0, stop: int | None = None, batch_size: int = 256
    ) -> Iterator[tuple[ReductionUnit, NDArray[np.float64], str]]:
        """Lazily yield ``(unit, feature_vector, failure_reason)`` in unit order.

        The sequence is finite and can be restarted by calling again.
        """
        stop = self.n_units if stop is None else stop
        for batch_start in range(start, stop, batch_size):
            batch_stop = min(batch_start + batch_size, stop)
            chunk = self.extract_range(batch_start, batch_stop)
            for offset in range(chunk.n_units):
                yield (
                    self.unit(batch_start + offset),
                    chunk.features[offset].copy(),
                    chunk.failures[offset],
                )


class FeatureNormalizer:
    """Standardize feature components with statistics over the full unit range.

    Statistics are accumulated chunk by chunk (``partial_fit``) from rows
    whose components are all finite. Components with zero variance are
    left unscaled and flagged constant.
    """

    def __init__(self, feature_names: list[str]) -> None:
        self.feature_names = list(feature_names)
        self._scaler = StandardScaler()
        self._n_seen = 0

    @property
    def fitted(self) -> bool:
        return self._n_seen > 0

    def partial_fit(self, features: NDArray[np.float64]) -> "FeatureNormalizer":
        """Accumulate statistics from one chunk of feature vectors."""
        rows = features[np.isfinite(features).all(axis=1)]
        if rows.shape[0] > 0:
            self._scaler.partial_fit(rows)
            self._n_seen += rows.shape[0]
        return self

    @property
    def mean(self) -> NDArray[np.float64]:
        self._require_fitted()
        return np.asarray(self._scaler.mean_, dtype=np.float64)

    @property
    def scale(self) -> NDArray[np.float64]:
        self._require_fitted()
        return np.asarray(self._scaler.scale_, dtype=np.float64)

    @property
    def constant_mask(self) -> NDArray[np.bool_]:
        """Components whose variance is zero up to rounding."""
        self._require_fitted()
        eps = np.finfo(np.float64).eps
        var = np.asarray(self._scaler.var_, dtype=np.float64)
        mean = self.mean
        upper_bound = self._n_seen * eps * var + (self._n_seen * mean * eps) ** 2
        return var <= upper_bound

    @property
    def constant_features(self) -> list[str]:
        return [n for n, c in zip(self.feature_names, self.constant_mask) if c]

    def transform(self, features: NDArray[np.float64]) -> NDArray[np.float64]:
        """Standardize features; non-finite components stay non-finite."""
        self._require_fitted()
        scale = np.where(self.constant_mask, 1.0, self.scale)
        center = np.where(self.constant_mask, 0.0, self.mean)
        with np.errstate(invalid="ignore", over="ignore"):
            return (features - center) / scale

    def _require_fitted(self) -> None:
        if not self.fitted:
            raise RuntimeError("FeatureNormalizer has not seen any finite feature vector")
