"""Cluster validity metrics used for choosing the number of clusters.

The model-selection score is ``1 - mean silhouette``: it lies in [0, 2]
and lower is better. Calinski-Harabasz and Davies-Bouldin indices are
reported alongside and combined with the silhouette into an
entropy-weighted total score for inspection; they do not drive selection.
"""

import logging

import numpy as np
from numpy.typing import NDArray
from sklearn.metrics import (
    calinski_harabasz_score,
    davies_bouldin_score,
    silhouette_score,
)

logger = logging.getLogger(__name__)


def _n_occupied(labels: NDArray[np.int64]) -> int:
    return len(np.unique(labels))


def silhouette(
    X: NDArray[np.float64],
    labels: NDArray[np.int64],
    sample_size: int | None = None,
    random_state: int | None = None,
) -> float | None:
    """Mean silhouette coefficient.

    Singleton clusters contribute 0, so a partition into singletons scores
    0. Returns None when fewer than two clusters are occupied or no feature
    component is available.
    """
    n_samples = X.shape[0]
    n_labels = _n_occupied(labels)
    if n_labels < 2 or X.shape[1] == 0:
        return None
    if n_labels == n_samples:
        return 0.0

    if sample_size is not None and n_samples > sample_size:
        try:
            return float(
                silhouette_score(
                    X, labels, sample_size=sample_size, random_state=random_state
                )
            )
        except ValueError as e:
            # The sample may miss all but one cluster; score every vector instead
            logger.debug(f"Sampled silhouette failed ({e}), using all vectors")

    return float(silhouette_score(X, labels))


def calinski_harabasz(X: NDArray[np.float64], labels: NDArray[np.int64]) -> float | None:
    """Calinski-Harabasz index (higher is better), None where undefined."""
    n_labels = _n_occupied(labels)
    if not 2 <= n_labels <= X.shape[0] - 1 or X.shape[1] == 0:
        return None
    return float(calinski_harabasz_score(X, labels))


def davies_bouldin(X: NDArray[np.float64], labels: NDArray[np.int64]) -> float | None:
    """Davies-Bouldin index (lower is better), None where undefined."""
    n_labels = _n_occupied(labels)
    if not 2 <= n_labels <= X.shape[0] - 1 or X.shape[1] == 0:
        return None
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(davies_bouldin_score(X, labels))


def validity_score(silhouette_value: float | None) -> float:
    """Model-selection score from a silhouette value (lower is better)."""
    if silhouette_value is None:
        return float("inf")
    return 1.0 - silhouette_value


# =============================================================================
# Composite scoring
# =============================================================================

NORM_METHODS = ("probability", "minmax", "scale", "zscore")

INDICATOR_NAMES = ("silhouette", "calinski_harabasz", "davies_bouldin")

_EPSILON = 1e-12


def normalize_indicator(
    values: NDArray[np.float64], method: str, negative: bool = False
) -> NDArray[np.float64]:
    """Normalize one indicator across the candidates.

    Args:
        values: Indicator value per candidate.
        method: One of NORM_METHODS.
        negative: Lower raw values are better. Only ``minmax`` reverses
            the scale for such indicators.

    Returns:
        Normalized values. A constant indicator maps to a constant.
    """
    values = np.asarray(values, dtype=np.float64)
    if method == "probability":
        total = values.sum()
        if abs(total) < _EPSILON:
            return np.full_like(values, 1.0 / values.size)
        return values / total
    if method == "minmax":
        low, high = values.min(), values.max()
        if high - low < _EPSILON:
            return np.ones_like(values)
        if negative:
            return (high - values) / (high - low)
        return (values - low) / (high - low)
    if method == "scale":
        high = values.max()
        if abs(high) < _EPSILON:
            return np.ones_like(values)
        return values / high
    if method == "zscore":
        std = values.std()
        if std < _EPSILON:
            return np.zeros_like(values)
        return (values - values.mean()) / std
    raise ValueError(f"Unsupported normalization method: {method}")


def entropy_weights(
    indicators: NDArray[np.float64], positive: list[bool]
) -> NDArray[np.float64]:
    """Entropy-method weights of the indicator columns.

    Each column is min-max scaled (reversed for negative indicators) and
    turned into proportions. Columns whose proportions are more uneven
    across candidates carry more information and get a larger weight.

    Args:
        indicators: Matrix of shape (n_candidates, n_indicators).
        positive: Per column, whether higher values are better.

    Returns:
        Weights summing to 1.
    """
    indicators = np.asarray(indicators, dtype=np.float64)
    n_samples, n_indicators = indicators.shape
    if n_indicators == 0:
        return np.zeros(0)
    if n_samples <= 1:
        return np.full(n_indicators, 1.0 / n_indicators)

    low = indicators.min(axis=0)
    span = indicators.max(axis=0) - low
    scaled = np.ones_like(indicators)
    for j in range(n_indicators):
        if span[j] < _EPSILON:
            continue
        column = (indicators[:, j] - low[j]) / span[j]
        scaled[:, j] = np.clip(column if positive[j] else 1.0 - column, 0.0, 1.0)

    sums = scaled.sum(axis=0)
    proportions = np.full_like(scaled, 1.0 / n_samples)
    informative = np.abs(sums) >= _EPSILON
    proportions[:, informative] = scaled[:, informative] / sums[informative]

    with np.errstate(divide="ignore", invalid="ignore"):
        terms = np.where(proportions > _EPSILON, proportions * np.log(proportions), 0.0)
    entropy = np.clip(-terms.sum(axis=0) / np.log(n_samples), 0.0, 1.0)

    divergence = 1.0 - entropy
    total = divergence.sum()
    if total < _EPSILON:
        return np.full(n_indicators, 1.0 / n_indicators)
    return divergence / total


def composite_scores(
    silhouettes: list[float],
    calinski_harabasz_values: list[float],
    davies_bouldin_values: list[float],
    norm_method: str = "probability",
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Entropy-weighted total score per candidate (higher is better).

    Silhouette and Calinski-Harabasz are positive indicators,
    Davies-Bouldin is negative. Each indicator is normalized across the
    candidates with ``norm_method`` and the normalized values are summed
    with the entropy weights of the raw indicators.

    Returns:
        Tuple of (total score per candidate, indicator weights).
    """
    raw = np.column_stack(
        [silhouettes, calinski_harabasz_values, davies_bouldin_values]
    ).astype(np.float64)
    positive = [True, True, False]

    weights = entropy_weights(raw, positive)
    normalized = np.column_stack(
        [
            normalize_indicator(raw[:, j], norm_method, negative=not positive[j])
            for j in range(raw.shape[1])
        ]
    )
    totals = normalized @ weights
    logger.debug(
        f"Indicator weights (silhouette, CH, DB): {np.round(weights, 3).tolist()}"
    )
    return totals, weights
