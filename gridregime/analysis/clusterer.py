"""Centroid-based clustering of feature vectors.

KMeansEngine fits Lloyd-style k-means for one or more candidate cluster
counts and keeps the candidate with the best validity score:

    UNINITIALIZED -> CANDIDATE_SWEEP -> FITTING -> SCORED -> FINALIZED

Each fit is deterministic for a given seed, assigns ties to the lowest
centroid index, reseeds empty clusters from the worst-fit vectors, and
stops when no assignment changes or the iteration cap is reached.
"""

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
from numpy.typing import NDArray

from gridregime.analysis import metrics
from gridregime.errors import InsufficientData, NonFiniteFeature, PipelineCancelled
from gridregime.models.schemas import CandidateScore, Centroid, ClusterModel
from gridregime.utils.parallel import CancellationToken, ParallelProcessor

logger = logging.getLogger(__name__)

# Rows per block when computing the vector-to-centroid distance matrix
DISTANCE_BLOCK_ROWS = 4096


class EngineState(str, Enum):
    """Lifecycle of a KMeansEngine."""

    UNINITIALIZED = "uninitialized"
    CANDIDATE_SWEEP = "candidate_sweep"
    FITTING = "fitting"
    SCORED = "scored"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class FitResult:
    """Outcome of fitting one candidate k."""

    k: int
    centroids: NDArray[np.float64]
    labels: NDArray[np.int64]
    distances: NDArray[np.float64]
    counts: NDArray[np.int64]
    cluster_sse: NDArray[np.float64]
    sse_history: tuple[float, ...]
    iterations: int
    converged: bool
    reseeded: tuple[int, ...] = ()

    @property
    def sse(self) -> float:
        return float(self.cluster_sse.sum())


def squared_distances(
    X: NDArray[np.float64], centroids: NDArray[np.float64]
) -> NDArray[np.float64]:
    """Squared Euclidean distance of every vector to every centroid.

    Computed from explicit differences (not the expanded dot-product form) so
    equal distances compare equal and ties resolve by index.
    """
    out = np.empty((X.shape[0], centroids.shape[0]))
    for start in range(0, X.shape[0], DISTANCE_BLOCK_ROWS):
        block = X[start : start + DISTANCE_BLOCK_ROWS]
        diff = block[:, np.newaxis, :] - centroids[np.newaxis, :, :]
        out[start : start + block.shape[0]] = np.einsum("ijk,ijk->ij", diff, diff)
    return out


def _assign(
    X: NDArray[np.float64], centroids: NDArray[np.float64]
) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
    d2 = squared_distances(X, centroids)
    # argmin returns the first minimum: ties go to the lowest centroid index
    labels = np.argmin(d2, axis=1)
    return labels, d2[np.arange(X.shape[0]), labels]


def _initial_centroids(
    X: NDArray[np.float64], k: int, rng: np.random.Generator
) -> NDArray[np.float64]:
    """Pick k vectors as initial centroids, with distinct values when possible."""
    n = X.shape[0]
    if X.shape[1] > 0:
        _, first_index = np.unique(X, axis=0, return_index=True)
        distinct = np.sort(first_index)
    else:
        distinct = np.array([0])

    if distinct.size >= k:
        chosen = rng.choice(distinct, size=k, replace=False)
    else:
        logger.warning(
            f"Only {distinct.size} distinct feature vectors for k={k}; "
            f"initial centroids will repeat values"
        )
        chosen = rng.choice(n, size=k, replace=False)
    return X[np.sort(chosen)].astype(np.float64, copy=True)


def _recompute(
    X: NDArray[np.float64],
    labels: NDArray[np.int64],
    point_d2: NDArray[np.float64],
    centroids: NDArray[np.float64],
) -> tuple[NDArray[np.float64], list[int]]:
    """Member means; empty clusters move onto the worst-fit vectors."""
    k = centroids.shape[0]
    counts = np.bincount(labels, minlength=k)
    sums = np.zeros_like(centroids)
    np.add.at(sums, labels, X)

    updated = centroids.copy()
    occupied = counts > 0
    updated[occupied] = sums[occupied] / counts[occupied, np.newaxis]

    empty = np.flatnonzero(~occupied)
    if empty.size:
        # Rank by point_d2 from the previous centroids, not the new means: the
        # SSE stays non-increasing. Stable sort keeps the lowest index on ties.
        worst = np.argsort(-point_d2, kind="stable")
        for cluster, row in zip(empty, worst):
            updated[cluster] = X[row]
        logger.debug(f"Reseeded empty clusters {empty.tolist()} from worst-fit vectors")
    return updated, empty.tolist()


def fit_kmeans(
    X: NDArray[np.float64],
    k: int,
    max_iterations: int = 300,
    seed: int = 42,
    tolerance: float = 0.0,
    cancel: CancellationToken | None = None,
) -> FitResult:
    """Fit k centroids to X.

    Args:
        X: Finite feature matrix (n_vectors, n_components).
        k: Number of clusters.
        max_iterations: Maximum recompute/assign cycles.
        seed: Seed for the initial centroid choice.
        tolerance: Fraction of reassigned vectors treated as no change.
        cancel: Checked between iterations.

    Returns:
        FitResult whose labels are the nearest centroid of every vector.

    Raises:
        InsufficientData: If X has fewer than k vectors.
        PipelineCancelled: If cancelled between iterations.
    """
    n = X.shape[0]
    if n < k:
        raise InsufficientData(required=k, available=n)

    rng = np.random.default_rng(seed)
    centroids = _initial_centroids(X, k, rng)
    labels, point_d2 = _assign(X, centroids)
    history = [float(point_d2.sum())]

    iterations = 0
    converged = False
    reseeded: list[int] = []
    while iterations < max_iterations:
        if cancel is not None and cancel.cancelled:
            raise PipelineCancelled(f"Fit for k={k} cancelled after {iterations} iterations")

        centroids, reseeded = _recompute(X, labels, point_d2, centroids)
        new_labels, point_d2 = _assign(X, centroids)
        iterations += 1
        history.append(float(point_d2.sum()))

        changed = int(np.count_nonzero(new_labels != labels))
        labels = new_labels
        logger.debug(f"k={k} iteration {iterations}: {changed} reassigned, SSE={history[-1]:.6g}")
        if changed <= tolerance * n:
            converged = True
            break

    if not converged:
        logger.warning(f"k={k} stopped at the iteration cap ({max_iterations})")

    counts = np.bincount(labels, minlength=k)
    cluster_sse = np.bincount(labels, weights=point_d2, minlength=k)
    return FitResult(
        k=k,
        centroids=centroids,
        labels=labels,
        distances=np.sqrt(point_d2),
        counts=counts,
        cluster_sse=cluster_sse,
        sse_history=tuple(history),
        iterations=iterations,
        converged=converged,
        reseeded=tuple(reseeded),
    )


class KMeansEngine:
    """Select and fit a k-means model over extracted feature vectors.

    Example:
        >>> engine = KMeansEngine(candidate_k=(2, 5), seed=7)
        >>> model = engine.fit(features, unit_ids, feature_names)
        >>> model.k, [c.count for c in model.centroids]
    """

    def __init__(
        self,
        candidate_k: int | tuple[int, int] | list[int] = 2,
        max_iterations: int = 300,
        tolerance: float = 0.0,
        seed: int = 42,
        max_workers: int | None = None,
        silhouette_sample_size: int | None = 4000,
        norm_method: str = "probability",
    ) -> None:
        """Initialize the engine.

        Args:
            candidate_k: Fixed k, inclusive (low, high) range, or explicit list.
            max_iterations: Iteration cap per fit.
            tolerance: Fraction of reassigned vectors treated as no change.
            seed: Seed for centroid initialization.
            max_workers: Concurrent candidate fits (defaults to CPU count).
            silhouette_sample_size: Vectors sampled for the silhouette score.
            norm_method: Per-candidate normalization for the total score.
        """
        if isinstance(candidate_k, int):
            candidates = [candidate_k]
        elif isinstance(candidate_k, tuple):
            low, high = candidate_k
            candidates = list(range(low, high + 1))
        else:
            candidates = sorted(set(candidate_k))
        if not candidates or min(candidates) < 1:
            raise ValueError(f"Invalid candidate_k: {candidate_k}")
        if norm_method not in metrics.NORM_METHODS:
            raise ValueError(f"Unsupported normalization method: {norm_method}")

        self.candidates = candidates
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.seed = seed
        self.max_workers = max_workers
        self.silhouette_sample_size = silhouette_sample_size
        self.norm_method = norm_method

        self.state = EngineState.UNINITIALIZED
        self.state_history: list[EngineState] = [self.state]
        self.non_finite: list[NonFiniteFeature] = []
        self.fit_results: dict[int, FitResult] = {}
        self.selected: FitResult | None = None

    def _transition(self, state: EngineState) -> None:
        logger.debug(f"Engine state {self.state.value} -> {state.value}")
        self.state = state
        self.state_history.append(state)

    def fit(
        self,
        features: NDArray[np.float64],
        unit_ids: NDArray[np.int64] | list[int] | None = None,
        feature_names: list[str] | None = None,
        active: NDArray[np.bool_] | None = None,
        cancel: CancellationToken | None = None,
    ) -> ClusterModel:
        """Fit every candidate k and finalize the best model.

        Args:
            features: Feature matrix, one row per unit (may hold non-finite rows).
            unit_ids: Unit identifier of each row (defaults to row positions).
            feature_names: Names of the feature components.
            active: Components used for distances (defaults to all).
            cancel: Checked between fitting iterations.

        Returns:
            The finalized, immutable ClusterModel.

        Raises:
            InsufficientData: If fewer finite vectors exist than the smallest k.
            PipelineCancelled: If cancelled before any candidate finished.
            RuntimeError: If the engine was already used.
        """
        if self.state != EngineState.UNINITIALIZED:
            raise RuntimeError("KMeansEngine can only fit once; create a new engine")

        features = np.asarray(features, dtype=np.float64)
        ids = (
            np.arange(features.shape[0])
            if unit_ids is None
            else np.asarray(unit_ids, dtype=np.int64)
        )
        names = feature_names or [f"f{j}" for j in range(features.shape[1])]
        active_mask = (
            np.ones(features.shape[1], dtype=bool) if active is None else np.asarray(active)
        )

        finite = np.isfinite(features).all(axis=1)
        for row in np.flatnonzero(~finite):
            bad = [names[j] for j in np.flatnonzero(~np.isfinite(features[row]))]
            self.non_finite.append(NonFiniteFeature(int(ids[row]), bad))
            logger.warning(f"Unit {ids[row]}: non-finite feature in {', '.join(bad)}, excluded")

        X = features[finite][:, active_mask]
        valid_ids = ids[finite]
        n_valid = X.shape[0]

        smallest = min(self.candidates)
        if n_valid < smallest:
            raise InsufficientData(
                required=smallest,
                available=n_valid,
                excluded={"non-finite feature": len(self.non_finite)}
                if self.non_finite
                else None,
            )

        runnable = [k for k in self.candidates if k <= n_valid]
        skipped = [
            CandidateScore(k=k, skipped=True, note=f"only {n_valid} valid vectors")
            for k in self.candidates
            if k > n_valid
        ]

        if len(self.candidates) > 1:
            self._transition(EngineState.CANDIDATE_SWEEP)
        self._transition(EngineState.FITTING)
        logger.info(f"Fitting k in {runnable} over {n_valid} vectors")

        processor: ParallelProcessor[int, FitResult] = ParallelProcessor(
            process_fn=lambda k: fit_kmeans(
                X, k, self.max_iterations, self.seed, self.tolerance, cancel
            ),
            max_concurrency=self.max_workers,
            cancel=cancel,
        )
        outcomes = processor.process(runnable)

        for outcome in outcomes:
            if outcome.success and outcome.result is not None:
                self.fit_results[outcome.result.k] = outcome.result
            elif outcome.error is not None and not isinstance(
                outcome.error, PipelineCancelled
            ):
                raise outcome.error

        cancelled = cancel is not None and cancel.cancelled
        if not self.fit_results:
            self._transition(EngineState.CANCELLED)
            raise PipelineCancelled("Cancelled before any candidate fit completed")

        scores = [self._score(X, fit) for fit in self.fit_results.values()]
        scores, weights = self._add_total_scores(scores)
        scores.extend(skipped)
        scores.sort(key=lambda s: s.k)
        self._transition(EngineState.SCORED)

        best = min(
            (s for s in scores if not s.skipped),
            key=lambda s: (s.validity, s.k),
        )
        self.selected = self.fit_results[best.k]
        logger.info(f"Selected k={best.k} (validity {best.validity:.4f})")

        model = self._build_model(
            self.selected, scores, weights, valid_ids, names, active_mask, cancelled
        )
        self._transition(EngineState.FINALIZED)
        return model

    def _score(self, X: NDArray[np.float64], fit: FitResult) -> CandidateScore:
        sil = metrics.silhouette(
            X, fit.labels, self.silhouette_sample_size, random_state=self.seed
        )
        return CandidateScore(
            k=fit.k,
            validity=metrics.validity_score(sil),
            silhouette=sil,
            calinski_harabasz=metrics.calinski_harabasz(X, fit.labels),
            davies_bouldin=metrics.davies_bouldin(X, fit.labels),
            sse=fit.sse,
            iterations=fit.iterations,
            converged=fit.converged,
        )

    def _add_total_scores(
        self, scores: list[CandidateScore]
    ) -> tuple[list[CandidateScore], dict[str, float]]:
        """Attach the entropy-weighted total score where all indices are defined."""
        rated = [
            s
            for s in scores
            if s.silhouette is not None
            and s.calinski_harabasz is not None
            and s.davies_bouldin is not None
        ]
        if not rated:
            return scores, {}

        totals, weights = metrics.composite_scores(
            [s.silhouette for s in rated],
            [s.calinski_harabasz for s in rated],
            [s.davies_bouldin for s in rated],
            self.norm_method,
        )
        total_by_k = {s.k: float(t) for s, t in zip(rated, totals)}
        updated = [
            s.model_copy(update={"total_score": total_by_k[s.k]})
            if s.k in total_by_k
            else s
            for s in scores
        ]
        return updated, dict(zip(metrics.INDICATOR_NAMES, weights.tolist()))

    @staticmethod
    def _build_model(
        fit: FitResult,
        scores: list[CandidateScore],
        weights: dict[str, float],
        unit_ids: NDArray[np.int64],
        feature_names: list[str],
        active: NDArray[np.bool_],
        cancelled: bool,
    ) -> ClusterModel:
        centroids = [
            Centroid(
                index=c,
                values=fit.centroids[c].tolist(),
                count=int(fit.counts[c]),
                sse=float(fit.cluster_sse[c]),
            )
            for c in range(fit.k)
        ]
        return ClusterModel(
            k=fit.k,
            centroids=centroids,
            scores=scores,
            assignments={int(u): int(c) for u, c in zip(unit_ids, fit.labels)},
            distances={int(u): float(d) for u, d in zip(unit_ids, fit.distances)},
            iterations=fit.iterations,
            converged=fit.converged,
            sse_history=list(fit.sse_history),
            indicator_weights=weights,
            feature_names=[n for n, a in zip(feature_names, active) if a],
            cancelled=cancelled,
        )
