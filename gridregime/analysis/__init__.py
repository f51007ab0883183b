"""Feature extraction and clustering for gridregime.

Main components:
- FeatureExtractor: Reduce each unit of an array source to a feature vector
- FeatureNormalizer: Standardize features over the full unit range
- KMeansEngine: Fit k-means for candidate cluster counts and select the best
- ResultAggregator: Merge chunk results and the model into the output table
"""

from gridregime.analysis.aggregator import ResultAggregator, ResultTable
from gridregime.analysis.clusterer import EngineState, FitResult, KMeansEngine, fit_kmeans
from gridregime.analysis.feature_extractor import (
    ChunkResult,
    FeatureExtractor,
    FeatureNormalizer,
)

__all__ = [
    # Feature extraction
    "FeatureExtractor",
    "FeatureNormalizer",
    "ChunkResult",
    # Clustering
    "KMeansEngine",
    "EngineState",
    "FitResult",
    "fit_kmeans",
    # Aggregation
    "ResultAggregator",
    "ResultTable",
]
