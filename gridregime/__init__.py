"""gridregime - reduce gridded datasets to representative regimes.

Extracts one feature vector per slice of a netCDF dataset along a chosen
unit axis, clusters the vectors with k-means (sweeping the number of
clusters) and reports one assignment row per slice.
"""

from gridregime.config import Config, PipelineConfig, load_config
from gridregime.pipeline import GridRegimePipeline, PipelineResult, run_pipeline
from gridregime.source import ArraySource

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ArraySource",
    "GridRegimePipeline",
    "PipelineResult",
    "run_pipeline",
    "Config",
    "PipelineConfig",
    "load_config",
]
