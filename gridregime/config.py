"""Configuration management for gridregime.

Supports loading configuration from:
1. CLI arguments (highest priority)
2. Config file (YAML)
3. Built-in defaults (lowest priority)
"""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from gridregime.models.schemas import ReductionMode


class PipelineConfig(BaseModel):
    """Reduction and clustering configuration."""

    variables: list[str] = Field(
        default_factory=list,
        description="Variables to include (empty means every variable on the unit axis)",
    )
    unit_axis: str = Field(
        default="time", description="Dimension enumerating the reduction units"
    )
    reduction_mode: dict[str, ReductionMode] = Field(
        default_factory=dict,
        description="Per-variable reduction; unlisted variables use raw-scalar or mean",
    )
    normalize: bool = Field(default=True, description="Standardize feature components")
    candidate_k: int | tuple[int, int] = Field(
        default=(2, 7),
        description="Fixed cluster count, or inclusive (low, high) range to sweep",
    )
    chunk_size: int = Field(default=1024, ge=1, description="Units per chunk")
    max_iterations: int = Field(
        default=300, ge=1, description="Maximum assignment/recompute cycles per fit"
    )
    tolerance: float = Field(
        default=0.0,
        ge=0.0,
        lt=1.0,
        description="Fraction of reassigned units treated as no change",
    )
    seed: int = Field(default=42, description="Seed for centroid initialization")
    max_workers: int | None = Field(
        default=None,
        ge=1,
        description="Worker pool size (defaults to available CPUs)",
    )
    chunk_retries: int = Field(
        default=1, ge=0, le=5, description="Retries for a failed chunk"
    )
    chunk_timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Seconds a chunk attempt may run before it is failed",
    )
    silhouette_sample_size: int | None = Field(
        default=4000,
        ge=2,
        description="Sample size for silhouette scoring (None uses every vector)",
    )
    norm_method: Literal["probability", "minmax", "scale", "zscore"] = Field(
        default="probability",
        description="Per-candidate normalization of the indices in total_score",
    )

    @field_validator("candidate_k", mode="before")
    @classmethod
    def _coerce_candidate_k(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            if len(value) == 1:
                return int(value[0])
            if len(value) != 2:
                raise ValueError("candidate_k range must be [low, high]")
            return (int(value[0]), int(value[1]))
        return value

    @model_validator(mode="after")
    def _check_candidate_k(self) -> "PipelineConfig":
        if isinstance(self.candidate_k, tuple):
            low, high = self.candidate_k
            if low < 1 or high < low:
                raise ValueError(
                    f"candidate_k range must satisfy 1 <= low <= high, got {self.candidate_k}"
                )
        elif self.candidate_k < 1:
            raise ValueError(f"candidate_k must be positive, got {self.candidate_k}")
        return self

    def candidate_values(self) -> list[int]:
        """Candidate cluster counts in ascending order."""
        if isinstance(self.candidate_k, tuple):
            low, high = self.candidate_k
            return list(range(low, high + 1))
        return [self.candidate_k]


class OutputConfig(BaseModel):
    """Output configuration."""

    table_name: str = Field(default="assignments.csv", description="Per-unit table")
    summary_name: str | None = Field(
        default="clusters.csv", description="Per-cluster summary (None to skip)"
    )
    scores_name: str | None = Field(
        default="scores.csv", description="Candidate score table (None to skip)"
    )
    float_precision: int = Field(default=6, ge=0, le=17)


class Config(BaseModel):
    """Root configuration model."""

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)


# Default config paths to search (in order)
CONFIG_SEARCH_PATHS = [
    Path("./gridregime_config.yaml"),
    Path("./gridregime_config.yml"),
    Path.home() / ".gridregime" / "config.yaml",
]


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from file or return defaults.

    Args:
        config_path: Explicit path to config file. If None, searches default locations.

    Returns:
        Config object with loaded or default values.
    """
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return _load_config_from_file(path)

    for search_path in CONFIG_SEARCH_PATHS:
        if search_path.exists():
            return _load_config_from_file(search_path)

    return Config()


def _load_config_from_file(path: Path) -> Config:
    """Load configuration from a YAML file."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must hold a mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - set(Config.model_fields))
    if unknown:
        raise ValueError(f"Unknown config section(s) in {path}: {', '.join(unknown)}")

    return Config(**data)


def merge_cli_overrides(config: Config, **overrides: Any) -> Config:
    """Merge CLI argument overrides into configuration.

    Args:
        config: Base configuration object.
        **overrides: Key-value pairs to override. Keys should match Config fields
                     (e.g., "pipeline__seed", "output__table_name").

    Returns:
        New Config object with overrides applied.
    """
    config_dict = config.model_dump()

    for key, value in overrides.items():
        if value is None:
            continue

        # Nested keys use a double underscore (e.g., "pipeline__chunk_size")
        parts = key.split("__")
        if len(parts) == 1:
            if key in config_dict:
                config_dict[key] = value
        elif len(parts) == 2:
            section, field = parts
            if section in config_dict and field in config_dict[section]:
                config_dict[section][field] = value

    return Config(**config_dict)
