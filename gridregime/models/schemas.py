"""Pydantic schemas for gridregime data validation.

This module defines the data models shared across the pipeline:
- DatasetInfo / VariableInfo / DimensionInfo: Array source metadata
- ReductionUnit: One addressable slice along the unit axis
- CandidateScore: Model-selection scores for one candidate k
- Centroid / ClusterModel: The finalized clustering result
- ResultRow: One output record per reduction unit
- ClusterSummary: Per-cluster statistics for the summary table
"""

from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Enumerations
# =============================================================================


class ReductionMode(str, Enum):
    """How a variable is collapsed to one scalar per reduction unit."""

    RAW_SCALAR = "raw-scalar"  # Already one value per unit
    MEAN = "mean"
    VARIANCE = "variance"
    MIN = "min"
    MAX = "max"


class UnitStatus(str, Enum):
    """Status of a reduction unit in the output table."""

    CLUSTERED = "clustered"
    NON_FINITE = "unclustered: non-finite feature"
    EXTRACTION_FAILURE = "unclustered: extraction failure"
    CHUNK_FAILURE = "unclustered: chunk failure"


# Fixed column order of the output table. Coordinate columns are inserted
# after "unit_id".
RESULT_COLUMNS = ["unit_id", "cluster_index", "distance_to_centroid", "status"]


# =============================================================================
# Array Source Metadata
# =============================================================================


class DimensionInfo(BaseModel):
    """A dimension of the dataset and its coordinate values."""

    name: str = Field(description="Dimension name")
    length: int = Field(ge=0, description="Declared dimension length")
    coords: list[Any] = Field(
        default_factory=list, description="Coordinate values (empty if none)"
    )

    model_config = ConfigDict(frozen=True)


class VariableInfo(BaseModel):
    """Metadata of a named multidimensional variable."""

    name: str = Field(description="Variable name")
    dims: list[str] = Field(description="Ordered dimension names")
    shape: list[int] = Field(description="Array shape, one entry per dimension")
    dtype: str = Field(default="float64", description="Stored data type")
    fill_value: float | None = Field(
        default=None, description="Fill/missing value marker, if declared"
    )

    model_config = ConfigDict(frozen=True)


class DatasetInfo(BaseModel):
    """Structure of an opened dataset."""

    source: str = Field(default="", description="Path or identifier of the source")
    dimensions: list[DimensionInfo] = Field(default_factory=list)
    variables: list[VariableInfo] = Field(default_factory=list)


class VariableStats(BaseModel):
    """Summary statistics of a variable at a selected point."""

    variable: str
    selection: dict[str, Any] = Field(
        default_factory=dict, description="Coordinates of the selected point"
    )
    total_count: int = Field(description="Number of values retrieved")
    finite_count: int = Field(description="Number of finite values")
    mean: float | None = None
    std: float | None = Field(default=None, description="Population std (ddof=0)")
    min: float | None = None
    max: float | None = None


# =============================================================================
# Reduction Units
# =============================================================================


class ReductionUnit(NamedTuple):
    """One slice of the dataset along the unit axis."""

    index: int
    coords: dict[str, Any]


# =============================================================================
# Clustering Results
# =============================================================================


class CandidateScore(BaseModel):
    """Scores of one candidate cluster count.

    ``validity`` is the model-selection score: lower is better.
    ``total_score`` is informational and higher is better.
    """

    k: int = Field(ge=1)
    validity: float = Field(default=float("inf"))
    silhouette: float | None = Field(default=None, description="Mean silhouette")
    calinski_harabasz: float | None = None
    davies_bouldin: float | None = None
    total_score: float | None = Field(
        default=None, description="Entropy-weighted composite of the three indices"
    )
    sse: float | None = Field(default=None, description="Within-cluster SSE")
    iterations: int = 0
    converged: bool = False
    skipped: bool = Field(default=False, description="Candidate was not fitted")
    note: str = ""

    model_config = ConfigDict(frozen=True)


class Centroid(BaseModel):
    """A cluster centroid in the clustering (normalized) feature space."""

    index: int = Field(ge=0)
    values: list[float] = Field(description="Centroid coordinates")
    count: int = Field(ge=0, description="Number of members")
    sse: float = Field(ge=0.0, description="Sum of squared member distances")

    model_config = ConfigDict(frozen=True)


class ClusterModel(BaseModel):
    """Immutable result of a clustering run."""

    k: int = Field(ge=1, description="Selected number of clusters")
    centroids: list[Centroid] = Field(default_factory=list)
    scores: list[CandidateScore] = Field(
        default_factory=list, description="Scores of every candidate k"
    )
    assignments: dict[int, int] = Field(
        default_factory=dict, description="Unit id to centroid index"
    )
    distances: dict[int, float] = Field(
        default_factory=dict, description="Unit id to distance from its centroid"
    )
    iterations: int = 0
    converged: bool = False
    sse_history: list[float] = Field(
        default_factory=list, description="Within-cluster SSE after each assignment"
    )
    indicator_weights: dict[str, float] = Field(
        default_factory=dict, description="Entropy weights behind total_score"
    )
    feature_names: list[str] = Field(
        default_factory=list, description="Feature components used for distances"
    )
    cancelled: bool = Field(
        default=False, description="Selected from a sweep interrupted by cancellation"
    )

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Output Records
# =============================================================================


class ResultRow(BaseModel):
    """One output record per reduction unit."""

    unit_id: int = Field(ge=0)
    coords: dict[str, Any] = Field(default_factory=dict)
    cluster_index: int | None = Field(default=None, description="None if unclustered")
    distance_to_centroid: float | None = None
    status: UnitStatus = UnitStatus.CLUSTERED
    detail: str = Field(default="", description="Reason a unit is unclustered")

    model_config = ConfigDict(frozen=True)

    def to_record(self) -> dict[str, Any]:
        """Flatten to a record following the fixed column schema."""
        record: dict[str, Any] = {"unit_id": self.unit_id}
        record.update(self.coords)
        record["cluster_index"] = self.cluster_index
        record["distance_to_centroid"] = self.distance_to_centroid
        record["status"] = self.status.value
        return record


class ClusterSummary(BaseModel):
    """Per-cluster statistics for the summary table."""

    cluster_index: int
    count: int
    sse: float
    centroid: dict[str, float] = Field(
        default_factory=dict, description="Centroid in normalized units"
    )
    raw_centroid: dict[str, float] = Field(
        default_factory=dict, description="Member mean in original units"
    )
