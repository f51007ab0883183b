"""Data models for gridregime."""

from gridregime.models.schemas import (
    CandidateScore,
    Centroid,
    ClusterModel,
    ClusterSummary,
    DatasetInfo,
    DimensionInfo,
    ReductionMode,
    ReductionUnit,
    ResultRow,
    UnitStatus,
    VariableInfo,
    VariableStats,
)

__all__ = [
    "CandidateScore",
    "Centroid",
    "ClusterModel",
    "ClusterSummary",
    "DatasetInfo",
    "DimensionInfo",
    "ReductionMode",
    "ReductionUnit",
    "ResultRow",
    "UnitStatus",
    "VariableInfo",
    "VariableStats",
]
