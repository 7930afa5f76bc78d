"""Pydantic models for CellForge."""

from cellforge.models.job import (
    JobStatus,
    MaterializationResult,
    MaterializeOptions,
    RefreshJob,
)
from cellforge.models.metric import (
    AggregationType,
    DataPoint,
    EvaluationContext,
    EvaluationResult,
    FilterOperator,
    MetricDefinition,
    MetricFilter,
    MetricRequest,
    MetricResponse,
)
from cellforge.models.model import MaterializedRow, ModelDefinition
from cellforge.models.query import QueryResult
from cellforge.models.time_context import (
    Confidence,
    DatePeriod,
    DetectedDateRange,
    DetectedTimeContext,
    Grain,
    PeriodWindow,
)

__all__ = [
    "AggregationType",
    "Confidence",
    "DataPoint",
    "DatePeriod",
    "DetectedDateRange",
    "DetectedTimeContext",
    "EvaluationContext",
    "EvaluationResult",
    "FilterOperator",
    "Grain",
    "JobStatus",
    "MaterializationResult",
    "MaterializeOptions",
    "MaterializedRow",
    "MetricDefinition",
    "MetricFilter",
    "MetricRequest",
    "MetricResponse",
    "ModelDefinition",
    "PeriodWindow",
    "QueryResult",
    "RefreshJob",
]
