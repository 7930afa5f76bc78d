"""Pydantic models for metric definitions, requests and results.

a metric is one aggregation over one measure column of one model, optionally
narrowed by filters. two ways to resolve it:
- live: build sql, run it against the warehouse (MetricRequest/MetricResponse)
- materialized: aggregate rows already copied into the datastore
  (EvaluationContext/EvaluationResult)
"""

from datetime import date
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from cellforge.models.time_context import Grain


class AggregationType(str, Enum):
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    COUNT_DISTINCT = "count_distinct"
    MIN = "min"
    MAX = "max"


class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    LIKE = "like"


class MetricFilter(BaseModel):
    """A predicate baked into the metric definition, e.g. status eq 'completed'."""

    column: str
    operator: FilterOperator = FilterOperator.EQ
    value: Any

    @model_validator(mode="after")
    def validate_value(self) -> "MetricFilter":
        if self.operator in (FilterOperator.IN, FilterOperator.NOT_IN):
            if not isinstance(self.value, list):
                raise ValueError(f"Filter operator '{self.operator.value}' needs a list value")
        elif isinstance(self.value, list):
            raise ValueError(f"Filter operator '{self.operator.value}' needs a scalar value")
        return self


class MetricDefinition(BaseModel):
    """A named aggregation over a model's measure column."""

    id: str
    name: str
    model_id: str
    measure_column: str
    aggregation: AggregationType = AggregationType.SUM
    filters: list[MetricFilter] = Field(default_factory=list)
    display_name: str | None = None
    description: str | None = None
    format_type: Literal["number", "currency", "percent"] | None = None


# dimension filters from a request: scalar equality or membership
DimensionFilters = dict[str, str | int | float | list[str | int | float]]


class MetricRequest(BaseModel):
    """Live-path request. end is exclusive."""

    name: str
    grain: Grain = Grain.MONTH
    start: date
    end: date
    dimensions: DimensionFilters | None = None
    # only zero is really implemented - null/forward also return 0 for now
    fill: Literal["zero", "null", "forward"] | None = None

    @model_validator(mode="after")
    def validate_window(self) -> "MetricRequest":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class DataPoint(BaseModel):
    period: str  # formatted for the grain, e.g. 2024-03 or 2024-Q1
    value: float
    dimensions: DimensionFilters | None = None


class MetricResponse(BaseModel):
    metric: str
    grain: Grain
    data: list[DataPoint]
    cached: bool = False
    query_time_ms: float = 0.0


class EvaluationContext(BaseModel):
    """Materialized-path request: which window and slice to aggregate."""

    start_date: date
    end_date: date  # exclusive
    grain: Grain = Grain.MONTH
    dimensions: DimensionFilters | None = None


class EvaluationResult(BaseModel):
    """Aggregated value over materialized rows.

    no_materialized_rows distinguishes "model never refreshed for this window"
    from an aggregate that is legitimately zero.
    """

    value: float
    rows_scanned: int
    no_materialized_rows: bool = False
