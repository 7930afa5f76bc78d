"""Materialized metric evaluation.

aggregates rows that a refresh already copied into the datastore, so a cell
recalculation never waits on the warehouse. the pipeline is:

    fetch rows in [start, end) -> metric filters -> request dimension filters
        -> aggregate the measure column

keys on MaterializedRow are lowercased at construction, so every column
lookup here is case-insensitive without scanning keys.
"""

import asyncio
import json
import operator
import re
from collections.abc import Callable
from datetime import date
from typing import Any

from cellforge.catalog.loader import ModelCatalog
from cellforge.coerce import to_number
from cellforge.logging import get_logger
from cellforge.models.metric import (
    AggregationType,
    DimensionFilters,
    EvaluationContext,
    EvaluationResult,
    FilterOperator,
    MetricDefinition,
    MetricFilter,
)
from cellforge.models.model import MaterializedRow
from cellforge.models.time_context import PeriodWindow
from cellforge.storage.datastore import DuckDBDatastore

logger = get_logger(__name__)

_ORDERING: dict[FilterOperator, Callable[[Any, Any], bool]] = {
    FilterOperator.GT: operator.gt,
    FilterOperator.GTE: operator.ge,
    FilterOperator.LT: operator.lt,
    FilterOperator.LTE: operator.le,
}


def _same(left: Any, right: Any) -> bool:
    # numbers compare numerically so 5 matches 5.0 and "5"
    left_num, right_num = to_number(left), to_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return left == right or str(left) == str(right)


def like_to_regex(pattern: str) -> re.Pattern[str]:
    """SQL LIKE pattern -> anchored, case-insensitive regex. % is the wildcard."""
    parts = [re.escape(part) for part in pattern.split("%")]
    return re.compile("^" + ".*".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def matches_filter(value: Any, flt: MetricFilter) -> bool:
    op = flt.operator
    if op == FilterOperator.EQ:
        return _same(value, flt.value)
    if op == FilterOperator.NEQ:
        return not _same(value, flt.value)
    if op == FilterOperator.IN:
        return any(_same(value, v) for v in flt.value)
    if op == FilterOperator.NOT_IN:
        return not any(_same(value, v) for v in flt.value)
    if op == FilterOperator.LIKE:
        if not isinstance(value, str) or not isinstance(flt.value, str):
            return False
        return bool(like_to_regex(flt.value).match(value))

    compare = _ORDERING[op]
    left_num, right_num = to_number(value), to_number(flt.value)
    if left_num is not None and right_num is not None:
        return compare(left_num, right_num)
    if value is None or flt.value is None:
        return False
    try:
        return compare(value, flt.value)
    except TypeError:
        return False


def apply_filters(
    rows: list[MaterializedRow], filters: list[MetricFilter]
) -> list[MaterializedRow]:
    """Keep rows passing every metric filter.

    a filter on a column the row doesn't have is skipped for that row - the
    metric was defined against the model, not against every row shape.
    """
    if not filters:
        return rows
    return [
        row
        for row in rows
        if all(
            matches_filter(row.get(f.column), f)
            for f in filters
            if row.has_column(f.column)
        )
    ]


def apply_dimension_filters(
    rows: list[MaterializedRow], dimensions: DimensionFilters | None
) -> list[MaterializedRow]:
    """Keep rows matching every requested dimension.

    unlike metric filters, a missing dimension key excludes the row: asking
    for region=EU must not match rows that have no region at all.
    """
    if not dimensions:
        return rows

    wanted = {key.lower(): value for key, value in dimensions.items()}
    kept = []
    for row in rows:
        dims = row.dimensions or {}
        ok = True
        for key, value in wanted.items():
            if key not in dims:
                ok = False
            elif isinstance(value, list):
                ok = any(_same(dims[key], v) for v in value)
            else:
                ok = _same(dims[key], value)
            if not ok:
                break
        if ok:
            kept.append(row)
    return kept


def _distinct_key(value: Any) -> tuple[str, Any]:
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, (int, float)):
        return ("num", value)
    if isinstance(value, str):
        return ("str", value)
    return ("json", json.dumps(value, sort_keys=True, default=str))


def aggregate(rows: list[MaterializedRow], measure: str, aggregation: AggregationType) -> float:
    key = measure.lower()
    values = [row.measures.get(key) for row in rows]
    values = [v for v in values if v is not None]
    if not values:
        return 0.0

    if aggregation == AggregationType.COUNT:
        return float(len(values))
    if aggregation == AggregationType.COUNT_DISTINCT:
        # raw values, so "1" and 1 are two different things
        return float(len({_distinct_key(v) for v in values}))

    numbers = [n for n in (to_number(v) for v in values) if n is not None]
    if not numbers:
        return 0.0
    if aggregation == AggregationType.SUM:
        return sum(numbers)
    if aggregation == AggregationType.AVG:
        return sum(numbers) / len(numbers)
    if aggregation == AggregationType.MIN:
        return min(numbers)
    return max(numbers)


class MetricEvaluator:
    """Evaluates metrics over materialized rows in the datastore."""

    def __init__(self, datastore: DuckDBDatastore, catalog: ModelCatalog | None = None) -> None:
        self.datastore = datastore
        self.catalog = catalog

    async def evaluate(
        self, metric: MetricDefinition, context: EvaluationContext
    ) -> EvaluationResult:
        rows = await self.datastore.fetch_rows(
            metric.model_id, context.start_date, context.end_date
        )

        if not rows:
            # distinct from a real zero - the caller should tell the user
            # the model probably hasn't been refreshed for this window
            logger.warning(
                "no_materialized_rows",
                metric=metric.name,
                model_id=metric.model_id,
                start=str(context.start_date),
                end=str(context.end_date),
            )
            return EvaluationResult(value=0, rows_scanned=0, no_materialized_rows=True)

        filtered = apply_filters(rows, metric.filters)
        filtered = apply_dimension_filters(filtered, context.dimensions)
        value = aggregate(filtered, metric.measure_column, metric.aggregation)

        logger.debug(
            "metric_evaluated",
            metric=metric.name,
            rows_scanned=len(rows),
            rows_matched=len(filtered),
            value=value,
        )
        return EvaluationResult(value=value, rows_scanned=len(rows))

    async def evaluate_by_name(self, name: str, context: EvaluationContext) -> EvaluationResult:
        if self.catalog is None:
            raise RuntimeError("MetricEvaluator needs a catalog to look metrics up by name")
        return await self.evaluate(self.catalog.get_metric(name), context)

    async def evaluate_time_series(
        self,
        metric: MetricDefinition,
        windows: list[PeriodWindow],
        dimensions: DimensionFilters | None = None,
    ) -> list[tuple[date, EvaluationResult]]:
        """Evaluate one result per window, concurrently, in window order."""
        contexts = [
            EvaluationContext(
                start_date=w.start, end_date=w.end, grain=w.grain, dimensions=dimensions
            )
            for w in windows
        ]
        results = await asyncio.gather(*(self.evaluate(metric, c) for c in contexts))
        return [(w.start, r) for w, r in zip(windows, results)]

    async def get_available_dimensions(self, model_id: str, column: str) -> list[Any]:
        """Distinct values of a dimension, for building filter pickers."""
        return await self.datastore.distinct_dimension_values(model_id, column)
