"""METRIC() cells.

    =METRIC("revenue")
    =METRIC("revenue", {"region": "EU"})

the cell has no dates of its own - the window comes from the nearest
detected header row above it, so the same formula dragged across a row of
months gives one value per month. values come from the materialized path
and are cached for five minutes per (metric, window, dimensions).
"""

import asyncio
import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from cellforge.cache.client import CacheClient
from cellforge.catalog.loader import ModelCatalog
from cellforge.coerce import Scalar, normalize_number
from cellforge.errors import MetricNotFoundError, ParseError
from cellforge.formula.evaluator import ERROR, NAME_ERROR
from cellforge.formula.parser import split_arguments
from cellforge.logging import get_logger
from cellforge.metrics.evaluator import MetricEvaluator
from cellforge.models.metric import EvaluationContext
from cellforge.models.time_context import DetectedDateRange
from cellforge.timecontext.detector import time_context_for_column

logger = get_logger(__name__)

CACHE_TTL_SECONDS = 300

_METRIC_CALL = re.compile(r"^\s*=\s*METRIC\s*\((.*)\)\s*$", re.IGNORECASE | re.DOTALL)
_METRIC_PREFIX = re.compile(r"^\s*=\s*METRIC\s*\(", re.IGNORECASE)
# bool is an int, so json true/false pass too
_DIMENSION_TYPES = (str, int, float)


@dataclass(frozen=True)
class MetricCall:
    name: str
    dimensions: dict[str, Any] | None = None


@dataclass(frozen=True)
class MetricCellResult:
    """value is the cell's display value: a number, or a sentinel on failure."""

    value: Scalar
    error: str | None = None
    cached: bool = False


def is_metric_formula(formula: Any) -> bool:
    return isinstance(formula, str) and bool(_METRIC_PREFIX.match(formula))


def parse_metric_formula(formula: str) -> MetricCall:
    """Parse =METRIC("name"[, {json}]). Raises ParseError on anything else.

    works on the raw text: the general parser uppercases outside strings,
    which would turn json true/false into TRUE/FALSE.
    """
    match = _METRIC_CALL.match(formula)
    if not match:
        raise ParseError(f"Not a METRIC formula: {formula}")

    args = split_arguments(match.group(1))
    if not 1 <= len(args) <= 2:
        raise ParseError("METRIC takes a metric name and optional dimension filters")

    name = args[0]
    if len(name) < 3 or name[0] not in "\"'" or name[-1] != name[0]:
        raise ParseError(f"METRIC name must be a quoted string, got {name}")
    name = name[1:-1].strip()
    if not name:
        raise ParseError("METRIC name is empty")

    if len(args) == 1:
        return MetricCall(name=name)

    text = args[1]
    try:
        dimensions = json.loads(text)
    except json.JSONDecodeError:
        # {'region': 'EU'} is what people actually type
        try:
            dimensions = json.loads(text.replace("'", '"'))
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid METRIC filters: {text}") from e
    if not isinstance(dimensions, dict):
        raise ParseError(f"METRIC filters must be an object, got {text}")
    for key, value in dimensions.items():
        values = value if isinstance(value, list) else [value]
        if not all(isinstance(v, _DIMENSION_TYPES) for v in values):
            raise ParseError(f"METRIC filter {key!r} must be a string, number or list of them")
    return MetricCall(name=name, dimensions=dimensions or None)


class MetricCellEvaluator:
    """Resolves METRIC() cells against the materialized metric path."""

    def __init__(
        self,
        evaluator: MetricEvaluator,
        catalog: ModelCatalog,
        cache: CacheClient,
        org_id: str = "default",
    ) -> None:
        self.evaluator = evaluator
        self.catalog = catalog
        self.cache = cache
        self.org_id = org_id

    async def evaluate_cell(
        self,
        formula: str,
        row: int,
        col: int,
        ranges: Sequence[DetectedDateRange],
    ) -> MetricCellResult:
        try:
            call = parse_metric_formula(formula)
        except ParseError as e:
            return MetricCellResult(value=ERROR, error=str(e))

        window = time_context_for_column(col, row, ranges)
        if window is None:
            return MetricCellResult(value=ERROR, error="No time context found for this column")

        try:
            metric = self.catalog.get_metric(call.name)
        except MetricNotFoundError as e:
            return MetricCellResult(value=NAME_ERROR, error=str(e))

        key = self.cache.build_key(
            "metric_cell",
            self.org_id,
            {
                "metric": call.name,
                "start": window.start.isoformat(),
                "end": window.end.isoformat(),
                "dims": call.dimensions or {},
            },
        )
        cached = await self.cache.get(key)
        if cached is not None:
            return MetricCellResult(value=cached, cached=True)

        try:
            context = EvaluationContext(
                start_date=window.start,
                end_date=window.end,
                grain=window.grain,
                dimensions=call.dimensions,
            )
            result = await self.evaluator.evaluate(metric, context)
        except Exception as e:
            # one broken cell must not take the rest of the sheet down
            logger.warning("metric_cell_failed", metric=call.name, row=row, col=col, error=str(e))
            return MetricCellResult(value=ERROR, error=str(e) or type(e).__name__)

        value = normalize_number(result.value)
        if result.no_materialized_rows:
            # left uncached so the first refresh shows up
            return MetricCellResult(value=value, error="No materialized rows for this period")

        await self.cache.set(key, value, CACHE_TTL_SECONDS)
        logger.debug("metric_cell_evaluated", metric=call.name, row=row, col=col, value=value)
        return MetricCellResult(value=value)

    async def resolve_grid(
        self,
        grid: Sequence[Sequence[Any]],
        ranges: Sequence[DetectedDateRange],
    ) -> dict[tuple[int, int], MetricCellResult]:
        """Evaluate every METRIC() cell of a grid concurrently, keyed by (row, col)."""
        cells = [
            (row, col, raw)
            for row, cells in enumerate(grid)
            for col, raw in enumerate(cells)
            if is_metric_formula(raw)
        ]
        results = await asyncio.gather(
            *(self.evaluate_cell(raw, row, col, ranges) for row, col, raw in cells)
        )
        return {(row, col): result for (row, col, _), result in zip(cells, results)}
