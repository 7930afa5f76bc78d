"""Materialization: copy a model's warehouse query result into the datastore.

one run is:

    build query (+ date bounds) -> run it (guarded) -> validate schema
        -> transform every row -> delete the old window -> insert in batches

validation and transformation both happen before the delete, so a schema
mismatch or an unparseable date never leaves a model half-wiped. the
delete/insert pair itself isn't atomic; a reader in between sees an empty
window, which is acceptable for a refresh.
"""

import asyncio
import time
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from cellforge.compiler.sql_builder import MetricSQLBuilder
from cellforge.errors import MaterializationError, ParseError
from cellforge.executor.duckdb_executor import DuckDBExecutor
from cellforge.logging import get_logger
from cellforge.models.job import MaterializationResult, MaterializeOptions
from cellforge.models.model import MaterializedRow, ModelDefinition
from cellforge.storage.datastore import DuckDBDatastore

logger = get_logger(__name__)


def parse_date_value(value: Any) -> str:
    """Normalize a warehouse date value to YYYY-MM-DD.

    accepts dates, datetimes, ISO strings (time part dropped) and anything
    whose str() is an ISO date, e.g. 20240115. raises ParseError otherwise.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if value is None or isinstance(value, bool):
        raise ParseError(f"Invalid date value: {value!r}")

    text = str(value).strip()
    # 2024-01-15T10:00:00 and 2024-01-15 10:00:00 both keep just the date
    text = text.split("T")[0].split(" ")[0]
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError as e:
        raise ParseError(f"Invalid date value: {value!r}") from e


def _plain(value: Any) -> Any:
    # Decimal doesn't survive json, and float is what aggregation wants anyway
    if isinstance(value, Decimal):
        return float(value)
    return value


class MaterializationEngine:
    """Runs model refreshes. Refreshes of the same model are serialized."""

    def __init__(
        self,
        warehouse: DuckDBExecutor,
        datastore: DuckDBDatastore,
        sql_builder: MetricSQLBuilder,
        batch_size: int = 1000,
    ) -> None:
        self.warehouse = warehouse
        self.datastore = datastore
        self.sql_builder = sql_builder
        self.batch_size = batch_size
        # without this two refreshes of one model could interleave their
        # delete/insert phases and duplicate rows
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def build_query(self, model: ModelDefinition, options: MaterializeOptions) -> str:
        start = options.start_date if options.incremental else None
        return self.sql_builder.inject_date_bounds(
            model.source_query, model.primary_date_column, start=start, end=options.end_date
        )

    async def materialize(
        self,
        model: ModelDefinition,
        options: MaterializeOptions | None = None,
    ) -> MaterializationResult:
        options = options or MaterializeOptions()
        async with self._locks[model.id]:
            return await self._materialize(model, options)

    async def _materialize(
        self, model: ModelDefinition, options: MaterializeOptions
    ) -> MaterializationResult:
        started = time.perf_counter()
        sql = self.build_query(model, options)
        logger.info(
            "materialization_started",
            model_id=model.id,
            incremental=options.incremental,
            start=str(options.start_date) if options.start_date else None,
            end=str(options.end_date) if options.end_date else None,
        )

        result = await self.warehouse.query(sql)
        warnings = self.validate_schema(model, result.columns)
        rows = [self.transform_row(model, row) for row in result.data]

        if options.incremental:
            deleted = await self.datastore.delete_rows(
                model.id, options.start_date, options.end_date
            )
        else:
            deleted = await self.datastore.delete_rows(model.id)

        for i in range(0, len(rows), self.batch_size):
            await self.datastore.insert_rows(rows[i : i + self.batch_size])

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "materialization_completed",
            model_id=model.id,
            rows=len(rows),
            deleted=deleted,
            ms=duration_ms,
        )
        return MaterializationResult(
            model_id=model.id,
            rows_processed=len(rows),
            rows_deleted=deleted,
            incremental=options.incremental,
            duration_ms=duration_ms,
            warnings=warnings,
        )

    def validate_schema(self, model: ModelDefinition, columns: list[str]) -> list[str]:
        """Check the result columns against the model, case-insensitively.

        missing date or measure columns are fatal. a missing dimension is
        only a warning - the rows are still usable, just not sliceable.
        """
        available = {c.lower() for c in columns}
        listing = ", ".join(columns) or "(none)"

        if model.primary_date_column.lower() not in available:
            raise MaterializationError(
                f"Model '{model.id}' output missing required date column "
                f"'{model.primary_date_column}'. Available columns: {listing}"
            )

        missing = [m for m in model.measure_columns if m.lower() not in available]
        if missing:
            raise MaterializationError(
                f"Model '{model.id}' output missing measure column(s) "
                f"{', '.join(missing)}. Available columns: {listing}"
            )

        warnings = []
        for dim in model.dimension_columns:
            if dim.lower() not in available:
                logger.warning("materialization_missing_dimension", model_id=model.id, column=dim)
                warnings.append(f"Missing dimension column: {dim}")
        return warnings

    def transform_row(self, model: ModelDefinition, row: dict[str, Any]) -> MaterializedRow:
        lowered = {k.lower(): v for k, v in row.items()}
        dimensions = {
            dim.lower(): _plain(lowered[dim.lower()])
            for dim in model.dimension_columns
            if dim.lower() in lowered
        }
        measures = {
            m.lower(): _plain(lowered[m.lower()])
            for m in model.measure_columns
            if m.lower() in lowered
        }
        return MaterializedRow(
            model_id=model.id,
            date_value=parse_date_value(lowered.get(model.primary_date_column.lower())),
            dimensions=dimensions or None,
            measures=measures,
        )

    async def get_stats(self, model_id: str) -> dict[str, Any]:
        """Row count, date range and last refresh for a model."""
        stats = await self.datastore.row_stats(model_id)
        last = await self.datastore.last_refreshed(model_id)
        return {
            "total_rows": stats["row_count"],
            "date_range": (
                {"min": stats["min_date"], "max": stats["max_date"]}
                if stats["row_count"]
                else None
            ),
            "last_refresh": last.isoformat() if last else None,
        }
