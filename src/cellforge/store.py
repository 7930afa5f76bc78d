"""Main CellStore interface for CellForge."""

from collections.abc import Sequence
from datetime import date
from pathlib import Path
from typing import Any

from cellforge.cache.client import CacheClient
from cellforge.catalog.loader import ModelCatalog
from cellforge.coerce import Scalar
from cellforge.compiler.guard import StatementGuard
from cellforge.compiler.sql_builder import MetricSQLBuilder
from cellforge.config import Settings, get_settings
from cellforge.errors import ValidationError
from cellforge.executor.duckdb_executor import DuckDBExecutor
from cellforge.formula.evaluator import FormulaEvaluator, SheetCalculator
from cellforge.formula.metric_formula import MetricCellEvaluator
from cellforge.jobs.worker import RefreshWorker
from cellforge.logging import get_logger
from cellforge.materialize.engine import MaterializationEngine
from cellforge.metrics.evaluator import MetricEvaluator
from cellforge.metrics.resolver import MetricResolver
from cellforge.models.job import MaterializeOptions, RefreshJob
from cellforge.models.metric import (
    DimensionFilters,
    EvaluationContext,
    EvaluationResult,
    MetricRequest,
    MetricResponse,
)
from cellforge.models.time_context import (
    DetectedDateRange,
    DetectedTimeContext,
    Grain,
    PeriodWindow,
)
from cellforge.storage.datastore import DuckDBDatastore
from cellforge.timecontext.detector import detect_all_date_ranges, detect_time_context
from cellforge.timecontext.grain import grain_start, next_period_start

logger = get_logger(__name__)


def split_periods(start: date, end: date, grain: Grain) -> list[PeriodWindow]:
    """Cut [start, end) into grain-aligned windows.

    the first window starts at the period containing start, so 2024-02-10
    with a monthly grain begins at 2024-02-01.
    """
    windows = []
    current = grain_start(start, grain)
    while current < end:
        following = next_period_start(current, grain)
        windows.append(PeriodWindow(start=current, end=following, grain=grain))
        current = following
    return windows


class CellStore:
    """Main interface for CellForge.

    builds every component once and hands them to each other - nothing
    here is a module-level singleton, so two stores never share state.
    """

    def __init__(
        self,
        catalog_path: str | Path,
        warehouse_path: str | None = None,
        datastore_path: str | None = None,
        settings: Settings | None = None,
        cache: CacheClient | None = None,
        org_id: str = "default",
    ) -> None:
        """Initialize the store.

        Args:
            catalog_path: Directory containing model/metric YAML files.
            warehouse_path: DuckDB file to query models from, None for in-memory.
            datastore_path: DuckDB file for materialized rows and jobs.
            settings: Overrides the env-derived settings.
            cache: Pre-built cache client, e.g. one sharing a redis pool.
            org_id: Tenant that cache keys and jobs are scoped to.
        """
        self.settings = settings or get_settings()
        self.catalog_path = Path(catalog_path)
        self.org_id = org_id

        self.catalog = ModelCatalog()
        self.guard = StatementGuard()
        self.warehouse = DuckDBExecutor(
            warehouse_path or self.settings.warehouse_path, guard=self.guard
        )
        self.datastore = DuckDBDatastore(datastore_path or self.settings.datastore_path)
        self.cache = cache or CacheClient.from_settings(self.settings)
        self.sql_builder = MetricSQLBuilder(self.settings.sql_dialect)

        self.resolver = MetricResolver(self.catalog, self.cache, self.warehouse, self.sql_builder)
        self.metric_evaluator = MetricEvaluator(self.datastore, self.catalog)
        self.engine = MaterializationEngine(
            self.warehouse,
            self.datastore,
            self.sql_builder,
            batch_size=self.settings.insert_batch_size,
        )
        self.worker = RefreshWorker(self.datastore, self.catalog, self.engine, self.cache)
        self.formula_evaluator = FormulaEvaluator()
        self.metric_cells = MetricCellEvaluator(
            self.metric_evaluator, self.catalog, self.cache, org_id=org_id
        )

        # load and validate the catalog upfront - fail fast if there are problems
        self.catalog.load_directory(self.catalog_path)

    # formulas and sheets

    def evaluate_formula(self, formula: Any, grid: list[list[Any]] | None = None) -> Scalar:
        """Evaluate one formula, resolving references against `grid`."""
        calculator = SheetCalculator(grid or [], self.formula_evaluator)
        return self.formula_evaluator.evaluate(formula, calculator.value)

    async def calculate_sheet(
        self,
        grid: list[list[Any]],
        previous_ranges: Sequence[DetectedDateRange] | None = None,
    ) -> list[list[Scalar]]:
        """Evaluate every cell of a grid, METRIC() cells included.

        header rows are detected first so METRIC() cells know their period;
        their values are then fed to the synchronous calculator as overrides.
        """
        ranges = self.detect_date_ranges(grid, previous_ranges)
        metric_cells = await self.metric_cells.resolve_grid(grid, ranges)
        overrides = {coords: result.value for coords, result in metric_cells.items()}
        calculator = SheetCalculator(grid, self.formula_evaluator, overrides)
        return calculator.evaluate_all()

    def detect_time_context(
        self, headers: Sequence[Any], start_col: int = 1
    ) -> DetectedTimeContext | None:
        return detect_time_context(headers, start_col)

    def detect_date_ranges(
        self,
        grid: Sequence[Sequence[Any]],
        previous: Sequence[DetectedDateRange] | None = None,
    ) -> list[DetectedDateRange]:
        return detect_all_date_ranges(grid, previous)

    # metrics

    async def fetch_metric(
        self,
        name: str,
        start: str | date,
        end: str | date,
        grain: Grain | str = Grain.MONTH,
        dimensions: DimensionFilters | None = None,
        fill: str | None = None,
    ) -> MetricResponse:
        """Live path: one value for [start, end), cache first."""
        request = MetricRequest(
            name=name,
            grain=Grain(grain),
            start=self._parse_date(start),
            end=self._parse_date(end),
            dimensions=dimensions,
            fill=fill,
        )
        return await self.resolver.fetch_metric(self.org_id, request)

    async def fetch_metric_range(
        self,
        name: str,
        start: str | date,
        end: str | date,
        grain: Grain | str = Grain.MONTH,
        dimensions: DimensionFilters | None = None,
    ) -> MetricResponse:
        """Live path: one value per grain period in [start, end)."""
        grain = Grain(grain)
        windows = split_periods(self._parse_date(start), self._parse_date(end), grain)
        return await self.resolver.fetch_metric_range(
            self.org_id, name, windows, grain=grain, dimensions=dimensions
        )

    async def evaluate_metric(
        self,
        name: str,
        start: str | date,
        end: str | date,
        grain: Grain | str = Grain.MONTH,
        dimensions: DimensionFilters | None = None,
    ) -> EvaluationResult:
        """Materialized path: aggregate refreshed rows in [start, end)."""
        context = EvaluationContext(
            start_date=self._parse_date(start),
            end_date=self._parse_date(end),
            grain=Grain(grain),
            dimensions=dimensions,
        )
        return await self.metric_evaluator.evaluate_by_name(name, context)

    def get_sql(
        self,
        name: str,
        start: str | date,
        end: str | date,
        dimensions: DimensionFilters | None = None,
    ) -> str:
        """Get the live-path SQL without executing it."""
        metric = self.catalog.get_metric(name)
        model = self.catalog.get_model(metric.model_id)
        return self.sql_builder.build_metric_query(
            model, metric, self._parse_date(start), self._parse_date(end), dimensions
        )

    async def invalidate_metric(self, name: str) -> int:
        return await self.cache.invalidate_metric(self.org_id, name)

    # refresh

    async def refresh_model(
        self,
        model_id: str,
        incremental: bool = False,
        start: str | date | None = None,
        end: str | date | None = None,
    ) -> RefreshJob:
        """Run a refresh job to completion and return its final record."""
        options = self._options(incremental, start, end)
        self.catalog.get_model(model_id)
        return await self.worker.run(model_id, self.org_id, options)

    async def submit_refresh(
        self,
        model_id: str,
        incremental: bool = False,
        start: str | date | None = None,
        end: str | date | None = None,
    ) -> str:
        """Start a refresh in the background. Poll job_status with the id."""
        options = self._options(incremental, start, end)
        self.catalog.get_model(model_id)
        return await self.worker.submit(model_id, self.org_id, options)

    async def job_status(self, job_id: str) -> dict | None:
        return await self.worker.get_job_status(job_id)

    async def model_stats(self, model_id: str) -> dict[str, Any]:
        self.catalog.get_model(model_id)
        return await self.engine.get_stats(model_id)

    def _options(
        self, incremental: bool, start: str | date | None, end: str | date | None
    ) -> MaterializeOptions:
        return MaterializeOptions(
            incremental=incremental,
            start_date=self._parse_date(start) if start else None,
            end_date=self._parse_date(end) if end else None,
        )

    # catalog

    def list_metrics(self) -> list[dict]:
        """List all available metrics."""
        return [
            {
                "name": m.name,
                "model": m.model_id,
                "aggregation": m.aggregation.value,
                "measure": m.measure_column,
                "description": m.description,
            }
            for m in self.catalog.metrics.values()
        ]

    def list_models(self) -> list[dict]:
        """List all available models."""
        return [
            {
                "id": m.id,
                "name": m.name,
                "date_column": m.primary_date_column,
                "dimensions": m.dimension_columns,
                "measures": m.measure_columns,
                "description": m.description,
            }
            for m in self.catalog.models.values()
        ]

    def validate(self) -> list[str]:
        """Validate models and metrics. Returns list of errors."""
        errors = self.catalog.reference_errors()

        for model in self.catalog.models.values():
            try:
                self.guard.check(model.source_query)
            except ValidationError as e:
                errors.append(f"Model '{model.id}': {e}")

        probe = date.today().replace(day=1)
        for metric in self.catalog.metrics.values():
            try:
                # building the query fails on bad identifiers or table names
                self.get_sql(metric.name, probe, next_period_start(probe, Grain.MONTH))
            except (ValueError, KeyError) as e:
                errors.append(f"Metric '{metric.name}': {e}")

        return errors

    def _parse_date(self, value: str | date) -> date:
        """Parse ISO date string or return date object as-is."""
        if isinstance(value, date):
            return value
        return date.fromisoformat(value)

    # lifecycle

    async def start(self) -> None:
        """Start background housekeeping (the in-memory cache sweeper)."""
        self.cache.memory.start_sweeper(self.settings.cache_sweep_interval_seconds)

    async def aclose(self) -> None:
        await self.worker.wait_for_background()
        await self.cache.aclose()
        self.close()

    def close(self) -> None:
        """Close database connections."""
        self.warehouse.close()
        self.datastore.close()

    def __enter__(self) -> "CellStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def __aenter__(self) -> "CellStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
