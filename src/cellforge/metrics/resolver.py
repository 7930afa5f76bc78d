"""Live metric resolution: cache first, warehouse on a miss."""

import asyncio
import time

from cellforge.cache.client import CacheClient
from cellforge.catalog.loader import ModelCatalog
from cellforge.coerce import to_number
from cellforge.compiler.sql_builder import MetricSQLBuilder
from cellforge.executor.duckdb_executor import DuckDBExecutor
from cellforge.logging import get_logger
from cellforge.models.metric import DataPoint, MetricRequest, MetricResponse
from cellforge.models.time_context import Grain, PeriodWindow
from cellforge.timecontext.grain import format_date_for_grain

logger = get_logger(__name__)


class MetricResolver:
    """Resolves a metric for one or many periods against the warehouse.

    the cache key covers metric, grain, window and dimensions, so two cells
    asking the same question share one warehouse round trip per TTL.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        cache: CacheClient,
        warehouse: DuckDBExecutor,
        sql_builder: MetricSQLBuilder,
    ) -> None:
        self.catalog = catalog
        self.cache = cache
        self.warehouse = warehouse
        self.sql_builder = sql_builder

    async def fetch_metric(self, org_id: str, request: MetricRequest) -> MetricResponse:
        start_time = time.perf_counter()

        # raises MetricNotFoundError before we touch the cache
        metric = self.catalog.get_metric(request.name)

        cached = await self.cache.get_metric(
            org_id, request.name, request.grain, request.start, request.end, request.dimensions
        )
        if cached is not None:
            return self._response(request, cached, cached=True, start_time=start_time)

        model = self.catalog.get_model(metric.model_id)
        sql = self.sql_builder.build_metric_query(
            model, metric, request.start, request.end, request.dimensions
        )
        result = await self.warehouse.query(sql)
        value = self._fill(result.scalar(), request)

        await self.cache.set_metric(
            org_id,
            request.name,
            request.grain,
            request.start,
            request.end,
            value,
            request.dimensions,
        )
        logger.debug(
            "metric_fetched",
            metric=request.name,
            start=str(request.start),
            end=str(request.end),
            ms=result.execution_time_ms,
        )
        return self._response(request, value, cached=False, start_time=start_time)

    async def fetch_metric_range(
        self,
        org_id: str,
        name: str,
        windows: list[PeriodWindow],
        grain: Grain | None = None,
        dimensions: dict | None = None,
    ) -> MetricResponse:
        """One fetch per window, run concurrently, returned in window order.

        cached is true only when every window was a cache hit.
        """
        start_time = time.perf_counter()
        grain = grain or (windows[0].grain if windows else Grain.MONTH)

        requests = [
            MetricRequest(name=name, grain=grain, start=w.start, end=w.end, dimensions=dimensions)
            for w in windows
        ]
        # gather keeps argument order regardless of completion order
        responses = await asyncio.gather(*(self.fetch_metric(org_id, r) for r in requests))

        return MetricResponse(
            metric=name,
            grain=grain,
            data=[point for response in responses for point in response.data],
            cached=bool(responses) and all(r.cached for r in responses),
            query_time_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )

    def _fill(self, raw: object, request: MetricRequest) -> float:
        value = to_number(raw)
        if value is not None:
            return value
        # zero, null and forward all produce 0 today; the last two have no
        # distinct semantics yet
        if request.fill in ("null", "forward"):
            logger.debug("fill_policy_defaulted", metric=request.name, fill=request.fill)
        return 0.0

    def _response(
        self, request: MetricRequest, value: float, cached: bool, start_time: float
    ) -> MetricResponse:
        return MetricResponse(
            metric=request.name,
            grain=request.grain,
            data=[
                DataPoint(
                    period=format_date_for_grain(request.start, request.grain),
                    value=value,
                    dimensions=request.dimensions,
                )
            ],
            cached=cached,
            query_time_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
