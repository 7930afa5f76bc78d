"""Refresh jobs: record, run and report materialization runs.

a job is created pending, moved to running when picked up, and ends in
success or error. process_job never raises - whatever goes wrong ends up in
the job's error_message, which is what callers poll.
"""

import asyncio
import uuid

from cellforge.cache.client import CacheClient
from cellforge.catalog.loader import ModelCatalog
from cellforge.logging import get_logger
from cellforge.materialize.engine import MaterializationEngine
from cellforge.models.job import JobStatus, MaterializeOptions, RefreshJob, utcnow
from cellforge.storage.datastore import DuckDBDatastore

logger = get_logger(__name__)


def error_message(e: BaseException) -> str:
    # TimeoutError() and friends stringify to ""
    return str(e) or type(e).__name__


class RefreshWorker:
    def __init__(
        self,
        datastore: DuckDBDatastore,
        catalog: ModelCatalog,
        engine: MaterializationEngine,
        cache: CacheClient | None = None,
    ) -> None:
        self.datastore = datastore
        self.catalog = catalog
        self.engine = engine
        # cached metric values of a refreshed model are dropped on success
        self.cache = cache
        # strong refs, the loop only keeps weak ones to tasks
        self._background: set[asyncio.Task] = set()

    async def create_job(
        self,
        model_id: str,
        org_id: str = "default",
        options: MaterializeOptions | None = None,
    ) -> str:
        """Record a pending job and return its id."""
        options = options or MaterializeOptions()
        job = RefreshJob(
            id=str(uuid.uuid4()),
            org_id=org_id,
            model_id=model_id,
            incremental=options.incremental,
            start_date=options.start_date,
            end_date=options.end_date,
        )
        await self.datastore.insert_job(job)
        logger.info("refresh_job_created", job_id=job.id, model_id=model_id)
        return job.id

    async def process_job(self, job_id: str) -> None:
        try:
            await self._process(job_id)
        except Exception as e:
            # the job row itself couldn't be written, so the log is all there is
            logger.exception("refresh_job_crashed", job_id=job_id, error=error_message(e))

    async def _process(self, job_id: str) -> None:
        job = await self.datastore.get_job(job_id)
        if job is None:
            logger.warning("refresh_job_missing", job_id=job_id)
            return
        if job.status != JobStatus.PENDING:
            logger.warning("refresh_job_not_pending", job_id=job_id, status=job.status.value)
            return

        job = job.transition(JobStatus.RUNNING)
        await self.datastore.update_job(job)

        try:
            model = self.catalog.get_model(job.model_id)
            result = await self.engine.materialize(model, job.options)
            success = job.transition(JobStatus.SUCCESS).model_copy(
                update={"rows_processed": result.rows_processed}
            )
            await self.datastore.mark_refreshed(job.model_id, success.completed_at or utcnow())
            await self.datastore.update_job(success)
        except Exception as e:
            message = error_message(e)
            job = job.transition(JobStatus.ERROR).model_copy(update={"error_message": message})
            await self.datastore.update_job(job)
            logger.error("refresh_job_failed", job_id=job_id, model_id=job.model_id, error=message)
            return

        await self.invalidate_model(job.org_id, job.model_id)
        logger.info(
            "refresh_job_completed",
            job_id=job_id,
            model_id=job.model_id,
            rows=result.rows_processed,
        )

    async def invalidate_model(self, org_id: str, model_id: str) -> None:
        """Drop cached values of every metric on a model."""
        if self.cache is None:
            return
        for metric in self.catalog.metrics_for_model(model_id):
            await self.cache.invalidate_metric(org_id, metric.name)

    async def get_job_status(self, job_id: str) -> dict | None:
        job = await self.datastore.get_job(job_id)
        return job.status_view() if job else None

    async def run(
        self,
        model_id: str,
        org_id: str = "default",
        options: MaterializeOptions | None = None,
    ) -> RefreshJob:
        """Create and process a job inline, returning its final record."""
        job_id = await self.create_job(model_id, org_id, options)
        await self.process_job(job_id)
        return await self.datastore.get_job(job_id)

    async def submit(
        self,
        model_id: str,
        org_id: str = "default",
        options: MaterializeOptions | None = None,
    ) -> str:
        """Create a job and process it in the background. Returns the job id."""
        job_id = await self.create_job(model_id, org_id, options)
        task = asyncio.create_task(self.process_job(job_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return job_id

    async def wait_for_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background)
