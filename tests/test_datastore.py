"""Tests for the DuckDB application datastore."""

from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from cellforge.models.job import JobStatus, RefreshJob
from cellforge.models.model import MaterializedRow
from cellforge.storage.datastore import DuckDBDatastore


def make_row(day: str, region: str = "US", amount: float = 10.0, model_id: str = "sales"):
    return MaterializedRow(
        model_id=model_id,
        date_value=day,
        dimensions={"Region": region},
        measures={"amount": amount},
    )


class TestMaterializedRows:
    @pytest.mark.asyncio
    async def test_insert_and_fetch(self, datastore: DuckDBDatastore):
        """Rows come back oldest first with their json columns decoded."""
        inserted = await datastore.insert_rows(
            [make_row("2024-01-20"), make_row("2024-01-05", region="EU", amount=2.5)]
        )
        assert inserted == 2

        rows = await datastore.fetch_rows("sales")
        assert [r.date_value for r in rows] == ["2024-01-05", "2024-01-20"]
        assert rows[0].dimensions == {"region": "EU"}
        assert rows[0].measures == {"amount": 2.5}

    @pytest.mark.asyncio
    async def test_fetch_window_is_half_open(self, datastore: DuckDBDatastore):
        """start is inclusive, end exclusive."""
        await datastore.insert_rows(
            [make_row("2024-01-31"), make_row("2024-02-01"), make_row("2024-02-29")]
        )
        rows = await datastore.fetch_rows("sales", date(2024, 2, 1), date(2024, 3, 1))
        assert [r.date_value for r in rows] == ["2024-02-01", "2024-02-29"]

    @pytest.mark.asyncio
    async def test_models_are_isolated(self, datastore: DuckDBDatastore):
        """Each model only sees its own rows."""
        await datastore.insert_rows([make_row("2024-01-01"), make_row("2024-01-01", model_id="x")])
        assert len(await datastore.fetch_rows("sales")) == 1
        assert await datastore.delete_rows("x") == 1
        assert len(await datastore.fetch_rows("sales")) == 1

    @pytest.mark.asyncio
    async def test_delete_window(self, datastore: DuckDBDatastore):
        """Deleting a window leaves the rest alone."""
        await datastore.insert_rows(
            [make_row("2024-01-15"), make_row("2024-02-15"), make_row("2024-03-15")]
        )
        deleted = await datastore.delete_rows("sales", start=date(2024, 2, 1))
        assert deleted == 2
        assert [r.date_value for r in await datastore.fetch_rows("sales")] == ["2024-01-15"]

    @pytest.mark.asyncio
    async def test_insert_nothing(self, datastore: DuckDBDatastore):
        """An empty batch is a no-op."""
        assert await datastore.insert_rows([]) == 0

    @pytest.mark.asyncio
    async def test_row_stats(self, datastore: DuckDBDatastore):
        """Count and date range per model."""
        assert (await datastore.row_stats("sales"))["row_count"] == 0

        await datastore.insert_rows([make_row("2024-03-01"), make_row("2024-01-01")])
        stats = await datastore.row_stats("sales")
        assert stats == {"row_count": 2, "min_date": "2024-01-01", "max_date": "2024-03-01"}

    @pytest.mark.asyncio
    async def test_distinct_dimension_values(self, datastore: DuckDBDatastore):
        """Distinct values, sorted, case-insensitive column name."""
        await datastore.insert_rows(
            [
                make_row("2024-01-01", "US"),
                make_row("2024-01-02", "EU"),
                make_row("2024-01-03", "US"),
            ]
        )
        assert await datastore.distinct_dimension_values("sales", "REGION") == ["EU", "US"]
        assert await datastore.distinct_dimension_values("sales", "channel") == []


class TestRefreshJobs:
    @pytest.mark.asyncio
    async def test_job_round_trip(self, datastore: DuckDBDatastore):
        """Jobs persist with dates and timestamps intact."""
        job = RefreshJob(
            id="j1",
            org_id="acme",
            model_id="sales",
            incremental=True,
            start_date=date(2024, 1, 1),
        )
        await datastore.insert_job(job)

        loaded = await datastore.get_job("j1")
        assert loaded == job
        assert await datastore.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_update_job(self, datastore: DuckDBDatastore):
        """Updates overwrite status and results."""
        job = RefreshJob(id="j1", org_id="acme", model_id="sales")
        await datastore.insert_job(job)

        running = job.transition(JobStatus.RUNNING)
        done = running.transition(JobStatus.SUCCESS).model_copy(update={"rows_processed": 42})
        await datastore.update_job(done)

        loaded = await datastore.get_job("j1")
        assert loaded.status == JobStatus.SUCCESS
        assert loaded.rows_processed == 42
        assert loaded.started_at == running.started_at

    @pytest.mark.asyncio
    async def test_list_jobs(self, datastore: DuckDBDatastore):
        """Jobs list in creation order, optionally per model."""
        for i, model_id in enumerate(["a", "b", "a"]):
            created = datetime(2024, 1, 1, i, tzinfo=timezone.utc)
            await datastore.insert_job(
                RefreshJob(id=f"j{i}", org_id="o", model_id=model_id, created_at=created)
            )
        assert [j.id for j in await datastore.list_jobs()] == ["j0", "j1", "j2"]
        assert [j.id for j in await datastore.list_jobs("a")] == ["j0", "j2"]


class TestRefreshState:
    @pytest.mark.asyncio
    async def test_mark_refreshed(self, datastore: DuckDBDatastore):
        """The last refresh time is kept per model, latest wins."""
        assert await datastore.last_refreshed("sales") is None

        first = datetime(2024, 1, 1, tzinfo=timezone.utc)
        second = datetime(2024, 1, 2, tzinfo=timezone.utc)
        await datastore.mark_refreshed("sales", first)
        await datastore.mark_refreshed("sales", second)
        assert await datastore.last_refreshed("sales") == second

    @pytest.mark.asyncio
    async def test_file_backed(self, tmp_path: Path):
        """A file datastore survives reopening."""
        path = str(tmp_path / "app.duckdb")
        store = DuckDBDatastore(path)
        await store.insert_rows([make_row("2024-01-01")])
        store.close()

        reopened = DuckDBDatastore(path)
        assert len(await reopened.fetch_rows("sales")) == 1
        reopened.close()
