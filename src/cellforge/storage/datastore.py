"""DuckDB-backed application datastore.

holds what the app owns, as opposed to the warehouse:
- materialized_model_data: rows copied from the warehouse per model
- model_refresh_jobs: one row per refresh job, the job state machine's record
- model_refresh_state: last successful refresh per model

dimensions and measures are stored as json text, and dates/timestamps as
ISO strings, which keeps the schema boring and round trips exact.
"""

import asyncio
import json
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

import duckdb

from cellforge.logging import get_logger
from cellforge.models.job import RefreshJob
from cellforge.models.model import MaterializedRow

logger = get_logger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS materialized_model_data (
        model_id VARCHAR NOT NULL,
        date_value VARCHAR NOT NULL,
        dimensions VARCHAR,
        measures VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS model_refresh_jobs (
        id VARCHAR PRIMARY KEY,
        org_id VARCHAR NOT NULL,
        model_id VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        incremental BOOLEAN NOT NULL,
        start_date VARCHAR,
        end_date VARCHAR,
        rows_processed BIGINT,
        error_message VARCHAR,
        created_at VARCHAR NOT NULL,
        started_at VARCHAR,
        completed_at VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS model_refresh_state (
        model_id VARCHAR PRIMARY KEY,
        last_refreshed_at VARCHAR NOT NULL
    )
    """,
]

_JOB_COLUMNS = [
    "id",
    "org_id",
    "model_id",
    "status",
    "incremental",
    "start_date",
    "end_date",
    "rows_processed",
    "error_message",
    "created_at",
    "started_at",
    "completed_at",
]


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _window(start: date | None, end: date | None) -> tuple[str, list[Any]]:
    """WHERE fragment for model_id + optional [start, end) on date_value."""
    clause = "model_id = ?"
    params: list[Any] = []
    if start is not None:
        clause += " AND date_value >= ?"
        params.append(start.isoformat())
    if end is not None:
        clause += " AND date_value < ?"
        params.append(end.isoformat())
    return clause, params


class DuckDBDatastore:
    """Async facade over a DuckDB database for rows, jobs and refresh state."""

    def __init__(self, database_path: str | None = None) -> None:
        self.database_path = database_path
        self._conn: duckdb.DuckDBPyConnection | None = None

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            self._conn = duckdb.connect(self.database_path or ":memory:")
            for statement in SCHEMA:
                self._conn.execute(statement)
        return self._conn

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        # cursor created on the loop thread, used on the worker thread
        cursor = self.conn.cursor()
        try:
            return await asyncio.to_thread(fn, cursor, *args)
        finally:
            cursor.close()

    # materialized rows

    async def fetch_rows(
        self,
        model_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> list[MaterializedRow]:
        """Rows for a model with date in [start, end), oldest first."""
        clause, params = _window(start, end)

        def run(cur: duckdb.DuckDBPyConnection) -> list[tuple]:
            return cur.execute(
                "SELECT model_id, date_value, dimensions, measures "
                f"FROM materialized_model_data WHERE {clause} ORDER BY date_value",
                [model_id, *params],
            ).fetchall()

        rows = await self._call(run)
        return [
            MaterializedRow(
                model_id=row[0],
                date_value=row[1],
                dimensions=json.loads(row[2]) if row[2] else None,
                measures=json.loads(row[3]),
            )
            for row in rows
        ]

    async def delete_rows(
        self,
        model_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> int:
        """Delete a model's rows, all of them or just [start, end). Returns count."""
        clause, params = _window(start, end)

        def run(cur: duckdb.DuckDBPyConnection) -> int:
            count = cur.execute(
                f"SELECT COUNT(*) FROM materialized_model_data WHERE {clause}",
                [model_id, *params],
            ).fetchone()[0]
            cur.execute(
                f"DELETE FROM materialized_model_data WHERE {clause}",
                [model_id, *params],
            )
            return count

        return await self._call(run)

    async def insert_rows(self, rows: list[MaterializedRow]) -> int:
        if not rows:
            return 0
        payload = [
            (
                row.model_id,
                row.date_value,
                json.dumps(row.dimensions, default=str) if row.dimensions is not None else None,
                json.dumps(row.measures, default=str),
            )
            for row in rows
        ]

        def run(cur: duckdb.DuckDBPyConnection) -> int:
            cur.executemany(
                "INSERT INTO materialized_model_data VALUES (?, ?, ?, ?)",
                payload,
            )
            return len(payload)

        return await self._call(run)

    async def row_stats(self, model_id: str) -> dict[str, Any]:
        def run(cur: duckdb.DuckDBPyConnection) -> tuple:
            return cur.execute(
                "SELECT COUNT(*), MIN(date_value), MAX(date_value) "
                "FROM materialized_model_data WHERE model_id = ?",
                [model_id],
            ).fetchone()

        count, min_date, max_date = await self._call(run)
        return {"row_count": count, "min_date": min_date, "max_date": max_date}

    async def distinct_dimension_values(self, model_id: str, column: str) -> list[Any]:
        """Distinct values of one dimension, sorted, nulls dropped."""
        key = column.lower()
        values = {
            row.dimensions[key]
            for row in await self.fetch_rows(model_id)
            if row.dimensions and row.dimensions.get(key) is not None
        }
        return sorted(values, key=str)

    # refresh jobs

    async def insert_job(self, job: RefreshJob) -> None:
        values = self._job_values(job)

        def run(cur: duckdb.DuckDBPyConnection) -> None:
            placeholders = ", ".join(["?"] * len(_JOB_COLUMNS))
            cur.execute(
                f"INSERT INTO model_refresh_jobs ({', '.join(_JOB_COLUMNS)}) "
                f"VALUES ({placeholders})",
                values,
            )

        await self._call(run)

    async def update_job(self, job: RefreshJob) -> None:
        values = self._job_values(job)
        assignments = ", ".join(f"{col} = ?" for col in _JOB_COLUMNS[1:])

        def run(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(
                f"UPDATE model_refresh_jobs SET {assignments} WHERE id = ?",
                [*values[1:], values[0]],
            )

        await self._call(run)

    async def get_job(self, job_id: str) -> RefreshJob | None:
        def run(cur: duckdb.DuckDBPyConnection) -> tuple | None:
            return cur.execute(
                f"SELECT {', '.join(_JOB_COLUMNS)} FROM model_refresh_jobs WHERE id = ?",
                [job_id],
            ).fetchone()

        row = await self._call(run)
        if row is None:
            return None
        # pydantic parses the iso strings back into dates/datetimes
        return RefreshJob.model_validate(dict(zip(_JOB_COLUMNS, row)))

    async def list_jobs(self, model_id: str | None = None) -> list[RefreshJob]:
        def run(cur: duckdb.DuckDBPyConnection) -> list[tuple]:
            sql = f"SELECT {', '.join(_JOB_COLUMNS)} FROM model_refresh_jobs"
            if model_id is not None:
                return cur.execute(
                    sql + " WHERE model_id = ? ORDER BY created_at", [model_id]
                ).fetchall()
            return cur.execute(sql + " ORDER BY created_at").fetchall()

        rows = await self._call(run)
        return [RefreshJob.model_validate(dict(zip(_JOB_COLUMNS, row))) for row in rows]

    def _job_values(self, job: RefreshJob) -> list[Any]:
        return [
            job.id,
            job.org_id,
            job.model_id,
            job.status.value,
            job.incremental,
            _iso(job.start_date),
            _iso(job.end_date),
            job.rows_processed,
            job.error_message,
            _iso(job.created_at),
            _iso(job.started_at),
            _iso(job.completed_at),
        ]

    # refresh state

    async def mark_refreshed(self, model_id: str, at: datetime) -> None:
        def run(cur: duckdb.DuckDBPyConnection) -> None:
            cur.execute(
                "INSERT OR REPLACE INTO model_refresh_state VALUES (?, ?)",
                [model_id, at.isoformat()],
            )

        await self._call(run)

    async def last_refreshed(self, model_id: str) -> datetime | None:
        def run(cur: duckdb.DuckDBPyConnection) -> tuple | None:
            return cur.execute(
                "SELECT last_refreshed_at FROM model_refresh_state WHERE model_id = ?",
                [model_id],
            ).fetchone()

        row = await self._call(run)
        return datetime.fromisoformat(row[0]) if row else None

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
