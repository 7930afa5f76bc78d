"""DuckDB warehouse executor.

stands in for the real warehouse: embedded, speaks sql, and the in-memory
mode makes tests trivial. everything user-driven goes through query(),
which runs the read-only guard first and keeps duckdb's blocking calls off
the event loop.
"""

import asyncio
import time
from pathlib import Path
from typing import Any

import duckdb

from cellforge.compiler.guard import StatementGuard
from cellforge.logging import get_logger
from cellforge.models.query import QueryResult

logger = get_logger(__name__)


class DuckDBExecutor:
    """Execute statements against a DuckDB database.

    execute()/execute_raw() are the trusted, synchronous path used for setup
    (loading tables, tests). query() is the guarded async path for generated
    and user-editable sql.
    """

    def __init__(
        self,
        database_path: str | None = None,
        guard: StatementGuard | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            database_path: Path to DuckDB file, or None for in-memory.
            guard: Read-only statement guard applied by query().
        """
        self.database_path = database_path
        self.guard = guard or StatementGuard()
        self._conn: duckdb.DuckDBPyConnection | None = None  # lazy init

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection.

        lazy so we don't open a db until we actually need it.
        """
        if self._conn is None:
            self._conn = duckdb.connect(self.database_path or ":memory:")
        return self._conn

    def execute(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        """Execute SQL and return structured results."""
        return self._run(self.conn, sql, params)

    async def query(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        """Guarded, non-blocking execution.

        each call gets its own cursor - duckdb connections aren't safe to
        share across threads, cursors are.
        """
        self.guard.check(sql)
        cursor = self.conn.cursor()
        try:
            return await asyncio.to_thread(self._run, cursor, sql, params)
        finally:
            cursor.close()

    def _run(
        self,
        conn: duckdb.DuckDBPyConnection,
        sql: str,
        params: list[Any] | None,
    ) -> QueryResult:
        start = time.perf_counter()

        result = conn.execute(sql, params) if params else conn.execute(sql)
        # description is None for statements that return nothing
        columns = [desc[0] for desc in result.description or []]
        rows = result.fetchall() if columns else []

        elapsed_ms = (time.perf_counter() - start) * 1000
        data = [dict(zip(columns, row)) for row in rows]

        logger.debug("query_executed", rows=len(data), ms=round(elapsed_ms, 2))
        return QueryResult(
            sql=sql,
            columns=columns,
            data=data,
            row_count=len(data),
            execution_time_ms=round(elapsed_ms, 2),
        )

    def execute_raw(self, sql: str) -> list[tuple[Any, ...]]:
        """Execute SQL and return raw tuples."""
        return self.conn.execute(sql).fetchall()

    def load_csv(self, table_name: str, path: str | Path) -> None:
        """Load a CSV file as a table. read_csv_auto sniffs delimiters and types."""
        self.conn.execute(
            f"CREATE OR REPLACE TABLE {table_name} AS SELECT * FROM read_csv_auto(?)",
            [str(path)],
        )

    def create_table_from_data(
        self, table_name: str, columns: list[str], data: list[tuple[Any, ...]]
    ) -> None:
        """Create a table from in-memory rows. Handy for tests and small seeds."""
        if not data:
            raise ValueError("Cannot create table from empty data")

        placeholders = ", ".join(["?"] * len(columns))
        col_defs = ", ".join(columns)

        self.conn.execute(f"CREATE OR REPLACE TABLE {table_name} ({col_defs})")
        self.conn.executemany(
            f"INSERT INTO {table_name} VALUES ({placeholders})",
            data,
        )

    def table_exists(self, table_name: str) -> bool:
        result = self.conn.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?",
            [table_name],
        )
        return result.fetchone()[0] > 0

    def get_table_schema(self, table_name: str) -> list[tuple[str, str]]:
        """Get column names and types for a table."""
        result = self.conn.execute(f"DESCRIBE {table_name}")
        return [(row[0], row[1]) for row in result.fetchall()]

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "DuckDBExecutor":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
