"""Tests for the DuckDB warehouse executor."""

import asyncio
from pathlib import Path

import pytest

from cellforge.errors import ValidationError
from cellforge.executor.duckdb_executor import DuckDBExecutor


class TestDuckDBExecutor:
    def test_create_in_memory(self):
        """Can create in-memory executor."""
        executor = DuckDBExecutor()
        assert executor.database_path is None
        result = executor.execute("SELECT 1 AS value")
        assert result.data[0]["value"] == 1
        executor.close()

    def test_create_with_file(self, tmp_path: Path):
        """Can create file-based executor."""
        db_path = str(tmp_path / "test.duckdb")
        executor = DuckDBExecutor(db_path)
        executor.execute("CREATE TABLE test (id INTEGER)")
        executor.close()

        executor2 = DuckDBExecutor(db_path)
        assert executor2.table_exists("test")
        executor2.close()

    def test_execute_returns_query_result(self):
        """Execute returns QueryResult with correct fields."""
        executor = DuckDBExecutor()
        result = executor.execute("SELECT 1 AS a, 'hello' AS b")

        assert result.columns == ["a", "b"]
        assert result.data == [{"a": 1, "b": "hello"}]
        assert result.row_count == 1
        assert result.execution_time_ms >= 0
        assert result.scalar() == 1
        executor.close()

    def test_statement_without_rows(self):
        """DDL comes back as an empty result."""
        with DuckDBExecutor() as executor:
            result = executor.execute("CREATE TABLE t (id INTEGER)")
            assert result.columns == []
            assert result.row_count == 0

    def test_execute_raw(self):
        """Execute raw returns tuples."""
        with DuckDBExecutor() as executor:
            assert executor.execute_raw("SELECT 1, 2, 3") == [(1, 2, 3)]

    def test_load_csv(self, tmp_path: Path):
        """Can load CSV file into table."""
        csv_path = tmp_path / "test.csv"
        csv_path.write_text("id,name\n1,Alice\n2,Bob\n")

        with DuckDBExecutor() as executor:
            executor.load_csv("people", csv_path)
            executor.load_csv("people", csv_path)  # reload replaces
            result = executor.execute("SELECT COUNT(*) AS count FROM people")
            assert result.data[0]["count"] == 2

    def test_create_table_from_data(self):
        """Small seeds can be loaded from tuples."""
        with DuckDBExecutor() as executor:
            executor.create_table_from_data(
                "seed", ["id INTEGER", "name VARCHAR"], [(1, "a"), (2, "b")]
            )
            assert executor.execute("SELECT COUNT(*) FROM seed").scalar() == 2
            with pytest.raises(ValueError, match="empty"):
                executor.create_table_from_data("nothing", ["id INTEGER"], [])

    def test_table_exists(self):
        """Can check if table exists."""
        with DuckDBExecutor() as executor:
            assert not executor.table_exists("nonexistent")
            executor.execute("CREATE TABLE test_table (id INTEGER)")
            assert executor.table_exists("test_table")

    def test_get_table_schema(self):
        """Can get table schema."""
        with DuckDBExecutor() as executor:
            executor.execute(
                """
                CREATE TABLE test_table (
                    id INTEGER,
                    name VARCHAR,
                    amount DECIMAL(10, 2)
                )
            """
            )
            columns = [col[0] for col in executor.get_table_schema("test_table")]
            assert columns == ["id", "name", "amount"]


class TestDuckDBExecutorWithData:
    def test_execute_with_filter(self, warehouse: DuckDBExecutor):
        """Can execute queries with filters."""
        result = warehouse.execute(
            "SELECT COUNT(*) AS count FROM orders WHERE status = 'completed'"
        )
        assert result.data[0]["count"] == 7

    def test_execute_aggregation_sum(self, warehouse: DuckDBExecutor):
        """Can execute SUM aggregation."""
        result = warehouse.execute(
            "SELECT SUM(amount) AS total FROM orders WHERE status = 'completed'"
        )
        # 100 + 150 + 75 + 125 + 175 + 250 + 400
        assert result.data[0]["total"] == 1275

    def test_execute_with_params(self, warehouse: DuckDBExecutor):
        """Positional parameters are bound."""
        result = warehouse.execute("SELECT COUNT(*) FROM orders WHERE country = ?", ["US"])
        assert result.scalar() == 6


class TestGuardedQuery:
    @pytest.mark.asyncio
    async def test_query(self, warehouse: DuckDBExecutor):
        """Guarded async queries return the same shape as execute()."""
        result = await warehouse.query(
            "SELECT country, COUNT(*) AS n FROM orders GROUP BY country ORDER BY n DESC"
        )
        assert result.columns == ["country", "n"]
        assert result.data[0] == {"country": "US", "n": 6}

    @pytest.mark.asyncio
    async def test_query_rejects_writes(self, warehouse: DuckDBExecutor):
        """Writes never reach the warehouse through query()."""
        with pytest.raises(ValidationError):
            await warehouse.query("DELETE FROM orders")
        assert warehouse.execute("SELECT COUNT(*) FROM orders").scalar() == 10

    @pytest.mark.asyncio
    async def test_concurrent_queries(self, warehouse: DuckDBExecutor):
        """Concurrent queries each get their own cursor."""
        queries = [f"SELECT COUNT(*) FROM orders WHERE order_id > {i}" for i in range(5)]
        results = await asyncio.gather(*(warehouse.query(sql) for sql in queries))
        assert [r.scalar() for r in results] == [10, 9, 8, 7, 6]
