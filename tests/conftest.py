"""Pytest fixtures for CellForge tests."""

from collections.abc import Generator
from pathlib import Path

import pytest

from cellforge.cache.client import CacheClient
from cellforge.catalog.loader import ModelCatalog
from cellforge.compiler.sql_builder import MetricSQLBuilder
from cellforge.config import Settings
from cellforge.executor.duckdb_executor import DuckDBExecutor
from cellforge.storage.datastore import DuckDBDatastore
from cellforge.store import CellStore

ORDERS_DDL = """
    CREATE TABLE orders (
        order_id INTEGER,
        customer_id INTEGER,
        amount DECIMAL(10, 2),
        status VARCHAR,
        country VARCHAR,
        order_date DATE
    )
"""


@pytest.fixture
def sample_catalog_yaml() -> str:
    """Sample model and metric YAML content for testing."""
    return """
models:
  - id: orders
    name: Orders
    description: "Test order model"
    source_query: |
      SELECT order_id, customer_id, amount, status, country, order_date
      FROM orders
    source_table: orders
    primary_date_column: order_date
    dimension_columns: [status, country]
    measure_columns: [amount, order_id, customer_id]

metrics:
  - name: revenue
    model_id: orders
    measure_column: amount
    aggregation: sum
    description: "Completed order revenue"
    filters:
      - column: status
        operator: eq
        value: completed

  - name: order_count
    model_id: orders
    measure_column: order_id
    aggregation: count

  - name: average_order_value
    model_id: orders
    measure_column: amount
    aggregation: avg

  - name: customer_count
    model_id: orders
    measure_column: customer_id
    aggregation: count_distinct

  - name: largest_order
    model_id: orders
    measure_column: amount
    aggregation: max
    filters:
      - column: status
        operator: in
        value: [completed, pending]
"""


@pytest.fixture
def catalog_dir(tmp_path: Path, sample_catalog_yaml: str) -> Path:
    """Create a temporary catalog directory with sample YAML."""
    path = tmp_path / "catalog"
    path.mkdir()
    (path / "orders.yaml").write_text(sample_catalog_yaml)
    return path


@pytest.fixture
def sample_orders_data() -> list[tuple]:
    """Sample orders data for testing.

    completed revenue: jan 325, feb 550, mar 400.
    """
    return [
        (1, 101, 100.00, "completed", "US", "2024-01-15"),
        (2, 102, 150.00, "completed", "UK", "2024-01-16"),
        (3, 101, 200.00, "pending", "US", "2024-01-17"),
        (4, 103, 75.00, "completed", "US", "2024-01-18"),
        (5, 104, 300.00, "cancelled", "DE", "2024-01-19"),
        (6, 105, 125.00, "completed", "US", "2024-02-01"),
        (7, 102, 175.00, "completed", "UK", "2024-02-15"),
        (8, 106, 250.00, "completed", "US", "2024-02-20"),
        (9, 107, 50.00, "pending", "FR", "2024-03-01"),
        (10, 108, 400.00, "completed", "US", "2024-03-15"),
    ]


def load_orders(executor: DuckDBExecutor, rows: list[tuple]) -> None:
    executor.conn.execute(ORDERS_DDL)
    executor.conn.executemany("INSERT INTO orders VALUES (?, ?, ?, ?, ?, ?)", rows)


@pytest.fixture
def warehouse(sample_orders_data: list[tuple]) -> Generator[DuckDBExecutor, None, None]:
    """In-memory warehouse with the orders table loaded."""
    executor = DuckDBExecutor()
    load_orders(executor, sample_orders_data)
    yield executor
    executor.close()


@pytest.fixture
def datastore() -> Generator[DuckDBDatastore, None, None]:
    store = DuckDBDatastore()
    yield store
    store.close()


@pytest.fixture
def catalog(catalog_dir: Path) -> ModelCatalog:
    """Create a loaded ModelCatalog."""
    cat = ModelCatalog()
    cat.load_directory(catalog_dir)
    return cat


@pytest.fixture
def cache() -> CacheClient:
    """Memory-only cache client."""
    return CacheClient()


@pytest.fixture
def sql_builder() -> MetricSQLBuilder:
    return MetricSQLBuilder()


@pytest.fixture
def settings() -> Settings:
    return Settings(redis_url=None, warehouse_path=None, datastore_path=None)


@pytest.fixture
def store(
    catalog_dir: Path, sample_orders_data: list[tuple], settings: Settings
) -> Generator[CellStore, None, None]:
    """Create a CellStore with orders loaded into its warehouse."""
    cell_store = CellStore(catalog_dir, settings=settings)
    load_orders(cell_store.warehouse, sample_orders_data)
    yield cell_store
    cell_store.close()


@pytest.fixture
def warehouse_file(tmp_path: Path, sample_orders_data: list[tuple]) -> str:
    """A DuckDB file with the orders table, for code that opens its own connection."""
    path = str(tmp_path / "warehouse.duckdb")
    with DuckDBExecutor(path) as executor:
        load_orders(executor, sample_orders_data)
    return path
