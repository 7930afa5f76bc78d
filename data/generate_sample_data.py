"""Generate a sample warehouse for CellForge demos.

writes a DuckDB file with an orders and a sessions table matching
examples/catalog. run it once, then point --warehouse at the file.
"""

import random
from datetime import date, timedelta
from pathlib import Path

import duckdb

START = date(2024, 1, 1)
END = date(2024, 12, 31)


def generate_warehouse(db_path: str | Path = "data/warehouse.duckdb") -> duckdb.DuckDBPyConnection:
    """Create (or replace) the sample tables in a DuckDB file.

    Args:
        db_path: DuckDB file to write, ":memory:" for a throwaway database.

    Returns:
        Open connection to the database.
    """
    random.seed(42)  # reproducible data

    conn = duckdb.connect(str(db_path))

    conn.execute("""
        CREATE OR REPLACE TABLE orders (
            order_id INTEGER PRIMARY KEY,
            customer_id INTEGER,
            amount DECIMAL(10, 2),
            quantity INTEGER,
            status VARCHAR,
            country VARCHAR,
            category VARCHAR,
            order_date DATE
        )
    """)
    conn.executemany(
        "INSERT INTO orders VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        generate_orders(1000),
    )

    conn.execute("""
        CREATE OR REPLACE TABLE sessions (
            session_id INTEGER PRIMARY KEY,
            user_id INTEGER,
            page_views INTEGER,
            traffic_source VARCHAR,
            device_type VARCHAR,
            session_date DATE
        )
    """)
    conn.executemany(
        "INSERT INTO sessions VALUES (?, ?, ?, ?, ?, ?)",
        generate_sessions(5000),
    )

    return conn


def _random_day() -> date:
    return START + timedelta(days=random.randint(0, (END - START).days))


def generate_orders(count: int) -> list[tuple]:
    """Generate order records."""
    statuses = ["completed", "completed", "completed", "completed", "pending", "cancelled"]
    countries = ["US", "US", "US", "UK", "UK", "DE", "FR", "CA", "AU"]
    categories = ["Electronics", "Clothing", "Home", "Books", "Sports", "Beauty"]

    return [
        (
            i,  # order_id
            random.randint(1, 200),  # customer_id
            round(random.uniform(10, 500), 2),
            random.randint(1, 5),
            random.choice(statuses),
            random.choice(countries),
            random.choice(categories),
            _random_day(),
        )
        for i in range(1, count + 1)
    ]


def generate_sessions(count: int) -> list[tuple]:
    """Generate session records. A few are internal traffic the model filters out."""
    traffic_sources = ["organic", "organic", "paid", "social", "direct", "email", "internal"]
    device_types = ["desktop", "desktop", "mobile", "mobile_app", "tablet"]

    return [
        (
            i,  # session_id
            random.randint(1, 500),  # user_id
            random.randint(1, 20),  # page_views
            random.choice(traffic_sources),
            random.choice(device_types),
            _random_day(),
        )
        for i in range(1, count + 1)
    ]


if __name__ == "__main__":
    import sys

    db_path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path(__file__).parent / "warehouse.duckdb"
    conn = generate_warehouse(db_path)

    orders = conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0]
    sessions = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
    revenue = conn.execute(
        "SELECT SUM(amount) FROM orders WHERE status = 'completed'"
    ).fetchone()[0]
    print(f"Warehouse written to {db_path}")
    print(f"  - {orders} orders")
    print(f"  - {sessions} sessions")
    print(f"  - ${revenue:,.2f} completed revenue")

    conn.close()
