"""Basic usage example for CellForge.

builds the sample warehouse, refreshes both models, then walks
through the live metric path, the materialized path and a small sheet with
METRIC() cells.
"""

import asyncio
import sys
from pathlib import Path

# Add parent to path for development
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT / "src"))
sys.path.insert(0, str(ROOT / "data"))

from generate_sample_data import generate_warehouse  # noqa: E402

from cellforge.logging import configure_logging  # noqa: E402
from cellforge.store import CellStore  # noqa: E402

SHEET = [
    ["", "Q1 2024", "Q2 2024", "Q3 2024", "Q4 2024", "Total"],
    ["Revenue"] + ['=METRIC("revenue")'] * 4 + ["=SUM(B2:E2)"],
    ["Orders"] + ['=METRIC("completed_orders")'] * 4 + ["=SUM(B3:E3)"],
    ["AOV"] + [f"={col}2/{col}3" for col in "BCDE"] + ["=F2/F3"],
    ["US revenue"] + ['=METRIC("revenue", {"country": "US"})'] * 4 + ["=SUM(B5:E5)"],
]


async def main():
    """Demonstrate CellForge capabilities."""
    configure_logging()

    warehouse_path = ROOT / "data" / "warehouse.duckdb"
    generate_warehouse(warehouse_path).close()

    catalog_dir = ROOT / "examples" / "catalog"
    async with CellStore(catalog_dir, warehouse_path=str(warehouse_path)) as store:
        print("=" * 60)
        print("CellForge Demo")
        print("=" * 60)

        # 1. Live path: straight from the warehouse, cached per period
        print("\n1. Monthly revenue, first half of 2024:")
        response = await store.fetch_metric_range("revenue", "2024-01-01", "2024-07-01")
        for point in response.data:
            print(f"   {point.period}: ${point.value:,.2f}")

        again = await store.fetch_metric_range("revenue", "2024-01-01", "2024-07-01")
        print(f"   (second fetch cached: {again.cached})")

        # 2. Dimension filters
        print("\n2. Q1 revenue in the UK and Germany:")
        response = await store.fetch_metric(
            "revenue",
            "2024-01-01",
            "2024-04-01",
            grain="quarter",
            dimensions={"country": ["UK", "DE"]},
        )
        print(f"   {response.data[0].period}: ${response.data[0].value:,.2f}")

        # 3. Generated SQL
        print("\n3. SQL for average order value:")
        print(store.get_sql("average_order_value", "2024-01-01", "2024-02-01"))

        # 4. Materialize both models
        print("\n4. Refreshing models:")
        for model_id in ("orders", "sessions"):
            job = await store.refresh_model(model_id)
            print(f"   {model_id}: {job.status.value}, {job.rows_processed} rows")

        # 5. Materialized path
        print("\n5. Sessions in March (from materialized rows):")
        for name in ("total_sessions", "visitors", "mobile_sessions"):
            result = await store.evaluate_metric(name, "2024-03-01", "2024-04-01")
            print(f"   {name}: {result.value:,.0f}")

        # 6. Time context detection
        print("\n6. Detected header row:")
        context = store.detect_time_context(SHEET[0])
        print(f"   {context.grain.value}: {context.start_period} .. {context.end_period}")

        # 7. A sheet mixing METRIC() cells and ordinary formulas
        print("\n7. Quarterly sheet:")
        values = await store.calculate_sheet(SHEET)
        for row in values:
            cells = [f"{v:,.2f}" if isinstance(v, float) else str(v) for v in row]
            print("   " + " | ".join(f"{c:>12}" for c in cells))

        # 8. Incremental refresh of the last quarter
        print("\n8. Incremental refresh from 2024-10-01:")
        job = await store.refresh_model("orders", incremental=True, start="2024-10-01")
        stats = await store.model_stats("orders")
        print(f"   {job.rows_processed} rows replaced, {stats['total_rows']} total")
        date_range = stats["date_range"]
        print(f"   materialized range: {date_range['min']} .. {date_range['max']}")

        print("\n" + "=" * 60)
        print("Demo complete!")
        print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
