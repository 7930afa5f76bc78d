"""CLI for CellForge."""

import asyncio
import csv
import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from cellforge.config import get_settings
from cellforge.logging import configure_logging
from cellforge.models.job import JobStatus
from cellforge.models.metric import MetricResponse
from cellforge.store import CellStore
from cellforge.timecontext.detector import (
    describe_time_context,
    detect_all_date_ranges,
    detect_time_context,
    time_context_count,
)

app = typer.Typer(
    name="cf",
    help="CellForge - spreadsheet formulas over warehouse metrics",
    no_args_is_help=True,
)
console = Console()

CatalogDir = Annotated[Path, typer.Option("--dir", "-d", help="Catalog directory")]
WarehouseOpt = Annotated[
    str | None, typer.Option("--warehouse", "-w", help="Warehouse DuckDB path")
]
DatastoreOpt = Annotated[
    str | None, typer.Option("--datastore", help="Datastore DuckDB path")
]
DimensionOpt = Annotated[
    list[str] | None,
    typer.Option("--dim", help="Dimension filter KEY=VALUE, comma-separate for IN"),
]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    settings = get_settings()
    if verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG"})
    configure_logging(settings)


def get_store(
    catalog_dir: Path,
    warehouse_path: str | None = None,
    datastore_path: str | None = None,
) -> CellStore:
    try:
        return CellStore(catalog_dir, warehouse_path, datastore_path)
    except Exception as e:
        console.print(f"[red]Error loading catalog: {e}[/red]")
        raise typer.Exit(1)


def parse_dimensions(values: list[str] | None) -> dict[str, Any] | None:
    if not values:
        return None
    dims: dict[str, Any] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--dim")
        parts = [p.strip() for p in value.split(",")]
        dims[key.strip()] = parts if len(parts) > 1 else parts[0]
    return dims


def read_sheet(path: Path) -> list[list[Any]]:
    """Load a CSV file as a grid. Empty cells become None."""
    with open(path, newline="") as f:
        return [[cell if cell != "" else None for cell in row] for row in csv.reader(f)]


@app.command("list")
def list_items(
    item_type: Annotated[str, typer.Argument(help="Type: metrics or models")],
    catalog_dir: CatalogDir = Path("./catalog"),
) -> None:
    """List metrics or models."""
    store = get_store(catalog_dir)
    try:
        if item_type == "metrics":
            _list_metrics(store)
        elif item_type == "models":
            _list_models(store)
        else:
            console.print(f"[red]Unknown type: {item_type}. Use: metrics, models[/red]")
            raise typer.Exit(1)
    finally:
        store.close()


def _list_metrics(store: CellStore) -> None:
    metrics = store.list_metrics()

    if not metrics:
        console.print("[yellow]No metrics defined[/yellow]")
        return

    table = Table(title="Metrics")
    table.add_column("Name", style="cyan")
    table.add_column("Model", style="yellow")
    table.add_column("Aggregation", style="green")
    table.add_column("Measure")
    table.add_column("Description")

    for metric in metrics:
        table.add_row(
            metric["name"],
            metric["model"],
            metric["aggregation"],
            metric["measure"],
            metric["description"] or "-",
        )

    console.print(table)


def _list_models(store: CellStore) -> None:
    models = store.list_models()

    if not models:
        console.print("[yellow]No models defined[/yellow]")
        return

    table = Table(title="Models")
    table.add_column("Id", style="cyan")
    table.add_column("Date column", style="green")
    table.add_column("Dimensions", style="yellow")
    table.add_column("Measures")

    for model in models:
        table.add_row(
            model["id"],
            model["date_column"],
            ", ".join(model["dimensions"]) or "-",
            ", ".join(model["measures"]),
        )

    console.print(table)


@app.command()
def validate(catalog_dir: CatalogDir = Path("./catalog")) -> None:
    """Validate all model and metric definitions."""
    store = get_store(catalog_dir)
    try:
        errors = store.validate()
        metric_count = len(store.catalog.metrics)
        model_count = len(store.catalog.models)
    finally:
        store.close()

    if errors:
        console.print("[red]Validation failed:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    console.print(
        f"[green]Validated {metric_count} metrics and "
        f"{model_count} models successfully![/green]"
    )


@app.command("eval")
def eval_formula(
    formula: Annotated[
        str | None, typer.Argument(help="Formula, e.g. '=SUM(A1:A3)'. Omit to evaluate the sheet")
    ] = None,
    sheet: Annotated[
        Path | None, typer.Option("--sheet", "-s", help="CSV file with cell contents")
    ] = None,
    catalog_dir: CatalogDir = Path("./catalog"),
    warehouse_path: WarehouseOpt = None,
    datastore_path: DatastoreOpt = None,
) -> None:
    """Evaluate a formula, or every cell of a sheet."""
    if formula is None and sheet is None:
        console.print("[red]Give a formula, a --sheet, or both[/red]")
        raise typer.Exit(1)

    grid = read_sheet(sheet) if sheet else []
    store = get_store(catalog_dir, warehouse_path, datastore_path)

    if formula is not None:
        try:
            value = store.evaluate_formula(formula, grid)
        finally:
            store.close()
        console.print(str(value), markup=False, highlight=False)
        return

    async def run() -> list[list[Any]]:
        try:
            return await store.calculate_sheet(grid)
        finally:
            await store.aclose()

    values = asyncio.run(run())
    table = Table(title=f"{sheet.name}", show_header=False)
    width = max((len(r) for r in values), default=0)
    for _ in range(width):
        table.add_column()
    for row in values:
        cells = ["" if v is None else str(v) for v in row]
        table.add_row(*cells, *[""] * (width - len(cells)))
    console.print(table)


@app.command()
def detect(
    headers: Annotated[
        list[str] | None, typer.Argument(help="Header cells of one row")
    ] = None,
    sheet: Annotated[
        Path | None, typer.Option("--sheet", "-s", help="CSV file to scan every row of")
    ] = None,
    start_col: Annotated[
        int, typer.Option("--start-col", help="First column holding periods")
    ] = 1,
) -> None:
    """Detect time periods in header cells."""
    if sheet is not None:
        ranges = detect_all_date_ranges(read_sheet(sheet), start_col=start_col)
        if not ranges:
            console.print("[yellow]No date ranges found[/yellow]")
            return
        table = Table(title="Date ranges")
        table.add_column("Row", style="cyan")
        table.add_column("Columns")
        table.add_column("Grain", style="green")
        table.add_column("Periods")
        for r in ranges:
            table.add_row(
                str(r.row_index),
                f"{r.start_col}-{r.end_col}",
                r.context.grain.value,
                f"{r.context.start_period} .. {r.context.end_period}",
            )
        console.print(table)
        return

    # headers given on the command line start at column 0
    context = detect_time_context(headers or [], start_col=0)
    if context is None:
        console.print("[yellow]No time context detected[/yellow]")
        raise typer.Exit(1)
    console.print(f"{describe_time_context(context)} ({time_context_count(context)})")


@app.command("show-sql")
def show_sql(
    metric: Annotated[str, typer.Argument(help="Metric name")],
    start: Annotated[str, typer.Option("--start", help="Start date (YYYY-MM-DD)")],
    end: Annotated[str, typer.Option("--end", help="End date, exclusive (YYYY-MM-DD)")],
    dims: DimensionOpt = None,
    catalog_dir: CatalogDir = Path("./catalog"),
) -> None:
    """Show the live-path SQL for a metric without executing it."""
    store = get_store(catalog_dir)
    try:
        sql = store.get_sql(metric, start, end, parse_dimensions(dims))
    except Exception as e:
        console.print(f"[red]Error generating SQL: {e}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()

    syntax = Syntax(sql, "sql", theme="monokai", line_numbers=True)
    console.print(syntax)


@app.command("metric")
def metric_values(
    name: Annotated[str, typer.Argument(help="Metric name")],
    start: Annotated[str, typer.Option("--start", help="Start date (YYYY-MM-DD)")],
    end: Annotated[str, typer.Option("--end", help="End date, exclusive (YYYY-MM-DD)")],
    grain: Annotated[
        str, typer.Option("--grain", "-t", help="Grain: day, month, quarter, year")
    ] = "month",
    dims: DimensionOpt = None,
    materialized: Annotated[
        bool, typer.Option("--materialized", "-m", help="Aggregate refreshed rows instead")
    ] = False,
    output: Annotated[
        str, typer.Option("--output", "-o", help="Output format: table, json, csv")
    ] = "table",
    catalog_dir: CatalogDir = Path("./catalog"),
    warehouse_path: WarehouseOpt = None,
    datastore_path: DatastoreOpt = None,
) -> None:
    """Fetch a metric per period, live or from materialized rows."""
    store = get_store(catalog_dir, warehouse_path, datastore_path)
    dimensions = parse_dimensions(dims)

    async def run() -> Any:
        try:
            if materialized:
                return await store.evaluate_metric(name, start, end, grain, dimensions)
            return await store.fetch_metric_range(name, start, end, grain, dimensions)
        finally:
            await store.aclose()

    try:
        result = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Metric error: {e}[/red]")
        raise typer.Exit(1)

    if materialized:
        if result.no_materialized_rows:
            console.print("[yellow]No materialized rows - has the model been refreshed?[/yellow]")
        console.print(f"{name}: {result.value} ({result.rows_scanned} rows scanned)")
        return

    _output_response(result, output)


def _output_response(response: MetricResponse, output_format: str) -> None:
    """Output a metric response in the specified format."""
    rows = [{"period": p.period, "value": p.value} for p in response.data]
    if output_format == "json":
        console.print(json.dumps(rows, indent=2, default=str), markup=False, highlight=False)
    elif output_format == "csv":
        console.print("period,value")
        for row in rows:
            console.print(f"{row['period']},{row['value']}")
    else:
        cached = ", cached" if response.cached else ""
        table = Table(
            title=f"{response.metric} by {response.grain.value} "
            f"({response.query_time_ms}ms{cached})"
        )
        table.add_column("Period", style="cyan")
        table.add_column("Value", justify="right")
        for row in rows:
            table.add_row(row["period"], str(row["value"]))
        console.print(table)


@app.command()
def refresh(
    model: Annotated[str, typer.Argument(help="Model id")],
    incremental: Annotated[
        bool, typer.Option("--incremental", "-i", help="Only replace [start, end)")
    ] = False,
    start: Annotated[str | None, typer.Option("--start", help="Start date (YYYY-MM-DD)")] = None,
    end: Annotated[
        str | None, typer.Option("--end", help="End date, exclusive (YYYY-MM-DD)")
    ] = None,
    catalog_dir: CatalogDir = Path("./catalog"),
    warehouse_path: WarehouseOpt = None,
    datastore_path: DatastoreOpt = None,
) -> None:
    """Materialize a model from the warehouse into the datastore."""
    store = get_store(catalog_dir, warehouse_path, datastore_path)

    async def run() -> tuple[Any, dict]:
        try:
            job = await store.refresh_model(model, incremental, start, end)
            stats = await store.model_stats(model)
            return job, stats
        finally:
            await store.aclose()

    try:
        job, stats = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Refresh error: {e}[/red]")
        raise typer.Exit(1)

    if job.status != JobStatus.SUCCESS:
        console.print(f"[red]Refresh failed: {job.error_message}[/red]")
        raise typer.Exit(1)

    console.print(
        f"[green]Refreshed {model}: {job.rows_processed} rows "
        f"({stats['total_rows']} total)[/green]"
    )


if __name__ == "__main__":
    app()
