"""Tests for the YAML catalog loader."""

from pathlib import Path

import pytest

from cellforge.catalog.loader import ModelCatalog
from cellforge.errors import MetricNotFoundError, ModelNotFoundError
from cellforge.models.metric import AggregationType, FilterOperator, MetricDefinition
from cellforge.models.model import ModelDefinition


class TestModelCatalog:
    def test_load_directory(self, catalog_dir: Path):
        """Can load models and metrics from YAML."""
        catalog = ModelCatalog()
        catalog.load_directory(catalog_dir)

        assert "orders" in catalog.models
        assert "revenue" in catalog.metrics
        assert len(catalog.metrics) == 5

    def test_metric_fields(self, catalog: ModelCatalog):
        """Metric definitions parse with filters and defaults."""
        revenue = catalog.get_metric("revenue")
        assert revenue.id == "revenue"
        assert revenue.aggregation == AggregationType.SUM
        assert revenue.filters[0].operator == FilterOperator.EQ
        assert revenue.filters[0].value == "completed"

    def test_model_fields(self, catalog: ModelCatalog):
        """Model definitions carry their columns."""
        model = catalog.get_model("orders")
        assert model.primary_date_column == "order_date"
        assert model.dimension_columns == ["status", "country"]
        assert model.has_measure("AMOUNT")

    def test_lookups(self, catalog: ModelCatalog):
        """Metric-to-model lookups both ways."""
        assert catalog.model_for_metric("revenue").id == "orders"
        names = {m.name for m in catalog.metrics_for_model("orders")}
        assert "order_count" in names

    def test_unknown_metric(self, catalog: ModelCatalog):
        """Unknown names raise the KeyError subclasses."""
        with pytest.raises(MetricNotFoundError, match="nope"):
            catalog.get_metric("nope")
        with pytest.raises(ModelNotFoundError):
            catalog.get_model("nope")
        with pytest.raises(KeyError):
            catalog.model_for_metric("nope")

    def test_missing_directory(self, tmp_path: Path):
        """Missing directory raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            ModelCatalog().load_directory(tmp_path / "nope")

    def test_empty_directory(self, tmp_path: Path):
        """Directory without YAML raises ValueError."""
        with pytest.raises(ValueError, match="No YAML files"):
            ModelCatalog().load_directory(tmp_path)

    def test_split_files(self, tmp_path: Path):
        """Models and metrics may live in separate files."""
        (tmp_path / "a_metrics.yaml").write_text(
            """
metrics:
  - name: total
    model_id: sales
    measure_column: amount
"""
        )
        (tmp_path / "b_models.yml").write_text(
            """
models:
  - id: sales
    name: Sales
    source_query: SELECT * FROM sales
    primary_date_column: day
    measure_columns: [amount]
"""
        )
        catalog = ModelCatalog()
        catalog.load_directory(tmp_path)
        assert catalog.get_metric("total").model_id == "sales"

    def test_unknown_model_reference(self, tmp_path: Path):
        """A metric pointing at a missing model fails at load time."""
        (tmp_path / "bad.yaml").write_text(
            """
metrics:
  - name: total
    model_id: ghost
    measure_column: amount
"""
        )
        with pytest.raises(ValueError, match="unknown model 'ghost'"):
            ModelCatalog().load_directory(tmp_path)

    def test_duplicate_metric(self):
        """Duplicate names are rejected."""
        catalog = ModelCatalog()
        metric = MetricDefinition(id="m", name="m", model_id="x", measure_column="y")
        catalog.add_metric(metric)
        with pytest.raises(ValueError, match="Duplicate"):
            catalog.add_metric(metric)

    def test_reference_errors(self):
        """Unknown measures and filter columns are reported."""
        catalog = ModelCatalog()
        catalog.add_model(
            ModelDefinition(
                id="sales",
                name="Sales",
                source_query="SELECT * FROM sales",
                primary_date_column="day",
                dimension_columns=["region"],
                measure_columns=["amount"],
            )
        )
        catalog.add_metric(
            MetricDefinition(
                id="bad",
                name="bad",
                model_id="sales",
                measure_column="profit",
                filters=[{"column": "channel", "value": "web"}],
            )
        )
        errors = catalog.reference_errors()
        assert len(errors) == 2
        assert "unknown measure 'profit'" in errors[0]
        assert "unknown column 'channel'" in errors[1]
