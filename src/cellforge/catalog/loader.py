"""YAML loader and catalog for model and metric definitions.

the catalog is the single source of truth for what models and metrics exist.
everything downstream (resolver, evaluator, materialization) looks
definitions up here rather than carrying its own copies.
"""

from pathlib import Path
from typing import Any

import yaml

from cellforge.errors import MetricNotFoundError, ModelNotFoundError
from cellforge.logging import get_logger
from cellforge.models.metric import MetricDefinition
from cellforge.models.model import ModelDefinition

logger = get_logger(__name__)


class ModelCatalog:
    """Registry of models (by id) and metrics (by name).

    can be filled from a directory of yaml files, programmatically with
    add_model/add_metric, or both.
    """

    def __init__(self) -> None:
        self.models: dict[str, ModelDefinition] = {}
        self.metrics: dict[str, MetricDefinition] = {}

    def load_directory(self, path: str | Path) -> None:
        """Load all YAML files from a directory, then validate references.

        files can hold models, metrics or both; load order doesn't matter
        since references are only checked once everything is in.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Catalog directory not found: {path}")

        yaml_files = sorted(path.glob("**/*.yaml")) + sorted(path.glob("**/*.yml"))
        if not yaml_files:
            raise ValueError(f"No YAML files found in {path}")

        for yaml_file in yaml_files:
            self._load_file(yaml_file)

        self.validate_references()
        logger.info(
            "catalog_loaded",
            path=str(path),
            models=len(self.models),
            metrics=len(self.metrics),
        )

    def _load_file(self, path: Path) -> None:
        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return  # empty file

        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping with 'models' and/or 'metrics'")

        for model_data in data.get("models", []):
            self.add_model(ModelDefinition.model_validate(model_data))

        for metric_data in data.get("metrics", []):
            self.add_metric(self._parse_metric(metric_data))

    def _parse_metric(self, data: dict[str, Any]) -> MetricDefinition:
        # id defaults to the name - most yaml authors don't care about ids
        data = dict(data)
        data.setdefault("id", data.get("name"))
        return MetricDefinition.model_validate(data)

    def add_model(self, model: ModelDefinition) -> None:
        if model.id in self.models:
            raise ValueError(f"Duplicate model: {model.id}")
        self.models[model.id] = model

    def add_metric(self, metric: MetricDefinition) -> None:
        if metric.name in self.metrics:
            raise ValueError(f"Duplicate metric: {metric.name}")
        self.metrics[metric.name] = metric

    def validate_references(self) -> None:
        """Raise ValueError on the first metric that points at nothing.

        checked at load time so a typo in yaml fails loudly at startup
        instead of as a confusing empty result later.
        """
        for error in self.reference_errors():
            raise ValueError(error)

    def reference_errors(self) -> list[str]:
        errors = []
        for metric in self.metrics.values():
            model = self.models.get(metric.model_id)
            if model is None:
                errors.append(
                    f"Metric '{metric.name}' references unknown model '{metric.model_id}'"
                )
                continue

            if not model.has_measure(metric.measure_column):
                errors.append(
                    f"Metric '{metric.name}' references unknown measure "
                    f"'{metric.measure_column}' in model '{model.id}'"
                )

            known = {c.lower() for c in model.dimension_columns + model.measure_columns}
            known.add(model.primary_date_column.lower())
            for flt in metric.filters:
                if flt.column.lower() not in known:
                    errors.append(
                        f"Metric '{metric.name}' filters on unknown column '{flt.column}'"
                    )
        return errors

    # lookups raise the KeyError subclasses so callers can tell what was missing

    def get_metric(self, name: str) -> MetricDefinition:
        if name not in self.metrics:
            raise MetricNotFoundError(f"Unknown metric: {name}")
        return self.metrics[name]

    def get_model(self, model_id: str) -> ModelDefinition:
        if model_id not in self.models:
            raise ModelNotFoundError(f"Unknown model: {model_id}")
        return self.models[model_id]

    def model_for_metric(self, name: str) -> ModelDefinition:
        return self.get_model(self.get_metric(name).model_id)

    def metrics_for_model(self, model_id: str) -> list[MetricDefinition]:
        return [m for m in self.metrics.values() if m.model_id == model_id]
