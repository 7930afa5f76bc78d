"""Pydantic models for warehouse-sourced models and their materialized rows."""

from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from cellforge.models.time_context import Grain


class ModelDefinition(BaseModel):
    """A warehouse dataset: the query that produces it and how to read its columns.

    owned by the catalog. materialization only ever touches the rows derived
    from it, never the definition itself.
    """

    id: str
    org_id: str = "default"
    name: str
    source_query: str
    # used by the live path instead of wrapping source_query as a subquery
    source_table: str | None = None
    primary_date_column: str
    dimension_columns: list[str] = Field(default_factory=list)
    measure_columns: list[str] = Field(default_factory=list)
    grain: Grain = Grain.DAY
    description: str | None = None

    @model_validator(mode="after")
    def validate_columns(self) -> "ModelDefinition":
        if not self.measure_columns:
            raise ValueError(f"Model '{self.id}' must declare at least one measure column")
        overlap = {c.lower() for c in self.dimension_columns} & {
            c.lower() for c in self.measure_columns
        }
        if overlap:
            raise ValueError(
                f"Model '{self.id}' declares {sorted(overlap)} as both dimension and measure"
            )
        return self

    def has_measure(self, column: str) -> bool:
        return column.lower() in {c.lower() for c in self.measure_columns}


class MaterializedRow(BaseModel):
    """One row copied from the warehouse into the datastore.

    keys are lowercased once here so every later lookup is a plain dict get,
    whatever case the warehouse returned (snowflake loves UPPERCASE).
    """

    model_id: str
    date_value: str  # YYYY-MM-DD
    dimensions: dict[str, Any] | None = None
    measures: dict[str, Any] = Field(default_factory=dict)

    @field_validator("dimensions", "measures", mode="before")
    @classmethod
    def lowercase_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k).lower(): v for k, v in value.items()}
        return value

    def get(self, column: str) -> Any:
        """Look up a column in dimensions first, then measures."""
        key = column.lower()
        if self.dimensions and key in self.dimensions:
            return self.dimensions[key]
        return self.measures.get(key)

    def has_column(self, column: str) -> bool:
        key = column.lower()
        return key in self.measures or bool(self.dimensions and key in self.dimensions)
