"""Result of a statement run against the warehouse."""

from typing import Any

from pydantic import BaseModel


class QueryResult(BaseModel):
    """Rows plus the sql that produced them.

    columns is kept separately from data so schema checks still work when a
    query returns zero rows.
    """

    sql: str
    columns: list[str]
    data: list[dict[str, Any]]
    row_count: int
    execution_time_ms: float

    def scalar(self) -> Any:
        """First column of the first row, or None for an empty result."""
        if not self.data or not self.columns:
            return None
        return self.data[0][self.columns[0]]
