"""SQL generation for the live metric path and materialization.

two jobs:
- build the single-value aggregation query a live metric fetch runs
- inject date bounds into a model's source query for incremental refreshes

queries are assembled as strings (easy to read, easy to debug) and pretty
printed with sqlglot at the end. user-supplied *values* always go through
sqlglot literals so quoting is never hand-rolled; identifiers are checked
against a strict pattern since they can't be parameterized.
"""

import re
from datetime import date
from typing import Any

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError as SQLParseError

from cellforge.logging import get_logger
from cellforge.models.metric import AggregationType, FilterOperator, MetricDefinition, MetricFilter
from cellforge.models.model import ModelDefinition

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TABLE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*){0,2}$")
_WHERE = re.compile(r"\bWHERE\b", re.IGNORECASE)
_TAIL_CLAUSE = re.compile(r"\b(GROUP\s+BY|ORDER\s+BY|HAVING|LIMIT)\b", re.IGNORECASE)

AGG_MAP = {
    AggregationType.SUM: "SUM",
    AggregationType.AVG: "AVG",
    AggregationType.COUNT: "COUNT",
    AggregationType.COUNT_DISTINCT: "COUNT",  # DISTINCT added below
    AggregationType.MIN: "MIN",
    AggregationType.MAX: "MAX",
}

_COMPARISONS = {
    FilterOperator.EQ: "=",
    FilterOperator.NEQ: "!=",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
    FilterOperator.LIKE: "LIKE",
}


def quote_identifier(name: str) -> str:
    """Validate a column name. Raises ValueError for anything suspicious."""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid column name: {name!r}")
    return name


def literal(value: Any, dialect: str = "duckdb") -> str:
    """Render a python value as a SQL literal ('it''s', 42, TRUE, NULL)."""
    if isinstance(value, date):
        value = value.isoformat()
    return exp.convert(value).sql(dialect=dialect)


class MetricSQLBuilder:
    """Builds warehouse SQL for metrics and model refreshes."""

    def __init__(self, dialect: str = "duckdb") -> None:
        self.dialect = dialect

    def build_metric_query(
        self,
        model: ModelDefinition,
        metric: MetricDefinition,
        start: date,
        end: date,
        dimensions: dict[str, Any] | None = None,
    ) -> str:
        """SELECT AGG(measure) AS value over [start, end) plus filters.

        the window is half-open so adjacent periods never double count.
        """
        date_col = quote_identifier(model.primary_date_column)

        conditions = [
            f"{date_col} >= {literal(start, self.dialect)}",
            f"{date_col} < {literal(end, self.dialect)}",
        ]
        conditions.extend(self._filter_condition(f) for f in metric.filters)
        for column, value in (dimensions or {}).items():
            conditions.append(self._dimension_condition(column, value))

        sql = (
            f"SELECT {self._aggregate(metric)} AS value\n"
            f"FROM {self._source(model)}\n"
            f"WHERE {' AND '.join(conditions)}"
        )
        return self._format_sql(sql)

    def _aggregate(self, metric: MetricDefinition) -> str:
        column = quote_identifier(metric.measure_column)
        func = AGG_MAP[metric.aggregation]
        if metric.aggregation == AggregationType.COUNT_DISTINCT:
            return f"{func}(DISTINCT {column})"
        return f"{func}({column})"

    def _source(self, model: ModelDefinition) -> str:
        # a plain table is cheaper to plan than wrapping the whole source query
        if model.source_table:
            if not _TABLE.match(model.source_table):
                raise ValueError(f"Invalid table name: {model.source_table!r}")
            return model.source_table
        return f"({model.source_query.strip().rstrip(';')}) AS src"

    def _filter_condition(self, flt: MetricFilter) -> str:
        column = quote_identifier(flt.column)
        if flt.operator in (FilterOperator.IN, FilterOperator.NOT_IN):
            values = ", ".join(literal(v, self.dialect) for v in flt.value)
            keyword = "IN" if flt.operator == FilterOperator.IN else "NOT IN"
            return f"{column} {keyword} ({values})"
        if flt.operator == FilterOperator.LIKE:
            # case-insensitive, same as the materialized path
            return f"{column} ILIKE {literal(flt.value, self.dialect)}"
        return f"{column} {_COMPARISONS[flt.operator]} {literal(flt.value, self.dialect)}"

    def _dimension_condition(self, column: str, value: Any) -> str:
        column = quote_identifier(column)
        if isinstance(value, list):
            if not value:
                return "FALSE"  # membership in nothing
            values = ", ".join(literal(v, self.dialect) for v in value)
            return f"{column} IN ({values})"
        return f"{column} = {literal(value, self.dialect)}"

    def inject_date_bounds(
        self,
        sql: str,
        date_column: str,
        start: date | None = None,
        end: date | None = None,
    ) -> str:
        """Add `date >= start` / `date < end` to a model's source query.

        goes through the sqlglot AST when the query parses as a plain SELECT,
        which handles subqueries and existing predicates properly. otherwise
        falls back to text surgery: AND onto the first WHERE, or a new WHERE
        before GROUP BY/ORDER BY/HAVING/LIMIT, or at the end.
        """
        column = quote_identifier(date_column)
        bounds = []
        if start is not None:
            bounds.append(f"{column} >= {literal(start, self.dialect)}")
        if end is not None:
            bounds.append(f"{column} < {literal(end, self.dialect)}")
        if not bounds:
            return sql

        condition = " AND ".join(bounds)
        sql = sql.strip().rstrip(";")

        try:
            tree = sqlglot.parse_one(sql, read=self.dialect)
        except SQLParseError:
            tree = None

        if isinstance(tree, exp.Select):
            return tree.where(condition, append=True, dialect=self.dialect).sql(
                dialect=self.dialect, pretty=True
            )

        logger.debug("date_bounds_text_fallback", date_column=date_column)
        return self._inject_text(sql, condition)

    def _inject_text(self, sql: str, condition: str) -> str:
        if _WHERE.search(sql):
            return _WHERE.sub(f"WHERE {condition} AND", sql, count=1)
        tail = _TAIL_CLAUSE.search(sql)
        if tail:
            return f"{sql[: tail.start()]}WHERE {condition}\n{sql[tail.start():]}"
        return f"{sql}\nWHERE {condition}"

    def _format_sql(self, sql: str) -> str:
        """Format SQL for readability using sqlglot.

        falls back to unformatted sql if sqlglot chokes - pretty printing is
        nice-to-have, not worth failing the query over.
        """
        try:
            parsed = sqlglot.parse_one(sql, dialect=self.dialect)
            return parsed.sql(dialect=self.dialect, pretty=True)
        except SQLParseError:
            return sql
