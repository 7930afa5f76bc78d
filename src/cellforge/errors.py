"""Exception types for CellForge.

the rough propagation rules:
- parse/evaluation errors never leave the formula evaluator, they become
  sentinels like #ERROR! so one bad cell can't take down a sheet
- cache errors are logged and swallowed, the in-memory store takes over
- materialization errors are caught at the job boundary and recorded on the job
"""


class CellForgeError(Exception):
    """Base class for all CellForge errors."""


class ParseError(CellForgeError, ValueError):
    """Malformed cell reference, formula, header or date value."""


class EvaluationError(CellForgeError):
    """A formula could not be evaluated."""


class CircularReferenceError(EvaluationError):
    """A formula depends (directly or not) on its own cell."""

    def __init__(self, cell: str) -> None:
        super().__init__(f"Circular reference involving {cell}")
        self.cell = cell


class ValidationError(CellForgeError, ValueError):
    """A SQL statement failed the read-only allow/deny check."""

    def __init__(self, message: str, pattern: str | None = None) -> None:
        super().__init__(message)
        self.pattern = pattern


class MaterializationError(CellForgeError):
    """The source query result doesn't match the model definition."""


class CacheError(CellForgeError):
    """The primary cache store is unreachable or returned garbage."""


class JobError(CellForgeError):
    """Invalid refresh job transition or unknown job."""


class MetricNotFoundError(CellForgeError, KeyError):
    """No metric with the requested name exists."""

    def __str__(self) -> str:
        # KeyError repr-quotes its message, which reads badly in the CLI
        return str(self.args[0]) if self.args else ""


class ModelNotFoundError(CellForgeError, KeyError):
    """No model with the requested id exists."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
