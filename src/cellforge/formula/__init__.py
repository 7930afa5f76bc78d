"""Spreadsheet formula parsing and evaluation."""

from cellforge.formula.evaluator import (
    CIRCULAR,
    DIV_ZERO,
    ERROR,
    NAME_ERROR,
    FormulaEvaluator,
    SheetCalculator,
    get_dependency_coords,
    get_formula_dependencies,
    has_circular_dependency,
    is_error,
)
from cellforge.formula.parser import FunctionCall, RawExpression, ValueNode, parse_formula
from cellforge.formula.references import (
    CellReference,
    RangeReference,
    column_to_index,
    index_to_column,
    parse_cell_reference,
    parse_range_reference,
)

__all__ = [
    "CIRCULAR",
    "DIV_ZERO",
    "ERROR",
    "NAME_ERROR",
    "CellReference",
    "FormulaEvaluator",
    "FunctionCall",
    "RangeReference",
    "RawExpression",
    "SheetCalculator",
    "ValueNode",
    "column_to_index",
    "get_dependency_coords",
    "get_formula_dependencies",
    "has_circular_dependency",
    "index_to_column",
    "is_error",
    "parse_cell_reference",
    "parse_formula",
    "parse_range_reference",
]
