"""Tests for formula evaluation and whole-sheet calculation."""

from typing import Any

import pytest

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
from cellforge.formula.references import parse_cell_reference, parse_range_reference

# A1:10 A2:20 A3:30 / B1:5 B2:15 B3:25 / C1:100 C2:200 C3:300, plus text in D
GRID: list[list[Any]] = [
    [10, 5, 100, "abc", "YES"],
    [20, 15, 200, "#DIV/0!", None],
    [30, 25, 300, None, None],
]


@pytest.fixture
def evaluator() -> FormulaEvaluator:
    return FormulaEvaluator()


def get_cell(row: int, col: int) -> Any:
    if row >= len(GRID) or col >= len(GRID[row]):
        return None
    return GRID[row][col]


class TestAggregates:
    @pytest.mark.parametrize(
        "formula,expected",
        [
            ("=SUM(A1:A3)", 60),
            ("=AVERAGE(A1:A3)", 20),
            ("=AVG(A1:A3)", 20),
            ("=MAX(A1:B3)", 30),
            ("=MIN(A1:B3)", 5),
            ("=COUNT(A1:C3)", 9),
            ("=SUM(A1, B1, 1)", 16),
        ],
    )
    def test_grid_values(self, evaluator: FormulaEvaluator, formula: str, expected: float):
        """Aggregates over the reference grid."""
        assert evaluator.evaluate(formula, get_cell) == expected

    def test_count_skips_text(self, evaluator: FormulaEvaluator):
        """COUNT only counts numeric cells."""
        assert evaluator.evaluate("=COUNT(A1:E1)", get_cell) == 3

    def test_empty_range_is_zero(self, evaluator: FormulaEvaluator):
        """Aggregates over empty cells give 0."""
        assert evaluator.evaluate("=SUM(E2:E3)", get_cell) == 0
        assert evaluator.evaluate("=AVERAGE(E2:E3)", get_cell) == 0
        assert evaluator.evaluate("=MAX(E2:E3)", get_cell) == 0

    def test_custom_function(self):
        """Extra functions can be registered."""
        evaluator = FormulaEvaluator(functions={"double": lambda values: values[0] * 2})
        assert evaluator.evaluate("=DOUBLE(A2)", get_cell) == 40


class TestExpressions:
    @pytest.mark.parametrize(
        "formula,expected",
        [
            ("=A1+B1", 15),
            ("=A1*2", 20),
            ("=A1+B1*2", 20),
            ("=(A1+B1)*2", 30),
            ("=C1/A1", 10),
            ("=A1^2", 100),
            ("=-A1", -10),
            ("=C1-SUM(A1:A3)", 40),
            ("=SUM(A1:A3)/COUNT(A1:A3)", 20),
            ("=B1/2", 2.5),
        ],
    )
    def test_arithmetic(self, evaluator: FormulaEvaluator, formula: str, expected: float):
        """Arithmetic follows normal precedence."""
        assert evaluator.evaluate(formula, get_cell) == expected

    @pytest.mark.parametrize(
        "formula,expected",
        [
            ("=1+2^3", 9),
            ("=2^3*2", 16),
            ("=2*3^2+1", 19),
            ("=2^3^2", 64),
            ("=(1+2)^2", 9),
            ("=10-2^2-1", 5),
            ("=A1^2/4", 25),
            ("=1+2^3>8", True),
        ],
    )
    def test_power_binds_tightest(
        self, evaluator: FormulaEvaluator, formula: str, expected: float
    ):
        """^ is exponentiation above * and +, evaluated left to right."""
        assert evaluator.evaluate(formula, get_cell) == expected

    def test_negative_inlined_call(self, evaluator: FormulaEvaluator):
        """A nested call with a negative result doesn't break the expression."""
        grid = [[-5, 3]]
        assert evaluator.evaluate("=B1-SUM(A1:A1)", lambda r, c: grid[r][c]) == 8

    def test_if(self, evaluator: FormulaEvaluator):
        """IF picks a branch on its condition."""
        assert evaluator.evaluate('=IF(A1>5, "big", "small")', get_cell) == "big"
        assert evaluator.evaluate('=IF(A1>50, "big", "small")', get_cell) == "small"
        assert evaluator.evaluate("=IF(A1>50, 1)", get_cell) is False

    def test_if_string_compare_ignores_case(self, evaluator: FormulaEvaluator):
        """Text equality is case-insensitive."""
        assert evaluator.evaluate('=IF(E1="yes", 1, 0)', get_cell) == 1

    def test_if_is_lazy(self, evaluator: FormulaEvaluator):
        """The branch not taken is never evaluated."""
        assert evaluator.evaluate("=IF(A1>5, 1, A1/0)", get_cell) == 1


class TestErrors:
    def test_division_by_zero(self, evaluator: FormulaEvaluator):
        """Dividing by zero gives #DIV/0!."""
        assert evaluator.evaluate("=A1/0", get_cell) == DIV_ZERO

    def test_unknown_function(self, evaluator: FormulaEvaluator):
        """Unknown functions give #NAME?."""
        assert evaluator.evaluate("=FOO(A1)", get_cell) == NAME_ERROR

    def test_unbalanced_parens(self, evaluator: FormulaEvaluator):
        """Malformed formulas give #ERROR! instead of raising."""
        assert evaluator.evaluate("=SUM(A1:A3", get_cell) == ERROR

    def test_text_operand(self, evaluator: FormulaEvaluator):
        """Arithmetic on text is an error."""
        assert evaluator.evaluate("=D1+1", get_cell) == ERROR

    def test_error_propagates(self, evaluator: FormulaEvaluator):
        """An error in a referenced cell becomes the result."""
        assert evaluator.evaluate("=SUM(A1, D2)", get_cell) == DIV_ZERO
        assert evaluator.evaluate("=D2+1", get_cell) == DIV_ZERO

    def test_accessor_failure_is_error(self, evaluator: FormulaEvaluator):
        """An exception from the accessor never escapes."""

        def broken(row: int, col: int) -> Any:
            raise RuntimeError("boom")

        assert evaluator.evaluate("=A1+1", broken) == ERROR

    def test_is_error(self):
        """Only the sentinels count as errors."""
        assert is_error(ERROR)
        assert is_error(CIRCULAR)
        assert not is_error("#hashtag")
        assert not is_error(0)


class TestNonFormulas:
    def test_plain_values(self, evaluator: FormulaEvaluator):
        """Content without '=' passes through, numbers coerced."""
        assert evaluator.evaluate("42", get_cell) == 42
        assert evaluator.evaluate("1,500.5", get_cell) == 1500.5
        assert evaluator.evaluate("hello", get_cell) == "hello"
        assert evaluator.evaluate(None, get_cell) is None
        assert evaluator.evaluate(7, get_cell) == 7

    def test_number_formula(self, evaluator: FormulaEvaluator):
        """=42 is just 42."""
        assert evaluator.evaluate("=42", get_cell) == 42


class TestDependencies:
    def test_formula_dependencies(self):
        """Dependencies come from the parser."""
        assert get_formula_dependencies("=SUM(A1:A3)+C1") == [
            parse_range_reference("A1:A3"),
            parse_cell_reference("C1"),
        ]
        assert get_formula_dependencies("plain text") == []

    def test_dependency_coords(self):
        """Ranges expand to individual cells."""
        assert get_dependency_coords("=SUM(A1:B2)") == [(0, 0), (0, 1), (1, 0), (1, 1)]

    def test_static_cycle_check(self):
        """Detects a cycle before the formula is written."""
        sheet = [[None, "=A1+1", "=B1*2"]]

        def raw(row: int, col: int) -> Any:
            return sheet[row][col] if col < len(sheet[row]) else None

        assert has_circular_dependency(0, 0, "=C1", raw)
        assert has_circular_dependency(0, 0, "=A1", raw)
        assert not has_circular_dependency(0, 0, "=5", raw)
        assert not has_circular_dependency(0, 3, "=C1", raw)


class TestSheetCalculator:
    def test_chained_formulas(self):
        """Formulas can reference other formula cells."""
        calc = SheetCalculator([[1, "=A1+1", "=B1*10"]])
        assert calc.evaluate_all() == [[1, 2, 20]]

    def test_string_cells(self):
        """Numeric strings are numbers, other text is kept."""
        calc = SheetCalculator([["10", "x", "=A1*2"]])
        assert calc.evaluate_all() == [[10, "x", 20]]

    def test_reference_grid(self):
        """Spreadsheet-style grid evaluates like the single-formula path."""
        grid = [row[:3] for row in GRID] + [["=SUM(A1:A3)", "=MAX(A1:B3)", "=COUNT(A1:C3)"]]
        calc = SheetCalculator(grid)
        assert calc.evaluate_all()[3] == [60, 30, 9]

    def test_two_cell_cycle(self):
        """A1=B1, B1=A1 gives #CIRCULAR! in both instead of recursing."""
        calc = SheetCalculator([["=B1", "=A1"]])
        assert calc.evaluate_all() == [[CIRCULAR, CIRCULAR]]

    def test_self_reference(self):
        """A cell referencing itself is circular."""
        calc = SheetCalculator([["=A1+1", "=SUM(A1:A1)"]])
        assert calc.value(0, 0) == CIRCULAR
        assert calc.value(0, 1) == CIRCULAR

    def test_cells_outside_grid_are_empty(self):
        """References past the grid read as empty."""
        calc = SheetCalculator([["=SUM(B1:Z99)", 4]])
        assert calc.value(0, 0) == 4

    def test_overrides(self):
        """Precomputed values win over cell content."""
        calc = SheetCalculator([['=METRIC("revenue")', "=A1*2"]], overrides={(0, 0): 21})
        assert calc.evaluate_all() == [[21, 42]]

    def test_invalidate(self):
        """Edits show up after invalidate()."""
        grid = [[1, "=A1*3"]]
        calc = SheetCalculator(grid)
        assert calc.value(0, 1) == 3
        grid[0][0] = 2
        assert calc.value(0, 1) == 3
        calc.invalidate()
        assert calc.value(0, 1) == 6
