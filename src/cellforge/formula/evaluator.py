"""Formula evaluation against a cell accessor.

the evaluator never raises into the caller. anything that goes wrong becomes
an error sentinel string, same as a spreadsheet would show in the cell:

    #ERROR!     bad syntax, non-numeric operand, bad reference
    #NAME?      unknown function
    #DIV/0!     division by zero
    #CIRCULAR!  the cell depends on itself

raw arithmetic (=A1+B2*2) is parsed with sqlglot rather than a hand-rolled
precedence climber - sqlglot already knows operator precedence and we only
walk the handful of node types a spreadsheet expression can produce.
"""

import operator
import re
from collections.abc import Callable, Iterator
from typing import Any

from sqlglot import exp, parse_one
from sqlglot.errors import ParseError as SQLParseError

from cellforge.coerce import Scalar, normalize_number, to_number
from cellforge.errors import CircularReferenceError, ParseError
from cellforge.formula.parser import (
    FunctionCall,
    ParsedFormula,
    RawExpression,
    ValueNode,
    find_closing_paren,
    parse_formula,
)
from cellforge.formula.references import (
    CellReference,
    RangeReference,
    Reference,
    coords_to_cell,
    mask_string_literals,
    parse_cell_reference,
)
from cellforge.logging import get_logger

logger = get_logger(__name__)

ERROR = "#ERROR!"
NAME_ERROR = "#NAME?"
DIV_ZERO = "#DIV/0!"
CIRCULAR = "#CIRCULAR!"
SENTINELS = frozenset({ERROR, NAME_ERROR, DIV_ZERO, CIRCULAR})

CellAccessor = Callable[[int, int], Any]
AggregateFunction = Callable[[list[Any]], float]

_CALL_IN_EXPRESSION = re.compile(r"(?<![A-Z0-9_.])([A-Z][A-Z0-9_.]*)\(")
_DOUBLE_QUOTED = re.compile(r"\"([^\"]*)\"")

_ARITHMETIC: dict[type[exp.Expression], Callable[[float, float], float]] = {
    exp.Add: operator.add,
    exp.Sub: operator.sub,
    exp.Mul: operator.mul,
    exp.Div: operator.truediv,
    exp.Mod: operator.mod,
    exp.Pow: operator.pow,
}

# sqlglot's default dialect reads ^ as xor, binding looser than + and -.
# a chain containing it is flattened and rebuilt with spreadsheet precedence,
# ^ tightest and left-associative, so 1+2^3 is 9 and 2^3^2 is 64
_PRECEDENCE: dict[type[exp.Expression], int] = {
    exp.Add: 1,
    exp.Sub: 1,
    exp.Mul: 2,
    exp.Div: 2,
    exp.Mod: 2,
    exp.BitwiseXor: 3,
}

_COMPARISON: dict[type[exp.Expression], Callable[[Any, Any], bool]] = {
    exp.EQ: operator.eq,
    exp.NEQ: operator.ne,
    exp.GT: operator.gt,
    exp.GTE: operator.ge,
    exp.LT: operator.lt,
    exp.LTE: operator.le,
}


def is_error(value: Any) -> bool:
    return isinstance(value, str) and value in SENTINELS


class _ErrorValue(Exception):
    """Internal signal carrying a sentinel up through the walk."""

    def __init__(self, sentinel: str) -> None:
        super().__init__(sentinel)
        self.sentinel = sentinel


def _numbers(values: list[Any]) -> list[float]:
    return [n for n in (to_number(v) for v in values) if n is not None]


def _sum(values: list[Any]) -> float:
    return sum(_numbers(values))


def _average(values: list[Any]) -> float:
    # empty set returns 0 rather than #DIV/0!, matching MIN/MAX below
    numbers = _numbers(values)
    return sum(numbers) / len(numbers) if numbers else 0


def _min(values: list[Any]) -> float:
    numbers = _numbers(values)
    return min(numbers) if numbers else 0


def _max(values: list[Any]) -> float:
    numbers = _numbers(values)
    return max(numbers) if numbers else 0


def _count(values: list[Any]) -> float:
    return len(_numbers(values))


DEFAULT_FUNCTIONS: dict[str, AggregateFunction] = {
    "SUM": _sum,
    "AVERAGE": _average,
    "AVG": _average,
    "MIN": _min,
    "MAX": _max,
    "COUNT": _count,
}


class FormulaEvaluator:
    """Evaluates formulas against a (row, col) -> value accessor.

    stateless apart from the function table, so one instance can be shared
    across sheets and tasks.
    """

    def __init__(self, functions: dict[str, AggregateFunction] | None = None) -> None:
        self.functions = dict(DEFAULT_FUNCTIONS)
        if functions:
            self.functions.update({name.upper(): fn for name, fn in functions.items()})

    def evaluate(self, formula: Any, get_cell: CellAccessor) -> Scalar:
        """Evaluate a cell's raw content.

        non-formula content (no leading '=') comes back as a number when it
        looks like one, otherwise unchanged.
        """
        if formula is None:
            return None
        if not isinstance(formula, str):
            return formula
        if not formula.strip().startswith("="):
            number = to_number(formula)
            return normalize_number(number) if number is not None else formula

        try:
            return self.evaluate_node(parse_formula(formula), get_cell)
        except CircularReferenceError:
            return CIRCULAR
        except Exception as e:
            # a bad cell must never take the sheet down with it
            logger.debug("formula_evaluation_failed", formula=formula, error=str(e))
            return ERROR

    def evaluate_node(self, node: ParsedFormula, get_cell: CellAccessor) -> Scalar:
        """Evaluate an already-parsed formula. Returns a sentinel on failure."""
        try:
            result = self._evaluate(node, get_cell)
        except _ErrorValue as e:
            return e.sentinel
        except (ParseError, SQLParseError, ArithmeticError, TypeError, ValueError):
            return ERROR

        if isinstance(result, float):
            return normalize_number(result)
        return result

    def _evaluate(self, node: ParsedFormula, get_cell: CellAccessor) -> Any:
        if isinstance(node, ValueNode):
            return node.value
        if isinstance(node, FunctionCall):
            return self._call(node, get_cell)
        return self._expression(node.text, get_cell)

    def _call(self, call: FunctionCall, get_cell: CellAccessor) -> Any:
        if call.name == "IF":
            return self._if(call, get_cell)

        fn = self.functions.get(call.name)
        if fn is None:
            raise _ErrorValue(NAME_ERROR)

        values = list(self._expand(call.args, get_cell))
        for value in values:
            if is_error(value):
                raise _ErrorValue(value)
        return fn(values)

    def _if(self, call: FunctionCall, get_cell: CellAccessor) -> Any:
        # IF is lazy - only the chosen branch is evaluated
        if not 2 <= len(call.args) <= 3:
            raise _ErrorValue(ERROR)

        condition = self._scalar(call.args[0], get_cell)
        if _truthy(condition):
            return self._scalar(call.args[1], get_cell)
        if len(call.args) == 3:
            return self._scalar(call.args[2], get_cell)
        return False

    def _expand(self, args: tuple, get_cell: CellAccessor) -> Iterator[Any]:
        """Flatten function arguments to values. Ranges expand row-major."""
        for arg in args:
            if isinstance(arg, RangeReference):
                for row, col in arg.iter_coords():
                    yield get_cell(row, col)
            else:
                yield self._scalar(arg, get_cell)

    def _scalar(self, arg: Any, get_cell: CellAccessor) -> Any:
        if isinstance(arg, CellReference):
            value = get_cell(arg.row_index, arg.col_index)
        elif isinstance(arg, RangeReference):
            raise _ErrorValue(ERROR)
        elif isinstance(arg, FunctionCall):
            value = self._call(arg, get_cell)
        elif isinstance(arg, RawExpression):
            value = self._expression(arg.text, get_cell)
        else:
            value = arg

        if is_error(value):
            raise _ErrorValue(value)
        return value

    def _expression(self, text: str, get_cell: CellAccessor) -> Any:
        text = self._inline_calls(text, get_cell)
        # spreadsheet strings are double-quoted, sql wants single quotes
        text = _DOUBLE_QUOTED.sub(lambda m: _sql_string(m.group(1)), text)
        tree = parse_one(text)
        return self._walk(tree, get_cell)

    def _inline_calls(self, text: str, get_cell: CellAccessor) -> str:
        """Replace nested calls like SUM(A1:A3) with their value."""
        masked = mask_string_literals(text)
        out: list[str] = []
        pos = 0
        while True:
            match = _CALL_IN_EXPRESSION.search(masked, pos)
            if not match:
                out.append(text[pos:])
                return "".join(out)

            close = find_closing_paren(text, match.end() - 1)
            if close == -1:
                raise _ErrorValue(ERROR)

            node = parse_formula(text[match.start() : close + 1])
            if not isinstance(node, FunctionCall):
                raise _ErrorValue(ERROR)
            value = self._call(node, get_cell)
            if is_error(value):
                raise _ErrorValue(value)

            out.append(text[pos : match.start()])
            out.append(_sql_literal(value))
            pos = close + 1

    def _walk(self, node: exp.Expression, get_cell: CellAccessor) -> Any:
        if isinstance(node, exp.Paren):
            return self._walk(node.this, get_cell)

        if isinstance(node, exp.Literal):
            return node.this if node.is_string else float(node.this)

        if isinstance(node, exp.Boolean):
            return bool(node.this)

        if isinstance(node, exp.Column):
            ref = parse_cell_reference(node.name)
            value = get_cell(ref.row_index, ref.col_index)
            if is_error(value):
                raise _ErrorValue(value)
            return value

        if isinstance(node, exp.Neg):
            return -_operand(self._walk(node.this, get_cell))

        if isinstance(node, exp.BitwiseXor):
            return self._walk(_with_power_precedence(node), get_cell)

        op = _ARITHMETIC.get(type(node))
        if op is not None:
            left = _operand(self._walk(node.left, get_cell))
            right = _operand(self._walk(node.right, get_cell))
            if op in (operator.truediv, operator.mod) and right == 0:
                raise _ErrorValue(DIV_ZERO)
            return op(left, right)

        compare = _COMPARISON.get(type(node))
        if compare is not None:
            left = self._walk(node.left, get_cell)
            right = self._walk(node.right, get_cell)
            return _compare(compare, left, right)

        raise _ErrorValue(ERROR)


def _flatten(node: exp.Expression, out: list) -> None:
    # parenthesized groups stay whole, they are operands here
    if type(node) in _PRECEDENCE:
        _flatten(node.left, out)
        out.append(type(node))
        _flatten(node.right, out)
    else:
        out.append(node)


def _climb(items: list, pos: int, min_precedence: int) -> tuple[exp.Expression, int]:
    left = items[pos]
    pos += 1
    while pos < len(items) and _PRECEDENCE[items[pos]] >= min_precedence:
        op = items[pos]
        right, pos = _climb(items, pos + 1, _PRECEDENCE[op] + 1)
        node_type = exp.Pow if op is exp.BitwiseXor else op
        left = node_type(this=left, expression=right)
    return left, pos


def _with_power_precedence(node: exp.BitwiseXor) -> exp.Expression:
    items: list = []
    _flatten(node, items)
    return _climb(items, 0, 1)[0]


def _operand(value: Any) -> float:
    # empty and text operands are errors in arithmetic, unlike in SUM()
    if isinstance(value, bool):
        return float(value)
    number = to_number(value)
    if number is None:
        raise _ErrorValue(ERROR)
    return number


def _compare(compare: Callable[[Any, Any], bool], left: Any, right: Any) -> bool:
    left_num, right_num = to_number(left), to_number(right)
    if left_num is not None and right_num is not None:
        return compare(left_num, right_num)
    # text comparison is case-insensitive like in spreadsheets
    return compare(_text(left), _text(right))


def _text(value: Any) -> str:
    return "" if value is None else str(value).upper()


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().upper() in ("TRUE", "FALSE"):
        return value.strip().upper() == "TRUE"
    number = to_number(value)
    if number is None:
        raise _ErrorValue(ERROR)
    return number != 0


def _sql_string(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def _sql_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    number = to_number(value)
    if number is not None:
        # parenthesized so A1-SUM(...) with a negative sum doesn't become "--"
        return f"({number!r})"
    if value is None:
        raise _ErrorValue(ERROR)
    return _sql_string(str(value))


def get_formula_dependencies(formula: str) -> list[Reference]:
    """References a formula depends on, as the parser extracted them."""
    if not isinstance(formula, str) or not formula.strip().startswith("="):
        return []
    return list(parse_formula(formula).references)


def get_dependency_coords(formula: str) -> list[tuple[int, int]]:
    """Dependencies expanded to 0-indexed (row, col) cells, deduped."""
    coords: list[tuple[int, int]] = []
    for ref in get_formula_dependencies(formula):
        cells = ref.iter_coords() if isinstance(ref, RangeReference) else [ref.coords]
        for cell in cells:
            if cell not in coords:
                coords.append(cell)
    return coords


def has_circular_dependency(
    row: int,
    col: int,
    formula: str,
    get_formula: Callable[[int, int], Any],
) -> bool:
    """Static check: would putting `formula` at (row, col) create a cycle?

    walks the dependency graph through get_formula, which returns a cell's raw
    content (formula text or plain value).
    """
    target = (row, col)
    stack = list(get_dependency_coords(formula))
    visited: set[tuple[int, int]] = set()

    while stack:
        cell = stack.pop()
        if cell == target:
            return True
        if cell in visited:
            continue
        visited.add(cell)
        raw = get_formula(*cell)
        if isinstance(raw, str):
            stack.extend(get_dependency_coords(raw))
    return False


class SheetCalculator:
    """Evaluates a whole grid where formulas can reference other formulas.

    results are memoized per pass. an in-progress set catches cycles: A1=B1+1
    with B1=A1 gives #CIRCULAR! in both cells instead of recursing forever.
    call invalidate() after editing the grid.
    """

    def __init__(
        self,
        grid: list[list[Any]],
        evaluator: FormulaEvaluator | None = None,
        overrides: dict[tuple[int, int], Scalar] | None = None,
    ) -> None:
        self.grid = grid
        self.evaluator = evaluator or FormulaEvaluator()
        # precomputed values, e.g. METRIC() cells resolved asynchronously
        self.overrides = overrides or {}
        self._values: dict[tuple[int, int], Scalar] = {}
        self._in_progress: set[tuple[int, int]] = set()

    def raw(self, row: int, col: int) -> Any:
        if row < 0 or col < 0 or row >= len(self.grid):
            return None
        cells = self.grid[row]
        return cells[col] if col < len(cells) else None

    def value(self, row: int, col: int) -> Scalar:
        key = (row, col)
        if key in self.overrides:
            return self.overrides[key]
        if key in self._values:
            return self._values[key]

        raw = self.raw(row, col)
        if not (isinstance(raw, str) and raw.strip().startswith("=")):
            return self.evaluator.evaluate(raw, self.value) if isinstance(raw, str) else raw

        if key in self._in_progress:
            raise CircularReferenceError(coords_to_cell(row, col))

        self._in_progress.add(key)
        try:
            result = self.evaluator.evaluate(raw, self.value)
        finally:
            self._in_progress.discard(key)

        self._values[key] = result
        return result

    def evaluate_all(self) -> list[list[Scalar]]:
        return [
            [self.value(row, col) for col in range(len(cells))]
            for row, cells in enumerate(self.grid)
        ]

    def invalidate(self) -> None:
        self._values.clear()
