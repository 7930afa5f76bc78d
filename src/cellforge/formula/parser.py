"""Spreadsheet formula parser.

deliberately not a full grammar. a formula is one of three shapes:
- a plain number: =42
- a single function call wrapping the whole formula: =SUM(A1:A3, 10)
- anything else, kept as raw text for the arithmetic evaluator: =A1+B2*2

every shape carries the flat list of references so callers can track
dependencies without caring which shape they got.
"""

import re
from dataclasses import dataclass, field

from cellforge.errors import ParseError
from cellforge.formula.references import (
    CELL_PATTERN,
    RANGE_PATTERN,
    Reference,
    extract_references,
    parse_cell_reference,
    parse_range_reference,
)

_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_FUNCTION_START = re.compile(r"^([A-Z][A-Z0-9_.]*)\(")
_OPERATOR = re.compile(r"[-+*/^<>=&()]")
_QUOTES = "\"'"
_OPEN = "({["
_CLOSE = ")}]"


@dataclass(frozen=True)
class ValueNode:
    value: float
    references: tuple[Reference, ...] = ()


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: tuple["Argument", ...] = ()
    references: tuple[Reference, ...] = ()


@dataclass(frozen=True)
class RawExpression:
    text: str
    references: tuple[Reference, ...] = field(default=())


ParsedFormula = ValueNode | FunctionCall | RawExpression
Argument = Reference | FunctionCall | RawExpression | float | str


def strip_formula_prefix(formula: str) -> str:
    text = formula.strip()
    if text.startswith("="):
        text = text[1:].strip()
    return text


def parse_number(text: str) -> float | None:
    """Strict numeric literal check. "1,000" is not a literal here."""
    text = text.strip()
    if not _NUMBER.match(text):
        return None
    return float(text)


def parse_formula(formula: str) -> ParsedFormula:
    """Parse a formula string (with or without the leading '=').

    never raises for odd input - anything that isn't a number or a single
    function call falls through to RawExpression and the evaluator decides.
    """
    text = _upper_outside_strings(strip_formula_prefix(formula))

    number = parse_number(text)
    if number is not None:
        return ValueNode(value=number)

    references = tuple(extract_references(text))

    call = match_function_call(text)
    if call is not None:
        name, inner = call
        args = tuple(_classify_argument(arg) for arg in split_arguments(inner))
        return FunctionCall(name=name, args=args, references=references)

    return RawExpression(text=text, references=references)


def match_function_call(text: str) -> tuple[str, str] | None:
    """Return (NAME, inner args text) if the whole text is NAME(...).

    SUM(A1)+SUM(B1) starts like a call but the first paren closes early, so
    it's an expression, not a call.
    """
    match = _FUNCTION_START.match(text)
    if not match:
        return None

    close = find_closing_paren(text, match.end() - 1)
    if close != len(text) - 1:
        return None
    return match.group(1), text[match.end() : close]


def find_closing_paren(text: str, open_index: int) -> int:
    """Index of the bracket matching the one at open_index, or -1."""
    depth = 0
    quote: str | None = None
    for i in range(open_index, len(text)):
        char = text[i]
        if quote:
            if char == quote:
                quote = None
            continue
        if char in _QUOTES:
            quote = char
        elif char in _OPEN:
            depth += 1
        elif char in _CLOSE:
            depth -= 1
            if depth == 0:
                return i
    return -1


def split_arguments(inner: str) -> list[str]:
    """Split on top-level commas only.

    nesting is tracked across (), {} and [] and quoted strings are skipped,
    so METRIC("rev", {"a": "x", "b": "y"}) splits into two args, not three.
    """
    args: list[str] = []
    depth = 0
    quote: str | None = None
    current: list[str] = []

    for char in inner:
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in _QUOTES:
            quote = char
        elif char in _OPEN:
            depth += 1
        elif char in _CLOSE:
            depth -= 1
        elif char == "," and depth == 0:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(char)

    tail = "".join(current).strip()
    if tail or args:
        args.append(tail)
    return [arg for arg in args if arg]


def _classify_argument(arg: str) -> Argument:
    # order matters: reference, number, nested call, expression, string
    try:
        if RANGE_PATTERN.fullmatch(arg):
            return parse_range_reference(arg)
        if CELL_PATTERN.fullmatch(arg):
            return parse_cell_reference(arg)
    except ParseError:
        # e.g. A0 - looks like a ref but isn't one, keep it as text
        return arg

    number = parse_number(arg)
    if number is not None:
        return number

    if not _is_quoted(arg):
        if match_function_call(arg) is not None:
            return parse_formula(arg)
        refs = extract_references(arg)
        if refs or (_OPERATOR.search(arg) and not arg.startswith(("{", "["))):
            return RawExpression(text=arg, references=tuple(refs))

    if _is_quoted(arg):
        return arg[1:-1]
    return arg


def _is_quoted(arg: str) -> bool:
    return len(arg) >= 2 and arg[0] in _QUOTES and arg[-1] == arg[0]


def _upper_outside_strings(text: str) -> str:
    """Uppercase everything except quoted literals, so =sum(a1:a3) works."""
    out: list[str] = []
    quote: str | None = None
    for char in text:
        if quote:
            if char == quote:
                quote = None
            out.append(char)
            continue
        if char in _QUOTES:
            quote = char
            out.append(char)
        else:
            out.append(char.upper())
    return "".join(out)
