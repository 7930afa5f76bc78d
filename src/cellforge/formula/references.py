"""Cell and range references, plus column letter <-> index conversion.

two coordinate systems are in play:
- formula-facing: column letters + 1-indexed row, e.g. "C7"
- grid-facing: 0-indexed (row, col) tuples, e.g. (6, 2)

column letters are bijective base-26 (there's no zero digit), so A=0, Z=25,
AA=26, ZZ=701. easy to get off-by-one here, hence the tests.
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass

from cellforge.errors import ParseError

_LETTERS = re.compile(r"^[A-Za-z]+$")
_CELL = re.compile(r"^\$?([A-Za-z]+)\$?(\d+)$")

# used for scanning formulas - uppercase only, same as what users see in the grid
RANGE_PATTERN = re.compile(r"\b([A-Z]+\d+):([A-Z]+\d+)\b")
CELL_PATTERN = re.compile(r"\b([A-Z]+\d+)\b")
# string literals are masked out before scanning so "EU1" in METRIC(...) isn't a ref
_STRING_LITERAL = re.compile(r"\"[^\"]*\"|'[^']*'")


def column_to_index(letters: str) -> int:
    """Convert column letters to a 0-based index ("A" -> 0, "AA" -> 26)."""
    if not _LETTERS.match(letters or ""):
        raise ParseError(f"Invalid column letters: {letters!r}")

    index = 0
    for char in letters.upper():
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def index_to_column(index: int) -> str:
    """Convert a 0-based column index to letters (26 -> "AA")."""
    if index < 0:
        raise ValueError(f"Column index must be non-negative, got {index}")

    letters = ""
    n = index + 1
    while n > 0:
        n, remainder = divmod(n - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


@dataclass(frozen=True)
class CellReference:
    """A single cell, e.g. B3. row is 1-indexed like the formula text."""

    column: str
    row: int

    @property
    def row_index(self) -> int:
        return self.row - 1

    @property
    def col_index(self) -> int:
        return column_to_index(self.column)

    @property
    def coords(self) -> tuple[int, int]:
        """0-indexed (row, col) for grid access."""
        return (self.row_index, self.col_index)

    @classmethod
    def from_coords(cls, row: int, col: int) -> "CellReference":
        return cls(column=index_to_column(col), row=row + 1)

    def __str__(self) -> str:
        return f"{self.column}{self.row}"


@dataclass(frozen=True)
class RangeReference:
    """An inclusive rectangle of cells. start == end is allowed."""

    start: CellReference
    end: CellReference

    def iter_coords(self) -> Iterator[tuple[int, int]]:
        """Yield every cell's 0-indexed coords, row-major.

        corners are normalized so B3:A1 covers the same cells as A1:B3.
        """
        top, bottom = sorted((self.start.row_index, self.end.row_index))
        left, right = sorted((self.start.col_index, self.end.col_index))
        for row in range(top, bottom + 1):
            for col in range(left, right + 1):
                yield (row, col)

    def contains(self, cell: CellReference) -> bool:
        top, bottom = sorted((self.start.row_index, self.end.row_index))
        left, right = sorted((self.start.col_index, self.end.col_index))
        return top <= cell.row_index <= bottom and left <= cell.col_index <= right

    def __str__(self) -> str:
        return f"{self.start}:{self.end}"


Reference = CellReference | RangeReference


def parse_cell_reference(text: str) -> CellReference:
    """Parse "A1" (or "$A$1") into a CellReference. Raises ParseError."""
    match = _CELL.match(text.strip())
    if not match:
        raise ParseError(f"Invalid cell reference: {text!r}")

    row = int(match.group(2))
    if row < 1:
        raise ParseError(f"Row must be >= 1 in cell reference: {text!r}")
    return CellReference(column=match.group(1).upper(), row=row)


def parse_range_reference(text: str) -> RangeReference:
    """Parse "A1:C100" into a RangeReference. Raises ParseError."""
    parts = text.strip().split(":")
    if len(parts) != 2:
        raise ParseError(f"Invalid range reference: {text!r}")
    return RangeReference(
        start=parse_cell_reference(parts[0]),
        end=parse_cell_reference(parts[1]),
    )


def cell_to_coords(text: str) -> tuple[int, int]:
    """"B3" -> (2, 1)."""
    return parse_cell_reference(text).coords


def coords_to_cell(row: int, col: int) -> str:
    """(2, 1) -> "B3"."""
    return str(CellReference.from_coords(row, col))


def mask_string_literals(text: str) -> str:
    """Blank out quoted strings, keeping offsets so match spans still line up."""

    def blank(match: re.Match[str]) -> str:
        literal = match.group(0)
        return literal[0] + " " * (len(literal) - 2) + literal[-1]

    return _STRING_LITERAL.sub(blank, text)


def extract_references(text: str) -> list[Reference]:
    """Find every cell and range reference in a formula.

    two passes: ranges first, then bare cells. a bare cell is dropped when it's
    a range endpoint or already inside an extracted range, so SUM(A1:A3)+A2
    depends on [A1:A3] only. duplicates are dropped, first occurrence wins.
    """
    scan = mask_string_literals(text)
    references: list[Reference] = []
    ranges: list[RangeReference] = []
    range_spans: list[tuple[int, int]] = []

    for match in RANGE_PATTERN.finditer(scan):
        try:
            ref = parse_range_reference(match.group(0))
        except ParseError:
            continue
        range_spans.append(match.span())
        if ref not in ranges:
            ranges.append(ref)
            references.append(ref)

    seen: set[CellReference] = set()
    for match in CELL_PATTERN.finditer(scan):
        start, end = match.span()
        if any(lo <= start and end <= hi for lo, hi in range_spans):
            continue
        try:
            cell = parse_cell_reference(match.group(1))
        except ParseError:
            continue
        if cell in seen or any(r.contains(cell) for r in ranges):
            continue
        seen.add(cell)
        references.append(cell)

    return references
