"""Detect time axes (grain + periods) from spreadsheet header rows.

headers are whatever people type: "Q1 2024", "Jan '24", "2024-03", "FY24",
"1/1/2025". each header is tried against the parsers in a fixed order and
the first hit wins:

    day -> quarter -> month -> year

day goes first so "2024-01-15" isn't read as a month. quarter goes before
month so "2024 Q1" isn't mistaken for something month-ish, and year goes
last because a bare "2024" is the least specific reading.
"""

import re
from collections import Counter
from collections.abc import Sequence
from datetime import date, datetime, timezone
from typing import Any

from cellforge.logging import get_logger
from cellforge.models.time_context import (
    Confidence,
    DatePeriod,
    DetectedDateRange,
    DetectedTimeContext,
    Grain,
    PeriodWindow,
)
from cellforge.timecontext.grain import period_bounds, period_window

logger = get_logger(__name__)

MIN_PERIODS = 3
MIN_YEAR, MAX_YEAR = 1900, 2100
# ranges below the target row only win when nothing sits above it
BELOW_ROW_PENALTY = 1000

MONTH_NAMES = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]

SUMMARY_COLUMN = re.compile(r"total|sum|avg|average", re.IGNORECASE)

_DAY_US = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})$")
_DAY_ISO = re.compile(r"^(\d{4})[/-](\d{1,2})[/-](\d{1,2})$")

_QUARTER_FIRST = re.compile(r"^Q([1-4])[\s-]+(\d{4})$", re.IGNORECASE)
_QUARTER_SHORT_YEAR = re.compile(r"^Q([1-4])\s+'(\d{2})$", re.IGNORECASE)
_YEAR_THEN_QUARTER = re.compile(r"^(\d{4})\s*-?\s*Q([1-4])$", re.IGNORECASE)

_MONTH_NAME = re.compile(r"^([A-Za-z]{3,})\.?[\s-]+'?(\d{4}|\d{2})$")
_MONTH_ISO = re.compile(r"^(\d{4})[-/](\d{1,2})$")
_MONTH_US = re.compile(r"^(\d{1,2})/(\d{4})$")

_YEAR = re.compile(r"^(\d{4})$")
_FISCAL_YEAR = re.compile(r"^FY\s*(\d{4}|\d{2})$", re.IGNORECASE)
_SHORT_YEAR = re.compile(r"^'(\d{2})$")


def _year(text: str) -> int | None:
    year = int(text)
    if len(text) == 2:
        year += 2000
    return year if MIN_YEAR <= year <= MAX_YEAR else None


def _month_from_name(name: str) -> int | None:
    # "Jan", "Sept", "January" all work; "Ja" and "Revenue" don't
    name = name.lower()
    for index, full in enumerate(MONTH_NAMES):
        if full.startswith(name):
            return index + 1
    return None


def _with_bounds(period: DatePeriod) -> DatePeriod:
    start, end = period_bounds(period)
    return period.model_copy(update={"start": start, "end": end})


def parse_day_label(label: str) -> DatePeriod | None:
    for pattern, iso in ((_DAY_US, False), (_DAY_ISO, True)):
        match = pattern.match(label)
        if not match:
            continue
        if iso:
            year_text, month, day = match.group(1), int(match.group(2)), int(match.group(3))
        else:
            month, day, year_text = int(match.group(1)), int(match.group(2)), match.group(3)

        year = _year(year_text)
        if year is None:
            continue
        try:
            value = date(year, month, day)
        except ValueError:
            # 2/30/2024 and friends
            continue
        return DatePeriod(
            label=label,
            grain=Grain.DAY,
            year=year,
            period=month * 100 + day,
            start=value,
            end=value,
        )
    return None


def parse_quarter_label(label: str) -> DatePeriod | None:
    quarter_text: str | None = None
    year_text: str | None = None

    for pattern in (_QUARTER_FIRST, _QUARTER_SHORT_YEAR):
        match = pattern.match(label)
        if match:
            quarter_text, year_text = match.group(1), match.group(2)
            break
    else:
        match = _YEAR_THEN_QUARTER.match(label)
        if match:
            year_text, quarter_text = match.group(1), match.group(2)

    if quarter_text is None or year_text is None:
        return None
    year = _year(year_text)
    if year is None:
        return None
    return _with_bounds(
        DatePeriod(label=label, grain=Grain.QUARTER, year=year, period=int(quarter_text))
    )


def parse_month_label(label: str) -> DatePeriod | None:
    month: int | None = None
    year_text: str | None = None

    match = _MONTH_NAME.match(label)
    if match:
        month, year_text = _month_from_name(match.group(1)), match.group(2)
    else:
        match = _MONTH_ISO.match(label)
        if match:
            year_text, month = match.group(1), int(match.group(2))
        else:
            match = _MONTH_US.match(label)
            if match:
                month, year_text = int(match.group(1)), match.group(2)

    if month is None or year_text is None or not 1 <= month <= 12:
        return None
    year = _year(year_text)
    if year is None:
        return None
    return _with_bounds(DatePeriod(label=label, grain=Grain.MONTH, year=year, period=month))


def parse_year_label(label: str) -> DatePeriod | None:
    for pattern in (_YEAR, _FISCAL_YEAR, _SHORT_YEAR):
        match = pattern.match(label)
        if match:
            year = _year(match.group(1))
            if year is None:
                return None
            return _with_bounds(DatePeriod(label=label, grain=Grain.YEAR, year=year))
    return None


def parse_date_label(label: str) -> DatePeriod | None:
    """Parse one header into a period, or None if it isn't a date."""
    text = label.strip()
    if not text:
        return None
    return (
        parse_day_label(text)
        or parse_quarter_label(text)
        or parse_month_label(text)
        or parse_year_label(text)
    )


def normalize_periods(periods: list[DatePeriod]) -> list[DatePeriod]:
    """Upgrade all-first-of-month daily headers to monthly periods.

    1/1/2024, 2/1/2024, 3/1/2024 is a monthly axis that happens to be typed
    as dates. only applies when *every* period is a day on the 1st.
    """
    if not periods:
        return periods
    if not all(p.grain == Grain.DAY and p.start is not None and p.start.day == 1 for p in periods):
        return periods

    return [
        _with_bounds(p.model_copy(update={"grain": Grain.MONTH, "period": p.start.month}))
        for p in periods
    ]


def format_period(period: DatePeriod) -> str:
    """2024-Q1, 2024-03, 2024 or 2024-03-15."""
    if period.grain == Grain.QUARTER:
        return f"{period.year}-Q{period.period}"
    if period.grain == Grain.MONTH:
        return f"{period.year}-{period.period:02d}"
    if period.grain == Grain.YEAR:
        return str(period.year)
    if period.start is not None:
        return period.start.isoformat()
    return period.label


def header_text(cell: Any) -> str:
    """Header cells can be plain values or {"raw": ..., "display": ...} dicts.

    display wins when present since that's what the user sees (formula
    results, formatted dates).
    """
    if isinstance(cell, dict):
        cell = cell.get("display") or cell.get("raw")
    if cell is None:
        return ""
    if isinstance(cell, datetime):
        return cell.date().isoformat()
    if isinstance(cell, date):
        return cell.isoformat()
    return str(cell).strip()


def _scan(headers: Sequence[Any], start_col: int) -> list[tuple[int, DatePeriod]]:
    found: list[tuple[int, DatePeriod]] = []
    for col in range(start_col, len(headers)):
        text = header_text(headers[col])
        if not text:
            continue
        if SUMMARY_COLUMN.search(text):
            continue
        parsed = parse_date_label(text)
        if parsed:
            found.append((col, parsed))
        elif found:
            # trailing non-date columns end the axis
            break
    return found


def _build(found: list[tuple[int, DatePeriod]]) -> tuple[list[int], DetectedTimeContext] | None:
    if len(found) < MIN_PERIODS:
        return None

    columns = [col for col, _ in found]
    periods = normalize_periods([p for _, p in found])

    counts = Counter(p.grain for p in periods)
    confidence = Confidence.HIGH
    if len(counts) > 1:
        # most_common is stable, so ties go to the grain seen first
        majority = counts.most_common(1)[0][0]
        kept = [(c, p) for c, p in zip(columns, periods) if p.grain == majority]
        columns = [c for c, _ in kept]
        periods = [p for _, p in kept]
        confidence = Confidence.MEDIUM
        if len(periods) < MIN_PERIODS:
            return None

    context = DetectedTimeContext(
        grain=periods[0].grain,
        periods=periods,
        start_period=format_period(periods[0]),
        end_period=format_period(periods[-1]),
        confidence=confidence,
    )
    return columns, context


def detect_time_context(headers: Sequence[Any], start_col: int = 1) -> DetectedTimeContext | None:
    """Detect the time axis in one header row.

    start_col skips the label column(s) on the left. returns None when fewer
    than three periods are found - one or two date-looking headers are too
    often a coincidence.
    """
    built = _build(_scan(headers, start_col))
    return built[1] if built else None


def detect_all_date_ranges(
    grid: Sequence[Sequence[Any]],
    previous: Sequence[DetectedDateRange] | None = None,
    start_col: int = 1,
    now: datetime | None = None,
) -> list[DetectedDateRange]:
    """Scan every row of a grid for time axes.

    diffed against the previous pass: a range with the same grain, start
    and end as before keeps its detected_at and is no longer new. a new or
    changed range is flagged is_new with a fresh timestamp.
    """
    now = now or datetime.now(timezone.utc)
    previous_by_row = {r.row_index: r for r in previous or []}
    ranges: list[DetectedDateRange] = []

    for row_index, row in enumerate(grid):
        built = _build(_scan(row, start_col))
        if built is None:
            continue
        columns, context = built

        candidate = DetectedDateRange(
            row_index=row_index,
            start_col=columns[0],
            end_col=columns[-1],
            columns=columns,
            context=context,
            is_new=True,
            detected_at=now,
        )

        prior = previous_by_row.get(row_index)
        if prior is not None and prior.same_range(candidate):
            candidate = candidate.model_copy(
                update={"is_new": False, "detected_at": prior.detected_at}
            )
        elif prior is not None:
            logger.debug(
                "date_range_changed",
                row=row_index,
                previous=f"{prior.context.start_period}..{prior.context.end_period}",
                current=f"{context.start_period}..{context.end_period}",
            )
        ranges.append(candidate)

    return ranges


def find_closest_date_range(
    ranges: Sequence[DetectedDateRange], target_row: int
) -> DetectedDateRange | None:
    """Nearest range at or above target_row; ranges below are a last resort."""
    closest: DetectedDateRange | None = None
    best = float("inf")

    for candidate in ranges:
        if candidate.row_index <= target_row:
            distance = target_row - candidate.row_index
        else:
            distance = candidate.row_index - target_row + BELOW_ROW_PENALTY
        if distance < best:
            best = distance
            closest = candidate

    return closest


def time_context_for_column(
    col: int, row: int, ranges: Sequence[DetectedDateRange]
) -> PeriodWindow | None:
    """Date window for a data cell, from the nearest header row above it.

    only ranges that actually have a period in this column count, so a
    METRIC() cell under a "Total" column gets no window.
    """
    candidates = [r for r in ranges if r.row_index < row and col in r.columns]
    if not candidates:
        return None

    header = max(candidates, key=lambda r: r.row_index)
    period = header.context.periods[header.columns.index(col)]
    return period_window(period)


def describe_time_context(context: DetectedTimeContext) -> str:
    labels = {
        Grain.QUARTER: "Quarterly",
        Grain.MONTH: "Monthly",
        Grain.YEAR: "Annual",
        Grain.DAY: "Daily",
    }
    return f"{labels[context.grain]} periods from {context.start_period} to {context.end_period}"


def time_context_count(context: DetectedTimeContext) -> str:
    count = len(context.periods)
    unit = context.grain.value
    return f"{count} {unit}{'s' if count != 1 else ''}"
