"""Grain arithmetic: period boundaries, formatting, and inference from dates."""

import re
from collections.abc import Sequence
from datetime import date, timedelta

from cellforge.models.time_context import DatePeriod, Grain, PeriodWindow

MONTH_ABBR = ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]

_ISO_MONTH_OR_DAY = re.compile(r"^(\d{4})-(\d{2})(?:-(\d{2}))?$")
_QUARTER = re.compile(r"^(?:(\d{4})-?Q([1-4])|Q([1-4])\s+(\d{4}))$", re.IGNORECASE)
_YEAR = re.compile(r"^(\d{4})$")
_MONTH_NAME = re.compile(r"^([a-z]+)\s+(\d{4})$", re.IGNORECASE)


def infer_grain_from_dates(dates: Sequence[date]) -> Grain:
    """Guess the grain from the mean gap between consecutive dates.

    tolerance bands absorb month-length noise (28-31 days still reads as
    monthly). anything outside the bands falls back to month, which is the
    most common spreadsheet layout.
    """
    if len(dates) < 2:
        return Grain.MONTH

    diffs = [abs((b - a).days) for a, b in zip(dates, dates[1:])]
    avg = sum(diffs) / len(diffs)

    if avg <= 1:
        return Grain.DAY
    if 25 <= avg <= 35:
        return Grain.MONTH
    if 85 <= avg <= 95:
        return Grain.QUARTER
    if 360 <= avg <= 370:
        return Grain.YEAR
    return Grain.MONTH


def grain_start(value: date, grain: Grain) -> date:
    """First day of the period containing `value`."""
    if grain == Grain.DAY:
        return value
    if grain == Grain.MONTH:
        return value.replace(day=1)
    if grain == Grain.QUARTER:
        return date(value.year, ((value.month - 1) // 3) * 3 + 1, 1)
    return date(value.year, 1, 1)


def grain_end(value: date, grain: Grain) -> date:
    """Last day (inclusive) of the period containing `value`."""
    return next_period_start(value, grain) - timedelta(days=1)


def next_period_start(value: date, grain: Grain) -> date:
    start = grain_start(value, grain)
    if grain == Grain.DAY:
        return start + timedelta(days=1)
    if grain == Grain.YEAR:
        return date(start.year + 1, 1, 1)
    months = 1 if grain == Grain.MONTH else 3
    month_index = start.month - 1 + months
    return date(start.year + month_index // 12, month_index % 12 + 1, 1)


def format_date_for_grain(value: date, grain: Grain) -> str:
    if grain == Grain.DAY:
        return value.isoformat()
    if grain == Grain.MONTH:
        return f"{value.year}-{value.month:02d}"
    if grain == Grain.QUARTER:
        return f"{value.year}-Q{(value.month - 1) // 3 + 1}"
    return str(value.year)


def period_bounds(period: DatePeriod) -> tuple[date, date]:
    """Inclusive (first, last) day covered by a parsed header period."""
    if period.grain == Grain.DAY and period.start is not None:
        return period.start, period.start

    if period.grain == Grain.QUARTER:
        anchor = date(period.year, (period.period - 1) * 3 + 1, 1)
    elif period.grain == Grain.MONTH:
        anchor = date(period.year, period.period, 1)
    elif period.grain == Grain.DAY:
        anchor = date(period.year, period.period // 100, period.period % 100)
    else:
        anchor = date(period.year, 1, 1)
    return grain_start(anchor, period.grain), grain_end(anchor, period.grain)


def period_window(period: DatePeriod) -> PeriodWindow:
    """Half-open [start, end) window, the shape metric queries take."""
    start, last = period_bounds(period)
    return PeriodWindow(start=start, end=last + timedelta(days=1), grain=period.grain)


def parse_header_date(header: str) -> date | None:
    """Anchor date for a loosely formatted header, for grain inference.

    narrower than the detector's parsers - it only needs a representative
    date per column, not a full period.
    """
    text = header.strip()

    match = _ISO_MONTH_OR_DAY.match(text)
    if match:
        year, month, day = match.groups()
        try:
            return date(int(year), int(month), int(day) if day else 1)
        except ValueError:
            return None

    match = _QUARTER.match(text)
    if match:
        year = match.group(1) or match.group(4)
        quarter = match.group(2) or match.group(3)
        return date(int(year), (int(quarter) - 1) * 3 + 1, 1)

    match = _YEAR.match(text)
    if match:
        return date(int(match.group(1)), 1, 1)

    match = _MONTH_NAME.match(text)
    if match:
        abbr = match.group(1).lower()[:3]
        if abbr in MONTH_ABBR:
            return date(int(match.group(2)), MONTH_ABBR.index(abbr) + 1, 1)

    return None


def infer_grain_from_headers(headers: Sequence[str]) -> Grain:
    dates = [d for d in (parse_header_date(h) for h in headers if h) if d is not None]
    return infer_grain_from_dates(dates)
