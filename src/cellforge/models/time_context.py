"""Pydantic models for time contexts detected from spreadsheet headers."""

from datetime import date, datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class Grain(str, Enum):
    """Calendar granularity of a time axis."""

    DAY = "day"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DatePeriod(BaseModel):
    """One parsed header, e.g. "Q1 2024" or "Mar '24".

    period meaning depends on grain: quarter number, month number, or
    month*100+day for days (sortable). None for years.
    """

    label: str
    grain: Grain
    year: int
    period: int | None = None
    start: date | None = None  # first day, inclusive
    end: date | None = None  # last day, inclusive

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.year, self.period or 0)


class DetectedTimeContext(BaseModel):
    """A run of same-grain periods found in one header row."""

    grain: Grain
    periods: list[DatePeriod]
    start_period: str  # formatted, e.g. 2024-Q1
    end_period: str
    confidence: Confidence = Confidence.HIGH

    @model_validator(mode="after")
    def validate_single_grain(self) -> "DetectedTimeContext":
        # mixed grains are filtered out before we get here
        if any(p.grain != self.grain for p in self.periods):
            raise ValueError("All periods in a time context must share one grain")
        return self


class DetectedDateRange(BaseModel):
    """Where a time context sits in the grid, tracked across detection passes."""

    row_index: int
    start_col: int
    end_col: int
    # grid column of each period, same order as context.periods
    columns: list[int] = Field(default_factory=list)
    context: DetectedTimeContext
    is_new: bool = True
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def same_range(self, other: "DetectedDateRange") -> bool:
        return (
            self.context.grain == other.context.grain
            and self.context.start_period == other.context.start_period
            and self.context.end_period == other.context.end_period
        )


class PeriodWindow(BaseModel):
    """Half-open [start, end) window for one period."""

    start: date
    end: date  # exclusive
    grain: Grain
