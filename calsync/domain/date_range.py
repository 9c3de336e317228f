"""Calendar date range covered by a fetch."""

from datetime import date, timedelta

from pydantic import BaseModel, ConfigDict, model_validator

from calsync.core.config import Constants


class DateRange(BaseModel):
    """Closed-open interval [start, end) of calendar dates."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def validate_order(self) -> "DateRange":
        """Validate end is not before start."""
        if self.end < self.start:
            msg = f"Range end {self.end} is before start {self.start}"
            raise ValueError(msg)
        return self

    @property
    def key(self) -> str:
        """Range key used to de-duplicate in-flight fetches."""
        return f"{self.start.strftime(Constants.DATE_FORMAT)}_{self.end.strftime(Constants.DATE_FORMAT)}"

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def contains(self, start: date, end: date) -> bool:
        """Return True if [start, end) lies entirely inside this range."""
        return self.start <= start and end <= self.end

    def touches(self, other: "DateRange") -> bool:
        """Return True if the ranges overlap or are within one day of each other."""
        gap = timedelta(days=Constants.RANGE_TOUCH_DAYS)
        return other.start <= self.end + gap and self.start <= other.end + gap

    def padded(self, days: int) -> "DateRange":
        """Return the range widened by the given number of days on each side."""
        return DateRange(start=self.start - timedelta(days=days), end=self.end + timedelta(days=days))

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"
