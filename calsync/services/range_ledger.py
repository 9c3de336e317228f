"""Range ledger tracking which calendar windows have been loaded."""

import logging
from collections.abc import Iterable
from datetime import date

from calsync.domain.date_range import DateRange


logger = logging.getLogger(__name__)


def merge_ranges(ranges: Iterable[DateRange]) -> list[DateRange]:
    """Merge overlapping or touching ranges into a minimal sorted covering set.

    Ranges whose start falls at most one day after the previous range's end are
    joined. The result does not depend on input order and merging a result
    again returns it unchanged.

    Args:
        ranges: Ranges in any order, possibly overlapping

    Returns:
        Sorted, pairwise non-touching ranges covering the same dates
    """
    ordered = sorted(ranges, key=lambda r: (r.start, r.end))
    if not ordered:
        return []

    merged = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if last.touches(current):
            if current.end > last.end:
                merged[-1] = DateRange(start=last.start, end=current.end)
        else:
            merged.append(current)
    return merged


class RangeLedger:
    """Minimal covering set of confirmed-loaded date ranges."""

    def __init__(self, ranges: Iterable[DateRange] = ()) -> None:
        self._ranges: list[DateRange] = merge_ranges(ranges)

    @property
    def ranges(self) -> list[DateRange]:
        return list(self._ranges)

    def __len__(self) -> int:
        return len(self._ranges)

    def add(self, date_range: DateRange) -> list[DateRange]:
        """Record a loaded range, merging it with any range it touches.

        Returns:
            The updated covering set
        """
        self._ranges = merge_ranges([*self._ranges, date_range])
        logger.debug("Recorded range %s, ledger now %s", date_range, [str(r) for r in self._ranges])
        return self.ranges

    def covers(self, start: date, end: date) -> bool:
        """Return True if a single recorded range contains [start, end)."""
        return any(r.contains(start, end) for r in self._ranges)

    def range_containing(self, day: date) -> DateRange | None:
        """Return the recorded range whose bounds enclose the day (end inclusive)."""
        return next((r for r in self._ranges if r.start <= day <= r.end), None)

    def clear(self) -> None:
        self._ranges = []
