"""Half-open time window helpers.

Every window is ``[start, end)``: two windows that only touch at an endpoint
do not overlap. Timestamps are kept as naive UTC, which is what the database
columns store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from equipment_loans.services.errors import InvalidWindow


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def overlaps(self, other: "TimeWindow") -> bool:
        return overlaps(self.start, self.end, other.start, other.end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_timestamp(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def make_window(start: datetime | None, end: datetime | None) -> TimeWindow:
    if start is None or end is None:
        raise InvalidWindow("Both start and end are required.")
    start = normalize_timestamp(start)
    end = normalize_timestamp(end)
    if end <= start:
        raise InvalidWindow("End time must be after start time.")
    return TimeWindow(start, end)


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    return start < other_end and end > other_start


def clip(window: TimeWindow, bounds: TimeWindow) -> TimeWindow | None:
    start = max(window.start, bounds.start)
    end = min(window.end, bounds.end)
    if end <= start:
        return None
    return TimeWindow(start, end)


def max_concurrent(windows: Iterable[TimeWindow], bounds: TimeWindow | None = None) -> int:
    """Return the peak number of windows open at the same instant.

    Windows are clipped to ``bounds`` first. At equal timestamps the end
    events sort before start events, so back-to-back windows never count as
    concurrent.
    """
    events: list[tuple[datetime, int]] = []
    for window in windows:
        if bounds is not None:
            window = clip(window, bounds)
            if window is None:
                continue
        events.append((window.start, 1))
        events.append((window.end, -1))

    events.sort()
    current = 0
    peak = 0
    for _, delta in events:
        current += delta
        if current > peak:
            peak = current
    return peak
