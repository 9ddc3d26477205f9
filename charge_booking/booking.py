from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .errors import ValidationError


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` on the absolute clock.

    Naive datetimes are taken to be UTC already; aware ones are converted.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if not validate(self.start, self.end):
            raise ValidationError("Booking start time must be earlier than end time.", guard="window")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeWindow") -> bool:
        return overlaps(self, other)


def validate(start: datetime, end: datetime, max_duration: timedelta | None = None) -> bool:
    if end <= start:
        return False
    if max_duration is not None and end - start > max_duration:
        return False
    return True


def within_advance_limit(start: datetime, now: datetime, limit: timedelta) -> bool:
    return ensure_utc(start) <= ensure_utc(now) + limit


def has_lead_time(start: datetime, now: datetime, lead: timedelta) -> bool:
    return ensure_utc(start) - ensure_utc(now) >= lead


def overlaps(a: TimeWindow, b: TimeWindow) -> bool:
    """Return True when two windows share at least one instant.

    Windows are half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-11:00 and 11:00-12:00) do not overlap.
    """
    return a.start < b.end and a.end > b.start
