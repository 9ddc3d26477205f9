"""
Per-day availability grid for a station.

The caller names a calendar date in its own local time plus a fixed offset
from UTC in minutes (Colombo is +330). Local slot boundaries are mapped to
the absolute clock with ``absolute = local - offset`` and compared against
the station's active bookings there.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Iterator
import re

from .booking import TimeWindow
from .config import SLOT_MINUTES
from .errors import ValidationError
from .yaml_store import BookingRecord, BookingYamlLedger, StationRecord

_LOCAL_DATE_RE = re.compile(r"^\s*(?P<year>\d{4})(?P<sep>[-./])(?P<month>\d{1,2})(?P=sep)(?P<day>\d{1,2})\s*$")
MINUTES_PER_DAY = 24 * 60


def parse_local_date(text: str) -> date:
    """Parse ``YYYY-MM-DD``; ``.`` and ``/`` are accepted in place of ``-``."""
    match = _LOCAL_DATE_RE.match(text or "")
    if match is None:
        raise ValidationError("date must be yyyy-MM-dd (or yyyy.MM.dd / yyyy/MM/dd)", guard="date_format")
    try:
        return date(int(match.group("year")), int(match.group("month")), int(match.group("day")))
    except ValueError as error:
        raise ValidationError(f"invalid calendar date: {text.strip()}", guard="date_format") from error


def validate_offset(offset_minutes: int) -> int:
    if isinstance(offset_minutes, bool) or not isinstance(offset_minutes, int):
        raise ValidationError("tz offset must be a whole number of minutes", guard="tz_offset")
    if abs(offset_minutes) >= MINUTES_PER_DAY:
        raise ValidationError("tz offset must be less than 24 hours", guard="tz_offset")
    return offset_minutes


def to_absolute(local_value: datetime, offset_minutes: int) -> datetime:
    return local_value.replace(tzinfo=timezone.utc) - timedelta(minutes=offset_minutes)


def local_day_window(local_date: date, offset_minutes: int) -> TimeWindow:
    local_start = datetime.combine(local_date, time())
    return TimeWindow(
        to_absolute(local_start, offset_minutes),
        to_absolute(local_start + timedelta(days=1), offset_minutes),
    )


@dataclass(frozen=True)
class AvailabilitySlot:
    label: str
    window: TimeWindow
    free_slots: int

    def to_dict(self) -> dict[str, int | str]:
        return {"time": self.label, "available_slots": self.free_slots}


class AvailabilityGrid:
    """Lazy, restartable sequence of fixed-cadence slots over one local day.

    Bookings are captured when the grid is built; every iteration recomputes
    the slots from that snapshot.
    """

    def __init__(
        self,
        station_id: str,
        local_date: date,
        offset_minutes: int,
        capacity: int,
        bookings: Iterable[BookingRecord],
        slot_minutes: int = SLOT_MINUTES,
    ) -> None:
        if capacity < 0:
            raise ValidationError("capacity cannot be negative", guard="capacity")
        if slot_minutes <= 0 or MINUTES_PER_DAY % slot_minutes != 0:
            raise ValidationError("slot_minutes must evenly divide a day", guard="slot_minutes")
        self.station_id = station_id
        self.local_date = local_date
        self.offset_minutes = validate_offset(offset_minutes)
        self.capacity = capacity
        self.slot_minutes = slot_minutes
        self.day_window = local_day_window(local_date, self.offset_minutes)
        self._windows = tuple(record.window for record in bookings if record.is_active)

    def __len__(self) -> int:
        return MINUTES_PER_DAY // self.slot_minutes

    def __iter__(self) -> Iterator[AvailabilitySlot]:
        local_start = datetime.combine(self.local_date, time())
        step = timedelta(minutes=self.slot_minutes)
        for index in range(len(self)):
            local_slot = local_start + index * step
            slot_start = to_absolute(local_slot, self.offset_minutes)
            window = TimeWindow(slot_start, slot_start + step)
            overlapping = sum(1 for booked in self._windows if booked.overlaps(window))
            yield AvailabilitySlot(
                label=local_slot.strftime("%H:%M"),
                window=window,
                free_slots=max(0, self.capacity - overlapping),
            )

    def to_dict(self) -> dict[str, object]:
        return {
            "station_id": self.station_id,
            "date": self.local_date.isoformat(),
            "tz_offset_minutes": self.offset_minutes,
            "availability": [slot.to_dict() for slot in self],
        }


def build_availability_grid(
    ledger: BookingYamlLedger,
    station: StationRecord,
    local_date: str | date,
    offset_minutes: int,
    slot_minutes: int = SLOT_MINUTES,
) -> AvailabilityGrid:
    day = local_date if isinstance(local_date, date) else parse_local_date(local_date)
    day_window = local_day_window(day, validate_offset(offset_minutes))
    bookings = ledger.active_overlapping(station.station_id, day_window)
    return AvailabilityGrid(
        station_id=station.station_id,
        local_date=day,
        offset_minutes=offset_minutes,
        capacity=station.capacity,
        bookings=bookings,
        slot_minutes=slot_minutes,
    )
