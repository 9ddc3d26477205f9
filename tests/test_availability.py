import tempfile
import unittest
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path

from charge_booking import (
    AvailabilityGrid,
    BookingStatus,
    BookingWorkflow,
    BookingYamlLedger,
    Caller,
    NotFoundError,
    Role,
    StationRecord,
    StationYamlDirectory,
    ValidationError,
    build_availability_grid,
    parse_local_date,
)

NOW = datetime(2025, 10, 12, 0, 0, tzinfo=timezone.utc)
COLOMBO = 330


def _utc(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 10, day, hour, minute, tzinfo=timezone.utc)


class TestParseLocalDate(unittest.TestCase):
    def test_accepts_three_separators(self) -> None:
        for text in ("2025-10-13", "2025.10.13", "2025/10/13", "2025-1-5", " 2025-10-13 "):
            with self.subTest(text=text):
                parsed = parse_local_date(text)
                self.assertEqual(parsed.year, 2025)
        self.assertEqual(parse_local_date("2025.10.13"), date(2025, 10, 13))

    def test_rejects_malformed_dates(self) -> None:
        for text in ("", "13-10-2025", "2025-10/13", "2025-13-01", "2025-02-30", "tomorrow"):
            with self.subTest(text=text):
                with self.assertRaises(ValidationError) as raised:
                    parse_local_date(text)
                self.assertEqual(raised.exception.guard, "date_format")


class TestAvailabilityGrid(unittest.TestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        data_dir = Path(temp_dir.name) / "data"
        self.ledger = BookingYamlLedger(data_dir)
        self.stations = StationYamlDirectory(data_dir)
        self.station = self.stations.add(StationRecord("ST1", capacity=2))

    def _grid(self, local_date: str = "2025-10-13", offset: int = COLOMBO) -> AvailabilityGrid:
        return build_availability_grid(self.ledger, self.station, local_date, offset)

    def test_colombo_day_maps_to_absolute_clock(self) -> None:
        self.ledger.create("owner-1", "ST1", _utc(13, 4, 30), _utc(13, 5), now=NOW)

        grid = self._grid()
        slots = {slot.label: slot for slot in grid}

        self.assertEqual(grid.day_window.start, _utc(12, 18, 30))
        self.assertEqual(grid.day_window.end, _utc(13, 18, 30))
        self.assertEqual(slots["10:00"].window.start, _utc(13, 4, 30))
        self.assertEqual(slots["10:00"].window.end, _utc(13, 5))
        self.assertEqual(slots["10:00"].free_slots, 1)
        self.assertEqual(slots["09:30"].free_slots, 2)
        self.assertEqual(slots["10:30"].free_slots, 2)

    def test_grid_has_one_entry_per_half_hour(self) -> None:
        grid = self._grid()
        labels = [slot.label for slot in grid]

        self.assertEqual(len(grid), 48)
        self.assertEqual(len(labels), 48)
        self.assertEqual(labels[0], "00:00")
        self.assertEqual(labels[-1], "23:30")

    def test_free_slots_stay_within_capacity(self) -> None:
        self.ledger.create("owner-1", "ST1", _utc(13, 4), _utc(13, 6), now=NOW)
        self.ledger.create("owner-2", "ST1", _utc(13, 4, 30), _utc(13, 5), now=NOW)
        self.ledger.create("owner-3", "ST1", _utc(13, 4, 30), _utc(13, 5, 30), now=NOW)

        for slot in self._grid():
            with self.subTest(label=slot.label):
                self.assertGreaterEqual(slot.free_slots, 0)
                self.assertLessEqual(slot.free_slots, self.station.capacity)
        slots = {slot.label: slot.free_slots for slot in self._grid()}
        self.assertEqual(slots["10:00"], 0)
        self.assertEqual(slots["11:00"], 1)

    def test_terminal_bookings_are_ignored(self) -> None:
        created = self.ledger.create("owner-1", "ST1", _utc(13, 4, 30), _utc(13, 5), now=NOW)
        self.ledger.save(replace(created, status=BookingStatus.CANCELLED, updated_at=NOW))

        self.assertTrue(all(slot.free_slots == 2 for slot in self._grid()))

    def test_negative_offset_and_restartable_iteration(self) -> None:
        self.ledger.create("owner-1", "ST1", _utc(13, 14), _utc(13, 15), now=NOW)

        grid = self._grid(offset=-300)
        self.assertEqual(grid.day_window.start, _utc(13, 5))
        first_pass = list(grid)
        second_pass = list(grid)
        self.assertEqual(first_pass, second_pass)
        self.assertEqual({slot.label: slot.free_slots for slot in first_pass}["09:00"], 1)

    def test_to_dict(self) -> None:
        payload = self._grid().to_dict()

        self.assertEqual(payload["station_id"], "ST1")
        self.assertEqual(payload["date"], "2025-10-13")
        self.assertEqual(payload["tz_offset_minutes"], COLOMBO)
        self.assertEqual(payload["availability"][0], {"time": "00:00", "available_slots": 2})

    def test_bad_offsets_are_rejected(self) -> None:
        for offset in (1440, -1440, "330", 5.5):
            with self.subTest(offset=offset):
                with self.assertRaises(ValidationError):
                    self._grid(offset=offset)

    def test_workflow_availability_requires_an_active_station(self) -> None:
        workflow = BookingWorkflow(self.ledger, self.stations, now_provider=lambda: NOW)
        caller = Caller("owner-1", Role.OWNER)

        self.assertEqual(len(workflow.get_availability(caller, "ST1", "2025/10/13", COLOMBO)), 48)
        with self.assertRaises(NotFoundError):
            workflow.get_availability(caller, "ST404", "2025-10-13", COLOMBO)

        self.stations.save(replace(self.station, is_active=False))
        with self.assertRaises(NotFoundError):
            workflow.get_availability(caller, "ST1", "2025-10-13", COLOMBO)
