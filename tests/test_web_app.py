import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from charge_booking import StationRecord, StationYamlDirectory
from charge_booking.web_app import create_app

NOW = datetime(2025, 10, 13, 0, 0, tzinfo=timezone.utc)


def _headers(caller_id: str, role: str) -> dict[str, str]:
    return {"X-Caller-Id": caller_id, "X-Caller-Role": role}


OWNER = _headers("owner-1", "Owner")
OTHER_OWNER = _headers("owner-2", "Owner")
OPERATOR = _headers("op-1", "Operator")
BACKOFFICE = _headers("bo-1", "Backoffice")


class TestWebApp(unittest.TestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.data_dir = Path(temp_dir.name) / "data"
        StationYamlDirectory(self.data_dir).add(StationRecord("ST1", capacity=1, name="Colombo 01", operator_ids=("op-1",)))
        app = create_app(self.data_dir, now_provider=lambda: NOW)
        self.client = app.test_client()

    def _create(self, headers: dict[str, str], start: str, end: str) -> tuple[int, dict]:
        response = self.client.post(
            "/api/bookings",
            json={"station_id": "ST1", "start": start, "end": end},
            headers=headers,
        )
        return response.status_code, response.get_json()

    def test_booking_approval_and_session_flow(self) -> None:
        status_code, payload = self._create(OWNER, "2025-10-14T10:00:00+00:00", "2025-10-14T11:00:00+00:00")
        self.assertEqual(status_code, 201)
        self.assertTrue(payload["ok"])
        booking_id = payload["booking"]["booking_id"]
        self.assertEqual(payload["booking"]["status"], "Pending")

        approve = self.client.patch(f"/api/bookings/{booking_id}/approve", json={"approve": True}, headers=OPERATOR)
        self.assertEqual(approve.status_code, 200)
        approved = approve.get_json()
        self.assertEqual(approved["status"], "Approved")
        self.assertTrue(approved["session_token"])

        wrong = self.client.patch(f"/api/bookings/{booking_id}/start", json={"token": "nope"}, headers=OPERATOR)
        self.assertEqual(wrong.status_code, 403)
        self.assertEqual(wrong.get_json()["guard"], "session_token")

        started = self.client.patch(
            f"/api/bookings/{booking_id}/start",
            json={"token": approved["session_token"]},
            headers=OPERATOR,
        )
        self.assertEqual(started.status_code, 200)
        self.assertEqual(started.get_json()["status"], "InProgress")

        completed = self.client.patch(f"/api/bookings/{booking_id}/complete", headers=OPERATOR)
        self.assertEqual(completed.get_json()["status"], "Completed")

        again = self.client.patch(f"/api/bookings/{booking_id}/complete", headers=OPERATOR)
        self.assertEqual(again.status_code, 409)

    def test_overlapping_booking_conflicts(self) -> None:
        self._create(OWNER, "2025-10-13T10:00:00+00:00", "2025-10-13T11:00:00+00:00")
        status_code, payload = self._create(OTHER_OWNER, "2025-10-13T10:30:00+00:00", "2025-10-13T11:30:00+00:00")

        self.assertEqual(status_code, 409)
        self.assertFalse(payload["ok"])
        self.assertEqual(payload["error"], "ConflictError")
        self.assertEqual(payload["message"], "No slots available in this time window.")

    def test_edit_inside_lead_time_conflicts(self) -> None:
        _, payload = self._create(OWNER, "2025-10-13T10:00:00+00:00", "2025-10-13T11:00:00+00:00")
        booking_id = payload["booking"]["booking_id"]

        response = self.client.put(
            f"/api/bookings/{booking_id}",
            json={"start": "2025-10-13T12:00:00+00:00", "end": "2025-10-13T13:00:00+00:00"},
            headers=OWNER,
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["guard"], "lead_time")

    def test_reject_and_cancel(self) -> None:
        _, first = self._create(OWNER, "2025-10-14T10:00:00+00:00", "2025-10-14T11:00:00+00:00")
        rejected = self.client.patch(
            f"/api/bookings/{first['booking']['booking_id']}/approve",
            json={"approve": False, "reason": "Charger offline"},
            headers=BACKOFFICE,
        ).get_json()
        self.assertEqual(rejected["status"], "Rejected")
        self.assertEqual(rejected["rejection_note"], "Charger offline")

        _, second = self._create(OWNER, "2025-10-14T10:00:00+00:00", "2025-10-14T11:00:00+00:00")
        cancelled = self.client.delete(f"/api/bookings/{second['booking']['booking_id']}", headers=OWNER)
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.get_json()["booking"]["status"], "Cancelled")

        history = self.client.get("/api/bookings/my/history", headers=OWNER).get_json()
        self.assertEqual(len(history["bookings"]), 2)
        upcoming = self.client.get("/api/bookings/my/upcoming", headers=OWNER).get_json()
        self.assertEqual(upcoming["bookings"], [])

    def test_request_validation_and_identity(self) -> None:
        missing_role = self.client.get("/api/bookings/my", headers={"X-Caller-Id": "owner-1"})
        self.assertEqual(missing_role.status_code, 403)

        bad_body = self.client.post("/api/bookings", json={"station_id": "ST1", "start": "soon"}, headers=OWNER)
        self.assertEqual(bad_body.status_code, 400)

        bad_approve = self.client.patch("/api/bookings/x/approve", json={"approve": "yes"}, headers=OPERATOR)
        self.assertEqual(bad_approve.status_code, 400)

        not_found = self.client.get("/api/bookings/does-not-exist", headers=BACKOFFICE)
        self.assertEqual(not_found.status_code, 404)

        everything = self.client.get("/api/bookings", headers=OWNER)
        self.assertEqual(everything.status_code, 403)

    def test_availability_endpoint(self) -> None:
        self._create(OWNER, "2025-10-13T04:30:00+00:00", "2025-10-13T05:00:00+00:00")

        response = self.client.get(
            "/api/stations/ST1/availability?date=2025.10.13&tz_offset_minutes=330",
            headers=OWNER,
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(len(payload["availability"]), 48)
        slots = {entry["time"]: entry["available_slots"] for entry in payload["availability"]}
        self.assertEqual(slots["10:00"], 0)
        self.assertEqual(slots["10:30"], 1)

        bad_date = self.client.get("/api/stations/ST1/availability?date=13-10-2025", headers=OWNER)
        self.assertEqual(bad_date.status_code, 400)
        missing = self.client.get("/api/stations/ST9/availability?date=2025-10-13", headers=OWNER)
        self.assertEqual(missing.status_code, 404)

    def test_station_management(self) -> None:
        created = self.client.post(
            "/api/stations",
            json={"station_id": "ST2", "name": "Kandy 01", "capacity": 2},
            headers=BACKOFFICE,
        )
        self.assertEqual(created.status_code, 201)

        denied = self.client.post("/api/stations", json={"station_id": "ST3", "capacity": 1}, headers=OWNER)
        self.assertEqual(denied.status_code, 403)

        negative = self.client.patch("/api/stations/ST2/slots?available_slots=-1", headers=BACKOFFICE)
        self.assertEqual(negative.status_code, 400)
        resized = self.client.patch("/api/stations/ST2/slots?available_slots=4", headers=BACKOFFICE)
        self.assertEqual(resized.get_json()["station"]["capacity"], 4)

        self._create(OWNER, "2025-10-14T10:00:00+00:00", "2025-10-14T11:00:00+00:00")
        blocked = self.client.patch("/api/stations/ST1/status?is_active=false", headers=BACKOFFICE)
        self.assertEqual(blocked.status_code, 409)

        assigned = self.client.post("/api/stations/ST2/operators", json={"user_id": "op-2"}, headers=BACKOFFICE)
        self.assertEqual(assigned.get_json()["station"]["operator_ids"], ["op-2"])
        removed = self.client.delete("/api/stations/ST2/operators/op-2", headers=BACKOFFICE)
        self.assertEqual(removed.get_json()["station"]["operator_ids"], [])

        listed = self.client.get("/api/stations?active=true", headers=OWNER).get_json()
        self.assertEqual([station["station_id"] for station in listed["stations"]], ["ST1", "ST2"])

        station_bookings = self.client.get("/api/stations/ST1/bookings", headers=OPERATOR)
        self.assertEqual(len(station_bookings.get_json()["bookings"]), 1)

        deleted = self.client.delete("/api/stations/ST2", headers=BACKOFFICE)
        self.assertEqual(deleted.status_code, 200)

    def test_cors_headers(self) -> None:
        response = self.client.get("/api/stations", headers=OWNER)
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")
        self.assertIn("X-Caller-Role", response.headers["Access-Control-Allow-Headers"])

    def test_utc_designator_is_accepted(self) -> None:
        status_code, payload = self._create(OWNER, "2025-10-14T10:00:00Z", "2025-10-14T11:00:00Z")

        self.assertEqual(status_code, 201)
        self.assertEqual(payload["booking"]["start"], "2025-10-14T10:00:00+00:00")

    def test_station_lookup_and_nearby(self) -> None:
        out_of_range = self.client.post(
            "/api/stations",
            json={"station_id": "ST5", "capacity": 1, "latitude": 500, "longitude": 0},
            headers=BACKOFFICE,
        )
        self.assertEqual(out_of_range.status_code, 400)
        self.assertEqual(out_of_range.get_json()["guard"], "coordinates")

        self.client.post(
            "/api/stations",
            json={"station_id": "KDY", "name": "Kandy 01", "capacity": 2, "latitude": 7.2906, "longitude": 80.6337},
            headers=BACKOFFICE,
        )

        found = self.client.get("/api/stations/KDY", headers=OWNER)
        self.assertEqual(found.status_code, 200)
        self.assertEqual(found.get_json()["station"]["name"], "Kandy 01")
        self.assertEqual(self.client.get("/api/stations/ST404", headers=OWNER).status_code, 404)

        nearby = self.client.get("/api/stations/near?lat=7.29&lng=80.63&radius_km=5", headers=OWNER)
        self.assertEqual(nearby.status_code, 200)
        stations = nearby.get_json()["stations"]
        self.assertEqual([station["station_id"] for station in stations], ["KDY"])
        self.assertLess(stations[0]["distance_km"], 5)

        bad = self.client.get("/api/stations/near?lat=north&lng=80.63", headers=OWNER)
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(self.client.get("/api/stations/near?lat=99&lng=80.63", headers=OWNER).status_code, 400)
