from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from flask import Flask, jsonify, request

from .config import BookingPolicy, load_policy
from .errors import (
    AuthorizationError,
    BookingError,
    ConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from .stations import DEFAULT_NEARBY_RADIUS_KM, StationAdmin
from .workflow import BookingWorkflow, Caller
from .yaml_store import BookingRecord, BookingYamlLedger, StationRecord, StationYamlDirectory

CALLER_ID_HEADER = "X-Caller-Id"
CALLER_ROLE_HEADER = "X-Caller-Role"

_STATUS_CODES: dict[type[BookingError], int] = {
    ValidationError: 400,
    AuthorizationError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    StoreError: 503,
}


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    policy: BookingPolicy | None = None,
) -> Flask:
    app = Flask(__name__)
    ledger = BookingYamlLedger(data_dir)
    stations = StationYamlDirectory(data_dir)
    effective_policy = policy or load_policy(Path(data_dir) / "policy.yaml")
    workflow = BookingWorkflow(ledger, stations, policy=effective_policy, now_provider=now_provider)
    admin = StationAdmin(stations, ledger, now_provider=now_provider)
    app.extensions["charge_booking"] = {"workflow": workflow, "stations": admin}

    def _caller() -> Caller:
        # identity is established upstream; the proxy forwards it in headers
        return Caller(
            caller_id=str(request.headers.get(CALLER_ID_HEADER, "")).strip(),
            role=str(request.headers.get(CALLER_ROLE_HEADER, "")).strip(),
        )

    def _payload() -> dict[str, Any]:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def _window_from(payload: dict[str, Any]) -> tuple[datetime, datetime]:
        try:
            return _parse_instant(payload["start"]), _parse_instant(payload["end"])
        except (KeyError, ValueError) as error:
            raise ValidationError("start and end must be ISO 8601 datetimes", guard="window") from error

    @app.errorhandler(BookingError)
    def handle_booking_error(error: BookingError) -> Any:
        status_code = next(
            (code for kind, code in _STATUS_CODES.items() if isinstance(error, kind)),
            500,
        )
        return jsonify({"ok": False, **error.to_dict()}), status_code

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = f"Content-Type,{CALLER_ID_HEADER},{CALLER_ROLE_HEADER}"
        return response

    # -- bookings ------------------------------------------------------------

    @app.get("/api/bookings")
    def list_bookings() -> Any:
        records = workflow.list_all(_caller())
        return jsonify({"ok": True, "bookings": [_serialize_booking(record) for record in records]})

    @app.get("/api/bookings/my")
    def list_my_bookings() -> Any:
        records = workflow.list_by_owner(_caller(), request.args.get("owner_id"))
        return jsonify({"ok": True, "bookings": [_serialize_booking(record) for record in records]})

    @app.get("/api/bookings/my/upcoming")
    def list_my_upcoming() -> Any:
        records = workflow.list_upcoming_by_owner(_caller(), request.args.get("owner_id"))
        return jsonify({"ok": True, "bookings": [_serialize_booking(record) for record in records]})

    @app.get("/api/bookings/my/history")
    def list_my_history() -> Any:
        records = workflow.list_history_by_owner(_caller(), request.args.get("owner_id"))
        return jsonify({"ok": True, "bookings": [_serialize_booking(record) for record in records]})

    @app.get("/api/bookings/<booking_id>")
    def get_booking(booking_id: str) -> Any:
        record = workflow.get_booking(_caller(), booking_id)
        return jsonify({"ok": True, "booking": _serialize_booking(record)})

    @app.post("/api/bookings")
    def create_booking() -> Any:
        caller = _caller()
        payload = _payload()
        station_id = str(payload.get("station_id", "")).strip()
        if not station_id:
            raise ValidationError("station_id is required", guard="station_id")
        start, end = _window_from(payload)
        record = workflow.create_booking(caller, station_id, start, end)
        return jsonify({"ok": True, "booking": _serialize_booking(record)}), 201

    @app.put("/api/bookings/<booking_id>")
    def edit_booking(booking_id: str) -> Any:
        caller = _caller()
        start, end = _window_from(_payload())
        record = workflow.edit_booking(caller, booking_id, start, end)
        return jsonify({"ok": True, "booking": _serialize_booking(record)})

    @app.delete("/api/bookings/<booking_id>")
    def cancel_booking(booking_id: str) -> Any:
        record = workflow.cancel_booking(_caller(), booking_id)
        return jsonify({"ok": True, "booking": _serialize_booking(record)})

    @app.patch("/api/bookings/<booking_id>/approve")
    def approve_or_reject(booking_id: str) -> Any:
        caller = _caller()
        payload = _payload()
        approve = payload.get("approve")
        if not isinstance(approve, bool):
            raise ValidationError("approve must be true or false", guard="approve")
        reason = payload.get("reason")
        record = workflow.approve_or_reject(caller, booking_id, approve, str(reason) if reason is not None else None)
        return jsonify(
            {
                "ok": True,
                "id": record.booking_id,
                "status": record.status.value,
                "session_token": record.session_token,
                "rejection_note": record.rejection_note,
            }
        )

    @app.patch("/api/bookings/<booking_id>/start")
    def start_session(booking_id: str) -> Any:
        caller = _caller()
        token = str(_payload().get("token", ""))
        record = workflow.start_session(caller, booking_id, token)
        return jsonify({"ok": True, "message": "Charging session started.", "status": record.status.value})

    @app.patch("/api/bookings/<booking_id>/complete")
    def complete_session(booking_id: str) -> Any:
        record = workflow.complete_session(_caller(), booking_id)
        return jsonify({"ok": True, "message": "Charging session completed.", "status": record.status.value})

    # -- stations ------------------------------------------------------------

    @app.get("/api/stations")
    def list_stations() -> Any:
        active_only = str(request.args.get("active", "")).lower() in {"1", "true", "yes"}
        records = admin.list_stations(_caller(), active_only=active_only)
        return jsonify({"ok": True, "stations": [record.to_dict() for record in records]})

    @app.get("/api/stations/near")
    def list_nearby_stations() -> Any:
        caller = _caller()
        try:
            latitude = float(str(request.args.get("lat", "")))
            longitude = float(str(request.args.get("lng", "")))
            radius_km = float(str(request.args.get("radius_km", DEFAULT_NEARBY_RADIUS_KM)))
        except ValueError as error:
            raise ValidationError("lat, lng and radius_km must be numbers", guard="coordinates") from error
        found = admin.nearby(caller, latitude, longitude, radius_km)
        return jsonify(
            {
                "ok": True,
                "stations": [{**station.to_dict(), "distance_km": round(distance, 3)} for station, distance in found],
            }
        )

    @app.get("/api/stations/<station_id>")
    def get_station(station_id: str) -> Any:
        station = admin.get_station(_caller(), station_id)
        return jsonify({"ok": True, "station": station.to_dict()})

    @app.post("/api/stations")
    def create_station() -> Any:
        caller = _caller()
        payload = _payload()
        try:
            station = StationRecord.from_dict(payload)
        except (KeyError, TypeError, ValueError) as error:
            raise ValidationError(f"invalid station payload: {error}", guard="station") from error
        created = admin.create_station(caller, station)
        return jsonify({"ok": True, "station": created.to_dict()}), 201

    @app.delete("/api/stations/<station_id>")
    def delete_station(station_id: str) -> Any:
        deleted = admin.delete_station(_caller(), station_id)
        return jsonify({"ok": True, "station": deleted.to_dict()})

    @app.patch("/api/stations/<station_id>/status")
    def set_station_status(station_id: str) -> Any:
        caller = _caller()
        raw = str(request.args.get("is_active", "")).lower()
        if raw not in {"true", "false"}:
            raise ValidationError("is_active must be true or false", guard="is_active")
        station = admin.set_active(caller, station_id, raw == "true")
        return jsonify({"ok": True, "station": station.to_dict()})

    @app.patch("/api/stations/<station_id>/slots")
    def set_station_slots(station_id: str) -> Any:
        caller = _caller()
        try:
            capacity = int(str(request.args.get("available_slots", "")))
        except ValueError as error:
            raise ValidationError("available_slots must be an integer", guard="capacity") from error
        station = admin.set_capacity(caller, station_id, capacity)
        return jsonify({"ok": True, "station": station.to_dict()})

    @app.post("/api/stations/<station_id>/operators")
    def assign_operator(station_id: str) -> Any:
        caller = _caller()
        operator_id = str(_payload().get("user_id", ""))
        station = admin.assign_operator(caller, station_id, operator_id)
        return jsonify({"ok": True, "station": station.to_dict()})

    @app.delete("/api/stations/<station_id>/operators/<operator_id>")
    def remove_operator(station_id: str, operator_id: str) -> Any:
        station = admin.remove_operator(_caller(), station_id, operator_id)
        return jsonify({"ok": True, "station": station.to_dict()})

    @app.get("/api/stations/<station_id>/bookings")
    def list_station_bookings(station_id: str) -> Any:
        records = workflow.list_by_station(_caller(), station_id)
        return jsonify({"ok": True, "bookings": [_serialize_booking(record) for record in records]})

    @app.get("/api/stations/<station_id>/availability")
    def get_availability(station_id: str) -> Any:
        caller = _caller()
        try:
            offset = int(str(request.args.get("tz_offset_minutes", "0")))
        except ValueError as error:
            raise ValidationError("tz_offset_minutes must be an integer", guard="tz_offset") from error
        grid = workflow.get_availability(caller, station_id, str(request.args.get("date", "")), offset)
        return jsonify({"ok": True, **grid.to_dict()})

    return app


def _parse_instant(value: Any) -> datetime:
    text = str(value).strip()
    # fromisoformat only learned the Z suffix in 3.11
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _serialize_booking(record: BookingRecord) -> dict[str, Any]:
    return {
        "booking_id": record.booking_id,
        "owner_id": record.owner_id,
        "station_id": record.station_id,
        "start": record.start.isoformat(timespec="seconds"),
        "end": record.end.isoformat(timespec="seconds"),
        "status": record.status.value,
        "session_token": record.session_token,
        "rejection_note": record.rejection_note,
        "created_at": record.created_at.isoformat(timespec="seconds"),
        "updated_at": record.updated_at.isoformat(timespec="seconds"),
    }


if __name__ == "__main__":
    app = create_app()
    app.run(host="127.0.0.1", port=5000, debug=False)
