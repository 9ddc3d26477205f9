from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from math import asin, cos, radians, sin, sqrt
from typing import Callable
import logging

from .booking import ensure_utc
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .workflow import Caller, Role
from .yaml_store import BookingYamlLedger, StationRecord, StationYamlDirectory, valid_coordinates

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
DEFAULT_NEARBY_RADIUS_KM = 10.0


def haversine_km(a_lat: float, a_lng: float, b_lat: float, b_lng: float) -> float:
    dlat = radians(b_lat - a_lat)
    dlng = radians(b_lng - a_lng)
    h = sin(dlat / 2) ** 2 + cos(radians(a_lat)) * cos(radians(b_lat)) * sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(sqrt(min(1.0, h)))


class StationAdmin:
    """Backoffice management of stations and their operator lists.

    A station with active bookings can be neither deactivated nor deleted.
    """

    def __init__(
        self,
        stations: StationYamlDirectory,
        ledger: BookingYamlLedger,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.stations = stations
        self.ledger = ledger
        self._clock: Callable[[], datetime] = now_provider or (lambda: datetime.now(timezone.utc))

    def _require_backoffice(self, caller: Caller) -> None:
        if caller.role is not Role.BACKOFFICE:
            raise AuthorizationError("Only backoffice can manage stations.", guard="role")

    def _station(self, station_id: str) -> StationRecord:
        station = self.stations.get(station_id)
        if station is None:
            raise NotFoundError(f"Station {station_id} not found.", guard="station")
        return station

    def list_stations(self, caller: Caller, active_only: bool = False) -> list[StationRecord]:
        stations = self.stations.list_all()
        if active_only:
            stations = [station for station in stations if station.is_active]
        return stations

    def get_station(self, caller: Caller, station_id: str) -> StationRecord:
        return self._station(station_id)

    def nearby(
        self,
        caller: Caller,
        latitude: float,
        longitude: float,
        radius_km: float = DEFAULT_NEARBY_RADIUS_KM,
    ) -> list[tuple[StationRecord, float]]:
        """Active stations within ``radius_km`` of a point, closest first."""
        if not valid_coordinates(latitude, longitude) or radius_km <= 0:
            raise ValidationError("Invalid coordinates or radius", guard="coordinates")
        found = []
        for station in self.stations.list_all():
            if not station.is_active:
                continue
            distance = haversine_km(latitude, longitude, station.latitude, station.longitude)
            if distance <= radius_km:
                found.append((station, distance))
        return sorted(found, key=lambda item: item[1])

    def create_station(self, caller: Caller, station: StationRecord) -> StationRecord:
        self._require_backoffice(caller)
        created = self.stations.add(station, now=ensure_utc(self._clock()))
        logger.info("Station %s created with %d slots", created.station_id, created.capacity)
        return created

    def set_active(self, caller: Caller, station_id: str, is_active: bool) -> StationRecord:
        self._require_backoffice(caller)
        with self.ledger.station_lock(station_id):
            station = self._station(station_id)
            if not is_active and self.ledger.has_active_any(station_id):
                raise ConflictError("Cannot deactivate: station has active bookings.", guard="active_bookings")
            updated = self.stations.save(replace(station, is_active=is_active), now=ensure_utc(self._clock()))
        logger.info("Station %s active=%s", station_id, is_active)
        return updated

    def set_capacity(self, caller: Caller, station_id: str, capacity: int) -> StationRecord:
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 0:
            raise ValidationError("capacity cannot be negative", guard="capacity")
        with self.ledger.station_lock(station_id):
            station = self._station(station_id)
            if caller.role is Role.OPERATOR:
                if not station.is_operator(caller.caller_id):
                    raise AuthorizationError("Operator is not assigned to this station.", guard="assignment")
            elif caller.role is not Role.BACKOFFICE:
                raise AuthorizationError("Only operators and backoffice can change capacity.", guard="role")
            updated = self.stations.save(replace(station, capacity=capacity), now=ensure_utc(self._clock()))
        return updated

    def assign_operator(self, caller: Caller, station_id: str, operator_id: str) -> StationRecord:
        self._require_backoffice(caller)
        if not operator_id.strip():
            raise ValidationError("operator id must not be empty", guard="operator_id")
        with self.ledger.station_lock(station_id):
            station = self._station(station_id)
            updated = replace(station, operator_ids=(*station.operator_ids, operator_id.strip()))
            return self.stations.save(updated, now=ensure_utc(self._clock()))

    def remove_operator(self, caller: Caller, station_id: str, operator_id: str) -> StationRecord:
        self._require_backoffice(caller)
        with self.ledger.station_lock(station_id):
            station = self._station(station_id)
            remaining = tuple(value for value in station.operator_ids if value != operator_id)
            return self.stations.save(replace(station, operator_ids=remaining), now=ensure_utc(self._clock()))

    def delete_station(self, caller: Caller, station_id: str) -> StationRecord:
        self._require_backoffice(caller)
        with self.ledger.station_lock(station_id):
            self._station(station_id)
            if self.ledger.has_active_any(station_id):
                raise ConflictError("Cannot delete: station has active bookings.", guard="active_bookings")
            deleted = self.stations.delete(station_id, now=ensure_utc(self._clock()))
        logger.info("Station %s deleted", station_id)
        return deleted
