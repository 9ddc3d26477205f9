from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, MutableMapping
import logging
import shutil
import threading
from uuid import uuid4
import weakref

import yaml

from .booking import TimeWindow, ensure_utc
from .errors import ConflictError, NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# count against station capacity
ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.APPROVED, BookingStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({BookingStatus.REJECTED, BookingStatus.COMPLETED, BookingStatus.CANCELLED})


@dataclass(frozen=True)
class BookingRecord:
    booking_id: str
    owner_id: str
    station_id: str
    start: datetime
    end: datetime
    created_at: datetime
    updated_at: datetime
    status: BookingStatus = BookingStatus.PENDING
    session_token: str | None = None
    rejection_note: str | None = None

    def __post_init__(self) -> None:
        window = TimeWindow(self.start, self.end)
        object.__setattr__(self, "start", window.start)
        object.__setattr__(self, "end", window.end)
        object.__setattr__(self, "created_at", ensure_utc(self.created_at))
        object.__setattr__(self, "updated_at", ensure_utc(self.updated_at))
        object.__setattr__(self, "status", BookingStatus(self.status))

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, self.end)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def to_dict(self) -> dict[str, str]:
        payload = {
            "booking_id": self.booking_id,
            "owner_id": self.owner_id,
            "station_id": self.station_id,
            "start": self.start.isoformat(timespec="seconds"),
            "end": self.end.isoformat(timespec="seconds"),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }
        if self.session_token is not None:
            payload["session_token"] = self.session_token
        if self.rejection_note is not None:
            payload["rejection_note"] = self.rejection_note
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "BookingRecord":
        return BookingRecord(
            booking_id=str(data["booking_id"]),
            owner_id=str(data["owner_id"]),
            station_id=str(data["station_id"]),
            start=datetime.fromisoformat(str(data["start"])),
            end=datetime.fromisoformat(str(data["end"])),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            updated_at=datetime.fromisoformat(str(data["updated_at"])),
            status=BookingStatus(str(data.get("status", BookingStatus.PENDING.value))),
            session_token=(str(data["session_token"]) if data.get("session_token") is not None else None),
            rejection_note=(str(data["rejection_note"]) if data.get("rejection_note") is not None else None),
        )


def valid_coordinates(latitude: float, longitude: float) -> bool:
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


@dataclass(frozen=True)
class StationRecord:
    station_id: str
    capacity: int
    is_active: bool = True
    name: str = ""
    operator_ids: tuple[str, ...] = field(default_factory=tuple)
    latitude: float = 0.0
    longitude: float = 0.0

    def __post_init__(self) -> None:
        if not str(self.station_id).strip():
            raise ValidationError("station_id must not be empty", guard="station_id")
        if isinstance(self.capacity, bool) or not isinstance(self.capacity, int):
            raise ValidationError("capacity must be an integer", guard="capacity")
        if self.capacity < 0:
            raise ValidationError("capacity cannot be negative", guard="capacity")
        try:
            latitude, longitude = float(self.latitude), float(self.longitude)
        except (TypeError, ValueError) as error:
            raise ValidationError("latitude and longitude must be numbers", guard="coordinates") from error
        if not valid_coordinates(latitude, longitude):
            raise ValidationError("Invalid latitude/longitude", guard="coordinates")
        object.__setattr__(self, "latitude", latitude)
        object.__setattr__(self, "longitude", longitude)
        object.__setattr__(self, "station_id", str(self.station_id).strip())
        object.__setattr__(self, "operator_ids", tuple(dict.fromkeys(str(value) for value in self.operator_ids)))

    def is_operator(self, user_id: str) -> bool:
        return user_id in self.operator_ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "station_id": self.station_id,
            "name": self.name,
            "capacity": self.capacity,
            "is_active": self.is_active,
            "operator_ids": list(self.operator_ids),
            "latitude": self.latitude,
            "longitude": self.longitude,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "StationRecord":
        return StationRecord(
            station_id=str(data["station_id"]),
            capacity=int(data.get("capacity", 0)),
            is_active=bool(data.get("is_active", True)),
            name=str(data.get("name") or ""),
            operator_ids=tuple(str(value) for value in data.get("operator_ids") or []),
            latitude=float(data.get("latitude", 0.0)),
            longitude=float(data.get("longitude", 0.0)),
        )


_LOCK_REGISTRY_GUARD = threading.Lock()
_FILE_LOCKS: dict[Path, threading.RLock] = {}
# entries vanish once no caller holds the lock
_STATION_LOCKS: weakref.WeakValueDictionary[tuple[Path, str], threading.RLock] = weakref.WeakValueDictionary()


def _registered_lock(registry: MutableMapping[Any, threading.RLock], key: Any) -> threading.RLock:
    with _LOCK_REGISTRY_GUARD:
        lock = registry.get(key)
        if lock is None:
            lock = threading.RLock()
            registry[key] = lock
        return lock


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _YamlFileStore:
    """Shared plumbing for the YAML-list files kept under one data directory."""

    def __init__(self, base_dir: str | Path, data_files: tuple[str, ...], log_name: str) -> None:
        self.base_dir = Path(base_dir)
        self.log_file = self.base_dir / log_name
        self._data_files = tuple(self.base_dir / name for name in data_files)
        # one lock per directory; files there are rewritten wholesale
        self._file_lock = _registered_lock(_FILE_LOCKS, self.base_dir.resolve())
        self._ensure_files()

    def _ensure_files(self) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            for path in (*self._data_files, self.log_file):
                if not path.exists():
                    path.write_text("[]\n", encoding="utf-8")
        except OSError as error:
            raise StoreError(f"Failed to prepare data directory: {self.base_dir}") from error

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._quarantine_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._quarantine_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            elif path == self.log_file:
                logger.warning("Skipping non-mapping event row %d in %s", index, path.name)
            else:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise StoreError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _quarantine_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = _utc_now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError as copy_error:
            logger.warning("Could not back up corrupted %s: %s", path, copy_error)

        if path == self.log_file:
            # the event log is an audit trail; start a fresh one
            logger.warning("Event log %s was unreadable (%s); starting a new log", path.name, error)
            path.write_text("[]\n", encoding="utf-8")
            return

        logger.error("Data file %s is corrupted: %s", path, error)
        self._log_event(
            "YAML_CORRUPTED",
            {
                "file": str(path.name),
                "backup": str(backup_path.name),
                "reason": str(error),
            },
        )
        raise StoreError(f"Data file is corrupted: {path.name}", guard="store") from error

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = ensure_utc(event_time or _utc_now()).isoformat(timespec="seconds")
        with self._file_lock:
            events = self._read_yaml_list(self.log_file)
            events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
            self._write_yaml_list(self.log_file, events)

    def read_events(self) -> list[dict[str, Any]]:
        with self._file_lock:
            return self._read_yaml_list(self.log_file)


class BookingYamlLedger(_YamlFileStore):
    """Authoritative store of bookings for every station.

    Active bookings live in ``active_bookings.yaml``; once a booking reaches a
    terminal status it is moved to ``closed_bookings.yaml`` so overlap queries
    only ever scan the active file.
    """

    def __init__(self, base_dir: str | Path = "data") -> None:
        super().__init__(base_dir, ("active_bookings.yaml", "closed_bookings.yaml"), "booking_events.yaml")
        self.active_file, self.closed_file = self._data_files

    @contextmanager
    def station_lock(self, station_id: str) -> Iterator[None]:
        lock = _registered_lock(_STATION_LOCKS, (self.base_dir.resolve(), station_id))
        with lock:
            yield

    def _load(self, path: Path) -> list[BookingRecord]:
        rows = self._read_yaml_list(path)
        try:
            return [BookingRecord.from_dict(row) for row in rows]
        except (KeyError, TypeError, ValueError, ValidationError) as error:
            raise StoreError(f"Inconsistent booking row in {path.name}: {error}", guard="store") from error

    def get_active_bookings(self) -> list[BookingRecord]:
        with self._file_lock:
            return self._load(self.active_file)

    def get_closed_bookings(self) -> list[BookingRecord]:
        with self._file_lock:
            return self._load(self.closed_file)

    def list_all(self) -> list[BookingRecord]:
        with self._file_lock:
            records = self._load(self.active_file) + self._load(self.closed_file)
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def get(self, booking_id: str) -> BookingRecord | None:
        with self._file_lock:
            for path in (self.active_file, self.closed_file):
                for record in self._load(path):
                    if record.booking_id == booking_id:
                        return record
        return None

    def list_by_station(self, station_id: str) -> list[BookingRecord]:
        records = [record for record in self.list_all() if record.station_id == station_id]
        return sorted(records, key=lambda record: record.start, reverse=True)

    def list_by_owner(self, owner_id: str) -> list[BookingRecord]:
        records = [record for record in self.list_all() if record.owner_id == owner_id]
        return sorted(records, key=lambda record: record.start, reverse=True)

    def active_overlapping(
        self,
        station_id: str,
        window: TimeWindow,
        exclude_id: str | None = None,
    ) -> list[BookingRecord]:
        return [
            record
            for record in self.get_active_bookings()
            if record.station_id == station_id
            and record.is_active
            and record.booking_id != exclude_id
            and record.window.overlaps(window)
        ]

    def count_active_overlapping(self, station_id: str, window: TimeWindow, exclude_id: str | None = None) -> int:
        return len(self.active_overlapping(station_id, window, exclude_id))

    def has_active_any(self, station_id: str) -> bool:
        return any(record.station_id == station_id and record.is_active for record in self.get_active_bookings())

    def create(
        self,
        owner_id: str,
        station_id: str,
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> BookingRecord:
        effective_now = ensure_utc(now or _utc_now())
        window = TimeWindow(start, end)

        record = BookingRecord(
            booking_id=uuid4().hex,
            owner_id=owner_id,
            station_id=station_id,
            start=window.start,
            end=window.end,
            created_at=effective_now,
            updated_at=effective_now,
        )
        with self._file_lock:
            rows = self._read_yaml_list(self.active_file)
            rows.append(record.to_dict())
            self._write_yaml_list(self.active_file, rows)

            self._log_event(
                "BOOKING_CREATED",
                {
                    "booking_id": record.booking_id,
                    "owner_id": owner_id,
                    "station_id": station_id,
                    "start": record.start.isoformat(timespec="seconds"),
                    "end": record.end.isoformat(timespec="seconds"),
                },
                effective_now,
            )
        return record

    def save(self, record: BookingRecord) -> BookingRecord:
        """Replace the stored booking with the same id, refiling it by status."""
        target_file = self.closed_file if record.status.is_terminal else self.active_file
        with self._file_lock:
            source_file: Path | None = None
            source_rows: list[dict[str, Any]] = []
            found_index = -1
            for path in (self.active_file, self.closed_file):
                rows = self._read_yaml_list(path)
                for index, row in enumerate(rows):
                    if str(row.get("booking_id")) == record.booking_id:
                        source_file, source_rows, found_index = path, rows, index
                        break
                if source_file is not None:
                    break

            if source_file is None:
                raise NotFoundError(f"Booking {record.booking_id} not found.", guard="booking")

            if source_file == target_file:
                source_rows[found_index] = record.to_dict()
                self._write_yaml_list(source_file, source_rows)
            else:
                del source_rows[found_index]
                target_rows = self._read_yaml_list(target_file)
                target_rows.append(record.to_dict())
                self._write_yaml_list(target_file, target_rows)
                self._write_yaml_list(source_file, source_rows)

            self._log_event(
                "BOOKING_UPDATED",
                {
                    "booking_id": record.booking_id,
                    "station_id": record.station_id,
                    "status": record.status.value,
                    "start": record.start.isoformat(timespec="seconds"),
                    "end": record.end.isoformat(timespec="seconds"),
                },
                record.updated_at,
            )
            if target_file == self.closed_file and source_file == self.active_file:
                self._log_event(
                    "BOOKING_CLOSED",
                    {
                        "booking_id": record.booking_id,
                        "station_id": record.station_id,
                        "status": record.status.value,
                    },
                    record.updated_at,
                )
        return record


class StationYamlDirectory(_YamlFileStore):
    def __init__(self, base_dir: str | Path = "data") -> None:
        super().__init__(base_dir, ("stations.yaml",), "station_events.yaml")
        (self.stations_file,) = self._data_files

    def _load(self) -> list[StationRecord]:
        rows = self._read_yaml_list(self.stations_file)
        try:
            return [StationRecord.from_dict(row) for row in rows]
        except (KeyError, TypeError, ValueError, ValidationError) as error:
            raise StoreError(f"Inconsistent station row: {error}", guard="store") from error

    def list_all(self) -> list[StationRecord]:
        with self._file_lock:
            return sorted(self._load(), key=lambda station: station.station_id)

    def get(self, station_id: str) -> StationRecord | None:
        with self._file_lock:
            for station in self._load():
                if station.station_id == station_id:
                    return station
        return None

    def add(self, station: StationRecord, now: datetime | None = None) -> StationRecord:
        with self._file_lock:
            rows = self._read_yaml_list(self.stations_file)
            if any(str(row.get("station_id")) == station.station_id for row in rows):
                raise ConflictError(f"Station {station.station_id} already exists.", guard="station_exists")
            rows.append(station.to_dict())
            self._write_yaml_list(self.stations_file, rows)
            self._log_event("STATION_CREATED", station.to_dict(), now)
        return station

    def save(self, station: StationRecord, now: datetime | None = None) -> StationRecord:
        with self._file_lock:
            rows = self._read_yaml_list(self.stations_file)
            for index, row in enumerate(rows):
                if str(row.get("station_id")) == station.station_id:
                    rows[index] = station.to_dict()
                    break
            else:
                raise NotFoundError(f"Station {station.station_id} not found.", guard="station")
            self._write_yaml_list(self.stations_file, rows)
            self._log_event("STATION_UPDATED", station.to_dict(), now)
        return station

    def delete(self, station_id: str, now: datetime | None = None) -> StationRecord:
        with self._file_lock:
            rows = self._read_yaml_list(self.stations_file)
            remaining = [row for row in rows if str(row.get("station_id")) != station_id]
            if len(remaining) == len(rows):
                raise NotFoundError(f"Station {station_id} not found.", guard="station")
            deleted = next(StationRecord.from_dict(row) for row in rows if str(row.get("station_id")) == station_id)
            self._write_yaml_list(self.stations_file, remaining)
            self._log_event("STATION_DELETED", {"station_id": station_id}, now)
        return deleted
