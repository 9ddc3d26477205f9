from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable
import hmac
import logging
from uuid import uuid4

from . import booking as windows
from .availability import AvailabilityGrid, build_availability_grid
from .booking import TimeWindow, ensure_utc
from .capacity import CapacityResolver
from .config import BookingPolicy
from .errors import AuthorizationError, BookingError, ConflictError, NotFoundError, ValidationError
from .yaml_store import (
    BookingRecord,
    BookingStatus,
    BookingYamlLedger,
    StationRecord,
    StationYamlDirectory,
)

logger = logging.getLogger(__name__)


class Role(str, Enum):
    OWNER = "Owner"
    OPERATOR = "Operator"
    BACKOFFICE = "Backoffice"


@dataclass(frozen=True)
class Caller:
    caller_id: str
    role: Role

    def __post_init__(self) -> None:
        if not str(self.caller_id or "").strip():
            raise AuthorizationError("caller id is required", guard="identity")
        try:
            object.__setattr__(self, "role", Role(self.role))
        except ValueError as error:
            raise AuthorizationError(f"unknown role: {self.role}", guard="role") from error


class Action(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    CANCEL = "cancel"
    APPROVE = "approve"
    REJECT = "reject"
    START = "start"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Transition:
    roles: frozenset[Role]
    # empty only for create, which has no current booking
    sources: frozenset[BookingStatus]
    # None keeps the current status
    target: BookingStatus | None
    owner_only: frozenset[Role] = field(default_factory=frozenset)
    assigned_only: frozenset[Role] = field(default_factory=frozenset)
    lead_time_roles: frozenset[Role] = field(default_factory=frozenset)


_OWNER = frozenset({Role.OWNER})
_OPERATOR = frozenset({Role.OPERATOR})
_REVIEWERS = frozenset({Role.OPERATOR, Role.BACKOFFICE})
_CHANGEABLE = frozenset({BookingStatus.PENDING, BookingStatus.APPROVED})

TRANSITIONS: dict[Action, Transition] = {
    Action.CREATE: Transition(roles=_OWNER, sources=frozenset(), target=BookingStatus.PENDING),
    Action.EDIT: Transition(
        roles=_OWNER,
        sources=_CHANGEABLE,
        target=None,
        owner_only=_OWNER,
        lead_time_roles=_OWNER,
    ),
    Action.CANCEL: Transition(
        roles=frozenset({Role.OWNER, Role.BACKOFFICE}),
        sources=frozenset({BookingStatus.PENDING, BookingStatus.APPROVED, BookingStatus.IN_PROGRESS}),
        target=BookingStatus.CANCELLED,
        owner_only=_OWNER,
        lead_time_roles=_OWNER,
    ),
    Action.APPROVE: Transition(
        roles=_REVIEWERS,
        sources=_CHANGEABLE,
        target=BookingStatus.APPROVED,
        assigned_only=_OPERATOR,
    ),
    Action.REJECT: Transition(
        roles=_REVIEWERS,
        sources=_CHANGEABLE,
        target=BookingStatus.REJECTED,
        assigned_only=_OPERATOR,
    ),
    Action.START: Transition(
        roles=_OPERATOR,
        sources=frozenset({BookingStatus.APPROVED}),
        target=BookingStatus.IN_PROGRESS,
        assigned_only=_OPERATOR,
    ),
    Action.COMPLETE: Transition(
        roles=_OPERATOR,
        sources=frozenset({BookingStatus.IN_PROGRESS}),
        target=BookingStatus.COMPLETED,
        assigned_only=_OPERATOR,
    ),
}


@dataclass(frozen=True)
class GuardFacts:
    is_owner: bool = False
    is_assigned: bool = False
    has_lead_time: bool = True


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    error: type[BookingError] | None = None
    guard: str | None = None
    message: str = ""

    def raise_if_denied(self) -> None:
        if not self.allowed and self.error is not None:
            raise self.error(self.message, guard=self.guard)


_ALLOW = GuardDecision(allowed=True)


def evaluate_guard(
    action: Action,
    role: Role,
    status: BookingStatus | None,
    facts: GuardFacts = GuardFacts(),
) -> GuardDecision:
    """Decide whether ``role`` may apply ``action`` to a booking in ``status``.

    Checks run in a fixed order (role, ownership, assignment, status, lead
    time) and the first failure is reported.
    """
    transition = TRANSITIONS[action]
    if role not in transition.roles:
        return GuardDecision(False, AuthorizationError, "role", f"{role.value} cannot {action.value} bookings.")
    if role in transition.owner_only and not facts.is_owner:
        return GuardDecision(False, AuthorizationError, "ownership", "Booking belongs to another owner.")
    if role in transition.assigned_only and not facts.is_assigned:
        return GuardDecision(False, AuthorizationError, "assignment", "Operator is not assigned to this station.")
    if transition.sources and status not in transition.sources:
        label = status.value if status is not None else "None"
        return GuardDecision(False, ConflictError, "status", f"Cannot {action.value} when status is {label}.")
    if role in transition.lead_time_roles and not facts.has_lead_time:
        return GuardDecision(
            False,
            ConflictError,
            "lead_time",
            f"Bookings can only be {'updated' if action is Action.EDIT else 'cancelled'} well before they start.",
        )
    return _ALLOW


def allowed_actions(status: BookingStatus) -> set[Action]:
    return {action for action, transition in TRANSITIONS.items() if status in transition.sources}


def next_status(action: Action, status: BookingStatus) -> BookingStatus:
    transition = TRANSITIONS[action]
    if status not in transition.sources:
        raise ConflictError(f"Cannot {action.value} when status is {status.value}.", guard="status")
    return transition.target or status


class BookingWorkflow:
    def __init__(
        self,
        ledger: BookingYamlLedger,
        stations: StationYamlDirectory,
        policy: BookingPolicy | None = None,
        now_provider: Callable[[], datetime] | None = None,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self.ledger = ledger
        self.stations = stations
        self.policy = policy or BookingPolicy()
        self.capacity = CapacityResolver(ledger)
        self._clock: Callable[[], datetime] = now_provider or (lambda: datetime.now(timezone.utc))
        self._new_token: Callable[[], str] = token_factory or (lambda: uuid4().hex)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _station(self, station_id: str) -> StationRecord:
        station = self.stations.get(station_id)
        if station is None:
            raise NotFoundError(f"Station {station_id} not found.", guard="station")
        return station

    def _booking(self, booking_id: str) -> BookingRecord:
        record = self.ledger.get(booking_id)
        if record is None:
            raise NotFoundError(f"Booking {booking_id} not found.", guard="booking")
        return record

    def _window(self, start: datetime, end: datetime, now: datetime) -> TimeWindow:
        if not windows.validate(ensure_utc(start), ensure_utc(end), self.policy.max_duration):
            raise ValidationError("Invalid time window.", guard="window")
        window = TimeWindow(start, end)
        if not windows.within_advance_limit(window.start, now, self.policy.advance_limit):
            raise ConflictError(
                f"Start time must be within {self.policy.advance_limit.days} days.",
                guard="advance_limit",
            )
        return window

    def _require_active(self, station: StationRecord | None) -> StationRecord:
        if station is None or not station.is_active:
            raise ConflictError("Station not available.", guard="station_inactive")
        return station

    def _check(
        self,
        action: Action,
        caller: Caller,
        record: BookingRecord,
        station: StationRecord | None,
        now: datetime,
    ) -> None:
        facts = GuardFacts(
            is_owner=record.owner_id == caller.caller_id,
            is_assigned=station is not None and station.is_operator(caller.caller_id),
            has_lead_time=windows.has_lead_time(record.start, now, self.policy.lead_time),
        )
        decision = evaluate_guard(action, caller.role, record.status, facts)
        if not decision.allowed:
            logger.info(
                "Denied %s on booking %s for %s/%s: %s",
                action.value,
                record.booking_id,
                caller.role.value,
                caller.caller_id,
                decision.guard,
            )
        decision.raise_if_denied()

    def _transition(
        self,
        action: Action,
        caller: Caller,
        booking_id: str,
        apply: Callable[[BookingRecord, StationRecord | None, datetime], BookingRecord],
    ) -> BookingRecord:
        current = self._booking(booking_id)
        with self.ledger.station_lock(current.station_id):
            # re-read inside the section; another caller may have moved it
            current = self._booking(booking_id)
            station = self.stations.get(current.station_id)
            now = self._now()
            self._check(action, caller, current, station, now)
            updated = apply(current, station, now)
            self.ledger.save(updated)

        logger.info(
            "Booking %s %s by %s: %s -> %s",
            booking_id,
            action.value,
            caller.caller_id,
            current.status.value,
            updated.status.value,
        )
        return updated

    # -- transitions -------------------------------------------------------

    def create_booking(self, caller: Caller, station_id: str, start: datetime, end: datetime) -> BookingRecord:
        evaluate_guard(Action.CREATE, caller.role, None).raise_if_denied()
        now = self._now()
        window = self._window(start, end, now)

        with self.ledger.station_lock(station_id):
            station = self._require_active(self._station(station_id))
            self.capacity.require(station_id, window, station.capacity)
            created = self.ledger.create(caller.caller_id, station_id, window.start, window.end, now=now)

        logger.info("Booking %s created for %s at %s", created.booking_id, caller.caller_id, station_id)
        return created

    def edit_booking(self, caller: Caller, booking_id: str, start: datetime, end: datetime) -> BookingRecord:
        def apply(current: BookingRecord, station: StationRecord | None, now: datetime) -> BookingRecord:
            window = self._window(start, end, now)
            if station is None:
                raise NotFoundError(f"Station {current.station_id} not found.", guard="station")
            self._require_active(station)
            self.capacity.require(
                current.station_id,
                window,
                station.capacity,
                exclude_id=current.booking_id,
                message="No slots available in the new time window.",
            )
            return replace(current, start=window.start, end=window.end, updated_at=now)

        return self._transition(Action.EDIT, caller, booking_id, apply)

    def cancel_booking(self, caller: Caller, booking_id: str) -> BookingRecord:
        def apply(current: BookingRecord, station: StationRecord | None, now: datetime) -> BookingRecord:
            return replace(current, status=next_status(Action.CANCEL, current.status), updated_at=now)

        return self._transition(Action.CANCEL, caller, booking_id, apply)

    def approve_booking(self, caller: Caller, booking_id: str) -> BookingRecord:
        def apply(current: BookingRecord, station: StationRecord | None, now: datetime) -> BookingRecord:
            station = self._require_active(station)
            self.capacity.require(
                current.station_id,
                current.window,
                station.capacity,
                exclude_id=current.booking_id,
                message="No slots available at this time.",
            )
            return replace(
                current,
                status=next_status(Action.APPROVE, current.status),
                session_token=current.session_token or self._new_token(),
                updated_at=now,
            )

        return self._transition(Action.APPROVE, caller, booking_id, apply)

    def reject_booking(self, caller: Caller, booking_id: str, reason: str | None = None) -> BookingRecord:
        note = reason.strip() if reason and reason.strip() else self.policy.default_rejection_note

        def apply(current: BookingRecord, station: StationRecord | None, now: datetime) -> BookingRecord:
            return replace(
                current,
                status=next_status(Action.REJECT, current.status),
                rejection_note=note,
                updated_at=now,
            )

        return self._transition(Action.REJECT, caller, booking_id, apply)

    def approve_or_reject(
        self,
        caller: Caller,
        booking_id: str,
        approve: bool,
        reason: str | None = None,
    ) -> BookingRecord:
        if approve:
            return self.approve_booking(caller, booking_id)
        return self.reject_booking(caller, booking_id, reason)

    def start_session(self, caller: Caller, booking_id: str, token: str) -> BookingRecord:
        def apply(current: BookingRecord, station: StationRecord | None, now: datetime) -> BookingRecord:
            stored = current.session_token or ""
            if not stored or not hmac.compare_digest(stored.encode(), (token or "").encode()):
                raise AuthorizationError("Invalid session token.", guard="session_token")
            return replace(current, status=next_status(Action.START, current.status), updated_at=now)

        return self._transition(Action.START, caller, booking_id, apply)

    def complete_session(self, caller: Caller, booking_id: str) -> BookingRecord:
        def apply(current: BookingRecord, station: StationRecord | None, now: datetime) -> BookingRecord:
            return replace(current, status=next_status(Action.COMPLETE, current.status), updated_at=now)

        return self._transition(Action.COMPLETE, caller, booking_id, apply)

    # -- queries -----------------------------------------------------------

    def get_booking(self, caller: Caller, booking_id: str) -> BookingRecord:
        record = self._booking(booking_id)
        if caller.role is Role.OWNER and record.owner_id != caller.caller_id:
            raise AuthorizationError("Booking belongs to another owner.", guard="ownership")
        if caller.role is Role.OPERATOR:
            station = self.stations.get(record.station_id)
            if station is None or not station.is_operator(caller.caller_id):
                raise AuthorizationError("Operator is not assigned to this station.", guard="assignment")
        return record

    def list_all(self, caller: Caller) -> list[BookingRecord]:
        if caller.role is not Role.BACKOFFICE:
            raise AuthorizationError("Only backoffice can list every booking.", guard="role")
        return self.ledger.list_all()

    def _owner_scope(self, caller: Caller, owner_id: str | None) -> str:
        if caller.role is Role.BACKOFFICE:
            return owner_id or caller.caller_id
        if caller.role is Role.OWNER and owner_id in (None, caller.caller_id):
            return caller.caller_id
        raise AuthorizationError("Cannot list bookings of another owner.", guard="ownership")

    def list_by_owner(self, caller: Caller, owner_id: str | None = None) -> list[BookingRecord]:
        return self.ledger.list_by_owner(self._owner_scope(caller, owner_id))

    def list_upcoming_by_owner(self, caller: Caller, owner_id: str | None = None) -> list[BookingRecord]:
        now = self._now()
        records = [
            record
            for record in self.ledger.list_by_owner(self._owner_scope(caller, owner_id))
            if record.is_active and record.start >= now
        ]
        return sorted(records, key=lambda record: record.start)

    def list_history_by_owner(self, caller: Caller, owner_id: str | None = None) -> list[BookingRecord]:
        now = self._now()
        records = [
            record
            for record in self.ledger.list_by_owner(self._owner_scope(caller, owner_id))
            if record.status.is_terminal or record.end < now
        ]
        return sorted(records, key=lambda record: record.start, reverse=True)

    def list_by_station(self, caller: Caller, station_id: str) -> list[BookingRecord]:
        station = self._station(station_id)
        if caller.role is Role.OWNER:
            raise AuthorizationError("Owners cannot list station bookings.", guard="role")
        if caller.role is Role.OPERATOR and not station.is_operator(caller.caller_id):
            raise AuthorizationError("Operator is not assigned to this station.", guard="assignment")
        return self.ledger.list_by_station(station_id)

    def get_availability(
        self,
        caller: Caller,
        station_id: str,
        local_date: str,
        offset_minutes: int,
    ) -> AvailabilityGrid:
        station = self.stations.get(station_id)
        if station is None or not station.is_active:
            raise NotFoundError("Station not available.", guard="station")
        logger.debug(
            "Availability for %s on %s (offset %s) requested by %s",
            station_id,
            local_date,
            offset_minutes,
            caller.caller_id,
        )
        return build_availability_grid(
            self.ledger,
            station,
            local_date,
            offset_minutes,
            slot_minutes=self.policy.slot_minutes,
        )
