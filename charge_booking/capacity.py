from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging

from .booking import TimeWindow
from .errors import ConflictError, ValidationError
from .yaml_store import BookingYamlLedger

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    ADMIT = "Admit"
    REJECT = "Reject"


@dataclass(frozen=True)
class Admission:
    decision: Decision
    overlapping: int
    capacity: int

    @property
    def admitted(self) -> bool:
        return self.decision is Decision.ADMIT

    @property
    def free_slots(self) -> int:
        return max(0, self.capacity - self.overlapping)


class CapacityResolver:
    """Admits a window only while the station still has a free slot for it.

    The same rule guards creation, owner edits and approval. Callers that
    write afterwards must hold ``ledger.station_lock(station_id)`` across the
    check and the write.
    """

    def __init__(self, ledger: BookingYamlLedger) -> None:
        self.ledger = ledger

    def admit(
        self,
        station_id: str,
        window: TimeWindow,
        capacity: int,
        exclude_id: str | None = None,
    ) -> Admission:
        if capacity < 0:
            raise ValidationError("capacity cannot be negative", guard="capacity")

        overlapping = self.ledger.count_active_overlapping(station_id, window, exclude_id=exclude_id)
        decision = Decision.ADMIT if overlapping < capacity else Decision.REJECT
        logger.debug(
            "Capacity check station=%s window=%s..%s overlapping=%d capacity=%d -> %s",
            station_id,
            window.start.isoformat(),
            window.end.isoformat(),
            overlapping,
            capacity,
            decision.value,
        )
        return Admission(decision=decision, overlapping=overlapping, capacity=capacity)

    def require(
        self,
        station_id: str,
        window: TimeWindow,
        capacity: int,
        exclude_id: str | None = None,
        message: str = "No slots available in this time window.",
    ) -> Admission:
        admission = self.admit(station_id, window, capacity, exclude_id=exclude_id)
        if not admission.admitted:
            raise ConflictError(message, guard="capacity")
        return admission
