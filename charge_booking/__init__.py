from .booking import TimeWindow, ensure_utc, has_lead_time, overlaps, validate, within_advance_limit
from .errors import (
	AuthorizationError,
	BookingError,
	ConflictError,
	NotFoundError,
	StoreError,
	ValidationError,
)
from .config import BookingPolicy, load_policy
from .yaml_store import (
	ACTIVE_STATUSES,
	TERMINAL_STATUSES,
	BookingRecord,
	BookingStatus,
	BookingYamlLedger,
	StationRecord,
	StationYamlDirectory,
)
from .capacity import Admission, CapacityResolver, Decision
from .availability import AvailabilityGrid, AvailabilitySlot, build_availability_grid, parse_local_date
from .workflow import Action, BookingWorkflow, Caller, GuardFacts, Role, TRANSITIONS, evaluate_guard
from .stations import StationAdmin

__all__ = [
	"TimeWindow",
	"ensure_utc",
	"has_lead_time",
	"overlaps",
	"validate",
	"within_advance_limit",
	"AuthorizationError",
	"BookingError",
	"ConflictError",
	"NotFoundError",
	"StoreError",
	"ValidationError",
	"BookingPolicy",
	"load_policy",
	"ACTIVE_STATUSES",
	"TERMINAL_STATUSES",
	"BookingRecord",
	"BookingStatus",
	"BookingYamlLedger",
	"StationRecord",
	"StationYamlDirectory",
	"Admission",
	"CapacityResolver",
	"Decision",
	"AvailabilityGrid",
	"AvailabilitySlot",
	"build_availability_grid",
	"parse_local_date",
	"Action",
	"BookingWorkflow",
	"Caller",
	"GuardFacts",
	"Role",
	"TRANSITIONS",
	"evaluate_guard",
	"StationAdmin",
]
