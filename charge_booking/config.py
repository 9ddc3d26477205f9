from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from .errors import StoreError, ValidationError

ADVANCE_LIMIT_DAYS = 7
LEAD_TIME_HOURS = 12
SLOT_MINUTES = 30
DEFAULT_REJECTION_NOTE = "Rejected"


@dataclass(frozen=True)
class BookingPolicy:
    advance_limit: timedelta = timedelta(days=ADVANCE_LIMIT_DAYS)
    lead_time: timedelta = timedelta(hours=LEAD_TIME_HOURS)
    slot_minutes: int = SLOT_MINUTES
    # None leaves booking length uncapped
    max_duration: timedelta | None = None
    default_rejection_note: str = DEFAULT_REJECTION_NOTE

    def __post_init__(self) -> None:
        if self.slot_minutes <= 0 or (24 * 60) % self.slot_minutes != 0:
            raise ValidationError("slot_minutes must evenly divide a day", guard="policy")
        if self.advance_limit < timedelta(0) or self.lead_time < timedelta(0):
            raise ValidationError("advance_limit and lead_time must not be negative", guard="policy")


_DURATION_KEYS = {
    "advance_limit_days": ("advance_limit", "days"),
    "advance_limit_hours": ("advance_limit", "hours"),
    "lead_time_hours": ("lead_time", "hours"),
    "lead_time_minutes": ("lead_time", "minutes"),
    "max_duration_hours": ("max_duration", "hours"),
    "max_duration_minutes": ("max_duration", "minutes"),
}


def load_policy(path: str | Path | None = None, base: BookingPolicy | None = None) -> BookingPolicy:
    """Read policy overrides from a YAML mapping.

    Durations are given in whole units, e.g.::

        advance_limit_days: 7
        lead_time_hours: 12
        slot_minutes: 30
        max_duration_hours: 4
        default_rejection_note: Rejected by operator

    A missing file yields the defaults.
    """
    policy = base or BookingPolicy()
    if path is None:
        return policy

    policy_path = Path(path)
    if not policy_path.exists():
        return policy

    try:
        payload = yaml.safe_load(policy_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
        raise StoreError(f"Failed to read policy file: {policy_path}") from error

    if payload is None:
        return policy
    if not isinstance(payload, dict):
        raise ValidationError("policy file must contain a mapping", guard="policy")

    return replace(policy, **_policy_overrides(payload))


def _policy_overrides(payload: dict[str, Any]) -> dict[str, Any]:
    plain_fields = {field.name for field in fields(BookingPolicy)} - {"advance_limit", "lead_time", "max_duration"}
    overrides: dict[str, Any] = {}
    for key, value in payload.items():
        if key in _DURATION_KEYS:
            target, unit = _DURATION_KEYS[key]
            if value is None:
                overrides[target] = None
                continue
            try:
                overrides[target] = timedelta(**{unit: float(value)})
            except (TypeError, ValueError) as error:
                raise ValidationError(f"{key} must be a number", guard="policy") from error
        elif key == "slot_minutes":
            try:
                overrides[key] = int(value)
            except (TypeError, ValueError) as error:
                raise ValidationError("slot_minutes must be an integer", guard="policy") from error
        elif key in plain_fields:
            overrides[key] = str(value)
        else:
            raise ValidationError(f"unknown policy key: {key}", guard="policy")
    return overrides
