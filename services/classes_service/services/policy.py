"""Booking policy resolution.

Pure functions only: every input arrives as an argument, nothing here
reads settings or touches the database.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

DEFAULT_BOOKING_OPEN_HOURS = 24 * 14
DEFAULT_BOOKING_CLOSE_MINUTES = 0
DEFAULT_LATE_CANCEL_CUTOFF_MINUTES = 60
DEFAULT_WAITLIST_CAP = 10
DEFAULT_CLASS_CAPACITY = 20
DEFAULT_CREDITS_PER_BOOKING = 1
DEFAULT_LATE_CANCEL_REFUNDS_CREDIT = False

_CLASS_TYPE_ALIASES = {"HITZONE": "HIIT", "COREZONE": "CORE"}


@dataclass(frozen=True)
class TemplatePolicy:
    """Template-level policy fields; ``None`` means "not set on the template"."""

    booking_open_hours_before: Optional[int] = None
    booking_close_minutes_before: Optional[int] = None
    cancel_cutoff_minutes: Optional[int] = None
    waitlist_capacity: Optional[int] = None
    capacity: Optional[int] = None
    credits_required: Optional[int] = None
    late_cancel_refunds_credit: Optional[bool] = None

    @classmethod
    def from_template(cls, template) -> "TemplatePolicy":
        return cls(
            booking_open_hours_before=template.booking_open_hours_before,
            booking_close_minutes_before=template.booking_close_minutes_before,
            cancel_cutoff_minutes=template.cancel_cutoff_minutes,
            waitlist_capacity=template.waitlist_capacity,
            capacity=template.capacity,
            credits_required=template.credits_required,
            late_cancel_refunds_credit=template.late_cancel_refunds_credit,
        )


@dataclass(frozen=True)
class PolicyDefaults:
    """Facility-wide defaults, built by the caller and passed in explicitly."""

    booking_open_hours_before: Optional[int] = None
    booking_close_minutes_before: Optional[int] = None
    cancel_cutoff_minutes: Optional[int] = None
    waitlist_capacity: Optional[int] = None
    capacity: Optional[int] = None
    credits_required: Optional[int] = None
    late_cancel_refunds_credit: Optional[bool] = None

    @classmethod
    def from_settings(cls, settings) -> "PolicyDefaults":
        return cls(
            booking_open_hours_before=settings.BOOKING_OPEN_HOURS_DEFAULT,
            booking_close_minutes_before=settings.BOOKING_CLOSE_MINUTES_DEFAULT,
            cancel_cutoff_minutes=settings.LATE_CANCEL_CUTOFF_MINUTES_DEFAULT,
            waitlist_capacity=settings.DEFAULT_WAITLIST_CAP,
            capacity=settings.DEFAULT_CLASS_CAPACITY,
            credits_required=settings.DEFAULT_CREDITS_PER_BOOKING,
            late_cancel_refunds_credit=settings.LATE_CANCEL_REFUNDS_CREDIT,
        )


@dataclass(frozen=True)
class EffectivePolicy:
    booking_open_hours_before: int
    booking_close_minutes_before: int
    cancel_cutoff_minutes: int
    waitlist_capacity: int
    capacity: int
    credits_required: int
    late_cancel_refunds_credit: bool


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def resolve_policy(
    template_policy: TemplatePolicy, defaults: Optional[PolicyDefaults] = None
) -> EffectivePolicy:
    """Template value, else facility default, else hardcoded default, per field."""
    defaults = defaults or PolicyDefaults()
    return EffectivePolicy(
        booking_open_hours_before=_first_set(
            template_policy.booking_open_hours_before,
            defaults.booking_open_hours_before,
            DEFAULT_BOOKING_OPEN_HOURS,
        ),
        booking_close_minutes_before=_first_set(
            template_policy.booking_close_minutes_before,
            defaults.booking_close_minutes_before,
            DEFAULT_BOOKING_CLOSE_MINUTES,
        ),
        cancel_cutoff_minutes=_first_set(
            template_policy.cancel_cutoff_minutes,
            defaults.cancel_cutoff_minutes,
            DEFAULT_LATE_CANCEL_CUTOFF_MINUTES,
        ),
        waitlist_capacity=_first_set(
            template_policy.waitlist_capacity,
            defaults.waitlist_capacity,
            DEFAULT_WAITLIST_CAP,
        ),
        capacity=_first_set(
            template_policy.capacity, defaults.capacity, DEFAULT_CLASS_CAPACITY
        ),
        credits_required=_first_set(
            template_policy.credits_required,
            defaults.credits_required,
            DEFAULT_CREDITS_PER_BOOKING,
        ),
        late_cancel_refunds_credit=_first_set(
            template_policy.late_cancel_refunds_credit,
            defaults.late_cancel_refunds_credit,
            DEFAULT_LATE_CANCEL_REFUNDS_CREDIT,
        ),
    )


def effective_capacity(policy: EffectivePolicy, capacity_override: Optional[int]) -> int:
    """Session override if present, else the resolved template capacity."""
    if capacity_override is not None:
        return capacity_override
    return policy.capacity


def booking_window(starts_at: datetime, policy: EffectivePolicy) -> tuple[datetime, datetime]:
    opens_at = starts_at - timedelta(hours=policy.booking_open_hours_before)
    closes_at = starts_at - timedelta(minutes=policy.booking_close_minutes_before)
    return opens_at, closes_at


def is_booking_open(now: datetime, starts_at: datetime, policy: EffectivePolicy) -> bool:
    """Closed interval: ``now`` equal to either boundary counts as open."""
    opens_at, closes_at = booking_window(starts_at, policy)
    return opens_at <= now <= closes_at


def late_cancel_cutoff(starts_at: datetime, policy: EffectivePolicy) -> datetime:
    return starts_at - timedelta(minutes=policy.cancel_cutoff_minutes)


def is_late_cancel(now: datetime, starts_at: datetime, policy: EffectivePolicy) -> bool:
    return now > late_cancel_cutoff(starts_at, policy)


def can_join_waitlist(current_waitlist_count: int, policy: EffectivePolicy) -> bool:
    return current_waitlist_count < policy.waitlist_capacity


def normalize_class_type(raw: Optional[str]) -> str:
    if not raw:
        return ""
    normalized = raw.strip().upper()
    return _CLASS_TYPE_ALIASES.get(normalized, normalized)


def class_type_eligible(class_type: str, applies_to: Optional[list]) -> bool:
    """Whether a product restricted to ``applies_to`` covers ``class_type``."""
    if not applies_to:
        return True
    target = normalize_class_type(class_type)
    return any(normalize_class_type(candidate) == target for candidate in applies_to)
