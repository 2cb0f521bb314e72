"""Unit tests for booking policy resolution. Pure functions, no database."""

from datetime import datetime, timedelta, timezone

import pytest
from services.classes_service.services.policy import (
    DEFAULT_BOOKING_OPEN_HOURS,
    DEFAULT_CLASS_CAPACITY,
    DEFAULT_LATE_CANCEL_CUTOFF_MINUTES,
    DEFAULT_WAITLIST_CAP,
    PolicyDefaults,
    TemplatePolicy,
    booking_window,
    can_join_waitlist,
    class_type_eligible,
    effective_capacity,
    is_booking_open,
    is_late_cancel,
    late_cancel_cutoff,
    normalize_class_type,
    resolve_policy,
)

STARTS_AT = datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# resolve_policy
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_resolve_policy_uses_hardcoded_defaults_when_nothing_set():
    policy = resolve_policy(TemplatePolicy())

    assert policy.booking_open_hours_before == DEFAULT_BOOKING_OPEN_HOURS == 336
    assert policy.booking_close_minutes_before == 0
    assert policy.cancel_cutoff_minutes == DEFAULT_LATE_CANCEL_CUTOFF_MINUTES == 60
    assert policy.waitlist_capacity == DEFAULT_WAITLIST_CAP == 10
    assert policy.capacity == DEFAULT_CLASS_CAPACITY == 20
    assert policy.late_cancel_refunds_credit is False


@pytest.mark.unit
def test_resolve_policy_prefers_template_then_facility_default():
    template = TemplatePolicy(capacity=8, cancel_cutoff_minutes=None)
    defaults = PolicyDefaults(capacity=30, cancel_cutoff_minutes=120, waitlist_capacity=3)

    policy = resolve_policy(template, defaults)

    assert policy.capacity == 8
    assert policy.cancel_cutoff_minutes == 120
    assert policy.waitlist_capacity == 3
    assert policy.booking_open_hours_before == DEFAULT_BOOKING_OPEN_HOURS


@pytest.mark.unit
def test_resolve_policy_keeps_explicit_zero_from_template():
    policy = resolve_policy(
        TemplatePolicy(waitlist_capacity=0, credits_required=0),
        PolicyDefaults(waitlist_capacity=5, credits_required=2),
    )

    assert policy.waitlist_capacity == 0
    assert policy.credits_required == 0


@pytest.mark.unit
def test_late_cancel_refund_is_configurable():
    assert resolve_policy(TemplatePolicy(), PolicyDefaults(late_cancel_refunds_credit=True)).late_cancel_refunds_credit
    assert not resolve_policy(
        TemplatePolicy(late_cancel_refunds_credit=False),
        PolicyDefaults(late_cancel_refunds_credit=True),
    ).late_cancel_refunds_credit


@pytest.mark.unit
def test_effective_capacity_prefers_session_override():
    policy = resolve_policy(TemplatePolicy(capacity=12))

    assert effective_capacity(policy, None) == 12
    assert effective_capacity(policy, 4) == 4
    assert effective_capacity(policy, 0) == 0


# ---------------------------------------------------------------------------
# Booking window
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_booking_window_bounds():
    policy = resolve_policy(
        TemplatePolicy(booking_open_hours_before=48, booking_close_minutes_before=30)
    )

    opens_at, closes_at = booking_window(STARTS_AT, policy)

    assert opens_at == STARTS_AT - timedelta(hours=48)
    assert closes_at == STARTS_AT - timedelta(minutes=30)


@pytest.mark.unit
def test_booking_window_is_a_closed_interval():
    policy = resolve_policy(
        TemplatePolicy(booking_open_hours_before=48, booking_close_minutes_before=30)
    )
    opens_at, closes_at = booking_window(STARTS_AT, policy)
    tick = timedelta(microseconds=1)

    assert is_booking_open(opens_at, STARTS_AT, policy)
    assert is_booking_open(closes_at, STARTS_AT, policy)
    assert not is_booking_open(opens_at - tick, STARTS_AT, policy)
    assert not is_booking_open(closes_at + tick, STARTS_AT, policy)


# ---------------------------------------------------------------------------
# Late cancellation
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_late_cancel_is_strictly_after_cutoff():
    policy = resolve_policy(TemplatePolicy(cancel_cutoff_minutes=60))
    cutoff = late_cancel_cutoff(STARTS_AT, policy)

    assert cutoff == STARTS_AT - timedelta(minutes=60)
    assert not is_late_cancel(cutoff, STARTS_AT, policy)
    assert is_late_cancel(cutoff + timedelta(seconds=1), STARTS_AT, policy)
    assert is_late_cancel(STARTS_AT - timedelta(minutes=10), STARTS_AT, policy)


@pytest.mark.unit
def test_can_join_waitlist():
    policy = resolve_policy(TemplatePolicy(waitlist_capacity=2))

    assert can_join_waitlist(0, policy)
    assert can_join_waitlist(1, policy)
    assert not can_join_waitlist(2, policy)


# ---------------------------------------------------------------------------
# Class types
# ---------------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw,expected",
    [("hitzone", "HIIT"), (" COREZONE ", "CORE"), ("yoga", "YOGA"), (None, "")],
)
def test_normalize_class_type(raw, expected):
    assert normalize_class_type(raw) == expected


@pytest.mark.unit
def test_class_type_eligibility():
    assert class_type_eligible("HIIT", [])
    assert class_type_eligible("HIIT", None)
    assert class_type_eligible("HITZONE", ["hiit", "yoga"])
    assert not class_type_eligible("PILATES", ["HIIT"])
