"""Unit tests for the staff catalog and the client browse."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from libs.auth.models import COACH_ROLE, AuthUser
from services.classes_service.errors import (
    CreditProductNotFound,
    InvalidSessionSchedule,
    SessionNotFound,
    StaffActionForbidden,
    TemplateNotFound,
)
from services.classes_service.models import (
    BookingSource,
    BookingStatus,
    ClassBooking,
    ClassSession,
    CreditMode,
    LedgerReason,
    SessionStatus,
    TemplateScope,
)
from services.classes_service.services import catalog, ledger
from services.classes_service.services.booking_ops import book_client_into_session
from sqlalchemy import select
from tests.factories import ClassSessionFactory, ClassTemplateFactory, CreditProductFactory

STARTS_AT = datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)
NOW = STARTS_AT - timedelta(days=1)

OTHER_COACH = AuthUser(sub="coach-2", email="coach2@test.com", role=COACH_ROLE)


async def _seed_class(db, **template_overrides):
    product = CreditProductFactory.create()
    template = ClassTemplateFactory.create(**template_overrides)
    cls_session = ClassSessionFactory.create(template_id=template.id, starts_at=STARTS_AT)
    db.add_all([product, template, cls_session])
    await db.commit()
    return product.id, template.id, cls_session.id


async def _book(db, session_id, client_id, product_id):
    await ledger.grant(
        db,
        client_id=client_id,
        product_id=product_id,
        amount=1,
        idempotency_key=f"test:{uuid.uuid4()}",
        reason=LedgerReason.ADMIN_ADJUSTMENT,
    )
    await db.commit()
    return await book_client_into_session(
        db, session_id=session_id, client_id=client_id, source=BookingSource.CLIENT, now=NOW
    )


def _template_fields(**overrides):
    fields = {
        "name": "Evening Yoga",
        "class_type": "YOGA",
        "scope": TemplateScope.FACILITY,
        "capacity": 12,
        "is_active": True,
        "waitlist_enabled": True,
    }
    fields.update(overrides)
    return fields


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_coach_owns_the_templates_they_create(db_session, coach_user):
    template = await catalog.create_template(db_session, coach_user, _template_fields())

    assert template.owner_coach_id == "coach-1"
    assert template.capacity == 12


@pytest.mark.asyncio
@pytest.mark.unit
async def test_only_admins_assign_template_owners(db_session, coach_user, admin_user):
    with pytest.raises(StaffActionForbidden):
        await catalog.create_template(
            db_session, coach_user, _template_fields(owner_coach_id="coach-2")
        )

    template = await catalog.create_template(
        db_session, admin_user, _template_fields(owner_coach_id="coach-2")
    )
    assert template.owner_coach_id == "coach-2"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_template_must_reference_an_existing_product(db_session, coach_user):
    with pytest.raises(CreditProductNotFound):
        await catalog.create_template(
            db_session, coach_user, _template_fields(credit_product_id=uuid.uuid4())
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_coaches_only_see_their_own_templates(db_session, coach_user, admin_user):
    _, template_id, _ = await _seed_class(db_session)
    other = ClassTemplateFactory.create(owner_coach_id="coach-2", name="Spin")
    db_session.add(other)
    await db_session.commit()

    assert [t.id for t in await catalog.list_templates(db_session, coach_user)] == [template_id]
    assert len(await catalog.list_templates(db_session, admin_user)) == 2
    assert [
        t.id for t in await catalog.list_templates(db_session, admin_user, owner_coach_id="coach-2")
    ] == [other.id]
    with pytest.raises(TemplateNotFound):
        await catalog.get_template(db_session, template_id, OTHER_COACH)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_update_template_applies_partial_changes(db_session, coach_user):
    _, template_id, _ = await _seed_class(db_session, booking_open_hours_before=48)

    template = await catalog.update_template(
        db_session,
        template_id,
        coach_user,
        {"capacity": 8, "booking_open_hours_before": None, "name": None},
    )

    assert template.capacity == 8
    assert template.booking_open_hours_before is None
    assert template.name == "Morning HIIT"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_coach_cannot_reassign_template(db_session, coach_user):
    _, template_id, _ = await _seed_class(db_session)

    with pytest.raises(StaffActionForbidden):
        await catalog.update_template(
            db_session, template_id, coach_user, {"owner_coach_id": "coach-2"}
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_deactivate_template_cancels_only_future_sessions(db_session, coach_user):
    product_id, template_id, session_id = await _seed_class(db_session)
    past = ClassSessionFactory.create(
        template_id=template_id, starts_at=NOW - timedelta(days=7)
    )
    db_session.add(past)
    await db_session.commit()
    await _book(db_session, session_id, "client-a", product_id)

    result = await catalog.deactivate_template(
        db_session, template_id, coach_user, cancel_future_sessions=True, now=NOW
    )

    assert result.template.is_active is False
    assert [c.session.id for c in result.sessions_cancelled] == [session_id]
    assert result.sessions_cancelled[0].credits_refunded == 1
    assert (await db_session.get(ClassSession, past.id)).status == SessionStatus.SCHEDULED
    assert await ledger.get_balance(db_session, "client-a", product_id) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_deactivate_template_keeps_sessions_by_default(db_session, coach_user):
    _, template_id, session_id = await _seed_class(db_session)

    result = await catalog.deactivate_template(db_session, template_id, coach_user, now=NOW)

    assert result.sessions_cancelled == []
    assert (await db_session.get(ClassSession, session_id)).status == SessionStatus.SCHEDULED


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_session_rejects_inverted_times(db_session, coach_user):
    _, template_id, _ = await _seed_class(db_session)

    with pytest.raises(InvalidSessionSchedule):
        await catalog.create_session(
            db_session, template_id, coach_user, starts_at=STARTS_AT, ends_at=STARTS_AT
        )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_and_list_template_sessions(db_session, coach_user):
    _, template_id, first_id = await _seed_class(db_session)

    created = await catalog.create_session(
        db_session,
        template_id,
        coach_user,
        starts_at=STARTS_AT + timedelta(days=7),
        ends_at=STARTS_AT + timedelta(days=7, hours=1),
        capacity_override=4,
    )

    sessions = await catalog.list_template_sessions(db_session, template_id, coach_user)
    assert [s.id for s in sessions] == [first_id, created.id]
    assert created.status == SessionStatus.SCHEDULED
    assert created.capacity_override == 4


@pytest.mark.asyncio
@pytest.mark.unit
async def test_update_session_checks_merged_schedule(db_session, coach_user):
    _, _, session_id = await _seed_class(db_session)

    with pytest.raises(InvalidSessionSchedule):
        await catalog.update_session(
            db_session, session_id, coach_user, {"ends_at": STARTS_AT - timedelta(minutes=5)}
        )

    result = await catalog.update_session(
        db_session, session_id, coach_user, {"capacity_override": 6, "instructor_id": "coach-3"}
    )
    assert result.changed_fields == ["capacity_override", "instructor_id"]
    assert result.session.capacity_override == 6
    assert result.cancellation is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_other_coach_cannot_manage_session(db_session):
    _, _, session_id = await _seed_class(db_session)

    with pytest.raises(SessionNotFound):
        await catalog.update_session(db_session, session_id, OTHER_COACH, {"capacity_override": 3})


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancelling_a_session_releases_and_refunds_bookings(db_session, coach_user):
    product_id, _, session_id = await _seed_class(db_session, capacity=1)
    booked = await _book(db_session, session_id, "client-a", product_id)
    waiting = await _book(db_session, session_id, "client-b", product_id)
    assert waiting.result == "waitlisted"

    result = await catalog.update_session(
        db_session, session_id, coach_user, {"status": SessionStatus.CANCELLED}, now=NOW
    )

    assert result.session.status == SessionStatus.CANCELLED
    assert result.cancellation.credits_refunded == 1
    assert {b.id for b in result.cancellation.bookings} == {
        booked.booking.id,
        waiting.booking.id,
    }
    rows = (
        await db_session.execute(select(ClassBooking).where(ClassBooking.session_id == session_id))
    ).scalars().all()
    assert {b.status for b in rows} == {BookingStatus.CANCELLED}
    assert all(b.waitlist_position is None for b in rows)
    assert await ledger.get_balance(db_session, "client-a", product_id) == 1
    assert await ledger.get_balance(db_session, "client-b", product_id) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancelled_session_is_not_cancelled_twice(db_session, coach_user):
    product_id, _, session_id = await _seed_class(db_session)
    await _book(db_session, session_id, "client-a", product_id)
    await catalog.update_session(
        db_session, session_id, coach_user, {"status": SessionStatus.CANCELLED}, now=NOW
    )

    again = await catalog.update_session(
        db_session, session_id, coach_user, {"status": SessionStatus.CANCELLED}, now=NOW
    )

    assert again.cancellation is None
    assert await ledger.get_balance(db_session, "client-a", product_id) == 1


# ---------------------------------------------------------------------------
# Credit products
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_coach_sees_facility_and_own_products(db_session, coach_user, admin_user):
    facility = CreditProductFactory.create(name="Facility pack")
    own = CreditProductFactory.create(name="Coach pack", owner_coach_id="coach-1")
    other = CreditProductFactory.create(name="Other pack", owner_coach_id="coach-2")
    retired = CreditProductFactory.create(name="Old pack", is_active=False)
    db_session.add_all([facility, own, other, retired])
    await db_session.commit()

    visible = await catalog.list_credit_products(db_session, actor=coach_user)
    assert {p.id for p in visible} == {facility.id, own.id}
    everything = await catalog.list_credit_products(
        db_session, actor=admin_user, include_inactive=True
    )
    assert len(everything) == 4


@pytest.mark.asyncio
@pytest.mark.unit
async def test_products_created_by_coach_are_owned(db_session, coach_user, admin_user):
    fields = {
        "name": "Drop-in",
        "credit_mode": CreditMode.ONE_TIME_PACK,
        "credits_per_period": 1,
        "class_eligible": True,
        "applies_to_class_types": [],
        "purchase_restricted": False,
        "is_active": True,
    }

    coach_product = await catalog.create_credit_product(db_session, coach_user, fields)
    facility_product = await catalog.create_credit_product(db_session, admin_user, fields)

    assert coach_product.owner_coach_id == "coach-1"
    assert facility_product.owner_coach_id is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_coach_cannot_change_facility_product(db_session, coach_user, admin_user):
    product = CreditProductFactory.create()
    db_session.add(product)
    await db_session.commit()

    with pytest.raises(StaffActionForbidden):
        await catalog.update_credit_product(
            db_session, product.id, coach_user, {"is_active": False}
        )

    updated = await catalog.update_credit_product(
        db_session, product.id, admin_user, {"is_active": False, "name": None}
    )
    assert updated.is_active is False
    assert updated.name == "10-class pack"


# ---------------------------------------------------------------------------
# Browse
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_browse_lists_facility_sessions_with_occupancy(db_session):
    product_id, template_id, session_id = await _seed_class(db_session, capacity=1)
    await _book(db_session, session_id, "client-a", product_id)
    await _book(db_session, session_id, "client-b", product_id)

    cohort = ClassTemplateFactory.create(scope=TemplateScope.COHORT, cohort_id=uuid.uuid4())
    inactive = ClassTemplateFactory.create(is_active=False)
    db_session.add_all([cohort, inactive])
    await db_session.commit()
    db_session.add_all(
        [
            ClassSessionFactory.create(template_id=cohort.id, starts_at=STARTS_AT),
            ClassSessionFactory.create(template_id=inactive.id, starts_at=STARTS_AT),
            ClassSessionFactory.create(
                template_id=template_id,
                starts_at=STARTS_AT + timedelta(hours=2),
                status=SessionStatus.CANCELLED,
            ),
            ClassSessionFactory.create(
                template_id=template_id, starts_at=NOW + timedelta(days=60)
            ),
        ]
    )
    await db_session.commit()

    items = await catalog.list_bookable_sessions(db_session, client_id="client-b", now=NOW)

    assert [item.session.id for item in items] == [session_id]
    item = items[0]
    assert item.capacity == 1
    assert (item.seats_taken, item.waitlisted) == (1, 1)
    assert item.is_full
    assert item.booking_open
    assert item.my_booking.status == BookingStatus.WAITLISTED
    assert item.my_booking.waitlist_position == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_browse_reports_closed_window_and_filters_type(db_session):
    _, _, session_id = await _seed_class(db_session, booking_open_hours_before=2)

    items = await catalog.list_bookable_sessions(db_session, client_id="client-a", now=NOW)
    assert [item.session.id for item in items] == [session_id]
    assert items[0].booking_open is False
    assert items[0].opens_at == STARTS_AT - timedelta(hours=2)
    assert items[0].my_booking is None

    assert await catalog.list_bookable_sessions(
        db_session, client_id="client-a", now=NOW, class_type="YOGA"
    ) == []
