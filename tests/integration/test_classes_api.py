"""Integration tests for the Classes Service HTTP API.

Seed data is committed through ``db_session`` before each request; results
are read back through a fresh session so nothing holds the shared
in-memory connection open while the app handles a request.
"""

import uuid
from datetime import datetime, timezone

import pytest
from libs.common.config import get_settings
from services.classes_service.models import (
    BookingStatus,
    ClassBooking,
    LedgerReason,
    SubmissionStatus,
)
from services.classes_service.services import ledger
from tests.factories import (
    ClassSessionFactory,
    ClassTemplateFactory,
    ClientCreditSubscriptionFactory,
    CreditProductFactory,
    CreditSubmissionFactory,
    MonthlyCreditProductFactory,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _seed_class(db, **template_overrides):
    product = CreditProductFactory.create()
    template = ClassTemplateFactory.create(**template_overrides)
    cls_session = ClassSessionFactory.create(template_id=template.id)
    db.add_all([product, template, cls_session])
    await db.commit()
    return product.id, cls_session.id


async def _give(db, client_id, product_id, amount):
    await ledger.grant(
        db,
        client_id=client_id,
        product_id=product_id,
        amount=amount,
        idempotency_key=f"test:{uuid.uuid4()}",
        reason=LedgerReason.ADMIN_ADJUSTMENT,
    )
    await db.commit()


async def _balance(session_factory, client_id, product_id):
    async with session_factory() as db:
        return await ledger.get_balance(db, client_id, product_id)


async def _booking(session_factory, booking_id):
    async with session_factory() as db:
        return await db.get(ClassBooking, booking_id)


# ---------------------------------------------------------------------------
# Client booking
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_book_session_as_client(
    api_client, db_session, session_factory, login, client_user, dispatcher
):
    product_id, session_id = await _seed_class(db_session)
    await _give(db_session, "client-1", product_id, 2)
    login(client_user)

    response = await api_client.post(f"/classes/sessions/{session_id}/book")

    assert response.status_code == 200
    data = response.json()
    assert data["result"] == "booked"
    assert data["booking"]["status"] == "booked"
    assert data["booking"]["credits_charged"] == 1
    assert data["booking"]["source"] == "client"
    assert await _balance(session_factory, "client-1", product_id) == 1

    assert [a.action_type for a in dispatcher.audits] == ["CLASS_BOOKING_CREATED"]
    assert [n.kind for n in dispatcher.notifications] == ["booked"]
    assert dispatcher.notifications[0].class_name == "Morning HIIT"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_book_twice_returns_existing(api_client, db_session, login, client_user, dispatcher):
    product_id, session_id = await _seed_class(db_session)
    await _give(db_session, "client-1", product_id, 2)
    login(client_user)

    first = await api_client.post(f"/classes/sessions/{session_id}/book")
    second = await api_client.post(f"/classes/sessions/{session_id}/book")

    assert second.status_code == 200
    assert second.json()["result"] == "already_exists"
    assert second.json()["booking"]["id"] == first.json()["booking"]["id"]
    assert [n.kind for n in dispatcher.notifications] == ["booked"]
    assert [a.action_type for a in dispatcher.audits] == ["CLASS_BOOKING_CREATED"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_book_without_credit_returns_402(api_client, db_session, login, client_user):
    _, session_id = await _seed_class(db_session)
    login(client_user)

    response = await api_client.post(f"/classes/sessions/{session_id}/book")

    assert response.status_code == 402
    assert response.json()["code"] == "insufficient_credit"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_book_full_session_returns_409(api_client, db_session, login, client_user):
    _, session_id = await _seed_class(db_session, capacity=0, waitlist_enabled=False)
    login(client_user)

    response = await api_client.post(f"/classes/sessions/{session_id}/book")

    assert response.status_code == 409
    assert response.json()["code"] == "session_full"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_book_unknown_session_returns_404(api_client, login, client_user):
    login(client_user)

    response = await api_client.post(f"/classes/sessions/{uuid.uuid4()}/book")

    assert response.status_code == 404
    assert response.json()["code"] == "session_not_found"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_staff_cannot_use_client_booking(api_client, db_session, login, coach_user):
    _, session_id = await _seed_class(db_session)
    login(coach_user)

    response = await api_client.post(f"/classes/sessions/{session_id}/book")

    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_booking_disabled_returns_403(
    api_client, db_session, login, client_user, monkeypatch
):
    product_id, session_id = await _seed_class(db_session)
    await _give(db_session, "client-1", product_id, 2)
    login(client_user)
    monkeypatch.setattr(get_settings(), "CLASS_BOOKING_ENABLED", False)

    response = await api_client.post(f"/classes/sessions/{session_id}/book")

    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cancel_promotes_waitlisted_client(
    api_client, db_session, session_factory, login, client_user, coach_user, dispatcher
):
    product_id, session_id = await _seed_class(db_session, capacity=1)
    await _give(db_session, "client-1", product_id, 1)
    await _give(db_session, "client-2", product_id, 1)

    login(client_user)
    booked = await api_client.post(f"/classes/sessions/{session_id}/book")
    login(coach_user)
    waitlisted = await api_client.post(
        f"/admin/classes/sessions/{session_id}/bookings", json={"client_id": "client-2"}
    )
    assert waitlisted.json()["result"] == "waitlisted"
    assert waitlisted.json()["waitlist_position"] == 1

    login(client_user)
    response = await api_client.post(
        f"/classes/bookings/{booked.json()['booking']['id']}/cancel"
    )

    assert response.status_code == 200
    data = response.json()
    assert data["booking"]["status"] == "cancelled"
    assert data["late_cancel"] is False
    assert data["credits_refunded"] == 1
    assert [p["client_id"] for p in data["promoted"]] == ["client-2"]
    assert await _balance(session_factory, "client-1", product_id) == 1
    assert await _balance(session_factory, "client-2", product_id) == 0

    promoted = await _booking(session_factory, uuid.UUID(waitlisted.json()["booking"]["id"]))
    assert promoted.status == BookingStatus.BOOKED
    assert [n.kind for n in dispatcher.notifications][-2:] == ["cancelled", "waitlist_promoted"]
    assert dispatcher.audits[-1].action_type == "CLASS_WAITLIST_PROMOTED"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cancel_reports_blocked_promotion(api_client, db_session, login, client_user, coach_user):
    product_id, session_id = await _seed_class(db_session, capacity=1)
    await _give(db_session, "client-1", product_id, 1)

    login(client_user)
    booked = await api_client.post(f"/classes/sessions/{session_id}/book")
    login(coach_user)
    await api_client.post(
        f"/admin/classes/sessions/{session_id}/bookings", json={"client_id": "client-broke"}
    )

    login(client_user)
    response = await api_client.post(
        f"/classes/bookings/{booked.json()['booking']['id']}/cancel"
    )

    assert response.status_code == 200
    assert response.json()["promoted"] == []
    assert "Insufficient" in response.json()["promotion_error"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cancel_twice_is_idempotent(api_client, db_session, login, client_user, dispatcher):
    product_id, session_id = await _seed_class(db_session)
    await _give(db_session, "client-1", product_id, 1)
    login(client_user)
    booked = await api_client.post(f"/classes/sessions/{session_id}/book")
    booking_id = booked.json()["booking"]["id"]

    await api_client.post(f"/classes/bookings/{booking_id}/cancel")
    again = await api_client.post(f"/classes/bookings/{booking_id}/cancel")

    assert again.status_code == 200
    assert again.json()["already_cancelled"] is True
    assert again.json()["credits_refunded"] == 0
    assert [n.kind for n in dispatcher.notifications].count("cancelled") == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cannot_cancel_someone_elses_booking(
    api_client, db_session, login, client_user, coach_user
):
    _, session_id = await _seed_class(db_session)
    login(coach_user)
    other = await api_client.post(
        f"/admin/classes/sessions/{session_id}/bookings",
        json={"client_id": "client-2", "skip_credit_validation": True},
    )

    login(client_user)
    response = await api_client.post(
        f"/classes/bookings/{other.json()['booking']['id']}/cancel"
    )

    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cancel_unknown_booking_returns_404(api_client, login, client_user):
    login(client_user)

    response = await api_client.post(f"/classes/bookings/{uuid.uuid4()}/cancel")

    assert response.status_code == 404
    assert response.json()["code"] == "booking_not_found"


# ---------------------------------------------------------------------------
# Staff
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_staff_booking_skips_credit_and_records_source(
    api_client, db_session, login, admin_user
):
    _, session_id = await _seed_class(db_session)
    login(admin_user)

    response = await api_client.post(
        f"/admin/classes/sessions/{session_id}/bookings",
        json={"client_id": "client-comp", "skip_credit_validation": True},
    )

    assert response.status_code == 200
    booking = response.json()["booking"]
    assert booking["source"] == "admin"
    assert booking["booked_by_user_id"] == "admin-1"
    assert booking["credits_charged"] == 0


@pytest.mark.asyncio
@pytest.mark.integration
async def test_staff_routes_require_coach(api_client, db_session, login, client_user):
    _, session_id = await _seed_class(db_session)
    login(client_user)

    response = await api_client.get(f"/admin/classes/sessions/{session_id}/roster")

    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_roster_and_attendance(api_client, db_session, login, coach_user):
    _, session_id = await _seed_class(db_session, capacity=1)
    login(coach_user)
    seated = await api_client.post(
        f"/admin/classes/sessions/{session_id}/bookings",
        json={"client_id": "client-a", "skip_credit_validation": True},
    )
    await api_client.post(
        f"/admin/classes/sessions/{session_id}/bookings",
        json={"client_id": "client-b", "skip_credit_validation": True},
    )

    roster = await api_client.get(f"/admin/classes/sessions/{session_id}/roster")

    assert roster.status_code == 200
    data = roster.json()
    assert (data["capacity"], data["seats_taken"], data["waitlisted"]) == (1, 1, 1)
    assert [b["client_id"] for b in data["bookings"]] == ["client-a", "client-b"]

    booking_id = seated.json()["booking"]["id"]
    marked = await api_client.post(
        f"/admin/classes/bookings/{booking_id}/attendance", json={"status": "attended"}
    )
    assert marked.status_code == 200
    assert marked.json()["status"] == "attended"

    rejected = await api_client.post(
        f"/admin/classes/bookings/{booking_id}/attendance", json={"status": "cancelled"}
    )
    assert rejected.status_code == 400
    assert rejected.json()["code"] == "invalid_attendance_transition"

    cancel = await api_client.post(f"/admin/classes/bookings/{booking_id}/cancel")
    assert cancel.status_code == 400
    assert cancel.json()["code"] == "booking_not_cancellable"


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_submission_review_flow(
    api_client, db_session, session_factory, login, client_user, admin_user, dispatcher
):
    product = CreditProductFactory.create(name="5-class pack", credits_per_period=5)
    db_session.add(product)
    await db_session.commit()
    product_id = product.id

    login(client_user)
    created = await api_client.post(
        "/classes/credits/submissions",
        json={"credit_product_id": str(product_id), "reference_code": "BANK-42"},
    )
    assert created.status_code == 201
    assert created.json()["status"] == "pending"

    duplicate = await api_client.post(
        "/classes/credits/submissions",
        json={"credit_product_id": str(product_id), "reference_code": "BANK-42"},
    )
    assert duplicate.status_code == 409

    summary = await api_client.get("/classes/credits/me")
    assert summary.json()["pending_submissions"] == 1

    login(admin_user)
    pending = await api_client.get("/admin/classes/credits/submissions")
    assert [s["reference_code"] for s in pending.json()] == ["BANK-42"]

    reviewed = await api_client.post(
        f"/admin/classes/credits/submissions/{created.json()['id']}/review",
        json={"action": "APPROVE"},
    )
    assert reviewed.status_code == 200
    assert reviewed.json()["status"] == "approved"
    assert reviewed.json()["credits_applied"] == 5
    assert reviewed.json()["reviewed_by"] == "admin-1"
    assert [a.action_type for a in dispatcher.audits] == ["CLASS_CREDIT_SUBMISSION_REVIEW"]
    assert dispatcher.audits[0].decision == "approved"
    assert [(n.kind, n.recipient_id) for n in dispatcher.notifications] == [
        ("credit_approved", "client-1")
    ]

    login(client_user)
    summary = await api_client.get("/classes/credits/me")
    data = summary.json()
    assert data["total_balance"] == 5
    assert data["pending_submissions"] == 0
    assert [(b["product_name"], b["balance"]) for b in data["balances"]] == [("5-class pack", 5)]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_rejected_submission_notifies_client(
    api_client, db_session, login, coach_user, dispatcher
):
    product = CreditProductFactory.create(name="5-class pack")
    db_session.add(product)
    submission = CreditSubmissionFactory.create(product.id, client_id="client-7")
    db_session.add(submission)
    await db_session.commit()
    submission_id = submission.id
    login(coach_user)

    response = await api_client.post(
        f"/admin/classes/credits/submissions/{submission_id}/review",
        json={"action": "REJECT"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert [(a.action_type, a.decision) for a in dispatcher.audits] == [
        ("CLASS_CREDIT_SUBMISSION_REVIEW", "rejected")
    ]
    assert [(n.kind, n.recipient_id, n.product_name) for n in dispatcher.notifications] == [
        ("credit_rejected", "client-7", "5-class pack")
    ]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_review_already_reviewed_returns_400(api_client, db_session, login, admin_user):
    product = CreditProductFactory.create()
    db_session.add(product)
    submission = CreditSubmissionFactory.create(product.id, status=SubmissionStatus.REJECTED)
    db_session.add(submission)
    await db_session.commit()
    submission_id = submission.id
    login(admin_user)

    response = await api_client.post(
        f"/admin/classes/credits/submissions/{submission_id}/review",
        json={"action": "APPROVE"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "submission_not_pending"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_my_bookings_hides_cancelled_by_default(api_client, db_session, login, client_user):
    product_id, session_id = await _seed_class(db_session)
    await _give(db_session, "client-1", product_id, 1)
    login(client_user)
    booked = await api_client.post(f"/classes/sessions/{session_id}/book")
    await api_client.post(f"/classes/bookings/{booked.json()['booking']['id']}/cancel")

    active = await api_client.get("/classes/bookings/me")
    everything = await api_client.get("/classes/bookings/me", params={"include_cancelled": True})

    assert active.json() == []
    assert [b["status"] for b in everything.json()] == ["cancelled"]

# ---------------------------------------------------------------------------
# Browse and catalog
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_browse_sessions_as_client(api_client, db_session, login, client_user):
    product_id, session_id = await _seed_class(db_session, capacity=1)
    await _give(db_session, "client-1", product_id, 3)
    login(client_user)
    await api_client.post(f"/classes/sessions/{session_id}/book")

    response = await api_client.get("/classes/sessions")

    assert response.status_code == 200
    data = response.json()
    [item] = data["sessions"]
    assert item["session_id"] == str(session_id)
    assert item["class_name"] == "Morning HIIT"
    assert (item["capacity"], item["seats_taken"], item["is_full"]) == (1, 1, True)
    assert item["booking_open"] is True
    assert item["my_booking"]["status"] == "booked"
    assert data["credit_summary"]["total_balance"] == 2
    assert [p["id"] for p in data["products"]] == [str(product_id)]

    filtered = await api_client.get("/classes/sessions", params={"class_type": "YOGA"})
    assert filtered.json()["sessions"] == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_coach_builds_a_class(api_client, login, coach_user, dispatcher):
    login(coach_user)

    created = await api_client.post(
        "/admin/classes/templates",
        json={"name": "Evening Yoga", "class_type": "YOGA", "capacity": 10},
    )
    assert created.status_code == 201
    template = created.json()
    assert template["owner_coach_id"] == "coach-1"
    assert template["scope"] == "facility"

    patched = await api_client.patch(
        f"/admin/classes/templates/{template['id']}", json={"capacity": 6}
    )
    assert patched.json()["capacity"] == 6

    session = await api_client.post(
        f"/admin/classes/templates/{template['id']}/sessions",
        json={"starts_at": "2026-03-10T18:00:00Z", "ends_at": "2026-03-10T19:00:00Z"},
    )
    assert session.status_code == 201
    assert session.json()["status"] == "scheduled"

    listed = await api_client.get(f"/admin/classes/templates/{template['id']}/sessions")
    assert [s["id"] for s in listed.json()] == [session.json()["id"]]

    inverted = await api_client.post(
        f"/admin/classes/templates/{template['id']}/sessions",
        json={"starts_at": "2026-03-10T18:00:00Z", "ends_at": "2026-03-10T17:00:00Z"},
    )
    assert inverted.status_code == 400
    assert inverted.json()["code"] == "invalid_session_schedule"

    assert [a.action_type for a in dispatcher.audits] == [
        "CLASS_TEMPLATE_CREATE",
        "CLASS_TEMPLATE_UPDATE",
        "CLASS_SESSION_CREATE",
    ]
    assert dispatcher.audits[1].changed_fields == ["capacity"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_other_coaches_templates_are_hidden(api_client, db_session, login, coach_user):
    template = ClassTemplateFactory.create(owner_coach_id="coach-2")
    db_session.add(template)
    await db_session.commit()
    login(coach_user)

    response = await api_client.get(f"/admin/classes/templates/{template.id}")

    assert response.status_code == 404
    assert response.json()["code"] == "class_template_not_found"
    assert (await api_client.get("/admin/classes/templates")).json() == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_cancel_session_refunds_and_notifies(
    api_client, db_session, session_factory, login, client_user, coach_user, dispatcher
):
    product_id, session_id = await _seed_class(db_session)
    await _give(db_session, "client-1", product_id, 1)
    login(client_user)
    await api_client.post(f"/classes/sessions/{session_id}/book")
    assert await _balance(session_factory, "client-1", product_id) == 0
    dispatcher.audits.clear()
    dispatcher.notifications.clear()

    login(coach_user)
    response = await api_client.patch(
        f"/admin/classes/sessions/{session_id}", json={"status": "cancelled"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["session"]["status"] == "cancelled"
    assert (data["bookings_cancelled"], data["credits_refunded"]) == (1, 1)
    assert await _balance(session_factory, "client-1", product_id) == 1

    [audit] = dispatcher.audits
    assert audit.action_type == "CLASS_SESSION_UPDATE"
    assert audit.credits_refunded == 1
    assert [(n.kind, n.recipient_id) for n in dispatcher.notifications] == [
        ("session_cancelled", "client-1")
    ]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_deactivate_template_via_delete(api_client, db_session, login, admin_user):
    _, session_id = await _seed_class(db_session)
    login(admin_user)
    [template] = (await api_client.get("/admin/classes/templates")).json()

    response = await api_client.delete(
        f"/admin/classes/templates/{template['id']}",
        params={"cancel_future_sessions": True},
    )

    assert response.status_code == 200
    assert response.json()["is_active"] is False
    sessions = await api_client.get(f"/admin/classes/templates/{template['id']}/sessions")
    assert [(s["id"], s["status"]) for s in sessions.json()] == [(str(session_id), "cancelled")]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_credit_product_management(api_client, db_session, login, coach_user, admin_user):
    facility = CreditProductFactory.create(name="Facility pack")
    db_session.add(facility)
    await db_session.commit()
    login(coach_user)

    created = await api_client.post(
        "/admin/classes/credit-products",
        json={"name": "Coach monthly", "credit_mode": "monthly_topup", "credits_per_period": 4},
    )
    assert created.status_code == 201
    assert created.json()["owner_coach_id"] == "coach-1"
    assert created.json()["period_type"] == "month"

    missing_amount = await api_client.post(
        "/admin/classes/credit-products",
        json={"name": "Broken", "credit_mode": "monthly_topup"},
    )
    assert missing_amount.status_code == 422

    forbidden = await api_client.patch(
        f"/admin/classes/credit-products/{facility.id}", json={"is_active": False}
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "staff_action_forbidden"

    listed = await api_client.get("/admin/classes/credit-products")
    assert {p["name"] for p in listed.json()} == {"Facility pack", "Coach monthly"}

    login(admin_user)
    retired = await api_client.patch(
        f"/admin/classes/credit-products/{facility.id}", json={"is_active": False}
    )
    assert retired.json()["is_active"] is False



# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_monthly_credit_cron(api_client, db_session, session_factory, monkeypatch):
    product = MonthlyCreditProductFactory.create()
    db_session.add(product)
    db_session.add(ClientCreditSubscriptionFactory.create(product.id, client_id="client-a"))
    await db_session.commit()
    product_id = product.id
    monkeypatch.setattr(get_settings(), "CRON_SECRET", "cron-test-secret")
    run_at = datetime(2026, 3, 1, 0, 5, tzinfo=timezone.utc).isoformat()

    denied = await api_client.post(
        "/internal/classes/cron/monthly-credits", params={"run_at": run_at}
    )
    assert denied.status_code == 401

    response = await api_client.post(
        "/internal/classes/cron/monthly-credits",
        params={"run_at": run_at},
        headers={"X-Cron-Secret": "cron-test-secret"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["period_key"] == "2026-03"
    assert data["grants_issued"] == 1
    assert data["failures"] == []
    assert await _balance(session_factory, "client-a", product_id) == 8


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health(api_client):
    response = await api_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "classes"}
