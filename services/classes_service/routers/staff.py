"""Coach and admin endpoints.

Staff bookings bypass the booking window and may skip credit validation.
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from libs.auth.dependencies import require_coach
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.classes_service.dependencies import get_policy_defaults
from services.classes_service.dispatch import EventDispatcher, get_event_dispatcher
from services.classes_service.events import (
    booking_events,
    catalog_events,
    cancellation_events,
    submission_review_events,
)
from services.classes_service.models import (
    BookingSource,
    ClassTemplate,
    SubmissionStatus,
)
from services.classes_service.routers.client import cancellation_response
from services.classes_service.schemas import (
    AttendanceRequest,
    BookingResponse,
    BookSessionResponse,
    CancelBookingResponse,
    ClassSessionCreate,
    ClassSessionResponse,
    ClassSessionUpdate,
    ClassTemplateCreate,
    ClassTemplateResponse,
    ClassTemplateUpdate,
    CreditProductCreate,
    CreditProductResponse,
    CreditProductUpdate,
    CreditSubmissionResponse,
    SessionRosterResponse,
    SessionUpdateResponse,
    StaffBookingRequest,
    SubmissionReviewRequest,
)
from services.classes_service.services import booking_ops, catalog, submissions
from services.classes_service.services.policy import (
    PolicyDefaults,
    TemplatePolicy,
    effective_capacity,
    resolve_policy,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/admin/classes", tags=["admin-classes"])


def _staff_source(user: AuthUser) -> BookingSource:
    return BookingSource.ADMIN if user.is_admin else BookingSource.COACH


@router.post("/sessions/{session_id}/bookings", response_model=BookSessionResponse)
async def staff_book_client(
    session_id: uuid.UUID,
    body: StaffBookingRequest,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    defaults: PolicyDefaults = Depends(get_policy_defaults),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    """Book a client into a session on their behalf."""
    result = await booking_ops.book_client_into_session(
        db,
        session_id=session_id,
        client_id=body.client_id,
        source=_staff_source(current_user),
        actor_id=current_user.user_id,
        skip_credit_validation=body.skip_credit_validation,
        enforce_booking_window=body.enforce_booking_window,
        defaults=defaults,
    )
    audits, notifications = booking_events(
        result, current_user, get_settings().BOOKING_TIMEZONE
    )
    await dispatcher.publish(audits, notifications)

    return BookSessionResponse(
        result=result.result,
        booking=BookingResponse.model_validate(result.booking),
        waitlist_position=result.waitlist_position,
    )


@router.get("/sessions/{session_id}/roster", response_model=SessionRosterResponse)
async def get_session_roster(
    session_id: uuid.UUID,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    defaults: PolicyDefaults = Depends(get_policy_defaults),
):
    """Seat holders and waitlist for one session."""
    bookings = await booking_ops.list_session_roster(db, session_id)
    session = await booking_ops.get_session(db, session_id)
    template = await db.get(ClassTemplate, session.template_id)
    policy = resolve_policy(TemplatePolicy.from_template(template), defaults)
    seats_taken, waitlisted = await booking_ops.count_occupancy(db, session_id)
    return SessionRosterResponse(
        session_id=session_id,
        capacity=effective_capacity(policy, session.capacity_override),
        seats_taken=seats_taken,
        waitlisted=waitlisted,
        bookings=[BookingResponse.model_validate(b) for b in bookings],
    )


@router.post("/bookings/{booking_id}/cancel", response_model=CancelBookingResponse)
async def staff_cancel_booking(
    booking_id: uuid.UUID,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    defaults: PolicyDefaults = Depends(get_policy_defaults),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    result = await booking_ops.cancel_booking(
        db, booking_id=booking_id, actor_id=current_user.user_id, defaults=defaults
    )
    audits, notifications = cancellation_events(
        result, current_user, get_settings().BOOKING_TIMEZONE
    )
    await dispatcher.publish(audits, notifications)
    return cancellation_response(result)


@router.post("/bookings/{booking_id}/attendance", response_model=BookingResponse)
async def mark_booking_attendance(
    booking_id: uuid.UUID,
    body: AttendanceRequest,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
):
    booking = await booking_ops.mark_attendance(
        db, booking_id=booking_id, status=body.status, actor_id=current_user.user_id
    )
    return BookingResponse.model_validate(booking)


@router.get("/credits/submissions", response_model=list[CreditSubmissionResponse])
async def list_credit_submissions(
    status: Optional[SubmissionStatus] = SubmissionStatus.PENDING,
    client_id: Optional[str] = None,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
):
    items = await submissions.list_submissions(db, status=status, client_id=client_id)
    return [CreditSubmissionResponse.model_validate(s) for s in items]


@router.post(
    "/credits/submissions/{submission_id}/review",
    response_model=CreditSubmissionResponse,
)
async def review_submission(
    submission_id: uuid.UUID,
    body: SubmissionReviewRequest,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    """Approve (granting credits) or reject a pending submission."""
    result = await submissions.review_credit_submission(
        db,
        submission_id=submission_id,
        action=body.action,
        reviewer_id=current_user.user_id,
    )
    audits, notifications = submission_review_events(result, current_user)
    await dispatcher.publish(audits, notifications)
    return CreditSubmissionResponse.model_validate(result.submission)


# ---------------------------------------------------------------------------
# Catalog: templates, sessions, credit products
# ---------------------------------------------------------------------------


@router.get("/templates", response_model=list[ClassTemplateResponse])
async def list_class_templates(
    include_inactive: bool = False,
    class_type: Optional[str] = None,
    owner_coach_id: Optional[str] = None,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
):
    """Coaches see their own templates; admins see all, optionally by owner."""
    templates = await catalog.list_templates(
        db,
        current_user,
        include_inactive=include_inactive,
        class_type=class_type,
        owner_coach_id=owner_coach_id,
    )
    return [ClassTemplateResponse.model_validate(t) for t in templates]


@router.post(
    "/templates",
    response_model=ClassTemplateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_class_template(
    body: ClassTemplateCreate,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    template = await catalog.create_template(db, current_user, body.model_dump())
    audits, _ = catalog_events("CLASS_TEMPLATE_CREATE", template, current_user)
    await dispatcher.publish(audits, [])
    return ClassTemplateResponse.model_validate(template)


@router.get("/templates/{template_id}", response_model=ClassTemplateResponse)
async def get_class_template(
    template_id: uuid.UUID,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
):
    template = await catalog.get_template(db, template_id, current_user)
    return ClassTemplateResponse.model_validate(template)


@router.patch("/templates/{template_id}", response_model=ClassTemplateResponse)
async def update_class_template(
    template_id: uuid.UUID,
    body: ClassTemplateUpdate,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    """Partial update; policy fields set to null fall back to facility defaults."""
    changes = body.model_dump(exclude_unset=True)
    template = await catalog.update_template(db, template_id, current_user, changes)
    audits, _ = catalog_events(
        "CLASS_TEMPLATE_UPDATE", template, current_user, changed_fields=sorted(changes)
    )
    await dispatcher.publish(audits, [])
    return ClassTemplateResponse.model_validate(template)


@router.delete("/templates/{template_id}", response_model=ClassTemplateResponse)
async def deactivate_class_template(
    template_id: uuid.UUID,
    cancel_future_sessions: bool = False,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    """Soft delete: the template stops taking bookings and keeps its history."""
    result = await catalog.deactivate_template(
        db, template_id, current_user, cancel_future_sessions=cancel_future_sessions
    )
    audits, notifications = catalog_events(
        "CLASS_TEMPLATE_DEACTIVATE",
        result.template,
        current_user,
        changed_fields=["is_active"],
        cancellations=result.sessions_cancelled,
        timezone=get_settings().BOOKING_TIMEZONE,
        template=result.template,
    )
    await dispatcher.publish(audits, notifications)
    return ClassTemplateResponse.model_validate(result.template)


@router.get("/templates/{template_id}/sessions", response_model=list[ClassSessionResponse])
async def list_class_sessions(
    template_id: uuid.UUID,
    starts_from: Optional[datetime] = Query(None, alias="from"),
    starts_to: Optional[datetime] = Query(None, alias="to"),
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
):
    sessions = await catalog.list_template_sessions(
        db, template_id, current_user, starts_from=starts_from, starts_to=starts_to
    )
    return [ClassSessionResponse.model_validate(s) for s in sessions]


@router.post(
    "/templates/{template_id}/sessions",
    response_model=ClassSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_class_session(
    template_id: uuid.UUID,
    body: ClassSessionCreate,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    session = await catalog.create_session(
        db,
        template_id,
        current_user,
        starts_at=body.starts_at,
        ends_at=body.ends_at,
        instructor_id=body.instructor_id,
        capacity_override=body.capacity_override,
    )
    audits, _ = catalog_events("CLASS_SESSION_CREATE", session, current_user)
    await dispatcher.publish(audits, [])
    return ClassSessionResponse.model_validate(session)


@router.patch("/sessions/{session_id}", response_model=SessionUpdateResponse)
async def update_class_session(
    session_id: uuid.UUID,
    body: ClassSessionUpdate,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    """Reschedule or resize a session; status ``cancelled`` releases and refunds every booking."""
    result = await catalog.update_session(
        db, session_id, current_user, body.model_dump(exclude_unset=True)
    )
    cancellations = [result.cancellation] if result.cancellation else []
    audits, notifications = catalog_events(
        "CLASS_SESSION_UPDATE",
        result.session,
        current_user,
        changed_fields=result.changed_fields,
        cancellations=cancellations,
        timezone=get_settings().BOOKING_TIMEZONE,
        template=result.template,
    )
    await dispatcher.publish(audits, notifications)
    return SessionUpdateResponse(
        session=ClassSessionResponse.model_validate(result.session),
        bookings_cancelled=sum(len(c.bookings) for c in cancellations),
        credits_refunded=sum(c.credits_refunded for c in cancellations),
    )


@router.get("/credit-products", response_model=list[CreditProductResponse])
async def list_credit_products(
    include_inactive: bool = False,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
):
    products = await catalog.list_credit_products(
        db, actor=current_user, include_inactive=include_inactive
    )
    return [CreditProductResponse.model_validate(p) for p in products]


@router.post(
    "/credit-products",
    response_model=CreditProductResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_credit_product(
    body: CreditProductCreate,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    product = await catalog.create_credit_product(db, current_user, body.model_dump())
    audits, _ = catalog_events("CLASS_CREDIT_PRODUCT_CREATE", product, current_user)
    await dispatcher.publish(audits, [])
    return CreditProductResponse.model_validate(product)


@router.patch("/credit-products/{product_id}", response_model=CreditProductResponse)
async def update_credit_product(
    product_id: uuid.UUID,
    body: CreditProductUpdate,
    current_user: AuthUser = Depends(require_coach),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    changes = body.model_dump(exclude_unset=True)
    product = await catalog.update_credit_product(db, product_id, current_user, changes)
    audits, _ = catalog_events(
        "CLASS_CREDIT_PRODUCT_UPDATE", product, current_user, changed_fields=sorted(changes)
    )
    await dispatcher.publish(audits, [])
    return CreditProductResponse.model_validate(product)
