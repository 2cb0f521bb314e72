"""Client self-service endpoints: browse, book, cancel, credits, submissions."""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from libs.auth.dependencies import require_client
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.classes_service.dependencies import (
    get_policy_defaults,
    require_booking_enabled,
)
from services.classes_service.dispatch import EventDispatcher, get_event_dispatcher
from services.classes_service.events import booking_events, cancellation_events
from services.classes_service.models import BookingSource
from services.classes_service.schemas import (
    BookingResponse,
    BookSessionResponse,
    CancelBookingResponse,
    ClassBrowseResponse,
    CreditProductResponse,
    CreditSubmissionCreate,
    CreditSubmissionResponse,
    CreditSummaryResponse,
    MyBookingSummary,
    ProductBalanceResponse,
    SessionAvailabilityResponse,
)
from services.classes_service.services import booking_ops, catalog, ledger, submissions
from services.classes_service.services.policy import PolicyDefaults
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/classes", tags=["classes"])


def cancellation_response(result: booking_ops.CancellationResult) -> CancelBookingResponse:
    return CancelBookingResponse(
        booking=BookingResponse.model_validate(result.booking),
        promoted=[BookingResponse.model_validate(b) for b in result.promoted],
        late_cancel=result.late_cancel,
        credits_refunded=result.credits_refunded,
        already_cancelled=result.already_cancelled,
        promotion_error=result.promotion_error.message if result.promotion_error else None,
    )


def _credit_summary_response(summary: ledger.CreditSummary) -> CreditSummaryResponse:
    return CreditSummaryResponse(
        client_id=summary.client_id,
        total_balance=summary.total_balance,
        balances=[ProductBalanceResponse.model_validate(b) for b in summary.balances],
        pending_submissions=summary.pending_submissions,
    )


@router.get(
    "/sessions",
    response_model=ClassBrowseResponse,
    dependencies=[Depends(require_booking_enabled)],
)
async def browse_sessions(
    starts_from: Optional[datetime] = Query(None, alias="from"),
    starts_to: Optional[datetime] = Query(None, alias="to"),
    class_type: Optional[str] = None,
    current_user: AuthUser = Depends(require_client),
    db: AsyncSession = Depends(get_async_db),
    defaults: PolicyDefaults = Depends(get_policy_defaults),
):
    """Upcoming bookable classes with seats, waitlist and your own booking state."""
    sessions = await catalog.list_bookable_sessions(
        db,
        client_id=current_user.user_id,
        defaults=defaults,
        starts_from=starts_from,
        starts_to=starts_to,
        class_type=class_type,
    )
    summary = await ledger.get_credit_summary(db, current_user.user_id)
    products = await catalog.list_credit_products(db, class_eligible_only=True)

    return ClassBrowseResponse(
        sessions=[
            SessionAvailabilityResponse(
                session_id=item.session.id,
                template_id=item.template.id,
                class_name=item.template.name,
                class_type=item.template.class_type,
                location_label=item.template.location_label,
                instructor_id=item.session.instructor_id,
                starts_at=item.session.starts_at,
                ends_at=item.session.ends_at,
                capacity=item.capacity,
                seats_taken=item.seats_taken,
                waitlisted=item.waitlisted,
                is_full=item.is_full,
                waitlist_enabled=item.template.waitlist_enabled,
                credits_required=item.credits_required,
                booking_open=item.booking_open,
                booking_opens_at=item.opens_at,
                booking_closes_at=item.closes_at,
                my_booking=(
                    MyBookingSummary.model_validate(item.my_booking)
                    if item.my_booking
                    else None
                ),
            )
            for item in sessions
        ],
        credit_summary=_credit_summary_response(summary),
        products=[CreditProductResponse.model_validate(p) for p in products],
    )

@router.post(
    "/sessions/{session_id}/book",
    response_model=BookSessionResponse,
    dependencies=[Depends(require_booking_enabled)],
)
async def book_session(
    session_id: uuid.UUID,
    current_user: AuthUser = Depends(require_client),
    db: AsyncSession = Depends(get_async_db),
    defaults: PolicyDefaults = Depends(get_policy_defaults),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    """Book a seat, or join the waitlist when the class is full."""
    result = await booking_ops.book_client_into_session(
        db,
        session_id=session_id,
        client_id=current_user.user_id,
        source=BookingSource.CLIENT,
        actor_id=current_user.user_id,
        enforce_booking_window=True,
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


@router.post(
    "/bookings/{booking_id}/cancel",
    response_model=CancelBookingResponse,
    dependencies=[Depends(require_booking_enabled)],
)
async def cancel_my_booking(
    booking_id: uuid.UUID,
    current_user: AuthUser = Depends(require_client),
    db: AsyncSession = Depends(get_async_db),
    defaults: PolicyDefaults = Depends(get_policy_defaults),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
):
    """Cancel one of your own bookings."""
    booking = await booking_ops.get_booking(db, booking_id)
    if booking.client_id != current_user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only cancel your own bookings",
        )

    result = await booking_ops.cancel_booking(
        db, booking_id=booking_id, actor_id=current_user.user_id, defaults=defaults
    )
    audits, notifications = cancellation_events(
        result, current_user, get_settings().BOOKING_TIMEZONE
    )
    await dispatcher.publish(audits, notifications)
    return cancellation_response(result)


@router.get("/bookings/me", response_model=list[BookingResponse])
async def list_my_bookings(
    include_cancelled: bool = False,
    current_user: AuthUser = Depends(require_client),
    db: AsyncSession = Depends(get_async_db),
):
    bookings = await booking_ops.list_client_bookings(
        db, current_user.user_id, include_cancelled=include_cancelled
    )
    return [BookingResponse.model_validate(b) for b in bookings]


@router.get("/credits/me", response_model=CreditSummaryResponse)
async def get_my_credits(
    current_user: AuthUser = Depends(require_client),
    db: AsyncSession = Depends(get_async_db),
):
    """Per-product credit balances plus pending submissions."""
    summary = await ledger.get_credit_summary(db, current_user.user_id)
    return _credit_summary_response(summary)


@router.post(
    "/credits/submissions",
    response_model=CreditSubmissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_my_submission(
    body: CreditSubmissionCreate,
    current_user: AuthUser = Depends(require_client),
    db: AsyncSession = Depends(get_async_db),
):
    """Submit an external purchase reference for staff review."""
    submission = await submissions.create_credit_submission(
        db,
        client_id=current_user.user_id,
        product_id=body.credit_product_id,
        reference_code=body.reference_code,
        note=body.note,
    )
    return CreditSubmissionResponse.model_validate(submission)
