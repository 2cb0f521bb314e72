"""Versioned payloads handed to the audit and notification collaborators."""

import uuid
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from libs.common.datetime_utils import utc_now
from services.classes_service.models.enums import SubmissionStatus

EVENT_SCHEMA_VERSION = 1


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    schema_version: Literal[1] = EVENT_SCHEMA_VERSION
    occurred_at: datetime = Field(default_factory=utc_now)
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class BookingCreatedAudit(_Event):
    action_type: Literal["CLASS_BOOKING_CREATED"] = "CLASS_BOOKING_CREATED"
    target_type: Literal["class_session"] = "class_session"
    target_id: uuid.UUID
    booking_id: uuid.UUID
    client_id: str
    source: str
    result: Literal["booked", "waitlisted"]
    waitlist_position: Optional[int] = None


class BookingCancelledAudit(_Event):
    action_type: Literal["CLASS_BOOKING_CANCELLED"] = "CLASS_BOOKING_CANCELLED"
    target_type: Literal["class_booking"] = "class_booking"
    target_id: uuid.UUID
    session_id: uuid.UUID
    client_id: str
    late_cancel: bool
    credits_refunded: int
    promoted_count: int
    already_cancelled: bool = False


class WaitlistPromotedAudit(_Event):
    action_type: Literal["CLASS_WAITLIST_PROMOTED"] = "CLASS_WAITLIST_PROMOTED"
    target_type: Literal["class_booking"] = "class_booking"
    target_id: uuid.UUID
    session_id: uuid.UUID
    client_id: str
    credits_charged: int


class SubmissionReviewedAudit(_Event):
    action_type: Literal["CLASS_CREDIT_SUBMISSION_REVIEW"] = "CLASS_CREDIT_SUBMISSION_REVIEW"
    target_type: Literal["credit_submission"] = "credit_submission"
    target_id: uuid.UUID
    client_id: str
    credit_product_id: uuid.UUID
    reference_code: str
    decision: Literal["approved", "rejected"]
    credits_applied: int


CatalogAction = Literal[
    "CLASS_TEMPLATE_CREATE",
    "CLASS_TEMPLATE_UPDATE",
    "CLASS_TEMPLATE_DEACTIVATE",
    "CLASS_SESSION_CREATE",
    "CLASS_SESSION_UPDATE",
    "CLASS_CREDIT_PRODUCT_CREATE",
    "CLASS_CREDIT_PRODUCT_UPDATE",
]


class CatalogChangedAudit(_Event):
    action_type: CatalogAction
    target_type: Literal["class_template", "class_session", "credit_product"]
    target_id: uuid.UUID
    changed_fields: list[str] = []
    bookings_cancelled: int = 0
    credits_refunded: int = 0


AuditEvent = Union[
    BookingCreatedAudit,
    BookingCancelledAudit,
    WaitlistPromotedAudit,
    SubmissionReviewedAudit,
    CatalogChangedAudit,
]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

NotificationKind = Literal[
    "booked", "waitlisted", "cancelled", "waitlist_promoted", "session_cancelled"
]


class ClassNotification(_Event):
    kind: NotificationKind
    recipient_id: str
    class_name: str
    starts_at: datetime
    timezone: str
    location_label: Optional[str] = None
    waitlist_position: Optional[int] = None

    @property
    def subject(self) -> str:
        if self.kind == "booked":
            return f"Booking confirmed: {self.class_name}"
        if self.kind == "waitlisted":
            return f"Added to waitlist: {self.class_name}"
        if self.kind == "waitlist_promoted":
            return f"Spot available: You are now booked for {self.class_name}"
        if self.kind == "session_cancelled":
            return f"Class cancelled: {self.class_name}"
        return f"Booking cancelled: {self.class_name}"


class CreditSubmissionNotification(_Event):
    kind: Literal["credit_approved", "credit_rejected"]
    recipient_id: str
    product_name: str
    reference_code: str
    credits_applied: int = 0

    @property
    def subject(self) -> str:
        if self.kind == "credit_approved":
            return f"Credits added: {self.credits_applied} for {self.product_name}"
        return f"Credit request declined: {self.product_name}"


Notification = Union[ClassNotification, CreditSubmissionNotification]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _notification(kind: NotificationKind, booking, session, template, timezone: str, actor):
    return ClassNotification(
        kind=kind,
        recipient_id=booking.client_id,
        class_name=template.name,
        starts_at=session.starts_at,
        timezone=timezone,
        location_label=template.location_label,
        waitlist_position=booking.waitlist_position,
        actor_id=actor.user_id,
        actor_role=actor.role,
    )


def booking_events(
    result, actor, timezone: str
) -> tuple[list[AuditEvent], list[ClassNotification]]:
    """Audit and notification payloads for a BookingResult.

    Re-entry on an existing booking created nothing, so it publishes nothing.
    """
    if result.result == "already_exists":
        return [], []

    booking = result.booking
    audits: list[AuditEvent] = [
        BookingCreatedAudit(
            target_id=result.session.id,
            booking_id=booking.id,
            client_id=booking.client_id,
            source=booking.source.value,
            result=result.result,
            waitlist_position=result.waitlist_position,
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
    ]
    notifications = [
        _notification(result.result, booking, result.session, result.template, timezone, actor)
    ]
    return audits, notifications


def cancellation_events(
    result, actor, timezone: str
) -> tuple[list[AuditEvent], list[ClassNotification]]:
    """Audit and notification payloads for a CancellationResult."""
    booking = result.booking
    audits: list[AuditEvent] = [
        BookingCancelledAudit(
            target_id=booking.id,
            session_id=result.session.id,
            client_id=booking.client_id,
            late_cancel=result.late_cancel,
            credits_refunded=result.credits_refunded,
            promoted_count=len(result.promoted),
            already_cancelled=result.already_cancelled,
            actor_id=actor.user_id,
            actor_role=actor.role,
        )
    ]
    if result.already_cancelled:
        return audits, []

    notifications = [
        _notification("cancelled", booking, result.session, result.template, timezone, actor)
    ]
    for promoted in result.promoted:
        audits.append(
            WaitlistPromotedAudit(
                target_id=promoted.id,
                session_id=result.session.id,
                client_id=promoted.client_id,
                credits_charged=promoted.credits_charged,
                actor_id=actor.user_id,
                actor_role=actor.role,
            )
        )
        notifications.append(
            _notification(
                "waitlist_promoted", promoted, result.session, result.template, timezone, actor
            )
        )
    return audits, notifications


def submission_review_events(
    result, actor
) -> tuple[list[AuditEvent], list[CreditSubmissionNotification]]:
    """Audit and notification payloads for a reviewed credit submission."""
    submission = result.submission
    approved = submission.status == SubmissionStatus.APPROVED
    audit = SubmissionReviewedAudit(
        target_id=submission.id,
        client_id=submission.client_id,
        credit_product_id=submission.credit_product_id,
        reference_code=submission.reference_code,
        decision="approved" if approved else "rejected",
        credits_applied=submission.credits_applied,
        actor_id=actor.user_id,
        actor_role=actor.role,
    )
    notification = CreditSubmissionNotification(
        kind="credit_approved" if approved else "credit_rejected",
        recipient_id=submission.client_id,
        product_name=result.product.name if result.product else "class credits",
        reference_code=submission.reference_code,
        credits_applied=submission.credits_applied,
        actor_id=actor.user_id,
        actor_role=actor.role,
    )
    return [audit], [notification]


def catalog_events(
    action_type: CatalogAction,
    target,
    actor,
    changed_fields=(),
    cancellations=(),
    timezone: str = "UTC",
    template=None,
) -> tuple[list[AuditEvent], list[ClassNotification]]:
    """Audit payload for a staff catalog change.

    ``cancellations`` are the SessionCancellation outcomes the change caused;
    every client holding a booking on those sessions is notified.
    """
    target_type = {
        "CLASS_TEMPLATE": "class_template",
        "CLASS_SESSION": "class_session",
        "CLASS_CREDIT_PRODUCT": "credit_product",
    }[action_type.rsplit("_", 1)[0]]
    audit = CatalogChangedAudit(
        action_type=action_type,
        target_type=target_type,
        target_id=target.id,
        changed_fields=list(changed_fields),
        bookings_cancelled=sum(len(c.bookings) for c in cancellations),
        credits_refunded=sum(c.credits_refunded for c in cancellations),
        actor_id=actor.user_id,
        actor_role=actor.role,
    )
    notifications = [
        _notification("session_cancelled", booking, c.session, template, timezone, actor)
        for c in cancellations
        for booking in c.bookings
    ]
    return [audit], notifications
