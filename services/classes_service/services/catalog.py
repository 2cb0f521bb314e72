"""Staff-managed catalog (templates, sessions, credit products) and the client browse.

Coaches manage only what they own: their templates, the sessions of those
templates, and their own credit products. Sessions they instruct are
visible to them too. Admins manage everything.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from libs.auth.models import AuthUser
from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.logging import get_logger
from services.classes_service.errors import (
    CreditProductNotFound,
    InvalidSessionSchedule,
    SessionNotFound,
    StaffActionForbidden,
    TemplateNotFound,
)
from services.classes_service.models import (
    ACTIVE_BOOKING_STATUSES,
    CANCELLED_BOOKING_STATUSES,
    BookingStatus,
    ClassBooking,
    ClassSession,
    ClassTemplate,
    CreditProduct,
    SessionStatus,
    TemplateScope,
)
from services.classes_service.services import ledger
from services.classes_service.services.booking_ops import count_occupancy
from services.classes_service.services.policy import (
    PolicyDefaults,
    TemplatePolicy,
    booking_window,
    effective_capacity,
    is_booking_open,
    resolve_policy,
)
from services.classes_service.services.unit_of_work import UnitOfWork, get_unit_of_work
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

BROWSE_LOOKBACK = timedelta(hours=1)
BROWSE_HORIZON = timedelta(days=28)
BROWSE_LIMIT = 400

_REQUIRED_TEMPLATE_FIELDS = {"name", "class_type", "scope", "waitlist_enabled", "is_active"}
_REQUIRED_PRODUCT_FIELDS = {"name", "class_eligible", "purchase_restricted", "is_active"}


def _drop_nulls(changes: dict[str, Any], required: set[str]) -> dict[str, Any]:
    return {k: v for k, v in changes.items() if v is not None or k not in required}


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


def _owns_template(actor: AuthUser, template: ClassTemplate) -> bool:
    return actor.is_admin or template.owner_coach_id == actor.user_id


async def get_template(
    db: AsyncSession, template_id: uuid.UUID, actor: AuthUser
) -> ClassTemplate:
    """Templates another coach owns are reported as missing."""
    template = await db.get(ClassTemplate, template_id)
    if template is None or not _owns_template(actor, template):
        raise TemplateNotFound(template_id=str(template_id))
    return template


async def _get_managed_session(
    uow: UnitOfWork, session_id: uuid.UUID, actor: AuthUser
) -> tuple[ClassSession, ClassTemplate]:
    result = await uow.db.execute(
        uow.lock(
            select(ClassSession)
            .where(ClassSession.id == session_id)
            .execution_options(populate_existing=True)
        )
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise SessionNotFound(session_id=str(session_id))
    template = await uow.db.get(ClassTemplate, session.template_id)
    if template is None or not _owns_template(actor, template):
        raise SessionNotFound(session_id=str(session_id))
    return session, template


async def _require_product(db: AsyncSession, product_id: Optional[uuid.UUID]) -> None:
    if product_id is not None and await db.get(CreditProduct, product_id) is None:
        raise CreditProductNotFound(product_id=str(product_id))


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


async def list_templates(
    db: AsyncSession,
    actor: AuthUser,
    *,
    include_inactive: bool = False,
    class_type: Optional[str] = None,
    owner_coach_id: Optional[str] = None,
) -> list[ClassTemplate]:
    query = select(ClassTemplate)
    if not include_inactive:
        query = query.where(ClassTemplate.is_active.is_(True))
    if class_type:
        query = query.where(ClassTemplate.class_type == class_type)
    if not actor.is_admin:
        query = query.where(ClassTemplate.owner_coach_id == actor.user_id)
    elif owner_coach_id:
        query = query.where(ClassTemplate.owner_coach_id == owner_coach_id)
    result = await db.execute(
        query.order_by(ClassTemplate.is_active.desc(), ClassTemplate.updated_at.desc())
    )
    return list(result.scalars().all())


async def create_template(
    db: AsyncSession,
    actor: AuthUser,
    fields: dict[str, Any],
    *,
    uow: Optional[UnitOfWork] = None,
) -> ClassTemplate:
    fields = dict(fields)
    owner_coach_id = fields.pop("owner_coach_id", None) or actor.user_id
    if owner_coach_id != actor.user_id and not actor.is_admin:
        raise StaffActionForbidden("Only admins can create templates for another coach")
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> ClassTemplate:
        await _require_product(db, fields.get("credit_product_id"))
        template = ClassTemplate(owner_coach_id=owner_coach_id, **fields)
        if template.scope == TemplateScope.FACILITY:
            template.cohort_id = None
        db.add(template)
        await db.flush()
        logger.info(
            "Class template %s (%s) created by %s", template.id, template.name, actor.user_id
        )
        return template

    return await uow.run(operation)


async def update_template(
    db: AsyncSession,
    template_id: uuid.UUID,
    actor: AuthUser,
    changes: dict[str, Any],
    *,
    uow: Optional[UnitOfWork] = None,
) -> ClassTemplate:
    changes = _drop_nulls(changes, _REQUIRED_TEMPLATE_FIELDS | {"owner_coach_id"})
    if "owner_coach_id" in changes and not actor.is_admin:
        raise StaffActionForbidden("Only admins can reassign template ownership")
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> ClassTemplate:
        template = await get_template(db, template_id, actor)
        await _require_product(db, changes.get("credit_product_id"))
        for name, value in changes.items():
            setattr(template, name, value)
        if template.scope == TemplateScope.FACILITY:
            template.cohort_id = None
        await db.flush()
        logger.info(
            "Class template %s updated by %s: %s",
            template.id,
            actor.user_id,
            ", ".join(sorted(changes)),
        )
        return template

    return await uow.run(operation)


@dataclass
class DeactivationResult:
    template: ClassTemplate
    sessions_cancelled: list["SessionCancellation"] = field(default_factory=list)


async def deactivate_template(
    db: AsyncSession,
    template_id: uuid.UUID,
    actor: AuthUser,
    *,
    cancel_future_sessions: bool = False,
    now: Optional[datetime] = None,
    uow: Optional[UnitOfWork] = None,
) -> DeactivationResult:
    """Stop new bookings on a template, optionally cancelling its upcoming sessions."""
    now = now or utc_now()
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> DeactivationResult:
        template = await get_template(db, template_id, actor)
        template.is_active = False
        result = DeactivationResult(template=template)

        if cancel_future_sessions:
            rows = await db.execute(
                select(ClassSession.id)
                .where(
                    ClassSession.template_id == template.id,
                    ClassSession.status == SessionStatus.SCHEDULED,
                    ClassSession.starts_at >= now,
                )
                .order_by(ClassSession.starts_at.asc())
            )
            for session_id in rows.scalars().all():
                session, _ = await _get_managed_session(uow, session_id, actor)
                result.sessions_cancelled.append(
                    await _cancel_session(db, session, actor.user_id, now)
                )

        await db.flush()
        logger.info(
            "Class template %s deactivated by %s (%d sessions cancelled)",
            template.id,
            actor.user_id,
            len(result.sessions_cancelled),
        )
        return result

    return await uow.run(operation)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def _check_schedule(starts_at: datetime, ends_at: datetime) -> None:
    if ensure_utc(ends_at) <= ensure_utc(starts_at):
        raise InvalidSessionSchedule(
            starts_at=ensure_utc(starts_at).isoformat(), ends_at=ensure_utc(ends_at).isoformat()
        )


async def list_template_sessions(
    db: AsyncSession,
    template_id: uuid.UUID,
    actor: AuthUser,
    *,
    starts_from: Optional[datetime] = None,
    starts_to: Optional[datetime] = None,
) -> list[ClassSession]:
    await get_template(db, template_id, actor)
    query = select(ClassSession).where(ClassSession.template_id == template_id)
    if starts_from is not None:
        query = query.where(ClassSession.starts_at >= ensure_utc(starts_from))
    if starts_to is not None:
        query = query.where(ClassSession.starts_at <= ensure_utc(starts_to))
    result = await db.execute(query.order_by(ClassSession.starts_at.asc()))
    return list(result.scalars().all())


async def create_session(
    db: AsyncSession,
    template_id: uuid.UUID,
    actor: AuthUser,
    *,
    starts_at: datetime,
    ends_at: datetime,
    instructor_id: Optional[str] = None,
    capacity_override: Optional[int] = None,
    uow: Optional[UnitOfWork] = None,
) -> ClassSession:
    """Add one occurrence of a template."""
    _check_schedule(starts_at, ends_at)
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> ClassSession:
        template = await get_template(db, template_id, actor)
        session = ClassSession(
            template_id=template.id,
            starts_at=ensure_utc(starts_at),
            ends_at=ensure_utc(ends_at),
            instructor_id=instructor_id,
            capacity_override=capacity_override,
            status=SessionStatus.SCHEDULED,
        )
        db.add(session)
        await db.flush()
        logger.info(
            "Session %s of template %s scheduled at %s by %s",
            session.id,
            template.id,
            session.starts_at.isoformat(),
            actor.user_id,
        )
        return session

    return await uow.run(operation)


@dataclass
class SessionCancellation:
    session: ClassSession
    bookings: list[ClassBooking] = field(default_factory=list)
    credits_refunded: int = 0


async def _cancel_session(
    db: AsyncSession, session: ClassSession, actor_id: Optional[str], now: datetime
) -> SessionCancellation:
    """Cancel the session and every active booking on it, refunding charged seats in full."""
    result = await db.execute(
        select(ClassBooking)
        .where(
            ClassBooking.session_id == session.id,
            ClassBooking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
        .order_by(ClassBooking.created_at.asc())
    )
    bookings = list(result.scalars().all())
    await ledger.lock_client_accounts(db, [b.client_id for b in bookings])

    outcome = SessionCancellation(session=session, bookings=bookings)
    for booking in bookings:
        was_booked = booking.status == BookingStatus.BOOKED
        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.waitlist_position = None
        if was_booked and booking.credits_charged > 0:
            await ledger.refund(
                db,
                client_id=booking.client_id,
                product_id=booking.credit_product_id,
                amount=booking.credits_charged,
                booking_id=booking.id,
                actor_id=actor_id,
            )
            outcome.credits_refunded += booking.credits_charged

    session.status = SessionStatus.CANCELLED
    await db.flush()
    logger.info(
        "Session %s cancelled: %d bookings released, %d credits refunded",
        session.id,
        len(bookings),
        outcome.credits_refunded,
    )
    return outcome


@dataclass
class SessionUpdateResult:
    session: ClassSession
    template: ClassTemplate
    changed_fields: list[str]
    cancellation: Optional[SessionCancellation] = None


async def update_session(
    db: AsyncSession,
    session_id: uuid.UUID,
    actor: AuthUser,
    changes: dict[str, Any],
    *,
    now: Optional[datetime] = None,
    uow: Optional[UnitOfWork] = None,
) -> SessionUpdateResult:
    """Reschedule, resize or change the status of a session.

    Moving a SCHEDULED session to CANCELLED also cancels its bookings and
    waitlist and refunds every charged seat.
    """
    changes = _drop_nulls(changes, {"starts_at", "ends_at", "status"})
    now = now or utc_now()
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> SessionUpdateResult:
        session, template = await _get_managed_session(uow, session_id, actor)
        starts_at = changes.get("starts_at", session.starts_at)
        ends_at = changes.get("ends_at", session.ends_at)
        _check_schedule(starts_at, ends_at)

        new_status = changes.pop("status", None)
        for name, value in changes.items():
            if name in ("starts_at", "ends_at"):
                value = ensure_utc(value)
            setattr(session, name, value)

        cancellation = None
        if new_status == SessionStatus.CANCELLED and session.status == SessionStatus.SCHEDULED:
            cancellation = await _cancel_session(db, session, actor.user_id, now)
        elif new_status is not None:
            session.status = new_status
        await db.flush()

        changed = sorted(changes) + (["status"] if new_status is not None else [])
        logger.info("Session %s updated by %s: %s", session.id, actor.user_id, ", ".join(changed))
        return SessionUpdateResult(
            session=session, template=template, changed_fields=changed, cancellation=cancellation
        )

    return await uow.run(operation)


# ---------------------------------------------------------------------------
# Credit products
# ---------------------------------------------------------------------------


async def list_credit_products(
    db: AsyncSession,
    *,
    actor: Optional[AuthUser] = None,
    include_inactive: bool = False,
    class_eligible_only: bool = False,
) -> list[CreditProduct]:
    """Products visible to ``actor``; without an actor, the facility catalog."""
    query = select(CreditProduct)
    if not include_inactive:
        query = query.where(CreditProduct.is_active.is_(True))
    if class_eligible_only:
        query = query.where(CreditProduct.class_eligible.is_(True))
    if actor is not None and not actor.is_admin:
        query = query.where(
            or_(
                CreditProduct.owner_coach_id.is_(None),
                CreditProduct.owner_coach_id == actor.user_id,
            )
        )
    result = await db.execute(
        query.order_by(CreditProduct.class_eligible.desc(), CreditProduct.name.asc())
    )
    return list(result.scalars().all())


async def create_credit_product(
    db: AsyncSession,
    actor: AuthUser,
    fields: dict[str, Any],
    *,
    uow: Optional[UnitOfWork] = None,
) -> CreditProduct:
    fields = dict(fields)
    owner_coach_id = fields.pop("owner_coach_id", None)
    if actor.is_admin:
        # Admin-created products are facility-wide unless assigned.
        owner_coach_id = owner_coach_id or None
    elif owner_coach_id not in (None, actor.user_id):
        raise StaffActionForbidden("Only admins can create products for another coach")
    else:
        owner_coach_id = actor.user_id
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> CreditProduct:
        product = CreditProduct(owner_coach_id=owner_coach_id, **fields)
        db.add(product)
        await db.flush()
        logger.info(
            "Credit product %s (%s) created by %s", product.id, product.name, actor.user_id
        )
        return product

    return await uow.run(operation)


async def update_credit_product(
    db: AsyncSession,
    product_id: uuid.UUID,
    actor: AuthUser,
    changes: dict[str, Any],
    *,
    uow: Optional[UnitOfWork] = None,
) -> CreditProduct:
    changes = _drop_nulls(changes, _REQUIRED_PRODUCT_FIELDS)
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> CreditProduct:
        product = await db.get(CreditProduct, product_id)
        if product is None:
            raise CreditProductNotFound(product_id=str(product_id))
        if not actor.is_admin and product.owner_coach_id != actor.user_id:
            raise StaffActionForbidden("Only admins can change facility-wide products")
        for name, value in changes.items():
            setattr(product, name, value)
        await db.flush()
        logger.info(
            "Credit product %s updated by %s: %s",
            product.id,
            actor.user_id,
            ", ".join(sorted(changes)),
        )
        return product

    return await uow.run(operation)


# ---------------------------------------------------------------------------
# Client browse
# ---------------------------------------------------------------------------


@dataclass
class SessionAvailability:
    session: ClassSession
    template: ClassTemplate
    capacity: int
    seats_taken: int
    waitlisted: int
    credits_required: int
    booking_open: bool
    opens_at: datetime
    closes_at: datetime
    my_booking: Optional[ClassBooking] = None

    @property
    def is_full(self) -> bool:
        return self.seats_taken >= self.capacity


async def list_bookable_sessions(
    db: AsyncSession,
    *,
    client_id: str,
    defaults: Optional[PolicyDefaults] = None,
    now: Optional[datetime] = None,
    starts_from: Optional[datetime] = None,
    starts_to: Optional[datetime] = None,
    class_type: Optional[str] = None,
) -> list[SessionAvailability]:
    """Upcoming scheduled facility sessions with occupancy and booking-window state.

    Defaults to sessions starting from an hour ago up to four weeks ahead.
    """
    now = now or utc_now()
    starts_from = ensure_utc(starts_from) if starts_from else now - BROWSE_LOOKBACK
    starts_to = ensure_utc(starts_to) if starts_to else now + BROWSE_HORIZON

    query = (
        select(ClassSession, ClassTemplate)
        .join(ClassTemplate, ClassTemplate.id == ClassSession.template_id)
        .where(
            ClassSession.status == SessionStatus.SCHEDULED,
            ClassSession.starts_at >= starts_from,
            ClassSession.starts_at <= starts_to,
            ClassTemplate.is_active.is_(True),
            ClassTemplate.scope == TemplateScope.FACILITY,
        )
    )
    if class_type:
        query = query.where(ClassTemplate.class_type == class_type)
    rows = (
        await db.execute(query.order_by(ClassSession.starts_at.asc()).limit(BROWSE_LIMIT))
    ).all()

    session_ids = [session.id for session, _ in rows]
    mine: dict[uuid.UUID, ClassBooking] = {}
    if session_ids:
        result = await db.execute(
            select(ClassBooking).where(
                ClassBooking.client_id == client_id,
                ClassBooking.session_id.in_(session_ids),
                ClassBooking.status.not_in(CANCELLED_BOOKING_STATUSES),
            )
        )
        mine = {booking.session_id: booking for booking in result.scalars().all()}

    availability = []
    for session, template in rows:
        policy = resolve_policy(TemplatePolicy.from_template(template), defaults)
        seats_taken, waitlisted = await count_occupancy(db, session.id)
        opens_at, closes_at = booking_window(session.starts_at, policy)
        availability.append(
            SessionAvailability(
                session=session,
                template=template,
                capacity=effective_capacity(policy, session.capacity_override),
                seats_taken=seats_taken,
                waitlisted=waitlisted,
                credits_required=policy.credits_required,
                booking_open=is_booking_open(now, session.starts_at, policy),
                opens_at=opens_at,
                closes_at=closes_at,
                my_booking=mine.get(session.id),
            )
        )
    return availability
