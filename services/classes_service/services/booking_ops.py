"""Booking and cancellation transactions.

Both entry points run as one unit of work. In transactional mode the
session row is locked first, so concurrent bookings on one session are
serialized and the BOOKED count can never pass effective capacity. Credit
consumption happens inside the same unit as the seat reservation.
Cancellation locks the accounts of the cancelling client and of the head
of the waitlist together, in account id order, before moving either balance.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.classes_service.errors import (
    BookingNotCancellable,
    BookingNotFound,
    BookingWindowClosed,
    ClassBookingError,
    CreditProductUnavailable,
    InsufficientCredit,
    InvalidAttendanceTransition,
    SessionFull,
    SessionNotBookable,
    SessionNotFound,
)
from services.classes_service.models import (
    CANCELLED_BOOKING_STATUSES,
    PERIODIC_CREDIT_MODES,
    SEAT_HOLDING_STATUSES,
    BookingSource,
    BookingStatus,
    ClassBooking,
    ClassSession,
    ClassTemplate,
    ClientCreditAccount,
    CreditProduct,
    SessionStatus,
)
from services.classes_service.services import ledger
from services.classes_service.services.policy import (
    EffectivePolicy,
    PolicyDefaults,
    TemplatePolicy,
    booking_window,
    can_join_waitlist,
    class_type_eligible,
    effective_capacity,
    is_booking_open,
    is_late_cancel,
    resolve_policy,
)
from services.classes_service.services.unit_of_work import UnitOfWork, get_unit_of_work
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

BookingOutcome = Literal["booked", "waitlisted", "already_exists"]


@dataclass
class BookingResult:
    booking: ClassBooking
    result: BookingOutcome
    session: ClassSession
    template: ClassTemplate
    waitlist_position: Optional[int] = None


@dataclass
class CancellationResult:
    booking: ClassBooking
    session: ClassSession
    template: ClassTemplate
    late_cancel: bool
    promoted: list[ClassBooking] = field(default_factory=list)
    credits_refunded: int = 0
    already_cancelled: bool = False
    # Set when a waitlisted client could not be promoted; the cancellation still stands.
    promotion_error: Optional[ClassBookingError] = None


@dataclass
class _SessionContext:
    session: ClassSession
    template: ClassTemplate
    policy: EffectivePolicy

    @property
    def capacity(self) -> int:
        return effective_capacity(self.policy, self.session.capacity_override)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


async def _load_session_context(
    uow: UnitOfWork, session_id: uuid.UUID, defaults: Optional[PolicyDefaults]
) -> _SessionContext:
    db = uow.db
    result = await db.execute(
        uow.lock(
            select(ClassSession)
            .where(ClassSession.id == session_id)
            .execution_options(populate_existing=True)
        )
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise SessionNotFound(session_id=str(session_id))

    template = await db.get(ClassTemplate, session.template_id)
    if template is None:
        raise SessionNotFound(session_id=str(session_id))

    policy = resolve_policy(TemplatePolicy.from_template(template), defaults)
    return _SessionContext(session=session, template=template, policy=policy)


async def _active_booking(
    db: AsyncSession, session_id: uuid.UUID, client_id: str
) -> Optional[ClassBooking]:
    result = await db.execute(
        select(ClassBooking).where(
            ClassBooking.session_id == session_id,
            ClassBooking.client_id == client_id,
            ClassBooking.status.in_((BookingStatus.BOOKED, BookingStatus.WAITLISTED)),
        )
    )
    return result.scalars().first()


async def count_occupancy(db: AsyncSession, session_id: uuid.UUID) -> tuple[int, int]:
    """Return ``(seats_taken, waitlisted)`` for a session."""
    result = await db.execute(
        select(ClassBooking.status, func.count(ClassBooking.id))
        .where(ClassBooking.session_id == session_id)
        .group_by(ClassBooking.status)
    )
    counts = {status: count for status, count in result.all()}
    seats_taken = sum(counts.get(status, 0) for status in SEAT_HOLDING_STATUSES)
    return seats_taken, counts.get(BookingStatus.WAITLISTED, 0)


async def _waitlist(db: AsyncSession, session_id: uuid.UUID) -> list[ClassBooking]:
    result = await db.execute(
        select(ClassBooking)
        .where(
            ClassBooking.session_id == session_id,
            ClassBooking.status == BookingStatus.WAITLISTED,
        )
        .order_by(ClassBooking.waitlist_position.asc(), ClassBooking.created_at.asc())
    )
    return list(result.scalars().all())


async def compact_waitlist(db: AsyncSession, session_id: uuid.UUID) -> None:
    """Renumber WAITLISTED positions to 1..k, keeping their order."""
    for position, booking in enumerate(await _waitlist(db, session_id), start=1):
        if booking.waitlist_position != position:
            booking.waitlist_position = position
    await db.flush()


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


async def select_credit_product(
    db: AsyncSession, client_id: str, template: ClassTemplate, amount: int
) -> uuid.UUID:
    """Pick the product a seat in ``template`` is charged against.

    A template-pinned product always wins, provided it is still active and
    class-eligible. Otherwise the first eligible account with enough
    balance, periodic credits before one-off packs.
    """
    if template.credit_product_id is not None:
        pinned = await db.get(CreditProduct, template.credit_product_id)
        if pinned is None or not pinned.is_active or not pinned.class_eligible:
            raise CreditProductUnavailable(
                "The credit product for this class is no longer available",
                product_id=str(template.credit_product_id),
            )
        return pinned.id

    periodic_first = case(
        (CreditProduct.credit_mode.in_(PERIODIC_CREDIT_MODES), 0), else_=1
    )
    result = await db.execute(
        select(ClientCreditAccount, CreditProduct)
        .join(CreditProduct, CreditProduct.id == ClientCreditAccount.credit_product_id)
        .where(
            ClientCreditAccount.client_id == client_id,
            CreditProduct.is_active.is_(True),
            CreditProduct.class_eligible.is_(True),
        )
        .order_by(periodic_first, ClientCreditAccount.created_at.asc())
    )
    available = 0
    for account, product in result.all():
        if not class_type_eligible(template.class_type, product.applies_to_class_types):
            continue
        if account.balance >= amount:
            return product.id
        available = max(available, account.balance)

    raise InsufficientCredit(
        f"Insufficient class credits: need {amount}, have {available}",
        required=amount,
        available=available,
    )


async def _charge_seat(
    db: AsyncSession,
    booking: ClassBooking,
    template: ClassTemplate,
    amount: int,
    actor_id: Optional[str],
) -> None:
    product_id = await select_credit_product(db, booking.client_id, template, amount)
    await ledger.consume(
        db,
        client_id=booking.client_id,
        product_id=product_id,
        amount=amount,
        booking_id=booking.id,
        actor_id=actor_id,
    )
    booking.credit_product_id = product_id
    booking.credits_charged = amount


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------


async def book_client_into_session(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    client_id: str,
    source: BookingSource,
    actor_id: Optional[str] = None,
    skip_credit_validation: bool = False,
    enforce_booking_window: bool = True,
    defaults: Optional[PolicyDefaults] = None,
    now: Optional[datetime] = None,
    uow: Optional[UnitOfWork] = None,
) -> BookingResult:
    """Reserve a seat, or a waitlist spot when the session is full.

    Re-entry for a client who already holds a seat or waitlist spot returns
    ``already_exists`` without touching anything.
    """
    now = now or utc_now()
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> BookingResult:
        ctx = await _load_session_context(uow, session_id, defaults)
        session, template, policy = ctx.session, ctx.template, ctx.policy

        if session.status != SessionStatus.SCHEDULED or not template.is_active:
            raise SessionNotBookable(session_id=str(session_id))

        if enforce_booking_window and not is_booking_open(now, session.starts_at, policy):
            opens_at, closes_at = booking_window(session.starts_at, policy)
            raise BookingWindowClosed(
                opens_at=opens_at.isoformat(), closes_at=closes_at.isoformat()
            )

        existing = await _active_booking(db, session.id, client_id)
        if existing:
            return BookingResult(
                booking=existing,
                result="already_exists",
                session=session,
                template=template,
                waitlist_position=existing.waitlist_position,
            )

        seats_taken, waitlisted = await count_occupancy(db, session.id)

        if seats_taken < ctx.capacity:
            booking = ClassBooking(
                id=uuid.uuid4(),
                session_id=session.id,
                client_id=client_id,
                status=BookingStatus.BOOKED,
                source=source,
                booked_by_user_id=actor_id,
                credits_charged=0,
            )
            if not skip_credit_validation and policy.credits_required > 0:
                await _charge_seat(db, booking, template, policy.credits_required, actor_id)
            db.add(booking)
            await db.flush()

            logger.info(
                "Booked client %s into session %s (%d/%d seats, %d credits)",
                client_id,
                session.id,
                seats_taken + 1,
                ctx.capacity,
                booking.credits_charged,
            )
            return BookingResult(
                booking=booking, result="booked", session=session, template=template
            )

        if template.waitlist_enabled and can_join_waitlist(waitlisted, policy):
            position = waitlisted + 1
            booking = ClassBooking(
                id=uuid.uuid4(),
                session_id=session.id,
                client_id=client_id,
                status=BookingStatus.WAITLISTED,
                waitlist_position=position,
                source=source,
                booked_by_user_id=actor_id,
                credits_charged=0,
            )
            db.add(booking)
            await db.flush()

            logger.info(
                "Waitlisted client %s for session %s at position %d",
                client_id,
                session.id,
                position,
            )
            return BookingResult(
                booking=booking,
                result="waitlisted",
                session=session,
                template=template,
                waitlist_position=position,
            )

        raise SessionFull(
            session_id=str(session.id),
            capacity=ctx.capacity,
            waitlist_enabled=template.waitlist_enabled,
        )

    return await uow.run(operation)


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------


async def _promote(
    db: AsyncSession,
    candidate: ClassBooking,
    ctx: _SessionContext,
    actor_id: Optional[str],
) -> None:
    # Charge first: InsufficientCredit must leave the candidate untouched.
    if ctx.policy.credits_required > 0:
        await _charge_seat(db, candidate, ctx.template, ctx.policy.credits_required, actor_id)
    candidate.status = BookingStatus.BOOKED
    candidate.waitlist_position = None
    candidate.booked_by_user_id = actor_id or candidate.booked_by_user_id
    await db.flush()


async def _promote_next(
    uow: UnitOfWork,
    ctx: _SessionContext,
    actor_id: Optional[str],
    now: datetime,
) -> tuple[Optional[ClassBooking], Optional[ClassBookingError]]:
    """Fill one freed seat with the head of the waitlist."""
    db = uow.db
    session = ctx.session
    if session.status != SessionStatus.SCHEDULED or session.starts_at <= now:
        return None, None

    seats_taken, _ = await count_occupancy(db, session.id)
    if seats_taken >= ctx.capacity:
        return None, None

    waitlist = await _waitlist(db, session.id)
    if not waitlist:
        return None, None
    candidate = waitlist[0]
    candidate_id, session_id = candidate.id, session.id

    try:
        async with uow.nested():
            await _promote(db, candidate, ctx, actor_id)
            await compact_waitlist(db, session_id)
    except (InsufficientCredit, CreditProductUnavailable) as exc:
        logger.info(
            "Could not promote booking %s for session %s: %s",
            candidate_id,
            session_id,
            exc.message,
        )
        await db.refresh(candidate)
        return None, exc

    logger.info(
        "Promoted booking %s (client %s) from waitlist for session %s",
        candidate.id,
        candidate.client_id,
        session.id,
    )
    return candidate, None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


async def cancel_booking(
    db: AsyncSession,
    *,
    booking_id: uuid.UUID,
    actor_id: Optional[str] = None,
    defaults: Optional[PolicyDefaults] = None,
    now: Optional[datetime] = None,
    uow: Optional[UnitOfWork] = None,
) -> CancellationResult:
    """Release a seat or waitlist spot.

    Cancelling an already-cancelled booking returns it unchanged. A freed
    seat promotes exactly one waitlisted booking; if that client cannot pay,
    they stay WAITLISTED and the cancellation still succeeds.
    """
    now = now or utc_now()
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> CancellationResult:
        booking = await db.get(ClassBooking, booking_id)
        if booking is None:
            raise BookingNotFound(booking_id=str(booking_id))

        ctx = await _load_session_context(uow, booking.session_id, defaults)
        # Re-read under the session lock.
        await db.refresh(booking)

        if booking.status in CANCELLED_BOOKING_STATUSES:
            return CancellationResult(
                booking=booking,
                session=ctx.session,
                template=ctx.template,
                late_cancel=booking.status == BookingStatus.LATE_CANCEL,
                already_cancelled=True,
            )
        if booking.status not in (BookingStatus.BOOKED, BookingStatus.WAITLISTED):
            raise BookingNotCancellable(booking_id=str(booking_id))

        was_booked = booking.status == BookingStatus.BOOKED
        late_cancel = was_booked and is_late_cancel(now, ctx.session.starts_at, ctx.policy)

        if was_booked:
            # The refund and the promotion may move two clients' balances.
            head = (await _waitlist(db, ctx.session.id))[:1]
            await ledger.lock_client_accounts(
                db, [booking.client_id, *(waiting.client_id for waiting in head)]
            )

        booking.status = BookingStatus.LATE_CANCEL if late_cancel else BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.waitlist_position = None
        await db.flush()

        credits_refunded = 0
        refundable = not late_cancel or ctx.policy.late_cancel_refunds_credit
        if was_booked and refundable and booking.credits_charged > 0:
            await ledger.refund(
                db,
                client_id=booking.client_id,
                product_id=booking.credit_product_id,
                amount=booking.credits_charged,
                booking_id=booking.id,
                actor_id=actor_id,
            )
            credits_refunded = booking.credits_charged

        logger.info(
            "Cancelled booking %s for session %s (late=%s, refunded=%d)",
            booking.id,
            ctx.session.id,
            late_cancel,
            credits_refunded,
        )

        result = CancellationResult(
            booking=booking,
            session=ctx.session,
            template=ctx.template,
            late_cancel=late_cancel,
            credits_refunded=credits_refunded,
        )

        if not was_booked:
            await compact_waitlist(db, ctx.session.id)
            return result

        await uow.checkpoint()
        promoted, error = await _promote_next(uow, ctx, actor_id, now)
        if promoted is not None:
            result.promoted.append(promoted)
        result.promotion_error = error
        if error is not None:
            # A rolled-back promotion may have expired these.
            for instance in (booking, ctx.session, ctx.template):
                await db.refresh(instance)
        return result

    return await uow.run(operation)


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------

_ATTENDANCE_STATUSES = (BookingStatus.ATTENDED, BookingStatus.NO_SHOW)


async def mark_attendance(
    db: AsyncSession,
    *,
    booking_id: uuid.UUID,
    status: BookingStatus,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
    uow: Optional[UnitOfWork] = None,
) -> ClassBooking:
    """Record ATTENDED or NO_SHOW on a booked seat. Re-marking flips between the two."""
    if status not in _ATTENDANCE_STATUSES:
        raise InvalidAttendanceTransition(f"Cannot mark attendance as {status.value}")
    now = now or utc_now()
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> ClassBooking:
        booking = await db.get(ClassBooking, booking_id)
        if booking is None:
            raise BookingNotFound(booking_id=str(booking_id))
        if booking.status not in (BookingStatus.BOOKED, *_ATTENDANCE_STATUSES):
            raise InvalidAttendanceTransition(booking_id=str(booking_id))

        booking.status = status
        booking.attendance_marked_at = now
        await db.flush()
        logger.info(
            "Marked booking %s as %s by %s", booking.id, status.value, actor_id or "system"
        )
        return booking

    return await uow.run(operation)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_booking(db: AsyncSession, booking_id: uuid.UUID) -> ClassBooking:
    booking = await db.get(ClassBooking, booking_id)
    if booking is None:
        raise BookingNotFound(booking_id=str(booking_id))
    return booking


async def get_session(db: AsyncSession, session_id: uuid.UUID) -> ClassSession:
    session = await db.get(ClassSession, session_id)
    if session is None:
        raise SessionNotFound(session_id=str(session_id))
    return session


async def list_client_bookings(
    db: AsyncSession, client_id: str, *, include_cancelled: bool = False
) -> list[ClassBooking]:
    query = select(ClassBooking).where(ClassBooking.client_id == client_id)
    if not include_cancelled:
        query = query.where(ClassBooking.status.not_in(CANCELLED_BOOKING_STATUSES))
    result = await db.execute(query.order_by(ClassBooking.created_at.desc()))
    return list(result.scalars().all())


async def list_session_roster(db: AsyncSession, session_id: uuid.UUID) -> list[ClassBooking]:
    """Seat holders first, then the waitlist in order."""
    await get_session(db, session_id)
    waitlisted_last = case((ClassBooking.status == BookingStatus.WAITLISTED, 1), else_=0)
    result = await db.execute(
        select(ClassBooking)
        .where(
            ClassBooking.session_id == session_id,
            ClassBooking.status.not_in(CANCELLED_BOOKING_STATUSES),
        )
        .order_by(
            waitlisted_last,
            ClassBooking.waitlist_position.asc(),
            ClassBooking.created_at.asc(),
        )
    )
    return list(result.scalars().all())
