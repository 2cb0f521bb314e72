"""Credit submissions: client intake and staff review."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import month_key, start_of_month_utc, utc_now
from libs.common.logging import get_logger
from services.classes_service.errors import (
    CreditProductNotFound,
    CreditProductUnavailable,
    DuplicatePendingSubmission,
    SubmissionNotFound,
    SubmissionNotPending,
)
from services.classes_service.models import (
    PERIODIC_CREDIT_MODES,
    ClientCreditLedgerEntry,
    ClientCreditSubscription,
    CreditProduct,
    CreditSubmission,
    LedgerReason,
    ReviewAction,
    SubmissionStatus,
)
from services.classes_service.services import ledger
from services.classes_service.services.unit_of_work import UnitOfWork, get_unit_of_work
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class ReviewResult:
    submission: CreditSubmission
    product: Optional[CreditProduct] = None
    ledger_entry: Optional[ClientCreditLedgerEntry] = None
    subscription: Optional[ClientCreditSubscription] = None


async def _pending_submission(
    db: AsyncSession, client_id: str, product_id: uuid.UUID, reference_code: str
) -> Optional[CreditSubmission]:
    result = await db.execute(
        select(CreditSubmission).where(
            CreditSubmission.client_id == client_id,
            CreditSubmission.credit_product_id == product_id,
            CreditSubmission.reference_code == reference_code,
            CreditSubmission.status == SubmissionStatus.PENDING,
        )
    )
    return result.scalars().first()


async def create_credit_submission(
    db: AsyncSession,
    *,
    client_id: str,
    product_id: uuid.UUID,
    reference_code: str,
    note: Optional[str] = None,
    uow: Optional[UnitOfWork] = None,
) -> CreditSubmission:
    """Record a client's claim of an external purchase for staff review."""
    reference_code = reference_code.strip()
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> CreditSubmission:
        product = await db.get(CreditProduct, product_id)
        if product is None:
            raise CreditProductNotFound(product_id=str(product_id))
        if not product.is_active or product.purchase_restricted:
            raise CreditProductUnavailable(product_id=str(product_id))

        if await _pending_submission(db, client_id, product_id, reference_code):
            raise DuplicatePendingSubmission(reference_code=reference_code)

        submission = CreditSubmission(
            client_id=client_id,
            credit_product_id=product_id,
            reference_code=reference_code,
            note=note,
            status=SubmissionStatus.PENDING,
        )
        db.add(submission)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise DuplicatePendingSubmission(reference_code=reference_code) from exc

        logger.info(
            "Credit submission %s created by client %s for product %s",
            submission.id,
            client_id,
            product_id,
        )
        return submission

    return await uow.run(operation)


async def _ensure_subscription(
    db: AsyncSession, client_id: str, product: CreditProduct, now: datetime
) -> ClientCreditSubscription:
    result = await db.execute(
        select(ClientCreditSubscription)
        .where(
            ClientCreditSubscription.client_id == client_id,
            ClientCreditSubscription.credit_product_id == product.id,
            ClientCreditSubscription.active.is_(True),
        )
        .order_by(ClientCreditSubscription.created_at.desc())
    )
    subscription = result.scalars().first()
    if subscription:
        if subscription.end_date is not None and subscription.end_date < now:
            subscription.end_date = None
        return subscription

    subscription = ClientCreditSubscription(
        client_id=client_id,
        credit_product_id=product.id,
        credits_per_period=product.credits_per_period or 0,
        start_date=start_of_month_utc(now),
        active=True,
    )
    db.add(subscription)
    await db.flush()
    logger.info(
        "Opened credit subscription %s for client %s on product %s",
        subscription.id,
        client_id,
        product.id,
    )
    return subscription


async def review_credit_submission(
    db: AsyncSession,
    *,
    submission_id: uuid.UUID,
    action: ReviewAction,
    reviewer_id: str,
    now: Optional[datetime] = None,
    uow: Optional[UnitOfWork] = None,
) -> ReviewResult:
    """Approve or reject a PENDING submission.

    Approving a one-off pack grants the pack size once (keyed by the
    submission). Approving a periodic product opens the client's
    subscription and grants the current period, keyed by period so the
    monthly job will not grant it again.
    """
    now = now or utc_now()
    uow = uow or await get_unit_of_work(db)

    async def operation(uow: UnitOfWork) -> ReviewResult:
        result = await db.execute(
            uow.lock(select(CreditSubmission).where(CreditSubmission.id == submission_id))
        )
        submission = result.scalar_one_or_none()
        if submission is None:
            raise SubmissionNotFound(submission_id=str(submission_id))
        if submission.status != SubmissionStatus.PENDING:
            raise SubmissionNotPending(
                submission_id=str(submission_id), status=submission.status.value
            )

        submission.reviewed_by = reviewer_id
        submission.reviewed_at = now
        product = await db.get(CreditProduct, submission.credit_product_id)

        if action == ReviewAction.REJECT:
            submission.status = SubmissionStatus.REJECTED
            await db.flush()
            logger.info("Credit submission %s rejected by %s", submission.id, reviewer_id)
            return ReviewResult(submission=submission, product=product)

        if product is None:
            raise CreditProductNotFound(product_id=str(submission.credit_product_id))

        subscription = None
        if product.credit_mode in PERIODIC_CREDIT_MODES:
            subscription = await _ensure_subscription(db, submission.client_id, product, now)
            period = month_key(now)
            entry, granted = await ledger.grant_periodic(
                db,
                client_id=submission.client_id,
                product_id=product.id,
                amount=subscription.credits_per_period,
                period_key=period,
                submission_id=submission.id,
                actor_id=reviewer_id,
            )
            subscription.last_applied_period = period
        else:
            entry, granted = await ledger.grant(
                db,
                client_id=submission.client_id,
                product_id=product.id,
                amount=product.credits_per_period or 0,
                idempotency_key=ledger.submission_key(submission.id),
                reason=LedgerReason.PACK_PURCHASE,
                submission_id=submission.id,
                description=f"Pack purchase {submission.reference_code}",
                actor_id=reviewer_id,
            )

        submission.status = SubmissionStatus.APPROVED
        submission.credits_applied = entry.delta_credits if entry is not None and granted else 0
        await db.flush()

        logger.info(
            "Credit submission %s approved by %s, %d credits applied",
            submission.id,
            reviewer_id,
            submission.credits_applied,
        )
        return ReviewResult(
            submission=submission,
            product=product,
            ledger_entry=entry,
            subscription=subscription,
        )

    return await uow.run(operation)


async def list_submissions(
    db: AsyncSession,
    *,
    status: Optional[SubmissionStatus] = None,
    client_id: Optional[str] = None,
) -> list[CreditSubmission]:
    query = select(CreditSubmission)
    if status is not None:
        query = query.where(CreditSubmission.status == status)
    if client_id is not None:
        query = query.where(CreditSubmission.client_id == client_id)
    result = await db.execute(query.order_by(CreditSubmission.created_at.asc()))
    return list(result.scalars().all())
