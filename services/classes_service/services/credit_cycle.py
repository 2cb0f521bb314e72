"""Monthly credit top-up and expiry.

Each product is processed in its own unit of work, and each subscription
inside it in its own nested scope, so one bad row never aborts the batch.
Re-running for the same month is safe: grants and expiries are keyed by
period.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import ensure_utc, month_key, utc_now
from libs.common.logging import get_logger
from services.classes_service.errors import ClassBookingError
from services.classes_service.models import (
    PERIODIC_CREDIT_MODES,
    ClientCreditSubscription,
    CreditCycleRun,
    CreditProduct,
)
from services.classes_service.services import ledger
from services.classes_service.services.unit_of_work import UnitOfWork, get_unit_of_work
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class CreditCycleReport:
    run_id: uuid.UUID
    period_key: str
    products_processed: int = 0
    grants_issued: int = 0
    credits_expired: int = 0
    failures: list[dict] = field(default_factory=list)


@dataclass
class _ProductOutcome:
    grants_issued: int = 0
    credits_expired: int = 0
    failures: list[dict] = field(default_factory=list)


def _failure(product_id: uuid.UUID, client_id: Optional[str], exc: Exception) -> dict:
    return {
        "product_id": str(product_id),
        "client_id": client_id,
        "error": getattr(exc, "message", None) or str(exc),
    }


async def _process_product(
    uow: UnitOfWork,
    product_id: uuid.UUID,
    *,
    run_id: uuid.UUID,
    run_at: datetime,
    period_key: str,
) -> _ProductOutcome:
    db = uow.db
    outcome = _ProductOutcome()

    product = await db.get(CreditProduct, product_id)
    default_amount = product.credits_per_period or 0

    # Oldest first: a missed run leaves more than one closed period behind.
    for closed_period in await ledger.unexpired_closed_periods(db, product_id, run_at):
        outcome.credits_expired += await ledger.expire_unused(
            db,
            product_id=product_id,
            period_key=closed_period,
            as_of=run_at,
            cycle_run_id=run_id,
        )

    # Plain ids: a failed nested scope may expire loaded instances.
    rows = await db.execute(
        select(ClientCreditSubscription.id, ClientCreditSubscription.client_id)
        .where(
            ClientCreditSubscription.credit_product_id == product_id,
            ClientCreditSubscription.active.is_(True),
        )
        .order_by(ClientCreditSubscription.client_id.asc())
    )
    for subscription_id, client_id in rows.all():
        try:
            async with uow.nested():
                subscription = await db.get(ClientCreditSubscription, subscription_id)
                if not subscription.is_active_on(run_at):
                    continue
                _, granted = await ledger.grant_periodic(
                    db,
                    client_id=client_id,
                    product_id=product_id,
                    amount=subscription.credits_per_period or default_amount,
                    period_key=period_key,
                    cycle_run_id=run_id,
                )
                subscription.last_applied_period = period_key
                await db.flush()
        except (ClassBookingError, SQLAlchemyError) as exc:
            logger.warning(
                "Periodic grant failed for client %s on product %s: %s",
                client_id,
                product_id,
                exc,
            )
            outcome.failures.append(_failure(product_id, client_id, exc))
            continue
        if granted:
            outcome.grants_issued += 1

    return outcome


async def run_monthly_credit_topup_and_expiry(
    db: AsyncSession,
    *,
    run_at: Optional[datetime] = None,
    mode: Optional[str] = None,
) -> CreditCycleReport:
    """Grant the current month to every active subscription and expire closed months.

    Covers every active, class-eligible, periodic credit product. Per-client
    and per-product failures are collected in the report and on the
    persisted ``CreditCycleRun`` row.
    """
    run_at = ensure_utc(run_at or utc_now())
    period_key = month_key(run_at)

    run = CreditCycleRun(run_at=run_at, period_key=period_key, started_at=utc_now())
    db.add(run)
    await db.commit()
    report = CreditCycleReport(run_id=run.id, period_key=period_key)

    logger.info("Credit cycle run %s started for %s", run.id, period_key)

    result = await db.execute(
        select(CreditProduct.id)
        .where(
            CreditProduct.is_active.is_(True),
            CreditProduct.class_eligible.is_(True),
            CreditProduct.credit_mode.in_(PERIODIC_CREDIT_MODES),
        )
        .order_by(CreditProduct.created_at.asc())
    )
    product_ids = list(result.scalars().all())

    for product_id in product_ids:
        uow = await get_unit_of_work(db, mode)

        async def operation(uow: UnitOfWork, product_id: uuid.UUID = product_id):
            return await _process_product(
                uow, product_id, run_id=report.run_id, run_at=run_at, period_key=period_key
            )

        try:
            outcome = await uow.run(operation)
        except (ClassBookingError, SQLAlchemyError) as exc:
            logger.error("Credit cycle failed for product %s: %s", product_id, exc)
            report.failures.append(_failure(product_id, None, exc))
            continue

        report.products_processed += 1
        report.grants_issued += outcome.grants_issued
        report.credits_expired += outcome.credits_expired
        report.failures.extend(outcome.failures)

    run = await db.get(CreditCycleRun, report.run_id)
    run.products_processed = report.products_processed
    run.grants_issued = report.grants_issued
    run.credits_expired = report.credits_expired
    run.failures = report.failures or None
    run.completed_at = utc_now()
    await db.commit()

    logger.info(
        "Credit cycle run %s finished: %d products, %d grants, %d credits expired, %d failures",
        report.run_id,
        report.products_processed,
        report.grants_issued,
        report.credits_expired,
        len(report.failures),
    )
    return report
