"""Credit ledger. Every balance mutation goes through here.

Each mutation appends one ClientCreditLedgerEntry with balance snapshots
and a unique idempotency key derived from its cause (booking, submission,
period), then moves the account balance by the same delta. Nothing here
commits; the caller's unit of work owns the transaction.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from libs.common.datetime_utils import month_key, utc_now
from libs.common.logging import get_logger
from services.classes_service.errors import InsufficientCredit, NoMatchingConsumption
from services.classes_service.models import (
    ClientCreditAccount,
    ClientCreditLedgerEntry,
    CreditProduct,
    CreditSubmission,
    LedgerEntryType,
    LedgerReason,
    SubmissionStatus,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

logger = get_logger(__name__)


def consume_key(booking_id: uuid.UUID) -> str:
    return f"consume:{booking_id}"


def refund_key(booking_id: uuid.UUID) -> str:
    return f"refund:{booking_id}"


def periodic_key(product_id: uuid.UUID, client_id: str, period_key: str) -> str:
    return f"periodic:{product_id}:{client_id}:{period_key}"


def submission_key(submission_id: uuid.UUID) -> str:
    return f"submission:{submission_id}"


def expiry_key(account_id: uuid.UUID, period_key: str) -> str:
    return f"expire:{account_id}:{period_key}"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def _entry_by_key(db: AsyncSession, key: str) -> Optional[ClientCreditLedgerEntry]:
    result = await db.execute(
        select(ClientCreditLedgerEntry).where(ClientCreditLedgerEntry.idempotency_key == key)
    )
    return result.scalar_one_or_none()


async def get_account(
    db: AsyncSession,
    client_id: str,
    product_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Optional[ClientCreditAccount]:
    stmt = select(ClientCreditAccount).where(
        ClientCreditAccount.client_id == client_id,
        ClientCreditAccount.credit_product_id == product_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_balance(db: AsyncSession, client_id: str, product_id: uuid.UUID) -> int:
    account = await get_account(db, client_id, product_id)
    return account.balance if account else 0


async def lock_client_accounts(
    db: AsyncSession, client_ids: Iterable[str]
) -> list[ClientCreditAccount]:
    """Lock every account held by ``client_ids`` in account id order.

    Must come before any other account lock in a unit of work that may move
    more than one client's balance.
    """
    result = await db.execute(
        select(ClientCreditAccount)
        .where(ClientCreditAccount.client_id.in_(sorted(set(client_ids))))
        .order_by(ClientCreditAccount.id.asc())
        .with_for_update()
    )
    return list(result.scalars().all())


async def ensure_account(
    db: AsyncSession, client_id: str, product_id: uuid.UUID
) -> ClientCreditAccount:
    """Return the locked account for (client, product), creating it at zero."""
    account = await get_account(db, client_id, product_id, for_update=True)
    if account:
        return account

    account = ClientCreditAccount(
        client_id=client_id,
        credit_product_id=product_id,
        balance=0,
        lifetime_credits_granted=0,
        lifetime_credits_spent=0,
        lifetime_credits_expired=0,
    )
    db.add(account)
    await db.flush()
    return account


@dataclass
class ProductBalance:
    product_id: uuid.UUID
    product_name: str
    credit_mode: str
    balance: int


@dataclass
class CreditSummary:
    client_id: str
    balances: list[ProductBalance]
    pending_submissions: int

    @property
    def total_balance(self) -> int:
        return sum(item.balance for item in self.balances)


async def get_credit_summary(db: AsyncSession, client_id: str) -> CreditSummary:
    rows = await db.execute(
        select(ClientCreditAccount, CreditProduct)
        .join(CreditProduct, CreditProduct.id == ClientCreditAccount.credit_product_id)
        .where(ClientCreditAccount.client_id == client_id)
        .order_by(CreditProduct.name.asc())
    )
    balances = [
        ProductBalance(
            product_id=product.id,
            product_name=product.name,
            credit_mode=product.credit_mode.value,
            balance=account.balance,
        )
        for account, product in rows.all()
    ]
    pending = await db.execute(
        select(func.count(CreditSubmission.id)).where(
            CreditSubmission.client_id == client_id,
            CreditSubmission.status == SubmissionStatus.PENDING,
        )
    )
    return CreditSummary(
        client_id=client_id,
        balances=balances,
        pending_submissions=pending.scalar_one() or 0,
    )


# ---------------------------------------------------------------------------
# Append
# ---------------------------------------------------------------------------


async def _append_entry(
    db: AsyncSession,
    account: ClientCreditAccount,
    *,
    delta: int,
    entry_type: LedgerEntryType,
    reason: LedgerReason,
    idempotency_key: str,
    booking_id: Optional[uuid.UUID] = None,
    submission_id: Optional[uuid.UUID] = None,
    cycle_run_id: Optional[uuid.UUID] = None,
    period_key: Optional[str] = None,
    description: Optional[str] = None,
    created_by: Optional[str] = None,
) -> ClientCreditLedgerEntry:
    balance_before = account.balance
    balance_after = balance_before + delta

    entry = ClientCreditLedgerEntry(
        account_id=account.id,
        client_id=account.client_id,
        credit_product_id=account.credit_product_id,
        idempotency_key=idempotency_key,
        entry_type=entry_type,
        reason=reason,
        delta_credits=delta,
        balance_before=balance_before,
        balance_after=balance_after,
        booking_id=booking_id,
        submission_id=submission_id,
        cycle_run_id=cycle_run_id,
        period_key=period_key,
        description=description,
        created_by=created_by,
    )
    db.add(entry)

    account.balance = balance_after
    if entry_type == LedgerEntryType.GRANT:
        account.lifetime_credits_granted += delta
    elif entry_type == LedgerEntryType.CONSUME:
        account.lifetime_credits_spent -= delta
    elif entry_type == LedgerEntryType.REFUND:
        account.lifetime_credits_spent -= delta
    elif entry_type == LedgerEntryType.EXPIRE:
        account.lifetime_credits_expired -= delta
    account.updated_at = utc_now()

    await db.flush()

    logger.info(
        "Ledger %s %+d for client %s product %s (key=%s), balance %d->%d",
        entry_type.value,
        delta,
        account.client_id,
        account.credit_product_id,
        idempotency_key,
        balance_before,
        balance_after,
    )
    return entry


# ---------------------------------------------------------------------------
# Consume / refund (booking-scoped)
# ---------------------------------------------------------------------------


async def consume(
    db: AsyncSession,
    *,
    client_id: str,
    product_id: uuid.UUID,
    amount: int,
    booking_id: uuid.UUID,
    actor_id: Optional[str] = None,
) -> ClientCreditLedgerEntry:
    """Debit ``amount`` for ``booking_id``.

    A repeat call for the same booking returns the original entry without
    debiting again. Raises InsufficientCredit before any write.
    """
    key = consume_key(booking_id)
    existing = await _entry_by_key(db, key)
    if existing:
        logger.info("Idempotent replay for key=%s -> entry=%s", key, existing.id)
        return existing

    account = await get_account(db, client_id, product_id, for_update=True)
    available = account.balance if account else 0
    if account is None or available < amount:
        raise InsufficientCredit(
            f"Insufficient class credits: need {amount}, have {available}",
            required=amount,
            available=available,
        )

    return await _append_entry(
        db,
        account,
        delta=-amount,
        entry_type=LedgerEntryType.CONSUME,
        reason=LedgerReason.BOOKING_DEBIT,
        idempotency_key=key,
        booking_id=booking_id,
        created_by=actor_id,
    )


async def refund(
    db: AsyncSession,
    *,
    client_id: str,
    product_id: uuid.UUID,
    amount: int,
    booking_id: uuid.UUID,
    actor_id: Optional[str] = None,
) -> ClientCreditLedgerEntry:
    """Credit back a booking's consumption, at most once."""
    consumption = await _entry_by_key(db, consume_key(booking_id))
    if (
        consumption is None
        or consumption.client_id != client_id
        or consumption.credit_product_id != product_id
    ):
        raise NoMatchingConsumption(booking_id=str(booking_id))

    key = refund_key(booking_id)
    if await _entry_by_key(db, key):
        raise NoMatchingConsumption(
            "Credit consumption for this booking was already refunded",
            booking_id=str(booking_id),
        )

    if amount <= 0 or amount > -consumption.delta_credits:
        raise NoMatchingConsumption(
            f"Refund of {amount} does not match consumption of {-consumption.delta_credits}",
            booking_id=str(booking_id),
        )

    account = await ensure_account(db, client_id, product_id)
    return await _append_entry(
        db,
        account,
        delta=amount,
        entry_type=LedgerEntryType.REFUND,
        reason=LedgerReason.BOOKING_REFUND,
        idempotency_key=key,
        booking_id=booking_id,
        created_by=actor_id,
    )


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


async def grant(
    db: AsyncSession,
    *,
    client_id: str,
    product_id: uuid.UUID,
    amount: int,
    idempotency_key: str,
    reason: LedgerReason,
    submission_id: Optional[uuid.UUID] = None,
    cycle_run_id: Optional[uuid.UUID] = None,
    period_key: Optional[str] = None,
    description: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> tuple[Optional[ClientCreditLedgerEntry], bool]:
    """Add credits under ``idempotency_key``.

    Returns ``(entry, granted)``; granted=False means the key was already used
    (or the amount is zero) and nothing changed.
    """
    existing = await _entry_by_key(db, idempotency_key)
    if existing:
        return existing, False
    if amount <= 0:
        return None, False

    account = await ensure_account(db, client_id, product_id)
    entry = await _append_entry(
        db,
        account,
        delta=amount,
        entry_type=LedgerEntryType.GRANT,
        reason=reason,
        idempotency_key=idempotency_key,
        submission_id=submission_id,
        cycle_run_id=cycle_run_id,
        period_key=period_key,
        description=description,
        created_by=actor_id,
    )
    return entry, True


async def grant_periodic(
    db: AsyncSession,
    *,
    client_id: str,
    product_id: uuid.UUID,
    amount: int,
    period_key: str,
    cycle_run_id: Optional[uuid.UUID] = None,
    submission_id: Optional[uuid.UUID] = None,
    actor_id: Optional[str] = None,
) -> tuple[Optional[ClientCreditLedgerEntry], bool]:
    """Grant a period's credits at most once per (client, product, period)."""
    return await grant(
        db,
        client_id=client_id,
        product_id=product_id,
        amount=amount,
        idempotency_key=periodic_key(product_id, client_id, period_key),
        reason=LedgerReason.TOPUP_PERIODIC,
        submission_id=submission_id,
        cycle_run_id=cycle_run_id,
        period_key=period_key,
        description=f"Credits for {period_key}",
        actor_id=actor_id,
    )


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


async def _sum_grants(db: AsyncSession, account_id: uuid.UUID, *conditions) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(ClientCreditLedgerEntry.delta_credits), 0)).where(
            ClientCreditLedgerEntry.account_id == account_id,
            ClientCreditLedgerEntry.entry_type == LedgerEntryType.GRANT,
            *conditions,
        )
    )
    return int(result.scalar_one())


async def unused_credits_for_period(
    db: AsyncSession, account: ClientCreditAccount, period_key: str
) -> int:
    """Credits from ``period_key``'s grants still sitting in the balance.

    Consumption draws down the oldest credits first, so whatever was granted
    later (or outside any period) is what remains after older credits are gone.
    """
    period_grants = await _sum_grants(
        db, account.id, ClientCreditLedgerEntry.period_key == period_key
    )
    if period_grants <= 0:
        return 0
    later_grants = await _sum_grants(
        db,
        account.id,
        (ClientCreditLedgerEntry.period_key > period_key)
        | ClientCreditLedgerEntry.period_key.is_(None),
    )
    return max(0, min(period_grants, account.balance - later_grants))


async def unexpired_closed_periods(
    db: AsyncSession, product_id: uuid.UUID, as_of: datetime
) -> list[str]:
    """Closed period keys of ``product_id`` with a grant not yet expired, oldest first."""
    expiry = aliased(ClientCreditLedgerEntry)
    already_expired = (
        select(expiry.id)
        .where(
            expiry.account_id == ClientCreditLedgerEntry.account_id,
            expiry.entry_type == LedgerEntryType.EXPIRE,
            expiry.period_key == ClientCreditLedgerEntry.period_key,
        )
        .exists()
    )
    result = await db.execute(
        select(ClientCreditLedgerEntry.period_key)
        .distinct()
        .where(
            ClientCreditLedgerEntry.credit_product_id == product_id,
            ClientCreditLedgerEntry.entry_type == LedgerEntryType.GRANT,
            ClientCreditLedgerEntry.period_key.is_not(None),
            ClientCreditLedgerEntry.period_key < month_key(as_of),
            ~already_expired,
        )
        .order_by(ClientCreditLedgerEntry.period_key.asc())
    )
    return list(result.scalars().all())


async def expire_unused(
    db: AsyncSession,
    *,
    product_id: uuid.UUID,
    period_key: str,
    as_of: datetime,
    cycle_run_id: Optional[uuid.UUID] = None,
) -> int:
    """Zero out credits attributable to a closed period across all accounts.

    Returns the number of credits expired. The period containing ``as_of``
    is still open and is never expired; each account expires a period once.
    """
    if period_key >= month_key(as_of):
        logger.info(
            "Skipping expiry of open period %s for product %s", period_key, product_id
        )
        return 0

    result = await db.execute(
        select(ClientCreditAccount)
        .where(ClientCreditAccount.credit_product_id == product_id)
        .order_by(ClientCreditAccount.id.asc())
        .with_for_update()
    )
    accounts = list(result.scalars().all())

    expired_total = 0
    for account in accounts:
        key = expiry_key(account.id, period_key)
        if await _entry_by_key(db, key):
            continue
        unused = await unused_credits_for_period(db, account, period_key)
        if unused <= 0:
            continue
        await _append_entry(
            db,
            account,
            delta=-unused,
            entry_type=LedgerEntryType.EXPIRE,
            reason=LedgerReason.PERIOD_EXPIRY,
            idempotency_key=key,
            cycle_run_id=cycle_run_id,
            period_key=period_key,
            description=f"Unused credits from {period_key} expired",
        )
        expired_total += unused

    return expired_total
