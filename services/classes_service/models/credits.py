"""Credit products, per-client accounts, the ledger, subscriptions and submissions."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from libs.db.types import UTCDateTime
from services.classes_service.models.enums import (
    CreditMode,
    LedgerEntryType,
    LedgerReason,
    PeriodType,
    SubmissionStatus,
    enum_values,
)
from sqlalchemy import JSON, Boolean, CheckConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column


class CreditProduct(Base):
    """A purchasable or assignable bundle of class credits."""

    __tablename__ = "credit_products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # NULL means facility-wide.
    owner_coach_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    credit_mode: Mapped[CreditMode] = mapped_column(
        SAEnum(
            CreditMode,
            name="credit_mode_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    # Pack size for one-off products, per-period grant for periodic ones.
    credits_per_period: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    period_type: Mapped[Optional[PeriodType]] = mapped_column(
        SAEnum(
            PeriodType,
            name="credit_period_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=True,
    )
    class_eligible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Empty or NULL applies to every class type.
    applies_to_class_types: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    purchase_restricted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "credit_mode != 'monthly_topup' OR credits_per_period IS NOT NULL",
            name="ck_credit_product_periodic_amount",
        ),
        CheckConstraint(
            "credits_per_period IS NULL OR credits_per_period >= 0",
            name="ck_credit_product_amount_non_negative",
        ),
    )

    def __repr__(self) -> str:
        return f"<CreditProduct {self.name} ({self.credit_mode.value})>"


class ClientCreditAccount(Base):
    """Current balance of one client against one credit product."""

    __tablename__ = "client_credit_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    credit_product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("credit_products.id"), nullable=False, index=True
    )
    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_credits_granted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_credits_spent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_credits_expired: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("client_id", "credit_product_id", name="uq_credit_account_client_product"),
        CheckConstraint("balance >= 0", name="ck_credit_account_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<ClientCreditAccount {self.client_id} balance={self.balance}>"


class ClientCreditLedgerEntry(Base):
    """Append-only ledger. An account's balance is the sum of its deltas."""

    __tablename__ = "client_credit_ledger"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("client_credit_accounts.id"), nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    credit_product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("credit_products.id"), nullable=False, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    entry_type: Mapped[LedgerEntryType] = mapped_column(
        SAEnum(
            LedgerEntryType,
            name="credit_ledger_entry_type_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    reason: Mapped[LedgerReason] = mapped_column(
        SAEnum(
            LedgerReason,
            name="credit_ledger_reason_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    delta_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    # Cause tags: exactly one is normally set.
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    submission_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    cycle_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    period_key: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)

    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("delta_credits != 0", name="ck_ledger_delta_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        CheckConstraint(
            "balance_after = balance_before + delta_credits",
            name="ck_ledger_balance_arithmetic",
        ),
        Index("ix_client_credit_ledger_account_period", "account_id", "period_key"),
    )

    def __repr__(self) -> str:
        return f"<ClientCreditLedgerEntry {self.entry_type.value} {self.delta_credits:+d}>"


class ClientCreditSubscription(Base):
    """Standing relationship between a client and a periodic product."""

    __tablename__ = "client_credit_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    credit_product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("credit_products.id"), nullable=False, index=True
    )
    credits_per_period: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_applied_period: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("credits_per_period >= 0", name="ck_subscription_credits"),
    )

    def is_active_on(self, at: datetime) -> bool:
        if not self.active:
            return False
        if self.start_date > at:
            return False
        if self.end_date is not None and self.end_date < at:
            return False
        return True


_PENDING_WHERE = text("status = 'pending'")


class CreditSubmission(Base):
    """A client's claim of an external purchase, awaiting staff review."""

    __tablename__ = "credit_submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    credit_product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("credit_products.id"), nullable=False, index=True
    )
    reference_code: Mapped[str] = mapped_column(String, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[SubmissionStatus] = mapped_column(
        SAEnum(
            SubmissionStatus,
            name="credit_submission_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=SubmissionStatus.PENDING,
        nullable=False,
    )
    reviewed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    credits_applied: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index(
            "uq_credit_submissions_pending_reference",
            "client_id",
            "credit_product_id",
            "reference_code",
            unique=True,
            postgresql_where=_PENDING_WHERE,
            sqlite_where=_PENDING_WHERE,
        ),
    )

    def __repr__(self) -> str:
        return f"<CreditSubmission {self.reference_code} ({self.status.value})>"


class CreditCycleRun(Base):
    """One execution of the monthly top-up and expiry job."""

    __tablename__ = "credit_cycle_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    period_key: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    products_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    grants_issued: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_expired: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failures: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<CreditCycleRun {self.period_key} grants={self.grants_issued}>"
