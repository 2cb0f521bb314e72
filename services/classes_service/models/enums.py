"""Enums for the Classes Service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class TemplateScope(str, enum.Enum):
    FACILITY = "facility"
    COHORT = "cohort"


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BookingStatus(str, enum.Enum):
    BOOKED = "booked"
    WAITLISTED = "waitlisted"
    CANCELLED = "cancelled"
    LATE_CANCEL = "late_cancel"
    ATTENDED = "attended"
    NO_SHOW = "no_show"


# At most one of these per (client, session).
ACTIVE_BOOKING_STATUSES = (BookingStatus.BOOKED, BookingStatus.WAITLISTED)
CANCELLED_BOOKING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.LATE_CANCEL)
# Statuses that hold a seat for capacity purposes.
SEAT_HOLDING_STATUSES = (
    BookingStatus.BOOKED,
    BookingStatus.ATTENDED,
    BookingStatus.NO_SHOW,
)


class BookingSource(str, enum.Enum):
    CLIENT = "client"
    COACH = "coach"
    ADMIN = "admin"


class CreditMode(str, enum.Enum):
    ONE_TIME_PACK = "one_time_pack"
    MONTHLY_TOPUP = "monthly_topup"


PERIODIC_CREDIT_MODES = (CreditMode.MONTHLY_TOPUP,)


class PeriodType(str, enum.Enum):
    MONTH = "month"


class LedgerEntryType(str, enum.Enum):
    GRANT = "grant"
    CONSUME = "consume"
    REFUND = "refund"
    EXPIRE = "expire"


class LedgerReason(str, enum.Enum):
    PACK_PURCHASE = "pack_purchase"
    TOPUP_PERIODIC = "topup_periodic"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    BOOKING_DEBIT = "booking_debit"
    BOOKING_REFUND = "booking_refund"
    PERIOD_EXPIRY = "period_expiry"


class SubmissionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewAction(str, enum.Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
