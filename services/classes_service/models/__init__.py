"""Classes Service models package.

Re-exports all models and enums so that:
  - ``from services.classes_service.models import ClassBooking`` works
  - Alembic env.py sees every table through one import
  - SQLAlchemy's mapper registry sees every model class on import

When adding a new model, add both its import and its __all__ entry.
"""

from services.classes_service.models.booking import ClassBooking  # noqa: F401
from services.classes_service.models.credits import (  # noqa: F401
    ClientCreditAccount,
    ClientCreditLedgerEntry,
    ClientCreditSubscription,
    CreditCycleRun,
    CreditProduct,
    CreditSubmission,
)
from services.classes_service.models.enums import (  # noqa: F401
    ACTIVE_BOOKING_STATUSES,
    CANCELLED_BOOKING_STATUSES,
    PERIODIC_CREDIT_MODES,
    SEAT_HOLDING_STATUSES,
    BookingSource,
    BookingStatus,
    CreditMode,
    LedgerEntryType,
    LedgerReason,
    PeriodType,
    ReviewAction,
    SessionStatus,
    SubmissionStatus,
    TemplateScope,
)
from services.classes_service.models.schedule import (  # noqa: F401
    ClassSession,
    ClassTemplate,
)

__all__ = [
    # Enums
    "ACTIVE_BOOKING_STATUSES",
    "CANCELLED_BOOKING_STATUSES",
    "PERIODIC_CREDIT_MODES",
    "SEAT_HOLDING_STATUSES",
    "BookingSource",
    "BookingStatus",
    "CreditMode",
    "LedgerEntryType",
    "LedgerReason",
    "PeriodType",
    "ReviewAction",
    "SessionStatus",
    "SubmissionStatus",
    "TemplateScope",
    # Schedule
    "ClassTemplate",
    "ClassSession",
    # Bookings
    "ClassBooking",
    # Credits
    "CreditProduct",
    "ClientCreditAccount",
    "ClientCreditLedgerEntry",
    "ClientCreditSubscription",
    "CreditSubmission",
    "CreditCycleRun",
]
