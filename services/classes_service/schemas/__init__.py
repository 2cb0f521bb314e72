"""Classes Service schemas package.

Re-exports all schemas so routers import from one place.
When adding a new schema, add its import and __all__ entry.
"""

from services.classes_service.schemas.booking import (  # noqa: F401
    AttendanceRequest,
    BookingResponse,
    BookSessionResponse,
    CancelBookingResponse,
    SessionRosterResponse,
    StaffBookingRequest,
)
from services.classes_service.schemas.catalog import (  # noqa: F401
    ClassBrowseResponse,
    ClassSessionCreate,
    ClassSessionResponse,
    ClassSessionUpdate,
    ClassTemplateCreate,
    ClassTemplateResponse,
    ClassTemplateUpdate,
    CreditProductCreate,
    CreditProductResponse,
    CreditProductUpdate,
    MyBookingSummary,
    SessionAvailabilityResponse,
    SessionUpdateResponse,
)
from services.classes_service.schemas.credits import (  # noqa: F401
    CreditCycleRunResponse,
    CreditSubmissionCreate,
    CreditSubmissionResponse,
    CreditSummaryResponse,
    ProductBalanceResponse,
    SubmissionReviewRequest,
)

__all__ = [
    # Booking
    "AttendanceRequest",
    "BookingResponse",
    "BookSessionResponse",
    "CancelBookingResponse",
    "SessionRosterResponse",
    "StaffBookingRequest",
    # Catalog
    "ClassBrowseResponse",
    "ClassSessionCreate",
    "ClassSessionResponse",
    "ClassSessionUpdate",
    "ClassTemplateCreate",
    "ClassTemplateResponse",
    "ClassTemplateUpdate",
    "CreditProductCreate",
    "CreditProductResponse",
    "CreditProductUpdate",
    "MyBookingSummary",
    "SessionAvailabilityResponse",
    "SessionUpdateResponse",
    # Credits
    "CreditCycleRunResponse",
    "CreditSubmissionCreate",
    "CreditSubmissionResponse",
    "CreditSummaryResponse",
    "ProductBalanceResponse",
    "SubmissionReviewRequest",
]
