"""Typed failures raised by the booking and credit engine.

Each carries the HTTP status the routers map it to and a stable ``code``
for clients. The engine never retries any of them.
"""

from typing import Optional


class ClassBookingError(Exception):
    status_code: int = 400
    code: str = "class_booking_error"
    default_message: str = "Class booking failed"

    def __init__(self, message: Optional[str] = None, **context):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.context = context


class SessionNotFound(ClassBookingError):
    status_code = 404
    code = "session_not_found"
    default_message = "Session not found"


class SessionNotBookable(ClassBookingError):
    status_code = 400
    code = "session_not_bookable"
    default_message = "Session is not available for booking"


class BookingWindowClosed(ClassBookingError):
    status_code = 400
    code = "booking_window_closed"
    default_message = "Booking window is closed for this session"


class SessionFull(ClassBookingError):
    status_code = 409
    code = "session_full"
    default_message = "Class is full and waitlist is unavailable"


class InsufficientCredit(ClassBookingError):
    status_code = 402
    code = "insufficient_credit"
    default_message = "Insufficient class credits"


class BookingNotFound(ClassBookingError):
    status_code = 404
    code = "booking_not_found"
    default_message = "Booking not found"


class BookingNotCancellable(ClassBookingError):
    status_code = 400
    code = "booking_not_cancellable"
    default_message = "Attendance already marked; booking cannot be cancelled"


class InvalidAttendanceTransition(ClassBookingError):
    status_code = 400
    code = "invalid_attendance_transition"
    default_message = "Attendance can only be marked on a booked seat"


class NoMatchingConsumption(ClassBookingError):
    """Refund without an unrefunded consumption. Indicates a data integrity issue."""

    status_code = 409
    code = "no_matching_consumption"
    default_message = "No unrefunded credit consumption for this booking"


class SubmissionNotFound(ClassBookingError):
    status_code = 404
    code = "submission_not_found"
    default_message = "Credit submission not found"


class SubmissionNotPending(ClassBookingError):
    status_code = 400
    code = "submission_not_pending"
    default_message = "Credit submission has already been reviewed"


class DuplicatePendingSubmission(ClassBookingError):
    status_code = 409
    code = "duplicate_pending_submission"
    default_message = "A submission with this reference is already pending review"


class CreditProductNotFound(ClassBookingError):
    status_code = 404
    code = "credit_product_not_found"
    default_message = "Credit product not found"


class CreditProductUnavailable(ClassBookingError):
    status_code = 400
    code = "credit_product_unavailable"
    default_message = "Credit product is not available"


class TemplateNotFound(ClassBookingError):
    status_code = 404
    code = "class_template_not_found"
    default_message = "Class template not found"


class InvalidSessionSchedule(ClassBookingError):
    status_code = 400
    code = "invalid_session_schedule"
    default_message = "Session must end after it starts"


class StaffActionForbidden(ClassBookingError):
    status_code = 403
    code = "staff_action_forbidden"
    default_message = "Only admins can do this"


class TransactionUnavailable(Exception):
    """The database cannot hold an interactive transaction on this connection."""
