"""Booking, cancellation and attendance schemas."""

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from services.classes_service.models.enums import BookingSource, BookingStatus


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    session_id: uuid.UUID
    client_id: str
    status: BookingStatus
    waitlist_position: Optional[int] = None
    source: BookingSource
    booked_by_user_id: Optional[str] = None
    credit_product_id: Optional[uuid.UUID] = None
    credits_charged: int
    cancelled_at: Optional[datetime] = None
    attendance_marked_at: Optional[datetime] = None
    created_at: datetime


class BookSessionResponse(BaseModel):
    result: Literal["booked", "waitlisted", "already_exists"]
    booking: BookingResponse
    waitlist_position: Optional[int] = None


class StaffBookingRequest(BaseModel):
    client_id: str
    # Coaches and admins book outside the window by default.
    enforce_booking_window: bool = False
    skip_credit_validation: bool = False


class CancelBookingResponse(BaseModel):
    booking: BookingResponse
    promoted: list[BookingResponse] = []
    late_cancel: bool
    credits_refunded: int = 0
    already_cancelled: bool = False
    promotion_error: Optional[str] = None


class AttendanceRequest(BaseModel):
    # ATTENDED or NO_SHOW; anything else is rejected by the engine.
    status: BookingStatus


class SessionRosterResponse(BaseModel):
    session_id: uuid.UUID
    capacity: int
    seats_taken: int
    waitlisted: int
    bookings: list[BookingResponse]
