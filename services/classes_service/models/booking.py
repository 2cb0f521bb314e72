"""ClassBooking model: one client's seat or waitlist spot in one session."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from libs.db.types import UTCDateTime
from services.classes_service.models.enums import (
    BookingSource,
    BookingStatus,
    enum_values,
)
from sqlalchemy import CheckConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Index, Integer, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

_ACTIVE_BOOKING_WHERE = text("status IN ('booked', 'waitlisted')")


class ClassBooking(Base):
    __tablename__ = "class_bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("class_sessions.id"), nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[BookingStatus] = mapped_column(
        SAEnum(
            BookingStatus,
            name="class_booking_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    waitlist_position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source: Mapped[BookingSource] = mapped_column(
        SAEnum(
            BookingSource,
            name="class_booking_source_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )
    booked_by_user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # What the seat cost; refunds are driven by these, not by the template.
    credit_product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("credit_products.id"), nullable=True
    )
    credits_charged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    attendance_marked_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "(status = 'waitlisted' AND waitlist_position IS NOT NULL AND waitlist_position >= 1)"
            " OR (status != 'waitlisted' AND waitlist_position IS NULL)",
            name="ck_booking_waitlist_position",
        ),
        CheckConstraint("credits_charged >= 0", name="ck_booking_credits_charged"),
        Index(
            "uq_class_bookings_active_client_session",
            "session_id",
            "client_id",
            unique=True,
            postgresql_where=_ACTIVE_BOOKING_WHERE,
            sqlite_where=_ACTIVE_BOOKING_WHERE,
        ),
        Index("ix_class_bookings_session_status", "session_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<ClassBooking {self.id} {self.client_id} {self.status.value}>"
