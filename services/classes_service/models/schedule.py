"""ClassTemplate and ClassSession models."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from libs.db.types import UTCDateTime
from services.classes_service.models.enums import (
    SessionStatus,
    TemplateScope,
    enum_values,
)
from sqlalchemy import Boolean, CheckConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class ClassTemplate(Base):
    """Reusable class definition carrying the booking policy.

    Policy columns are nullable: NULL falls through to the facility default,
    then to the engine's hardcoded default.
    """

    __tablename__ = "class_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_coach_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    class_type: Mapped[str] = mapped_column(String, nullable=False)
    scope: Mapped[TemplateScope] = mapped_column(
        SAEnum(
            TemplateScope,
            name="class_template_scope_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=TemplateScope.FACILITY,
        nullable=False,
    )
    cohort_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    location_label: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # === Booking policy ===
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    waitlist_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    waitlist_capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    booking_open_hours_before: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    booking_close_minutes_before: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )
    cancel_cutoff_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    late_cancel_refunds_credit: Mapped[Optional[bool]] = mapped_column(
        Boolean, nullable=True
    )
    credits_required: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Pins bookings to one product; NULL lets the engine pick an eligible one.
    credit_product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("credit_products.id"), nullable=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("capacity IS NULL OR capacity >= 0", name="ck_template_capacity"),
        CheckConstraint(
            "credits_required IS NULL OR credits_required >= 0",
            name="ck_template_credits_required",
        ),
    )

    def __repr__(self) -> str:
        return f"<ClassTemplate {self.name} ({self.class_type})>"


class ClassSession(Base):
    """One materialized occurrence of a ClassTemplate."""

    __tablename__ = "class_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("class_templates.id"), nullable=False, index=True
    )
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    capacity_override: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    instructor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    status: Mapped[SessionStatus] = mapped_column(
        SAEnum(
            SessionStatus,
            name="class_session_status_enum",
            values_callable=enum_values,
            validate_strings=True,
        ),
        default=SessionStatus.SCHEDULED,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("ends_at > starts_at", name="ck_session_ends_after_start"),
        CheckConstraint(
            "capacity_override IS NULL OR capacity_override >= 0",
            name="ck_session_capacity_override",
        ),
    )

    def __repr__(self) -> str:
        return f"<ClassSession {self.id} at {self.starts_at} ({self.status.value})>"
