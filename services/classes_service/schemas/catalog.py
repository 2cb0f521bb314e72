"""Template, session and credit product schemas, plus the client browse view."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from services.classes_service.models.enums import (
    BookingStatus,
    CreditMode,
    PeriodType,
    SessionStatus,
    TemplateScope,
)
from services.classes_service.schemas.credits import CreditSummaryResponse

# --- Class templates ---


class ClassTemplateBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=2000)
    class_type: str = Field(..., min_length=1, max_length=50)
    scope: TemplateScope = TemplateScope.FACILITY
    cohort_id: Optional[uuid.UUID] = None
    location_label: Optional[str] = Field(None, max_length=120)
    # Booking policy; None falls through to the facility default.
    capacity: Optional[int] = Field(None, ge=1, le=200)
    waitlist_enabled: bool = True
    waitlist_capacity: Optional[int] = Field(None, ge=0, le=200)
    booking_open_hours_before: Optional[int] = Field(None, ge=0, le=24 * 90)
    booking_close_minutes_before: Optional[int] = Field(None, ge=0, le=24 * 60)
    cancel_cutoff_minutes: Optional[int] = Field(None, ge=0, le=7 * 24 * 60)
    late_cancel_refunds_credit: Optional[bool] = None
    credits_required: Optional[int] = Field(None, ge=0, le=20)
    credit_product_id: Optional[uuid.UUID] = None
    is_active: bool = True


class ClassTemplateCreate(ClassTemplateBase):
    # Admins only; coaches always own what they create.
    owner_coach_id: Optional[str] = None


class ClassTemplateUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=2000)
    class_type: Optional[str] = Field(None, min_length=1, max_length=50)
    scope: Optional[TemplateScope] = None
    cohort_id: Optional[uuid.UUID] = None
    location_label: Optional[str] = Field(None, max_length=120)
    capacity: Optional[int] = Field(None, ge=1, le=200)
    waitlist_enabled: Optional[bool] = None
    waitlist_capacity: Optional[int] = Field(None, ge=0, le=200)
    booking_open_hours_before: Optional[int] = Field(None, ge=0, le=24 * 90)
    booking_close_minutes_before: Optional[int] = Field(None, ge=0, le=24 * 60)
    cancel_cutoff_minutes: Optional[int] = Field(None, ge=0, le=7 * 24 * 60)
    late_cancel_refunds_credit: Optional[bool] = None
    credits_required: Optional[int] = Field(None, ge=0, le=20)
    credit_product_id: Optional[uuid.UUID] = None
    is_active: Optional[bool] = None
    owner_coach_id: Optional[str] = None


class ClassTemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_coach_id: str
    name: str
    description: Optional[str] = None
    class_type: str
    scope: TemplateScope
    cohort_id: Optional[uuid.UUID] = None
    location_label: Optional[str] = None
    capacity: Optional[int] = None
    waitlist_enabled: bool
    waitlist_capacity: Optional[int] = None
    booking_open_hours_before: Optional[int] = None
    booking_close_minutes_before: Optional[int] = None
    cancel_cutoff_minutes: Optional[int] = None
    late_cancel_refunds_credit: Optional[bool] = None
    credits_required: Optional[int] = None
    credit_product_id: Optional[uuid.UUID] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


# --- Class sessions ---


class ClassSessionCreate(BaseModel):
    starts_at: datetime
    ends_at: datetime
    instructor_id: Optional[str] = None
    capacity_override: Optional[int] = Field(None, ge=1, le=200)


class ClassSessionUpdate(BaseModel):
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    instructor_id: Optional[str] = None
    capacity_override: Optional[int] = Field(None, ge=1, le=200)
    status: Optional[SessionStatus] = None


class ClassSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    template_id: uuid.UUID
    starts_at: datetime
    ends_at: datetime
    capacity_override: Optional[int] = None
    instructor_id: Optional[str] = None
    status: SessionStatus
    created_at: datetime
    updated_at: datetime


class SessionUpdateResponse(BaseModel):
    session: ClassSessionResponse
    bookings_cancelled: int = 0
    credits_refunded: int = 0


# --- Credit products ---


class CreditProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    credit_mode: CreditMode
    credits_per_period: Optional[int] = Field(None, ge=0, le=500)
    period_type: Optional[PeriodType] = None
    class_eligible: bool = True
    applies_to_class_types: list[str] = []
    purchase_restricted: bool = False
    is_active: bool = True


class CreditProductCreate(CreditProductBase):
    owner_coach_id: Optional[str] = None

    @model_validator(mode="after")
    def periodic_products_need_an_amount(self):
        if self.credit_mode == CreditMode.MONTHLY_TOPUP:
            if self.credits_per_period is None:
                raise ValueError("credits_per_period is required for monthly_topup products")
            self.period_type = self.period_type or PeriodType.MONTH
        return self


class CreditProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    credits_per_period: Optional[int] = Field(None, ge=0, le=500)
    class_eligible: Optional[bool] = None
    applies_to_class_types: Optional[list[str]] = None
    purchase_restricted: Optional[bool] = None
    is_active: Optional[bool] = None


class CreditProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_coach_id: Optional[str] = None
    name: str
    credit_mode: CreditMode
    credits_per_period: Optional[int] = None
    period_type: Optional[PeriodType] = None
    class_eligible: bool
    applies_to_class_types: Optional[list[str]] = None
    purchase_restricted: bool
    is_active: bool
    created_at: datetime


# --- Client browse ---


class MyBookingSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    status: BookingStatus
    waitlist_position: Optional[int] = None


class SessionAvailabilityResponse(BaseModel):
    session_id: uuid.UUID
    template_id: uuid.UUID
    class_name: str
    class_type: str
    location_label: Optional[str] = None
    instructor_id: Optional[str] = None
    starts_at: datetime
    ends_at: datetime
    capacity: int
    seats_taken: int
    waitlisted: int
    is_full: bool
    waitlist_enabled: bool
    credits_required: int
    booking_open: bool
    booking_opens_at: datetime
    booking_closes_at: datetime
    my_booking: Optional[MyBookingSummary] = None


class ClassBrowseResponse(BaseModel):
    sessions: list[SessionAvailabilityResponse]
    credit_summary: CreditSummaryResponse
    products: list[CreditProductResponse]
