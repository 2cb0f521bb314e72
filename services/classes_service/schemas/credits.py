"""Credit summary, submission and cycle-run schemas."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from services.classes_service.models.enums import ReviewAction, SubmissionStatus


class ProductBalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: uuid.UUID
    product_name: str
    credit_mode: str
    balance: int


class CreditSummaryResponse(BaseModel):
    client_id: str
    total_balance: int
    balances: list[ProductBalanceResponse]
    pending_submissions: int


class CreditSubmissionCreate(BaseModel):
    credit_product_id: uuid.UUID
    reference_code: str = Field(..., min_length=1, max_length=120)
    note: Optional[str] = Field(None, max_length=2000)


class CreditSubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    client_id: str
    credit_product_id: uuid.UUID
    reference_code: str
    note: Optional[str] = None
    status: SubmissionStatus
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    credits_applied: int
    created_at: datetime


class SubmissionReviewRequest(BaseModel):
    action: ReviewAction


class CreditCycleRunResponse(BaseModel):
    run_id: uuid.UUID
    period_key: str
    products_processed: int
    grants_issued: int
    credits_expired: int
    failures: list[dict] = []
