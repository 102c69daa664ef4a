"""
Owner commission settlement models
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime, date
from enum import Enum


class OwnerCommissionStatus(str, Enum):
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    PAID = "PAID"


class CommissionPaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CommissionPaymentCreate(BaseModel):
    invoice_ref: str = Field(..., min_length=1, max_length=200, description="Bank transfer / invoice reference")
    invoice_url: Optional[str] = Field(None, description="Uploaded proof of payment")


class CommissionPaymentReview(BaseModel):
    decision: Literal["APPROVED", "REJECTED"]
    admin_notes: Optional[str] = Field(None, max_length=2000)


class CommissionPaymentResponse(BaseModel):
    id: str = Field(alias="_id")
    commission_id: str
    owner_id: str
    amount: int
    invoice_ref: str
    invoice_url: Optional[str] = None
    status: CommissionPaymentStatus
    admin_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"populate_by_name": True}


class OwnerCommissionResponse(BaseModel):
    id: str = Field(alias="_id")
    owner_id: str
    week_start_date: datetime
    week_end_date: datetime
    currency: str
    total_earning: int
    commission_rate: str
    commission_amount: int
    snapshot_platform_fee_total: int = 0
    rental_count: int
    payment_status: OwnerCommissionStatus
    paid_at: Optional[datetime] = None
    computed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    payments: List[CommissionPaymentResponse] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class OwnerCommissionListResponse(BaseModel):
    items: List[OwnerCommissionResponse]
    total: int


class SettlementRunRequest(BaseModel):
    week_start: Optional[date] = Field(None, description="Any day of the week to settle; defaults to last week")


class SettlementRunResponse(BaseModel):
    week_start_date: datetime
    week_end_date: datetime
    batch_started_at: datetime
    settled: List[str]
    skipped: List[str]


class CommissionAlertItem(BaseModel):
    id: str
    owner_id: str
    owner_name: Optional[str] = None
    owner_phone: Optional[str] = None
    week_start_date: datetime
    week_end_date: datetime
    commission_amount: int
    total_earning: int
    rental_count: int
    payment_status: OwnerCommissionStatus
    is_overdue: bool
    days_overdue: Optional[int] = None


class CommissionAlertsResponse(BaseModel):
    items: List[CommissionAlertItem]
    total: int
    overdue_count: int
    payment_deadline: datetime


class PendingPaymentListResponse(BaseModel):
    items: List[CommissionPaymentResponse]
    total: int
