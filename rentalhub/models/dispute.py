"""
Dispute and evidence models
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_REFUND = "RESOLVED_REFUND"
    RESOLVED_NO_REFUND = "RESOLVED_NO_REFUND"
    CANCELLED = "CANCELLED"


LIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)
TERMINAL_DISPUTE_STATUSES = (
    DisputeStatus.RESOLVED_REFUND,
    DisputeStatus.RESOLVED_NO_REFUND,
    DisputeStatus.CANCELLED,
)


class EvidenceType(str, Enum):
    PICKUP_FRONT = "PICKUP_FRONT"
    PICKUP_BACK = "PICKUP_BACK"
    PICKUP_LEFT = "PICKUP_LEFT"
    PICKUP_RIGHT = "PICKUP_RIGHT"
    PICKUP_DASHBOARD = "PICKUP_DASHBOARD"
    RETURN_FRONT = "RETURN_FRONT"
    RETURN_BACK = "RETURN_BACK"
    RETURN_LEFT = "RETURN_LEFT"
    RETURN_RIGHT = "RETURN_RIGHT"
    RETURN_DASHBOARD = "RETURN_DASHBOARD"
    DAMAGE_DETAIL = "DAMAGE_DETAIL"
    DOCUMENT = "DOCUMENT"


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)


class DisputeResolve(BaseModel):
    outcome: DisputeStatus
    admin_notes: str = Field(..., min_length=1, max_length=5000)

    @field_validator("outcome")
    @classmethod
    def outcome_must_be_terminal(cls, v):
        if v not in TERMINAL_DISPUTE_STATUSES:
            raise ValueError("Outcome must be RESOLVED_REFUND, RESOLVED_NO_REFUND or CANCELLED")
        return v


class EvidenceItem(BaseModel):
    type: EvidenceType
    url: str = Field(..., min_length=1)
    note: Optional[str] = Field(None, max_length=1000)


class EvidenceUpload(BaseModel):
    evidences: List[EvidenceItem] = Field(..., min_length=1, max_length=20)


class DisputeResponse(BaseModel):
    id: str = Field(alias="_id")
    rental_id: str
    opened_by: str
    opened_from: str
    reason: str
    description: Optional[str] = None
    status: DisputeStatus
    admin_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"populate_by_name": True}


class EvidenceResponse(BaseModel):
    id: str = Field(alias="_id")
    rental_id: str
    dispute_id: Optional[str] = None
    uploaded_by: str
    type: EvidenceType
    url: str
    note: Optional[str] = None
    order: int
    created_at: datetime

    model_config = {"populate_by_name": True}
