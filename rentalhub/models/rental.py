"""
Rental models and schemas
"""
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class RentalStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    AWAIT_APPROVAL = "AWAIT_APPROVAL"
    CONFIRMED = "CONFIRMED"
    ON_TRIP = "ON_TRIP"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class DeliveryInfo(BaseModel):
    """Door delivery requested by the renter"""
    distance_km: float = Field(..., ge=0, description="Distance from the vehicle to the renter")
    address: Optional[Dict[str, Any]] = None


class RentalCreate(BaseModel):
    vehicle_id: str
    start_date: datetime
    end_date: datetime
    delivery: Optional[DeliveryInfo] = None
    discount_code: Optional[str] = None
    discount_amount: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self

    @field_validator("discount_code")
    @classmethod
    def normalize_code(cls, v):
        return v.strip().upper() if v else None


class RentalStatusUpdate(BaseModel):
    status: RentalStatus
    reason: Optional[str] = Field(None, max_length=500)
    odometer: Optional[int] = Field(None, ge=0, description="Reading at pickup (ON_TRIP) or return (COMPLETED)")


class StatusChange(BaseModel):
    from_status: Optional[RentalStatus] = None
    to_status: RentalStatus
    actor_id: str
    reason: Optional[str] = None
    at: datetime
    ledger_entry_ids: List[str] = Field(default_factory=list)


class PriceQuote(BaseModel):
    currency: str
    days: int
    duration_minutes: int
    price_per_day: int
    rental_fee: int
    delivery_fee: int
    insurance_tier: str
    insurance_fee: int
    discount_amount: int
    total_price: int
    deposit_price: int
    platform_fee_ratio: str
    platform_fee: int
    owner_earning: int
    fee_settings_id: str
    fee_settings_version: int


class RentalResponse(BaseModel):
    id: str = Field(alias="_id")
    renter_id: str
    owner_id: str
    vehicle_id: str
    vehicle_type: Optional[str] = None
    start_date: datetime
    end_date: datetime
    duration_minutes: int
    days: int
    currency: str
    price_per_day: int
    delivery_fee: int
    delivery_distance_km: float = 0
    delivery_address: Optional[Dict[str, Any]] = None
    insurance_tier: str
    insurance_fee: int
    discount_code: Optional[str] = None
    discount_amount: int
    total_price: int
    deposit_price: int
    platform_fee_ratio: str
    platform_fee: int
    owner_earning: int
    fee_settings_id: Optional[str] = None
    fee_settings_version: Optional[int] = None
    status: RentalStatus
    version: int
    start_odometer: Optional[int] = None
    end_odometer: Optional[int] = None
    cancel_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    status_history: List[StatusChange] = Field(default_factory=list)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"populate_by_name": True}


class RentalListResponse(BaseModel):
    rentals: List[RentalResponse]
    total: int
