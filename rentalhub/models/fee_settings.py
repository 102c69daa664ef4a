"""
Fee policy models - delivery, insurance and platform commission rates
"""
from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal
from datetime import datetime


class FeeSettingsUpdate(BaseModel):
    delivery_fee_per_km: int = Field(..., ge=0, description="Per km, minor units")
    insurance_rate_50cc: int = Field(..., ge=0, description="Per day, 50cc and manual scooters")
    insurance_rate_tay_ga: int = Field(..., ge=0, description="Per day, automatic and electric scooters")
    insurance_rate_tay_con: int = Field(..., ge=0, description="Per day, clutch motorbikes")
    insurance_rate_moto: int = Field(..., ge=0, description="Per day, large motorbikes")
    insurance_rate_default: int = Field(default=30000, ge=0)
    insurance_commission_ratio: Decimal = Field(default=Decimal("0.20"), ge=0, le=1)


class FeeSettingsResponse(BaseModel):
    id: str = Field(alias="_id")
    version: int
    delivery_fee_per_km: int
    insurance_rate_50cc: int
    insurance_rate_tay_ga: int
    insurance_rate_tay_con: int
    insurance_rate_moto: int
    insurance_rate_default: int
    insurance_commission_ratio: str
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"populate_by_name": True}


class CommissionSettingsUpdate(BaseModel):
    commission_rate: Decimal = Field(..., ge=0, le=1)


class CommissionSettingsResponse(BaseModel):
    id: str = Field(alias="_id")
    version: int
    commission_rate: str
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"populate_by_name": True}
