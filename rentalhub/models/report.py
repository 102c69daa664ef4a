"""
Report schemas
"""
from pydantic import BaseModel
from typing import List
from datetime import datetime


class InsuranceByVehicleType(BaseModel):
    type: str
    count: int
    total_fee: int


class InsuranceStatsResponse(BaseModel):
    period_start: datetime
    period_end: datetime
    total_rentals: int
    total_insurance_fee: int
    insurance_commission_ratio: str
    platform_commission: int
    payable_to_insurer: int
    by_vehicle_type: List[InsuranceByVehicleType]


class RevenueItem(BaseModel):
    id: str
    vehicle_id: str
    start_date: datetime
    end_date: datetime
    total_price: int
    platform_fee: int
    delivery_fee: int
    insurance_fee: int
    discount_amount: int
    owner_earning: int
    status: str
    created_at: datetime


class RevenueResponse(BaseModel):
    items: List[RevenueItem]
    total: int
    total_revenue: int
    total_earning: int
