"""
Fee policy routes
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from rentalhub.models.fee_settings import FeeSettingsUpdate, FeeSettingsResponse
from rentalhub.models.report import InsuranceStatsResponse
from rentalhub.services import fee_policy, reports
from rentalhub.utils.helpers import serialize_doc, to_naive_utc
from rentalhub.utils.auth import get_current_user, require_admin

router = APIRouter(prefix="/fees", tags=["Fees"])


@router.get("/settings", response_model=FeeSettingsResponse)
async def get_fee_settings(current_user: dict = Depends(get_current_user)):
    """Active delivery and insurance rates"""
    row = await fee_policy.get_active_fee_settings()
    return serialize_doc(row)


@router.put("/settings", response_model=FeeSettingsResponse)
async def update_fee_settings(
    update: FeeSettingsUpdate,
    current_user: dict = Depends(require_admin)
):
    """Publish a new fee policy version; existing rentals keep their prices"""
    row = await fee_policy.update_fee_settings(current_user["sub"], update.model_dump())
    return serialize_doc(row)


@router.get("/insurance-stats", response_model=InsuranceStatsResponse)
async def get_insurance_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    current_user: dict = Depends(require_admin)
):
    """Insurance collected on completed rentals (default: current month)"""
    stats = await reports.insurance_stats(
        to_naive_utc(start_date) if start_date else None,
        to_naive_utc(end_date) if end_date else None,
    )
    return serialize_doc(stats)
