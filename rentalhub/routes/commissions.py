"""
Commission routes - platform rate, weekly owner settlement and payment review
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, status, Depends, Query
from rentalhub.models.fee_settings import CommissionSettingsUpdate, CommissionSettingsResponse
from rentalhub.models.commission import (
    CommissionPaymentCreate,
    CommissionPaymentReview,
    CommissionPaymentResponse,
    OwnerCommissionResponse,
    OwnerCommissionListResponse,
    PendingPaymentListResponse,
    CommissionAlertsResponse,
    SettlementRunRequest,
    SettlementRunResponse,
)
from rentalhub.models.report import RevenueResponse
from rentalhub.config.settings import settings
from rentalhub.services import fee_policy, settlement, reports
from rentalhub.utils.helpers import serialize_doc, serialize_docs, to_naive_utc
from rentalhub.utils.auth import get_current_user, require_admin, require_owner

router = APIRouter(prefix="/commissions", tags=["Commissions"])


# ─── Platform rate ────────────────────────────────────────────────────────────

@router.get("/settings", response_model=CommissionSettingsResponse)
async def get_commission_settings(current_user: dict = Depends(get_current_user)):
    row = await fee_policy.get_active_commission_settings()
    return serialize_doc(row)


@router.put("/settings", response_model=CommissionSettingsResponse)
async def update_commission_settings(
    update: CommissionSettingsUpdate,
    current_user: dict = Depends(require_admin)
):
    row = await fee_policy.update_commission_settings(current_user["sub"], update.commission_rate)
    return serialize_doc(row)


# ─── Owner side ───────────────────────────────────────────────────────────────

@router.get("/my", response_model=OwnerCommissionListResponse)
async def get_my_commissions(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_owner)
):
    """Weekly commission rows of the current owner with their payments"""
    rows, total = await settlement.get_owner_commissions(current_user["sub"], limit, offset)
    return {"items": serialize_docs(rows), "total": total}


@router.get("/current-week", response_model=OwnerCommissionResponse)
async def get_current_week_commission(current_user: dict = Depends(require_owner)):
    """Last week's commission, computed on the spot if the batch has not run yet"""
    row = await settlement.get_current_week_commission(current_user["sub"])
    return serialize_doc(row)


@router.get("/revenue", response_model=RevenueResponse)
async def get_my_revenue(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_owner)
):
    result = await reports.owner_revenue(
        current_user["sub"],
        to_naive_utc(start_date) if start_date else None,
        to_naive_utc(end_date) if end_date else None,
        limit,
        offset,
    )
    return serialize_doc(result)


@router.post(
    "/{commission_id}/payments",
    response_model=CommissionPaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_payment(
    commission_id: str,
    payment: CommissionPaymentCreate,
    current_user: dict = Depends(require_owner)
):
    """Submit transfer proof for a week; the row goes UNDER_REVIEW"""
    created = await settlement.submit_commission_payment(
        current_user["sub"], commission_id, payment.invoice_ref, payment.invoice_url,
    )
    return serialize_doc(created)


# ─── Admin side ───────────────────────────────────────────────────────────────

@router.get("/payments/pending", response_model=PendingPaymentListResponse)
async def get_pending_payments(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_admin)
):
    payments, total = await settlement.list_pending_payments(limit, offset)
    return {"items": serialize_docs(payments), "total": total}


@router.post("/payments/{payment_id}/review", response_model=CommissionPaymentResponse)
async def review_payment(
    payment_id: str,
    review: CommissionPaymentReview,
    current_user: dict = Depends(require_admin)
):
    reviewed = await settlement.review_commission_payment(
        payment_id, current_user["sub"], review.decision, review.admin_notes,
    )
    return serialize_doc(reviewed)


@router.get("/alerts", response_model=CommissionAlertsResponse)
async def get_pending_alerts(current_user: dict = Depends(require_admin)):
    """Last week's unpaid commissions and whether the payment deadline has passed"""
    alerts = await settlement.get_pending_commission_alerts()
    return serialize_doc(alerts)


@router.post("/settlements/run", response_model=SettlementRunResponse)
async def run_settlement(
    request: SettlementRunRequest,
    current_user: dict = Depends(require_admin)
):
    """Compute the commission rows of a week (default: last week)"""
    result = await settlement.run_weekly_settlement(request.week_start)
    return serialize_doc(result)
