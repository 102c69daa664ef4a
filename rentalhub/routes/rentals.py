"""
Rental routes - booking, status changes, ledger, evidence and dispute opening
"""
from fastapi import APIRouter, status, Depends, Query
from typing import List, Optional
from rentalhub.models.rental import (
    RentalCreate,
    RentalStatus,
    RentalStatusUpdate,
    RentalResponse,
    RentalListResponse,
    PriceQuote,
)
from rentalhub.models.dispute import DisputeCreate, DisputeResponse, EvidenceUpload, EvidenceResponse
from rentalhub.models.transaction import RentalTransactionResponse
from rentalhub.config.settings import settings
from rentalhub.services import rental_service, dispute_service, ledger
from rentalhub.utils.helpers import serialize_doc, serialize_docs
from rentalhub.utils.auth import get_current_user, is_admin

router = APIRouter(prefix="/rentals", tags=["Rentals"])


@router.post("", response_model=RentalResponse, status_code=status.HTTP_201_CREATED)
async def create_rental(
    rental: RentalCreate,
    current_user: dict = Depends(get_current_user)
):
    """Book a vehicle; the rental starts in PENDING_PAYMENT"""
    created = await rental_service.create_rental(
        renter_id=current_user["sub"],
        vehicle_id=rental.vehicle_id,
        start_date=rental.start_date,
        end_date=rental.end_date,
        delivery=rental.delivery.model_dump() if rental.delivery else None,
        discount_code=rental.discount_code,
        discount_amount=rental.discount_amount,
    )
    return serialize_doc(created)


@router.post("/quote", response_model=PriceQuote)
async def quote_rental(
    rental: RentalCreate,
    current_user: dict = Depends(get_current_user)
):
    """Price preview with the current fee policy; nothing is saved"""
    breakdown = await rental_service.quote(
        vehicle_id=rental.vehicle_id,
        start_date=rental.start_date,
        end_date=rental.end_date,
        delivery=rental.delivery.model_dump() if rental.delivery else None,
        discount_code=rental.discount_code,
        discount_amount=rental.discount_amount,
    )
    return breakdown.as_dict()


@router.get("", response_model=RentalListResponse)
async def list_rentals(
    role: Optional[str] = Query(None, pattern="^(renter|owner)$"),
    rental_status: Optional[RentalStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: dict = Depends(get_current_user)
):
    """Rentals of the current user as renter (default) or owner"""
    rentals, total = await rental_service.list_rentals(current_user, role, rental_status, skip, limit)
    return {"rentals": serialize_docs(rentals), "total": total}


@router.get("/{rental_id}", response_model=RentalResponse)
async def get_rental(
    rental_id: str,
    current_user: dict = Depends(get_current_user)
):
    rental = await rental_service.get_rental(rental_id, current_user)
    return serialize_doc(rental)


@router.patch("/{rental_id}/status", response_model=RentalResponse)
async def update_rental_status(
    rental_id: str,
    update: RentalStatusUpdate,
    current_user: dict = Depends(get_current_user)
):
    """
    Move a rental along its lifecycle.
    409 with code ILLEGAL_TRANSITION or CONCURRENT_MODIFICATION when the
    change is not possible from the current state.
    """
    updated = await rental_service.update_status(
        rental_id, current_user, update.status, reason=update.reason, odometer=update.odometer,
    )
    return serialize_doc(updated)


@router.get("/{rental_id}/transactions", response_model=List[RentalTransactionResponse])
async def get_rental_transactions(
    rental_id: str,
    current_user: dict = Depends(get_current_user)
):
    """Ledger entries of the rental, oldest first"""
    await rental_service.get_rental(rental_id, current_user)
    entries = await ledger.list_for_rental(rental_id)
    return serialize_docs(entries)


@router.post("/{rental_id}/evidences", response_model=List[EvidenceResponse], status_code=status.HTTP_201_CREATED)
async def attach_evidence(
    rental_id: str,
    upload: EvidenceUpload,
    current_user: dict = Depends(get_current_user)
):
    """Append pickup/return/damage evidence; existing evidence is never modified"""
    items = [item.model_dump(mode="json") for item in upload.evidences]
    created = await dispute_service.attach_evidence(
        rental_id, current_user["sub"], items, actor_is_admin=is_admin(current_user),
    )
    return serialize_docs(created)


@router.get("/{rental_id}/evidences", response_model=List[EvidenceResponse])
async def list_evidence(
    rental_id: str,
    current_user: dict = Depends(get_current_user)
):
    await rental_service.get_rental(rental_id, current_user)
    evidences = await dispute_service.list_evidence(rental_id)
    return serialize_docs(evidences)


@router.post("/{rental_id}/disputes", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
async def open_dispute(
    rental_id: str,
    dispute: DisputeCreate,
    current_user: dict = Depends(get_current_user)
):
    """Open a dispute; the rental moves to DISPUTED"""
    created = await dispute_service.open_dispute(
        rental_id, current_user["sub"], dispute.reason, dispute.description,
    )
    return serialize_doc(created)


@router.get("/{rental_id}/disputes", response_model=List[DisputeResponse])
async def list_disputes(
    rental_id: str,
    current_user: dict = Depends(get_current_user)
):
    await rental_service.get_rental(rental_id, current_user)
    disputes = await dispute_service.list_disputes(rental_id)
    return serialize_docs(disputes)
