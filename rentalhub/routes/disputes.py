"""
Dispute routes - admin review and resolution
"""
from fastapi import APIRouter, Depends
from rentalhub.models.dispute import DisputeResolve, DisputeResponse
from rentalhub.services import dispute_service, rental_service
from rentalhub.utils.helpers import serialize_doc
from rentalhub.utils.auth import get_current_user, require_admin

router = APIRouter(prefix="/disputes", tags=["Disputes"])


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: str,
    current_user: dict = Depends(get_current_user)
):
    dispute = await dispute_service.get_dispute(dispute_id)
    # Parties of the rental and admins only
    await rental_service.get_rental(dispute["rental_id"], current_user)
    return serialize_doc(dispute)


@router.post("/{dispute_id}/review", response_model=DisputeResponse)
async def start_review(
    dispute_id: str,
    current_user: dict = Depends(require_admin)
):
    """OPEN → UNDER_REVIEW"""
    dispute = await dispute_service.start_review(dispute_id, current_user["sub"])
    return serialize_doc(dispute)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: str,
    resolution: DisputeResolve,
    current_user: dict = Depends(require_admin)
):
    """
    Close the dispute. RESOLVED_REFUND cancels the rental with a full refund,
    RESOLVED_NO_REFUND and CANCELLED return it to COMPLETED.
    """
    dispute = await dispute_service.resolve_dispute(
        dispute_id, current_user["sub"], resolution.outcome, resolution.admin_notes,
    )
    return serialize_doc(dispute)
