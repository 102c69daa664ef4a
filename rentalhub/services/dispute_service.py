"""
Dispute Sub-machine

    OPEN → UNDER_REVIEW → RESOLVED_REFUND | RESOLVED_NO_REFUND | CANCELLED
      └───────────────────────────────────────────────────────┘

A dispute exists only alongside a DISPUTED rental: opening one moves the
rental into DISPUTED and resolving it moves the rental out again, both in
the same rental transition so neither side can change alone.
"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from rentalhub.config.database import db_config, Collections
from rentalhub.config.settings import settings
from rentalhub.database.db_operations import db_ops, to_object_id
from rentalhub.models.dispute import DisputeStatus, LIVE_DISPUTE_STATUSES, TERMINAL_DISPUTE_STATUSES
from rentalhub.models.rental import RentalStatus
from rentalhub.services.gateways import dispatch_notification
from rentalhub.services.rental_state_machine import state_machine, TransitionHook
from rentalhub.utils.errors import ConflictError, NotFound, PermissionDenied, ValidationFailed
from rentalhub.utils.helpers import utcnow

logger = logging.getLogger(__name__)

LIVE_VALUES = [s.value for s in LIVE_DISPUTE_STATUSES]

EVIDENCE_RENTAL_STATUSES = (RentalStatus.CONFIRMED.value, RentalStatus.ON_TRIP.value, RentalStatus.DISPUTED.value)


async def _get_rental(rental_id: str) -> Dict:
    rental = await db_ops.get_by_id(Collections.RENTALS, rental_id)
    if not rental:
        raise NotFound("Rental not found", "RENTAL_NOT_FOUND")
    return rental


def _is_party(rental: Dict, user_id: str) -> bool:
    return user_id in (rental["renter_id"], rental["owner_id"])


async def get_dispute(dispute_id: str) -> Dict:
    dispute = await db_ops.get_by_id(Collections.RENTAL_DISPUTES, dispute_id)
    if not dispute:
        raise NotFound("Dispute not found", "DISPUTE_NOT_FOUND")
    return dispute


async def get_live_dispute(rental_id: str) -> Optional[Dict]:
    return await db_ops.get_one(
        Collections.RENTAL_DISPUTES,
        {"rental_id": rental_id, "status": {"$in": LIVE_VALUES}},
    )


async def list_disputes(rental_id: str) -> List[Dict]:
    return await db_ops.get_all(
        Collections.RENTAL_DISPUTES,
        {"rental_id": rental_id},
        sort=[("created_at", DESCENDING)],
    )


class _OpenDisputeHook(TransitionHook):
    """Inserts the dispute together with the move to DISPUTED"""

    def __init__(self, actor_id: str, reason: str, description: Optional[str]):
        self.actor_id = actor_id
        self.reason = reason
        self.description = description
        self.dispute: Optional[Dict] = None

    async def apply(self, rental: Dict) -> None:
        self.dispute = await db_ops.create(Collections.RENTAL_DISPUTES, {
            "rental_id": str(rental["_id"]),
            "opened_by": self.actor_id,
            "opened_from": rental["status"],
            "reason": self.reason,
            "description": self.description,
            "status": DisputeStatus.OPEN.value,
            "admin_notes": None,
            "resolved_by": None,
            "resolved_at": None,
        })

    async def rollback(self, rental: Dict) -> None:
        if self.dispute:
            await db_ops.delete(Collections.RENTAL_DISPUTES, self.dispute["_id"])
            self.dispute = None


class _ResolveDisputeHook(TransitionHook):
    """Claims the live dispute and records the ruling"""

    def __init__(self, dispute: Dict, admin_id: str, outcome: DisputeStatus, admin_notes: str):
        self.dispute = dispute
        self.admin_id = admin_id
        self.outcome = outcome
        self.admin_notes = admin_notes
        self.resolved: Optional[Dict] = None

    async def apply(self, rental: Dict) -> None:
        self.resolved = await db_ops.compare_and_set(
            Collections.RENTAL_DISPUTES,
            {"_id": self.dispute["_id"], "status": self.dispute["status"]},
            {"$set": {
                "status": self.outcome.value,
                "admin_notes": self.admin_notes,
                "resolved_by": self.admin_id,
                "resolved_at": utcnow(),
            }},
        )
        if not self.resolved:
            raise ConflictError("Dispute was changed by another request", "CONCURRENT_MODIFICATION")

    async def rollback(self, rental: Dict) -> None:
        await db_ops.compare_and_set(
            Collections.RENTAL_DISPUTES,
            {"_id": self.dispute["_id"], "status": self.outcome.value},
            {"$set": {
                "status": self.dispute["status"],
                "admin_notes": self.dispute.get("admin_notes"),
                "resolved_by": None,
                "resolved_at": None,
            }},
        )
        self.resolved = None


async def open_dispute(rental_id: str, actor_id: str, reason: str, description: Optional[str] = None) -> Dict:
    """Open a dispute on an ON_TRIP rental, or a COMPLETED one still inside the dispute window"""
    rental = await _get_rental(rental_id)
    if not _is_party(rental, actor_id):
        raise PermissionDenied("Only the renter or the owner can open a dispute", "NOT_RENTAL_PARTY")

    status = rental["status"]
    if status not in (RentalStatus.ON_TRIP.value, RentalStatus.COMPLETED.value):
        raise ConflictError(f"Cannot open a dispute on a {status} rental", "ILLEGAL_TRANSITION")
    if status == RentalStatus.COMPLETED.value:
        completed_at = rental.get("completed_at")
        window = timedelta(hours=settings.DISPUTE_WINDOW_HOURS)
        if completed_at is None or utcnow() > completed_at + window:
            raise ConflictError("The dispute window for this rental has closed", "DISPUTE_WINDOW_CLOSED")

    if await get_live_dispute(rental_id):
        raise ConflictError("A dispute is already open for this rental", "DISPUTE_ALREADY_OPEN")

    hook = _OpenDisputeHook(actor_id, reason, description)
    await state_machine.transition(rental_id, RentalStatus.DISPUTED, actor_id, reason=reason, hook=hook)
    logger.info("Dispute %s opened on rental %s by %s", hook.dispute["_id"], rental_id, actor_id)
    return hook.dispute


async def start_review(dispute_id: str, admin_id: str) -> Dict:
    dispute = await get_dispute(dispute_id)
    updated = await db_ops.compare_and_set(
        Collections.RENTAL_DISPUTES,
        {"_id": dispute["_id"], "status": DisputeStatus.OPEN.value},
        {"$set": {"status": DisputeStatus.UNDER_REVIEW.value, "reviewed_by": admin_id}},
    )
    if not updated:
        raise ConflictError(f"Dispute is {dispute['status']}, not OPEN", "DISPUTE_NOT_OPEN")
    logger.info("Dispute %s under review by admin %s", dispute_id, admin_id)
    return updated


async def resolve_dispute(dispute_id: str, admin_id: str, outcome: DisputeStatus, admin_notes: str) -> Dict:
    """
    Close a dispute with a terminal outcome. RESOLVED_REFUND and
    RESOLVED_NO_REFUND need the dispute UNDER_REVIEW; CANCELLED withdraws it
    from OPEN or UNDER_REVIEW.

    RESOLVED_REFUND cancels the rental through the refund path (renter gets
    back what was paid, owner payout is clawed back). RESOLVED_NO_REFUND and
    CANCELLED return the rental to COMPLETED; the completion payout is only
    posted if it never was.
    """
    outcome = DisputeStatus(outcome)
    if outcome not in TERMINAL_DISPUTE_STATUSES:
        raise ValidationFailed("Outcome must be a terminal dispute status", "INVALID_OUTCOME")
    if not admin_notes or not admin_notes.strip():
        raise ValidationFailed("Admin notes are required to resolve a dispute", "NOTES_REQUIRED")

    dispute = await get_dispute(dispute_id)
    if dispute["status"] not in LIVE_VALUES:
        raise ConflictError(f"Dispute is already {dispute['status']}", "DISPUTE_ALREADY_RESOLVED")
    # a ruling needs a reviewer, a withdrawal does not
    if outcome != DisputeStatus.CANCELLED and dispute["status"] != DisputeStatus.UNDER_REVIEW.value:
        raise ConflictError("Dispute must be under review before it is ruled on", "DISPUTE_NOT_UNDER_REVIEW")

    target = RentalStatus.CANCELLED if outcome == DisputeStatus.RESOLVED_REFUND else RentalStatus.COMPLETED
    hook = _ResolveDisputeHook(dispute, admin_id, outcome, admin_notes.strip())
    await state_machine.transition(
        dispute["rental_id"], target, admin_id, reason=f"Dispute {outcome.value}", hook=hook,
    )
    logger.info("Dispute %s resolved %s by admin %s", dispute_id, outcome.value, admin_id)
    return hook.resolved


# ─── Evidence ─────────────────────────────────────────────────────────────────

async def attach_evidence(rental_id: str, actor_id: str, items: List[Dict], actor_is_admin: bool = False) -> List[Dict]:
    """
    Append evidence items in submission order. Evidence is never edited;
    the `order` values come from an atomic counter on the rental.
    """
    if not items:
        raise ValidationFailed("At least one evidence item is required", "NO_EVIDENCE")
    rental = await _get_rental(rental_id)
    if not actor_is_admin and not _is_party(rental, actor_id):
        raise PermissionDenied("Only the renter or the owner can attach evidence", "NOT_RENTAL_PARTY")
    if rental["status"] not in EVIDENCE_RENTAL_STATUSES:
        raise ConflictError(f"Cannot attach evidence to a {rental['status']} rental", "EVIDENCE_NOT_ALLOWED")

    dispute = await get_live_dispute(rental_id)
    if rental["status"] == RentalStatus.DISPUTED.value and not dispute:
        raise ConflictError("The dispute on this rental is already closed", "EVIDENCE_NOT_ALLOWED")

    rentals = db_config.get_collection(Collections.RENTALS)
    counter = await rentals.find_one_and_update(
        {"_id": rental["_id"], "status": {"$in": list(EVIDENCE_RENTAL_STATUSES)}},
        {"$inc": {"evidence_seq": len(items)}},
        return_document=ReturnDocument.AFTER,
    )
    if not counter:
        raise ConflictError("Rental was modified by another request, reload and retry", "CONCURRENT_MODIFICATION")
    first_order = counter["evidence_seq"] - len(items) + 1

    now = utcnow()
    docs = []
    for offset, item in enumerate(items):
        docs.append({
            "rental_id": rental_id,
            "dispute_id": str(dispute["_id"]) if dispute else None,
            "uploaded_by": actor_id,
            "type": item["type"],
            "url": item["url"],
            "note": item.get("note"),
            "order": first_order + offset,
            "created_at": now,
            "updated_at": now,
        })
    evidences = db_config.get_collection(Collections.RENTAL_EVIDENCES)
    result = await evidences.insert_many(docs)
    for doc, inserted_id in zip(docs, result.inserted_ids):
        doc["_id"] = inserted_id

    logger.info("Attached %d evidence item(s) to rental %s", len(docs), rental_id)
    if dispute:
        other = rental["owner_id"] if actor_id == rental["renter_id"] else rental["renter_id"]
        await dispatch_notification(other, "dispute.evidence_added", {
            "rental_id": rental_id,
            "dispute_id": str(dispute["_id"]),
        })
    return docs


async def list_evidence(rental_id: str) -> List[Dict]:
    if to_object_id(rental_id) is None:
        raise NotFound("Rental not found", "RENTAL_NOT_FOUND")
    return await db_ops.get_all(
        Collections.RENTAL_EVIDENCES,
        {"rental_id": rental_id},
        limit=1000,
        sort=[("order", ASCENDING)],
    )
