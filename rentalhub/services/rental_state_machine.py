"""
Rental State Machine – the only writer of `rentals.status`.

    PENDING_PAYMENT → AWAIT_APPROVAL → CONFIRMED → ON_TRIP → COMPLETED
          │                 │              │          │          │
          └──── CANCELLED ◄─┴──────────────┘          └─ DISPUTED ◄┘
                    ▲                                      │
                    └──────────────────────────────────────┘ (refund)
                                   COMPLETED ◄──────────────┘ (no refund)

A transition runs under a per-rental lease taken by compare-and-swap on the
rental document, so exactly one transition per rental is in flight. Its
mandatory ledger postings and gateway calls run under that lease, and the
status is only written once all of them succeeded. The lease is renewed
right before every gateway call, so no call goes out on a lease that was
already lost. If anything fails, captured payments are refunded and voided,
the other pending ledger entries are marked FAILED, any hook is rolled back
and the lease is released with the status untouched.

The commit writes the ids of the transition's ledger entries into the
status history entry it pushes; settling them afterwards uses the same
timestamp.
"""
import logging
import uuid
from datetime import timedelta
from typing import Dict, List, Optional, FrozenSet

from rentalhub.config.database import Collections
from rentalhub.config.settings import settings
from rentalhub.database.db_operations import db_ops
from rentalhub.models.rental import RentalStatus
from rentalhub.models.transaction import TransactionType, LedgerParty
from rentalhub.services import ledger
from rentalhub.services.gateways import services, dispatch_notification
from rentalhub.utils.errors import (
    ConflictError,
    DependencyFailure,
    InvariantViolation,
    NotFound,
    EngineError,
)
from rentalhub.utils.helpers import utcnow
from rentalhub.utils.money import apply_ratio

logger = logging.getLogger(__name__)

S = RentalStatus

TRANSITIONS: Dict[RentalStatus, FrozenSet[RentalStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.AWAIT_APPROVAL, S.CANCELLED}),
    S.AWAIT_APPROVAL: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.ON_TRIP, S.CANCELLED}),
    S.ON_TRIP: frozenset({S.COMPLETED, S.DISPUTED}),
    S.COMPLETED: frozenset({S.DISPUTED}),
    S.DISPUTED: frozenset({S.COMPLETED, S.CANCELLED}),
    S.CANCELLED: frozenset(),
}

# Cancelling from these states returns everything the renter paid
FULL_REFUND_SOURCES = frozenset({S.PENDING_PAYMENT, S.AWAIT_APPROVAL, S.DISPUTED})


def is_transition_allowed(current: RentalStatus, target: RentalStatus) -> bool:
    return target in TRANSITIONS[current]


def check_financial_invariants(rental: Dict) -> None:
    """total = price×days + delivery + insurance − discount; earning = total − fee"""
    expected_total = (
        rental["price_per_day"] * rental["days"]
        + rental["delivery_fee"]
        + rental["insurance_fee"]
        - rental["discount_amount"]
    )
    problems = []
    if rental["total_price"] != expected_total:
        problems.append(f"total_price {rental['total_price']} != {expected_total}")
    if rental["owner_earning"] != rental["total_price"] - rental["platform_fee"]:
        problems.append("owner_earning != total_price - platform_fee")
    if rental["total_price"] < 0 or rental["owner_earning"] < 0:
        problems.append("negative amount")
    if problems:
        logger.critical("Rental %s violates pricing invariants: %s", rental.get("_id"), "; ".join(problems))
        raise InvariantViolation(f"Rental {rental.get('_id')} pricing invariants broken")


class TransitionHook:
    """Extra work that commits or rolls back together with a transition"""

    async def apply(self, rental: Dict) -> None:
        pass

    async def rollback(self, rental: Dict) -> None:
        pass


class RentalStateMachine:

    async def transition(
        self,
        rental_id: str,
        target: RentalStatus,
        actor_id: str,
        reason: Optional[str] = None,
        odometer: Optional[int] = None,
        hook: Optional[TransitionHook] = None,
    ) -> Dict:
        """
        Move a rental to `target`. Raises ConflictError for illegal or
        concurrent transitions, DependencyFailure when a payment call fails.
        """
        rental = await self._load(rental_id)
        current = RentalStatus(rental["status"])
        if not is_transition_allowed(current, target):
            raise ConflictError(
                f"Cannot move rental from {current.value} to {target.value}",
                "ILLEGAL_TRANSITION",
            )
        check_financial_invariants(rental)

        token = await self._acquire(rental)
        entries: List[Dict] = []
        hook_applied = False
        try:
            if hook:
                await hook.apply(rental)
                hook_applied = True
            extra = await self._apply_side_effects(rental, token, current, target, entries)
            updated = await self._commit(rental, token, current, target, actor_id, reason, odometer, extra, entries)
        except Exception as exc:
            why = f"transition {current.value}->{target.value} aborted: {type(exc).__name__}"
            await self._compensate(rental, entries, why)
            await ledger.fail(entries, why)
            if hook_applied:
                await hook.rollback(rental)
            await self._release(rental, token)
            if isinstance(exc, EngineError):
                raise
            logger.exception("Transition %s -> %s of rental %s failed", current.value, target.value, rental_id)
            raise DependencyFailure(f"Transition of rental {rental_id} failed: {exc}") from exc

        await ledger.settle(entries, updated["updated_at"])
        logger.info("Rental %s: %s -> %s by %s", rental_id, current.value, target.value, actor_id)
        await self._notify(updated, target)
        return updated

    # ─── lease ────────────────────────────────────────────────────────────────

    async def _load(self, rental_id: str) -> Dict:
        rental = await db_ops.get_by_id(Collections.RENTALS, rental_id)
        if not rental:
            raise NotFound("Rental not found", "RENTAL_NOT_FOUND")
        return rental

    async def _acquire(self, rental: Dict) -> str:
        token = uuid.uuid4().hex
        now = utcnow()
        claimed = await db_ops.compare_and_set(
            Collections.RENTALS,
            {
                "_id": rental["_id"],
                "status": rental["status"],
                "version": rental["version"],
                "$or": [{"lock_token": None}, {"lock_expires_at": {"$lt": now}}],
            },
            {"$set": {
                "lock_token": token,
                "lock_expires_at": now + timedelta(seconds=settings.RENTAL_LOCK_TTL_SECONDS),
            }},
        )
        if not claimed:
            raise ConflictError(
                "Rental was modified by another request, reload and retry",
                "CONCURRENT_MODIFICATION",
            )
        return token

    async def _release(self, rental: Dict, token: str) -> None:
        await db_ops.compare_and_set(
            Collections.RENTALS,
            {"_id": rental["_id"], "lock_token": token},
            {"$set": {"lock_token": None, "lock_expires_at": None}},
        )

    async def _renew(self, rental: Dict, token: str) -> None:
        renewed = await db_ops.compare_and_set(
            Collections.RENTALS,
            {"_id": rental["_id"], "lock_token": token},
            {"$set": {"lock_expires_at": utcnow() + timedelta(seconds=settings.RENTAL_LOCK_TTL_SECONDS)}},
        )
        if not renewed:
            logger.error("Lease on rental %s lost before a gateway call", rental["_id"])
            raise ConflictError(
                "Rental was modified by another request, reload and retry",
                "CONCURRENT_MODIFICATION",
            )

    async def _commit(self, rental, token, current, target, actor_id, reason, odometer, extra, entries) -> Dict:
        now = utcnow()
        fields = {
            "status": target.value,
            "updated_at": now,
            "lock_token": None,
            "lock_expires_at": None,
            **extra,
        }
        if target == S.ON_TRIP and odometer is not None:
            fields["start_odometer"] = odometer
        if target == S.COMPLETED:
            if odometer is not None and current == S.ON_TRIP:
                fields["end_odometer"] = odometer
            if not rental.get("completed_at"):
                fields["completed_at"] = now
        if target == S.CANCELLED:
            fields["cancelled_at"] = now
            fields["cancel_reason"] = reason
        change = {
            "from_status": current.value,
            "to_status": target.value,
            "actor_id": actor_id,
            "reason": reason,
            "at": now,
            "ledger_entry_ids": [str(e["_id"]) for e in entries],
        }
        updated = await db_ops.compare_and_set(
            Collections.RENTALS,
            {"_id": rental["_id"], "lock_token": token},
            {"$set": fields, "$inc": {"version": 1}, "$push": {"status_history": change}},
        )
        if not updated:
            logger.error("Lease on rental %s expired before commit", rental["_id"])
            raise ConflictError("Rental lease expired before commit", "CONCURRENT_MODIFICATION")
        return updated

    # ─── side effects ─────────────────────────────────────────────────────────

    async def _apply_side_effects(self, rental, token, current, target, entries: List[Dict]) -> Dict:
        """Run the postings a transition requires; returns extra fields for the commit"""
        if target == S.AWAIT_APPROVAL:
            return await self._capture_payment(rental, token, entries)
        if target == S.COMPLETED:
            await self._post_completion_payout(rental, entries)
        elif target == S.CANCELLED:
            await self._refund_on_cancel(rental, token, current, entries)
        return {}

    async def _capture_payment(self, rental: Dict, token: str, entries: List[Dict]) -> Dict:
        rental_id = str(rental["_id"])
        amount = rental["total_price"]
        if amount == 0:
            return {}
        entry = await ledger.append_pending(
            rental, LedgerParty.RENTER, TransactionType.CHARGE, -amount,
            ledger.charge_key(rental_id), "Rental payment",
        )
        entries.append(entry)
        result = await self._call_gateway(rental, token, "capture", rental_id, amount, rental["currency"])
        await ledger.attach_reference(entry, result.reference)
        return {"payment_reference": result.reference}

    async def _post_completion_payout(self, rental: Dict, entries: List[Dict]) -> None:
        rental_id = str(rental["_id"])
        key = ledger.completion_payout_key(rental_id)
        if await ledger.has_live_entry(key):
            logger.info("Completion payout for rental %s already posted", rental_id)
            return
        entries.append(await ledger.append_pending(
            rental, LedgerParty.OWNER, TransactionType.PAYOUT, rental["owner_earning"],
            key, "Owner earning on completion",
        ))

    async def _refund_on_cancel(self, rental: Dict, token: str, current: RentalStatus, entries: List[Dict]) -> None:
        rental_id = str(rental["_id"])
        paid = -await ledger.net_for_party(rental_id, LedgerParty.RENTER)
        if paid < 0:
            logger.critical("Rental %s renter balance is positive before refund: %s", rental_id, -paid)
            raise InvariantViolation(f"Rental {rental_id} has a negative paid balance")

        if current in FULL_REFUND_SOURCES:
            refund = paid
        else:
            refund = apply_ratio(paid, settings.CONFIRMED_CANCEL_REFUND_RATIO)

        if refund > 0:
            entry = await ledger.append_pending(
                rental, LedgerParty.RENTER, TransactionType.REFUND, refund,
                ledger.renter_refund_key(rental_id), f"Refund on cancellation from {current.value}",
            )
            entries.append(entry)
            charge = await ledger.find_settled(rental_id, ledger.charge_key(rental_id))
            result = await self._call_gateway(
                rental, token, "refund",
                rental_id, refund, rental["currency"], charge and charge.get("external_reference"),
            )
            await ledger.attach_reference(entry, result.reference)

        if current == S.DISPUTED:
            owner_net = await ledger.net_for_party(rental_id, LedgerParty.OWNER)
            if owner_net > 0:
                entries.append(await ledger.append_pending(
                    rental, LedgerParty.OWNER, TransactionType.REFUND, -owner_net,
                    ledger.owner_clawback_key(rental_id), "Owner earning reversed by dispute refund",
                ))

    async def _call_gateway(self, rental: Dict, token: str, operation: str, *args):
        await self._renew(rental, token)
        try:
            result = await getattr(services.payments, operation)(*args)
        except Exception as e:
            logger.exception("Payment gateway %s raised", operation)
            raise DependencyFailure(f"Payment {operation} failed") from e
        if not result.success:
            logger.warning("Payment gateway %s declined: %s", operation, result.error)
            raise DependencyFailure(f"Payment {operation} declined")
        return result

    async def _compensate(self, rental: Dict, entries: List[Dict], reason: str) -> None:
        """Hand back money that already moved at the gateway for a transition that rolled back"""
        rental_id = str(rental["_id"])
        for entry in entries:
            reference = entry.get("external_reference")
            if not reference:
                continue
            if entry["type"] != TransactionType.CHARGE.value:
                logger.critical("Rental %s: %s %s went through at the gateway but its transition rolled back",
                                rental_id, entry["type"], reference)
                continue
            try:
                result = await services.payments.refund(rental_id, -entry["amount"], entry["currency"], reference)
            except Exception:
                logger.exception("Refund of capture %s for rental %s raised", reference, rental_id)
                result = None
            if result is not None and result.success:
                await ledger.void_capture(entry, result.reference, reason)
            else:
                logger.critical("Capture %s of rental %s could not be refunded, manual refund required",
                                reference, rental_id)

    async def _notify(self, rental: Dict, target: RentalStatus) -> None:
        payload = {"rental_id": str(rental["_id"]), "status": target.value}
        template = f"rental.{target.value.lower()}"
        await dispatch_notification(rental["renter_id"], template, payload)
        await dispatch_notification(rental["owner_id"], template, payload)


state_machine = RentalStateMachine()

