"""
Rental service - booking creation, lookups and actor-checked status changes
on top of the state machine
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pymongo import DESCENDING

from rentalhub.config.database import Collections
from rentalhub.config.settings import settings
from rentalhub.database.db_operations import db_ops
from rentalhub.models.rental import RentalStatus
from rentalhub.services.fee_policy import get_fee_snapshot, get_commission_snapshot
from rentalhub.services.gateways import services, dispatch_notification
from rentalhub.services.pricing import PricingRequest, PriceBreakdown, calculate_price
from rentalhub.services.rental_state_machine import state_machine, is_transition_allowed
from rentalhub.utils.auth import is_admin
from rentalhub.utils.errors import ConflictError, NotFound, PermissionDenied, ValidationFailed
from rentalhub.utils.helpers import utcnow, to_naive_utc
from rentalhub.utils.money import parse_ratio

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

RENTER = "renter"
OWNER = "owner"

S = RentalStatus

# Which party may request a transition through the status endpoint
TRANSITION_ACTORS = {
    (S.PENDING_PAYMENT, S.AWAIT_APPROVAL): {RENTER},
    (S.PENDING_PAYMENT, S.CANCELLED): {RENTER, OWNER},
    (S.AWAIT_APPROVAL, S.CONFIRMED): {OWNER},
    (S.AWAIT_APPROVAL, S.CANCELLED): {RENTER, OWNER},
    (S.CONFIRMED, S.ON_TRIP): {OWNER},
    (S.CONFIRMED, S.CANCELLED): {RENTER, OWNER},
    (S.ON_TRIP, S.COMPLETED): {OWNER},
}


def party_of(rental: Dict, user_id: str) -> Optional[str]:
    if user_id == rental["renter_id"]:
        return RENTER
    if user_id == rental["owner_id"]:
        return OWNER
    return None


async def _load_vehicle(vehicle_id: str) -> Dict:
    vehicle = await db_ops.get_by_id(Collections.VEHICLES, vehicle_id)
    if not vehicle:
        raise NotFound("Vehicle not found", "VEHICLE_NOT_FOUND")
    if vehicle.get("status") != "VERIFIED":
        raise ValidationFailed("Vehicle has not been approved for booking", "VEHICLE_NOT_VERIFIED")
    return vehicle


async def _resolve_discount(code: Optional[str], now: datetime) -> Dict:
    """Active discount code → {discount_percent, discount_amount}"""
    if not code:
        return {"discount_percent": "0", "discount_amount": 0}
    row = await db_ops.get_one(Collections.DISCOUNT_CODES, {"code": code, "is_active": True})
    if not row:
        raise ValidationFailed(f"Discount code {code} is not valid", "INVALID_DISCOUNT_CODE")
    valid_from = row.get("valid_from")
    valid_to = row.get("valid_to")
    if (valid_from and now < valid_from) or (valid_to and now > valid_to):
        raise ValidationFailed(f"Discount code {code} has expired", "INVALID_DISCOUNT_CODE")
    return {
        "discount_percent": row.get("discount_percent", "0"),
        "discount_amount": int(row.get("discount_amount", 0)),
    }


async def _price(vehicle: Dict, start_date: datetime, end_date: datetime, delivery: Optional[Dict],
                 discount_code: Optional[str], discount_amount: int) -> PriceBreakdown:
    # One snapshot of each policy per calculation
    fees = await get_fee_snapshot()
    commission = await get_commission_snapshot()
    discount = await _resolve_discount(discount_code, utcnow())
    try:
        discount_percent = parse_ratio(discount["discount_percent"])
    except ValueError:
        raise ValidationFailed(f"Discount code {discount_code} is misconfigured", "INVALID_DISCOUNT_CODE")

    request = PricingRequest(
        vehicle_type=vehicle.get("type"),
        price_per_day=int(vehicle["price_per_day"]),
        deposit_amount=int(vehicle.get("deposit_amount", 0)),
        start_date=to_naive_utc(start_date),
        end_date=to_naive_utc(end_date),
        currency=vehicle.get("currency", settings.CURRENCY),
        delivery_distance_km=delivery["distance_km"] if delivery else None,
        discount_amount=discount_amount + discount["discount_amount"],
        discount_percent=discount_percent,
    )
    return calculate_price(request, fees, commission.commission_rate)


async def quote(vehicle_id: str, start_date: datetime, end_date: datetime, delivery: Optional[Dict] = None,
                discount_code: Optional[str] = None, discount_amount: int = 0) -> PriceBreakdown:
    """Price preview; nothing is stored"""
    vehicle = await _load_vehicle(vehicle_id)
    return await _price(vehicle, start_date, end_date, delivery, discount_code, discount_amount)


async def create_rental(
    renter_id: str,
    vehicle_id: str,
    start_date: datetime,
    end_date: datetime,
    delivery: Optional[Dict] = None,
    discount_code: Optional[str] = None,
    discount_amount: int = 0,
) -> Dict:
    vehicle = await _load_vehicle(vehicle_id)
    owner_id = str(vehicle["owner_id"])
    if owner_id == renter_id:
        raise ValidationFailed("You cannot rent your own vehicle", "SELF_RENTAL")
    if not await services.kyc.is_verified(owner_id):
        raise ValidationFailed("The owner of this vehicle is not verified yet", "OWNER_NOT_VERIFIED")

    breakdown = await _price(vehicle, start_date, end_date, delivery, discount_code, discount_amount)
    now = utcnow()
    rental = {
        "renter_id": renter_id,
        "owner_id": owner_id,
        "vehicle_id": str(vehicle["_id"]),
        "vehicle_type": vehicle.get("type"),
        "start_date": to_naive_utc(start_date),
        "end_date": to_naive_utc(end_date),
        **breakdown.as_dict(),
        "delivery_distance_km": delivery["distance_km"] if delivery else 0,
        "delivery_address": delivery.get("address") if delivery else None,
        "discount_code": discount_code,
        "status": RentalStatus.PENDING_PAYMENT.value,
        "version": 1,
        "status_history": [{
            "from_status": None,
            "to_status": RentalStatus.PENDING_PAYMENT.value,
            "actor_id": renter_id,
            "reason": None,
            "at": now,
        }],
        "lock_token": None,
        "lock_expires_at": None,
        "evidence_seq": 0,
        "payment_reference": None,
        "start_odometer": None,
        "end_odometer": None,
        "cancel_reason": None,
        "completed_at": None,
        "cancelled_at": None,
        "created_at": now,
        "updated_at": now,
    }
    created = await db_ops.create(Collections.RENTALS, rental)
    logger.info("Rental %s created by %s for vehicle %s: total=%s %s",
                created["_id"], renter_id, vehicle_id, breakdown.total_price, breakdown.currency)
    await dispatch_notification(owner_id, "rental.created", {"rental_id": str(created["_id"])})
    return created


async def get_rental(rental_id: str, user: Dict) -> Dict:
    """Visible to the renter, the owner and admins"""
    rental = await db_ops.get_by_id(Collections.RENTALS, rental_id)
    if not rental:
        raise NotFound("Rental not found", "RENTAL_NOT_FOUND")
    if not is_admin(user) and party_of(rental, user["sub"]) is None:
        raise PermissionDenied("You are not a party of this rental", "NOT_RENTAL_PARTY")
    return rental


async def list_rentals(
    user: Dict,
    role: Optional[str] = None,
    status: Optional[RentalStatus] = None,
    skip: int = 0,
    limit: int = 20,
) -> Tuple[List[Dict], int]:
    """`role` picks the renter or owner side; admins without a role see everything"""
    query: Dict = {}
    if role == OWNER:
        query["owner_id"] = user["sub"]
    elif role == RENTER or not is_admin(user):
        query["renter_id"] = user["sub"]
    if status:
        query["status"] = RentalStatus(status).value
    rentals = await db_ops.get_all(Collections.RENTALS, query, skip=skip, limit=limit,
                                   sort=[("created_at", DESCENDING)])
    return rentals, await db_ops.count(Collections.RENTALS, query)


async def update_status(
    rental_id: str,
    user: Dict,
    target: RentalStatus,
    reason: Optional[str] = None,
    odometer: Optional[int] = None,
) -> Dict:
    """Status change requested through the API; disputes go through their own flow"""
    target = RentalStatus(target)
    rental = await get_rental(rental_id, user)
    current = RentalStatus(rental["status"])

    if target == S.DISPUTED or current == S.DISPUTED:
        raise ValidationFailed("Disputes are opened and resolved through the dispute endpoints", "USE_DISPUTE_FLOW")
    if not is_transition_allowed(current, target):
        raise ConflictError(f"Cannot move rental from {current.value} to {target.value}", "ILLEGAL_TRANSITION")
    if not is_admin(user):
        allowed = TRANSITION_ACTORS.get((current, target), set())
        if party_of(rental, user["sub"]) not in allowed:
            raise PermissionDenied(
                f"You cannot move this rental from {current.value} to {target.value}",
                "ACTION_NOT_ALLOWED",
            )

    return await state_machine.transition(rental_id, target, user["sub"], reason=reason, odometer=odometer)


async def expire_pending_payments(now: Optional[datetime] = None) -> int:
    """Cancel rentals still unpaid after the payment timeout; returns how many were cancelled"""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.PENDING_PAYMENT_TIMEOUT_MINUTES)
    stale = await db_ops.get_all(
        Collections.RENTALS,
        {"status": RentalStatus.PENDING_PAYMENT.value, "created_at": {"$lt": cutoff}},
        limit=500,
    )
    expired = 0
    for rental in stale:
        try:
            await state_machine.transition(
                str(rental["_id"]), RentalStatus.CANCELLED, SYSTEM_ACTOR, reason="Payment timeout",
            )
            expired += 1
        except ConflictError as e:
            # Paid or cancelled by someone else in the meantime
            logger.info("Skipping expiry of rental %s: %s", rental["_id"], e.code)
    if expired:
        logger.info("⏰ Expired %d unpaid rental(s)", expired)
    return expired
