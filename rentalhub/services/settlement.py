"""
Commission Settlement Engine – weekly owner commission rows and the
invoice-proof payment workflow that pays them.

Weeks run Monday 00:00 to the next Monday 00:00 in the settlement timezone
and are stored as naive UTC bounds. A row may be recomputed only until the
owner submits the first payment for it.

    OwnerCommission:    PENDING → UNDER_REVIEW → PAID
                           ▲            │
                           └────────────┘ payment rejected
    CommissionPayment:  PENDING → APPROVED | REJECTED
"""
import logging
from datetime import datetime, date, time, timedelta
from typing import Dict, List, Optional, Tuple, Union

import pytz
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from rentalhub.config.database import Collections
from rentalhub.config.settings import settings
from rentalhub.database.db_operations import db_ops, to_object_id
from rentalhub.models.commission import OwnerCommissionStatus, CommissionPaymentStatus
from rentalhub.services import ledger
from rentalhub.services.fee_policy import get_commission_snapshot
from rentalhub.services.gateways import dispatch_notification
from rentalhub.utils.errors import (
    ConflictError,
    InvariantViolation,
    NotFound,
    PermissionDenied,
    ValidationFailed,
)
from rentalhub.utils.helpers import LOCAL_TZ, utcnow, to_naive_utc
from rentalhub.utils.money import apply_ratio, ratio_str

logger = logging.getLogger(__name__)

WeekStart = Union[date, datetime]


# ─── Week boundaries ──────────────────────────────────────────────────────────

def _local_midnight_utc(day: date) -> datetime:
    local = LOCAL_TZ.localize(datetime.combine(day, time.min))
    return local.astimezone(pytz.utc).replace(tzinfo=None)


def _monday_of(moment: WeekStart) -> date:
    if isinstance(moment, datetime):
        local_day = pytz.utc.localize(to_naive_utc(moment)).astimezone(LOCAL_TZ).date()
    else:
        local_day = moment
    return local_day - timedelta(days=local_day.weekday())


def week_range(moment: WeekStart) -> Tuple[datetime, datetime]:
    """[Monday 00:00, next Monday 00:00) of the local week containing `moment`, as naive UTC"""
    monday = _monday_of(moment)
    return _local_midnight_utc(monday), _local_midnight_utc(monday + timedelta(days=7))


def last_week_range(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    monday = _monday_of(now or utcnow())
    return week_range(monday - timedelta(days=7))


def payment_deadline(now: Optional[datetime] = None) -> datetime:
    """End of the last payment day (Wednesday by default) of the current week"""
    monday = _monday_of(now or utcnow())
    last_day = monday + timedelta(days=settings.PAYMENT_DEADLINE_WEEKDAY)
    return _local_midnight_utc(last_day + timedelta(days=1)) - timedelta(microseconds=1)


# ─── Computation ──────────────────────────────────────────────────────────────

def _to_millisecond(moment: datetime) -> datetime:
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000)


async def _week_figures(owner_id: str, start: datetime, end: datetime, batch_started_at: datetime) -> Dict:
    payouts = await ledger.owner_payouts_in_window(owner_id, start, end, batch_started_at)
    net_by_rental: Dict[str, int] = {}
    for entry in payouts:
        net_by_rental[entry["rental_id"]] = net_by_rental.get(entry["rental_id"], 0) + int(entry["amount"])
    for entry in await ledger.owner_corrections(list(net_by_rental), batch_started_at):
        net_by_rental[entry["rental_id"]] += int(entry["amount"])

    rental_ids = sorted(rid for rid, net in net_by_rental.items() if net > 0)
    total_earning = sum(net_by_rental[rid] for rid in rental_ids)

    platform_fee_total = 0
    if rental_ids:
        rentals = await db_ops.get_all(
            Collections.RENTALS,
            {"_id": {"$in": [to_object_id(rid) for rid in rental_ids]}},
            limit=len(rental_ids),
        )
        platform_fee_total = sum(int(r.get("platform_fee", 0)) for r in rentals)

    return {
        "rental_ids": rental_ids,
        "rental_count": len(rental_ids),
        "total_earning": total_earning,
        "snapshot_platform_fee_total": platform_fee_total,
    }


async def compute_weekly_commission(
    owner_id: str,
    week_start: WeekStart,
    batch_started_at: Optional[datetime] = None,
) -> Dict:
    """
    Compute (or recompute) an owner's commission row for one week.

    Only payouts settled inside the week and strictly before
    `batch_started_at` count, so a completion committing while the batch
    runs lands in next week's figures instead of being lost or counted
    twice. A payout whose transition has committed but whose ledger entry
    is still PENDING counts at its commit time.

    Timestamps are stored with millisecond precision, so the comparison is
    made in whole milliseconds: `batch_started_at` is truncated to the
    millisecond and a payout settled in that same millisecond belongs to
    the next batch. Pass a start one millisecond after the last commit that
    must be included.

    Raises ConflictError(SETTLEMENT_LOCKED) once a payment exists.
    """
    start, end = week_range(week_start)
    batch_started_at = _to_millisecond(batch_started_at or utcnow())
    figures = await _week_figures(owner_id, start, end, batch_started_at)

    commission = await get_commission_snapshot()
    values = {
        **figures,
        "currency": settings.CURRENCY,
        "week_end_date": end,
        "commission_rate": ratio_str(commission.commission_rate),
        "commission_settings_version": commission.version,
        "commission_amount": apply_ratio(figures["total_earning"], commission.commission_rate),
        "computed_at": utcnow(),
        "batch_started_at": batch_started_at,
    }

    existing = await db_ops.get_one(Collections.OWNER_COMMISSIONS, {"owner_id": owner_id, "week_start_date": start})
    if existing:
        row = await db_ops.compare_and_set(
            Collections.OWNER_COMMISSIONS,
            {
                "_id": existing["_id"],
                "payment_status": OwnerCommissionStatus.PENDING.value,
                "has_payments": {"$ne": True},
            },
            {"$set": values},
        )
        if not row:
            raise ConflictError("Commission for this week already has a payment", "SETTLEMENT_LOCKED")
    else:
        try:
            row = await db_ops.create(Collections.OWNER_COMMISSIONS, {
                "owner_id": owner_id,
                "week_start_date": start,
                **values,
                "payment_status": OwnerCommissionStatus.PENDING.value,
                "has_payments": False,
                "paid_at": None,
            })
        except DuplicateKeyError:
            raise ConflictError("Commission row was created concurrently, retry", "CONCURRENT_MODIFICATION")

    logger.info(
        "Commission for owner %s week %s: earning=%s rate=%s amount=%s (%d rentals)",
        owner_id, start.isoformat(), row["total_earning"], row["commission_rate"],
        row["commission_amount"], row["rental_count"],
    )
    return row


async def run_weekly_settlement(
    week_start: Optional[WeekStart] = None,
    batch_started_at: Optional[datetime] = None,
) -> Dict:
    """Settle every owner with a payout in the week (last week by default)"""
    batch_started_at = _to_millisecond(batch_started_at or utcnow())
    if week_start is None:
        start, end = last_week_range(batch_started_at)
    else:
        start, end = week_range(week_start)

    print(f"🧾 Weekly settlement {start.isoformat()} → {end.isoformat()} (batch {batch_started_at.isoformat()})")
    settled: List[str] = []
    skipped: List[str] = []
    for owner_id in await ledger.owners_with_payouts(start, end):
        try:
            await compute_weekly_commission(owner_id, start, batch_started_at)
            settled.append(owner_id)
        except ConflictError as e:
            logger.warning("Skipping owner %s: %s", owner_id, e.message)
            skipped.append(owner_id)

    print(f"✅ Settlement done: {len(settled)} settled, {len(skipped)} skipped")
    return {
        "week_start_date": start,
        "week_end_date": end,
        "batch_started_at": batch_started_at,
        "settled": settled,
        "skipped": skipped,
    }


# ─── Queries ──────────────────────────────────────────────────────────────────

async def _payments_for(commission_ids: List[str]) -> Dict[str, List[Dict]]:
    if not commission_ids:
        return {}
    payments = await db_ops.get_all(
        Collections.COMMISSION_PAYMENTS,
        {"commission_id": {"$in": commission_ids}},
        limit=1000,
        sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
    )
    grouped: Dict[str, List[Dict]] = {}
    for p in payments:
        grouped.setdefault(p["commission_id"], []).append(p)
    return grouped


async def get_owner_commissions(owner_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Dict], int]:
    """An owner's weekly rows, newest first, each with its payment history"""
    query = {"owner_id": owner_id}
    rows = await db_ops.get_all(
        Collections.OWNER_COMMISSIONS, query, skip=offset, limit=limit,
        sort=[("week_start_date", DESCENDING)],
    )
    total = await db_ops.count(Collections.OWNER_COMMISSIONS, query)
    grouped = await _payments_for([str(r["_id"]) for r in rows])
    for row in rows:
        row["payments"] = grouped.get(str(row["_id"]), [])
    return rows, total


async def get_current_week_commission(owner_id: str, now: Optional[datetime] = None) -> Dict:
    """
    The row the owner has to pay now, i.e. last week's. It is computed on
    demand so the owner does not wait for the batch; once a payment exists
    the stored row is returned as it is.
    """
    start, _ = last_week_range(now)
    try:
        row = await compute_weekly_commission(owner_id, start)
    except ConflictError as e:
        if e.code not in ("SETTLEMENT_LOCKED", "CONCURRENT_MODIFICATION"):
            raise
        row = await db_ops.get_one(Collections.OWNER_COMMISSIONS, {"owner_id": owner_id, "week_start_date": start})
        if not row:
            raise
    grouped = await _payments_for([str(row["_id"])])
    row["payments"] = grouped.get(str(row["_id"]), [])
    return row


async def list_pending_payments(limit: int = 20, offset: int = 0) -> Tuple[List[Dict], int]:
    query = {"status": CommissionPaymentStatus.PENDING.value}
    payments = await db_ops.get_all(
        Collections.COMMISSION_PAYMENTS, query, skip=offset, limit=limit,
        sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
    )
    return payments, await db_ops.count(Collections.COMMISSION_PAYMENTS, query)


async def get_pending_commission_alerts(now: Optional[datetime] = None) -> Dict:
    """Last week's unpaid commissions, flagged once the payment deadline has passed"""
    now = now or utcnow()
    start, end = last_week_range(now)
    rows = await db_ops.get_all(
        Collections.OWNER_COMMISSIONS,
        {
            "week_start_date": start,
            "payment_status": OwnerCommissionStatus.PENDING.value,
            "commission_amount": {"$gt": 0},
        },
        limit=1000,
        sort=[("commission_amount", DESCENDING)],
    )
    deadline = payment_deadline(now)
    overdue = now > deadline
    days_overdue = (now - deadline).days if overdue else None

    items = []
    for row in rows:
        owner = await db_ops.get_by_id(Collections.USERS, row["owner_id"]) or {}
        items.append({
            "id": str(row["_id"]),
            "owner_id": row["owner_id"],
            "owner_name": owner.get("full_name"),
            "owner_phone": owner.get("phone"),
            "week_start_date": row["week_start_date"],
            "week_end_date": row["week_end_date"],
            "commission_amount": row["commission_amount"],
            "total_earning": row["total_earning"],
            "rental_count": row["rental_count"],
            "payment_status": row["payment_status"],
            "is_overdue": overdue,
            "days_overdue": days_overdue,
        })
    return {
        "items": items,
        "total": len(items),
        "overdue_count": len(items) if overdue else 0,
        "payment_deadline": deadline,
    }


# ─── Payment workflow ─────────────────────────────────────────────────────────

async def submit_commission_payment(
    owner_id: str,
    commission_id: str,
    invoice_ref: str,
    invoice_url: Optional[str] = None,
) -> Dict:
    """Owner uploads transfer proof for a PENDING row; the row goes UNDER_REVIEW"""
    row = await db_ops.get_by_id(Collections.OWNER_COMMISSIONS, commission_id)
    if not row:
        raise NotFound("Commission not found", "COMMISSION_NOT_FOUND")
    if row["owner_id"] != owner_id:
        raise PermissionDenied("This commission belongs to another owner", "NOT_COMMISSION_OWNER")
    if row["commission_amount"] <= 0:
        raise ValidationFailed("Nothing to pay for this week", "NOTHING_TO_PAY")
    if row["payment_status"] != OwnerCommissionStatus.PENDING.value:
        raise ConflictError(f"Commission is {row['payment_status']}", "PAYMENT_NOT_ALLOWED")

    claimed = await db_ops.compare_and_set(
        Collections.OWNER_COMMISSIONS,
        {"_id": row["_id"], "payment_status": OwnerCommissionStatus.PENDING.value},
        {"$set": {"payment_status": OwnerCommissionStatus.UNDER_REVIEW.value, "has_payments": True}},
    )
    if not claimed:
        raise ConflictError("Commission was changed by another request", "CONCURRENT_MODIFICATION")

    payment = await db_ops.create(Collections.COMMISSION_PAYMENTS, {
        "commission_id": str(row["_id"]),
        "owner_id": owner_id,
        "amount": row["commission_amount"],
        "invoice_ref": invoice_ref,
        "invoice_url": invoice_url,
        "status": CommissionPaymentStatus.PENDING.value,
        "admin_notes": None,
        "reviewed_by": None,
        "reviewed_at": None,
        "paid_at": None,
    })
    logger.info("Owner %s submitted payment %s for commission %s", owner_id, payment["_id"], commission_id)
    return payment


async def review_commission_payment(
    payment_id: str,
    admin_id: str,
    decision: str,
    admin_notes: Optional[str] = None,
) -> Dict:
    """
    APPROVED marks the commission PAID. REJECTED puts it back to PENDING so
    the owner can submit a new payment; the rejected one is kept.
    """
    try:
        decision = CommissionPaymentStatus(decision)
    except ValueError:
        decision = CommissionPaymentStatus.PENDING
    if decision == CommissionPaymentStatus.PENDING:
        raise ValidationFailed("Decision must be APPROVED or REJECTED", "INVALID_DECISION")

    payment = await db_ops.get_by_id(Collections.COMMISSION_PAYMENTS, payment_id)
    if not payment:
        raise NotFound("Payment not found", "PAYMENT_NOT_FOUND")

    now = utcnow()
    approved = decision == CommissionPaymentStatus.APPROVED
    reviewed = await db_ops.compare_and_set(
        Collections.COMMISSION_PAYMENTS,
        {"_id": payment["_id"], "status": CommissionPaymentStatus.PENDING.value},
        {"$set": {
            "status": decision.value,
            "admin_notes": admin_notes,
            "reviewed_by": admin_id,
            "reviewed_at": now,
            "paid_at": now if approved else None,
        }},
    )
    if not reviewed:
        raise ConflictError(f"Payment is already {payment['status']}", "PAYMENT_ALREADY_REVIEWED")

    row_update = {"payment_status": OwnerCommissionStatus.PAID.value, "paid_at": now} if approved \
        else {"payment_status": OwnerCommissionStatus.PENDING.value}
    row = await db_ops.compare_and_set(
        Collections.OWNER_COMMISSIONS,
        {"_id": to_object_id(payment["commission_id"]), "payment_status": OwnerCommissionStatus.UNDER_REVIEW.value},
        {"$set": row_update},
    )
    if not row:
        logger.critical("Commission %s was not UNDER_REVIEW while reviewing payment %s",
                        payment["commission_id"], payment_id)
        raise InvariantViolation(f"Commission {payment['commission_id']} out of sync with payment {payment_id}")

    logger.info("Admin %s %s payment %s", admin_id, decision.value.lower(), payment_id)
    await dispatch_notification(payment["owner_id"], f"commission.payment_{decision.value.lower()}", {
        "commission_id": payment["commission_id"],
        "payment_id": str(payment["_id"]),
        "admin_notes": admin_notes,
    })
    return reviewed
