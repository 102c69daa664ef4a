"""
Rental Reports – MongoDB aggregation pipelines over completed rentals.

Provides:
  - Insurance stats  (admin; what is owed to the insurance partner)
  - Owner revenue    (owner; completed rentals and earnings)
"""
from datetime import datetime, date, time, timedelta
from typing import Optional, Dict, Any, List, Tuple

import pytz
from pymongo import DESCENDING

from rentalhub.config.database import db_config, Collections
from rentalhub.database.db_operations import db_ops
from rentalhub.models.rental import RentalStatus
from rentalhub.services.fee_policy import get_fee_snapshot
from rentalhub.utils.helpers import LOCAL_TZ, utcnow
from rentalhub.utils.money import apply_ratio

UNKNOWN_VEHICLE_TYPE = "Khác"


# ─── helpers ──────────────────────────────────────────────────────────────────

def _local_to_utc(day: date, at: time = time.min) -> datetime:
    return LOCAL_TZ.localize(datetime.combine(day, at)).astimezone(pytz.utc).replace(tzinfo=None)


def current_month_range(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """First and last instant of the local calendar month, as naive UTC"""
    local_today = pytz.utc.localize(now or utcnow()).astimezone(LOCAL_TZ).date()
    first = local_today.replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return _local_to_utc(first), _local_to_utc(next_first) - timedelta(microseconds=1)


def _completed_match(start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
    q: Dict[str, Any] = {"status": RentalStatus.COMPLETED.value}
    if start or end:
        q["end_date"] = {}
        if start:
            q["end_date"]["$gte"] = start
        if end:
            q["end_date"]["$lte"] = end
    return q


# ─── Insurance ────────────────────────────────────────────────────────────────

async def insurance_stats(start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict:
    """Insurance collected on completed rentals in the period (default: this month)"""
    if start is None or end is None:
        month_start, month_end = current_month_range()
        start = start or month_start
        end = end or month_end

    match = _completed_match(start, end)
    match["insurance_fee"] = {"$gt": 0}
    pipeline = [
        {"$match": match},
        {"$group": {
            "_id": "$vehicle_type",
            "count": {"$sum": 1},
            "total_fee": {"$sum": "$insurance_fee"},
        }},
        {"$sort": {"total_fee": -1}},
    ]
    coll = db_config.get_collection(Collections.RENTALS)
    rows = await coll.aggregate(pipeline).to_list(length=1000)

    by_type: Dict[str, Dict] = {}
    for row in rows:
        vehicle_type = row["_id"] or UNKNOWN_VEHICLE_TYPE
        bucket = by_type.setdefault(vehicle_type, {"type": vehicle_type, "count": 0, "total_fee": 0})
        bucket["count"] += row["count"]
        bucket["total_fee"] += int(row["total_fee"])

    total_fee = sum(b["total_fee"] for b in by_type.values())
    fees = await get_fee_snapshot()
    platform_commission = apply_ratio(total_fee, fees.insurance_commission_ratio)

    return {
        "period_start": start,
        "period_end": end,
        "total_rentals": sum(b["count"] for b in by_type.values()),
        "total_insurance_fee": total_fee,
        "insurance_commission_ratio": str(fees.insurance_commission_ratio),
        "platform_commission": platform_commission,
        "payable_to_insurer": total_fee - platform_commission,
        "by_vehicle_type": list(by_type.values()),
    }


# ─── Owner revenue ────────────────────────────────────────────────────────────

async def owner_revenue(
    owner_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict:
    match = _completed_match(start, end)
    match["owner_id"] = owner_id

    rentals: List[Dict] = await db_ops.get_all(
        Collections.RENTALS, match, skip=offset, limit=limit, sort=[("end_date", DESCENDING)],
    )
    total = await db_ops.count(Collections.RENTALS, match)

    coll = db_config.get_collection(Collections.RENTALS)
    sums = await coll.aggregate([
        {"$match": match},
        {"$group": {
            "_id": None,
            "total_revenue": {"$sum": "$total_price"},
            "total_earning": {"$sum": "$owner_earning"},
        }},
    ]).to_list(length=1)
    totals = sums[0] if sums else {"total_revenue": 0, "total_earning": 0}

    items = [{
        "id": str(r["_id"]),
        "vehicle_id": r["vehicle_id"],
        "start_date": r["start_date"],
        "end_date": r["end_date"],
        "total_price": r["total_price"],
        "platform_fee": r["platform_fee"],
        "delivery_fee": r["delivery_fee"],
        "insurance_fee": r["insurance_fee"],
        "discount_amount": r["discount_amount"],
        "owner_earning": r["owner_earning"],
        "status": r["status"],
        "created_at": r["created_at"],
    } for r in rentals]

    return {
        "items": items,
        "total": total,
        "total_revenue": int(totals["total_revenue"]),
        "total_earning": int(totals["total_earning"]),
    }
