"""
Fee Policy Store – versioned, admin-editable fee and commission settings.

Exactly one row per collection is active; older rows stay for history.
Versions are unique per collection.
Pricing reads the active rows once per calculation as immutable snapshots,
and the values are copied into the rental, so later policy changes never
reprice existing bookings.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from rentalhub.config.database import db_config, Collections
from rentalhub.database.db_operations import db_ops
from rentalhub.utils.errors import ConflictError, ValidationFailed
from rentalhub.utils.helpers import utcnow
from rentalhub.utils.money import parse_ratio, ratio_str

logger = logging.getLogger(__name__)

DEFAULT_FEE_SETTINGS = {
    "delivery_fee_per_km": 10000,
    "insurance_rate_50cc": 20000,
    "insurance_rate_tay_ga": 30000,
    "insurance_rate_tay_con": 50000,
    "insurance_rate_moto": 50000,
    "insurance_rate_default": 30000,
    "insurance_commission_ratio": "0.20",
}

DEFAULT_COMMISSION_RATE = "0.15"

_NEWEST_FIRST = [("version", DESCENDING), ("created_at", DESCENDING)]
PUBLISH_ATTEMPTS = 5


@dataclass(frozen=True)
class FeeSnapshot:
    id: str
    version: int
    delivery_fee_per_km: int
    insurance_rate_50cc: int
    insurance_rate_tay_ga: int
    insurance_rate_tay_con: int
    insurance_rate_moto: int
    insurance_rate_default: int
    insurance_commission_ratio: Decimal

    @classmethod
    def from_doc(cls, doc: Dict) -> "FeeSnapshot":
        return cls(
            id=str(doc["_id"]),
            version=int(doc.get("version", 1)),
            delivery_fee_per_km=int(doc["delivery_fee_per_km"]),
            insurance_rate_50cc=int(doc["insurance_rate_50cc"]),
            insurance_rate_tay_ga=int(doc["insurance_rate_tay_ga"]),
            insurance_rate_tay_con=int(doc["insurance_rate_tay_con"]),
            insurance_rate_moto=int(doc["insurance_rate_moto"]),
            insurance_rate_default=int(doc["insurance_rate_default"]),
            insurance_commission_ratio=parse_ratio(doc.get("insurance_commission_ratio", "0")),
        )


@dataclass(frozen=True)
class CommissionSnapshot:
    id: str
    version: int
    commission_rate: Decimal


async def _active_row(collection_name: str, defaults: Dict) -> Dict:
    row = await db_ops.get_one(collection_name, {"is_active": True}, sort=_NEWEST_FIRST)
    if row:
        return row
    logger.info("No active row in %s, creating defaults", collection_name)
    try:
        return await db_ops.create(collection_name, {**defaults, "version": 1, "is_active": True, "created_by": None})
    except DuplicateKeyError:
        # another reader created the defaults first
        row = await db_ops.get_one(collection_name, {"is_active": True}, sort=_NEWEST_FIRST)
        if not row:
            raise ConflictError("Settings changed concurrently, retry", "CONCURRENT_MODIFICATION")
        return row


async def _next_version(collection_name: str) -> int:
    latest = await db_ops.get_one(collection_name, {}, sort=_NEWEST_FIRST)
    return int(latest.get("version", 0)) + 1 if latest else 1


async def _publish_row(collection_name: str, data: Dict, admin_id: str) -> Dict:
    """
    Publish `data` as the next version.

    Versions are unique, so of two concurrent publishes only one gets a
    given number and the other retries with the next. The new row is
    active from the start and only lower versions are retired, so there is
    always an active row and the highest version ends up the only one.
    """
    for _ in range(PUBLISH_ATTEMPTS):
        version = await _next_version(collection_name)
        try:
            row = await db_ops.create(collection_name, {
                **data,
                "version": version,
                "is_active": True,
                "created_by": admin_id,
            })
            break
        except DuplicateKeyError:
            logger.warning("Version %s of %s was taken concurrently, retrying", version, collection_name)
    else:
        raise ConflictError("Settings are being published concurrently, retry", "CONCURRENT_MODIFICATION")

    coll = db_config.get_collection(collection_name)
    await coll.update_many(
        {"is_active": True, "version": {"$lt": version}},
        {"$set": {"is_active": False, "updated_at": utcnow()}},
    )
    newer = await db_ops.get_one(collection_name, {"is_active": True, "version": {"$gt": version}})
    if newer:
        await db_ops.compare_and_set(
            collection_name,
            {"_id": row["_id"], "is_active": True},
            {"$set": {"is_active": False}},
        )
        logger.warning("%s v%s superseded by v%s before it took effect", collection_name, version, newer["version"])
        raise ConflictError("A newer version was published concurrently", "CONCURRENT_MODIFICATION")
    return row


# ─── Fee settings ─────────────────────────────────────────────────────────────

async def get_active_fee_settings() -> Dict:
    return await _active_row(Collections.FEE_SETTINGS, DEFAULT_FEE_SETTINGS)


async def get_fee_snapshot() -> FeeSnapshot:
    return FeeSnapshot.from_doc(await get_active_fee_settings())


async def update_fee_settings(admin_id: str, data: Dict) -> Dict:
    """Publish a new fee policy version. `data` is a validated FeeSettingsUpdate dump."""
    data = dict(data)
    try:
        data["insurance_commission_ratio"] = ratio_str(parse_ratio(data["insurance_commission_ratio"]))
    except ValueError as e:
        raise ValidationFailed(str(e), "INVALID_RATIO")
    row = await _publish_row(Collections.FEE_SETTINGS, data, admin_id)
    logger.info("Fee settings v%s published by admin %s", row["version"], admin_id)
    return row


# ─── Platform commission rate ─────────────────────────────────────────────────

async def get_active_commission_settings() -> Dict:
    return await _active_row(Collections.COMMISSION_SETTINGS, {"commission_rate": DEFAULT_COMMISSION_RATE})


async def get_commission_snapshot() -> CommissionSnapshot:
    row = await get_active_commission_settings()
    return CommissionSnapshot(
        id=str(row["_id"]),
        version=int(row.get("version", 1)),
        commission_rate=parse_ratio(row["commission_rate"]),
    )


async def update_commission_settings(admin_id: str, commission_rate) -> Dict:
    try:
        rate = ratio_str(parse_ratio(commission_rate))
    except ValueError as e:
        raise ValidationFailed(str(e), "INVALID_RATIO")
    row = await _publish_row(Collections.COMMISSION_SETTINGS, {"commission_rate": rate}, admin_id)
    logger.info("Commission rate %s (v%s) published by admin %s", rate, row["version"], admin_id)
    return row
