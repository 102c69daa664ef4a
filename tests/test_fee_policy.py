from decimal import Decimal

import pytest

from rentalhub.config.database import Collections
from rentalhub.database.db_operations import db_ops
from rentalhub.services import fee_policy, rental_service
from rentalhub.utils.errors import ConflictError, ValidationFailed

NEW_FEES = {
    "delivery_fee_per_km": 12000,
    "insurance_rate_50cc": 25000,
    "insurance_rate_tay_ga": 35000,
    "insurance_rate_tay_con": 55000,
    "insurance_rate_moto": 60000,
    "insurance_rate_default": 35000,
    "insurance_commission_ratio": "0.25",
}


async def test_defaults_are_created_on_first_read(db):
    fees = await fee_policy.get_fee_snapshot()
    assert fees.version == 1
    assert fees.insurance_rate_50cc == 20000
    assert fees.insurance_commission_ratio == Decimal("0.20")

    commission = await fee_policy.get_commission_snapshot()
    assert commission.commission_rate == Decimal("0.15")
    assert await db_ops.count(Collections.FEE_SETTINGS) == 1


async def test_publishing_keeps_exactly_one_active_version(db, admin):
    await fee_policy.get_active_fee_settings()
    row = await fee_policy.update_fee_settings(admin, NEW_FEES)

    assert row["version"] == 2
    assert row["created_by"] == admin
    assert await db_ops.count(Collections.FEE_SETTINGS, {"is_active": True}) == 1
    active = await fee_policy.get_active_fee_settings()
    assert active["_id"] == row["_id"]
    assert active["insurance_commission_ratio"] == "0.25"


async def test_commission_rate_versions(db, admin):
    await fee_policy.update_commission_settings(admin, "0.1")
    row = await fee_policy.update_commission_settings(admin, Decimal("0.12"))

    assert row["version"] == 2
    assert row["commission_rate"] == "0.12"
    assert (await fee_policy.get_commission_snapshot()).commission_rate == Decimal("0.12")


async def test_taken_version_is_retried_with_the_next_one(db, admin, monkeypatch):
    await fee_policy.get_active_fee_settings()
    next_version = fee_policy._next_version
    stale = [1]

    async def read_before_other_publish(collection_name):
        if stale:
            return stale.pop()
        return await next_version(collection_name)
    monkeypatch.setattr(fee_policy, "_next_version", read_before_other_publish)

    row = await fee_policy.update_fee_settings(admin, NEW_FEES)

    assert row["version"] == 2
    assert await db_ops.count(Collections.FEE_SETTINGS) == 2
    assert await db_ops.count(Collections.FEE_SETTINGS, {"is_active": True}) == 1


async def test_publish_overtaken_by_newer_version_steps_aside(db, admin, monkeypatch):
    newer = await db_ops.create(Collections.FEE_SETTINGS, {
        **fee_policy.DEFAULT_FEE_SETTINGS, "version": 5, "is_active": True, "created_by": "other-admin",
    })

    async def older_version(collection_name):
        return 3
    monkeypatch.setattr(fee_policy, "_next_version", older_version)

    with pytest.raises(ConflictError) as exc:
        await fee_policy.update_fee_settings(admin, NEW_FEES)
    assert exc.value.code == "CONCURRENT_MODIFICATION"

    active = await db_ops.get_all(Collections.FEE_SETTINGS, {"is_active": True})
    assert [r["_id"] for r in active] == [newer["_id"]]
    assert await db_ops.count(Collections.FEE_SETTINGS, {"version": 3, "is_active": False}) == 1


@pytest.mark.parametrize("rate", ["1.01", "-0.2", "ten percent"])
async def test_invalid_commission_rate_is_rejected(db, admin, rate):
    with pytest.raises(ValidationFailed):
        await fee_policy.update_commission_settings(admin, rate)
    assert await db_ops.count(Collections.COMMISSION_SETTINGS) == 0


async def test_policy_change_does_not_reprice_existing_rentals(book, admin):
    before = await book()
    await fee_policy.update_fee_settings(admin, NEW_FEES)
    await fee_policy.update_commission_settings(admin, "0.30")

    stored = await rental_service.get_rental(str(before["_id"]), {"sub": admin, "role": "admin"})
    assert stored["insurance_fee"] == 40000
    assert stored["platform_fee"] == 36000
    assert stored["fee_settings_version"] == 1

    after = await book()
    assert after["insurance_fee"] == 50000
    assert after["total_price"] == 250000
    assert after["platform_fee"] == 75000
    assert after["fee_settings_version"] == 2
