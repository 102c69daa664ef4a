from datetime import datetime, date, timedelta

import pytest

from rentalhub.config.database import db_config, Collections
from rentalhub.database.db_operations import db_ops
from rentalhub.models.dispute import DisputeStatus
from rentalhub.models.rental import RentalStatus
from rentalhub.models.transaction import LedgerParty, TransactionType
from rentalhub.services import settlement, fee_policy, dispute_service, ledger
from rentalhub.services.rental_state_machine import state_machine
from rentalhub.utils.errors import ConflictError, PermissionDenied, ValidationFailed
from rentalhub.utils.helpers import utcnow

S = RentalStatus


def _just_after_now():
    # timestamps are stored to the millisecond
    return utcnow() + timedelta(milliseconds=1)


def test_week_range_uses_local_mondays():
    # Wednesday 6 March 2030 in Ho Chi Minh City (UTC+7)
    start, end = settlement.week_range(date(2030, 3, 6))
    assert start == datetime(2030, 3, 3, 17, 0)
    assert end == datetime(2030, 3, 10, 17, 0)


def test_week_range_of_utc_moment_near_midnight():
    # Sunday 18:00 UTC is already Monday 01:00 locally
    start, _ = settlement.week_range(datetime(2030, 3, 3, 18, 0))
    assert start == datetime(2030, 3, 3, 17, 0)
    start, _ = settlement.week_range(datetime(2030, 3, 3, 16, 0))
    assert start == datetime(2030, 2, 24, 17, 0)


def test_last_week_range():
    start, end = settlement.last_week_range(datetime(2030, 3, 6, 5, 0))
    assert start == datetime(2030, 2, 24, 17, 0)
    assert end == datetime(2030, 3, 3, 17, 0)


async def test_commission_rounds_once_at_current_rate(book, advance, owner, admin):
    await advance(await book(), S.COMPLETED)
    await fee_policy.update_commission_settings(admin, "0.1234")

    row = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())

    assert row["total_earning"] == 204000
    assert row["rental_count"] == 1
    assert row["commission_rate"] == "0.1234"
    # 204,000 x 0.1234 = 25,173.6
    assert row["commission_amount"] == 25174
    assert row["snapshot_platform_fee_total"] == 36000
    assert row["payment_status"] == "PENDING"


async def test_week_without_rentals_yields_zero_row(db, owner):
    row = await settlement.compute_weekly_commission(owner, date(2020, 1, 8))

    assert row["total_earning"] == 0
    assert row["rental_count"] == 0
    assert row["commission_amount"] == 0
    assert row["week_start_date"] == datetime(2020, 1, 5, 17, 0)


async def test_recompute_updates_in_place_while_pending(book, advance, owner):
    first = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())
    assert first["rental_count"] == 0

    await advance(await book(), S.COMPLETED)
    second = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())

    assert second["_id"] == first["_id"]
    assert second["rental_count"] == 1
    assert await db_ops.count(Collections.OWNER_COMMISSIONS, {"owner_id": owner}) == 1


async def test_payouts_after_batch_start_are_excluded(book, advance, owner):
    batch_started_at = utcnow()
    await advance(await book(), S.COMPLETED)

    row = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=batch_started_at)
    assert row["rental_count"] == 0
    assert row["total_earning"] == 0


async def test_refunded_rental_nets_out(book, advance, renter, owner, admin):
    kept = await advance(await book(), S.COMPLETED)
    refunded = await advance(await book(days=3), S.COMPLETED)
    dispute = await dispute_service.open_dispute(str(refunded["_id"]), renter, "Broken lock")
    await dispute_service.start_review(str(dispute["_id"]), admin)
    await dispute_service.resolve_dispute(str(dispute["_id"]), admin, DisputeStatus.RESOLVED_REFUND, "Refund")

    row = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())

    assert row["rental_ids"] == [str(kept["_id"])]
    assert row["total_earning"] == kept["owner_earning"]


async def test_payment_approval_marks_week_paid(book, advance, owner, admin):
    await advance(await book(), S.COMPLETED)
    row = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())

    payment = await settlement.submit_commission_payment(owner, str(row["_id"]), "VCB-123456", "/uploads/proof.jpg")
    assert payment["amount"] == row["commission_amount"] == 30600
    under_review = await db_ops.get_by_id(Collections.OWNER_COMMISSIONS, str(row["_id"]))
    assert under_review["payment_status"] == "UNDER_REVIEW"

    reviewed = await settlement.review_commission_payment(str(payment["_id"]), admin, "APPROVED", "Received")
    assert reviewed["status"] == "APPROVED"
    assert reviewed["paid_at"] is not None
    paid = await db_ops.get_by_id(Collections.OWNER_COMMISSIONS, str(row["_id"]))
    assert paid["payment_status"] == "PAID"
    assert paid["paid_at"] is not None

    with pytest.raises(ConflictError) as exc:
        await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())
    assert exc.value.code == "SETTLEMENT_LOCKED"


async def test_rejected_payment_allows_resubmission_but_stays_locked(book, advance, owner, admin):
    await advance(await book(), S.COMPLETED)
    row = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())
    commission_id = str(row["_id"])

    first = await settlement.submit_commission_payment(owner, commission_id, "BAD-REF")
    await settlement.review_commission_payment(str(first["_id"]), admin, "REJECTED", "Amount does not match")
    back = await db_ops.get_by_id(Collections.OWNER_COMMISSIONS, commission_id)
    assert back["payment_status"] == "PENDING"

    with pytest.raises(ConflictError) as exc:
        await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())
    assert exc.value.code == "SETTLEMENT_LOCKED"

    second = await settlement.submit_commission_payment(owner, commission_id, "GOOD-REF")
    assert second["_id"] != first["_id"]

    rows, total = await settlement.get_owner_commissions(owner)
    assert total == 1
    assert [p["status"] for p in rows[0]["payments"]] == ["REJECTED", "PENDING"]

    pending, pending_total = await settlement.list_pending_payments()
    assert pending_total == 1
    assert pending[0]["invoice_ref"] == "GOOD-REF"


async def test_payment_cannot_be_reviewed_twice(book, advance, owner, admin):
    await advance(await book(), S.COMPLETED)
    row = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())
    payment = await settlement.submit_commission_payment(owner, str(row["_id"]), "REF-1")
    await settlement.review_commission_payment(str(payment["_id"]), admin, "APPROVED")

    with pytest.raises(ConflictError) as exc:
        await settlement.review_commission_payment(str(payment["_id"]), admin, "REJECTED")
    assert exc.value.code == "PAYMENT_ALREADY_REVIEWED"


async def test_submit_checks_owner_and_amount(book, advance, owner, renter):
    zero = await settlement.compute_weekly_commission(owner, date(2020, 1, 8))
    with pytest.raises(ValidationFailed):
        await settlement.submit_commission_payment(owner, str(zero["_id"]), "REF")

    await advance(await book(), S.COMPLETED)
    row = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())
    with pytest.raises(PermissionDenied):
        await settlement.submit_commission_payment(renter, str(row["_id"]), "REF")

    await settlement.submit_commission_payment(owner, str(row["_id"]), "REF")
    with pytest.raises(ConflictError):
        await settlement.submit_commission_payment(owner, str(row["_id"]), "REF-AGAIN")


async def test_weekly_batch_skips_locked_owners(book, advance, owner):
    await advance(await book(), S.COMPLETED)
    today = utcnow()

    result = await settlement.run_weekly_settlement(today, _just_after_now())
    assert result["settled"] == [owner]
    assert result["skipped"] == []

    row = await db_ops.get_one(Collections.OWNER_COMMISSIONS, {"owner_id": owner})
    await settlement.submit_commission_payment(owner, str(row["_id"]), "REF")

    again = await settlement.run_weekly_settlement(today, _just_after_now())
    assert again["settled"] == []
    assert again["skipped"] == [owner]


async def test_payout_in_the_batch_millisecond_belongs_to_next_batch(book, advance, owner):
    await advance(await book(), S.COMPLETED)
    payout = await db_ops.get_one(Collections.RENTAL_TRANSACTIONS, {"owner_id": owner, "type": "PAYOUT"})
    settled_at = payout["settled_at"]

    same_ms = await settlement.compute_weekly_commission(
        owner, settled_at, batch_started_at=settled_at + timedelta(microseconds=999 - settled_at.microsecond % 1000),
    )
    assert same_ms["rental_count"] == 0
    assert same_ms["batch_started_at"] == settled_at.replace(microsecond=settled_at.microsecond // 1000 * 1000)

    next_ms = await settlement.compute_weekly_commission(
        owner, settled_at, batch_started_at=settled_at + timedelta(milliseconds=1),
    )
    assert next_ms["rental_count"] == 1


async def test_committed_payout_counts_before_its_entry_settles(book, advance, owner, monkeypatch):
    rental = await advance(await book(), S.ON_TRIP)
    rows = []
    settle = ledger.settle

    async def settle_after_batch(entries, settled_at):
        if any(e["type"] == "PAYOUT" for e in entries):
            rows.append(await settlement.compute_weekly_commission(
                owner, settled_at, batch_started_at=settled_at + timedelta(milliseconds=1),
            ))
        await settle(entries, settled_at)
    monkeypatch.setattr(ledger, "settle", settle_after_batch)

    await state_machine.transition(str(rental["_id"]), S.COMPLETED, owner)

    assert len(rows) == 1
    assert rows[0]["rental_count"] == 1
    assert rows[0]["total_earning"] == 204000


async def test_uncommitted_payout_is_not_counted(book, advance, owner):
    rental = await advance(await book(), S.ON_TRIP)
    await ledger.append_pending(
        rental, LedgerParty.OWNER, TransactionType.PAYOUT, rental["owner_earning"],
        ledger.completion_payout_key(str(rental["_id"])), "in flight",
    )

    row = await settlement.compute_weekly_commission(owner, utcnow(), batch_started_at=_just_after_now())
    assert row["rental_count"] == 0


async def _move_payouts_to_last_week(owner_id):
    start, _ = settlement.last_week_range()
    await db_config.get_collection(Collections.RENTAL_TRANSACTIONS).update_many(
        {"owner_id": owner_id, "type": "PAYOUT"},
        {"$set": {"settled_at": start + timedelta(days=2)}},
    )


async def test_current_week_commission_is_computed_on_demand(book, advance, owner):
    await advance(await book(), S.COMPLETED)
    await _move_payouts_to_last_week(owner)

    row = await settlement.get_current_week_commission(owner)

    assert row["week_start_date"] == settlement.last_week_range()[0]
    assert row["rental_count"] == 1
    assert row["commission_amount"] == 30600
    assert row["payments"] == []


async def test_current_week_commission_returns_locked_row(book, advance, owner):
    await advance(await book(), S.COMPLETED)
    await _move_payouts_to_last_week(owner)
    row = await settlement.get_current_week_commission(owner)
    payment = await settlement.submit_commission_payment(owner, str(row["_id"]), "VCB-777")

    # a later completion must not change a week that is being paid
    await advance(await book(days=3), S.COMPLETED)
    await _move_payouts_to_last_week(owner)
    locked = await settlement.get_current_week_commission(owner)

    assert locked["_id"] == row["_id"]
    assert locked["payment_status"] == "UNDER_REVIEW"
    assert locked["rental_count"] == 1
    assert [p["_id"] for p in locked["payments"]] == [payment["_id"]]


async def _commission_row(owner_id, week_start, amount, status="PENDING"):
    start, end = settlement.week_range(week_start)
    return await db_ops.create(Collections.OWNER_COMMISSIONS, {
        "owner_id": owner_id,
        "week_start_date": start,
        "week_end_date": end,
        "currency": "VND",
        "total_earning": amount * 10,
        "commission_rate": "0.1",
        "commission_amount": amount,
        "rental_count": 1 if amount else 0,
        "payment_status": status,
        "has_payments": status != "PENDING",
    })


async def test_alerts_flag_overdue_weeks(owner, renter):
    last_week = date(2030, 2, 26)
    await _commission_row(owner, last_week, 50000)
    await _commission_row(renter, last_week, 0)
    await _commission_row("paid-owner", last_week, 70000, status="PAID")
    await _commission_row(owner, date(2030, 2, 19), 90000)

    # Saturday 9 March 2030, 10:00 local: past the Wednesday deadline
    alerts = await settlement.get_pending_commission_alerts(datetime(2030, 3, 9, 3, 0))
    assert alerts["total"] == 1
    assert alerts["overdue_count"] == 1
    item = alerts["items"][0]
    assert item["owner_id"] == owner
    assert item["owner_phone"] == "0911111111"
    assert item["is_overdue"] is True
    assert item["days_overdue"] == 2

    # Tuesday 5 March 2030: still inside the payment window
    early = await settlement.get_pending_commission_alerts(datetime(2030, 3, 5, 3, 0))
    assert early["items"][0]["is_overdue"] is False
    assert early["items"][0]["days_overdue"] is None
    assert early["overdue_count"] == 0
