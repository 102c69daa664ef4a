import asyncio
from datetime import timedelta

import pytest

from rentalhub.config.database import Collections
from rentalhub.database.db_operations import db_ops
from rentalhub.models.rental import RentalStatus
from rentalhub.models.transaction import LedgerParty
from rentalhub.services import ledger
from rentalhub.services.rental_state_machine import (
    TRANSITIONS,
    is_transition_allowed,
    state_machine,
    check_financial_invariants,
    TransitionHook,
)
from rentalhub.utils.errors import ConflictError, DependencyFailure, InvariantViolation
from rentalhub.utils.helpers import utcnow

S = RentalStatus


def test_transition_table_covers_every_status():
    assert set(TRANSITIONS) == set(RentalStatus)
    assert TRANSITIONS[S.CANCELLED] == frozenset()


@pytest.mark.parametrize("current,target", [
    (S.AWAIT_APPROVAL, S.ON_TRIP),
    (S.PENDING_PAYMENT, S.CONFIRMED),
    (S.CONFIRMED, S.COMPLETED),
    (S.ON_TRIP, S.CANCELLED),
    (S.COMPLETED, S.CANCELLED),
    (S.CANCELLED, S.PENDING_PAYMENT),
    (S.PENDING_PAYMENT, S.DISPUTED),
])
def test_illegal_pairs(current, target):
    assert not is_transition_allowed(current, target)


async def test_happy_path_records_history_and_payout(book, advance, gateway, renter, owner):
    rental = await book()
    assert rental["status"] == S.PENDING_PAYMENT.value
    assert rental["total_price"] == 240000

    done = await advance(rental, S.COMPLETED)
    assert done["status"] == S.COMPLETED.value
    assert done["version"] == 5
    assert done["completed_at"] is not None
    assert done["lock_token"] is None
    assert [h["to_status"] for h in done["status_history"]] == [
        "PENDING_PAYMENT", "AWAIT_APPROVAL", "CONFIRMED", "ON_TRIP", "COMPLETED",
    ]
    assert done["payment_reference"] == "CAP-1"
    assert gateway.captures == [(str(rental["_id"]), 240000, "VND")]

    entries = await ledger.list_for_rental(str(rental["_id"]))
    assert [(e["party"], e["type"], e["amount"], e["status"]) for e in entries] == [
        ("RENTER", "CHARGE", -240000, "SETTLED"),
        ("OWNER", "PAYOUT", 204000, "SETTLED"),
    ]
    assert entries[1]["settled_at"] == done["updated_at"]


async def test_illegal_transition_is_rejected_without_changes(book, advance, owner):
    rental = await advance(await book(), S.AWAIT_APPROVAL)

    with pytest.raises(ConflictError) as exc:
        await state_machine.transition(str(rental["_id"]), S.ON_TRIP, owner)
    assert exc.value.code == "ILLEGAL_TRANSITION"

    fresh = await db_ops.get_by_id(Collections.RENTALS, str(rental["_id"]))
    assert fresh["status"] == S.AWAIT_APPROVAL.value
    assert fresh["version"] == rental["version"]


async def test_completing_twice_posts_one_payout(book, advance, owner):
    rental = await advance(await book(), S.COMPLETED)
    rental_id = str(rental["_id"])

    with pytest.raises(ConflictError):
        await state_machine.transition(rental_id, S.COMPLETED, owner)

    payouts = await db_ops.get_all(Collections.RENTAL_TRANSACTIONS, {
        "rental_id": rental_id, "type": "PAYOUT",
    })
    assert len(payouts) == 1


async def test_cancel_while_awaiting_approval_refunds_charge(book, advance, gateway, renter):
    rental = await advance(await book(), S.AWAIT_APPROVAL)
    rental_id = str(rental["_id"])

    cancelled = await state_machine.transition(rental_id, S.CANCELLED, renter, reason="changed plans")

    assert cancelled["status"] == S.CANCELLED.value
    assert cancelled["cancel_reason"] == "changed plans"
    assert cancelled["cancelled_at"] is not None
    entries = await ledger.list_for_rental(rental_id)
    charge = [e for e in entries if e["type"] == "CHARGE"][0]
    refund = [e for e in entries if e["type"] == "REFUND"][0]
    assert refund["amount"] == -charge["amount"] == 240000
    assert refund["status"] == "SETTLED"
    assert not [e for e in entries if e["type"] == "PAYOUT"]
    assert gateway.refunds == [(rental_id, 240000, "VND", "CAP-1")]
    assert await ledger.net_for_party(rental_id, LedgerParty.RENTER) == 0


async def test_cancel_after_confirmation_refunds_policy_share(book, advance, gateway, owner):
    rental = await advance(await book(), S.CONFIRMED)
    rental_id = str(rental["_id"])

    await state_machine.transition(rental_id, S.CANCELLED, owner)

    assert gateway.refunds[0][1] == 120000
    assert await ledger.net_for_party(rental_id, LedgerParty.RENTER) == -120000


async def test_cancel_before_payment_moves_no_money(book, gateway, renter):
    rental = await book()
    cancelled = await state_machine.transition(str(rental["_id"]), S.CANCELLED, renter)

    assert cancelled["status"] == S.CANCELLED.value
    assert gateway.refunds == []
    assert await ledger.list_for_rental(str(rental["_id"])) == []


async def test_concurrent_transitions_one_wins(book, renter):
    rental = await book()
    rental_id = str(rental["_id"])

    results = await asyncio.gather(
        state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter),
        state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, dict)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    charges = await db_ops.get_all(Collections.RENTAL_TRANSACTIONS, {"rental_id": rental_id, "type": "CHARGE"})
    assert len(charges) == 1


async def test_declined_capture_rolls_back(book, gateway, renter):
    rental = await book()
    rental_id = str(rental["_id"])
    gateway.fail_capture = True

    with pytest.raises(DependencyFailure) as exc:
        await state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter)
    assert exc.value.to_response()["detail"] == "The operation could not be completed"

    fresh = await db_ops.get_by_id(Collections.RENTALS, rental_id)
    assert fresh["status"] == S.PENDING_PAYMENT.value
    assert fresh["version"] == 1
    assert fresh["lock_token"] is None
    entries = await ledger.list_for_rental(rental_id)
    assert [e["status"] for e in entries] == ["FAILED"]

    # A retry after the gateway recovers goes through and posts a fresh charge
    gateway.fail_capture = False
    paid = await state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter)
    assert paid["status"] == S.AWAIT_APPROVAL.value
    assert await ledger.net_for_party(rental_id, LedgerParty.RENTER) == -240000


async def test_gateway_exception_is_reported_as_dependency_failure(book, gateway, renter):
    rental = await book()

    async def boom(*args):
        raise ConnectionError("gateway unreachable")
    gateway.capture = boom

    with pytest.raises(DependencyFailure):
        await state_machine.transition(str(rental["_id"]), S.AWAIT_APPROVAL, renter)
    fresh = await db_ops.get_by_id(Collections.RENTALS, str(rental["_id"]))
    assert fresh["status"] == S.PENDING_PAYMENT.value


def _take_lease(rental_id):
    return db_ops.update(Collections.RENTALS, rental_id, {
        "lock_token": "other", "lock_expires_at": utcnow() + timedelta(seconds=30),
    })


async def test_capture_is_refunded_when_lease_is_lost_before_commit(book, gateway, renter):
    rental = await book()
    rental_id = str(rental["_id"])
    capture = gateway.capture

    async def capture_then_lose_lease(*args):
        result = await capture(*args)
        await _take_lease(rental_id)
        return result
    gateway.capture = capture_then_lose_lease

    with pytest.raises(ConflictError) as exc:
        await state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter)
    assert exc.value.code == "CONCURRENT_MODIFICATION"

    fresh = await db_ops.get_by_id(Collections.RENTALS, rental_id)
    assert fresh["status"] == S.PENDING_PAYMENT.value
    assert gateway.refunds == [(rental_id, 240000, "VND", "CAP-1")]
    entries = await ledger.list_for_rental(rental_id)
    assert [(e["type"], e["amount"], e["status"], e["external_reference"]) for e in entries] == [
        ("CHARGE", -240000, "VOIDED", "CAP-1"),
        ("REFUND", 240000, "VOIDED", "REF-1"),
    ]
    assert await ledger.net_for_party(rental_id, LedgerParty.RENTER) == 0


async def test_unrefundable_capture_is_left_failed(book, gateway, renter):
    rental = await book()
    rental_id = str(rental["_id"])
    capture = gateway.capture
    gateway.fail_refund = True

    async def capture_then_lose_lease(*args):
        result = await capture(*args)
        await _take_lease(rental_id)
        return result
    gateway.capture = capture_then_lose_lease

    with pytest.raises(ConflictError):
        await state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter)

    entries = await ledger.list_for_rental(rental_id)
    assert [(e["type"], e["status"]) for e in entries] == [("CHARGE", "FAILED")]
    assert len(gateway.refunds) == 1


async def test_no_gateway_call_once_the_lease_is_gone(book, gateway, renter):
    rental = await book()
    rental_id = str(rental["_id"])

    class LoseLease(TransitionHook):
        async def apply(self, rental):
            await _take_lease(rental_id)

    with pytest.raises(ConflictError):
        await state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter, hook=LoseLease())

    assert gateway.captures == []
    assert [e["status"] for e in await ledger.list_for_rental(rental_id)] == ["FAILED"]


async def test_commit_records_its_ledger_entries(book, advance):
    done = await advance(await book(), S.COMPLETED)

    entries = await ledger.list_for_rental(str(done["_id"]))
    history = done["status_history"]
    assert history[1]["ledger_entry_ids"] == [str(entries[0]["_id"])]
    assert history[-1]["ledger_entry_ids"] == [str(entries[1]["_id"])]
    assert history[-1]["at"] == entries[1]["settled_at"]


async def test_expired_lease_can_be_taken_over(book, renter):
    rental = await book()
    rental_id = str(rental["_id"])
    await db_ops.update(Collections.RENTALS, rental_id, {
        "lock_token": "stale", "lock_expires_at": utcnow() - timedelta(seconds=5),
    })

    paid = await state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter)
    assert paid["status"] == S.AWAIT_APPROVAL.value


async def test_held_lease_blocks_other_writers(book, renter):
    rental = await book()
    rental_id = str(rental["_id"])
    await db_ops.update(Collections.RENTALS, rental_id, {
        "lock_token": "busy", "lock_expires_at": utcnow() + timedelta(seconds=30),
    })

    with pytest.raises(ConflictError) as exc:
        await state_machine.transition(rental_id, S.AWAIT_APPROVAL, renter)
    assert exc.value.code == "CONCURRENT_MODIFICATION"


async def test_odometer_readings_are_recorded(book, advance, owner):
    rental = await advance(await book(), S.CONFIRMED)
    rental_id = str(rental["_id"])

    on_trip = await state_machine.transition(rental_id, S.ON_TRIP, owner, odometer=12000)
    done = await state_machine.transition(rental_id, S.COMPLETED, owner, odometer=12150)

    assert on_trip["start_odometer"] == 12000
    assert done["end_odometer"] == 12150


async def test_tampered_pricing_is_an_invariant_violation(book, renter):
    rental = await book()
    await db_ops.update(Collections.RENTALS, str(rental["_id"]), {"owner_earning": 999999})

    with pytest.raises(InvariantViolation):
        await state_machine.transition(str(rental["_id"]), S.AWAIT_APPROVAL, renter)


def test_invariant_check_accepts_consistent_rental():
    check_financial_invariants({
        "_id": "r1",
        "price_per_day": 100000,
        "days": 2,
        "delivery_fee": 0,
        "insurance_fee": 40000,
        "discount_amount": 0,
        "total_price": 240000,
        "platform_fee": 36000,
        "owner_earning": 204000,
    })
