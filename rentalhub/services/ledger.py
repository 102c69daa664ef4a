"""
Transaction Ledger – append-only record of the money events of a rental.

Amounts are signed from the point of view of the party:

    RENTER  CHARGE  −total       (renter pays)
    RENTER  REFUND  +refund      (money back to the renter)
    OWNER   PAYOUT  +earning     (owner earning posted on completion)
    OWNER   REFUND  −earning     (earning clawed back after a refund ruling)

An entry is appended PENDING while its rental transition is in flight, then
moved once to SETTLED (transition committed) or FAILED (transition rolled
back). A capture that went through at the gateway but whose transition
was rolled back is refunded and moved to VOIDED together with its
compensating refund entry. Terminal entries are never touched again;
corrections are new entries.

The commit of a transition records the ids of its entries in the rental
history. Until the follow-up settle lands, readers that need settled money
(the weekly settlement) treat such a PENDING entry as settled at the commit
time, so nothing falls between the two writes.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Iterable

from pymongo import ASCENDING

from rentalhub.config.database import db_config, Collections
from rentalhub.database.db_operations import db_ops
from rentalhub.models.transaction import TransactionType, TransactionStatus, LedgerParty
from rentalhub.utils.errors import InvariantViolation
from rentalhub.utils.helpers import utcnow

logger = logging.getLogger(__name__)

LIVE_STATUSES = [TransactionStatus.PENDING.value, TransactionStatus.SETTLED.value]


def completion_payout_key(rental_id: str) -> str:
    return f"{rental_id}:completion-payout"


def charge_key(rental_id: str) -> str:
    return f"{rental_id}:charge"


def renter_refund_key(rental_id: str) -> str:
    return f"{rental_id}:renter-refund"


def owner_clawback_key(rental_id: str) -> str:
    return f"{rental_id}:owner-clawback"


async def has_live_entry(idempotency_key: str) -> bool:
    """True when an entry with this key is pending or settled"""
    count = await db_ops.count(Collections.RENTAL_TRANSACTIONS, {
        "idempotency_key": idempotency_key,
        "status": {"$in": LIVE_STATUSES},
    })
    return count > 0


async def append_pending(
    rental: Dict,
    party: LedgerParty,
    tx_type: TransactionType,
    amount: int,
    idempotency_key: str,
    description: str,
) -> Dict:
    """
    Append a PENDING entry. Must run under the rental's transition lease,
    which is what makes the duplicate check below race free.
    """
    if await has_live_entry(idempotency_key):
        logger.critical("Double post detected for %s", idempotency_key)
        raise InvariantViolation(f"Ledger entry {idempotency_key} already posted")

    entry = {
        "rental_id": str(rental["_id"]),
        "owner_id": rental["owner_id"],
        "renter_id": rental["renter_id"],
        "party": party.value,
        "type": tx_type.value,
        "amount": int(amount),
        "currency": rental.get("currency", "VND"),
        "status": TransactionStatus.PENDING.value,
        "description": description,
        "idempotency_key": idempotency_key,
        "external_reference": None,
        "settled_at": None,
        "failure_reason": None,
    }
    created = await db_ops.create(Collections.RENTAL_TRANSACTIONS, entry)
    logger.info("Ledger %s %s %s %s for rental %s (pending)",
                party.value, tx_type.value, amount, entry["currency"], entry["rental_id"])
    return created


async def attach_reference(entry: Dict, reference: Optional[str]) -> None:
    """Record the gateway transaction id on a still-pending entry"""
    coll = db_config.get_collection(Collections.RENTAL_TRANSACTIONS)
    await coll.update_one(
        {"_id": entry["_id"], "status": TransactionStatus.PENDING.value},
        {"$set": {"external_reference": reference, "updated_at": utcnow()}},
    )
    entry["external_reference"] = reference


async def settle(entries: Iterable[Dict], settled_at: datetime) -> None:
    ids = [e["_id"] for e in entries]
    if not ids:
        return
    coll = db_config.get_collection(Collections.RENTAL_TRANSACTIONS)
    result = await coll.update_many(
        {"_id": {"$in": ids}, "status": TransactionStatus.PENDING.value},
        {"$set": {"status": TransactionStatus.SETTLED.value, "settled_at": settled_at, "updated_at": utcnow()}},
    )
    if result.modified_count != len(ids):
        logger.critical("Settled %d of %d ledger entries %s", result.modified_count, len(ids), ids)
        raise InvariantViolation("Ledger entries changed state while pending")


async def fail(entries: Iterable[Dict], reason: str) -> None:
    ids = [e["_id"] for e in entries]
    if not ids:
        return
    coll = db_config.get_collection(Collections.RENTAL_TRANSACTIONS)
    await coll.update_many(
        {"_id": {"$in": ids}, "status": TransactionStatus.PENDING.value},
        {"$set": {"status": TransactionStatus.FAILED.value, "failure_reason": reason, "updated_at": utcnow()}},
    )
    logger.warning("Marked %d ledger entr%s failed: %s", len(ids), "y" if len(ids) == 1 else "ies", reason)


def void_key(entry: Dict) -> str:
    return f"{entry['idempotency_key']}:void:{entry['_id']}"


async def void_capture(entry: Dict, refund_reference: Optional[str], reason: str) -> Dict:
    """
    Close a still-pending CHARGE whose money was captured and then handed
    back because its transition rolled back. The charge and its
    compensating refund are both VOIDED, so neither counts toward a balance.
    """
    coll = db_config.get_collection(Collections.RENTAL_TRANSACTIONS)
    await coll.update_one(
        {"_id": entry["_id"], "status": TransactionStatus.PENDING.value},
        {"$set": {"status": TransactionStatus.VOIDED.value, "failure_reason": reason, "updated_at": utcnow()}},
    )
    compensation = await db_ops.create(Collections.RENTAL_TRANSACTIONS, {
        "rental_id": entry["rental_id"],
        "owner_id": entry["owner_id"],
        "renter_id": entry["renter_id"],
        "party": entry["party"],
        "type": TransactionType.REFUND.value,
        "amount": -int(entry["amount"]),
        "currency": entry["currency"],
        "status": TransactionStatus.VOIDED.value,
        "description": f"Refund of capture {entry['external_reference']} after rollback",
        "idempotency_key": void_key(entry),
        "external_reference": refund_reference,
        "settled_at": None,
        "failure_reason": reason,
    })
    logger.warning("Voided capture %s of rental %s (refund %s)",
                   entry["external_reference"], entry["rental_id"], refund_reference)
    return compensation


async def list_for_rental(rental_id: str) -> List[Dict]:
    return await db_ops.get_all(
        Collections.RENTAL_TRANSACTIONS,
        {"rental_id": rental_id},
        limit=500,
        sort=[("created_at", ASCENDING), ("_id", ASCENDING)],
    )


async def find_settled(rental_id: str, idempotency_key: str) -> Optional[Dict]:
    return await db_ops.get_one(Collections.RENTAL_TRANSACTIONS, {
        "rental_id": rental_id,
        "idempotency_key": idempotency_key,
        "status": TransactionStatus.SETTLED.value,
    })


async def net_for_party(rental_id: str, party: LedgerParty) -> int:
    """Sum of the settled amounts of one party of a rental"""
    entries = await db_ops.get_all(Collections.RENTAL_TRANSACTIONS, {
        "rental_id": rental_id,
        "party": party.value,
        "status": TransactionStatus.SETTLED.value,
    }, limit=500)
    return sum(int(e["amount"]) for e in entries)


async def owner_payouts_in_window(owner_id: str, start: datetime, end: datetime, before: datetime) -> List[Dict]:
    """Completion payouts settled in [start, end) and strictly before `before`"""
    upper = min(end, before)
    query = {
        "owner_id": owner_id,
        "party": LedgerParty.OWNER.value,
        "type": TransactionType.PAYOUT.value,
    }
    settled = await db_ops.get_all(Collections.RENTAL_TRANSACTIONS, {
        **query,
        "status": TransactionStatus.SETTLED.value,
        "settled_at": {"$gte": start, "$lt": upper},
    }, limit=10000)
    committed = await _committed_pending(query, start, upper)
    return sorted(settled + committed, key=lambda e: e["settled_at"])


async def owner_corrections(rental_ids: List[str], before: datetime) -> List[Dict]:
    """Owner-side entries other than payouts (claw-backs, adjustments) settled before `before`"""
    if not rental_ids:
        return []
    query = {
        "rental_id": {"$in": rental_ids},
        "party": LedgerParty.OWNER.value,
        "type": {"$ne": TransactionType.PAYOUT.value},
    }
    settled = await db_ops.get_all(Collections.RENTAL_TRANSACTIONS, {
        **query,
        "status": TransactionStatus.SETTLED.value,
        "settled_at": {"$lt": before},
    }, limit=10000)
    return settled + await _committed_pending(query, None, before)


async def owners_with_payouts(start: datetime, end: datetime) -> List[str]:
    query = {
        "party": LedgerParty.OWNER.value,
        "type": TransactionType.PAYOUT.value,
    }
    coll = db_config.get_collection(Collections.RENTAL_TRANSACTIONS)
    owner_ids = set(await coll.distinct("owner_id", {
        **query,
        "status": TransactionStatus.SETTLED.value,
        "settled_at": {"$gte": start, "$lt": end},
    }))
    owner_ids.update(e["owner_id"] for e in await _committed_pending(query, start, end))
    return sorted(owner_ids)


# ─── committed but not yet settled ────────────────────────────────────────────

async def committed_at(entry: Dict) -> Optional[datetime]:
    """Commit time of the transition that posted a PENDING entry, None while it is in flight"""
    entry_id = str(entry["_id"])
    rental = await db_ops.get_by_id(Collections.RENTALS, entry["rental_id"])
    if not rental:
        return None
    for change in rental.get("status_history", []):
        if entry_id in change.get("ledger_entry_ids", []):
            return change["at"]
    return None


async def _committed_pending(query: Dict, start: Optional[datetime], upper: datetime) -> List[Dict]:
    """
    PENDING entries matching `query` whose transition committed in
    [start, upper). `settled_at` is filled with the commit time, which is
    the value the follow-up settle will write.
    """
    pending = await db_ops.get_all(Collections.RENTAL_TRANSACTIONS, {
        **query,
        "status": TransactionStatus.PENDING.value,
    }, limit=10000)
    found = []
    for entry in pending:
        at = await committed_at(entry)
        if at is None or at >= upper or (start is not None and at < start):
            continue
        entry["settled_at"] = at
        found.append(entry)
    return found
