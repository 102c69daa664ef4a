"""
Ledger entry models
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class TransactionType(str, Enum):
    CHARGE = "CHARGE"
    REFUND = "REFUND"
    PAYOUT = "PAYOUT"
    ADJUSTMENT = "ADJUSTMENT"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    VOIDED = "VOIDED"


class LedgerParty(str, Enum):
    RENTER = "RENTER"
    OWNER = "OWNER"


class RentalTransactionResponse(BaseModel):
    id: str = Field(alias="_id")
    rental_id: str
    owner_id: str
    party: LedgerParty
    type: TransactionType
    amount: int
    currency: str
    status: TransactionStatus
    description: Optional[str] = None
    idempotency_key: str
    external_reference: Optional[str] = None
    settled_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"populate_by_name": True}
