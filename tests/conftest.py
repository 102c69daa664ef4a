"""
Shared fixtures: an in-memory MongoDB (mongomock-motor) behind db_config,
seeded users/vehicles, and a recording payment gateway.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from rentalhub.config.database import db_config, ensure_indexes, Collections
from rentalhub.database.db_operations import db_ops
from rentalhub.services import rental_service
from rentalhub.services.gateways import services, PaymentGateway, PaymentResult
from rentalhub.utils.auth import create_access_token


class RecordingGateway(PaymentGateway):
    """Succeeds by default; yields to the loop once per call so concurrent requests interleave"""

    def __init__(self):
        self.captures = []
        self.refunds = []
        self.fail_capture = False
        self.fail_refund = False

    async def capture(self, rental_id, amount, currency):
        await asyncio.sleep(0)
        self.captures.append((rental_id, amount, currency))
        if self.fail_capture:
            return PaymentResult(False, error="card declined")
        return PaymentResult(True, f"CAP-{len(self.captures)}")

    async def refund(self, rental_id, amount, currency, reference):
        await asyncio.sleep(0)
        self.refunds.append((rental_id, amount, currency, reference))
        if self.fail_refund:
            return PaymentResult(False, error="refund rejected")
        return PaymentResult(True, f"REF-{len(self.refunds)}")


@pytest.fixture
async def db():
    db_config.use_client(AsyncMongoMockClient(), "rentalhub_test")
    await ensure_indexes()
    yield db_config.database
    services.reset()


@pytest.fixture
def gateway(db):
    gw = RecordingGateway()
    services.payments = gw
    return gw


async def _create_user(role, phone, kyc_status="VERIFIED"):
    return await db_ops.create(Collections.USERS, {
        "phone": phone,
        "full_name": f"{role.title()} {phone[-2:]}",
        "role": role,
        "kyc_status": kyc_status,
        "is_active": True,
    })


@pytest.fixture
async def owner(db):
    user = await _create_user("owner", "0911111111")
    return str(user["_id"])


@pytest.fixture
async def renter(db):
    user = await _create_user("renter", "0922222222")
    return str(user["_id"])


@pytest.fixture
async def admin(db):
    user = await _create_user("admin", "0900000000")
    return str(user["_id"])


@pytest.fixture
async def vehicle(owner):
    """A verified 50cc scooter at 100,000/day"""
    doc = await db_ops.create(Collections.VEHICLES, {
        "owner_id": owner,
        "brand": "Honda",
        "model": "Cub",
        "type": "Xe 50cc",
        "price_per_day": 100000,
        "deposit_amount": 500000,
        "currency": "VND",
        "status": "VERIFIED",
    })
    return str(doc["_id"])


START = datetime(2030, 3, 4, 8, 0)


@pytest.fixture
def book(renter, vehicle, gateway):
    """Create a two-day rental of the fixture vehicle"""
    async def _book(days=2, **kwargs):
        return await rental_service.create_rental(
            renter_id=renter,
            vehicle_id=vehicle,
            start_date=START,
            end_date=START + timedelta(days=days),
            **kwargs,
        )
    return _book


@pytest.fixture
def advance(renter, owner):
    """Walk a rental forward through the happy path up to `target`"""
    from rentalhub.models.rental import RentalStatus
    from rentalhub.services.rental_state_machine import state_machine

    path = [
        (RentalStatus.AWAIT_APPROVAL, renter),
        (RentalStatus.CONFIRMED, owner),
        (RentalStatus.ON_TRIP, owner),
        (RentalStatus.COMPLETED, owner),
    ]

    async def _advance(rental, target):
        rental_id = str(rental["_id"])
        current = rental
        for status, actor in path:
            current = await state_machine.transition(rental_id, status, actor)
            if status == target:
                break
        return current
    return _advance


@pytest.fixture
def auth_header():
    def _header(user_id, role):
        token = create_access_token({"sub": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _header
