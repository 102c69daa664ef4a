"""
External collaborators consumed by the engine: payment execution, file
storage, notification dispatch and owner KYC lookup.

Only the contracts matter to the engine. The default implementations are
what the service runs with locally; deployments and tests swap them through
the `services` registry.
"""
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Optional, Dict, Any

from rentalhub.config.database import Collections
from rentalhub.config.settings import settings
from rentalhub.database.db_operations import db_ops
from rentalhub.utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None


class PaymentGateway:
    """Moves money for a rental. Never raises for a declined payment; returns success=False."""

    async def capture(self, rental_id: str, amount: int, currency: str) -> PaymentResult:
        raise NotImplementedError

    async def refund(self, rental_id: str, amount: int, currency: str, reference: Optional[str]) -> PaymentResult:
        raise NotImplementedError


class SimulatedPaymentGateway(PaymentGateway):
    """Accepts every request and hands back a synthetic transaction id"""

    async def capture(self, rental_id: str, amount: int, currency: str) -> PaymentResult:
        return PaymentResult(True, f"SIM-CAP-{uuid.uuid4().hex[:12].upper()}")

    async def refund(self, rental_id: str, amount: int, currency: str, reference: Optional[str]) -> PaymentResult:
        return PaymentResult(True, f"SIM-REF-{uuid.uuid4().hex[:12].upper()}")


class FileStorage:
    async def store(self, data: bytes, filename: str) -> str:
        raise NotImplementedError


class LocalFileStorage(FileStorage):
    """Writes into the uploads directory mounted at /uploads"""

    def __init__(self, root: Optional[str] = None):
        self.root = root or settings.UPLOAD_DIR

    async def store(self, data: bytes, filename: str) -> str:
        os.makedirs(self.root, exist_ok=True)
        file_ext = os.path.splitext(filename or "")[1]
        unique_filename = f"{uuid.uuid4().hex}{file_ext}"
        with open(os.path.join(self.root, unique_filename), "wb") as buffer:
            buffer.write(data)
        return f"/uploads/{unique_filename}"


class Notifier:
    async def notify(self, user_id: str, template: str, payload: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class OutboxNotifier(Notifier):
    """Queues notifications for the push/SMS workers"""

    async def notify(self, user_id: str, template: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await db_ops.create(Collections.NOTIFICATIONS, {
            "user_id": user_id,
            "template": template,
            "payload": payload or {},
            "status": "queued",
            "queued_at": utcnow(),
        })


class KycVerifier:
    async def is_verified(self, user_id: str) -> bool:
        raise NotImplementedError


class UserRecordKycVerifier(KycVerifier):
    """Reads the verification outcome stored on the user record"""

    async def is_verified(self, user_id: str) -> bool:
        user = await db_ops.get_by_id(Collections.USERS, user_id)
        return bool(user) and user.get("kyc_status") == "VERIFIED"


class ServiceRegistry:
    """Active collaborator implementations"""

    def __init__(self):
        self.reset()

    def reset(self):
        self.payments: PaymentGateway = SimulatedPaymentGateway()
        self.storage: FileStorage = LocalFileStorage()
        self.notifier: Notifier = OutboxNotifier()
        self.kyc: KycVerifier = UserRecordKycVerifier()


services = ServiceRegistry()


async def dispatch_notification(user_id: str, template: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Fire-and-forget: a failed notification never fails the operation that triggered it"""
    try:
        await services.notifier.notify(user_id, template, payload)
    except Exception:
        logger.exception("Notification %s to user %s failed", template, user_id)
