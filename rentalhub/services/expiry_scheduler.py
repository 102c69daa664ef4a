"""
Payment Expiry Scheduler
Runs as a background asyncio task on app startup.
Every EXPIRY_SCAN_INTERVAL_SECONDS it cancels rentals that stayed in
PENDING_PAYMENT longer than PENDING_PAYMENT_TIMEOUT_MINUTES. Cancellation
goes through the state machine like any other transition.
"""
import asyncio
import logging

from rentalhub.services.rental_service import expire_pending_payments

logger = logging.getLogger(__name__)


async def expire_overdue_rentals() -> None:
    try:
        expired = await expire_pending_payments()
    except Exception as exc:
        logger.error("❌ Error expiring unpaid rentals: %s", exc)
        return
    if expired:
        print(f"⏰ Payment Expiry Scheduler: {expired} rental(s) cancelled.")


async def run_expiry_scheduler(interval_seconds: int = 60) -> None:
    """
    Infinite loop that calls expire_overdue_rentals() every `interval_seconds`.
    Launched as a background task from the app lifespan.
    """
    print(f"🕐 Payment Expiry Scheduler started (interval: {interval_seconds}s)")
    await expire_overdue_rentals()
    while True:
        await asyncio.sleep(interval_seconds)
        await expire_overdue_rentals()
