"""
Database configuration and connection management for MongoDB
"""
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from typing import Optional
import logging
import os
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

class DatabaseConfig:
    """MongoDB database configuration"""
    
    def __init__(self):
        self.MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
        self.DATABASE_NAME = os.getenv("DATABASE_NAME", "rentalhub_db")
        self.client: Optional[AsyncIOMotorClient] = None
        self.database = None
    
    async def connect_db(self):
        """Connect to MongoDB"""
        try:
            self.client = AsyncIOMotorClient(self.MONGO_URI)
            self.database = self.client[self.DATABASE_NAME]
            # Test connection
            await self.client.admin.command('ping')
            print(f"✅ Connected to MongoDB: {self.DATABASE_NAME}")
        except Exception as e:
            print(f"❌ Error connecting to MongoDB: {e}")
            raise
        await ensure_indexes()
    
    def use_client(self, client, database_name: Optional[str] = None):
        """Attach an already constructed motor-compatible client (scripts, tests)"""
        self.client = client
        self.database = client[database_name or self.DATABASE_NAME]
    
    async def close_db(self):
        """Close MongoDB connection"""
        if self.client:
            self.client.close()
            print("✅ MongoDB connection closed")
    
    def get_collection(self, collection_name: str):
        """Get a specific collection"""
        if self.database is None:
            raise Exception("Database not connected")
        return self.database[collection_name]

# Global database instance
db_config = DatabaseConfig()

# Collection names
class Collections:
    USERS = "users"
    VEHICLES = "vehicles"
    DISCOUNT_CODES = "discount_codes"

    # Rental lifecycle
    RENTALS = "rentals"
    RENTAL_DISPUTES = "rental_disputes"
    RENTAL_EVIDENCES = "rental_evidences"
    RENTAL_TRANSACTIONS = "rental_transactions"

    # Fee policy
    FEE_SETTINGS = "fee_settings"
    COMMISSION_SETTINGS = "commission_settings"

    # Settlement
    OWNER_COMMISSIONS = "owner_commissions"
    COMMISSION_PAYMENTS = "commission_payments"

    # Outbox of the default notifier
    NOTIFICATIONS = "notifications"


async def ensure_indexes():
    """Create the indexes the engine relies on for lookups and uniqueness"""
    rentals = db_config.get_collection(Collections.RENTALS)
    await rentals.create_index([("renter_id", ASCENDING), ("created_at", DESCENDING)])
    await rentals.create_index([("owner_id", ASCENDING), ("status", ASCENDING)])
    await rentals.create_index([("status", ASCENDING), ("created_at", ASCENDING)])

    ledger = db_config.get_collection(Collections.RENTAL_TRANSACTIONS)
    await ledger.create_index([("rental_id", ASCENDING), ("created_at", ASCENDING)])
    await ledger.create_index([("owner_id", ASCENDING), ("settled_at", ASCENDING)])
    await ledger.create_index([("idempotency_key", ASCENDING)])

    disputes = db_config.get_collection(Collections.RENTAL_DISPUTES)
    await disputes.create_index([("rental_id", ASCENDING), ("status", ASCENDING)])

    evidences = db_config.get_collection(Collections.RENTAL_EVIDENCES)
    await evidences.create_index([("rental_id", ASCENDING), ("order", ASCENDING)], unique=True)

    commissions = db_config.get_collection(Collections.OWNER_COMMISSIONS)
    await commissions.create_index(
        [("owner_id", ASCENDING), ("week_start_date", ASCENDING)], unique=True
    )

    for name in (Collections.FEE_SETTINGS, Collections.COMMISSION_SETTINGS):
        await db_config.get_collection(name).create_index([("version", ASCENDING)], unique=True)

    payments = db_config.get_collection(Collections.COMMISSION_PAYMENTS)
    await payments.create_index([("commission_id", ASCENDING), ("created_at", ASCENDING)])
    await payments.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    logger.info("MongoDB indexes ensured")
