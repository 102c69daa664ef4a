"""
Seed script to create the first admin, a verified demo owner with one
vehicle, and a demo renter
"""
import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from rentalhub.utils.auth import hash_password
from rentalhub.utils.helpers import utcnow
import os
from dotenv import load_dotenv

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "rentalhub_db")

SEED_USERS = [
    {"phone": "0900000000", "full_name": "System Administrator", "role": "admin", "password": "admin123"},
    {"phone": "0911111111", "full_name": "Demo Owner", "role": "owner", "password": "owner123"},
    {"phone": "0922222222", "full_name": "Demo Renter", "role": "renter", "password": "renter123"},
]


async def seed_accounts():
    """Create the seed accounts; existing phone numbers are left untouched"""
    client = AsyncIOMotorClient(MONGO_URI)
    db = client[DATABASE_NAME]
    users_collection = db["users"]
    vehicles_collection = db["vehicles"]

    print("🌱 Seeding users...")
    owner_id = None
    for seed in SEED_USERS:
        existing = await users_collection.find_one({"phone": seed["phone"]})
        if existing:
            print(f"⚠️  {seed['role']} {seed['phone']} already exists. Skipping...")
            user_id = existing["_id"]
        else:
            now = utcnow()
            result = await users_collection.insert_one({
                "phone": seed["phone"],
                "full_name": seed["full_name"],
                "role": seed["role"],
                "kyc_status": "VERIFIED",
                "is_active": True,
                "password": hash_password(seed["password"]),
                "created_at": now,
                "updated_at": now,
            })
            user_id = result.inserted_id
            print(f"✅ Created {seed['role']}: {seed['phone']} / {seed['password']}")
        if seed["role"] == "owner":
            owner_id = str(user_id)

    if not await vehicles_collection.find_one({"owner_id": owner_id}):
        now = utcnow()
        await vehicles_collection.insert_one({
            "owner_id": owner_id,
            "brand": "Honda",
            "model": "Vision",
            "type": "Xe tay ga",
            "price_per_day": 120000,
            "deposit_amount": 500000,
            "currency": "VND",
            "status": "VERIFIED",
            "created_at": now,
            "updated_at": now,
        })
        print("✅ Created demo vehicle: Honda Vision (Xe tay ga)")

    print("\n🎉 Seed data created successfully!")
    print("⚠️  IMPORTANT: Change the default passwords after first login!")

    client.close()

if __name__ == "__main__":
    asyncio.run(seed_accounts())
