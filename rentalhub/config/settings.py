"""
Application settings and configuration
"""
import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    # Application
    APP_NAME = "RentalHub"
    VERSION = "1.0.0"
    DEBUG = os.getenv("DEBUG", "True") == "True"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    
    # Security
    SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
    ALGORITHM = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours
    
    # CORS
    ALLOWED_ORIGINS = os.getenv(
        "ALLOWED_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000",
    ).split(",")
    
    # Pagination
    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100

    # File Uploads
    UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))

    # Money
    CURRENCY = os.getenv("CURRENCY", "VND")

    # Rental lifecycle
    PENDING_PAYMENT_TIMEOUT_MINUTES = int(os.getenv("PENDING_PAYMENT_TIMEOUT_MINUTES", "30"))
    EXPIRY_SCAN_INTERVAL_SECONDS = int(os.getenv("EXPIRY_SCAN_INTERVAL_SECONDS", "60"))
    DISPUTE_WINDOW_HOURS = int(os.getenv("DISPUTE_WINDOW_HOURS", "72"))
    # Share of the charge returned to the renter when cancelling after the owner confirmed
    CONFIRMED_CANCEL_REFUND_RATIO = os.getenv("CONFIRMED_CANCEL_REFUND_RATIO", "0.5")
    RENTAL_LOCK_TTL_SECONDS = int(os.getenv("RENTAL_LOCK_TTL_SECONDS", "30"))

    # Weekly settlement
    SETTLEMENT_TIMEZONE = os.getenv("SETTLEMENT_TIMEZONE", "Asia/Ho_Chi_Minh")
    # Owners pay last week's commission Monday..Wednesday
    PAYMENT_DEADLINE_WEEKDAY = 2

settings = Settings()
