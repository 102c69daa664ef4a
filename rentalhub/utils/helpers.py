"""
Helper utility functions
"""
from bson import ObjectId
from typing import Dict, List
from datetime import datetime, timezone
import pytz

from rentalhub.config.settings import settings

LOCAL_TZ = pytz.timezone(settings.SETTLEMENT_TIMEZONE)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form MongoDB hands datetimes back in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware or naive (assumed UTC) datetime to naive UTC"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def serialize_doc(doc: Dict) -> Dict:
    """Convert MongoDB document to JSON-serializable format"""
    if doc is None:
        return None
    
    if "_id" in doc and isinstance(doc["_id"], ObjectId):
        doc["_id"] = str(doc["_id"])
    
    # Convert any nested ObjectIds or datetimes
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            doc[key] = str(value)
        elif isinstance(value, datetime):
            if value.tzinfo is None:
                utc_dt = pytz.utc.localize(value)
                doc[key] = utc_dt.astimezone(LOCAL_TZ).isoformat()
            else:
                doc[key] = value.astimezone(LOCAL_TZ).isoformat()
        elif isinstance(value, list):
            doc[key] = [serialize_doc(item) if isinstance(item, dict) else item for item in value]
        elif isinstance(value, dict):
            doc[key] = serialize_doc(value)
    
    return doc

def serialize_docs(docs: List[Dict]) -> List[Dict]:
    """Convert list of MongoDB documents to JSON-serializable format"""
    return [serialize_doc(doc) for doc in docs]
