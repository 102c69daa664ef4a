"""
Database operations - Generic CRUD functions for all collections
"""
from typing import List, Dict, Optional, Any, Tuple
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from rentalhub.config.database import db_config
from rentalhub.utils.helpers import utcnow


def to_object_id(doc_id: Any) -> Optional[ObjectId]:
    """Parse an id coming from a route or a weak reference; None when malformed"""
    if isinstance(doc_id, ObjectId):
        return doc_id
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        return None


class DBOperations:
    """Generic database operations for MongoDB collections"""
    
    @staticmethod
    async def get_all(
        collection_name: str,
        filter_query: Dict = None,
        skip: int = 0,
        limit: int = 100,
        sort: Optional[List[Tuple[str, int]]] = None,
    ) -> List[Dict]:
        """Get all documents from a collection with optional filtering"""
        collection = db_config.get_collection(collection_name)
        filter_query = filter_query or {}
        cursor = collection.find(filter_query)
        if sort:
            cursor = cursor.sort(sort)
        cursor = cursor.skip(skip).limit(limit)
        documents = await cursor.to_list(length=limit)
        return documents
    
    @staticmethod
    async def get_by_id(collection_name: str, doc_id: str) -> Optional[Dict]:
        """Get a single document by ID"""
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        collection = db_config.get_collection(collection_name)
        return await collection.find_one({"_id": oid})
    
    @staticmethod
    async def get_one(collection_name: str, filter_query: Dict, sort: Optional[List[Tuple[str, int]]] = None) -> Optional[Dict]:
        """Get a single document by filter query"""
        collection = db_config.get_collection(collection_name)
        document = await collection.find_one(filter_query, sort=sort)
        return document
    
    @staticmethod
    async def create(collection_name: str, document: Dict) -> Dict:
        """Create a new document"""
        collection = db_config.get_collection(collection_name)
        now = utcnow()
        document.setdefault("created_at", now)
        document.setdefault("updated_at", now)
        result = await collection.insert_one(document)
        document["_id"] = result.inserted_id
        return document
    
    @staticmethod
    async def update(collection_name: str, doc_id: str, update_data: Dict) -> Optional[Dict]:
        """Update a document by ID"""
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        collection = db_config.get_collection(collection_name)
        update_data["updated_at"] = utcnow()
        return await collection.find_one_and_update(
            {"_id": oid},
            {"$set": update_data},
            return_document=ReturnDocument.AFTER,
        )
    
    @staticmethod
    async def compare_and_set(collection_name: str, filter_query: Dict, update: Dict) -> Optional[Dict]:
        """
        Apply `update` only if a document still matches `filter_query`.
        Returns the updated document, or None when another writer got there first.
        """
        collection = db_config.get_collection(collection_name)
        update.setdefault("$set", {}).setdefault("updated_at", utcnow())
        return await collection.find_one_and_update(
            filter_query,
            update,
            return_document=ReturnDocument.AFTER,
        )
    
    @staticmethod
    async def delete(collection_name: str, doc_id: str) -> bool:
        """Delete a document by ID"""
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        collection = db_config.get_collection(collection_name)
        result = await collection.delete_one({"_id": oid})
        return result.deleted_count > 0
    
    @staticmethod
    async def count(collection_name: str, filter_query: Dict = None) -> int:
        """Count documents in a collection"""
        collection = db_config.get_collection(collection_name)
        filter_query = filter_query or {}
        count = await collection.count_documents(filter_query)
        return count

db_ops = DBOperations()
