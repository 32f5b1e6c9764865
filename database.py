"""
Database Helper Functions

MongoDB helpers wrapped in a Store object that is created once at startup and
handed to every component that needs persistence.
"""

import logging
from datetime import datetime, timezone
from typing import Union, Optional, Dict, Any, List

from bson import ObjectId
from pymongo import MongoClient, ReturnDocument
from pymongo.database import Database
from pydantic import BaseModel

from config import Settings
from errors import InternalError

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> Optional[Database]:
    if settings.database_url and settings.database_name:
        client = MongoClient(settings.database_url)
        logger.info(f"Connected to MongoDB database '{settings.database_name}'")
        return client[settings.database_name]
    logger.warning("DATABASE_URL or DATABASE_NAME not set; database is unavailable")
    return None


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def to_object_id(_id: str) -> Optional[ObjectId]:
    if isinstance(_id, ObjectId):
        return _id
    if not isinstance(_id, str) or not ObjectId.is_valid(_id):
        return None
    return ObjectId(_id)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    d = dict(doc)
    if "_id" in d:
        d["_id"] = str(d["_id"])  # convert ObjectId to string
    return d


class Store:
    def __init__(self, db: Optional[Database]):
        self.db = db

    def _ensure_db(self):
        if self.db is None:
            raise InternalError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    # CRUD helpers

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        self._ensure_db()
        payload = _to_dict(data)
        now = utcnow()
        payload['created_at'] = now
        payload['updated_at'] = now
        result = self.db[collection_name].insert_one(payload)
        return str(result.inserted_id)

    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                      sort: Optional[list] = None, skip: Optional[int] = None) -> List[dict]:
        self._ensure_db()
        cursor = self.db[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(int(skip))
        if limit:
            cursor = cursor.limit(int(limit))
        return [serialize_doc(doc) for doc in cursor]

    def find_one(self, collection_name: str, filter_dict: dict, projection: Optional[dict] = None) -> Optional[dict]:
        self._ensure_db()
        return serialize_doc(self.db[collection_name].find_one(filter_dict, projection))

    def get_document_by_id(self, collection_name: str, _id: str, projection: Optional[dict] = None) -> Optional[dict]:
        oid = to_object_id(_id)
        if oid is None:
            return None
        return self.find_one(collection_name, {"_id": oid}, projection)

    def count_documents(self, collection_name: str, filter_dict: Optional[dict] = None) -> int:
        self._ensure_db()
        return self.db[collection_name].count_documents(filter_dict or {})

    def update_document(self, collection_name: str, _id: str, update_data: Union[BaseModel, Dict[str, Any]],
                        where: Optional[dict] = None) -> bool:
        """Set fields on one document; `where` adds conditions the document must also meet."""
        self._ensure_db()
        oid = to_object_id(_id)
        if oid is None:
            return False
        update = {"$set": _to_dict(update_data)}
        update["$set"]["updated_at"] = utcnow()
        result = self.db[collection_name].update_one({"_id": oid, **(where or {})}, update)
        return result.matched_count > 0

    def update_and_get(self, collection_name: str, _id: str, update_data: Dict[str, Any]) -> Optional[dict]:
        self._ensure_db()
        oid = to_object_id(_id)
        if oid is None:
            return None
        update = {"$set": {**_to_dict(update_data), "updated_at": utcnow()}}
        doc = self.db[collection_name].find_one_and_update({"_id": oid}, update, return_document=ReturnDocument.AFTER)
        return serialize_doc(doc)

    def increment(self, collection_name: str, _id: str, field: str, amount: int,
                  where: Optional[dict] = None) -> bool:
        self._ensure_db()
        oid = to_object_id(_id)
        if oid is None:
            return False
        result = self.db[collection_name].update_one(
            {"_id": oid, **(where or {})},
            {"$inc": {field: amount}, "$set": {"updated_at": utcnow()}},
        )
        return result.modified_count > 0

    def delete_document(self, collection_name: str, _id: str) -> bool:
        self._ensure_db()
        oid = to_object_id(_id)
        if oid is None:
            return False
        result = self.db[collection_name].delete_one({"_id": oid})
        return result.deleted_count > 0

    def delete_documents(self, collection_name: str, filter_dict: dict) -> int:
        self._ensure_db()
        return self.db[collection_name].delete_many(filter_dict).deleted_count

    def ensure_indexes(self):
        if self.db is None:
            return
        self.db["user"].create_index("email", unique=True)
        self.db["payment"].create_index("payment_intent_id", unique=True)
        self.db["cart"].create_index("user_id", unique=True)
        self.db["cartitem"].create_index("cart_id")
        self.db["order"].create_index([("user_id", 1), ("created_at", -1)])
