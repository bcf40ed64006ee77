"""
MongoDB access for SkillSwap

Connection settings come from DATABASE_URL / DATABASE_NAME. When either is
missing, `db` stays None and the API reports it on /test.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from pymongo import ASCENDING, DESCENDING, MongoClient

load_dotenv()

logger = logging.getLogger("skillswap.database")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

USERS = "users"
FRIENDSHIPS = "friendships"
MESSAGES = "messages"
SWAP_REQUESTS = "swapRequests"
RATINGS = "ratings"

db = None
if DATABASE_URL and DATABASE_NAME:
    try:
        client = MongoClient(DATABASE_URL)
        db = client[DATABASE_NAME]
    except Exception as e:
        logger.error("Could not connect to MongoDB: %s", e)
        db = None


def _now():
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data) -> str:
    """Insert a document (dict or pydantic model) and return its id as a string.
    createdAt / updatedAt are stamped here.
    """
    if db is None:
        raise RuntimeError("Database not available")
    if hasattr(data, "model_dump"):
        data = data.model_dump()
    doc = dict(data)
    now = _now()
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, projection: Optional[dict] = None):
    if db is None:
        raise RuntimeError("Database not available")
    cursor = db[collection_name].find(filter_dict or {}, projection)
    docs = []
    for d in cursor:
        d["id"] = str(d.pop("_id"))
        docs.append(d)
    return docs


def ensure_indexes(database=None):
    database = database if database is not None else db
    if database is None:
        return
    database[USERS].create_index("email", unique=True, name="email_unique_idx")
    # one friendship document per unordered pair
    database[FRIENDSHIPS].create_index("pairKey", unique=True, name="pair_unique_idx")
    database[FRIENDSHIPS].create_index([("recipient", ASCENDING), ("status", ASCENDING)], name="recipient_status_idx")
    database[MESSAGES].create_index([("conversationId", ASCENDING), ("createdAt", ASCENDING)], name="conversation_ts_idx")
    database[SWAP_REQUESTS].create_index([("fromUserId", ASCENDING), ("createdAt", DESCENDING)], name="swap_from_idx")
    database[SWAP_REQUESTS].create_index([("toUserId", ASCENDING), ("createdAt", DESCENDING)], name="swap_to_idx")
    database[RATINGS].create_index([("raterId", ASCENDING), ("swapRequestId", ASCENDING)], unique=True,
                                   name="rating_unique_idx")
    database[RATINGS].create_index("ratedUserId", name="ratings_rated_idx")
