"""
Database bootstrap

Connects to MongoDB when DATABASE_URL and DATABASE_NAME are set; otherwise
the API runs on the in-memory store. A database that is configured but
unreachable does not stop the process: the failure is logged and requests
that need it answer 503 until it comes back.
"""
import logging

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import DATABASE_URL, DATABASE_NAME
from errors import UpstreamUnavailable
from store import MemoryStore, MongoStore

logger = logging.getLogger(__name__)

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    try:
        _client = MongoClient(DATABASE_URL, tz_aware=True, serverSelectionTimeoutMS=5000)
        db = _client[DATABASE_NAME]
    except PyMongoError as e:
        logger.error(f"MongoDB client could not be created: {e}")


def create_store():
    """Pick the store for this process and prepare its indexes."""
    if db is None:
        logger.info("DATABASE_URL/DATABASE_NAME not set, using in-memory store")
        store = MemoryStore()
    else:
        store = MongoStore(db)
    try:
        store.ensure_indexes()
    except UpstreamUnavailable:
        logger.warning("Database unreachable at startup, continuing in degraded mode")
    return store
