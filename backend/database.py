from motor.motor_asyncio import AsyncIOMotorClient

from config.env import MONGO_URI, STORE_BACKEND

client = None
db = None
_store = None


def get_client():
    global client, db
    if client is None:
        if not MONGO_URI:
            raise RuntimeError("MONGODB_URI not set")
        client = AsyncIOMotorClient(MONGO_URI)
        db = client.get_default_database()
    return client


def get_db():
    get_client()
    return db


def get_store():
    """
    Order store for the configured backend.
    Mongo needs a replica set: every transition runs in a multi-document transaction.
    """
    global _store
    if _store is None:
        if STORE_BACKEND == "memory":
            from utils.memory_store import MemoryStore
            _store = MemoryStore()
        else:
            from utils.mongo_store import MongoStore
            _store = MongoStore(get_client(), get_db())
    return _store
