import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase

from marketchat.core.config import Settings, get_settings
from marketchat.core.errors import translate_store_errors

logger = logging.getLogger(__name__)

T = TypeVar("T")

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo(settings: Optional[Settings] = None) -> AsyncIOMotorDatabase:
    global _client, _db
    settings = settings or get_settings()
    _client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    _db = _client[settings.MONGODB_DB]
    logger.info("Connected to MongoDB database %s", settings.MONGODB_DB)
    return _db


async def close_mongo_connection() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
    _db = None


def get_database() -> AsyncIOMotorDatabase:
    if _db is None:
        raise RuntimeError("MongoDB is not connected; call connect_to_mongo() first")
    return _db


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()


class TransactionRunner:
    """Runs a group of writes as one atomic batch.

    With transactions enabled the callback receives a session inside an open
    transaction and every write must pass ``session=session``. Otherwise it
    receives ``None`` and the writes are applied in order (standalone servers).
    Transient transaction failures are not retried here.
    """

    def __init__(self, client: Optional[Any], enabled: bool) -> None:
        self._client = client
        self.enabled = bool(enabled and client is not None)

    @translate_store_errors
    async def run(self, callback: Callable[[Optional[AsyncIOMotorClientSession]], Awaitable[T]]) -> T:
        if not self.enabled:
            return await callback(None)
        async with await self._client.start_session() as session:
            async with session.start_transaction():
                return await callback(session)


def get_transaction_runner(db: AsyncIOMotorDatabase, settings: Optional[Settings] = None) -> TransactionRunner:
    settings = settings or get_settings()
    return TransactionRunner(getattr(db, "client", None), settings.MONGO_TRANSACTIONS)
