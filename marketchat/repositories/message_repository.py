from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from marketchat.core.errors import translate_store_errors
from marketchat.models.message import MessageDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    @translate_store_errors
    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", DESCENDING)], unique=True)
        await self.collection.create_index([("conversation_id", ASCENDING), ("read", ASCENDING)])

    @translate_store_errors
    async def insert(self, doc: MessageDocument, session: Optional[AsyncIOMotorClientSession] = None) -> str:
        result = await self.collection.insert_one(doc, session=session)
        return str(result.inserted_id)

    @translate_store_errors
    async def get_by_id(self, conversation_id: str, message_id: str) -> Optional[MessageDocument]:
        if not ObjectId.is_valid(message_id):
            return None
        doc = await self.collection.find_one({"_id": ObjectId(message_id), "conversation_id": conversation_id})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    @translate_store_errors
    async def get_page(
        self,
        conversation_id: str,
        limit: int = 20,
        before_seq: Optional[int] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Newest-first page of messages older than ``before_seq``.

        The returned cursor is the ``seq`` of the last item, and is only set
        when at least one older message exists.
        """
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if before_seq is not None:
            query["seq"] = {"$lt": before_seq}
        cur = self.collection.find(query).sort([("seq", DESCENDING)]).limit(limit + 1)
        items = await cur.to_list(length=limit + 1)
        has_more = len(items) > limit
        items = items[:limit]
        for it in items:
            it["_id"] = str(it.get("_id"))
        next_cursor = str(items[-1]["seq"]) if has_more and items else None
        return items, next_cursor

    @translate_store_errors
    async def mark_read(
        self,
        conversation_id: str,
        reader_id: str,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> int:
        result = await self.collection.update_many(
            {"conversation_id": conversation_id, "read": False, "sender_id": {"$ne": reader_id}},
            {"$set": {"read": True}},
            session=session,
        )
        return result.modified_count or 0

    @translate_store_errors
    async def delete(self, message_id: str, session: Optional[AsyncIOMotorClientSession] = None) -> bool:
        result = await self.collection.delete_one({"_id": ObjectId(message_id)}, session=session)
        return bool(result.deleted_count)
