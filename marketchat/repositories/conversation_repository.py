import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from marketchat.core.errors import translate_store_errors
from marketchat.models.conversation import ConversationDocument, RelatedEntityDocument
from marketchat.models.participant import ParticipantDocument

logger = logging.getLogger(__name__)


def participant_key(participant_ids: Iterable[str]) -> str:
    return json.dumps(sorted(participant_ids), separators=(",", ":"))


def unread_field(participant_id: str) -> str:
    return f"unread_counts.{participant_id}"


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    @translate_store_errors
    async def ensure_indexes(self, unique_key: bool = True) -> None:
        await self.collection.create_index([("participant_ids", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING)])
        await self.collection.create_index([("participant_key", ASCENDING)], unique=unique_key)

    @translate_store_errors
    async def get_by_id(self, conversation_id: str, session: Optional[AsyncIOMotorClientSession] = None) -> Optional[ConversationDocument]:
        oid = self._to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid}, session=session)
        return self._normalize(doc)

    @translate_store_errors
    async def find_by_participants(self, participant_ids: List[str]) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"participant_key": participant_key(participant_ids)})
        return self._normalize(doc)

    @translate_store_errors
    async def create(
        self,
        participants: List[ParticipantDocument],
        related_entity: Optional[RelatedEntityDocument] = None,
    ) -> ConversationDocument:
        """Insert a conversation; on a dedup-key collision return the existing one."""
        ids = sorted(p["id"] for p in participants)
        now = datetime.now(timezone.utc)
        doc: ConversationDocument = {
            "participants": participants,
            "participant_ids": ids,
            "participant_key": participant_key(ids),
            "last_message": None,
            "unread_counts": {},
            "message_seq": 0,
            "created_at": now,
            "updated_at": now,
        }
        if related_entity is not None:
            doc["related_entity"] = related_entity
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.find_by_participants(ids)
            if existing is None:
                raise
            logger.info("Conversation %s already created concurrently", existing["_id"])
            return existing
        doc["_id"] = str(result.inserted_id)
        return doc

    @translate_store_errors
    async def apply_new_message(
        self,
        conversation_id: str,
        text: str,
        sender_id: str,
        recipient_ids: Iterable[str],
        created_at: datetime,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> Optional[int]:
        """Record a send on the conversation and return the message's sequence number.

        Counters only ever move through ``$inc`` so concurrent senders converge.
        """
        inc: Dict[str, int] = {"message_seq": 1}
        for rid in recipient_ids:
            inc[unread_field(rid)] = 1
        doc = await self.collection.find_one_and_update(
            {"_id": self._to_object_id(conversation_id)},
            {
                "$set": {
                    "last_message": {"text": text, "created_at": created_at, "sender_id": sender_id},
                    "updated_at": created_at,
                },
                "$inc": inc,
            },
            projection={"message_seq": 1},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc is None:
            return None
        return int(doc["message_seq"])

    @translate_store_errors
    async def reset_unread(
        self,
        conversation_id: str,
        counter_keys: Iterable[str],
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> None:
        zeroes = {unread_field(key): 0 for key in counter_keys}
        if not zeroes:
            return
        await self.collection.update_one(
            {"_id": self._to_object_id(conversation_id)},
            {"$set": zeroes},
            session=session,
        )

    @translate_store_errors
    async def decrement_unread(
        self,
        conversation_id: str,
        participant_id: str,
        session: Optional[AsyncIOMotorClientSession] = None,
    ) -> None:
        field = unread_field(participant_id)
        await self.collection.update_one(
            {"_id": self._to_object_id(conversation_id), field: {"$gt": 0}},
            {"$inc": {field: -1}},
            session=session,
        )

    @translate_store_errors
    async def list_for_participant(self, participant_id: str) -> List[Dict[str, Any]]:
        """Every conversation the participant is in, newest activity first."""
        query = {"participant_ids": participant_id}
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        items = []
        async for doc in self.collection.find(query).sort(sort):
            items.append(self._normalize(doc))
        return items

    @translate_store_errors
    async def list_all(self) -> List[Dict[str, Any]]:
        items = []
        async for doc in self.collection.find({}):
            items.append(self._normalize(doc))
        return items

    @translate_store_errors
    async def replace_identity_fields(
        self,
        conversation_id: str,
        participants: List[Dict[str, Any]],
        unread_counts: Dict[str, int],
    ) -> bool:
        ids = sorted(p["id"] for p in participants)
        try:
            result = await self.collection.update_one(
                {"_id": self._to_object_id(conversation_id)},
                {
                    "$set": {
                        "participants": participants,
                        "participant_ids": ids,
                        "participant_key": participant_key(ids),
                        "unread_counts": unread_counts,
                    }
                },
            )
        except DuplicateKeyError:
            # another conversation already owns the repaired key; leave this one for manual merge
            logger.warning("Conversation %s duplicates an existing participant set; not repaired", conversation_id)
            return False
        return bool(result.modified_count)

    def _normalize(self, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        doc["_id"] = str(doc.get("_id"))
        return doc

    def _to_object_id(self, oid_hex: str) -> Optional[ObjectId]:
        if not isinstance(oid_hex, str) or not ObjectId.is_valid(oid_hex):
            return None
        return ObjectId(oid_hex)
