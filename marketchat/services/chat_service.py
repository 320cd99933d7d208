import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from redis.exceptions import RedisError

from marketchat.core.config import Settings, get_settings
from marketchat.core.errors import AuthorizationError, NotFoundError, ValidationError
from marketchat.database.connection import TransactionRunner
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.services.authorization import authorize
from marketchat.services.validation import clean_message, clean_participants, clean_related_entity
from marketchat.utils.identity import normalize_id
from marketchat.utils.realtime_bus import change_event, conversation_channel, participant_channel

logger = logging.getLogger(__name__)


def participant_ids_of(conversation: Mapping[str, Any]) -> List[str]:
    """Canonical ids from both participant fields of a stored conversation."""
    ids = {normalize_id(pid) for pid in conversation.get("participant_ids") or []}
    ids.update(normalize_id(p.get("id")) for p in conversation.get("participants") or [] if isinstance(p, Mapping))
    ids.discard("")
    return sorted(ids)


def unread_total(conversations: Iterable[Mapping[str, Any]], requester_id: Any) -> int:
    """Sum of the requester's counters, including legacy keys that normalize to it."""
    requester = normalize_id(requester_id)
    total = 0
    for convo in conversations:
        for key, count in (convo.get("unread_counts") or {}).items():
            if normalize_id(key) == requester and count:
                total += int(count)
    return total


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        transactions: TransactionRunner,
        bus,
        settings: Optional[Settings] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._transactions = transactions
        self._bus = bus
        self._settings = settings or get_settings()

    # ---- writes -------------------------------------------------------------

    async def resolve_conversation(self, participants: Any, related_entity: Any = None) -> str:
        """Return the conversation for this participant set, creating it on first contact.

        The lookup key is the sorted set of canonical ids; ``related_entity`` is
        recorded on creation only. Two racing calls may both create unless the
        unique ``participant_key`` index is enabled.
        """
        cleaned = clean_participants(participants)
        related = clean_related_entity(related_entity)
        ids = sorted(p["id"] for p in cleaned)

        existing = await self._conversation_repo.find_by_participants(ids)
        if existing:
            return existing["_id"]

        convo = await self._conversation_repo.create(cleaned, related)
        logger.info("Created conversation %s for %d participants", convo["_id"], len(ids))
        await self._publish("conversation.created", convo["_id"], ids)
        return convo["_id"]

    async def send_message(self, conversation_id: str, message: Mapping[str, Any]) -> str:
        """Append a message and bump every other participant's unread counter.

        The message insert and the counter update commit together.
        """
        cleaned = clean_message(message)
        convo = await self._conversation_repo.get_by_id(conversation_id)
        if convo is None:
            raise NotFoundError("Conversation not found")
        sender_id = cleaned["sender_id"]
        if not authorize(convo, sender_id):
            raise AuthorizationError("Sender is not a participant of this conversation")

        participants = participant_ids_of(convo)
        recipients = [pid for pid in participants if pid != sender_id]
        now = datetime.now(timezone.utc)

        async def _write(session) -> str:
            seq = await self._conversation_repo.apply_new_message(
                convo["_id"], cleaned["text"], sender_id, recipients, now, session=session
            )
            if seq is None:
                raise NotFoundError("Conversation not found")
            doc = {**cleaned, "conversation_id": convo["_id"], "seq": seq, "created_at": now, "read": False}
            return await self._message_repo.insert(doc, session=session)

        message_id = await self._transactions.run(_write)
        logger.debug("Message %s appended to conversation %s", message_id, convo["_id"])
        await self._publish("message.created", convo["_id"], participants, message_id=message_id)
        return message_id

    async def mark_read(self, conversation_id: str, reader_id: Any) -> int:
        reader = normalize_id(reader_id)
        if not reader:
            raise ValidationError("Reader id is required")
        convo = await self._conversation_repo.get_by_id(conversation_id)
        if convo is None:
            raise NotFoundError("Conversation not found")
        if not authorize(convo, reader):
            raise AuthorizationError("Reader is not a participant of this conversation")

        # legacy counters may be keyed by a serialized form of the same id
        counter_keys = {reader}
        counter_keys.update(k for k in (convo.get("unread_counts") or {}) if normalize_id(k) == reader)

        async def _write(session) -> int:
            modified = await self._message_repo.mark_read(convo["_id"], reader, session=session)
            await self._conversation_repo.reset_unread(convo["_id"], counter_keys, session=session)
            return modified

        modified = await self._transactions.run(_write)
        logger.debug("Marked %d message(s) read in %s", modified, convo["_id"])
        await self._publish("conversation.read", convo["_id"], participant_ids_of(convo))
        return modified

    async def delete_message(self, conversation_id: str, message_id: str, requester_role: Any) -> None:
        """Moderation removal; admins only."""
        if getattr(requester_role, "value", requester_role) != "admin":
            raise AuthorizationError("Only admins can remove messages")
        convo = await self._conversation_repo.get_by_id(conversation_id)
        if convo is None:
            raise NotFoundError("Conversation not found")
        message = await self._message_repo.get_by_id(convo["_id"], message_id)
        if message is None:
            raise NotFoundError("Message not found")

        participants = participant_ids_of(convo)
        sender_id = normalize_id(message.get("sender_id"))
        recipients = [pid for pid in participants if pid != sender_id] if not message.get("read") else []

        async def _write(session) -> None:
            await self._message_repo.delete(message["_id"], session=session)
            for pid in recipients:
                await self._conversation_repo.decrement_unread(convo["_id"], pid, session=session)

        await self._transactions.run(_write)
        logger.info("Message %s removed from conversation %s", message["_id"], convo["_id"])
        await self._publish("message.deleted", convo["_id"], participants, message_id=message["_id"])

    async def repair_conversations(self) -> int:
        """Rewrite stored participant ids to canonical form; returns documents fixed."""
        fixed = 0
        for convo in await self._conversation_repo.list_all():
            participants: List[Dict[str, Any]] = []
            seen = set()
            for p in convo.get("participants") or []:
                if not isinstance(p, Mapping):
                    continue
                pid = normalize_id(p.get("id"))
                if not pid or pid in seen:
                    continue
                seen.add(pid)
                participants.append({**p, "id": pid})
            if len(participants) < 2:
                logger.warning("Conversation %s has fewer than two usable participants; skipped", convo["_id"])
                continue

            counts: Dict[str, int] = {}
            for key, value in (convo.get("unread_counts") or {}).items():
                canonical = normalize_id(key)
                if canonical in seen:
                    counts[canonical] = counts.get(canonical, 0) + max(int(value or 0), 0)

            unchanged = (
                participants == convo.get("participants")
                and sorted(seen) == convo.get("participant_ids")
                and counts == (convo.get("unread_counts") or {})
            )
            if unchanged:
                continue
            if await self._conversation_repo.replace_identity_fields(convo["_id"], participants, counts):
                fixed += 1
                await self._publish("conversation.repaired", convo["_id"], sorted(seen))
        logger.info("Repaired %d conversation(s)", fixed)
        return fixed

    # ---- reads --------------------------------------------------------------

    async def get_conversation(self, conversation_id: str, requester_id: Any) -> Optional[Dict[str, Any]]:
        if not conversation_id or not normalize_id(requester_id):
            return None
        convo = await self._conversation_repo.get_by_id(conversation_id)
        if not authorize(convo, requester_id):
            return None
        return convo

    async def list_conversations(self, requester_id: Any) -> List[Dict[str, Any]]:
        requester = normalize_id(requester_id)
        if not requester:
            return []
        items = await self._conversation_repo.list_for_participant(requester)
        return [c for c in items if authorize(c, requester)]

    async def get_messages(
        self,
        conversation_id: str,
        requester_id: Any,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        convo = await self.get_conversation(conversation_id, requester_id)
        if convo is None:
            return [], None
        before_seq = None
        if cursor is not None:
            try:
                before_seq = int(cursor)
            except (TypeError, ValueError):
                return [], None
            if before_seq < 1:
                return [], None
        size = page_size or self._settings.MESSAGE_PAGE_SIZE
        size = max(1, min(size, self._settings.MESSAGE_PAGE_SIZE_MAX))
        return await self._message_repo.get_page(convo["_id"], limit=size, before_seq=before_seq)

    async def total_unread(self, requester_id: Any) -> int:
        return unread_total(await self.list_conversations(requester_id), requester_id)

    # ---- realtime -----------------------------------------------------------

    async def _publish(self, event_type: str, conversation_id: str, participant_ids: Iterable[str], **extra: Any) -> None:
        payload = change_event(event_type, conversation_id, **extra)
        channels = [conversation_channel(conversation_id)] + [participant_channel(pid) for pid in participant_ids]
        for channel in channels:
            try:
                await self._bus.publish(channel, payload)
            except RedisError as exc:
                # the write is already committed; subscribers catch up on their next event
                logger.warning("Publishing %s to %s failed: %s", event_type, channel, exc)
