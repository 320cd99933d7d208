from datetime import datetime
from typing import Dict, List, Literal, Optional, TypedDict

from marketchat.models.participant import ParticipantDocument


RelatedEntityType = Literal["order", "product", "general"]

RELATED_ENTITY_TYPES = ("order", "product", "general")


class LastMessageDocument(TypedDict):
    text: str
    created_at: datetime
    sender_id: str


class RelatedEntityDocument(TypedDict):
    type: RelatedEntityType
    id: str
    name: str


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[ParticipantDocument]
    # sorted canonical ids; always the id set of `participants`
    participant_ids: List[str]
    # JSON of participant_ids, the dedup key
    participant_key: str
    last_message: Optional[LastMessageDocument]
    # per-participant unread counters (canonical id -> count)
    unread_counts: Dict[str, int]
    related_entity: Optional[RelatedEntityDocument]
    # last message sequence number handed out in this conversation
    message_seq: int
    created_at: datetime
    updated_at: datetime
