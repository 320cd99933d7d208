from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import Field

from marketchat.schemas.base import CamelModel
from marketchat.schemas.user import Role


class RelatedEntityType(str, Enum):

    ORDER = "order"
    PRODUCT = "product"
    GENERAL = "general"


class AttachmentType(str, Enum):

    IMAGE = "image"
    DOCUMENT = "document"
    PRODUCT = "product"


class Participant(CamelModel):

    id: str
    display_name: str
    role: Role
    avatar_url: Optional[str] = None


class ParticipantIn(CamelModel):
    # display data may be omitted and is then looked up from the user's profile

    id: str = Field(min_length=1)
    display_name: Optional[str] = None
    role: Optional[Role] = None
    avatar_url: Optional[str] = None


class RelatedEntity(CamelModel):

    type: RelatedEntityType
    id: str = ""
    name: str = ""


class Attachment(CamelModel):

    type: AttachmentType
    url: str = Field(min_length=1)
    name: str = Field(min_length=1)
    size: Optional[int] = Field(default=None, ge=0)


class LastMessage(CamelModel):

    text: str
    created_at: datetime
    sender_id: str


class Conversation(CamelModel):

    id: str
    participants: List[Participant]
    participant_ids: List[str]
    last_message: Optional[LastMessage] = None
    unread_counts: Dict[str, int] = Field(default_factory=dict)
    related_entity: Optional[RelatedEntity] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Conversation":
        return cls.model_validate({**doc, "id": doc["_id"]})


class Message(CamelModel):

    id: str
    conversation_id: str
    text: str
    sender_id: str
    sender_name: str
    sender_role: Role
    sender_avatar: Optional[str] = None
    created_at: datetime
    read: bool
    attachments: Optional[List[Attachment]] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Message":
        return cls.model_validate({**doc, "id": doc["_id"]})


class MessagePage(CamelModel):

    items: List[Message]
    next_cursor: Optional[str] = None


class ResolveConversationRequest(CamelModel):
    # the caller is always added as a participant

    participants: List[ParticipantIn] = Field(min_length=1)
    related_entity: Optional[RelatedEntity] = None


class ResolveConversationResponse(CamelModel):

    conversation_id: str


class SendMessageRequest(CamelModel):

    text: str = Field(min_length=1)
    attachments: Optional[List[Attachment]] = None


class SendMessageResponse(CamelModel):

    message_id: str
    conversation_id: str


class MarkReadResponse(CamelModel):

    updated: int


class UnreadCountResponse(CamelModel):

    total: int


class RepairResponse(CamelModel):

    fixed: int


class StreamFrame(CamelModel):

    kind: str
    denied: bool = False
    data: Any = None
    unread_total: Optional[int] = None
