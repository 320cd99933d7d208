from datetime import datetime
from typing import List, Literal, Optional, TypedDict


AttachmentType = Literal["image", "document", "product"]

ATTACHMENT_TYPES = ("image", "document", "product")


class AttachmentDocument(TypedDict, total=False):
    type: AttachmentType
    url: str
    name: str
    size: int


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    # position in the conversation, assigned from conversation.message_seq
    seq: int
    text: str
    sender_id: str
    sender_name: str
    sender_role: str
    sender_avatar: Optional[str]
    created_at: datetime
    read: bool
    attachments: List[AttachmentDocument]
