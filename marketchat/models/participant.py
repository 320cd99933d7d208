from typing import Literal, Optional, TypedDict


ParticipantRole = Literal["buyer", "seller", "admin"]

PARTICIPANT_ROLES = ("buyer", "seller", "admin")


class ParticipantDocument(TypedDict, total=False):
    id: str
    display_name: str
    role: ParticipantRole
    avatar_url: Optional[str]
