from typing import Optional, TypedDict


class UserProfileDocument(TypedDict, total=False):
    # written by the identity side; keyed by uid
    _id: str
    display_name: str
    full_name: str
    role: str
    avatar_url: Optional[str]
