from enum import Enum
from typing import Optional

from pydantic import BaseModel

from marketchat.schemas.base import CamelModel


class Role(str, Enum):

    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class CurrentUser(BaseModel):

    id: str
    display_name: str
    role: Role
    avatar_url: Optional[str] = None


class Profile(CamelModel):

    id: str
    display_name: str
    role: str
    avatar_url: Optional[str] = None


class TokenPayload(BaseModel):

    sub: str
    exp: int
    name: Optional[str] = None
    role: Optional[str] = None
    avatar: Optional[str] = None
