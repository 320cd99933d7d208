from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from marketchat.core.config import Settings, get_settings


def create_access_token(
    subject: str,
    name: str,
    role: str,
    avatar: Optional[str] = None,
    settings: Optional[Settings] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    settings = settings or get_settings()
    minutes = expires_minutes if expires_minutes is not None else settings.ACCESS_TOKEN_EXPIRE_MINUTES
    payload: Dict[str, Any] = {
        "sub": subject,
        "name": name,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    if avatar:
        payload["avatar"] = avatar
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Decode and verify a bearer token; raises ``jwt.PyJWTError`` when invalid."""
    settings = settings or get_settings()
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALGORITHM],
        options={"require": ["sub", "exp"]},
    )
