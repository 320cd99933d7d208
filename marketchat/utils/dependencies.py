import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.requests import HTTPConnection
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError as PydanticValidationError

from marketchat.core.config import Settings, get_settings
from marketchat.database.connection import get_transaction_runner, mongo_db_dependency
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.schemas.user import CurrentUser, Role, TokenPayload
from marketchat.services.chat_service import ChatService
from marketchat.services.profile_service import NoopProfileCache, ProfileService
from marketchat.services.realtime_dispatcher import RealtimeDispatcher
from marketchat.utils.identity import normalize_id
from marketchat.utils.realtime_bus import get_bus
from marketchat.utils.security import decode_access_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def user_from_token(token: Optional[str], settings: Optional[Settings] = None) -> Optional[CurrentUser]:
    """Resolve the acting user from a bearer token; ``None`` if it is unusable."""
    if not token:
        return None
    try:
        payload = TokenPayload.model_validate(decode_access_token(token, settings))
    except (jwt.PyJWTError, PydanticValidationError) as exc:
        logger.info("Rejected access token: %s", exc)
        return None
    user_id = normalize_id(payload.sub)
    if not user_id:
        return None
    try:
        role = Role(payload.role) if payload.role else Role.BUYER
    except ValueError:
        return None
    return CurrentUser(id=user_id, display_name=payload.name or "User", role=role, avatar_url=payload.avatar)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    user = user_from_token(credentials.credentials if credentials else None, settings)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if current_user.role != Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return current_user


async def get_chat_service(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    settings: Settings = Depends(get_settings),
) -> ChatService:
    return ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        get_transaction_runner(db, settings),
        await get_bus(),
        settings,
    )


def get_dispatcher(connection: HTTPConnection) -> RealtimeDispatcher:
    # one per app, so shutdown can release every live stream
    dispatcher = getattr(connection.app.state, "dispatcher", None)
    if dispatcher is None:
        raise RuntimeError("Realtime dispatcher is not running; start the app lifespan first")
    return dispatcher


def get_profile_cache(request: Request):
    cache = getattr(request.app.state, "profile_cache", None)
    return cache if cache is not None else NoopProfileCache()


async def get_profile_service(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    cache=Depends(get_profile_cache),
) -> ProfileService:
    return ProfileService(UserRepository(db), cache)
