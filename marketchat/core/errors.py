"""Error taxonomy for the chat core.

Read and subscribe paths turn ``ValidationError`` / ``AuthorizationError`` into
empty results; mutating paths raise them. ``StoreError`` always propagates.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChatError(Exception):
    """Base class for every error raised by the chat core."""


class ValidationError(ChatError):
    """Malformed participant, message or related-entity input."""


class NotFoundError(ChatError):
    """Referenced conversation or message does not exist."""


class AuthorizationError(ChatError):
    """Requester is not a participant of the conversation."""


class StoreError(ChatError):
    """The backing store (MongoDB / Redis) failed."""


def translate_store_errors(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Re-raise driver failures from an async store call as ``StoreError``."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await fn(*args, **kwargs)
        except (PyMongoError, RedisError) as exc:
            logger.error("Store call %s failed: %s", fn.__qualname__, exc)
            raise StoreError(str(exc)) from exc

    return wrapper
