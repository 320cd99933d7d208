import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from marketchat.core.errors import translate_store_errors
from marketchat.repositories.user_repository import UserRepository
from marketchat.utils.identity import normalize_id

logger = logging.getLogger(__name__)


class NoopProfileCache:
    """Cache that never stores anything; used when Redis is not configured."""

    enabled = False

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        return None

    async def set(self, user_id: str, profile: Dict[str, Any]) -> None:
        return

    async def invalidate(self, user_id: Optional[str] = None) -> int:
        return 0


class RedisProfileCache:
    """Profiles stored as JSON under ``profile:<id>`` with a fixed TTL."""

    enabled = True
    prefix = "profile:"

    def __init__(self, client, ttl_seconds: int) -> None:
        self._client = client
        self._ttl = ttl_seconds

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}{user_id}"

    @translate_store_errors
    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        raw = await self._client.get(self._key(user_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        result = json.loads(raw)
        return result if isinstance(result, dict) else None

    @translate_store_errors
    async def set(self, user_id: str, profile: Dict[str, Any]) -> None:
        await self._client.set(self._key(user_id), json.dumps(profile), ex=self._ttl)

    @translate_store_errors
    async def invalidate(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return int(await self._client.delete(self._key(user_id)))
        removed = 0
        async for key in self._client.scan_iter(match=f"{self.prefix}*"):
            removed += int(await self._client.delete(key))
        return removed


class ProfileService:

    def __init__(self, user_repo: UserRepository, cache) -> None:
        self._user_repo = user_repo
        self._cache = cache

    async def get_profile(self, user_id: Any) -> Optional[Dict[str, Any]]:
        uid = normalize_id(user_id)
        if not uid:
            return None
        cached = await self._cache.get(uid)
        if cached is not None:
            return cached
        profile = await self._user_repo.get_profile(uid)
        if profile is not None:
            await self._cache.set(uid, profile)
        return profile

    async def invalidate(self, user_id: Any = None) -> int:
        uid = normalize_id(user_id) if user_id is not None else None
        removed = await self._cache.invalidate(uid)
        logger.info("Invalidated %d cached profile(s)", removed)
        return removed

    async def complete_participant(self, participant: Mapping[str, Any]) -> Dict[str, Any]:
        """Fill a participant's missing display data from its stored profile."""
        completed = dict(participant)
        if completed.get("display_name") and completed.get("role"):
            return completed
        profile = await self.get_profile(completed.get("id"))
        if profile:
            if not completed.get("display_name"):
                completed["display_name"] = profile.get("display_name")
            if not completed.get("role"):
                completed["role"] = profile.get("role")
            if not completed.get("avatar_url"):
                completed["avatar_url"] = profile.get("avatar_url")
        return completed

    @staticmethod
    def other_participant(participants: Sequence[Mapping[str, Any]], current_id: Any) -> Optional[Mapping[str, Any]]:
        if not participants:
            return None
        current = normalize_id(current_id)
        for participant in participants:
            if normalize_id(participant.get("id")) != current:
                return participant
        return participants[0]


def participants_for_display(participants: List[Mapping[str, Any]], current_id: Any) -> List[Mapping[str, Any]]:
    """Other participants first, the current user last."""
    current = normalize_id(current_id)
    return sorted(participants, key=lambda p: normalize_id(p.get("id")) == current)
