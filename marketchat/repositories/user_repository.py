from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.core.errors import translate_store_errors
from marketchat.models.user import UserProfileDocument


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    @translate_store_errors
    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        # user documents are keyed by the identity provider's uid
        user: Optional[UserProfileDocument] = await self._collection.find_one({"_id": user_id})
        if not user:
            return None
        return {
            "id": str(user["_id"]),
            "display_name": user.get("display_name") or user.get("full_name") or "",
            "role": user.get("role", ""),
            "avatar_url": user.get("avatar_url"),
        }
