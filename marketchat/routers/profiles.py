from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from marketchat.schemas.user import CurrentUser, Profile
from marketchat.services.profile_service import ProfileService
from marketchat.utils.dependencies import get_current_user, get_profile_service, require_admin


router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.delete("/cache")
async def invalidate_profiles(
    user_id: Optional[str] = None,
    admin: CurrentUser = Depends(require_admin),
    profiles: ProfileService = Depends(get_profile_service),
):
    removed = await profiles.invalidate(user_id)
    return {"removed": removed}


@router.get("/{user_id}", response_model=Profile)
async def get_profile(user_id: str, current_user: CurrentUser = Depends(get_current_user), profiles: ProfileService = Depends(get_profile_service)):
    profile = await profiles.get_profile(user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return Profile.model_validate(profile)
