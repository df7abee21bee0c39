"""Profile endpoints.

Endpoints:
  GET /api/profile/check-completion  → authoritative completion status
  GET /api/profile                   → profile row, cached in the user's store
"""

import logging

from fastapi import APIRouter, Depends

from akshayapatra.middleware.exceptions import ResourceNotFoundError, UpstreamServiceError
from akshayapatra.schemas.profile import CompletionStatus, UserProfileSnapshot
from akshayapatra.services.profile import ProfileService, get_profile_service
from akshayapatra.storage.local import LocalStore, get_local_store
from akshayapatra.storage.profile_storage import UserProfileStorage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/check-completion", response_model=CompletionStatus)
async def check_completion(profiles: ProfileService = Depends(get_profile_service)):
    return await profiles.check_completion()


@router.get("", response_model=UserProfileSnapshot)
async def get_profile(
    profiles: ProfileService = Depends(get_profile_service),
    store: LocalStore = Depends(get_local_store),
):
    """Fresh profile row; the cached copy is served if Supabase is down."""
    cache = UserProfileStorage(store)
    try:
        profile = await profiles.fetch_profile()
    except UpstreamServiceError as e:
        cached = await cache.get_profile()
        if cached is None:
            raise
        logger.warning(f"Serving cached profile for {profiles.user_id}: {e.message}")
        return cached

    if profile is None:
        raise ResourceNotFoundError("Profile", profiles.user_id)
    await cache.set_profile(profile)
    return profile
