"""Dirty-flag poll.

Endpoints:
  GET  /api/flags              → throttled poll (cached flags inside the window)
  POST /api/flags/acknowledge  → clear flags after the client refetched
"""

from fastapi import APIRouter, Depends

from akshayapatra.schemas.local import DirtyFlags
from akshayapatra.services.flags import acknowledge_flags, check_flags
from akshayapatra.services.profile import ProfileService, get_profile_service
from akshayapatra.storage.app_state import DirtyFlagsStorage
from akshayapatra.storage.local import LocalStore, get_local_store

router = APIRouter()


@router.get("", response_model=DirtyFlags)
async def poll_flags(
    store: LocalStore = Depends(get_local_store),
    profiles: ProfileService = Depends(get_profile_service),
):
    return await check_flags(DirtyFlagsStorage(store), profiles)


@router.post("/acknowledge", response_model=DirtyFlags)
async def acknowledge(
    store: LocalStore = Depends(get_local_store),
    profiles: ProfileService = Depends(get_profile_service),
):
    return await acknowledge_flags(DirtyFlagsStorage(store), profiles)
