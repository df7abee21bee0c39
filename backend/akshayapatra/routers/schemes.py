from fastapi import APIRouter, Depends

from akshayapatra.schemas.profile import SchemeSummary
from akshayapatra.services.profile import ProfileService, get_profile_service

router = APIRouter()


@router.get("", response_model=list[SchemeSummary])
async def list_schemes(profiles: ProfileService = Depends(get_profile_service)):
    """Schemes offered on the profile step (cached for five minutes)."""
    return await profiles.list_schemes()
