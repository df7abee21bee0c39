"""Profile RPC wrappers and the authoritative completion check.

The stored procedures themselves (``ensure_profile2``,
``attach_user_referral_by_code``, ``consume_user_update_flags``) live in the
database; this module only fixes their call signatures.
"""

import logging
from datetime import datetime, timezone

from fastapi import Depends

from akshayapatra.auth.deps import SessionUser, get_current_user
from akshayapatra.middleware.exceptions import (
    BusinessLogicError,
    ResourceNotFoundError,
    UpstreamServiceError,
)
from akshayapatra.schemas.profile import (
    PROFILE_COLUMNS,
    CompletionDetails,
    CompletionStatus,
    ProfileUpdate,
    SchemeSummary,
    UserProfileSnapshot,
)
from akshayapatra.services.supabase import SupabaseClient
from akshayapatra.utils.cache import cached
from akshayapatra.wizard.steps import ALL_SETUP_STEPS, SetupStep

logger = logging.getLogger(__name__)

# PostgREST: "function with these argument names not found"
UNKNOWN_SIGNATURE = "PGRST202"

ALLOWED_PROFILE_FIELDS = frozenset(ProfileUpdate.model_fields)


def completion_from_profile(profile: UserProfileSnapshot | None) -> CompletionStatus:
    """Which setup steps a profile row still lacks.

    No row at all means every step is missing. The registration fee counts
    as paid once the phone number is verified.
    """
    if profile is None:
        return CompletionStatus(
            is_complete=False,
            missing_steps=[s.value for s in ALL_SETUP_STEPS],
            details=CompletionDetails(),
        )

    details = CompletionDetails(
        has_location=profile.has_location,
        has_address=profile.has_address,
        has_scheme=profile.has_scheme,
        has_registration_fee=bool(profile.is_phone_verified),
    )
    missing: list[str] = []
    if not details.has_location:
        missing.append(SetupStep.LOCATION.value)
    if not details.has_address:
        missing.append(SetupStep.ADDRESS.value)
    if not details.has_scheme:
        missing.append(SetupStep.PROFILE.value)
    if not details.has_registration_fee:
        missing.append(SetupStep.REGISTRATION_FEE.value)

    return CompletionStatus(is_complete=not missing, missing_steps=missing, details=details)


@cached(ttl=300, prefix="schemes", model=list[SchemeSummary])
async def list_schemes_public(client: SupabaseClient) -> list[SchemeSummary]:
    """Schemes visible to signed-in users, newest first.

    Upstream errors propagate so a failed fetch is never cached.
    """
    rows = await client.select(
        "schemes",
        "id,name,status,image_url,subscription_amount",
        order="created_at.desc",
    )
    return [SchemeSummary.model_validate(row) for row in rows]


class ProfileService:
    def __init__(self, client: SupabaseClient, user_id: str):
        self.client = client
        self.user_id = user_id

    async def ensure_profile(
        self,
        full_name: str,
        phone: str | None = None,
        referral_code: str | None = None,
        scheme_id: str | None = None,
    ) -> None:
        """Create the profile row if missing (idempotent server-side)."""
        base_args = {
            "p_full_name": full_name,
            "p_phone": phone,
            "p_referral_code": referral_code,
            "p_user_id": self.user_id,
        }
        try:
            await self.client.rpc("ensure_profile2", {**base_args, "p_scheme_id": scheme_id})
        except UpstreamServiceError as e:
            if e.upstream_code != UNKNOWN_SIGNATURE:
                raise
            # Older databases lack the p_scheme_id parameter
            await self.client.rpc("ensure_profile2", base_args)

    async def attach_referral_by_code(self, referral_code: str) -> None:
        await self.client.rpc(
            "attach_user_referral_by_code",
            {"p_user_id": self.user_id, "p_referral_code": referral_code},
        )

    async def fetch_profile(self) -> UserProfileSnapshot | None:
        row = await self.client.select_one(
            "user_profiles", PROFILE_COLUMNS, {"id": f"eq.{self.user_id}"}
        )
        return UserProfileSnapshot.model_validate(row) if row else None

    async def update_profile(self, updates: dict) -> UserProfileSnapshot:
        sanitized = {k: v for k, v in updates.items() if k in ALLOWED_PROFILE_FIELDS}
        if not sanitized:
            raise BusinessLogicError("No valid fields to update")
        sanitized["updated_at"] = datetime.now(timezone.utc).isoformat()

        rows = await self.client.update(
            "user_profiles", sanitized, {"id": f"eq.{self.user_id}"}
        )
        if not rows:
            raise ResourceNotFoundError("Profile", self.user_id)
        return UserProfileSnapshot.model_validate(rows[0])

    async def check_completion(
        self, profile: UserProfileSnapshot | None = None
    ) -> CompletionStatus:
        if profile is None:
            profile = await self.fetch_profile()
        return completion_from_profile(profile)

    async def registration_fee_needed(self, profile: UserProfileSnapshot | None) -> bool:
        """Whether the registration fee is still owed."""
        if profile is not None and profile.is_phone_verified is not None:
            return not profile.is_phone_verified
        status = await self.check_completion()
        return SetupStep.REGISTRATION_FEE.value in status.missing_steps

    async def consume_update_flags(self, clear: bool = False) -> dict:
        data = await self.client.rpc(
            "consume_user_update_flags",
            {
                "p_user_id": self.user_id,
                "p_clear_referral": clear,
                "p_clear_referral2": clear,
                "p_clear_transactions": clear,
            },
        )
        if isinstance(data, list):
            return data[0] if data else {}
        return data or {}

    async def list_schemes(self) -> list[SchemeSummary]:
        try:
            schemes = await list_schemes_public(self.client)
        except UpstreamServiceError as e:
            logger.warning(f"listSchemesPublic failed: {e.message}")
            return []
        return schemes


async def get_profile_service(user: SessionUser = Depends(get_current_user)) -> ProfileService:
    return ProfileService(SupabaseClient(user.access_token), user.id)
