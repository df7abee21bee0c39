"""Missing-steps resolver: which wizard screens a user still has to see.

This is the only place a step mapping is computed. Both wizard
initialisation and the post-profile-submission recompute call
``resolve_step_mapping``.
"""

import logging
from typing import Awaitable, Callable, Sequence

from akshayapatra.schemas.profile import UserProfileSnapshot
from akshayapatra.wizard.steps import CELEBRATION, TOKEN_TO_KIND, SetupStep, StepKind

logger = logging.getLogger(__name__)

FeeCheck = Callable[[UserProfileSnapshot | None], Awaitable[bool]]


def mapping_from_tokens(missing: Sequence[SetupStep]) -> list[StepKind]:
    """Mapping built from locally recorded missing steps.

    Local progress wins over the server snapshot so a step the user just
    finished is not shown again while the database catches up.
    """
    codes = [TOKEN_TO_KIND[step] for step in missing]
    for kind in CELEBRATION:
        if kind not in codes:
            codes.append(kind)
    if SetupStep.REGISTRATION_FEE in missing and StepKind.REGISTRATION_FEE not in codes:
        codes.append(StepKind.REGISTRATION_FEE)
    return sorted(set(codes))


async def _fee_owed(profile: UserProfileSnapshot | None, fee_check: FeeCheck) -> bool:
    try:
        return bool(await fee_check(profile))
    except Exception as e:
        # Never skip a payment silently
        logger.warning(f"Registration fee check failed, assuming fee owed: {e}")
        return True


async def resolve_step_mapping(
    profile: UserProfileSnapshot | None,
    cached_missing: Sequence[SetupStep],
    fee_check: FeeCheck,
    celebration_seen: bool = False,
) -> list[StepKind]:
    """Ordered step kinds for the wizard; empty means "leave the wizard".

    Args:
        profile: Server profile row, or None when it does not exist yet.
        cached_missing: Missing steps from the user's local store.
        fee_check: Async "is the registration fee still owed?" check.
        celebration_seen: True once the celebration screens were shown
            (the ``issuing_card`` milestone). Only then can a fully
            complete profile resolve to an empty mapping.
    """
    if cached_missing:
        return mapping_from_tokens(cached_missing)

    profile = profile or UserProfileSnapshot()
    needs_location = not profile.has_location
    needs_address = not profile.has_address
    has_scheme = profile.has_scheme

    if not needs_location and not needs_address and has_scheme:
        fee_owed = await _fee_owed(profile, fee_check)
        if fee_owed:
            return [*CELEBRATION, StepKind.REGISTRATION_FEE]
        if celebration_seen:
            return []
        return list(CELEBRATION)

    mapping: list[StepKind] = []
    if needs_location:
        mapping.append(StepKind.LOCATION)
    if needs_address:
        mapping.append(StepKind.ADDRESS)
    if not has_scheme:
        mapping.append(StepKind.PROFILE)
    mapping.extend(CELEBRATION)
    if await _fee_owed(profile, fee_check):
        mapping.append(StepKind.REGISTRATION_FEE)
    return mapping
