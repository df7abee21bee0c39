"""Step kinds, setup tokens and milestones of the profile-setup wizard.

Step codes are part of the client contract:

  1 location        2 address          3 profile & scheme
  4 congrats        5 issuing card     6 credentials
  7 registration fee

Codes 4-6 form the celebration sequence and are always shown once reached.
Codes 1, 2, 3 and 7 are "tracked": each has a missing-step token in the
local store that is cleared when the step completes.
"""

from enum import Enum, IntEnum
from typing import Iterable


class StepKind(IntEnum):
    LOCATION = 1
    ADDRESS = 2
    PROFILE = 3
    CONGRATS = 4
    ISSUING_CARD = 5
    CREDENTIALS = 6
    REGISTRATION_FEE = 7


class SetupStep(str, Enum):
    """Missing-step tokens as reported by the completion check."""
    LOCATION = "location"
    ADDRESS = "address"
    PROFILE = "profile"
    REGISTRATION_FEE = "registration_fee"


class SetupMilestone(str, Enum):
    """One-way completion markers kept across server round-trips."""
    PROFILE_FORM = "profile_form"
    ISSUING_CARD = "issuing_card"
    REGISTRATION_FEE = "registration_fee"


TOKEN_TO_KIND: dict[SetupStep, StepKind] = {
    SetupStep.LOCATION: StepKind.LOCATION,
    SetupStep.ADDRESS: StepKind.ADDRESS,
    SetupStep.PROFILE: StepKind.PROFILE,
    SetupStep.REGISTRATION_FEE: StepKind.REGISTRATION_FEE,
}
KIND_TO_TOKEN: dict[StepKind, SetupStep] = {v: k for k, v in TOKEN_TO_KIND.items()}

# Steps whose completion must stick even if the server lags behind
STEP_MILESTONES: dict[SetupStep, SetupMilestone] = {
    SetupStep.PROFILE: SetupMilestone.PROFILE_FORM,
    SetupStep.REGISTRATION_FEE: SetupMilestone.REGISTRATION_FEE,
}

CELEBRATION: tuple[StepKind, ...] = (
    StepKind.CONGRATS,
    StepKind.ISSUING_CARD,
    StepKind.CREDENTIALS,
)
TRACKED_KINDS = frozenset(KIND_TO_TOKEN)
DEFAULT_MAPPING: tuple[StepKind, ...] = tuple(StepKind)
ALL_SETUP_STEPS: tuple[SetupStep, ...] = tuple(SetupStep)

LOADING_VIEW = "loading"

# View rendered for each step kind
STEP_VIEWS: dict[StepKind, str] = {
    StepKind.LOCATION: "location_select",
    StepKind.ADDRESS: "address",
    StepKind.PROFILE: "profile_form",
    StepKind.CONGRATS: "congrats",
    StepKind.ISSUING_CARD: "issuing_card",
    StepKind.CREDENTIALS: "credentials",
    StepKind.REGISTRATION_FEE: "registration_fee",
}

_unmapped = set(StepKind) - set(STEP_VIEWS)
if _unmapped:
    raise RuntimeError(f"Step kinds without a view: {sorted(_unmapped)}")


def parse_kind(code) -> StepKind | None:
    """Return the StepKind for a raw code, or None when unrecognized."""
    try:
        return StepKind(int(code))
    except (TypeError, ValueError):
        return None


def view_for(code) -> str:
    kind = parse_kind(code)
    if kind is None:
        return LOADING_VIEW
    return STEP_VIEWS[kind]


def parse_tokens(tokens: Iterable) -> list[SetupStep]:
    """Known setup tokens in first-seen order, duplicates and junk dropped."""
    seen: list[SetupStep] = []
    for token in tokens or ():
        try:
            step = SetupStep(token)
        except ValueError:
            continue
        if step not in seen:
            seen.append(step)
    return seen


def is_well_ordered(mapping: Iterable[StepKind]) -> bool:
    """Check the mapping ordering rules.

    Celebration codes appear in ascending order after every core code
    (1-3), and the registration fee, when present, is last.
    """
    codes = list(mapping)
    celebration = [c for c in codes if c in CELEBRATION]
    if celebration != sorted(celebration):
        return False
    core_positions = [i for i, c in enumerate(codes) if c in (StepKind.LOCATION, StepKind.ADDRESS, StepKind.PROFILE)]
    celebration_positions = [i for i, c in enumerate(codes) if c in CELEBRATION]
    if core_positions and celebration_positions and max(core_positions) > min(celebration_positions):
        return False
    if StepKind.REGISTRATION_FEE in codes and codes[-1] != StepKind.REGISTRATION_FEE:
        return False
    return True
