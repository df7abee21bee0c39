"""Pydantic schemas for user profiles and profile-completion status."""

from pydantic import BaseModel, ConfigDict, Field


class UserProfileSnapshot(BaseModel):
    """The ``user_profiles`` row as far as setup completion cares."""
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    full_name: str | None = None
    phone_number: str | None = None
    country: str | None = None
    state: str | None = None
    district: str | None = None
    street_address: str | None = None
    postal_code: str | None = None
    referral_code: str | None = None
    referred_by_user_id: str | None = None
    initial_scheme_id: str | None = None
    is_phone_verified: bool | None = None

    @property
    def has_location(self) -> bool:
        return bool(self.country and self.state and self.district)

    @property
    def has_address(self) -> bool:
        return bool(self.street_address)

    @property
    def has_scheme(self) -> bool:
        return bool(self.initial_scheme_id)


# Columns read for the completion check / resolver
PROFILE_COLUMNS = (
    "id,full_name,phone_number,country,state,district,street_address,"
    "postal_code,referral_code,referred_by_user_id,initial_scheme_id,is_phone_verified"
)


class CompletionDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_location: bool = Field(False, alias="hasLocation")
    has_address: bool = Field(False, alias="hasAddress")
    has_scheme: bool = Field(False, alias="hasScheme")
    has_registration_fee: bool = Field(False, alias="hasRegistrationFee")


class CompletionStatus(BaseModel):
    """Authoritative answer to "is this profile complete?"."""
    model_config = ConfigDict(populate_by_name=True)

    is_complete: bool = Field(alias="isComplete")
    missing_steps: list[str] = Field(default_factory=list, alias="missingSteps")
    details: CompletionDetails = Field(default_factory=CompletionDetails)


class ProfileUpdate(BaseModel):
    """Fields a user may change on their own profile row."""
    model_config = ConfigDict(extra="forbid")

    full_name: str | None = None
    phone_number: str | None = None
    country: str | None = None
    state: str | None = None
    district: str | None = None
    street_address: str | None = None
    postal_code: str | None = None
    bank_account_holder_name: str | None = None
    bank_account_number: str | None = None
    bank_ifsc_code: str | None = None
    bank_name: str | None = None
    bank_branch: str | None = None
    bank_account_type: str | None = None
    profile_image_url: str | None = None


class SchemeSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    status: str | None = None
    image_url: str | None = None
    subscription_amount: float = 0
