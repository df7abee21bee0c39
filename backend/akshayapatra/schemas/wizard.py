"""Pydantic schemas for the profile-setup wizard endpoints."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from akshayapatra.schemas.payment import PaymentReceipt

WizardStatus = Literal["uninitialized", "initializing", "active", "redirecting"]


class WizardView(BaseModel):
    """What the client should render right now."""
    status: WizardStatus
    step_index: int | None = None
    step_kind: int | None = None
    view: str
    mapping: list[int] = []
    is_loading: bool = False
    redirect_to: str | None = None
    fallback: bool = False
    error: str | None = None


class AdvanceRequest(BaseModel):
    step_index: int = Field(ge=0)


class LocationSubmission(BaseModel):
    step_index: int = Field(ge=0)
    country: str = Field(min_length=1)
    state: str = Field(min_length=1)
    district: str = Field(min_length=1)


class AddressSubmission(BaseModel):
    step_index: int = Field(ge=0)
    street_address: str = Field(min_length=1)
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class ProfileSubmission(BaseModel):
    step_index: int = Field(ge=0)
    full_name: str = Field(min_length=1, max_length=120)
    phone: str | None = None
    scheme_id: str = Field(min_length=1)
    referral_code: str | None = None

    @field_validator("full_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Full name is required")
        return v

    @field_validator("phone")
    @classmethod
    def _digits_only(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        digits = v.strip().lstrip("+")
        if not digits.isdigit() or not 10 <= len(digits) <= 15:
            raise ValueError("Phone number must have 10-15 digits")
        return v.strip()


class RegistrationFeeRequest(BaseModel):
    scheme_id: str | None = None
    amount: float | None = Field(None, gt=0)


class PaymentReturnRequest(BaseModel):
    url: str


class PaymentReturnResult(BaseModel):
    outcome: Literal["success", "failed", "none"]
    receipt: PaymentReceipt | None = None
    replace_url: str | None = None
    wizard: WizardView | None = None
