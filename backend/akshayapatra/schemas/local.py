"""Schemas for client state kept in the per-user local store."""

from pydantic import BaseModel, Field


class InstallmentCart(BaseModel):
    card_id: str = Field(alias="cardId")
    scheme_id: str = Field(alias="schemeId")
    amount: float = Field(gt=0)
    currency: str = "INR"
    indices: list[int] = []

    model_config = {"populate_by_name": True}


class DirtyFlags(BaseModel):
    referral: bool = False
    referral2: bool = False
    transactions: bool = False
    ts: int = 0
