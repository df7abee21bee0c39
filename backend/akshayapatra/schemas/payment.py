"""Payment receipt and gateway initiation schemas."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PaymentType = Literal["registration", "card_issue", "subscription", "scheme_payment"]


class PaymentReceipt(BaseModel):
    """Receipt shown after a gateway redirect. Display-only, never stored."""
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: str = Field(alias="transactionId")
    amount: float
    payment_type: PaymentType = Field(alias="paymentType")
    timestamp: str
    user_name: str = Field(alias="userName")
    user_phone: str = Field(alias="userPhone")
    payment_method: str = Field(alias="paymentMethod")
    status: str
    scheme_id: str | None = Field(None, alias="schemeId")
    scheme_name: str | None = Field(None, alias="schemeName")
    period_index: int | None = Field(None, alias="periodIndex")
    month: str | None = None
    card_id: str | None = Field(None, alias="cardId")
    referral_code: str | None = Field(None, alias="referralCode")
    user_id: str | None = Field(None, alias="userId")
    description: str | None = None

    @property
    def title(self) -> str:
        return {
            "registration": "REGISTRATION RECEIPT",
            "card_issue": "CARD ISSUE RECEIPT",
        }.get(self.payment_type, "PAYMENT RECEIPT")


class PaymentInitiation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    txid: str
    invoice_id: str
    redirect_url: str = Field(alias="redirectUrl")
