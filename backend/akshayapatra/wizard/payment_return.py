"""Reading the gateway's return URL and building the receipt it implies.

A return URL carries ``payment=success`` or ``payment=failed``. Exactly
one outcome is derived per URL, never both.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from akshayapatra.auth.deps import SessionUser
from akshayapatra.config import settings
from akshayapatra.schemas.payment import PaymentReceipt
from akshayapatra.schemas.profile import UserProfileSnapshot

# Parameters consumed by the wizard and removed from the visible URL
CONSUMED_PARAMS = frozenset({"payment", "txid", "error", "scheme"})

# Shorter trailing path segments are route names, not gateway ids
MIN_PATH_TXID_LENGTH = 11


@dataclass(frozen=True)
class PaymentReturn:
    outcome: Literal["success", "failed", "none"]
    txid: str | None
    replace_url: str | None


def parse_payment_return(url: str) -> PaymentReturn:
    parts = urlsplit(url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    status = next((v for k, v in params if k == "payment"), None)

    if status not in ("success", "failed"):
        return PaymentReturn(outcome="none", txid=None, replace_url=None)

    kept = [(k, v) for k, v in params if k not in CONSUMED_PARAMS]
    replace_url = urlunsplit(("", "", parts.path or "/", urlencode(kept), parts.fragment))

    txid = next((v for k, v in params if k == "txid" and v), None)
    if txid is None:
        last_segment = parts.path.rstrip("/").rsplit("/", 1)[-1]
        if len(last_segment) >= MIN_PATH_TXID_LENGTH:
            txid = last_segment

    return PaymentReturn(outcome=status, txid=txid, replace_url=replace_url)


def generate_transaction_id(now: float | None = None) -> str:
    return f"TXN{int((time.time() if now is None else now) * 1000)}"


def build_registration_receipt(
    user: SessionUser,
    profile: UserProfileSnapshot | None,
    txid: str | None,
    scheme_id: str | None = None,
) -> PaymentReceipt:
    """Receipt for a registration fee the gateway reported as paid."""
    name = (profile.full_name if profile else None) or user.full_name
    phone = (profile.phone_number if profile else None) or user.phone_number or ""
    return PaymentReceipt(
        transaction_id=txid or generate_transaction_id(),
        amount=settings.registration_fee_rs,
        payment_type="registration",
        timestamp=datetime.now(timezone.utc).isoformat(),
        user_name=name,
        user_phone=phone,
        payment_method="PhonePe",
        status="completed",
        scheme_id=scheme_id or (profile.initial_scheme_id if profile else None),
        user_id=user.id,
        description="Registration fee",
    )
