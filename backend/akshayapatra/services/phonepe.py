"""PhonePe registration-fee payments.

Flow:
  1. ``initiate_registration_payment`` creates (once) the registration
     invoice through ``ensure_registration_fee_invoice``, stamps it with a
     gateway transaction id and asks PhonePe for a pay-page URL.
  2. PhonePe sends the browser back to ``/api/payments/regfee/callback/<txid>``.
  3. ``settle`` verifies the status with PhonePe and, on success, marks the
     invoice paid through ``handle_successful_payment_reg``.

Checksums follow PhonePe's X-VERIFY scheme:
``sha256(<body or path> + salt_key) + "###" + salt_index``.
"""

import base64
import hashlib
import json
import logging
import time

import httpx
from fastapi import Depends

from akshayapatra.auth.deps import SessionUser, get_current_user
from akshayapatra.config import settings
from akshayapatra.middleware.exceptions import BusinessLogicError, UpstreamServiceError
from akshayapatra.schemas.payment import PaymentInitiation
from akshayapatra.services.supabase import SupabaseClient

logger = logging.getLogger("akshayapatra.payments")

PAY_PATH = "/pg/v1/pay"
SUCCESS_CODE = "PAYMENT_SUCCESS"


def x_verify(message: str) -> str:
    digest = hashlib.sha256((message + settings.phonepe_salt_key).encode()).hexdigest()
    return f"{digest}###{settings.phonepe_salt_index}"


def build_transaction_id(invoice_id: str, now: float | None = None) -> str:
    """``REG`` + first 10 hex chars of the invoice + base36 millisecond clock."""
    millis = int((time.time() if now is None else now) * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    clock = ""
    while millis:
        millis, rem = divmod(millis, 36)
        clock = digits[rem] + clock
    return f"REG{invoice_id.replace('-', '')[:10]}{clock or '0'}"


class PhonePeGateway:
    def __init__(
        self,
        db: SupabaseClient,
        user: SessionUser,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.user = user
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.phonepe_base_url,
            transport=self._transport,
            timeout=settings.upstream_timeout_seconds,
        )

    async def initiate_registration_payment(
        self,
        scheme_id: str | None,
        amount: float | None = None,
        origin: str | None = None,
    ) -> PaymentInitiation:
        if not scheme_id:
            raise BusinessLogicError("schemeId is required.")
        amount_rs = amount if amount is not None else settings.registration_fee_rs
        if amount_rs <= 0:
            raise BusinessLogicError("Invalid amount for registration.")

        invoice = await self.db.rpc(
            "ensure_registration_fee_invoice",
            {"p_user_id": self.user.id, "p_scheme_id": scheme_id, "p_amount": amount_rs},
        )
        invoice_id = invoice[0] if isinstance(invoice, list) else invoice
        if not invoice_id:
            raise UpstreamServiceError("supabase", "Failed to create registration invoice")
        invoice_id = str(invoice_id)

        txid = build_transaction_id(invoice_id)
        base = (origin or settings.app_url).rstrip("/")
        callback_url = f"{base}/api/payments/regfee/callback/{txid}"

        payload = {
            "merchantId": settings.phonepe_merchant_id,
            "merchantTransactionId": txid,
            "merchantUserId": self.user.id,
            "amount": round(amount_rs * 100),  # paise
            "redirectUrl": callback_url,
            "redirectMode": "REDIRECT",
            "callbackUrl": callback_url,
            "mobileNumber": self.user.phone,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded = base64.b64encode(json.dumps(payload).encode()).decode()

        try:
            async with self._http() as client:
                response = await client.post(
                    f"/apis/hermes{PAY_PATH}",
                    json={"request": encoded},
                    headers={"X-VERIFY": x_verify(encoded + PAY_PATH)},
                )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamServiceError("phonepe", f"pay request failed: {e}") from e

        redirect_url = (
            ((data.get("data") or {}).get("instrumentResponse") or {})
            .get("redirectInfo", {})
            .get("url")
        )
        if not redirect_url:
            logger.error("PhonePe registration pay response error: %s", data)
            raise UpstreamServiceError("phonepe", "Failed to create payment session")

        try:
            await self.db.update("invoices", {"gateway_txid": txid}, {"id": f"eq.{invoice_id}"})
        except UpstreamServiceError as e:
            logger.error("Failed to map invoice.gateway_txid for %s: %s", invoice_id, e.message)

        return PaymentInitiation(txid=txid, invoice_id=invoice_id, redirect_url=redirect_url)

    async def payment_succeeded(self, txid: str) -> bool:
        path = f"/pg/v1/status/{settings.phonepe_merchant_id}/{txid}"
        try:
            async with self._http() as client:
                response = await client.get(
                    f"/apis/hermes{path}",
                    headers={
                        "X-VERIFY": x_verify(path),
                        "X-MERCHANT-ID": settings.phonepe_merchant_id,
                        "Accept": "application/json",
                    },
                )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("PhonePe status check failed for %s: %s", txid, e)
            return False
        return data.get("code") == SUCCESS_CODE

    async def settle(self, txid: str) -> bool:
        """Verify ``txid`` and settle its invoice. Returns the payment outcome."""
        succeeded = await self.payment_succeeded(txid)
        invoice = await self.db.select_one(
            "invoices", "id,type,status", {"gateway_txid": f"eq.{txid}"}
        )
        if not succeeded:
            logger.info("Payment %s was not successful, skipping settlement", txid)
            return False
        if invoice is None:
            logger.error("Payment %s succeeded but no invoice matches it", txid)
            return True
        if invoice.get("status") == "paid":
            logger.info("Invoice %s already paid", invoice["id"])
            return True

        try:
            await self.db.rpc(
                "handle_successful_payment_reg",
                {
                    "p_invoice_id": invoice["id"],
                    "p_gateway_txid": txid,
                    "p_user_id": self.user.id,
                },
            )
        except UpstreamServiceError as e:
            logger.error("handle_successful_payment_reg failed for %s: %s", txid, e.message)
        return True


async def get_payment_gateway(user: SessionUser = Depends(get_current_user)) -> PhonePeGateway:
    return PhonePeGateway(SupabaseClient(user.access_token), user)
