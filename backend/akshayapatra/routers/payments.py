"""PhonePe return endpoint for registration-fee payments.

PhonePe sends the browser (and, in REDIRECT mode, nothing else) to
``/api/payments/regfee/callback/<txid>``. The status is verified
server-to-server before the invoice is settled, then the browser is sent
back to the wizard with ``payment=success|failed`` for the reconciler.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, status
from fastapi.responses import RedirectResponse

from akshayapatra.config import settings
from akshayapatra.middleware.exceptions import AkshayapatraException
from akshayapatra.services.phonepe import PhonePeGateway, get_payment_gateway

logger = logging.getLogger("akshayapatra.payments")

router = APIRouter()


def wizard_return_url(outcome: str, txid: str) -> str:
    query = urlencode({"payment": outcome, "txid": txid})
    return f"{settings.app_url.rstrip('/')}{settings.wizard_path}?{query}"


@router.api_route("/regfee/callback/{txid}", methods=["GET", "POST"])
async def registration_fee_callback(
    txid: str,
    gateway: PhonePeGateway = Depends(get_payment_gateway),
):
    try:
        succeeded = await gateway.settle(txid)
    except AkshayapatraException as e:
        logger.error(f"Registration fee callback failed for {txid}: {e.message}")
        succeeded = False

    return RedirectResponse(
        wizard_return_url("success" if succeeded else "failed", txid),
        status_code=status.HTTP_303_SEE_OTHER,
    )
