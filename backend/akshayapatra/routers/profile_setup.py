"""Profile-setup wizard: mount, step completion and payment return.

Endpoints:
  POST   /api/profile-setup/mount               → mount + initialise
  GET    /api/profile-setup/                    → current view
  DELETE /api/profile-setup/                    → unmount
  POST   /api/profile-setup/advance             → flow-only step done
  POST   /api/profile-setup/location            → save location, advance
  POST   /api/profile-setup/address             → save address, advance
  POST   /api/profile-setup/profile             → save profile, rebuild steps
  POST   /api/profile-setup/registration-fee    → start PhonePe payment
  POST   /api/profile-setup/payment-return      → reconcile gateway return
  POST   /api/profile-setup/receipt/dismiss     → receipt closed, advance

The wizard never decides anything from the client's say-so beyond "this
step index is done"; mapping and cursor live in the user's store.
"""

from fastapi import APIRouter, Cookie, Depends, Request, status

from akshayapatra.auth.deps import SessionUser, get_current_user
from akshayapatra.schemas.payment import PaymentInitiation
from akshayapatra.schemas.wizard import (
    AddressSubmission,
    AdvanceRequest,
    LocationSubmission,
    PaymentReturnRequest,
    PaymentReturnResult,
    ProfileSubmission,
    RegistrationFeeRequest,
    WizardView,
)
from akshayapatra.services.phonepe import PhonePeGateway, get_payment_gateway
from akshayapatra.services.profile import ProfileService, get_profile_service
from akshayapatra.storage.local import LocalStore, get_local_store
from akshayapatra.wizard.session import ProfileSetupWizard

router = APIRouter()

REFERRAL_COOKIE = "referral_code"


async def get_wizard(
    user: SessionUser = Depends(get_current_user),
    store: LocalStore = Depends(get_local_store),
    profiles: ProfileService = Depends(get_profile_service),
    gateway: PhonePeGateway = Depends(get_payment_gateway),
) -> ProfileSetupWizard:
    return ProfileSetupWizard(user, store, profiles, gateway)


@router.post("/mount", response_model=WizardView)
async def mount_wizard(
    ref: str | None = None,
    scheme: str | None = None,
    referral_cookie: str | None = Cookie(None, alias=REFERRAL_COOKIE),
    wizard: ProfileSetupWizard = Depends(get_wizard),
):
    """Mount the wizard. ``ref`` wins over the ``referral_code`` cookie."""
    referral_code = (ref or referral_cookie or "").strip() or None
    return await wizard.mount(referral_code=referral_code, scheme_id=scheme)


@router.get("/", response_model=WizardView)
async def get_wizard_view(wizard: ProfileSetupWizard = Depends(get_wizard)):
    return await wizard.view()


@router.delete("/", status_code=status.HTTP_204_NO_CONTENT)
async def unmount_wizard(wizard: ProfileSetupWizard = Depends(get_wizard)):
    await wizard.unmount()


@router.post("/advance", response_model=WizardView)
async def advance(body: AdvanceRequest, wizard: ProfileSetupWizard = Depends(get_wizard)):
    return await wizard.advance(body.step_index)


@router.post("/location", response_model=WizardView)
async def complete_location(
    body: LocationSubmission, wizard: ProfileSetupWizard = Depends(get_wizard)
):
    return await wizard.complete_location(body)


@router.post("/address", response_model=WizardView)
async def complete_address(
    body: AddressSubmission, wizard: ProfileSetupWizard = Depends(get_wizard)
):
    return await wizard.complete_address(body)


@router.post("/profile", response_model=WizardView)
async def submit_profile(
    body: ProfileSubmission, wizard: ProfileSetupWizard = Depends(get_wizard)
):
    return await wizard.submit_profile(body)


@router.post("/registration-fee", response_model=PaymentInitiation)
async def start_registration_fee(
    body: RegistrationFeeRequest,
    request: Request,
    wizard: ProfileSetupWizard = Depends(get_wizard),
):
    # The gateway calls back into this service, not the frontend
    origin = str(request.base_url).rstrip("/")
    return await wizard.start_registration_fee(body.scheme_id, body.amount, origin)


@router.post("/payment-return", response_model=PaymentReturnResult)
async def payment_return(
    body: PaymentReturnRequest, wizard: ProfileSetupWizard = Depends(get_wizard)
):
    return await wizard.handle_payment_return(body.url)


@router.post("/receipt/dismiss", response_model=WizardView)
async def dismiss_receipt(wizard: ProfileSetupWizard = Depends(get_wizard)):
    return await wizard.dismiss_receipt()
