"""Server-side owner of one user's profile-setup wizard.

Each request loads the persisted snapshot (``wizard:session``), applies one
transition from ``wizard.machine`` and saves it back. Two tokens keep the
flow well-behaved across requests:

  wizard:inflight   atomic in-flight token; a second advance that arrives
                    while one is running is ignored. Each holder frees
                    only its own token
  mount_id          written at mount, checked before every state-mutating
                    continuation, so work started before an unmount (or a
                    newer mount) can never overwrite the current wizard

Bootstrap (ensure-profile + referral attach) is latched in the snapshot
and runs at most once per mount.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from akshayapatra.auth.deps import SessionUser
from akshayapatra.config import settings
from akshayapatra.middleware.exceptions import (
    AkshayapatraException,
    StepSaveError,
    UpstreamServiceError,
    WizardStateError,
)
from akshayapatra.schemas.payment import PaymentInitiation
from akshayapatra.schemas.profile import UserProfileSnapshot
from akshayapatra.schemas.wizard import (
    AddressSubmission,
    LocationSubmission,
    PaymentReturnResult,
    ProfileSubmission,
    WizardView,
)
from akshayapatra.services.phonepe import PhonePeGateway
from akshayapatra.services.profile import ProfileService
from akshayapatra.storage.app_state import ReferralCodeStorage
from akshayapatra.storage.local import LocalStore
from akshayapatra.storage.profile_storage import (
    MilestoneStorage,
    ProfileSetupStorage,
    StorageCleanup,
    UserProfileStorage,
)
from akshayapatra.wizard.machine import (
    Active,
    AdvanceFailed,
    BeginAdvance,
    Initialized,
    InitFailed,
    Initializing,
    MappingReplaced,
    Mounted,
    RedirectRequested,
    StepAdvanced,
    Uninitialized,
    WizardState,
    current_kind,
    dump_state,
    load_state,
    render,
    transition,
)
from akshayapatra.wizard.payment_return import build_registration_receipt, parse_payment_return
from akshayapatra.wizard.resolver import resolve_step_mapping
from akshayapatra.wizard.steps import (
    KIND_TO_TOKEN,
    STEP_MILESTONES,
    TRACKED_KINDS,
    SetupMilestone,
    SetupStep,
    StepKind,
)

logger = logging.getLogger("akshayapatra.wizard")

SESSION_KEY = "wizard:session"
INFLIGHT_KEY = "wizard:inflight"
PAYMENT_HANDLED_PREFIX = "payment:handled:"
PAYMENT_RECEIPT_KEY = "payment:receipt"


class WizardCancelled(Exception):
    """The mount this work belongs to is gone."""


class ProfileSetupWizard:
    def __init__(
        self,
        user: SessionUser,
        store: LocalStore,
        profiles: ProfileService,
        gateway: PhonePeGateway | None = None,
        advance_delay_ms: int | None = None,
        dashboard_path: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.user = user
        self.store = store
        self.profiles = profiles
        self.gateway = gateway
        self.advance_delay_ms = (
            settings.step_advance_delay_ms if advance_delay_ms is None else advance_delay_ms
        )
        self.dashboard_path = dashboard_path or settings.dashboard_path
        self._sleep = sleep

        self.setup = ProfileSetupStorage(store)
        self.milestones = MilestoneStorage(store)
        self.cached_profiles = UserProfileStorage(store)
        self.referrals = ReferralCodeStorage(store)
        self.cleanup = StorageCleanup(store)

    # ── Snapshot ────────────────────────────────────────────

    async def _load(self) -> dict:
        snapshot = await self.store.get(SESSION_KEY, None)
        if not isinstance(snapshot, dict):
            return {"mount_id": None, "bootstrapped": False, "state": dump_state(Uninitialized())}
        return snapshot

    async def _save(self, snapshot: dict) -> None:
        await self.store.set(
            SESSION_KEY, snapshot, ttl_seconds=settings.wizard_session_ttl_seconds
        )

    async def _ensure_current(self, mount_id: str) -> dict:
        snapshot = await self._load()
        if snapshot.get("mount_id") != mount_id:
            raise WizardCancelled(mount_id)
        return snapshot

    async def _commit(self, mount_id: str, state: WizardState, **extra) -> WizardState:
        snapshot = await self._ensure_current(mount_id)
        snapshot.update(extra)
        snapshot["state"] = dump_state(state)
        await self._save(snapshot)
        return state

    # ── Mount / unmount ─────────────────────────────────────

    async def mount(
        self, referral_code: str | None = None, scheme_id: str | None = None
    ) -> WizardView:
        """Start a fresh wizard for this user and initialise it."""
        if referral_code:
            await self.referrals.set(referral_code)
        await self.cleanup.cleanup_stale_data()

        mount_id = uuid.uuid4().hex
        await self._save(
            {
                "mount_id": mount_id,
                "bootstrapped": False,
                "scheme_id": scheme_id,
                "state": dump_state(transition(Uninitialized(), Mounted())),
            }
        )
        # A token held by the previous mount must not block this one
        await self.store.release(INFLIGHT_KEY)
        logger.info(f"Wizard mounted for user {self.user.id} ({mount_id})")
        return await self.initialize(mount_id)

    async def unmount(self) -> None:
        """Leave the wizard; pending continuations of the old mount are dropped."""
        await self.store.delete(SESSION_KEY)
        await self.store.release(INFLIGHT_KEY)
        logger.info(f"Wizard unmounted for user {self.user.id}")

    async def view(self) -> WizardView:
        snapshot = await self._load()
        state = load_state(snapshot.get("state"))
        if isinstance(state, Initializing) and snapshot.get("mount_id"):
            return await self.initialize(snapshot["mount_id"])
        return render(state)

    # ── Initialisation ──────────────────────────────────────

    async def initialize(self, mount_id: str) -> WizardView:
        holder = uuid.uuid4().hex
        if not await self.store.acquire(INFLIGHT_KEY, settings.inflight_ttl_seconds, holder):
            return render(Initializing())
        try:
            snapshot = await self._load()
            state = load_state(snapshot.get("state"))
            if snapshot.get("mount_id") != mount_id or not isinstance(state, Initializing):
                return render(state)

            try:
                event = await self._resolve_initial_steps(mount_id, snapshot)
            except WizardCancelled:
                logger.info(f"Wizard initialisation for {mount_id} cancelled by unmount")
                return render(Uninitialized())
            except Exception:
                logger.exception(f"Wizard initialisation failed for user {self.user.id}")
                event = InitFailed()

            try:
                new_state = await self._commit(mount_id, transition(state, event))
            except WizardCancelled:
                return render(Uninitialized())
            return render(new_state)
        finally:
            await self.store.release(INFLIGHT_KEY, holder)

    async def _resolve_initial_steps(self, mount_id: str, snapshot: dict) -> Initialized:
        status = await self.profiles.check_completion()
        local_missing = await self.setup.get_missing_steps()

        if status.is_complete and not local_missing:
            await self._ensure_current(mount_id)
            await self.cleanup.cleanup_profile_setup()
            return Initialized(mapping=(), redirect_to=self.dashboard_path)

        if not status.is_complete:
            await self.setup.sync_with_server(status, self.milestones)

        if not snapshot.get("bootstrapped"):
            # Latch before running so a re-entered initialisation skips it
            await self._commit(mount_id, Initializing(), bootstrapped=True)
            await self._bootstrap(snapshot.get("scheme_id"))

        await self._ensure_current(mount_id)
        profile = await self.profiles.fetch_profile()
        if profile is not None:
            await self.cached_profiles.set_profile(profile)

        mapping = await resolve_step_mapping(
            profile,
            await self.setup.get_missing_steps(),
            self.profiles.registration_fee_needed,
            celebration_seen=await self.milestones.is_completed(SetupMilestone.ISSUING_CARD),
        )
        return Initialized(mapping=tuple(mapping), redirect_to=self.dashboard_path)

    async def _bootstrap(self, scheme_id: str | None) -> None:
        """Make sure the profile row exists and the referrer is linked.

        Failures are logged only; the wizard is what completes the profile.
        """
        referral_code = await self.referrals.get()
        try:
            await self.profiles.ensure_profile(
                full_name=self.user.full_name,
                phone=self.user.phone_number,
                referral_code=referral_code,
                scheme_id=scheme_id,
            )
        except Exception as e:
            logger.warning(f"ensure_profile failed during wizard bootstrap: {e}")

        if referral_code:
            try:
                await self.profiles.attach_referral_by_code(referral_code)
            except Exception as e:
                logger.warning(f"Referral attach failed for code {referral_code}: {e}")

    # ── Advancing ───────────────────────────────────────────

    @asynccontextmanager
    async def _step_in_flight(self, step_index: int, expect: StepKind | None = None):
        """Hold the in-flight token while a step completes.

        ``expect`` names the step kind the caller completes; without it only
        steps that carry no saved data (celebrations, credentials, unknown
        codes) may be completed.

        Yields ``(mount_id, state)`` with ``state.is_loading`` set, or
        ``None`` when another completion is already running. On any error,
        cancellation included, the loading flag is cleared and the cursor
        stays where it was.
        """
        holder = uuid.uuid4().hex
        if not await self.store.acquire(INFLIGHT_KEY, settings.inflight_ttl_seconds, holder):
            yield None
            return
        try:
            snapshot = await self._load()
            mount_id = snapshot.get("mount_id")
            state = load_state(snapshot.get("state"))
            if isinstance(state, Active) and state.is_loading:
                # Nobody holds the token, so this flag outlived its completion
                logger.warning(f"Clearing stale loading flag for {mount_id}")
                state = await self._commit(mount_id, transition(state, AdvanceFailed()))
            begun = transition(state, BeginAdvance(step_index))
            if step_index != state.step:
                raise WizardStateError(
                    f"Step {step_index} is not the current step ({state.step})"
                )
            kind = current_kind(state)
            if expect is None and kind in TRACKED_KINDS:
                raise WizardStateError(f"Step {kind.name.lower()} must be completed by its form")
            if expect is not None and kind != expect:
                raise WizardStateError(f"Current step is not {expect.name.lower()}")

            await self._commit(mount_id, begun)
            try:
                yield mount_id, begun
            except WizardCancelled:
                logger.info(f"Step completion for {mount_id} dropped after unmount")
            except BaseException:
                try:
                    await self._commit(mount_id, transition(begun, AdvanceFailed()))
                except WizardCancelled:
                    pass
                raise
        finally:
            await self.store.release(INFLIGHT_KEY, holder)

    async def _current_view(self) -> WizardView:
        return render(load_state((await self._load()).get("state")))

    async def advance(self, step_index: int) -> WizardView:
        """Completion signal for a step without a form (congrats, issuing
        card, credentials). Location, address, profile and the registration
        fee each complete through their own operation."""
        async with self._step_in_flight(step_index) as flight:
            if flight is not None:
                mount_id, state = flight
                await self._complete_step(mount_id, state)
        return await self._current_view()

    async def _complete_step(self, mount_id: str, state: Active) -> None:
        kind = current_kind(state)
        tracked = kind in TRACKED_KINDS

        if tracked:
            token = KIND_TO_TOKEN[kind]
            remaining = await self.setup.mark_step_done(token)
            milestone = STEP_MILESTONES.get(token)
            if milestone is not None:
                await self.milestones.mark_completed(milestone)
            if not remaining and kind == StepKind.REGISTRATION_FEE:
                await self._finish(mount_id)
                return
        elif kind == StepKind.ISSUING_CARD:
            await self.milestones.mark_completed(SetupMilestone.ISSUING_CARD)

        next_step = state.step + 1
        if next_step >= len(state.mapping):
            await self._finish(mount_id)
            return

        if tracked and self.advance_delay_ms:
            await self._sleep(self.advance_delay_ms / 1000)
        await self._commit(mount_id, transition(state, StepAdvanced(next_step)))

    async def _finish(self, mount_id: str) -> None:
        await self._ensure_current(mount_id)
        await self.cleanup.cleanup_profile_setup()
        await self.referrals.clear()
        await self._commit(mount_id, transition(Uninitialized(), RedirectRequested(self.dashboard_path)))
        logger.info(f"Profile setup finished for user {self.user.id}")

    # ── Step forms ──────────────────────────────────────────

    async def _save_profile_fields(self, updates: dict) -> None:
        try:
            await self.profiles.update_profile(updates)
        except AkshayapatraException as e:
            logger.warning(f"Step save failed for user {self.user.id}: {e.message}")
            raise StepSaveError("Could not save your details. Please try again.") from e
        await self.cached_profiles.update_profile(**updates)

    async def complete_location(self, body: LocationSubmission) -> WizardView:
        async with self._step_in_flight(body.step_index, StepKind.LOCATION) as flight:
            if flight is not None:
                mount_id, state = flight
                await self._save_profile_fields(
                    {"country": body.country, "state": body.state, "district": body.district}
                )
                await self._complete_step(mount_id, state)
        return await self._current_view()

    async def complete_address(self, body: AddressSubmission) -> WizardView:
        async with self._step_in_flight(body.step_index, StepKind.ADDRESS) as flight:
            if flight is not None:
                mount_id, state = flight
                updates = {"street_address": body.street_address}
                if body.postal_code:
                    updates["postal_code"] = body.postal_code
                await self._save_profile_fields(updates)
                await self._complete_step(mount_id, state)
        return await self._current_view()

    async def submit_profile(self, body: ProfileSubmission) -> WizardView:
        """Save name/phone/scheme, then rebuild the mapping from scratch.

        Completing this step can add or remove the registration-fee step,
        so the cursor moves to the first step after the profile form in
        the new mapping rather than simply ``step + 1``.
        """
        async with self._step_in_flight(body.step_index, StepKind.PROFILE) as flight:
            if flight is None:
                return await self._current_view()
            mount_id, state = flight

            referral_code = body.referral_code or await self.referrals.get()
            try:
                await self.profiles.ensure_profile(
                    full_name=body.full_name,
                    phone=body.phone,
                    referral_code=referral_code,
                    scheme_id=body.scheme_id,
                )
            except UpstreamServiceError as e:
                logger.warning(f"Profile submission failed for user {self.user.id}: {e.message}")
                raise StepSaveError("Could not save your profile. Please try again.") from e

            updates = {"full_name": body.full_name}
            if body.phone:
                updates["phone_number"] = body.phone
            try:
                await self.profiles.update_profile(updates)
            except AkshayapatraException as e:
                logger.warning(f"Profile name/phone update failed: {e.message}")
            if referral_code:
                try:
                    await self.profiles.attach_referral_by_code(referral_code)
                except Exception as e:
                    logger.warning(f"Referral attach failed for code {referral_code}: {e}")

            await self.cached_profiles.update_profile(
                **updates, initial_scheme_id=body.scheme_id
            )
            remaining = await self.setup.mark_step_done(SetupStep.PROFILE)
            await self.milestones.mark_completed(SetupMilestone.PROFILE_FORM)

            profile = await self._fresh_profile(body.scheme_id)
            mapping = await resolve_step_mapping(
                profile,
                remaining,
                self.profiles.registration_fee_needed,
                celebration_seen=await self.milestones.is_completed(SetupMilestone.ISSUING_CARD),
            )
            next_step = next(
                (i for i, code in enumerate(mapping) if code > StepKind.PROFILE), None
            )
            if next_step is None:
                await self._finish(mount_id)
                return await self._current_view()

            if self.advance_delay_ms:
                await self._sleep(self.advance_delay_ms / 1000)
            await self._commit(
                mount_id, transition(state, MappingReplaced(tuple(mapping), next_step))
            )
        return await self._current_view()

    async def _fresh_profile(self, scheme_id: str) -> UserProfileSnapshot:
        try:
            profile = await self.profiles.fetch_profile()
        except Exception as e:
            logger.warning(f"Profile refetch failed, using cached copy: {e}")
            profile = await self.cached_profiles.get_profile()
        profile = profile or UserProfileSnapshot()
        # The write above may not be visible yet
        if not profile.initial_scheme_id:
            profile = profile.model_copy(update={"initial_scheme_id": scheme_id})
        return profile

    # ── Registration fee ────────────────────────────────────

    async def start_registration_fee(
        self,
        scheme_id: str | None = None,
        amount: float | None = None,
        origin: str | None = None,
    ) -> PaymentInitiation:
        state = load_state((await self._load()).get("state"))
        if current_kind(state) != StepKind.REGISTRATION_FEE:
            raise WizardStateError("Registration fee is not the current step")
        if self.gateway is None:
            raise WizardStateError("Payments are not available")

        if not scheme_id:
            profile = await self.cached_profiles.get_profile()
            scheme_id = profile.initial_scheme_id if profile else None
        try:
            return await self.gateway.initiate_registration_payment(scheme_id, amount, origin)
        except UpstreamServiceError as e:
            logger.warning(f"Registration payment initiation failed: {e.message}")
            raise StepSaveError("Could not start the payment. Please try again.") from e

    async def handle_payment_return(self, url: str) -> PaymentReturnResult:
        """Reconcile a return from the payment gateway.

        Success yields a receipt once per transaction; the receipt's
        dismissal (``dismiss_receipt``) is what completes the fee step.
        Failure only cleans the URL, leaving the user on the payment step.
        """
        parsed = parse_payment_return(url)
        if parsed.outcome != "success":
            return PaymentReturnResult(
                outcome=parsed.outcome,
                replace_url=parsed.replace_url,
                wizard=await self.view(),
            )

        receipt = None
        handled_key = f"{PAYMENT_HANDLED_PREFIX}{parsed.txid}" if parsed.txid else None
        if handled_key is None or await self.store.acquire(
            handled_key, settings.wizard_session_ttl_seconds
        ):
            profile = await self.cached_profiles.get_profile()
            if profile is None:
                try:
                    profile = await self.profiles.fetch_profile()
                except Exception as e:
                    logger.warning(f"Could not load user for receipt: {e}")
            receipt = build_registration_receipt(self.user, profile, parsed.txid)
            await self.store.set(
                PAYMENT_RECEIPT_KEY,
                receipt.transaction_id,
                ttl_seconds=settings.wizard_session_ttl_seconds,
            )
        else:
            logger.info(f"Payment {parsed.txid} already reconciled, no receipt")

        return PaymentReturnResult(
            outcome="success",
            receipt=receipt,
            replace_url=parsed.replace_url,
            wizard=await self.view(),
        )

    async def dismiss_receipt(self) -> WizardView:
        """Close the receipt and complete the registration-fee step.

        Only a successful payment return leaves a receipt to dismiss.
        """
        state = load_state((await self._load()).get("state"))
        if not isinstance(state, Active):
            return render(state)
        txid = await self.store.get(PAYMENT_RECEIPT_KEY, None)
        if not txid:
            raise WizardStateError("No completed payment to acknowledge")

        async with self._step_in_flight(state.step, StepKind.REGISTRATION_FEE) as flight:
            if flight is not None:
                mount_id, begun = flight
                await self._complete_step(mount_id, begun)
                await self.store.delete(PAYMENT_RECEIPT_KEY)
                logger.info(f"Registration fee {txid} acknowledged for user {self.user.id}")
        return await self._current_view()
