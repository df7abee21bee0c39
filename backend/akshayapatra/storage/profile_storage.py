"""Typed facades over the local store for the profile-setup flow.

  ProfileSetupStorage → which setup steps are still missing
  MilestoneStorage    → steps that must never be re-prompted
  UserProfileStorage  → cached ``user_profiles`` row
  SessionStorage      → cached auth user + session
  StorageCleanup      → bulk clean-up on finish / logout / expiry
"""

import logging
import time

from akshayapatra.schemas.profile import CompletionStatus, UserProfileSnapshot
from akshayapatra.storage.local import LocalStore
from akshayapatra.wizard.steps import STEP_MILESTONES, SetupMilestone, SetupStep, parse_tokens

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "user": "user",
    "session": "session",
    "user_profile": "user_profile",
    "missing_profile_steps": "missingProfileSteps",
    "profile_setup_in_progress": "profileSetupInProgress",
    "completed_setup_milestones": "completedSetupMilestones",
}


class ProfileSetupStorage:
    def __init__(self, store: LocalStore):
        self.store = store

    async def get_missing_steps(self) -> list[SetupStep]:
        """Locally known missing steps; empty when nothing is recorded."""
        raw = await self.store.get(STORAGE_KEYS["missing_profile_steps"], [])
        if not isinstance(raw, list):
            return []
        return parse_tokens(raw)

    async def set_missing_steps(self, steps) -> None:
        tokens = [s.value for s in parse_tokens(steps)]
        await self.store.set(STORAGE_KEYS["missing_profile_steps"], tokens)
        await self.store.set(STORAGE_KEYS["profile_setup_in_progress"], True)

    async def is_setup_in_progress(self) -> bool:
        return bool(await self.store.get(STORAGE_KEYS["profile_setup_in_progress"], False))

    async def mark_step_done(self, step: SetupStep) -> list[SetupStep]:
        """Drop ``step`` from the missing list and return what remains."""
        remaining = [s for s in await self.get_missing_steps() if s != step]
        await self.store.set(
            STORAGE_KEYS["missing_profile_steps"], [s.value for s in remaining]
        )
        return remaining

    async def complete_setup(self) -> None:
        await self.store.delete(STORAGE_KEYS["missing_profile_steps"])
        await self.store.delete(STORAGE_KEYS["profile_setup_in_progress"])
        logger.info("Profile setup state cleared for %s", self.store.namespace)

    async def sync_with_server(
        self,
        status: CompletionStatus,
        milestones: "MilestoneStorage",
    ) -> list[SetupStep]:
        """Overwrite local progress with the server's view.

        Steps whose milestone is already recorded stay done locally even if
        the server still lists them.
        """
        if status.is_complete:
            await self.complete_setup()
            return []

        completed = set(await milestones.get_completed())
        missing = [
            step for step in parse_tokens(status.missing_steps)
            if STEP_MILESTONES.get(step) not in completed
        ]
        await self.set_missing_steps(missing)
        return missing


class MilestoneStorage:
    def __init__(self, store: LocalStore):
        self.store = store

    async def get_completed(self) -> list[SetupMilestone]:
        raw = await self.store.get(STORAGE_KEYS["completed_setup_milestones"], [])
        completed = []
        for item in raw if isinstance(raw, list) else []:
            try:
                completed.append(SetupMilestone(item))
            except ValueError:
                continue
        return completed

    async def is_completed(self, milestone: SetupMilestone) -> bool:
        return milestone in await self.get_completed()

    async def mark_completed(self, milestone: SetupMilestone) -> None:
        completed = await self.get_completed()
        if milestone not in completed:
            completed.append(milestone)
            await self.store.set(
                STORAGE_KEYS["completed_setup_milestones"], [m.value for m in completed]
            )

    async def clear(self) -> None:
        await self.store.delete(STORAGE_KEYS["completed_setup_milestones"])


class UserProfileStorage:
    def __init__(self, store: LocalStore):
        self.store = store

    async def set_profile(self, profile: UserProfileSnapshot) -> None:
        await self.store.set(STORAGE_KEYS["user_profile"], profile.model_dump(mode="json"))

    async def get_profile(self) -> UserProfileSnapshot | None:
        raw = await self.store.get(STORAGE_KEYS["user_profile"], None)
        if not isinstance(raw, dict):
            return None
        return UserProfileSnapshot.model_validate(raw)

    async def update_profile(self, **updates) -> UserProfileSnapshot | None:
        """Patch the cached row; no-op when nothing is cached."""
        current = await self.get_profile()
        if current is None:
            return None
        updated = current.model_copy(update=updates)
        await self.set_profile(updated)
        return updated

    async def clear_profile(self) -> None:
        await self.store.delete(STORAGE_KEYS["user_profile"])


class SessionStorage:
    def __init__(self, store: LocalStore):
        self.store = store

    async def set_user(self, user: dict) -> None:
        await self.store.set(STORAGE_KEYS["user"], user)

    async def get_user(self) -> dict | None:
        return await self.store.get(STORAGE_KEYS["user"], None)

    async def set_session(self, session: dict) -> None:
        await self.store.set(STORAGE_KEYS["session"], session)

    async def get_session(self) -> dict | None:
        return await self.store.get(STORAGE_KEYS["session"], None)

    async def clear_auth(self) -> None:
        await self.store.delete(STORAGE_KEYS["user"])
        await self.store.delete(STORAGE_KEYS["session"])


class StorageCleanup:
    def __init__(self, store: LocalStore):
        self.store = store
        self.setup = ProfileSetupStorage(store)
        self.milestones = MilestoneStorage(store)
        self.profiles = UserProfileStorage(store)
        self.sessions = SessionStorage(store)

    async def cleanup_profile_setup(self) -> None:
        await self.setup.complete_setup()
        await self.milestones.clear()

    async def cleanup_auth(self) -> None:
        await self.sessions.clear_auth()
        await self.profiles.clear_profile()
        await self.setup.complete_setup()

    async def cleanup_stale_data(self, now: float | None = None) -> bool:
        """Drop cached auth data once the stored session has expired."""
        session = await self.sessions.get_session()
        if not isinstance(session, dict) or not session.get("expires_at"):
            return False
        now = time.time() if now is None else now
        if now > float(session["expires_at"]):
            logger.info("Session expired, cleaning up auth data for %s", self.store.namespace)
            await self.cleanup_auth()
            return True
        return False
