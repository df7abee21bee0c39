"""Dirty-flag polling.

Database triggers raise per-user flags when referral or transaction
aggregates change. Clients poll them to know when to refetch; the poll is
throttled through ``app:lastFlagsCheck`` and falls back to the last known
flags whenever the RPC fails.
"""

import logging
import time

from akshayapatra.config import settings
from akshayapatra.middleware.exceptions import UpstreamServiceError
from akshayapatra.schemas.local import DirtyFlags
from akshayapatra.services.profile import ProfileService
from akshayapatra.storage.app_state import DirtyFlagsStorage

logger = logging.getLogger(__name__)


async def check_flags(
    storage: DirtyFlagsStorage,
    profiles: ProfileService,
    clear_remote: bool = False,
    force: bool = False,
    now_ms: int | None = None,
) -> DirtyFlags:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    cached = await storage.get()

    if not force:
        last = await storage.last_check_ms()
        if now_ms - last < settings.flags_min_interval_seconds * 1000:
            return cached

    try:
        row = await profiles.consume_update_flags(clear=clear_remote)
    except UpstreamServiceError as e:
        logger.warning(f"consume_user_update_flags failed, keeping cached flags: {e.message}")
        return cached

    flags = DirtyFlags(
        referral=bool(row.get("referral_update_flag")),
        referral2=bool(row.get("referral2_update_flag")),
        transactions=bool(row.get("transactions_update_flag")),
        ts=now_ms,
    )
    await storage.put(flags)
    await storage.touch(now_ms)
    return flags


async def acknowledge_flags(
    storage: DirtyFlagsStorage,
    profiles: ProfileService,
    now_ms: int | None = None,
) -> DirtyFlags:
    """Clear the flags remotely and locally once the client has refetched."""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    await check_flags(storage, profiles, clear_remote=True, force=True, now_ms=now_ms)
    cleared = DirtyFlags(ts=now_ms)
    await storage.put(cleared)
    return cleared
