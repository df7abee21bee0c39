"""Referral code, installment cart and dirty-flag snapshots (``app:*`` keys)."""

import time

from akshayapatra.schemas.local import DirtyFlags, InstallmentCart
from akshayapatra.storage.local import LS_KEYS, LocalStore


class ReferralCodeStorage:
    def __init__(self, store: LocalStore):
        self.store = store

    async def get(self) -> str | None:
        code = await self.store.get(LS_KEYS["referral_code"], None)
        return code if isinstance(code, str) and code else None

    async def set(self, code: str | None) -> None:
        if code:
            await self.store.set(LS_KEYS["referral_code"], code)
        else:
            await self.clear()

    async def clear(self) -> None:
        await self.store.delete(LS_KEYS["referral_code"])


class InstallmentCartStorage:
    """Cart of selected installment periods, kept so it survives a refresh."""

    def __init__(self, store: LocalStore):
        self.store = store

    async def get(self) -> InstallmentCart | None:
        raw = await self.store.get(LS_KEYS["installment_cart"], None)
        if not isinstance(raw, dict):
            return None
        return InstallmentCart.model_validate(raw)

    async def put(self, cart: InstallmentCart) -> None:
        await self.store.set(LS_KEYS["installment_cart"], cart.model_dump(by_alias=True))

    async def clear(self) -> None:
        await self.store.delete(LS_KEYS["installment_cart"])


class DirtyFlagsStorage:
    def __init__(self, store: LocalStore):
        self.store = store

    async def get(self) -> DirtyFlags:
        raw = await self.store.get(LS_KEYS["dirty_flags_cache"], None)
        if not isinstance(raw, dict):
            return DirtyFlags()
        return DirtyFlags.model_validate(raw)

    async def put(self, flags: DirtyFlags) -> None:
        await self.store.set(LS_KEYS["dirty_flags_cache"], flags.model_dump())

    async def last_check_ms(self) -> int:
        return int(await self.store.get(LS_KEYS["last_flags_check"], 0) or 0)

    async def touch(self, now_ms: int | None = None) -> None:
        await self.store.set(
            LS_KEYS["last_flags_check"],
            now_ms if now_ms is not None else int(time.time() * 1000),
        )
