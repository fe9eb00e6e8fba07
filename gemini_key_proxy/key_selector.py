from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Callable

from gemini_key_proxy.errors import (
    AllCredentialsDisabledError,
    HealthStoreError,
    PoolEmptyError,
)
from gemini_key_proxy.health_store import (
    HealthKeys,
    HealthStore,
    parse_disabled_until,
)
from gemini_key_proxy.key_pool import KeyPool

logger = logging.getLogger("uvicorn.error")


class KeySelector:
    def __init__(
        self,
        pool: KeyPool,
        store: HealthStore | None = None,
        *,
        keys: HealthKeys | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pool = pool
        self._store = store
        self._keys = keys or HealthKeys()
        self._rng = rng or random.Random()
        self._clock = clock

    @property
    def pool(self) -> KeyPool:
        return self._pool

    async def enabled_credentials(self) -> list[str]:
        credentials = list(self._pool)
        if self._store is None:
            return credentials

        store = self._store
        try:
            flags = await asyncio.gather(
                *(store.get(self._keys.disabled(credential)) for credential in credentials)
            )
        except HealthStoreError as exc:
            logger.warning(
                "key_selector_store_error error=%s fallback=all_enabled",
                str(exc),
            )
            return credentials

        now = self._clock()
        return [
            credential
            for credential, flag in zip(credentials, flags)
            if not _flag_is_active(flag, now)
        ]

    async def select(self) -> str:
        if self._pool.is_empty:
            raise PoolEmptyError("No valid API keys configured.")

        enabled = await self.enabled_credentials()
        if not enabled:
            logger.error(
                "key_selector_all_disabled pool_size=%d",
                len(self._pool),
            )
            raise AllCredentialsDisabledError(
                f"All {len(self._pool)} API keys are currently disabled."
            )
        return self._rng.choice(enabled)


def _flag_is_active(flag: str | None, now: float) -> bool:
    if flag is None:
        return False
    disabled_until = parse_disabled_until(flag)
    return disabled_until is not None and disabled_until > now
