from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from gemini_key_proxy.errors import HealthStoreError
from gemini_key_proxy.health_store import (
    FAILED_FIELD,
    SUCCESS_FIELD,
    CredentialHealth,
    HealthKeys,
    HealthStore,
    load_credential_health,
)
from gemini_key_proxy.key_pool import mask_credential

if TYPE_CHECKING:
    from gemini_key_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class CircuitBreakerConfig:
    enabled: bool = True
    min_requests: int = 20
    failure_ratio: float = 0.5
    disable_seconds: int = 3600
    success_status: int = 200
    failure_status: int = 429


class CredentialCircuitBreaker:
    """Per-credential success/rate-limit counters with a time-bounded disable.

    Counters live in the shared Health Store so every worker sees the same
    history. A credential is disabled once it has more than ``min_requests``
    tracked outcomes and more than ``failure_ratio`` of them were rate limited.
    The disable flag carries a TTL, so re-enabling needs no explicit action.
    Counters are not reset when the flag expires.
    """

    def __init__(
        self,
        store: HealthStore,
        config: CircuitBreakerConfig | None = None,
        *,
        keys: HealthKeys | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config or CircuitBreakerConfig()
        self._keys = keys or HealthKeys()
        self._clock = clock

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    async def record_outcome(self, credential: str, upstream_status: int) -> None:
        if not self._config.enabled:
            return

        if upstream_status == self._config.success_status:
            field = SUCCESS_FIELD
        elif upstream_status == self._config.failure_status:
            field = FAILED_FIELD
        else:
            return

        try:
            await self._store.hincrby(self._keys.stats(credential), field, 1)
            health = await load_credential_health(self._store, self._keys, credential)
            if self.should_disable(health):
                await self._disable(credential, health)
        except HealthStoreError as exc:
            logger.warning(
                "health_record_failed key=%s status=%d error=%s",
                mask_credential(credential),
                upstream_status,
                str(exc),
            )

    def should_disable(self, health: CredentialHealth) -> bool:
        total = health.total
        if total <= self._config.min_requests:
            return False
        return health.failed / total > self._config.failure_ratio

    async def snapshot(self, credential: str) -> CredentialHealth:
        return await load_credential_health(self._store, self._keys, credential)

    async def reset(self, credential: str) -> None:
        await self._store.delete(
            self._keys.stats(credential),
            self._keys.disabled(credential),
        )

    async def _disable(self, credential: str, health: CredentialHealth) -> None:
        until = self._clock() + self._config.disable_seconds
        await self._store.set(
            self._keys.disabled(credential),
            f"{until:.6f}",
            ttl_seconds=self._config.disable_seconds,
        )
        logger.warning(
            (
                "credential_disabled key=%s success=%d failed=%d "
                "failure_ratio=%.3f disabled_seconds=%d"
            ),
            mask_credential(credential),
            health.success,
            health.failed,
            health.failure_ratio,
            self._config.disable_seconds,
        )


def build_circuit_breaker_config(settings: Settings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        enabled=settings.health_tracking_enabled,
        min_requests=max(0, settings.circuit_breaker_min_requests),
        failure_ratio=min(1.0, max(0.0, settings.circuit_breaker_failure_ratio)),
        disable_seconds=max(1, settings.circuit_breaker_disable_seconds),
    )
