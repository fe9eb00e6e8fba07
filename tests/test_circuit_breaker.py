from __future__ import annotations

import asyncio
import logging
from typing import Any

from gemini_key_proxy.circuit_breaker import (
    CircuitBreakerConfig,
    CredentialCircuitBreaker,
    build_circuit_breaker_config,
)
from gemini_key_proxy.errors import HealthStoreError
from gemini_key_proxy.health_store import (
    CredentialHealth,
    HealthKeys,
    InMemoryHealthStore,
)
from gemini_key_proxy.settings import Settings


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _UnreachableStore(InMemoryHealthStore):
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        raise HealthStoreError("connection refused")


def _seed(store: InMemoryHealthStore, credential: str, success: int, failed: int) -> None:
    keys = HealthKeys()

    async def _run() -> None:
        if success:
            await store.hincrby(keys.stats(credential), "success", success)
        if failed:
            await store.hincrby(keys.stats(credential), "failed", failed)

    asyncio.run(_run())


def _breaker(store: InMemoryHealthStore, clock: _Clock) -> CredentialCircuitBreaker:
    return CredentialCircuitBreaker(store, CircuitBreakerConfig(), clock=clock)


def test_rate_limited_credential_is_disabled_for_exactly_one_hour() -> None:
    clock = _Clock()
    store = InMemoryHealthStore(clock=clock)
    breaker = _breaker(store, clock)
    _seed(store, "key-a", success=0, failed=21)

    asyncio.run(breaker.record_outcome("key-a", 429))

    health = asyncio.run(breaker.snapshot("key-a"))
    assert health.failed == 22
    assert health.success == 0
    assert health.disabled_until == clock.now + 3600

    clock.now += 3599
    assert asyncio.run(breaker.snapshot("key-a")).is_disabled(clock.now)
    clock.now += 1
    assert asyncio.run(breaker.snapshot("key-a")).disabled_until is None


def test_breaker_needs_more_than_minimum_sample_size() -> None:
    clock = _Clock()
    store = InMemoryHealthStore(clock=clock)
    breaker = _breaker(store, clock)
    _seed(store, "key-a", success=5, failed=14)

    asyncio.run(breaker.record_outcome("key-a", 429))
    health = asyncio.run(breaker.snapshot("key-a"))
    assert health.total == 20
    assert health.disabled_until is None

    asyncio.run(breaker.record_outcome("key-a", 429))
    health = asyncio.run(breaker.snapshot("key-a"))
    assert health.total == 21
    assert health.is_disabled(clock.now)


def test_should_disable_thresholds() -> None:
    breaker = _breaker(InMemoryHealthStore(), _Clock())

    assert breaker.should_disable(CredentialHealth(success=15, failed=5)) is False
    assert breaker.should_disable(CredentialHealth(success=0, failed=20)) is False
    assert breaker.should_disable(CredentialHealth(success=11, failed=11)) is False
    assert breaker.should_disable(CredentialHealth(success=10, failed=11)) is True


def test_success_is_counted_and_never_decremented() -> None:
    clock = _Clock()
    store = InMemoryHealthStore(clock=clock)
    breaker = _breaker(store, clock)

    asyncio.run(breaker.record_outcome("key-a", 200))
    assert asyncio.run(breaker.snapshot("key-a")).success == 1
    asyncio.run(breaker.record_outcome("key-a", 200))
    health = asyncio.run(breaker.snapshot("key-a"))
    assert health.success == 2
    assert health.failed == 0


def test_untracked_statuses_leave_counters_alone() -> None:
    clock = _Clock()
    store = InMemoryHealthStore(clock=clock)
    breaker = _breaker(store, clock)
    _seed(store, "key-a", success=0, failed=30)

    for status in (201, 400, 403, 500, 503):
        asyncio.run(breaker.record_outcome("key-a", status))

    health = asyncio.run(breaker.snapshot("key-a"))
    assert health == CredentialHealth(success=0, failed=30, disabled_until=None)


def test_counters_are_not_reset_when_disable_expires() -> None:
    clock = _Clock()
    store = InMemoryHealthStore(clock=clock)
    breaker = _breaker(store, clock)
    _seed(store, "key-a", success=0, failed=25)

    asyncio.run(breaker.record_outcome("key-a", 429))
    clock.now += 3600
    health = asyncio.run(breaker.snapshot("key-a"))
    assert health.disabled_until is None
    assert health.failed == 26

    asyncio.run(breaker.record_outcome("key-a", 429))
    assert asyncio.run(breaker.snapshot("key-a")).is_disabled(clock.now)


def test_store_failures_are_logged_and_swallowed(caplog: Any) -> None:
    breaker = _breaker(_UnreachableStore(), _Clock())
    with caplog.at_level(logging.WARNING):
        asyncio.run(breaker.record_outcome("key-a-123456789", 429))
    assert "health_record_failed" in caplog.text
    assert "key-a-123456789" not in caplog.text


def test_disabled_breaker_records_nothing() -> None:
    clock = _Clock()
    store = InMemoryHealthStore(clock=clock)
    breaker = CredentialCircuitBreaker(
        store, CircuitBreakerConfig(enabled=False), clock=clock
    )
    asyncio.run(breaker.record_outcome("key-a", 200))
    assert asyncio.run(breaker.snapshot("key-a")).success == 0


def test_reset_clears_counters_and_disable_flag() -> None:
    clock = _Clock()
    store = InMemoryHealthStore(clock=clock)
    breaker = _breaker(store, clock)
    _seed(store, "key-a", success=0, failed=30)
    asyncio.run(breaker.record_outcome("key-a", 429))

    asyncio.run(breaker.reset("key-a"))

    assert asyncio.run(breaker.snapshot("key-a")) == CredentialHealth()


def test_config_built_from_settings_is_clamped() -> None:
    settings = Settings(
        circuit_breaker_min_requests=-3,
        circuit_breaker_failure_ratio=1.7,
        circuit_breaker_disable_seconds=0,
    )
    config = build_circuit_breaker_config(settings)
    assert config.min_requests == 0
    assert config.failure_ratio == 1.0
    assert config.disable_seconds == 1
