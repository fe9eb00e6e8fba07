from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Protocol

from redis.asyncio import from_url as _redis_from_url
from redis.exceptions import RedisError

from gemini_key_proxy.errors import HealthStoreError

if TYPE_CHECKING:
    import logging

MEMORY_STORE_URL = "memory://"
SUCCESS_FIELD = "success"
FAILED_FIELD = "failed"


@dataclass(slots=True)
class CredentialHealth:
    success: int = 0
    failed: int = 0
    disabled_until: float | None = None

    @property
    def total(self) -> int:
        return self.success + self.failed

    @property
    def failure_ratio(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.failed / self.total

    def is_disabled(self, now: float) -> bool:
        return self.disabled_until is not None and self.disabled_until > now


class HealthStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def hgetall(self, key: str) -> dict[str, str]: ...

    async def delete(self, *keys: str) -> int: ...

    async def close(self) -> None: ...


class RedisClientFactory(Protocol):
    def __call__(self, redis_url: str) -> Any: ...


@dataclass(frozen=True, slots=True)
class HealthKeys:
    prefix: str = "gemini-proxy:"

    def stats(self, credential: str) -> str:
        return f"{self.prefix}stats:{credential}"

    def disabled(self, credential: str) -> str:
        return f"{self.prefix}disabled:{credential}"


class InMemoryHealthStore:
    """Process-local store with the same primitives as Redis; used for tests and ``memory://``."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._values: dict[str, tuple[str, float | None]] = {}
        self._hashes: dict[str, dict[str, int]] = {}

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._get_locked(key)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        async with self._lock:
            fields = self._hashes.setdefault(key, {})
            fields[field] = fields.get(field, 0) + int(amount)
            return fields[field]

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        async with self._lock:
            self._values[key] = (value, expires_at)

    async def hgetall(self, key: str) -> dict[str, str]:
        async with self._lock:
            fields = self._hashes.get(key, {})
            return {name: str(value) for name, value in fields.items()}

    async def delete(self, *keys: str) -> int:
        removed = 0
        async with self._lock:
            for key in keys:
                if self._values.pop(key, None) is not None:
                    removed += 1
                if self._hashes.pop(key, None) is not None:
                    removed += 1
        return removed

    async def close(self) -> None:
        return None

    def _get_locked(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            return None
        return value


class RedisHealthStore:
    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(key)
        except (RedisError, OSError) as exc:
            raise HealthStoreError(f"redis get failed: {exc}") from exc
        return _decode(value) if value is not None else None

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        try:
            return int(await self._redis.hincrby(key, field, amount))
        except (RedisError, OSError) as exc:
            raise HealthStoreError(f"redis hincrby failed: {exc}") from exc

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, value, ex=max(1, int(ttl_seconds)))
        except (RedisError, OSError) as exc:
            raise HealthStoreError(f"redis set failed: {exc}") from exc

    async def hgetall(self, key: str) -> dict[str, str]:
        try:
            raw = await self._redis.hgetall(key)
        except (RedisError, OSError) as exc:
            raise HealthStoreError(f"redis hgetall failed: {exc}") from exc
        if not isinstance(raw, dict):
            return {}
        return {_decode(name): _decode(value) for name, value in raw.items()}

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._redis.delete(*keys))
        except (RedisError, OSError) as exc:
            raise HealthStoreError(f"redis delete failed: {exc}") from exc

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except (RedisError, OSError):
            return None


def build_redis_client(redis_url: str) -> Any:
    return _redis_from_url(redis_url, decode_responses=True)


def build_health_store(
    redis_url: str | None,
    logger: logging.Logger | None = None,
    create_client: RedisClientFactory | None = None,
) -> HealthStore | None:
    """Return the configured store, or ``None`` when health tracking has no backend."""
    if not redis_url or not redis_url.strip():
        return None
    if redis_url.strip() == MEMORY_STORE_URL:
        return InMemoryHealthStore()

    factory = create_client or build_redis_client
    try:
        return RedisHealthStore(redis_client=factory(redis_url.strip()))
    except (RedisError, ValueError) as exc:
        if logger is not None:
            logger.warning(
                "health_store_unavailable reason=%s fallback=disabled",
                str(exc),
            )
        return None


async def load_credential_health(
    store: HealthStore,
    keys: HealthKeys,
    credential: str,
) -> CredentialHealth:
    fields = await store.hgetall(keys.stats(credential))
    disabled_raw = await store.get(keys.disabled(credential))
    return CredentialHealth(
        success=_as_int(fields.get(SUCCESS_FIELD)),
        failed=_as_int(fields.get(FAILED_FIELD)),
        disabled_until=parse_disabled_until(disabled_raw),
    )


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _as_int(value: str | None) -> int:
    if value is None:
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def parse_disabled_until(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        # Flag present but unparseable: still disabled until the TTL drops it.
        return float("inf")
