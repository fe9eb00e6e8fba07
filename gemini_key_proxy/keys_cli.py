from __future__ import annotations

import argparse
import asyncio
import sys
import time
from typing import Any, Callable, cast

import yaml

from gemini_key_proxy.circuit_breaker import (
    CredentialCircuitBreaker,
    build_circuit_breaker_config,
)
from gemini_key_proxy.errors import ConfigurationError, HealthStoreError
from gemini_key_proxy.health_store import HealthKeys, HealthStore, build_health_store
from gemini_key_proxy.key_pool import KeyPool, load_key_pool, mask_credential
from gemini_key_proxy.settings import Settings, get_settings


def render_yaml(payload: Any) -> str:
    return yaml.safe_dump(payload, sort_keys=False).rstrip()


def print_yaml(payload: Any) -> None:
    sys.stdout.write(render_yaml(payload) + "\n")


def _resolve_credential(pool: KeyPool, value: str) -> str:
    if value in pool:
        return value
    matches = [credential for credential in pool if credential.startswith(value)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise ConfigurationError(f"No configured API key matches '{value}'.")
    raise ConfigurationError(f"Prefix '{value}' matches {len(matches)} API keys.")


def _open_breaker(settings: Settings) -> tuple[HealthStore, CredentialCircuitBreaker]:
    store = build_health_store(settings.redis_url)
    if store is None:
        raise ConfigurationError("REDIS_URL is not set; no health data is tracked.")
    breaker = CredentialCircuitBreaker(
        store,
        build_circuit_breaker_config(settings),
        keys=HealthKeys(prefix=settings.health_key_prefix),
    )
    return store, breaker


async def _collect_status(settings: Settings, pool: KeyPool) -> list[dict[str, Any]]:
    store, breaker = _open_breaker(settings)
    now = time.time()
    rows: list[dict[str, Any]] = []
    try:
        for credential in pool:
            health = await breaker.snapshot(credential)
            disabled = health.is_disabled(now)
            rows.append(
                {
                    "key": mask_credential(credential),
                    "success": health.success,
                    "failed": health.failed,
                    "failure_ratio": round(health.failure_ratio, 3),
                    "disabled": disabled,
                    "disabled_for_seconds": (
                        int(cast(float, health.disabled_until) - now) if disabled else 0
                    ),
                }
            )
    finally:
        await store.close()
    return rows


async def _reset(settings: Settings, credentials: list[str]) -> None:
    store, breaker = _open_breaker(settings)
    try:
        for credential in credentials:
            await breaker.reset(credential)
    finally:
        await store.close()


def cmd_list(_: argparse.Namespace) -> int:
    pool = load_key_pool(get_settings())
    print_yaml({"keys": [mask_credential(credential) for credential in pool]})
    return 0


def cmd_status(_: argparse.Namespace) -> int:
    settings = get_settings()
    pool = load_key_pool(settings)
    rows = asyncio.run(_collect_status(settings, pool))
    enabled = sum(1 for row in rows if not row["disabled"])
    print_yaml({"pool_size": len(pool), "enabled": enabled, "keys": rows})
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    settings = get_settings()
    pool = load_key_pool(settings)
    if args.all:
        credentials = list(pool)
    elif args.keys:
        credentials = [_resolve_credential(pool, value) for value in args.keys]
    else:
        raise ConfigurationError("Pass one or more key prefixes, or --all.")
    asyncio.run(_reset(settings, credentials))
    print_yaml({"reset": [mask_credential(credential) for credential in credentials]})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gemini-key-proxy-keys",
        description="Inspect and reset upstream API key health for gemini-key-proxy.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_cmd = subparsers.add_parser("list", help="List configured API keys (masked).")
    list_cmd.set_defaults(handler=cmd_list)

    status_cmd = subparsers.add_parser(
        "status",
        help="Show success/failure counters and disable state per key.",
    )
    status_cmd.set_defaults(handler=cmd_status)

    reset_cmd = subparsers.add_parser(
        "reset",
        help="Clear counters and the disable flag for the given keys.",
    )
    reset_cmd.add_argument(
        "keys",
        nargs="*",
        help="Full API key or a unique prefix of one.",
    )
    reset_cmd.add_argument("--all", action="store_true")
    reset_cmd.set_defaults(handler=cmd_reset)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except (ConfigurationError, HealthStoreError) as exc:
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
