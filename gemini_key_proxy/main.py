from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fastapi import FastAPI, Request, status
from fastapi.responses import PlainTextResponse, Response

from gemini_key_proxy.auth import SharedSecretAuthenticator, unauthorized_response
from gemini_key_proxy.circuit_breaker import (
    CredentialCircuitBreaker,
    build_circuit_breaker_config,
)
from gemini_key_proxy.errors import ProxyError
from gemini_key_proxy.health_store import HealthKeys, HealthStore, build_health_store
from gemini_key_proxy.key_pool import load_key_pool
from gemini_key_proxy.key_selector import KeySelector
from gemini_key_proxy.proxy import ProxyOptions, UpstreamProxy
from gemini_key_proxy.settings import get_settings

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
UNAUTHENTICATED_PATHS = {"/healthz"}

app = FastAPI(
    title="Gemini Key Proxy",
    description="Credential-rotating reverse proxy for the Generative Language API.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.url.path in UNAUTHENTICATED_PATHS:
        return await call_next(request)

    authenticator: SharedSecretAuthenticator | None = getattr(
        app.state, "authenticator", None
    )
    if authenticator is None:
        logger.error("auth_rejected reason=authenticator_not_configured")
        return unauthorized_response()

    auth_error = await authenticator.authenticate_request(request)
    if auth_error is not None:
        return auth_error

    return await call_next(request)


def _configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.strip().upper())
    if isinstance(level, int):
        logger.setLevel(level)
    else:
        logger.warning("log_level_invalid value=%s fallback=INFO", level_name)
        logger.setLevel(logging.INFO)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    _configure_logging(settings.log_level)

    pool = load_key_pool(settings)
    if pool.is_empty:
        logger.error(
            "key_pool_empty env=GOOGLE_API_KEYS effect=requests_fail_with_500"
        )

    health_keys = HealthKeys(prefix=settings.health_key_prefix)
    health_store: HealthStore | None = None
    if settings.health_tracking_enabled:
        health_store = build_health_store(settings.redis_url, logger=logger)
        if health_store is None:
            logger.info("health_tracking_disabled reason=no_health_store")

    circuit_breaker = (
        CredentialCircuitBreaker(
            health_store,
            build_circuit_breaker_config(settings),
            keys=health_keys,
        )
        if health_store is not None
        else None
    )
    options = ProxyOptions(
        check_dual_auth_headers=settings.dual_auth_headers_enabled,
        track_health=circuit_breaker is not None,
    )

    app.state.settings = settings
    app.state.authenticator = SharedSecretAuthenticator(
        settings, check_dual_auth_headers=options.check_dual_auth_headers
    )
    app.state.key_pool = pool
    app.state.health_store = health_store
    app.state.circuit_breaker = circuit_breaker
    app.state.key_selector = KeySelector(pool, health_store, keys=health_keys)
    app.state.upstream_proxy = UpstreamProxy(
        settings.upstream_base_url,
        options=options,
        circuit_breaker=circuit_breaker,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
        transport=getattr(app.state, "upstream_transport", None),
    )
    logger.info(
        (
            "startup complete upstream=%s keys=%d health_tracking=%s "
            "dual_auth_headers=%s"
        ),
        settings.upstream_base_url,
        len(pool),
        options.track_health,
        options.check_dual_auth_headers,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    proxy: UpstreamProxy | None = getattr(app.state, "upstream_proxy", None)
    if proxy is not None:
        await proxy.close()
    health_store: HealthStore | None = getattr(app.state, "health_store", None)
    if health_store is not None:
        await health_store.close()
    logger.info("shutdown complete")


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.api_route("/{full_path:path}", methods=PROXY_METHODS)
async def proxy_request(full_path: str, request: Request) -> Response:
    selector: KeySelector = app.state.key_selector
    proxy: UpstreamProxy = app.state.upstream_proxy
    try:
        credential = await selector.select()
        return await proxy.forward(request, credential)
    except ProxyError as exc:
        return _error_response(request, exc)
    except Exception:
        logger.exception(
            "proxy_unhandled_error method=%s path=%s",
            request.method,
            request.url.path,
        )
        return PlainTextResponse(
            "Internal Server Error",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


def _error_response(request: Request, exc: ProxyError) -> PlainTextResponse:
    logger.error(
        "proxy_error type=%s method=%s path=%s status=%d detail=%s",
        exc.__class__.__name__,
        request.method,
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return PlainTextResponse(exc.message, status_code=exc.status_code)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "gemini_key_proxy.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
