from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping
from uuid import uuid4

import httpx
from fastapi import Request
from fastapi.responses import Response, StreamingResponse

from gemini_key_proxy.circuit_breaker import CredentialCircuitBreaker
from gemini_key_proxy.errors import UpstreamTransportError
from gemini_key_proxy.key_pool import mask_credential
from gemini_key_proxy.settings import DEFAULT_UPSTREAM_BASE_URL

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
HOP_BY_HOP_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}
OPENAI_COMPAT_SEGMENT = "/openai/"
EVENT_STREAM_MEDIA_TYPE = "text/event-stream"
EVENT_STREAM_HEADERS = {
    "content-type": "text/event-stream; charset=utf-8",
    "cache-control": "no-cache",
    "connection": "keep-alive",
}

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class ProxyOptions:
    check_dual_auth_headers: bool = True
    track_health: bool = True


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    return {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def is_openai_compatible_path(path: str) -> bool:
    return OPENAI_COMPAT_SEGMENT in path


def is_event_stream(content_type: str | None) -> bool:
    if not content_type:
        return False
    return EVENT_STREAM_MEDIA_TYPE in content_type.lower()


def build_upstream_url(base_url: str, raw_path: str, query_string: str) -> str:
    path = raw_path or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    url = f"{base_url.rstrip('/')}{path}"
    if query_string:
        url = f"{url}?{query_string}"
    return url


def build_upstream_headers(
    inbound: Mapping[str, str] | list[tuple[str, str]],
    *,
    credential: str,
    path: str,
    upstream_host: str,
) -> httpx.Headers:
    headers = httpx.Headers(inbound)
    for name in list(headers.keys()):
        if name.lower() in HOP_BY_HOP_HEADERS:
            del headers[name]

    headers["host"] = upstream_host
    headers.pop("accept-encoding", None)

    if is_openai_compatible_path(path):
        headers["authorization"] = f"Bearer {credential}"
        headers.pop("x-goog-api-key", None)
    else:
        headers["x-goog-api-key"] = credential
        headers.pop("authorization", None)
    return headers


def build_relay_headers(upstream_headers: httpx.Headers) -> list[tuple[str, str]]:
    event_stream = is_event_stream(upstream_headers.get("content-type"))
    relayed: list[tuple[str, str]] = []
    for name, value in upstream_headers.multi_items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_RESPONSE_HEADERS or lowered == "content-encoding":
            continue
        if event_stream and lowered in EVENT_STREAM_HEADERS:
            continue
        relayed.append((lowered, value))

    if event_stream:
        relayed.extend(EVENT_STREAM_HEADERS.items())
    return relayed


def _has_request_body(headers: Mapping[str, str]) -> bool:
    if "transfer-encoding" in headers:
        return True
    content_length = headers.get("content-length", "").strip()
    return bool(content_length) and content_length != "0"


def _raw_path(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    if isinstance(raw_path, (bytes, bytearray)) and raw_path:
        return bytes(raw_path).decode("latin-1")
    return request.url.path


def _query_string(request: Request) -> str:
    query = request.scope.get("query_string", b"")
    if isinstance(query, (bytes, bytearray)):
        return bytes(query).decode("latin-1")
    return str(query)


class UpstreamProxy:
    def __init__(
        self,
        base_url: str = DEFAULT_UPSTREAM_BASE_URL,
        *,
        options: ProxyOptions | None = None,
        circuit_breaker: CredentialCircuitBreaker | None = None,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float = 300.0,
        write_timeout_seconds: float = 300.0,
        pool_timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.upstream_host = httpx.URL(self.base_url).netloc.decode("ascii")
        self.options = options or ProxyOptions()
        self._circuit_breaker = circuit_breaker
        self._pending_outcomes: set[asyncio.Task[None]] = set()
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, float(connect_timeout_seconds)),
                read=max(0.1, float(read_timeout_seconds)),
                write=max(0.1, float(write_timeout_seconds)),
                pool=max(0.1, float(pool_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
            follow_redirects=False,
            transport=transport,
        )
        # Outbound requests must not advertise compression the relay cannot pass through.
        self.client.headers.pop("accept-encoding", None)

    @property
    def circuit_breaker(self) -> CredentialCircuitBreaker | None:
        return self._circuit_breaker

    async def close(self) -> None:
        if self._pending_outcomes:
            await asyncio.gather(*self._pending_outcomes, return_exceptions=True)
        await self.client.aclose()

    async def forward(self, request: Request, credential: str) -> Response:
        request_id = uuid4().hex
        raw_path = _raw_path(request)
        url = build_upstream_url(self.base_url, raw_path, _query_string(request))
        headers = build_upstream_headers(
            request.headers.items(),
            credential=credential,
            path=request.url.path,
            upstream_host=self.upstream_host,
        )
        content = request.stream() if _has_request_body(request.headers) else None

        auth_mode = (
            "bearer" if is_openai_compatible_path(request.url.path) else "x-goog-api-key"
        )
        logger.info(
            "proxy_request request_id=%s method=%s path=%s key=%s auth_mode=%s",
            request_id,
            request.method,
            request.url.path,
            mask_credential(credential),
            auth_mode,
        )

        started = time.perf_counter()
        try:
            upstream_request = self.client.build_request(
                method=request.method,
                url=url,
                headers=headers,
                content=content,
            )
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                (
                    "proxy_request_error request_id=%s key=%s "
                    "error_type=%s is_timeout=%s error=%s"
                ),
                request_id,
                mask_credential(credential),
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise UpstreamTransportError(
                f"Could not reach upstream ({details['error_type']}): {details['error']}",
                error_type=details["error_type"],
            ) from exc

        connect_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "proxy_upstream_connected request_id=%s key=%s connect_ms=%.2f status=%d",
            request_id,
            mask_credential(credential),
            connect_ms,
            upstream.status_code,
        )
        return self._relay(
            upstream=upstream,
            credential=credential,
            request_id=request_id,
            started=started,
        )

    def _relay(
        self,
        *,
        upstream: httpx.Response,
        credential: str,
        request_id: str,
        started: float,
    ) -> Response:
        response_headers = build_relay_headers(upstream.headers)
        response_headers.append(("x-proxy-request-id", request_id))
        status_code = upstream.status_code

        def log_response(outcome: str) -> None:
            logger.info(
                (
                    "proxy_response request_id=%s key=%s status=%d "
                    "outcome=%s latency_ms=%.2f"
                ),
                request_id,
                mask_credential(credential),
                status_code,
                outcome,
                (time.perf_counter() - started) * 1000.0,
            )

        async def stream_generator() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
            except (httpx.StreamError, httpx.TransportError) as exc:
                # Abort the response on a truncated body; record no outcome.
                logger.warning(
                    "proxy_upstream_stream_error request_id=%s error_type=%s error=%s",
                    request_id,
                    exc.__class__.__name__,
                    str(exc),
                )
                raise
            except (asyncio.CancelledError, GeneratorExit):
                log_response("client_disconnected")
                self._record_outcome_later(credential, status_code)
                raise
            else:
                await upstream.aclose()
                log_response("completed")
                await self.record_outcome(credential, status_code)
            finally:
                await upstream.aclose()

        response = StreamingResponse(
            content=stream_generator(),
            status_code=status_code,
        )
        # Repeated upstream headers such as set-cookie must survive the relay.
        response.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in response_headers
        ]
        return response

    async def record_outcome(self, credential: str, status_code: int) -> None:
        if not self.options.track_health or self._circuit_breaker is None:
            return
        await self._circuit_breaker.record_outcome(credential, status_code)

    def _record_outcome_later(self, credential: str, status_code: int) -> None:
        if not self.options.track_health or self._circuit_breaker is None:
            return
        task = asyncio.create_task(
            self.record_outcome(credential, status_code),
            name="proxy-record-outcome",
        )
        self._pending_outcomes.add(task)
        task.add_done_callback(self._pending_outcomes.discard)
