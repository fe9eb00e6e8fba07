from __future__ import annotations

import httpx

from gemini_key_proxy.proxy import (
    build_relay_headers,
    build_upstream_headers,
    build_upstream_url,
    is_event_stream,
    is_openai_compatible_path,
)

UPSTREAM_HOST = "generativelanguage.googleapis.com"


def test_native_request_replaces_client_secret_with_pool_credential() -> None:
    headers = build_upstream_headers(
        [
            ("X-Goog-Api-Key", "proxy-secret"),
            ("Authorization", "Bearer proxy-secret"),
            ("Content-Type", "application/json"),
            ("Host", "proxy.local:8080"),
            ("Connection", "keep-alive"),
            ("Accept-Encoding", "gzip, br"),
        ],
        credential="AIzaSy-pool-key",
        path="/v1beta/models/gemini-pro:generateContent",
        upstream_host=UPSTREAM_HOST,
    )

    assert headers["x-goog-api-key"] == "AIzaSy-pool-key"
    assert "authorization" not in headers
    assert headers["host"] == UPSTREAM_HOST
    assert headers["content-type"] == "application/json"
    assert "connection" not in headers
    assert "accept-encoding" not in headers


def test_openai_request_uses_bearer_and_drops_goog_header() -> None:
    headers = build_upstream_headers(
        {"x-goog-api-key": "proxy-secret", "authorization": "Bearer proxy-secret"},
        credential="AIzaSy-pool-key",
        path="/v1beta/openai/chat/completions",
        upstream_host=UPSTREAM_HOST,
    )

    assert headers["authorization"] == "Bearer AIzaSy-pool-key"
    assert "x-goog-api-key" not in headers


def test_hop_by_hop_headers_are_not_forwarded() -> None:
    headers = build_upstream_headers(
        {
            "te": "trailers",
            "upgrade": "h2c",
            "proxy-authorization": "Basic abc",
            "transfer-encoding": "chunked",
            "x-custom": "kept",
        },
        credential="key-a",
        path="/v1beta/models",
        upstream_host=UPSTREAM_HOST,
    )

    assert set(headers.keys()) == {"x-custom", "host", "x-goog-api-key"}


def test_openai_segment_detection() -> None:
    assert is_openai_compatible_path("/v1beta/openai/chat/completions")
    assert not is_openai_compatible_path("/v1beta/models")
    assert not is_openai_compatible_path("/v1beta/openai")


def test_upstream_url_keeps_raw_path_and_query() -> None:
    assert build_upstream_url(
        "https://generativelanguage.googleapis.com/",
        "/v1beta/files/abc%2Fdef",
        "alt=sse&key=x",
    ) == ("https://generativelanguage.googleapis.com/v1beta/files/abc%2Fdef?alt=sse&key=x")
    assert build_upstream_url("https://example.test", "", "") == "https://example.test/"


def test_relay_headers_drop_framing_and_encoding() -> None:
    relayed = build_relay_headers(
        httpx.Headers(
            [
                ("Content-Type", "application/json"),
                ("Content-Length", "42"),
                ("Content-Encoding", "gzip"),
                ("Transfer-Encoding", "chunked"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
            ]
        )
    )

    assert relayed == [
        ("content-type", "application/json"),
        ("set-cookie", "a=1"),
        ("set-cookie", "b=2"),
    ]


def test_relay_headers_force_event_stream_headers() -> None:
    relayed = dict(
        build_relay_headers(
            httpx.Headers(
                {
                    "content-type": "text/event-stream",
                    "cache-control": "max-age=60",
                    "x-request-id": "r1",
                }
            )
        )
    )

    assert relayed == {
        "x-request-id": "r1",
        "content-type": "text/event-stream; charset=utf-8",
        "cache-control": "no-cache",
        "connection": "keep-alive",
    }


def test_event_stream_detection() -> None:
    assert is_event_stream("Text/Event-Stream; charset=utf-8")
    assert not is_event_stream("application/json")
    assert not is_event_stream(None)
