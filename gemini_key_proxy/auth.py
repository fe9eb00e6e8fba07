from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import PlainTextResponse

from gemini_key_proxy.settings import Settings

GOOG_API_KEY_HEADER = "x-goog-api-key"
UNAUTHORIZED_MESSAGE = "Unauthorized: Invalid API Key"
BEARER_PREFIX = "Bearer "

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class AuthResult:
    method: str


class SharedSecretAuthenticator:
    def __init__(self, settings: Settings, *, check_dual_auth_headers: bool = True):
        secret = settings.auth_api_key or ""
        self.shared_secret = secret if secret.strip() else None
        self.check_dual_auth_headers = check_dual_auth_headers

        if self.shared_secret is None:
            logger.warning(
                "auth_shared_secret_missing env=AUTH_API_KEY effect=reject_all"
            )

    async def authenticate_request(self, request: Request) -> PlainTextResponse | None:
        method, presented = self.extract_secret(request)
        if self.shared_secret is None:
            logger.info("auth_rejected reason=shared_secret_not_configured")
            return unauthorized_response()
        if not presented:
            logger.info("auth_rejected reason=missing_credentials")
            return unauthorized_response()
        if not secrets.compare_digest(
            presented.encode("utf-8"), self.shared_secret.encode("utf-8")
        ):
            logger.info("auth_rejected reason=invalid_secret method=%s", method)
            return unauthorized_response()

        request.state.auth = AuthResult(method=method)
        return None

    def extract_secret(self, request: Request) -> tuple[str, str]:
        api_key = request.headers.get(GOOG_API_KEY_HEADER, "")
        if api_key:
            return "x-goog-api-key", api_key
        if not self.check_dual_auth_headers:
            return "none", ""

        auth_header = request.headers.get("authorization", "")
        token = auth_header[len(BEARER_PREFIX) :]
        if auth_header.startswith(BEARER_PREFIX) and token:
            return "bearer", token
        return "none", ""


def unauthorized_response() -> PlainTextResponse:
    return PlainTextResponse(
        UNAUTHORIZED_MESSAGE,
        status_code=status.HTTP_401_UNAUTHORIZED,
    )
