from __future__ import annotations

from fastapi import status


class ProxyError(RuntimeError):
    """Base class for failures that end a request with a plain-text response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Internal Server Error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.message)
        self.detail = detail or self.message


class ConfigurationError(ProxyError):
    """Raised when the credential pool is missing or empty."""

    message = "Internal Server Error: API Key configuration error"


class PoolEmptyError(ConfigurationError):
    pass


class AllCredentialsDisabledError(ProxyError):
    """Raised when every credential in the pool is currently circuit-broken."""

    message = "Internal Server Error: All API keys are temporarily disabled"


class UpstreamTransportError(ProxyError):
    message = "Internal Server Error: Upstream request failed"

    def __init__(self, detail: str | None = None, *, error_type: str = "") -> None:
        super().__init__(detail)
        self.error_type = error_type


class HealthStoreError(RuntimeError):
    """Raised by Health Store adapters when the backing store cannot be reached."""
