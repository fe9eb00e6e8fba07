from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_UPSTREAM_BASE_URL = "https://generativelanguage.googleapis.com"


class Settings(BaseSettings):
    auth_api_key: str | None = None
    google_api_keys: str = ""
    google_api_keys_file: str | None = None
    upstream_base_url: str = DEFAULT_UPSTREAM_BASE_URL
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 300.0
    upstream_write_timeout_seconds: float = 300.0
    upstream_pool_timeout_seconds: float = 10.0
    redis_url: str | None = None
    health_key_prefix: str = "gemini-proxy:"
    health_tracking_enabled: bool = True
    dual_auth_headers_enabled: bool = True
    circuit_breaker_min_requests: int = 20
    circuit_breaker_failure_ratio: float = 0.5
    circuit_breaker_disable_seconds: int = 3600
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def google_api_keys_list(self) -> list[str]:
        return _split_csv(self.google_api_keys)

    @property
    def health_store_is_configured(self) -> bool:
        return bool(self.redis_url and self.redis_url.strip())


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
