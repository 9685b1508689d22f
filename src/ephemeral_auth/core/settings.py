"""Application settings and configuration.

This module defines all configuration options for the Ephemeral Auth service.
Settings are loaded from environment variables with sensible defaults. The
``MAGICLINK_*`` and ``OTP_*`` values act as defaults for every realm; a realm
can override any of them through ``REALM_OVERRIDES``.
"""

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Ephemeral Auth", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./ephemeral_auth.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Credential store backend: "memory" keeps state in-process, "redis" shares it
    store_backend: str = Field(default="memory", alias="STORE_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")

    # JWT settings for access tokens minted after a successful login
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Background sweeps
    sweep_interval_seconds: float = Field(default=60.0, alias="SWEEP_INTERVAL_SECONDS")
    replay_retention_seconds: int = Field(default=86_400, alias="REPLAY_RETENTION_SECONDS")
    rate_window_retention_seconds: int = Field(
        default=3_600,
        alias="RATE_WINDOW_RETENTION_SECONDS",
    )
    flow_session_ttl_seconds: int = Field(default=900, alias="FLOW_SESSION_TTL_SECONDS")
    session_cookie_name: str = Field(default="auth_session", alias="SESSION_COOKIE_NAME")

    # Outbound HTTP timeouts and retry policy
    eligibility_connect_timeout_seconds: float = Field(
        default=5.0,
        alias="ELIGIBILITY_CONNECT_TIMEOUT_SECONDS",
    )
    eligibility_read_timeout_seconds: float = Field(
        default=10.0,
        alias="ELIGIBILITY_READ_TIMEOUT_SECONDS",
    )
    delivery_timeout_seconds: float = Field(default=30.0, alias="DELIVERY_TIMEOUT_SECONDS")
    delivery_max_attempts: int = Field(default=3, alias="DELIVERY_MAX_ATTEMPTS")
    delivery_backoff_base_seconds: float = Field(
        default=1.0,
        alias="DELIVERY_BACKOFF_BASE_SECONDS",
    )
    delivery_backoff_cap_seconds: float = Field(
        default=30.0,
        alias="DELIVERY_BACKOFF_CAP_SECONDS",
    )

    # Magic-link defaults
    magiclink_enabled: bool = Field(default=True, alias="MAGICLINK_ENABLED")
    magiclink_api_endpoint: str | None = Field(default=None, alias="MAGICLINK_API_ENDPOINT")
    magiclink_api_token: str | None = Field(default=None, alias="MAGICLINK_API_TOKEN")
    magiclink_api_type: str = Field(default="bearer", alias="MAGICLINK_API_TYPE")
    magiclink_token_expiry_minutes: int = Field(
        default=15,
        alias="MAGICLINK_TOKEN_EXPIRY_MINUTES",
    )
    magiclink_rate_limit_enabled: bool = Field(default=True, alias="MAGICLINK_RATE_LIMIT_ENABLED")
    magiclink_rate_limit_requests: int = Field(default=10, alias="MAGICLINK_RATE_LIMIT_REQUESTS")
    magiclink_rate_limit_window_seconds: int = Field(
        default=60,
        alias="MAGICLINK_RATE_LIMIT_WINDOW",
    )
    magiclink_allowed_redirect_urls: str = Field(
        default="",
        alias="MAGICLINK_ALLOWED_REDIRECT_URLS",
    )

    # OTP defaults
    otp_enabled: bool = Field(default=True, alias="OTP_ENABLED")
    otp_enabled_realms: str = Field(default="", alias="OTP_ENABLED_REALMS")
    otp_api_url: str | None = Field(default=None, alias="OTP_API_URL")
    otp_eligibility_api_url: str | None = Field(default=None, alias="OTP_ELIGIBILITY_API_URL")
    otp_api_token: str | None = Field(default=None, alias="OTP_API_TOKEN")
    otp_api_type: str = Field(default="bearer", alias="OTP_API_TYPE")
    otp_length: int = Field(default=6, alias="OTP_LENGTH")
    otp_ttl_seconds: int = Field(default=300, alias="OTP_TTL")
    otp_fail_if_eligibility_fails: bool = Field(
        default=False,
        alias="OTP_FAIL_IF_ELIGIBILITY_FAILS",
    )
    otp_max_retry_attempts: int = Field(default=3, alias="OTP_MAX_RETRY_ATTEMPTS")
    otp_rate_limit_enabled: bool = Field(default=True, alias="OTP_RATE_LIMIT_ENABLED")
    otp_rate_limit_requests: int = Field(default=5, alias="OTP_RATE_LIMIT_REQUESTS")
    otp_rate_limit_window_seconds: int = Field(default=60, alias="OTP_RATE_LIMIT_WINDOW")

    # Per-realm overrides, e.g. {"acme": {"otp_length": 8, "magiclink_enabled": false}}
    realm_overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        alias="REALM_OVERRIDES",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def use_redis(self) -> bool:
        """Return True when shared state should live in Redis."""
        return self.store_backend.strip().lower() == "redis"


settings = Settings()  # type: ignore[call-arg]
