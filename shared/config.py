"""
Shared configuration management for the NPHIES gateway.
"""

from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RETRY_POLICIES: Dict[str, int] = {
    "check_eligibility": 3,
    "submit_claim": 3,
    "submit_preauth": 1,
    "get_claim_status": 1,
}


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    env: str = Field(default="development", validation_alias="NPHIES_ENV")
    log_level: str = Field(default="info", validation_alias="NPHIES_LOG_LEVEL")
    version: str = "1.0.0"

    # Upstream exchange
    nphies_api_url: str = Field(default="https://api.nphies.sa", validation_alias="NPHIES_API_URL")
    nphies_client_id: Optional[str] = Field(default=None, validation_alias="NPHIES_CLIENT_ID")
    nphies_client_secret: Optional[str] = Field(default=None, validation_alias="NPHIES_CLIENT_SECRET")
    nphies_token_scope: str = Field(default="eligibility claims preauth", validation_alias="NPHIES_TOKEN_SCOPE")
    request_timeout: float = Field(default=30.0, validation_alias="NPHIES_REQUEST_TIMEOUT")
    retry_policies: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_RETRY_POLICIES),
        validation_alias="NPHIES_RETRY_POLICIES",
    )

    # Token cache
    token_cache_backend: str = Field(default="memory", validation_alias="NPHIES_TOKEN_CACHE_BACKEND")
    token_cache_key: str = Field(default="nphies_access_token", validation_alias="NPHIES_TOKEN_CACHE_KEY")
    token_refresh_ratio: float = Field(default=0.9, validation_alias="NPHIES_TOKEN_REFRESH_RATIO")
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="NPHIES_REDIS_URL")

    # Caller sessions
    jwt_secret: str = Field(default="change-me-in-production", validation_alias="JWT_SECRET")
    jwt_expires_in: int = Field(default=86400, validation_alias="JWT_EXPIRES_IN")
    demo_username: str = Field(default="demo@healthcare.sa", validation_alias="NPHIES_DEMO_USERNAME")
    demo_password: str = Field(default="demo123", validation_alias="NPHIES_DEMO_PASSWORD")
    demo_provider_id: str = Field(default="1234567", validation_alias="NPHIES_DEMO_PROVIDER_ID")

    # AI assistant proxy
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    ai_completion_url: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        validation_alias="NPHIES_AI_COMPLETION_URL",
    )

    # Cross-origin
    frontend_url: str = Field(default="http://localhost:5173", validation_alias="FRONTEND_URL")

    # Request hardening
    max_body_bytes: int = Field(default=10 * 1024 * 1024, validation_alias="NPHIES_MAX_BODY_BYTES")
    hsts_enabled: bool = Field(default=True, validation_alias="NPHIES_HSTS_ENABLED")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, validation_alias="NPHIES_RATE_LIMIT_ENABLED")
    rate_limit_requests: int = Field(default=100, validation_alias="NPHIES_RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = Field(default=900, validation_alias="NPHIES_RATE_LIMIT_WINDOW_SECONDS")

    @field_validator("token_cache_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "redis"):
            raise ValueError("token cache backend must be 'memory' or 'redis'")
        return value

    @field_validator("token_refresh_ratio")
    @classmethod
    def _check_ratio(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("token refresh ratio must be in (0, 1]")
        return value

    @property
    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in self.frontend_url.split(",") if origin.strip()]

    @property
    def has_exchange_credentials(self) -> bool:
        return bool(self.nphies_client_id and self.nphies_client_secret)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
