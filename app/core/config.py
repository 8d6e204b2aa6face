"""
Application Settings for the ERP API.

Loaded from environment variables and/or a .env file. Every component
config in app.core is derived from these values at startup.

Usage:
    from app.core.config import get_settings

    settings = get_settings()
    if settings.is_production:
        ...
"""

import secrets
import warnings
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


CommaList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    """Application settings, loaded from environment variables and/or .env file."""

    # Application
    app_name: str = "ERP API"
    app_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8000
    environment: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None

    # Shared store (empty = in-process fallback)
    redis_url: str = ""

    # Passwords
    password_pepper: str = Field(default="", repr=False)
    password_pepper_auto_generated: bool = False
    bcrypt_cost: int = 12
    password_min_length: int = 8
    password_max_length: int = 128

    # Audit
    audit_log_dir: str = "logs/audit"
    audit_file_name: str = "audit.log"
    audit_file_enabled: bool = True
    audit_max_file_size_mb: int = 100
    audit_retention_days: int = 30
    audit_slow_request_seconds: float = 1.0
    audit_cleanup_interval_seconds: int = 3600
    audit_store_prefix: str = "audit:"

    # Pipeline stage toggles
    security_headers_enabled: bool = True
    cors_enabled: bool = True
    input_validation_enabled: bool = True
    api_key_auth_enabled: bool = True
    rate_limit_enabled: bool = True
    csrf_enabled: bool = True
    audit_enabled: bool = True
    monitoring_enabled: bool = True

    # Overrides of environment presets (None = derive from environment)
    validation_strict_mode: bool | None = None
    rate_limit_penalty_enabled: bool | None = None

    # Access lists
    ip_allow_list: CommaList = Field(default_factory=list)
    ip_deny_list: CommaList = Field(default_factory=list)
    trusted_origins: CommaList = Field(default_factory=list)
    trusted_ips: CommaList = Field(default_factory=list)
    # proxies whose X-Forwarded-For / X-Real-IP headers are believed
    trusted_proxies: CommaList = Field(default_factory=list)
    cors_origins: CommaList = Field(default_factory=lambda: ["http://localhost:3000"])

    # Lifecycle
    shutdown_timeout_seconds: float = 30.0
    session_ttl_seconds: int = 3600

    # Monitoring
    alert_webhook_url: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment in ("development", "test")

    @field_validator(
        "ip_allow_list", "ip_deny_list", "trusted_origins", "trusted_ips", "trusted_proxies",
        "cors_origins",
        mode="before",
    )
    @classmethod
    def _split_list(cls, value: str | list[str]) -> list[str]:
        """Allow comma-separated strings for list env vars."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("bcrypt_cost")
    @classmethod
    def _check_cost(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("bcrypt_cost must be between 4 and 31")
        return value

    @model_validator(mode="after")
    def _ensure_pepper(self) -> "Settings":
        """A pepper is mandatory outside development; tests and local runs get an ephemeral one."""
        if self.password_max_length < self.password_min_length:
            raise ValueError("password_max_length must not be below password_min_length")

        if not self.password_pepper.strip():
            if self.is_development:
                self.password_pepper = secrets.token_urlsafe(32)
                self.password_pepper_auto_generated = True
                warnings.warn(
                    "PASSWORD_PEPPER was not provided; generated an ephemeral pepper. "
                    "Hashes will not verify after a restart.",
                    RuntimeWarning,
                )
            else:
                raise ValueError(
                    "PASSWORD_PEPPER must be set outside development. "
                    "Set it in the environment or .env file before starting the service."
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
