from __future__ import annotations

import os
from datetime import timedelta
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinicrecords.logging import get_logger
from clinicrecords.service.credentials import validate_pin
from clinicrecords.service.errors import ValidationError
from clinicrecords.service.tokens import MIN_SECRET_LENGTH, TokenConfig

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings loaded from the environment and an optional ``.env`` file."""

    server_host: str = env_field("localhost", "SERVER_HOST")
    server_port: int = env_field(8080, "SERVER_PORT", ge=1, le=65535)

    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("clinicrecords", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        ge=1,
        le=30,
        description="Access token lifetime; kept short",
    )
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "REFRESH_TOKEN_TTL_MINUTES",
        ge=1,
        le=60 * 24 * 30,
    )
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS", ge=1)
    default_pin: str = env_field(
        "0000",
        "DEFAULT_PIN",
        description="PIN assigned at registration; users are expected to change it",
    )

    rate_limit_rps: float = env_field(10, "RATE_LIMIT_RPS", gt=0)
    rate_limit_burst: int = env_field(20, "RATE_LIMIT_BURST", ge=1)
    rate_limit_entry_ttl_seconds: int = env_field(
        3600, "RATE_LIMIT_ENTRY_TTL_SECONDS", ge=1
    )
    rate_limit_sweep_interval_seconds: int = env_field(
        600, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS", ge=1
    )
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as client IP (only behind a trusted proxy)",
    )

    cors_allow_origins: List[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _check_secret(cls, value: str | None) -> str | None:
        if value is not None and len(value) < MIN_SECRET_LENGTH:
            raise ValueError(f"token secrets must be at least {MIN_SECRET_LENGTH} characters")
        return value

    @field_validator("default_pin")
    @classmethod
    def _check_default_pin(cls, value: str) -> str:
        try:
            return validate_pin(value)
        except ValidationError as exc:
            raise ValueError(exc.message) from exc

    @model_validator(mode="after")
    def _check_token_settings(self) -> "Settings":
        if (
            self.access_token_secret
            and self.refresh_token_secret
            and self.access_token_secret == self.refresh_token_secret
        ):
            raise ValueError("access and refresh token secrets must differ")
        if self.default_page_size > self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE cannot exceed MAX_PAGE_SIZE")
        return self

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.session_ttl_hours)

    def token_config(self) -> TokenConfig:
        """Build the signing configuration; fails when a secret is missing."""

        if not self.access_token_secret or not self.refresh_token_secret:
            logger.error(
                "token_secrets_missing",
                access_configured=bool(self.access_token_secret),
                refresh_configured=bool(self.refresh_token_secret),
            )
            raise RuntimeError(
                "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must both be set"
            )
        config = TokenConfig(
            access_secret=self.access_token_secret.encode("utf-8"),
            refresh_secret=self.refresh_token_secret.encode("utf-8"),
            access_ttl=timedelta(minutes=self.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.refresh_token_ttl_minutes),
            issuer=self.jwt_issuer,
        )
        config.validate()
        return config


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
