from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Pattern

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


@dataclass(frozen=True)
class LastAccessTimeUpdates:
    """Feature flags governing telemetry writes to the session metadata cache."""

    enabled: bool = True
    sample_rate: float = 1.0
    enabled_email_addresses: Pattern[str] = field(default_factory=lambda: re.compile(".*"))

    def allows_email(self, email: str | None) -> bool:
        if not email:
            return False
        return bool(self.enabled_email_addresses.search(email))


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential store."""

    database_url: str = env_field(
        "postgresql://localhost:5432/credstore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and allow running without Redis.",
    )
    token_namespace: str = env_field(
        "credstore/v1",
        "TOKEN_NAMESPACE",
        description="HKDF info prefix used when deriving token ids and auth keys",
    )

    # Token lifetimes
    session_token_without_device_lifetime_minutes: int = env_field(
        60 * 24 * 28,
        "SESSION_TOKEN_WITHOUT_DEVICE_LIFETIME_MINUTES",
        description="Lifetime of session tokens not bound to a verified device",
    )
    key_fetch_token_lifetime_minutes: int = env_field(
        60, "KEY_FETCH_TOKEN_LIFETIME_MINUTES"
    )
    password_forgot_token_lifetime_minutes: int = env_field(
        60, "PASSWORD_FORGOT_TOKEN_LIFETIME_MINUTES"
    )
    account_reset_token_lifetime_minutes: int = env_field(
        15, "ACCOUNT_RESET_TOKEN_LIFETIME_MINUTES"
    )
    password_forgot_tries: int = env_field(3, "PASSWORD_FORGOT_TRIES")

    # Session telemetry
    last_access_time_updates_enabled: bool = env_field(
        True, "LAST_ACCESS_TIME_UPDATES_ENABLED"
    )
    last_access_time_updates_sample_rate: float = env_field(
        1.0,
        "LAST_ACCESS_TIME_UPDATES_SAMPLE_RATE",
        description="Fraction of authenticated requests that refresh cached telemetry",
    )
    last_access_time_updates_email_pattern: str = env_field(
        ".*",
        "LAST_ACCESS_TIME_UPDATES_EMAIL_PATTERN",
        description="Only accounts whose email matches this regex get telemetry updates",
    )
    geo_lookup_url: str | None = env_field(
        None,
        "GEO_LOOKUP_URL",
        description="URL template with an {ip} placeholder returning location JSON",
    )
    geo_timeout_seconds: float = env_field(1.0, "GEO_TIMEOUT_SECONDS")

    # One-time codes
    unblock_code_length: int = env_field(8, "UNBLOCK_CODE_LENGTH")
    unblock_code_lifetime_minutes: int = env_field(60, "UNBLOCK_CODE_LIFETIME_MINUTES")
    signin_code_size: int = env_field(6, "SIGNIN_CODE_SIZE")
    signin_code_lifetime_minutes: int = env_field(120, "SIGNIN_CODE_LIFETIME_MINUTES")
    signin_code_max_attempts: int = env_field(32, "SIGNIN_CODE_MAX_ATTEMPTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("last_access_time_updates_sample_rate")
    @classmethod
    def _validate_sample_rate(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("sample rate must be between 0 and 1")
        return value

    @field_validator("last_access_time_updates_email_pattern")
    @classmethod
    def _validate_email_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid email pattern: {exc}") from exc
        return value

    @field_validator(
        "unblock_code_length", "signin_code_size", "signin_code_max_attempts"
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    def last_access_time_updates(self) -> LastAccessTimeUpdates:
        return LastAccessTimeUpdates(
            enabled=self.last_access_time_updates_enabled,
            sample_rate=self.last_access_time_updates_sample_rate,
            enabled_email_addresses=re.compile(self.last_access_time_updates_email_pattern),
        )

    @property
    def session_token_without_device_lifetime(self) -> timedelta:
        return timedelta(minutes=self.session_token_without_device_lifetime_minutes)

    @property
    def key_fetch_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.key_fetch_token_lifetime_minutes)

    @property
    def password_forgot_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.password_forgot_token_lifetime_minutes)

    @property
    def account_reset_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.account_reset_token_lifetime_minutes)

    @property
    def unblock_code_lifetime(self) -> timedelta:
        return timedelta(minutes=self.unblock_code_lifetime_minutes)

    @property
    def signin_code_lifetime(self) -> timedelta:
        return timedelta(minutes=self.signin_code_lifetime_minutes)


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
