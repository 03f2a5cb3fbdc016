from __future__ import annotations

from datetime import timedelta
from typing import Annotated

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from currenseen.circuit_breaker import CircuitBreakerConfig
from currenseen.logging import LogFormat, get_log_level_value
from currenseen.provider.constants import DEFAULT_BASE_URLS, DEFAULT_TIMEOUT_SECONDS
from currenseen.retry import RetryBackoffPolicy

ENV_PREFIX = "CURRENSEEN_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


def _split_csv(value: object) -> object:
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return value


class ServiceSettings(BaseSettings):
    """Runtime settings for the rate service, read from ``CURRENSEEN_*``."""

    model_config = prefixed_settings_config(ENV_PREFIX)

    database_url: str = "sqlite+aiosqlite:///./currenseen.db"
    cache_ttl_seconds: float = 3600.0
    provider_base_urls: Annotated[tuple[str, ...], NoDecode] = DEFAULT_BASE_URLS
    provider_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    provider_retry_attempts: int = 3
    provider_retry_initial_seconds: float = 0.1
    provider_retry_max_seconds: float = 5.0
    provider_retry_multiplier: float = 2.0
    skip_tls_verify: bool = False
    breaker_failure_threshold: int = 5
    breaker_cooldown_seconds: float = 30.0
    breaker_success_threshold: int = 1
    request_timeout_seconds: float = 15.0
    log_level: str = "INFO"
    log_format: LogFormat = "auto"
    api_keys: Annotated[tuple[str, ...], NoDecode] = ()
    rate_limit_enabled: bool = True
    rate_limit_requests_per_minute: int = 100
    rate_limit_burst_size: int = 10

    @field_validator("provider_base_urls", "api_keys", mode="before")
    @classmethod
    def _split_comma_separated(cls, value: object) -> object:
        return _split_csv(value)

    @field_validator("provider_base_urls")
    @classmethod
    def _normalize_base_urls(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        urls = tuple(url.strip().rstrip("/") for url in value if url.strip())
        if not urls:
            raise ValueError("provider_base_urls must contain at least one URL")
        return urls

    @field_validator("database_url", mode="before")
    @classmethod
    def _validate_required_string(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        get_log_level_value(value)
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_service_settings(self) -> ServiceSettings:
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be > 0")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")
        if self.rate_limit_requests_per_minute < 1:
            raise ValueError("rate_limit_requests_per_minute must be >= 1")
        if self.rate_limit_burst_size < 1:
            raise ValueError("rate_limit_burst_size must be >= 1")
        self.breaker_config()
        self.retry_policy()
        return self

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_ttl_seconds)

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            cooldown=self.breaker_cooldown_seconds,
            success_threshold=self.breaker_success_threshold,
        )

    def retry_policy(self) -> RetryBackoffPolicy:
        """Build the provider retry backoff policy."""
        return RetryBackoffPolicy(
            attempts=self.provider_retry_attempts,
            initial_seconds=self.provider_retry_initial_seconds,
            max_seconds=self.provider_retry_max_seconds,
            multiplier=self.provider_retry_multiplier,
        )
