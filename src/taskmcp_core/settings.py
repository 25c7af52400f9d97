from __future__ import annotations

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskmcp_core.batch import BatchOptions
from taskmcp_core.circuit_breaker import CircuitBreakerConfig
from taskmcp_core.logging import DEFAULT_SERVICE_NAME, get_log_level_value
from taskmcp_core.retry import RetryPolicy, RetryPredicate

ENV_PREFIX = "TASKMCP_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Task API connection plus breaker, retry and batch tuning."""

    model_config = prefixed_settings_config(ENV_PREFIX)

    api_url: str
    api_token: str
    log_level: str = "INFO"
    service_name: str = DEFAULT_SERVICE_NAME
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 60.0
    breaker_enable_metrics: bool = True
    retry_max_retries: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    batch_max_concurrency: int = 5
    batch_size: int = 10
    batch_delay_seconds: float = 0.0
    batch_enable_metrics: bool = True

    @field_validator("api_url", "api_token", mode="before")
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
    def _validate_resilience_settings(self) -> ResilienceSettings:
        if self.breaker_failure_threshold < 1:
            raise ValueError("breaker_failure_threshold must be >= 1")
        if self.breaker_reset_timeout_seconds < 0:
            raise ValueError("breaker_reset_timeout_seconds must be >= 0")
        if self.retry_max_retries < 0:
            raise ValueError("retry_max_retries must be >= 0")
        if self.retry_initial_delay_seconds < 0:
            raise ValueError("retry_initial_delay_seconds must be >= 0")
        if self.retry_max_delay_seconds < self.retry_initial_delay_seconds:
            raise ValueError(
                "retry_max_delay_seconds must be >= retry_initial_delay_seconds"
            )
        if self.batch_max_concurrency < 1:
            raise ValueError("batch_max_concurrency must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.batch_delay_seconds < 0:
            raise ValueError("batch_delay_seconds must be >= 0")
        return self

    def breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            reset_timeout=self.breaker_reset_timeout_seconds,
            enable_metrics=self.breaker_enable_metrics,
        )

    def retry_policy(self, should_retry: RetryPredicate | None = None) -> RetryPolicy:
        """Build a retry policy, keeping the default predicate unless given one."""
        policy = RetryPolicy(
            max_retries=self.retry_max_retries,
            initial_delay=self.retry_initial_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
        )
        if should_retry is None:
            return policy
        return RetryPolicy(
            max_retries=policy.max_retries,
            initial_delay=policy.initial_delay,
            max_delay=policy.max_delay,
            should_retry=should_retry,
        )

    def batch_options(self) -> BatchOptions:
        return BatchOptions(
            max_concurrency=self.batch_max_concurrency,
            batch_size=self.batch_size,
            batch_delay=self.batch_delay_seconds,
            enable_metrics=self.batch_enable_metrics,
        )
