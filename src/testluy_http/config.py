from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_BASE_URL = "https://api-testluy.paragoniu.app"
DEFAULT_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class BackoffConfig(BaseModel):
    """Retry budget and delay curve. Invalid values fail at construction."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: float = Field(default=1000, gt=0)
    max_delay_ms: float = Field(default=30000, gt=0)
    backoff_factor: float = Field(default=2.0, gt=0)
    jitter_factor: float = Field(default=0.1, ge=0, le=1)
    retryable_status_codes: frozenset[int] = Field(default=DEFAULT_RETRYABLE_STATUS_CODES)

    # retry_condition(error, attempt) -> bool replaces the built-in eligibility rules.
    retry_condition: Callable[[BaseException, int], bool] | None = None
    # on_retry(event) runs before each retry sleep; may be sync or async.
    on_retry: Callable[[Any], Any] | None = None

    @field_validator("retryable_status_codes")
    @classmethod
    def _validate_status_codes(cls, v: frozenset[int]) -> frozenset[int]:
        bad = sorted(code for code in v if not 100 <= code <= 599)
        if bad:
            raise ValueError(f"retryable_status_codes contains invalid HTTP status codes: {bad}")
        return v


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class ClientConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    base_url: str = Field(default=DEFAULT_BASE_URL)
    timeout_seconds: float = Field(default=30.0, gt=0)
    default_headers: dict[str, str] = Field(
        default_factory=lambda: {"Content-Type": "application/json", "Accept": "application/json"}
    )
    retry: BackoffConfig = Field(default_factory=BackoffConfig)

    # Explicit global throttling; 0 disables the breaker.
    circuit_breaker_failures: int = Field(default=0, ge=0)
    circuit_breaker_reset_seconds: float = Field(default=30.0, ge=0)

    # Observability
    log_level: str = Field(default_factory=lambda: os.getenv("TESTLUY_LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("TESTLUY_LOG_FORMAT", "json"))
    enable_metrics: bool = Field(default_factory=lambda: _env_bool("TESTLUY_ENABLE_METRICS"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("TESTLUY_METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("TESTLUY_METRICS_PORT", "9109")))

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'.")
        return v
