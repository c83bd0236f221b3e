from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import httpx

from .logging import sanitize_headers


class FailureKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    CHALLENGE = "challenge"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    VALIDATION = "validation"
    SERVER = "server"
    CLIENT = "client"
    UNKNOWN = "unknown"
    # Never produced by classification; marks a request the caller cancelled.
    CANCELLED = "cancelled"


class ChallengeType(str, Enum):
    CAPTCHA = "captcha"
    BROWSER_CHECK = "browser_check"
    SECURITY_CHALLENGE = "security_challenge"
    IP_BLOCK = "ip_block"
    UNKNOWN = "unknown"


# challenge type -> (retryable, requires_user_action)
CHALLENGE_POLICY: dict[ChallengeType, tuple[bool, bool]] = {
    ChallengeType.CAPTCHA: (False, True),
    ChallengeType.BROWSER_CHECK: (True, False),
    ChallengeType.SECURITY_CHALLENGE: (True, False),
    ChallengeType.IP_BLOCK: (False, True),
    ChallengeType.UNKNOWN: (True, False),
}

_CHALLENGE_ACTIONS = {
    ChallengeType.CAPTCHA: (
        "A CAPTCHA challenge was detected. Route traffic through an allow-listed egress IP "
        "or contact support to have the client whitelisted."
    ),
    ChallengeType.BROWSER_CHECK: (
        "A browser verification check was detected. Retrying with browser-like request headers."
    ),
    ChallengeType.SECURITY_CHALLENGE: (
        "A security challenge was detected. Retrying with browser-like request headers."
    ),
    ChallengeType.IP_BLOCK: (
        "Your IP address appears to be blocked. Use a different egress IP or contact support."
    ),
    ChallengeType.UNKNOWN: "An unrecognized challenge page was returned. Retrying with browser-like request headers.",
}

RECOMMENDED_ACTIONS: dict[FailureKind, str] = {
    FailureKind.NETWORK: "Check network connectivity and that the API host is reachable.",
    FailureKind.TIMEOUT: "Request timed out. Increase the timeout or check network latency.",
    FailureKind.CHALLENGE: _CHALLENGE_ACTIONS[ChallengeType.UNKNOWN],
    FailureKind.RATE_LIMIT: "Wait until the rate limit resets before making additional requests.",
    FailureKind.AUTH: "Authentication failed. Check the client id and secret and that they have not been revoked.",
    FailureKind.VALIDATION: "Validation failed. Check your request parameters.",
    FailureKind.SERVER: "The API server reported an error. This is usually temporary; retry later.",
    FailureKind.CLIENT: "The request was rejected. Check the request parameters and API documentation.",
    FailureKind.UNKNOWN: "An unexpected error occurred.",
    FailureKind.CANCELLED: "The request was cancelled by the caller.",
}


@dataclass(frozen=True)
class RequestSnapshot:
    method: str
    url: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_request(cls, request: httpx.Request) -> "RequestSnapshot":
        return cls(
            method=request.method,
            url=str(request.url).split("?", 1)[0],
            path=request.url.path,
            headers=sanitize_headers(request.headers),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method, "url": self.url, "path": self.path, "headers": dict(self.headers)}


class SDKError(Exception):
    """Base error for all failures surfaced by the resilience layer."""

    default_code = "UNKNOWN_ERROR"
    default_kind = FailureKind.UNKNOWN

    def __init__(
        self,
        message: str = "",
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        http_status: int | None = None,
        request_snapshot: RequestSnapshot | None = None,
        cause: BaseException | None = None,
        kind: FailureKind | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: dict[str, Any] = dict(details or {})
        self.timestamp = datetime.now(timezone.utc)
        self.http_status = http_status
        self.request_snapshot = request_snapshot
        self.cause = cause
        self.kind = kind or self.default_kind
        self.retryable = retryable
        self.attempts: int | None = None
        self.max_retries_reached = False
        self.recovery_message: str | None = None
        self.report: Any = None

    @property
    def recommended_action(self) -> str:
        return RECOMMENDED_ACTIONS.get(self.kind, RECOMMENDED_ACTIONS[FailureKind.UNKNOWN])

    def mark_exhausted(self, attempts: int, max_retries: int) -> None:
        self.attempts = attempts
        self.max_retries_reached = True
        self.recovery_message = f"Maximum retry attempts ({max_retries}) reached."

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "kind": self.kind.value,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
            "http_status": self.http_status,
            "details": dict(self.details),
            "request": self.request_snapshot.to_dict() if self.request_snapshot else None,
            "attempts": self.attempts,
            "max_retries_reached": self.max_retries_reached,
            "recommended_action": self.recommended_action,
        }

    def __str__(self) -> str:
        suffix = f" (HTTP {self.http_status})" if self.http_status is not None else ""
        return f"{type(self).__name__} [{self.code}]: {self.message}{suffix}"


class ConfigurationError(SDKError):
    default_code = "CONFIGURATION_ERROR"


class NetworkError(SDKError):
    default_code = "NETWORK_ERROR"
    default_kind = FailureKind.NETWORK


class RequestTimeoutError(SDKError):
    default_code = "TIMEOUT_ERROR"
    default_kind = FailureKind.TIMEOUT


class AuthenticationError(SDKError):
    default_code = "AUTH_ERROR"
    default_kind = FailureKind.AUTH


class ValidationError(SDKError):
    default_code = "VALIDATION_ERROR"
    default_kind = FailureKind.VALIDATION

    @property
    def validation_errors(self) -> dict[str, Any]:
        errors = self.details.get("validation_errors")
        return errors if isinstance(errors, dict) else {}

    @property
    def recommended_action(self) -> str:
        text = RECOMMENDED_ACTIONS[FailureKind.VALIDATION]
        if not self.validation_errors:
            return text
        lines = [text + " Issues:"]
        for name, messages in self.validation_errors.items():
            if isinstance(messages, (list, tuple)):
                messages = ", ".join(str(m) for m in messages)
            lines.append(f"- {name}: {messages}")
        return "\n".join(lines)


class ServerError(SDKError):
    default_code = "SERVER_ERROR"
    default_kind = FailureKind.SERVER


class ClientError(SDKError):
    default_code = "CLIENT_ERROR"
    default_kind = FailureKind.CLIENT


class RequestCancelledError(SDKError):
    default_code = "REQUEST_CANCELLED"
    default_kind = FailureKind.CANCELLED


class CircuitBreakerOpenError(SDKError):
    default_code = "CIRCUIT_OPEN"
    default_kind = FailureKind.SERVER

    def __init__(self, retry_after_seconds: int | None = None, message: str = "Upstream temporarily unavailable"):
        super().__init__(message, retryable=False)
        self.retry_after_seconds = retry_after_seconds


class RateLimitError(SDKError):
    default_code = "RATE_LIMIT_EXCEEDED"
    default_kind = FailureKind.RATE_LIMIT

    def __init__(
        self,
        message: str = "API rate limit exceeded",
        *,
        retry_after_seconds: float | None = None,
        limit: int | None = None,
        remaining: int | None = None,
        reset_at: datetime | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at

    @property
    def retry_at(self) -> datetime | None:
        if self.retry_after_seconds is None:
            return None
        return self.timestamp + timedelta(seconds=self.retry_after_seconds)

    @property
    def recommended_action(self) -> str:
        if self.limit is not None and self.limit < 100:
            return "Consider upgrading your subscription plan for higher rate limits."
        if self.remaining == 0:
            return "Implement request throttling to stay within your rate limits."
        return RECOMMENDED_ACTIONS[FailureKind.RATE_LIMIT]

    def get_retry_guidance(self) -> dict[str, Any]:
        return {
            "should_retry": self.retryable and not self.max_retries_reached,
            "retryable": self.retryable,
            "retry_after_seconds": self.retry_after_seconds if self.retry_after_seconds is not None else 60,
            "retry_at": self.retry_at,
            "reset_at": self.reset_at,
            "limit": self.limit,
            "remaining": self.remaining,
            "recommended_action": self.recommended_action,
        }

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out.update(
            retry_after_seconds=self.retry_after_seconds,
            limit=self.limit,
            remaining=self.remaining,
            reset_at=self.reset_at.isoformat() if self.reset_at else None,
        )
        return out


class ChallengeError(SDKError):
    """An intermediary (bot-protection) page answered instead of the API."""

    default_code = "CHALLENGE_BLOCKED"
    default_kind = FailureKind.CHALLENGE

    def __init__(
        self,
        message: str = "Request blocked by an intermediary challenge",
        *,
        challenge_type: ChallengeType | str = ChallengeType.UNKNOWN,
        ray_id: str | None = None,
        **kwargs: Any,
    ):
        kwargs.pop("retryable", None)
        try:
            self.challenge_type = ChallengeType(challenge_type)
        except ValueError:
            self.challenge_type = ChallengeType.UNKNOWN
        retryable, requires_user_action = CHALLENGE_POLICY[self.challenge_type]
        super().__init__(message, retryable=retryable, **kwargs)
        self.ray_id = ray_id
        self.requires_user_action = requires_user_action

    @property
    def recommended_action(self) -> str:
        return _CHALLENGE_ACTIONS[self.challenge_type]

    def get_challenge_guidance(self) -> dict[str, Any]:
        return {
            "challenge_type": self.challenge_type.value,
            "retryable": self.retryable,
            "requires_user_action": self.requires_user_action,
            "ray_id": self.ray_id,
            "recommended_action": self.recommended_action,
        }

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out.update(self.get_challenge_guidance())
        return out


ERROR_CLASSES: dict[FailureKind, type[SDKError]] = {
    FailureKind.NETWORK: NetworkError,
    FailureKind.TIMEOUT: RequestTimeoutError,
    FailureKind.CHALLENGE: ChallengeError,
    FailureKind.RATE_LIMIT: RateLimitError,
    FailureKind.AUTH: AuthenticationError,
    FailureKind.VALIDATION: ValidationError,
    FailureKind.SERVER: ServerError,
    FailureKind.CLIENT: ClientError,
    FailureKind.UNKNOWN: SDKError,
    FailureKind.CANCELLED: RequestCancelledError,
}
