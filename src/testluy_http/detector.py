"""Failure classification.

Maps any failure raised around a transport call onto exactly one
:class:`FailureKind`. Classification is pure: the same failure object always
yields an equal :class:`ClassifiedError`. Time-relative headers (HTTP-date
``Retry-After``, relative rate-limit resets) are measured against the
response's own ``Date`` header when present, so they do not drift between calls.
"""

from __future__ import annotations

import asyncio
import errno
import json
import math
import re
import socket
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Union

import httpx

from .errors import (
    CHALLENGE_POLICY,
    ERROR_CLASSES,
    ChallengeError,
    ChallengeType,
    ConfigurationError,
    FailureKind,
    RateLimitError,
    RequestSnapshot,
    SDKError,
)
from .logging import truncate

DEFAULT_RETRY_AFTER_SECONDS = 60.0

_CHALLENGE_MARKERS = (
    "checking your browser",
    "ray id",
    "cf-chl",
    "cf_chl",
    "cf-browser-verification",
)
_IP_BLOCK_MARKERS = (
    "your ip has been blocked",
    "access denied",
    "error 1006",
    "error 1007",
    "error 1008",
)
_RATE_LIMIT_TEXT = ("rate limit", "too many requests")
_RATE_LIMIT_PREFIXES = ("x-ratelimit-", "x-rate-limit-", "ratelimit-")
_DNS_TEXT = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
)
_LEADING_INT_RE = re.compile(r"^\s*(\d+)")
_EPOCH_THRESHOLD = 1_000_000_000


@dataclass(frozen=True)
class ClassifiedError:
    kind: FailureKind
    retryable: bool
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Own copy; callers mutating their dict must not change a classification.
        object.__setattr__(self, "details", dict(self.details))

    @property
    def status(self) -> int | None:
        return self.details.get("status")

    @property
    def challenge_type(self) -> ChallengeType | None:
        value = self.details.get("challenge_type")
        return ChallengeType(value) if value is not None else None

    @property
    def retry_after_seconds(self) -> float | None:
        return self.details.get("retry_after_seconds")


CustomDetectorResult = Union[ClassifiedError, Mapping[str, Any], None]
CustomDetector = Callable[[BaseException], CustomDetectorResult]


def response_of(failure: BaseException) -> httpx.Response | None:
    response = getattr(failure, "response", None)
    return response if isinstance(response, httpx.Response) else None


def request_of(failure: BaseException) -> httpx.Request | None:
    candidates: list[Any] = [failure]
    response = response_of(failure)
    if response is not None:
        candidates.append(response)
    for obj in candidates:
        try:
            request = getattr(obj, "request", None)
        except RuntimeError:
            # httpx raises when .request was never attached.
            continue
        if isinstance(request, httpx.Request):
            return request
    return None


def response_text(response: httpx.Response) -> str:
    try:
        return response.text
    except httpx.ResponseNotRead:
        return ""


def _json_document(text: str) -> tuple[bool, Any]:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return False, None
    try:
        return True, json.loads(stripped)
    except ValueError:
        return False, None


def _parse_http_date(value: str) -> datetime | None:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def response_date(response: httpx.Response) -> datetime | None:
    date = response.headers.get("date")
    return _parse_http_date(date) if date else None


def parse_retry_after(value: str, now: datetime) -> float:
    """Seconds to wait from a ``Retry-After`` value (delta-seconds or HTTP-date)."""
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        when = _parse_http_date(value)
        if when is None:
            return DEFAULT_RETRY_AFTER_SECONDS
        return float(max(0, math.ceil((when - now).total_seconds())))
    if math.isnan(seconds) or math.isinf(seconds):
        return DEFAULT_RETRY_AFTER_SECONDS
    return max(0.0, seconds)


def _leading_int(value: str) -> int | None:
    match = _LEADING_INT_RE.match(value)
    return int(match.group(1)) if match else None


def parse_rate_limit_headers(headers: httpx.Headers | Mapping[str, str], now: datetime) -> dict[str, Any]:
    """Extract ``limit``, ``remaining`` and ``reset_at`` from the common header families."""
    headers = httpx.Headers(headers)
    info: dict[str, Any] = {}
    for prefix in _RATE_LIMIT_PREFIXES:
        for name in ("limit", "remaining"):
            raw = headers.get(prefix + name)
            if name not in info and raw is not None:
                parsed = _leading_int(raw)
                if parsed is not None:
                    info[name] = parsed
        raw_reset = headers.get(prefix + "reset")
        if "reset_at" not in info and raw_reset is not None:
            reset = _leading_int(raw_reset)
            if reset is not None:
                if reset > _EPOCH_THRESHOLD:
                    info["reset_at"] = datetime.fromtimestamp(reset, tz=timezone.utc)
                else:
                    info["reset_at"] = now + timedelta(seconds=reset)
    return info


def is_challenge_response(response: httpx.Response) -> bool:
    if "cloudflare" in response.headers.get("server", "").lower():
        return True
    body = response_text(response)
    lowered = body.lower()
    if any(marker in lowered for marker in _CHALLENGE_MARKERS):
        return True
    # API errors are JSON; a bare 403 page comes from the edge, not the API.
    if response.status_code == 403:
        is_json, _ = _json_document(body)
        return not is_json
    return False


def is_rate_limit_response(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    for prefix in _RATE_LIMIT_PREFIXES:
        if response.headers.get(prefix + "remaining", "").strip() == "0":
            return True
    lowered = response_text(response).lower()
    return any(marker in lowered for marker in _RATE_LIMIT_TEXT)


def _exception_chain(failure: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = failure
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def _is_transport_failure(failure: BaseException) -> bool:
    return isinstance(failure, (httpx.TransportError, OSError, TimeoutError, asyncio.TimeoutError))


def _extract_message(response: httpx.Response) -> str | None:
    body = response_text(response)
    is_json, data = _json_document(body)
    if is_json and isinstance(data, dict):
        for key in ("message", "error", "detail"):
            value = data.get(key)
            if isinstance(value, str):
                return value
            if value is not None:
                return json.dumps(value)
        return None
    body = body.strip()
    return truncate(body, 500) if body else None


class ErrorDetector:
    def __init__(
        self,
        *,
        custom_detectors: Mapping[str, CustomDetector] | None = None,
        detect_challenge: bool = True,
        detect_rate_limit: bool = True,
        clock: Callable[[], float] | None = None,
    ):
        self._custom_detectors = dict(custom_detectors or {})
        self._detect_challenge = detect_challenge
        self._detect_rate_limit = detect_rate_limit
        self._clock: Callable[[], float] = clock or time.time

    def classify(self, failure: BaseException) -> ClassifiedError:
        for name, detector in self._custom_detectors.items():
            detected = detector(failure)
            if detected:
                return self._from_custom(name, detected)

        if isinstance(failure, SDKError):
            return self._from_sdk_error(failure)

        response = response_of(failure)
        if response is None:
            if _is_transport_failure(failure):
                return self._classify_network(failure)
            return ClassifiedError(
                FailureKind.UNKNOWN,
                False,
                {"message": str(failure) or type(failure).__name__, "exception": type(failure).__name__},
            )

        if self._detect_challenge and is_challenge_response(response):
            return self._classify_challenge(response)
        if self._detect_rate_limit and is_rate_limit_response(response):
            return self._classify_rate_limit(response)
        return self._classify_status(response)

    def to_error(
        self,
        failure: BaseException,
        classification: ClassifiedError | None = None,
        *,
        request: httpx.Request | None = None,
        message: str | None = None,
    ) -> SDKError:
        """Build the structured error for ``failure``. ``SDKError`` inputs are returned unchanged."""
        if isinstance(failure, SDKError):
            return failure
        classified = classification or self.classify(failure)
        response = response_of(failure)
        request = request or request_of(failure)
        common: dict[str, Any] = {
            "details": classified.details,
            "http_status": response.status_code if response is not None else None,
            "request_snapshot": RequestSnapshot.from_request(request) if request is not None else None,
            "cause": failure,
        }
        text = message or self._default_message(failure, classified, response)

        if classified.kind is FailureKind.CHALLENGE:
            return ChallengeError(
                text,
                challenge_type=classified.challenge_type or ChallengeType.UNKNOWN,
                ray_id=classified.details.get("ray_id"),
                **common,
            )
        if classified.kind is FailureKind.RATE_LIMIT:
            return RateLimitError(
                text,
                retry_after_seconds=classified.retry_after_seconds,
                limit=classified.details.get("limit"),
                remaining=classified.details.get("remaining"),
                reset_at=classified.details.get("reset_at"),
                **common,
            )
        error_cls = ERROR_CLASSES.get(classified.kind, SDKError)
        return error_cls(text, kind=classified.kind, retryable=classified.retryable, **common)

    def _now(self, response: httpx.Response | None = None) -> datetime:
        if response is not None:
            sent = response_date(response)
            if sent is not None:
                return sent
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _from_custom(self, name: str, detected: CustomDetectorResult) -> ClassifiedError:
        if isinstance(detected, ClassifiedError):
            return ClassifiedError(detected.kind, detected.retryable, {"detector": name, **detected.details})
        if isinstance(detected, Mapping):
            try:
                kind = FailureKind(detected.get("kind", name))
            except ValueError:
                kind = FailureKind.UNKNOWN
            details = dict(detected.get("details") or {})
            return ClassifiedError(kind, bool(detected.get("retryable", False)), {"detector": name, **details})
        raise ConfigurationError(
            f"Custom detector {name!r} returned {type(detected).__name__}; "
            "expected ClassifiedError, a mapping or None."
        )

    def _from_sdk_error(self, error: SDKError) -> ClassifiedError:
        details = dict(error.details)
        if error.http_status is not None:
            details.setdefault("status", error.http_status)
        if isinstance(error, ChallengeError):
            details["challenge_type"] = error.challenge_type.value
        if isinstance(error, RateLimitError) and error.retry_after_seconds is not None:
            details["retry_after_seconds"] = error.retry_after_seconds
        return ClassifiedError(error.kind, error.retryable, details)

    def _classify_network(self, failure: BaseException) -> ClassifiedError:
        chain = _exception_chain(failure)
        details: dict[str, Any] = {
            "message": str(failure) or type(failure).__name__,
            "exception": type(failure).__name__,
        }
        code: str | None = None
        for exc in chain:
            if isinstance(exc, OSError) and isinstance(exc.errno, int) and exc.errno in errno.errorcode:
                code = errno.errorcode[exc.errno]
                break
        text = " ".join(str(exc) for exc in chain).lower()

        timed_out = (
            any(isinstance(exc, (httpx.TimeoutException, TimeoutError, asyncio.TimeoutError)) for exc in chain)
            or code in ("ETIMEDOUT", "ECONNABORTED")
            or "timed out" in text
            or "timeout" in text
        )
        if timed_out:
            if code:
                details["code"] = code
            details["timeout"] = True
            return ClassifiedError(FailureKind.TIMEOUT, True, details)

        retryable = True
        if any(isinstance(exc, socket.gaierror) for exc in chain) or any(m in text for m in _DNS_TEXT):
            code = code or "ENOTFOUND"
            details["dns"] = True
            # An unresolvable host does not fix itself within a retry window.
            retryable = False
        elif code == "ECONNREFUSED":
            details["connection_refused"] = True
        elif code in ("ECONNRESET", "EPIPE"):
            details["connection_reset"] = True
        if code:
            details["code"] = code
        return ClassifiedError(FailureKind.NETWORK, retryable, details)

    def _classify_challenge(self, response: httpx.Response) -> ClassifiedError:
        body = response_text(response).lower()
        if "captcha" in body:
            challenge_type = ChallengeType.CAPTCHA
        elif "checking your browser" in body:
            challenge_type = ChallengeType.BROWSER_CHECK
        elif "security challenge" in body:
            challenge_type = ChallengeType.SECURITY_CHALLENGE
        elif any(marker in body for marker in _IP_BLOCK_MARKERS):
            challenge_type = ChallengeType.IP_BLOCK
        else:
            challenge_type = ChallengeType.UNKNOWN
        retryable, requires_user_action = CHALLENGE_POLICY[challenge_type]

        details: dict[str, Any] = {
            "status": response.status_code,
            "challenge_type": challenge_type.value,
            "requires_user_action": requires_user_action,
        }
        ray_id = response.headers.get("cf-ray")
        if ray_id:
            details["ray_id"] = ray_id
        cache_status = response.headers.get("cf-cache-status")
        if cache_status:
            details["cache_status"] = cache_status
        return ClassifiedError(FailureKind.CHALLENGE, retryable, details)

    def _classify_rate_limit(self, response: httpx.Response) -> ClassifiedError:
        now = self._now(response)
        details: dict[str, Any] = {"status": response.status_code}
        retry_after = response.headers.get("retry-after")
        if retry_after is not None:
            details["retry_after_seconds"] = parse_retry_after(retry_after, now)
        details.update(parse_rate_limit_headers(response.headers, now))
        message = _extract_message(response)
        if message:
            details["message"] = message
        return ClassifiedError(FailureKind.RATE_LIMIT, True, details)

    def _classify_status(self, response: httpx.Response) -> ClassifiedError:
        status = response.status_code
        details: dict[str, Any] = {"status": status, "reason": response.reason_phrase}
        message = _extract_message(response)
        if message:
            details["message"] = message

        if status in (401, 403):
            return ClassifiedError(FailureKind.AUTH, False, details)
        if status == 422:
            is_json, data = _json_document(response_text(response))
            if is_json and isinstance(data, dict) and data.get("errors") is not None:
                details["validation_errors"] = data["errors"]
            return ClassifiedError(FailureKind.VALIDATION, False, details)
        if status == 408:
            return ClassifiedError(FailureKind.TIMEOUT, True, details)
        if 400 <= status < 500:
            return ClassifiedError(FailureKind.CLIENT, False, details)
        if status >= 500:
            return ClassifiedError(FailureKind.SERVER, True, details)
        return ClassifiedError(FailureKind.UNKNOWN, False, details)

    @staticmethod
    def _default_message(
        failure: BaseException, classified: ClassifiedError, response: httpx.Response | None
    ) -> str:
        if classified.kind is FailureKind.CHALLENGE:
            return f"Request blocked by an intermediary challenge ({classified.details.get('challenge_type')})"
        if classified.kind is FailureKind.RATE_LIMIT:
            return "API rate limit exceeded"
        if response is not None:
            base = f"HTTP {response.status_code} {response.reason_phrase}".rstrip()
            detail = classified.details.get("message")
            return f"{base}: {truncate(detail, 200)}" if detail else base
        return str(failure) or type(failure).__name__
