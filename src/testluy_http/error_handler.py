from __future__ import annotations

import random
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, NoReturn

import httpx
import structlog

from .config import BackoffConfig
from .detector import ClassifiedError, ErrorDetector, response_of, response_text
from .errors import ChallengeError, FailureKind, SDKError
from .fingerprint import BrowserFingerprint, RequestMutator
from .interceptors import InterceptedCall, with_scaled_timeout
from .logging import sanitize_headers, truncate
from .metrics import errors_classified_total, recoveries_total, terminal_failures_total
from .retry import RetryContext, RetryStrategy, invoke_callback

log = structlog.get_logger()

_DEFAULT_MUTATOR: Any = object()

FATAL_KINDS = frozenset(
    {
        FailureKind.VALIDATION,
        FailureKind.AUTH,
        FailureKind.CLIENT,
        FailureKind.UNKNOWN,
        FailureKind.CANCELLED,
    }
)


@dataclass(frozen=True)
class DiagnosticReport:
    report_id: str
    timestamp: datetime
    kind: FailureKind
    code: str
    message: str
    retryable: bool
    attempts: int
    elapsed_ms: float
    request: dict[str, Any] | None
    response: dict[str, Any] | None
    details: dict[str, Any] = field(default_factory=dict)
    recommended_action: str = ""
    cause: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["timestamp"] = self.timestamp.isoformat()
        out["kind"] = self.kind.value
        return out


def _response_snapshot(response: httpx.Response | None) -> dict[str, Any] | None:
    if response is None:
        return None
    return {
        "status": response.status_code,
        "headers": sanitize_headers(response.headers),
        "body": truncate(response_text(response), 1000),
    }


class ErrorHandler:
    """Classify, retry through the original transport, and report what could not be recovered."""

    def __init__(
        self,
        config: BackoffConfig | None = None,
        *,
        detector: ErrorDetector | None = None,
        auto_retry: bool = True,
        mutator: RequestMutator | None = _DEFAULT_MUTATOR,
        on_error: Callable[[BaseException, ClassifiedError], Any] | None = None,
        on_recovery: Callable[[BaseException, httpx.Response, RetryContext], Any] | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.config = config or BackoffConfig()
        self.detector = detector or ErrorDetector()
        self.strategy = RetryStrategy(self.config, detector=self.detector, rng=rng, component="error_handler")
        self.auto_retry = auto_retry
        self._mutator: RequestMutator | None = BrowserFingerprint() if mutator is _DEFAULT_MUTATOR else mutator
        self._on_error = on_error
        self._on_recovery = on_recovery
        self._clock: Callable[[], float] = clock or time.monotonic

    def is_fatal(self, classification: ClassifiedError) -> bool:
        return classification.kind in FATAL_KINDS or not classification.retryable

    async def handle(self, error: BaseException, call: InterceptedCall) -> httpx.Response:
        classification = self.detector.classify(error)
        errors_classified_total.labels(kind=classification.kind.value).inc()
        log.info(
            "error_detected",
            kind=classification.kind.value,
            retryable=classification.retryable,
            status=classification.status,
            path=call.request.url.path,
        )
        await invoke_callback(self._on_error, error, classification)

        if not self.auto_retry or self.is_fatal(classification):
            self._raise(error, classification, call)

        async def reissue(ctx: RetryContext) -> httpx.Response:
            request = call.request
            if ctx.previous_error is not None:
                request = self._prepare(request, self.detector.classify(ctx.previous_error))
            return await call.reissue(request)

        try:
            response = await self.strategy.resume(reissue, error, call.context, sleeper=call.sleeper)
        except Exception as e:
            self._raise(e, self.detector.classify(e), call)

        recoveries_total.labels(kind=classification.kind.value).inc()
        log.info(
            "request_recovered",
            kind=classification.kind.value,
            attempts=call.context.attempt + 1,
            status_code=response.status_code,
        )
        await invoke_callback(self._on_recovery, error, response, call.context)
        return response

    async def on_error(self, error: BaseException, call: InterceptedCall) -> httpx.Response:
        return await self.handle(error, call)

    def as_interceptor(self) -> "ErrorHandler":
        return self

    def build_report(
        self,
        error: BaseException,
        sdk_error: SDKError,
        classification: ClassifiedError,
        call: InterceptedCall,
    ) -> DiagnosticReport:
        snapshot = sdk_error.request_snapshot
        return DiagnosticReport(
            report_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc),
            kind=sdk_error.kind,
            code=sdk_error.code,
            message=sdk_error.message,
            retryable=classification.retryable,
            attempts=sdk_error.attempts or call.context.attempt + 1,
            elapsed_ms=call.context.elapsed_ms(self._clock),
            request=snapshot.to_dict() if snapshot is not None else None,
            response=_response_snapshot(response_of(error)),
            details=dict(classification.details),
            recommended_action=sdk_error.recommended_action,
            cause=f"{type(error).__name__}: {error}",
        )

    def _prepare(self, request: httpx.Request, classification: ClassifiedError) -> httpx.Request:
        if classification.kind is FailureKind.CHALLENGE and self._mutator is not None:
            return self._mutator(request)
        if classification.kind is FailureKind.TIMEOUT:
            return with_scaled_timeout(request)
        return request

    def _raise(self, error: BaseException, classification: ClassifiedError, call: InterceptedCall) -> NoReturn:
        sdk_error = self.detector.to_error(error, classification, request=call.request)
        ctx = call.context
        if not sdk_error.max_retries_reached:
            if classification.retryable and ctx.attempt > 0 and ctx.attempt >= self.config.max_retries:
                sdk_error.mark_exhausted(ctx.attempt + 1, self.config.max_retries)
            elif sdk_error.attempts is None:
                sdk_error.attempts = ctx.attempt + 1

        report = self.build_report(error, sdk_error, classification, call)
        sdk_error.report = report
        terminal_failures_total.labels(kind=sdk_error.kind.value).inc()
        fields = report.to_dict()
        fields.pop("timestamp")
        event = "challenge_blocked" if isinstance(sdk_error, ChallengeError) else "request_failed"
        log.error(event, **fields)

        if sdk_error is error:
            raise sdk_error
        raise sdk_error from error


def create_error_interceptor(
    *,
    on_error: Callable[[BaseException, ClassifiedError], Any] | None = None,
    on_recovery: Callable[[BaseException, httpx.Response, RetryContext], Any] | None = None,
    auto_retry: bool = True,
    detector: ErrorDetector | None = None,
    mutator: RequestMutator | None = _DEFAULT_MUTATOR,
    rng: random.Random | None = None,
    **backoff_options: Any,
) -> ErrorHandler:
    """Error interceptor from named options.

    ``backoff_options`` are :class:`BackoffConfig` fields (``max_retries``,
    ``base_delay_ms``, ``max_delay_ms``, ``backoff_factor``, ``jitter_factor``,
    ``retryable_status_codes``, ``on_retry``, ``retry_condition``).
    """
    handler = ErrorHandler(
        BackoffConfig(**backoff_options),
        detector=detector,
        auto_retry=auto_retry,
        mutator=mutator,
        on_error=on_error,
        on_recovery=on_recovery,
        rng=rng,
    )
    return handler.as_interceptor()
