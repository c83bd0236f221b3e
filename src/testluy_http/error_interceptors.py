"""Kind-specific error interceptors: network/timeout, rate limit and challenge.

Each one handles only its own kinds and returns ``None`` for anything else. Retry
budgets live in ``call.context.retries_by[name]`` so one interceptor instance can
serve any number of concurrent requests.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from .config import BackoffConfig
from .detector import ClassifiedError, ErrorDetector
from .errors import FailureKind, RateLimitError, SDKError
from .fingerprint import BrowserFingerprint, RequestMutator
from .interceptors import InterceptedCall, InterceptorChain, with_scaled_timeout
from .metrics import retries_total, retry_delay_seconds
from .retry import RetryStrategy, invoke_callback

log = structlog.get_logger()

_DEFAULT_MUTATOR: Any = object()


class _KindRetryInterceptor:
    name = "retry"
    kinds: frozenset[FailureKind] = frozenset()

    def __init__(
        self,
        *,
        max_retries: int,
        backoff: BackoffConfig,
        detector: ErrorDetector | None = None,
        rng: random.Random | None = None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self._detector = detector or ErrorDetector()
        self._strategy = RetryStrategy(backoff, detector=self._detector, rng=rng, component=self.name)

    async def on_error(self, error: BaseException, call: InterceptedCall) -> httpx.Response | None:
        classification = self._detector.classify(error)
        if classification.kind not in self.kinds:
            return None

        while True:
            used = call.context.retries_by.get(self.name, 0)
            if not classification.retryable or used >= self.max_retries:
                raise self._terminal(error, classification, call, used)

            attempt = used + 1
            call.context.retries_by[self.name] = attempt
            call.context.attempt += 1
            call.context.previous_error = error
            delay_ms = self._delay_ms(attempt, error, classification)
            call.context.next_delay_ms = delay_ms

            retries_total.labels(kind=classification.kind.value, component=self.name).inc()
            retry_delay_seconds.labels(component=self.name).observe(delay_ms / 1000.0)
            log.info(
                "retry_scheduled",
                component=self.name,
                kind=classification.kind.value,
                attempt=attempt,
                max_retries=self.max_retries,
                delay_ms=round(delay_ms, 1),
                path=call.request.url.path,
            )
            await self._before_retry(attempt, delay_ms, error, classification, call)
            await call.sleep(delay_ms)

            try:
                return await call.reissue(self._prepare(call.request, classification))
            except Exception as e:
                next_classification = self._detector.classify(e)
                if next_classification.kind not in self.kinds:
                    # A different failure now; later interceptors must see it.
                    call.error = e
                    return None
                error, classification = e, next_classification

    def _delay_ms(self, attempt: int, error: BaseException, classification: ClassifiedError) -> float:
        return self._strategy.compute_delay(attempt, error)

    def _prepare(self, request: httpx.Request, classification: ClassifiedError) -> httpx.Request:
        return request

    async def _before_retry(
        self,
        attempt: int,
        delay_ms: float,
        error: BaseException,
        classification: ClassifiedError,
        call: InterceptedCall,
    ) -> None:
        return None

    def _terminal(
        self, error: BaseException, classification: ClassifiedError, call: InterceptedCall, used: int
    ) -> SDKError:
        sdk_error = self._detector.to_error(error, classification, request=call.request)
        if used >= self.max_retries and used > 0:
            sdk_error.mark_exhausted(used + 1, self.max_retries)
        else:
            sdk_error.attempts = used + 1
        if sdk_error is not error:
            sdk_error.__cause__ = error
        log.warning(
            "retry_abandoned",
            component=self.name,
            kind=classification.kind.value,
            retryable=classification.retryable,
            attempts=sdk_error.attempts,
            max_retries_reached=sdk_error.max_retries_reached,
        )
        return sdk_error


class NetworkErrorInterceptor(_KindRetryInterceptor):
    name = "network"
    kinds = frozenset({FailureKind.NETWORK, FailureKind.TIMEOUT})

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay_ms: float = 1000,
        max_delay_ms: float = 10000,
        backoff_factor: float = 2.0,
        jitter_factor: float = 0.2,
        timeout_factor: float = 1.5,
        default_timeout_seconds: float = 30.0,
        max_timeout_seconds: float = 60.0,
        on_network_error: Callable[[dict[str, Any]], Any] | None = None,
        detector: ErrorDetector | None = None,
        rng: random.Random | None = None,
    ):
        super().__init__(
            max_retries=max_retries,
            backoff=BackoffConfig(
                max_retries=max_retries,
                base_delay_ms=base_delay_ms,
                max_delay_ms=max_delay_ms,
                backoff_factor=backoff_factor,
                jitter_factor=jitter_factor,
            ),
            detector=detector,
            rng=rng,
        )
        self._timeout_factor = timeout_factor
        self._default_timeout_seconds = default_timeout_seconds
        self._max_timeout_seconds = max_timeout_seconds
        self._on_network_error = on_network_error

    def _prepare(self, request: httpx.Request, classification: ClassifiedError) -> httpx.Request:
        if classification.kind is not FailureKind.TIMEOUT:
            return request
        return with_scaled_timeout(
            request,
            factor=self._timeout_factor,
            default_seconds=self._default_timeout_seconds,
            cap_seconds=self._max_timeout_seconds,
        )

    async def _before_retry(self, attempt, delay_ms, error, classification, call) -> None:
        await invoke_callback(
            self._on_network_error,
            {
                "retry_count": attempt,
                "max_retries": self.max_retries,
                "delay_ms": delay_ms,
                "error": error,
                "classification": classification,
            },
        )


class RateLimitErrorInterceptor(_KindRetryInterceptor):
    name = "rate_limit"
    kinds = frozenset({FailureKind.RATE_LIMIT})

    def __init__(
        self,
        *,
        max_retries: int = 3,
        respect_retry_after: bool = True,
        default_retry_delay_ms: float = 60000,
        min_retry_delay_ms: float = 0,
        max_retry_delay_ms: float = 300000,
        on_rate_limit: Callable[[dict[str, Any]], Any] | None = None,
        detector: ErrorDetector | None = None,
    ):
        if min_retry_delay_ms > max_retry_delay_ms:
            raise ValueError("min_retry_delay_ms must not exceed max_retry_delay_ms")
        super().__init__(
            max_retries=max_retries,
            backoff=BackoffConfig(
                max_retries=max_retries,
                base_delay_ms=default_retry_delay_ms,
                max_delay_ms=max_retry_delay_ms,
                jitter_factor=0,
            ),
            detector=detector,
        )
        self._respect_retry_after = respect_retry_after
        self._default_retry_delay_ms = default_retry_delay_ms
        self._min_retry_delay_ms = min_retry_delay_ms
        self._max_retry_delay_ms = max_retry_delay_ms
        self._on_rate_limit = on_rate_limit

    def _delay_ms(self, attempt: int, error: BaseException, classification: ClassifiedError) -> float:
        retry_after = classification.retry_after_seconds
        if self._respect_retry_after and retry_after is not None:
            delay = retry_after * 1000.0
        else:
            delay = self._default_retry_delay_ms
        return min(max(delay, self._min_retry_delay_ms), self._max_retry_delay_ms)

    async def _before_retry(self, attempt, delay_ms, error, classification, call) -> None:
        if self._on_rate_limit is None:
            return
        rate_limit_error = self._detector.to_error(error, classification, request=call.request)
        guidance = rate_limit_error.get_retry_guidance() if isinstance(rate_limit_error, RateLimitError) else {}
        await invoke_callback(
            self._on_rate_limit,
            {
                "retry_count": attempt,
                "max_retries": self.max_retries,
                "delay_ms": delay_ms,
                "error": rate_limit_error,
                "retry_guidance": guidance,
            },
        )


class ChallengeErrorInterceptor(_KindRetryInterceptor):
    name = "challenge"
    kinds = frozenset({FailureKind.CHALLENGE})

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay_ms: float = 2000,
        max_delay_ms: float = 30000,
        backoff_factor: float = 2.0,
        jitter_factor: float = 0.2,
        mutator: RequestMutator | None = _DEFAULT_MUTATOR,
        on_challenge: Callable[[BaseException, ClassifiedError], Any] | None = None,
        detector: ErrorDetector | None = None,
        rng: random.Random | None = None,
    ):
        super().__init__(
            max_retries=max_retries,
            backoff=BackoffConfig(
                max_retries=max_retries,
                base_delay_ms=base_delay_ms,
                max_delay_ms=max_delay_ms,
                backoff_factor=backoff_factor,
                jitter_factor=jitter_factor,
            ),
            detector=detector,
            rng=rng,
        )
        self._mutator: RequestMutator | None = BrowserFingerprint() if mutator is _DEFAULT_MUTATOR else mutator
        self._on_challenge = on_challenge

    def _prepare(self, request: httpx.Request, classification: ClassifiedError) -> httpx.Request:
        if self._mutator is None:
            return request
        return self._mutator(request)

    async def _before_retry(self, attempt, delay_ms, error, classification, call) -> None:
        log.warning(
            "challenge_detected",
            challenge_type=classification.details.get("challenge_type"),
            ray_id=classification.details.get("ray_id"),
            attempt=attempt,
        )
        await invoke_callback(self._on_challenge, error, classification)


def build_resilience_chain(
    chain: InterceptorChain | None = None,
    *,
    detector: ErrorDetector | None = None,
    network: dict[str, Any] | None = None,
    rate_limit: dict[str, Any] | None = None,
    challenge: dict[str, Any] | None = None,
    error_handler: Any | None = None,
) -> InterceptorChain:
    """Register network, rate-limit and challenge interceptors, in that order.

    ``network``/``rate_limit``/``challenge`` are keyword options for the
    matching interceptor. ``error_handler`` (anything with ``on_error`` or
    ``as_interceptor()``) is registered last.
    """
    if chain is None:
        chain = InterceptorChain()
    detector = detector or ErrorDetector()
    chain.add_error_interceptor(NetworkErrorInterceptor(detector=detector, **(network or {})))
    chain.add_error_interceptor(RateLimitErrorInterceptor(detector=detector, **(rate_limit or {})))
    chain.add_error_interceptor(ChallengeErrorInterceptor(detector=detector, **(challenge or {})))
    if error_handler is not None:
        as_interceptor = getattr(error_handler, "as_interceptor", None)
        chain.add_error_interceptor(as_interceptor() if callable(as_interceptor) else error_handler)
    return chain
