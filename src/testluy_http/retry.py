from __future__ import annotations

import asyncio
import inspect
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

import structlog

from .config import BackoffConfig
from .detector import (
    ClassifiedError,
    ErrorDetector,
    is_challenge_response,
    parse_retry_after,
    response_date,
    response_of,
)
from .errors import FailureKind, RequestCancelledError, SDKError
from .metrics import retries_total, retry_delay_seconds

log = structlog.get_logger()

T = TypeVar("T")
Sleeper = Callable[[float], Awaitable[None]]


async def invoke_callback(callback: Callable[..., Any] | None, *args: Any) -> Any:
    """Call a hook that may be either sync or async."""
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        return await result
    return result


class CancellationToken:
    """Caller-held switch that aborts one logical request across all of its attempts."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(self.reason or "Request was cancelled by the caller.")

    async def wait(self) -> None:
        await self._event.wait()


async def cancellable_sleep(seconds: float, sleeper: Sleeper, token: CancellationToken | None) -> None:
    if token is None:
        await sleeper(seconds)
        return
    token.raise_if_cancelled()
    sleep_task = asyncio.ensure_future(sleeper(seconds))
    cancel_task = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({sleep_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = [t for t in (sleep_task, cancel_task) if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    token.raise_if_cancelled()
    sleep_task.result()


@dataclass
class RetryContext:
    """Attempt state for one logical request. Created per call, never shared."""

    max_retries: int
    attempt: int = 0
    previous_error: BaseException | None = None
    next_delay_ms: float | None = None
    started_at: float = field(default_factory=time.monotonic)
    retries_by: dict[str, int] = field(default_factory=dict)
    cancel_token: CancellationToken | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def elapsed_ms(self, clock: Callable[[], float] = time.monotonic) -> float:
        return max(0.0, (clock() - self.started_at) * 1000.0)

    async def sleep(self, delay_ms: float, sleeper: Sleeper = asyncio.sleep) -> None:
        await cancellable_sleep(delay_ms / 1000.0, sleeper, self.cancel_token)


@dataclass(frozen=True)
class RetryEvent:
    attempt: int
    delay_ms: float
    error: BaseException
    classification: ClassifiedError
    context: RetryContext


class RetryStrategy:
    def __init__(
        self,
        config: BackoffConfig | None = None,
        *,
        detector: ErrorDetector | None = None,
        sleeper: Sleeper | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
        component: str = "strategy",
    ):
        self.config = config or BackoffConfig()
        self.detector = detector or ErrorDetector()
        self._sleep: Sleeper = sleeper or asyncio.sleep
        self._clock: Callable[[], float] = clock or time.monotonic
        self._rng = rng or random.Random()
        self._component = component

    def new_context(self, cancel_token: CancellationToken | None = None) -> RetryContext:
        return RetryContext(max_retries=self.config.max_retries, started_at=self._clock(), cancel_token=cancel_token)

    def compute_delay(self, attempt: int, error: BaseException | ClassifiedError | None = None) -> float:
        """Milliseconds to wait before retry number ``attempt`` (1-based)."""
        cfg = self.config
        exponent = max(0, attempt - 1)
        try:
            delay = min(cfg.base_delay_ms * (cfg.backoff_factor**exponent), cfg.max_delay_ms)
        except OverflowError:
            delay = cfg.max_delay_ms

        retry_after_ms: float | None = None
        retry_after = self._retry_after_seconds(error)
        if retry_after is not None:
            retry_after_ms = retry_after * 1000.0
            delay = max(delay, retry_after_ms)

        if cfg.jitter_factor > 0:
            delay += self._rng.uniform(-1.0, 1.0) * delay * cfg.jitter_factor
        delay = min(max(delay, 0.0), cfg.max_delay_ms)

        # Jitter never undercuts the server's Retry-After.
        if retry_after_ms is not None:
            delay = max(delay, min(retry_after_ms, cfg.max_delay_ms))
        return delay

    def should_retry(self, error: BaseException | ClassifiedError, attempts_so_far: int) -> bool:
        if attempts_so_far >= self.config.max_retries:
            return False
        if isinstance(error, ClassifiedError):
            return error.retryable
        if self.config.retry_condition is not None:
            return bool(self.config.retry_condition(error, attempts_so_far))
        if isinstance(error, SDKError):
            return error.retryable
        response = response_of(error)
        if response is None:
            # Unrecognized exceptions are retried; transport failures follow their classification.
            classification = self.detector.classify(error)
            return classification.retryable or classification.kind is FailureKind.UNKNOWN
        # A challenge page can carry a retryable status; its subtype decides.
        if is_challenge_response(response):
            return self.detector.classify(error).retryable
        return response.status_code in self.config.retryable_status_codes

    async def run_with_retry(
        self,
        operation: Callable[[RetryContext], Awaitable[T]],
        context: RetryContext | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        sleeper: Sleeper | None = None,
    ) -> T:
        ctx = context or self.new_context(cancel_token)
        ctx.raise_if_cancelled()
        try:
            return await operation(ctx)
        except Exception as e:
            return await self.resume(operation, e, ctx, sleeper=sleeper)

    async def resume(
        self,
        operation: Callable[[RetryContext], Awaitable[T]],
        error: BaseException,
        context: RetryContext,
        *,
        sleeper: Sleeper | None = None,
    ) -> T:
        """Continue the retry loop for a request whose first attempt already failed."""
        ctx = context
        while True:
            if isinstance(error, RequestCancelledError):
                raise error
            if not self.should_retry(error, ctx.attempt):
                self._annotate(error, ctx)
                raise error

            classification = self._classification(error)
            ctx.attempt += 1
            ctx.previous_error = error
            delay_ms = self.compute_delay(ctx.attempt, error)
            ctx.next_delay_ms = delay_ms

            retries_total.labels(kind=classification.kind.value, component=self._component).inc()
            retry_delay_seconds.labels(component=self._component).observe(delay_ms / 1000.0)
            log.info(
                "retry_scheduled",
                component=self._component,
                attempt=ctx.attempt,
                max_retries=ctx.max_retries,
                delay_ms=round(delay_ms, 1),
                kind=classification.kind.value,
            )
            await invoke_callback(
                self.config.on_retry,
                RetryEvent(
                    attempt=ctx.attempt,
                    delay_ms=delay_ms,
                    error=error,
                    classification=classification,
                    context=ctx,
                ),
            )

            ctx.raise_if_cancelled()
            await ctx.sleep(delay_ms, sleeper or self._sleep)
            ctx.raise_if_cancelled()
            try:
                return await operation(ctx)
            except Exception as e:
                error = e

    def _classification(self, error: BaseException) -> ClassifiedError:
        if isinstance(error, ClassifiedError):
            return error
        return self.detector.classify(error)

    def _annotate(self, error: BaseException, ctx: RetryContext) -> None:
        if not isinstance(error, SDKError):
            return
        if ctx.attempt >= ctx.max_retries and ctx.attempt > 0:
            error.mark_exhausted(ctx.attempt + 1, ctx.max_retries)
        else:
            error.attempts = ctx.attempt + 1

    def _retry_after_seconds(self, error: BaseException | ClassifiedError | None) -> float | None:
        if error is None:
            return None
        if isinstance(error, ClassifiedError):
            if error.kind is not FailureKind.RATE_LIMIT:
                return None
            return error.retry_after_seconds
        value = getattr(error, "retry_after_seconds", None)
        if isinstance(value, (int, float)):
            return float(value)
        response = response_of(error)
        if response is None:
            return None
        header = response.headers.get("retry-after")
        if header is None:
            return None
        now = response_date(response) or datetime.now(timezone.utc)
        return parse_retry_after(header, now)
