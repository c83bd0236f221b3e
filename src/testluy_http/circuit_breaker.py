from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from .errors import CircuitBreakerOpenError
from .metrics import circuit_breaker_events_total

log = structlog.get_logger()


class CircuitBreaker:
    """Opt-in global throttling shared by every request of one client.

    Counts consecutive terminal failures; after ``failure_threshold`` of them the
    circuit opens for ``reset_seconds`` and requests are short-circuited with
    :class:`CircuitBreakerOpenError`. A threshold of 0 disables it.
    """

    def __init__(
        self,
        failure_threshold: int = 0,
        reset_seconds: float = 30.0,
        *,
        clock: Callable[[], float] | None = None,
    ):
        self._threshold = max(0, int(failure_threshold))
        self._reset_seconds = max(0.0, float(reset_seconds))
        self._clock: Callable[[], float] = clock or time.monotonic
        self._failures = 0
        self._open_until: float | None = None

    @property
    def enabled(self) -> bool:
        return self._threshold > 0

    @property
    def failures(self) -> int:
        return self._failures

    def remaining_seconds(self) -> int | None:
        if self._open_until is None:
            return None
        remaining = self._open_until - self._clock()
        if remaining <= 0:
            return None
        return int(remaining) + 1

    def allow(self) -> None:
        if not self.enabled:
            return
        remaining = self.remaining_seconds()
        if remaining is None:
            return
        circuit_breaker_events_total.labels(event="short_circuit").inc()
        raise CircuitBreakerOpenError(retry_after_seconds=remaining)

    def on_success(self) -> None:
        if not self.enabled:
            return
        self._failures = 0
        self._open_until = None

    def on_failure(self) -> None:
        if not self.enabled:
            return
        self._failures += 1
        if self._failures < self._threshold:
            return
        if self._reset_seconds <= 0:
            return
        self._open_until = self._clock() + self._reset_seconds
        circuit_breaker_events_total.labels(event="open").inc()
        log.warning("circuit_breaker_open", failures=self._failures, reset_seconds=self._reset_seconds)
