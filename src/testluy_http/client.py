from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from .circuit_breaker import CircuitBreaker
from .config import ClientConfig
from .detector import ErrorDetector, parse_rate_limit_headers, response_date
from .error_handler import ErrorHandler
from .errors import FailureKind, SDKError
from .interceptors import InterceptedCall, InterceptorChain
from .logging import configure_logging
from .metrics import (
    client_request_latency_seconds,
    client_requests_total,
    maybe_start_metrics,
    terminal_failures_total,
)
from .retry import CancellationToken, RetryContext, Sleeper

log = structlog.get_logger()

# Failures that count against the circuit breaker; caller mistakes do not.
_UPSTREAM_KINDS = frozenset(
    {FailureKind.NETWORK, FailureKind.TIMEOUT, FailureKind.SERVER, FailureKind.RATE_LIMIT, FailureKind.CHALLENGE}
)


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Most recent rate-limit headers seen by a client. Advisory only."""

    limit: int | None
    remaining: int | None
    reset_at: datetime | None
    updated_at: datetime


def configure_observability(cfg: ClientConfig, *, secrets: list[str] | None = None) -> None:
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=secrets)
    maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)


class ResilientClient:
    """Host-facing wrapper around one shared ``httpx.AsyncClient``.

    Holds configuration only; every call gets its own :class:`RetryContext`,
    and every retry goes back through the same ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        chain: InterceptorChain | None = None,
        detector: ErrorDetector | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        sleeper: Sleeper | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
    ):
        self.config = config or ClientConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.config.timeout_seconds)
        self.detector = detector or ErrorDetector()
        self._sleep: Sleeper = sleeper or asyncio.sleep
        self._clock: Callable[[], float] = clock or time.monotonic
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            self.config.circuit_breaker_failures,
            self.config.circuit_breaker_reset_seconds,
            clock=self._clock,
        )
        if chain is None:
            chain = InterceptorChain()
            chain.add_error_interceptor(
                ErrorHandler(self.config.retry, detector=self.detector, rng=rng, clock=self._clock)
            )
        self.chain = chain
        self._rate_limit: RateLimitSnapshot | None = None

    @property
    def rate_limit(self) -> RateLimitSnapshot | None:
        return self._rate_limit

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.config.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        content: bytes | str | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> httpx.Response:
        self.circuit_breaker.allow()

        # Configured defaults sit under per-call headers but over httpx's own defaults.
        merged_headers = httpx.Headers(self.config.default_headers)
        merged_headers.update(headers or {})
        build_kwargs: dict[str, Any] = {"params": params, "json": json, "content": content, "headers": merged_headers}
        if timeout is not None:
            build_kwargs["timeout"] = timeout
        request = self._client.build_request(method.upper(), self.url_for(path), **build_kwargs)

        context = RetryContext(
            max_retries=self.config.retry.max_retries,
            started_at=self._clock(),
            cancel_token=cancel_token,
        )
        call = InterceptedCall(request=request, send=self._send, context=context, sleeper=self._sleep)
        started_at = self._clock()
        try:
            response = await self.chain.execute(call)
        except SDKError as e:
            self._on_terminal(e, call)
            self._observe(request.method, str(e.http_status or e.kind.value), started_at)
            raise
        except Exception as e:
            classification = self.detector.classify(e)
            sdk_error = self.detector.to_error(e, classification, request=call.request)
            if sdk_error.attempts is None:
                sdk_error.attempts = context.attempt + 1
            self._on_terminal(sdk_error, call)
            self._observe(request.method, str(sdk_error.http_status or sdk_error.kind.value), started_at)
            raise sdk_error from e

        self.circuit_breaker.on_success()
        self._observe(request.method, str(response.status_code), started_at)
        return response

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", path, **kwargs)

    async def _send(self, request: httpx.Request) -> httpx.Response:
        response = await self._client.send(request)
        self._update_rate_limit(response)
        if not 200 <= response.status_code < 300:
            raise httpx.HTTPStatusError(
                f"HTTP {response.status_code} for {request.method} {request.url.path}",
                request=request,
                response=response,
            )
        return response

    def _update_rate_limit(self, response: httpx.Response) -> None:
        now = datetime.now(timezone.utc)
        info = parse_rate_limit_headers(response.headers, response_date(response) or now)
        if not info:
            return
        self._rate_limit = RateLimitSnapshot(
            limit=info.get("limit"),
            remaining=info.get("remaining"),
            reset_at=info.get("reset_at"),
            updated_at=now,
        )

    def _on_terminal(self, error: SDKError, call: InterceptedCall) -> None:
        if error.kind in _UPSTREAM_KINDS:
            self.circuit_breaker.on_failure()
        if error.report is not None:
            # Already counted and logged by the error handler.
            return
        terminal_failures_total.labels(kind=error.kind.value).inc()
        log.error(
            "request_failed",
            kind=error.kind.value,
            code=error.code,
            message=error.message,
            http_status=error.http_status,
            attempts=error.attempts,
            max_retries_reached=error.max_retries_reached,
            request=error.request_snapshot.to_dict() if error.request_snapshot else None,
            recommended_action=error.recommended_action,
            elapsed_ms=round(call.context.elapsed_ms(self._clock), 1),
        )

    def _observe(self, method: str, status: str, started_at: float) -> None:
        client_requests_total.labels(method=method, status=status).inc()
        client_request_latency_seconds.labels(method=method).observe(max(0.0, self._clock() - started_at))
