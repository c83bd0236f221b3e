"""Ordered request / response / error interceptor chain around one transport call."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from .detector import ClassifiedError, ErrorDetector, response_of
from .errors import ConfigurationError
from .logging import sanitize_headers
from .retry import RetryContext, Sleeper, invoke_callback

log = structlog.get_logger()

Send = Callable[[httpx.Request], Awaitable[httpx.Response]]


@runtime_checkable
class RequestInterceptor(Protocol):
    def on_request(self, request: httpx.Request) -> Any: ...


@runtime_checkable
class ResponseInterceptor(Protocol):
    def on_response(self, response: httpx.Response) -> Any: ...


@runtime_checkable
class ErrorInterceptor(Protocol):
    def on_error(self, error: BaseException, call: "InterceptedCall") -> Any: ...


def clone_request(
    request: httpx.Request,
    *,
    headers: Mapping[str, str] | None = None,
    extensions: Mapping[str, Any] | None = None,
) -> httpx.Request:
    """Copy of ``request`` with the same method, URL and body.

    ``headers`` are merged over the existing ones, so signature and auth headers
    survive unless explicitly replaced.
    """
    merged = httpx.Headers(request.headers)
    for name, value in (headers or {}).items():
        merged[name] = value
    ext = dict(request.extensions)
    if extensions:
        ext.update(extensions)
    return httpx.Request(request.method, request.url, headers=merged, content=request.content, extensions=ext)


def request_timeout_seconds(request: httpx.Request) -> float | None:
    timeout = request.extensions.get("timeout")
    if not isinstance(timeout, Mapping):
        return None
    values = [v for v in timeout.values() if isinstance(v, (int, float))]
    return max(values) if values else None


def with_scaled_timeout(
    request: httpx.Request, *, factor: float = 1.5, default_seconds: float = 30.0, cap_seconds: float = 60.0
) -> httpx.Request:
    current = request_timeout_seconds(request)
    scaled = min(current * factor if current else default_seconds, cap_seconds)
    timeout = {"connect": scaled, "read": scaled, "write": scaled, "pool": scaled}
    return clone_request(request, extensions={"timeout": timeout})


@dataclass
class InterceptedCall:
    """One logical request as seen by error interceptors.

    ``send`` is bound to the transport that issued the original attempt; every
    reissue goes through it.
    """

    request: httpx.Request
    send: Send
    context: RetryContext
    error: BaseException | None = None
    sleeper: Sleeper = asyncio.sleep

    async def sleep(self, delay_ms: float) -> None:
        await self.context.sleep(delay_ms, self.sleeper)

    async def reissue(self, request: httpx.Request | None = None) -> httpx.Response:
        self.context.raise_if_cancelled()
        if request is not None:
            self.request = request
        return await self.send(self.request)


def _phase_handler(interceptor: Any, method: str) -> Callable[..., Any]:
    handler = getattr(interceptor, method, None)
    if callable(handler):
        return handler
    if callable(interceptor) and not isinstance(interceptor, type):
        return interceptor
    raise ConfigurationError(f"{type(interceptor).__name__} does not implement {method}().")


class InterceptorChain:
    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._request: list[tuple[int, Callable[..., Any]]] = []
        self._response: list[tuple[int, Callable[..., Any]]] = []
        self._error: list[tuple[int, Callable[..., Any]]] = []

    def add_request_interceptor(self, interceptor: Any) -> int:
        return self._add(self._request, _phase_handler(interceptor, "on_request"))

    def add_response_interceptor(self, interceptor: Any) -> int:
        return self._add(self._response, _phase_handler(interceptor, "on_response"))

    def add_error_interceptor(self, interceptor: Any) -> int:
        return self._add(self._error, _phase_handler(interceptor, "on_error"))

    def remove_request_interceptor(self, interceptor_id: int) -> bool:
        return self._remove(self._request, interceptor_id)

    def remove_response_interceptor(self, interceptor_id: int) -> bool:
        return self._remove(self._response, interceptor_id)

    def remove_error_interceptor(self, interceptor_id: int) -> bool:
        return self._remove(self._error, interceptor_id)

    def clear(self) -> None:
        self._request.clear()
        self._response.clear()
        self._error.clear()

    def __len__(self) -> int:
        return len(self._request) + len(self._response) + len(self._error)

    async def process_request(self, request: httpx.Request) -> httpx.Request:
        for _, handler in list(self._request):
            request = await invoke_callback(handler, request)
        return request

    async def process_response(self, response: httpx.Response) -> httpx.Response:
        for _, handler in list(self._response):
            response = await invoke_callback(handler, response)
        return response

    async def process_error(self, call: InterceptedCall) -> httpx.Response:
        """Run error interceptors in order; the first recovered response wins.

        When an interceptor's reissue fails differently and it hands the new
        failure on through ``call.error``, the scan starts over from the first
        interceptor, since an earlier one may own the new kind. Retry budgets on
        ``call.context`` bound the number of passes.
        """
        if call.error is None:
            raise ConfigurationError("process_error() needs a call with an error set.")
        handlers = list(self._error)
        index = 0
        while index < len(handlers):
            error = call.error
            recovered = await invoke_callback(handlers[index][1], error, call)
            if recovered is not None:
                return recovered
            index = 0 if call.error is not error else index + 1
        raise call.error

    async def execute(self, call: InterceptedCall) -> httpx.Response:
        call.request = await self.process_request(call.request)
        try:
            response = await call.send(call.request)
        except Exception as e:
            call.error = e
            response = await self.process_error(call)
        return await self.process_response(response)

    def _add(self, bucket: list[tuple[int, Callable[..., Any]]], handler: Callable[..., Any]) -> int:
        interceptor_id = next(self._ids)
        bucket.append((interceptor_id, handler))
        return interceptor_id

    @staticmethod
    def _remove(bucket: list[tuple[int, Callable[..., Any]]], interceptor_id: int) -> bool:
        for index, (existing, _) in enumerate(bucket):
            if existing == interceptor_id:
                del bucket[index]
                return True
        return False


class HeadersRequestInterceptor:
    """Adds default headers the request does not already carry."""

    def __init__(self, headers: Mapping[str, str], *, override: bool = False):
        self._headers = dict(headers)
        self._override = override

    def on_request(self, request: httpx.Request) -> httpx.Request:
        for name, value in self._headers.items():
            if self._override or name not in request.headers:
                request.headers[name] = value
        return request


class LoggingInterceptor:
    def __init__(self, *, log_bodies: bool = False, body_limit: int = 1000):
        self._log_bodies = log_bodies
        self._body_limit = body_limit

    def on_request(self, request: httpx.Request) -> httpx.Request:
        fields: dict[str, Any] = {
            "method": request.method,
            "url": str(request.url).split("?", 1)[0],
            "headers": sanitize_headers(request.headers),
        }
        if self._log_bodies and request.content:
            fields["body_bytes"] = len(request.content)
        log.debug("http_request", **fields)
        return request

    def on_response(self, response: httpx.Response) -> httpx.Response:
        log.debug(
            "http_response",
            status_code=response.status_code,
            headers=sanitize_headers(response.headers),
        )
        return response

    def on_error(self, error: BaseException, call: InterceptedCall) -> None:
        response = response_of(error)
        log.debug(
            "http_error",
            method=call.request.method,
            path=call.request.url.path,
            error_type=type(error).__name__,
            status_code=response.status_code if response is not None else None,
        )
        return None


class ErrorClassifierInterceptor:
    """Classifies and reports failures without handling them."""

    def __init__(
        self,
        detector: ErrorDetector | None = None,
        *,
        on_classified: Callable[[BaseException, ClassifiedError], Any] | None = None,
    ):
        self._detector = detector or ErrorDetector()
        self._on_classified = on_classified

    async def on_error(self, error: BaseException, call: InterceptedCall) -> None:
        classification = self._detector.classify(error)
        log.info(
            "error_classified",
            kind=classification.kind.value,
            retryable=classification.retryable,
            status=classification.status,
            path=call.request.url.path,
        )
        await invoke_callback(self._on_classified, error, classification)
        return None
