from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

errors_classified_total = Counter(
    "testluy_errors_classified_total",
    "Failures classified by the error detector",
    labelnames=["kind"],
)

retries_total = Counter(
    "testluy_retries_total",
    "Retry attempts scheduled",
    labelnames=["kind", "component"],
)

retry_delay_seconds = Histogram(
    "testluy_retry_delay_seconds",
    "Delay slept before a retry (seconds)",
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["component"],
)

recoveries_total = Counter(
    "testluy_recoveries_total",
    "Failures recovered by a retry",
    labelnames=["kind"],
)

terminal_failures_total = Counter(
    "testluy_terminal_failures_total",
    "Failures surfaced to the caller",
    labelnames=["kind"],
)

client_requests_total = Counter(
    "testluy_client_requests_total",
    "Logical requests issued through the resilient client",
    labelnames=["method", "status"],
)

client_request_latency_seconds = Histogram(
    "testluy_client_request_latency_seconds",
    "Logical request latency including retries",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120],
    labelnames=["method"],
)

circuit_breaker_events_total = Counter(
    "testluy_circuit_breaker_events_total",
    "Circuit breaker events",
    labelnames=["event"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
