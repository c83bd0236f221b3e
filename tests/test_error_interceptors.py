import errno
import gzip
import json
import random
import socket

import httpx
import pytest

from testluy_http.client import ResilientClient
from testluy_http.config import BackoffConfig, ClientConfig
from testluy_http.error_handler import ErrorHandler
from testluy_http.error_interceptors import (
    ChallengeErrorInterceptor,
    NetworkErrorInterceptor,
    RateLimitErrorInterceptor,
    build_resilience_chain,
)
from testluy_http.errors import ChallengeError, ChallengeType, NetworkError, RateLimitError, ServerError
from testluy_http.fingerprint import USER_AGENTS, BrowserFingerprint
from testluy_http.interceptors import InterceptedCall, InterceptorChain
from testluy_http.retry import RetryContext

BASE_URL = "https://api.testluy.test"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _client(handler, chain: InterceptorChain, clock: FakeClock, **config) -> ResilientClient:
    return ResilientClient(
        ClientConfig(base_url=BASE_URL, enable_metrics=False, **config),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        chain=chain,
        sleeper=clock.sleep,
        clock=clock,
    )


def _refused(request: httpx.Request) -> httpx.ConnectError:
    err = httpx.ConnectError("All connection attempts failed", request=request)
    err.__cause__ = ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
    return err


@pytest.mark.asyncio
async def test_network_interceptor_recovers_after_connection_failures():
    clock = FakeClock()
    calls = {"n": 0}
    notified = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            raise _refused(request)
        return httpx.Response(200, json={"paymentUrl": "https://pay.test/abc"})

    chain = InterceptorChain()
    chain.add_error_interceptor(
        NetworkErrorInterceptor(jitter_factor=0, on_network_error=lambda info: notified.append(info))
    )
    client = _client(handler, chain, clock)
    try:
        response = await client.post("/api/payment-simulator/generate-url", json={"amount": 10})
        assert response.json() == {"paymentUrl": "https://pay.test/abc"}
        assert calls["n"] == 3
        assert clock.sleeps == [1.0, 2.0]
        assert [n["retry_count"] for n in notified] == [1, 2]
        assert notified[0]["classification"].details["code"] == "ECONNREFUSED"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_network_interceptor_raises_structured_error_when_exhausted():
    clock = FakeClock()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise _refused(request)

    chain = InterceptorChain()
    chain.add_error_interceptor(NetworkErrorInterceptor(max_retries=2, jitter_factor=0))
    client = _client(handler, chain, clock)
    try:
        with pytest.raises(NetworkError) as exc:
            await client.get("/api/validate-credentials")
        assert calls["n"] == 3
        assert exc.value.max_retries_reached is True
        assert exc.value.attempts == 3
        assert isinstance(exc.value.__cause__, httpx.ConnectError)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_network_interceptor_does_not_retry_dns_failures():
    clock = FakeClock()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        err = httpx.ConnectError("[Errno -2] Name or service not known", request=request)
        err.__cause__ = socket.gaierror(-2, "Name or service not known")
        raise err

    chain = InterceptorChain()
    chain.add_error_interceptor(NetworkErrorInterceptor())
    client = _client(handler, chain, clock)
    try:
        with pytest.raises(NetworkError) as exc:
            await client.get("/api/validate-credentials")
        assert calls["n"] == 1
        assert exc.value.retryable is False
        assert exc.value.details["dns"] is True
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_timeout_retry_extends_timeout_budget():
    clock = FakeClock()
    timeouts = []

    def handler(request: httpx.Request) -> httpx.Response:
        timeouts.append(request.extensions["timeout"]["read"])
        if len(timeouts) == 1:
            raise httpx.ReadTimeout("The read operation timed out", request=request)
        return httpx.Response(200, json={"ok": True})

    chain = InterceptorChain()
    chain.add_error_interceptor(NetworkErrorInterceptor(jitter_factor=0))
    client = _client(handler, chain, clock, timeout_seconds=10)
    try:
        await client.get("/api/payment-simulator/status/TRX-1", timeout=10)
        assert timeouts == [10, 15]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_rate_limit_interceptor_waits_for_retry_after():
    clock = FakeClock()
    calls = {"n": 0}
    notified = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(
                429,
                headers={"retry-after": "2", "x-ratelimit-limit": "60", "x-ratelimit-remaining": "0"},
                json={"message": "Too Many Attempts."},
            )
        return httpx.Response(200, json={"ok": True})

    async def on_rate_limit(info):
        notified.append(info)

    chain = InterceptorChain()
    chain.add_error_interceptor(RateLimitErrorInterceptor(on_rate_limit=on_rate_limit))
    client = _client(handler, chain, clock)
    try:
        response = await client.get("/api/payment-simulator/status/TRX-1")
        assert response.status_code == 200
        assert clock.sleeps == [2.0]
        assert notified[0]["retry_count"] == 1
        assert notified[0]["delay_ms"] == 2000
        assert isinstance(notified[0]["error"], RateLimitError)
        assert notified[0]["retry_guidance"]["retry_after_seconds"] == 2
        assert notified[0]["retry_guidance"]["limit"] == 60
    finally:
        await client.close()


@pytest.mark.parametrize(
    "headers,expected_seconds",
    [
        ({}, 60.0),
        ({"retry-after": "100000"}, 300.0),
        ({"retry-after": "0"}, 0.5),
    ],
)
@pytest.mark.asyncio
async def test_rate_limit_delay_defaults_caps_and_floors(headers, expected_seconds):
    clock = FakeClock()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers=headers)
        return httpx.Response(200)

    chain = InterceptorChain()
    chain.add_error_interceptor(RateLimitErrorInterceptor(min_retry_delay_ms=500))
    client = _client(handler, chain, clock)
    try:
        await client.get("/api/payment-simulator/status/TRX-1")
        assert clock.sleeps == [expected_seconds]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_rate_limit_interceptor_exhausts_with_guidance():
    clock = FakeClock()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "1"})

    chain = InterceptorChain()
    chain.add_error_interceptor(RateLimitErrorInterceptor(max_retries=1))
    client = _client(handler, chain, clock)
    try:
        with pytest.raises(RateLimitError) as exc:
            await client.get("/api/payment-simulator/status/TRX-1")
        guidance = exc.value.get_retry_guidance()
        assert guidance["should_retry"] is False
        assert guidance["retry_after_seconds"] == 1
        assert exc.value.attempts == 2
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_challenge_retries_rotate_user_agent_and_keep_signature():
    clock = FakeClock()
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            403,
            headers={"server": "cloudflare", "cf-ray": "8a1b2c3d4e5f-SIN"},
            text="<html>Checking your browser before accessing api.testluy.test...</html>",
        )

    chain = InterceptorChain()
    chain.add_error_interceptor(
        ChallengeErrorInterceptor(
            max_retries=2,
            jitter_factor=0,
            mutator=BrowserFingerprint(rng=random.Random(11)),
        )
    )
    client = _client(handler, chain, clock)
    try:
        with pytest.raises(ChallengeError) as exc:
            await client.post(
                "/api/payment-simulator/generate-url",
                json={"amount": 25},
                headers={"X-Client-Id": "client-1", "X-Signature": "sig-1", "X-Timestamp": "1760000000"},
            )
    finally:
        await client.close()

    assert len(seen) == 3
    agents = [r.headers.get("user-agent") for r in seen]
    assert all(a != b for a, b in zip(agents, agents[1:]))
    assert all(ua in USER_AGENTS for ua in agents[1:])
    for request in seen:
        assert request.headers["X-Signature"] == "sig-1"
        assert request.url == seen[0].url
        assert json.loads(request.content) == {"amount": 25}
    assert seen[1].headers["Sec-Fetch-Mode"] == "cors"
    assert exc.value.challenge_type is ChallengeType.BROWSER_CHECK
    assert exc.value.max_retries_reached is True
    assert exc.value.ray_id == "8a1b2c3d4e5f-SIN"
    assert clock.sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_captcha_is_never_retried():
    clock = FakeClock()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(403, headers={"server": "cloudflare"}, text="Please complete the CAPTCHA")

    chain = InterceptorChain()
    chain.add_error_interceptor(ChallengeErrorInterceptor())
    client = _client(handler, chain, clock)
    try:
        with pytest.raises(ChallengeError) as exc:
            await client.get("/api/validate-credentials")
        assert calls["n"] == 1
        assert exc.value.retryable is False
        assert exc.value.requires_user_action is True
        assert exc.value.attempts == 1
        assert exc.value.max_retries_reached is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_challenge_mutator_can_be_disabled():
    clock = FakeClock()
    agents = []

    def handler(request: httpx.Request) -> httpx.Response:
        agents.append(request.headers.get("user-agent"))
        if len(agents) == 1:
            return httpx.Response(403, text="")
        return httpx.Response(200)

    chain = InterceptorChain()
    chain.add_error_interceptor(ChallengeErrorInterceptor(mutator=None, jitter_factor=0))
    client = _client(handler, chain, clock)
    try:
        await client.get("/api/validate-credentials")
    finally:
        await client.close()
    assert agents[0] == agents[1]


@pytest.mark.asyncio
async def test_interceptor_ignores_other_kinds():
    interceptor = RateLimitErrorInterceptor()
    request = httpx.Request("GET", f"{BASE_URL}/api/x")

    async def send(_request):  # pragma: no cover
        raise AssertionError("must not reissue")

    call = InterceptedCall(request=request, send=send, context=RetryContext(max_retries=3))
    assert await interceptor.on_error(httpx.ConnectError("refused"), call) is None
    assert call.context.retries_by == {}


@pytest.mark.asyncio
async def test_budgets_are_per_request_not_per_interceptor():
    clock = FakeClock()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        # Every request fails twice before succeeding.
        if calls["n"] % 3 != 0:
            raise _refused(request)
        return httpx.Response(200)

    interceptor = NetworkErrorInterceptor(max_retries=2, jitter_factor=0)
    chain = InterceptorChain()
    chain.add_error_interceptor(interceptor)
    client = _client(handler, chain, clock)
    try:
        for _ in range(3):
            response = await client.get("/api/validate-credentials")
            assert response.status_code == 200
        assert calls["n"] == 9
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_resilience_chain_hands_new_failure_kind_to_next_interceptor():
    clock = FakeClock()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            raise _refused(request)
        if calls["n"] == 2:
            return httpx.Response(429, headers={"retry-after": "3"})
        return httpx.Response(200, json={"ok": True})

    chain = build_resilience_chain(network={"jitter_factor": 0})
    client = _client(handler, chain, clock)
    try:
        response = await client.get("/api/payment-simulator/status/TRX-1")
        assert response.json() == {"ok": True}
        assert calls["n"] == 3
        assert clock.sleeps == [1.0, 3.0]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_resilience_chain_returns_new_failure_to_earlier_interceptor():
    clock = FakeClock()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"retry-after": "1"})
        if calls["n"] == 2:
            raise _refused(request)
        return httpx.Response(200, json={"ok": True})

    chain = build_resilience_chain(network={"jitter_factor": 0})
    client = _client(handler, chain, clock)
    try:
        response = await client.get("/api/payment-simulator/status/TRX-1")
        assert response.json() == {"ok": True}
        assert calls["n"] == 3
        assert clock.sleeps == [1.0, 1.0]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_recovered_challenge_response_body_decodes():
    clock = FakeClock()
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if len(seen) == 1:
            return httpx.Response(403, headers={"server": "cloudflare"}, text="Checking your browser...")
        accepted = [v.strip() for v in request.headers["accept-encoding"].split(",")]
        assert "br" not in accepted
        return httpx.Response(
            200,
            headers={"content-encoding": "gzip", "content-type": "application/json"},
            content=gzip.compress(b'{"status": "success"}'),
        )

    chain = InterceptorChain()
    chain.add_error_interceptor(ChallengeErrorInterceptor(jitter_factor=0))
    client = _client(handler, chain, clock)
    try:
        response = await client.get("/api/payment-simulator/status/TRX-1")
    finally:
        await client.close()
    assert len(seen) == 2
    assert response.json() == {"status": "success"}


def test_browser_headers_describe_a_fetch_request():
    headers = BrowserFingerprint(rng=random.Random(1)).headers_for(httpx.Request("GET", f"{BASE_URL}/api/x"))
    assert headers["Sec-Fetch-Mode"] == "cors"
    assert headers["Sec-Fetch-Dest"] == "empty"
    assert "Upgrade-Insecure-Requests" not in headers
    assert "Sec-Fetch-User" not in headers


@pytest.mark.asyncio
async def test_resilience_chain_falls_back_to_error_handler():
    clock = FakeClock()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(503, text="upstream overloaded")

    chain = build_resilience_chain(
        error_handler=ErrorHandler(BackoffConfig(max_retries=1, base_delay_ms=50, jitter_factor=0), clock=clock)
    )
    client = _client(handler, chain, clock)
    try:
        with pytest.raises(ServerError) as exc:
            await client.get("/api/payment-simulator/status/TRX-1")
        assert calls["n"] == 2
        assert exc.value.report is not None
        assert exc.value.report.attempts == 2
    finally:
        await client.close()
