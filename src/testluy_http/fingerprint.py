"""Browser-like request identity, applied before challenge-triggered retries.

This is a best-effort heuristic. It never touches the URL, the body, or any
header it does not set itself, so signed requests stay valid.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence

import httpx

from .interceptors import clone_request

RequestMutator = Callable[[httpx.Request], httpx.Request]

USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.4; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36 Edg/124.0.2478.67",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
)

_ACCEPT_LANGUAGES = ("en-US,en;q=0.9", "en-GB,en;q=0.9", "en-US,en;q=0.8,km;q=0.6")

BROWSER_HEADERS: dict[str, str] = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
}


class BrowserFingerprint:
    """Rotates the User-Agent and adds browser navigation headers."""

    def __init__(
        self,
        user_agents: Sequence[str] = USER_AGENTS,
        *,
        rng: random.Random | None = None,
        extra_headers: dict[str, str] | None = None,
    ):
        if not user_agents:
            raise ValueError("user_agents must not be empty")
        self._user_agents = tuple(user_agents)
        self._rng = rng or random.Random()
        self._extra_headers = dict(extra_headers or {})

    def next_user_agent(self, current: str | None = None) -> str:
        candidates = [ua for ua in self._user_agents if ua != current] or list(self._user_agents)
        return self._rng.choice(candidates)

    def headers_for(self, request: httpx.Request) -> dict[str, str]:
        headers = dict(BROWSER_HEADERS)
        headers["Accept-Language"] = self._rng.choice(_ACCEPT_LANGUAGES)
        headers["User-Agent"] = self.next_user_agent(request.headers.get("user-agent"))
        headers.update(self._extra_headers)
        return headers

    def __call__(self, request: httpx.Request) -> httpx.Request:
        return clone_request(request, headers=self.headers_for(request))


class FingerprintRequestInterceptor:
    """Applies a request mutator to every outgoing request. Opt-in."""

    def __init__(self, mutator: RequestMutator | None = None):
        self._mutator: RequestMutator = mutator or BrowserFingerprint()

    def on_request(self, request: httpx.Request) -> httpx.Request:
        return self._mutator(request)
