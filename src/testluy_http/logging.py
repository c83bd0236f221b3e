from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog

REDACTED = "[REDACTED]"

_SENSITIVE_KEYS = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "api-key",
    "api_key",
    "apikey",
    "x-client-secret",
    "client-secret",
    "client_secret",
    "x-signature",
    "signature",
    "token",
    "secret",
    "password",
}
_SENSITIVE_FRAGMENTS = ("key", "token", "secret", "password", "signature")

_BEARER_RE = re.compile(r"(?i)\b(Bearer|Basic)\s+([A-Za-z0-9._~+/=-]{6,})")

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def is_sensitive_key(key: str) -> bool:
    key = key.lower()
    return key in _SENSITIVE_KEYS or any(fragment in key for fragment in _SENSITIVE_FRAGMENTS)


def sanitize_headers(headers: Mapping[str, str] | Iterable[tuple[str, str]] | None) -> dict[str, str]:
    """Copy headers with secret values masked. Keys keep the casing they arrive with."""
    if headers is None:
        return {}
    items = headers.items() if isinstance(headers, Mapping) else headers
    return {k: (REDACTED if is_sensitive_key(k) else v) for k, v in items}


def truncate(text: str, limit: int = 1000) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "... [truncated]"


def _redact_str(value: str, *, secrets: list[str]) -> str:
    out = value
    for secret in secrets:
        if secret and secret in out:
            out = out.replace(secret, REDACTED)
    out = _BEARER_RE.sub(lambda m: f"{m.group(1)} {REDACTED}", out)
    return out


def _redact_obj(obj: Any, *, secrets: list[str]) -> Any:
    if obj is None:
        return None
    if isinstance(obj, str):
        return _redact_str(obj, secrets=secrets)
    if isinstance(obj, (int, float, bool)):
        return obj
    if isinstance(obj, list):
        return [_redact_obj(v, secrets=secrets) for v in obj]
    if isinstance(obj, tuple):
        return tuple(_redact_obj(v, secrets=secrets) for v in obj)
    if isinstance(obj, dict):
        redacted: dict[Any, Any] = {}
        for k, v in obj.items():
            if is_sensitive_key(str(k)):
                redacted[k] = REDACTED
            else:
                redacted[k] = _redact_obj(v, secrets=secrets)
        return redacted
    return obj


def make_redaction_processor(*, secrets: list[str] | None = None) -> Processor:
    secrets_norm = [s for s in (secrets or []) if isinstance(s, str) and s]

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], _redact_obj(dict(event_dict), secrets=secrets_norm))

    return _processor


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: list[str] | None = None) -> None:
    """Configure structlog for host applications.

    Redaction always runs: header-like keys are masked by name, and any literal
    value listed in ``secrets`` (client secret, API key) is scrubbed from strings.
    """
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))

    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        make_redaction_processor(secrets=secrets),
    ]

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer(default=str)))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )
