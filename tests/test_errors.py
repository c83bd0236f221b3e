from datetime import timedelta

import httpx
import pytest

from testluy_http.errors import (
    ChallengeError,
    ChallengeType,
    FailureKind,
    NetworkError,
    RateLimitError,
    RequestSnapshot,
    SDKError,
    ServerError,
    ValidationError,
)


def test_sdk_error_str_includes_code_and_status():
    err = ServerError("HTTP 502 Bad Gateway", http_status=502)
    assert str(err) == "ServerError [SERVER_ERROR]: HTTP 502 Bad Gateway (HTTP 502)"
    assert err.kind is FailureKind.SERVER
    assert err.timestamp.tzinfo is not None


def test_mark_exhausted_sets_recovery_metadata():
    err = NetworkError("connection refused", retryable=True)
    err.mark_exhausted(4, 3)
    assert err.attempts == 4
    assert err.max_retries_reached is True
    assert err.recovery_message == "Maximum retry attempts (3) reached."
    assert err.to_dict()["max_retries_reached"] is True


@pytest.mark.parametrize(
    "challenge_type,retryable,requires_user_action",
    [
        (ChallengeType.CAPTCHA, False, True),
        (ChallengeType.IP_BLOCK, False, True),
        (ChallengeType.BROWSER_CHECK, True, False),
        (ChallengeType.SECURITY_CHALLENGE, True, False),
        (ChallengeType.UNKNOWN, True, False),
    ],
)
def test_challenge_retryability_is_fixed_by_type(challenge_type, retryable, requires_user_action):
    err = ChallengeError(challenge_type=challenge_type, retryable=not retryable)
    assert err.retryable is retryable
    assert err.requires_user_action is requires_user_action
    guidance = err.get_challenge_guidance()
    assert guidance["challenge_type"] == challenge_type.value
    assert guidance["retryable"] is retryable
    assert guidance["recommended_action"]


def test_challenge_error_accepts_unknown_type_string():
    err = ChallengeError(challenge_type="turnstile", ray_id="8a1b2c3d4e5f-SIN")
    assert err.challenge_type is ChallengeType.UNKNOWN
    assert err.to_dict()["ray_id"] == "8a1b2c3d4e5f-SIN"


def test_rate_limit_guidance_defaults_retry_after_to_60():
    err = RateLimitError()
    guidance = err.get_retry_guidance()
    assert guidance["retry_after_seconds"] == 60
    assert guidance["should_retry"] is True
    assert guidance["retry_at"] is None


def test_rate_limit_retry_at_and_plan_advice():
    err = RateLimitError(retry_after_seconds=30, limit=50, remaining=0)
    assert err.retry_at == err.timestamp + timedelta(seconds=30)
    assert "upgrading" in err.recommended_action

    err = RateLimitError(retry_after_seconds=30, limit=1000, remaining=0)
    assert "throttling" in err.recommended_action

    err.mark_exhausted(4, 3)
    assert err.get_retry_guidance()["should_retry"] is False


def test_validation_error_lists_field_errors():
    err = ValidationError(
        "HTTP 422",
        details={"validation_errors": {"amount": ["must be positive"], "currency": "unsupported"}},
    )
    assert err.validation_errors["amount"] == ["must be positive"]
    assert "- amount: must be positive" in err.recommended_action
    assert "- currency: unsupported" in err.recommended_action
    assert err.retryable is False


def test_request_snapshot_masks_secrets_and_drops_query():
    request = httpx.Request(
        "POST",
        "https://api.testluy.test/api/payment-simulator/generate-url?token=abc",
        headers={
            "Authorization": "Bearer live_abcdef123456",
            "X-Client-Id": "client-1",
            "X-Signature": "deadbeef",
            "Content-Type": "application/json",
        },
    )
    snapshot = RequestSnapshot.from_request(request)
    assert snapshot.url == "https://api.testluy.test/api/payment-simulator/generate-url"
    assert snapshot.path == "/api/payment-simulator/generate-url"
    assert snapshot.headers["authorization"] == "[REDACTED]"
    assert snapshot.headers["x-signature"] == "[REDACTED]"
    assert snapshot.headers["x-client-id"] == "client-1"
    assert snapshot.headers["content-type"] == "application/json"


def test_to_dict_is_serializable_shape():
    err = SDKError("boom", details={"a": 1})
    out = err.to_dict()
    assert out["name"] == "SDKError"
    assert out["kind"] == "unknown"
    assert out["details"] == {"a": 1}
    assert out["request"] is None
