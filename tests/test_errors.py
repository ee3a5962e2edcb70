from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from src.hub.errors import (
    CircuitOpenError,
    HubError,
    ProviderError,
    RateLimitedError,
    RequestTimeoutError,
    RetryExhaustedError,
    ValidationError,
    error_from_status,
    parse_retry_after,
)


@pytest.mark.parametrize(
    ("status", "retryable", "http_status", "code"),
    [
        (400, False, 400, "provider_error"),
        (401, False, 401, "invalid_api_key"),
        (404, False, 404, "provider_error"),
        (429, True, 429, "rate_limit"),
        (500, True, 502, "provider_server_error"),
        (503, True, 502, "provider_server_error"),
    ],
)
def test_error_from_status_maps_retryability(status, retryable, http_status, code) -> None:
    error = error_from_status(status, "boom", provider="alpha")

    assert isinstance(error, ProviderError)
    assert error.status == status
    assert error.retryable is retryable
    assert error.http_status == http_status
    assert error.code == code
    assert error.context["provider"] == "alpha"


def test_error_from_status_408_is_timeout() -> None:
    error = error_from_status(408, "slow", provider="alpha")

    assert isinstance(error, RequestTimeoutError)
    assert error.retryable is True
    assert error.http_status == 504
    assert error.code == "timeout"


def test_to_dict_rounds_retry_after_up() -> None:
    error = CircuitOpenError("open", retry_after=1.2, provider="alpha")

    assert error.to_dict() == {
        "error": {
            "message": "open",
            "type": "circuit_open",
            "code": "circuit_open",
            "retry_after": 2,
        }
    }
    assert error.http_status == 503


def test_validation_error_has_no_retry_after() -> None:
    payload = ValidationError("bad").to_dict()["error"]

    assert payload["type"] == "validation_error"
    assert "retry_after" not in payload


def test_add_context_keeps_first_value() -> None:
    error = HubError("boom", attempt=1)
    error.add_context(attempt=2, component="resilience", skipped=None)

    assert error.context == {"attempt": 1, "component": "resilience"}
    assert "component=resilience" in str(error)


def test_retry_exhausted_mirrors_last_error() -> None:
    last = ProviderError("overloaded", status=429, retryable=True, retry_after=3.0)
    error = RetryExhaustedError(last, attempts=3, elapsed_s=1.23456)

    assert error.code == "rate_limit"
    assert error.http_status == 429
    assert error.retry_after == 3.0
    assert error.context["elapsed_s"] == 1.235
    assert "after 3 attempts" in error.message


def test_rate_limited_clamps_negative_retry_after() -> None:
    assert RateLimitedError("slow down", retry_after=-1).retry_after == 0.0


def test_parse_retry_after_accepts_seconds_and_dates() -> None:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    future = format_datetime(now + timedelta(seconds=30))

    assert parse_retry_after("12") == 12.0
    assert parse_retry_after(future, now=now) == pytest.approx(30.0)
    assert parse_retry_after("-4") is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None
