from __future__ import annotations

import math
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    INVALID_API_KEY = "invalid_api_key"
    RATE_LIMIT = "rate_limit"
    PROVIDER_ERROR = "provider_error"
    PROVIDER_SERVER_ERROR = "provider_server_error"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    CACHE_ERROR = "cache_error"
    STREAM_INTERRUPTED = "stream_interrupted"
    RETRY_EXHAUSTED = "retry_exhausted"
    INTERNAL_ERROR = "internal_error"


class HubError(Exception):
    """Base class for every error that crosses the hub boundary."""

    error_type: str = "hub_error"
    http_status: int = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context)

    def add_context(self, **context: Any) -> "HubError":
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    @property
    def code(self) -> str:
        return self.error_type

    @property
    def retry_after(self) -> float | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message": self.message,
            "type": self.error_type,
            "code": self.code,
        }
        retry_after = self.retry_after
        if retry_after is not None:
            payload["retry_after"] = int(math.ceil(retry_after))
        return {"error": payload}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = " ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
        return f"{self.message} ({details})"


class ValidationError(HubError):
    error_type = ErrorCode.VALIDATION_ERROR.value
    http_status = 400


class ProviderError(HubError):
    error_type = ErrorCode.PROVIDER_ERROR.value

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retryable: bool = False,
        provider: str | None = None,
        retry_after: float | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.status = status
        self.retryable = retryable
        self.provider = provider
        self._retry_after = retry_after
        if provider is not None:
            self.context.setdefault("provider", provider)

    @property
    def code(self) -> str:
        if self.status in (401, 403):
            return ErrorCode.INVALID_API_KEY.value
        if self.status == 429:
            return ErrorCode.RATE_LIMIT.value
        if self.status is not None and self.status >= 500:
            return ErrorCode.PROVIDER_SERVER_ERROR.value
        return self.error_type

    @property
    def http_status(self) -> int:  # type: ignore[override]
        if self.status == 429:
            return 429
        if self.status is not None and 400 <= self.status < 500:
            return self.status
        return 502

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class RequestTimeoutError(ProviderError):
    error_type = ErrorCode.TIMEOUT.value

    def __init__(self, message: str = "request timed out", **kwargs: Any) -> None:
        kwargs.setdefault("status", 408)
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)

    @property
    def code(self) -> str:
        return self.error_type

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return 504


class CircuitOpenError(HubError):
    error_type = ErrorCode.CIRCUIT_OPEN.value
    http_status = 503

    def __init__(self, message: str, *, retry_after: float, **context: Any) -> None:
        super().__init__(message, **context)
        self._retry_after = max(retry_after, 0.0)

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class RateLimitedError(HubError):
    error_type = ErrorCode.RATE_LIMITED.value
    http_status = 429

    def __init__(self, message: str, *, retry_after: float, **context: Any) -> None:
        super().__init__(message, **context)
        self._retry_after = max(retry_after, 0.0)

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class CacheError(HubError):
    error_type = ErrorCode.CACHE_ERROR.value


class StreamInterrupted(HubError):
    error_type = ErrorCode.STREAM_INTERRUPTED.value
    http_status = 502


class RetryExhaustedError(HubError):
    error_type = ErrorCode.RETRY_EXHAUSTED.value

    def __init__(self, last_error: HubError, *, attempts: int, elapsed_s: float) -> None:
        super().__init__(
            f"{last_error.message} after {attempts} attempts",
            attempts=attempts,
            elapsed_s=round(elapsed_s, 3),
        )
        self.last_error = last_error
        self.attempts = attempts
        self.elapsed_s = elapsed_s

    @property
    def code(self) -> str:
        return self.last_error.code

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return self.last_error.http_status

    @property
    def retry_after(self) -> float | None:
        return self.last_error.retry_after


class InternalError(HubError):
    error_type = ErrorCode.INTERNAL_ERROR.value


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        seconds = (parsed - current).total_seconds()
    if seconds < 0:
        return None
    return seconds


def error_from_status(
    status: int,
    message: str,
    *,
    provider: str | None = None,
    retry_after: float | None = None,
) -> ProviderError:
    if status == 408:
        return RequestTimeoutError(message, provider=provider, retry_after=retry_after)
    retryable = status == 429 or status >= 500
    return ProviderError(
        message,
        status=status,
        retryable=retryable,
        provider=provider,
        retry_after=retry_after,
    )


__all__ = [
    "ErrorCode",
    "HubError",
    "ValidationError",
    "ProviderError",
    "RequestTimeoutError",
    "CircuitOpenError",
    "RateLimitedError",
    "CacheError",
    "StreamInterrupted",
    "RetryExhaustedError",
    "InternalError",
    "parse_retry_after",
    "error_from_status",
]
