import abc
import os
import time
from collections.abc import AsyncIterator
from typing import Any, Dict, Iterator

import httpx

from ..config import ProviderDef
from ..errors import ProviderError, RequestTimeoutError, ValidationError, error_from_status, parse_retry_after
from ..types import ChatRequest, ChatResponse, HealthReport, ProviderCapabilities, StreamChunk


class UnsupportedContentBlockError(ValidationError):
    """Raised when a request includes a content block unsupported by a provider."""


def _http_status_error_message(exc: httpx.HTTPStatusError) -> str:
    response = exc.response
    message: str | None = None
    try:
        payload = response.json()
    except (ValueError, httpx.ResponseNotRead):
        payload = None
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
        elif isinstance(error_field, str) and error_field:
            message = error_field
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    if message is None:
        try:
            text = response.text
        except httpx.ResponseNotRead:
            text = ""
        if text:
            message = text
    if message is None and response.reason_phrase:
        message = response.reason_phrase
    return message or str(exc)


def classify_http_error(
    exc: httpx.HTTPError,
    *,
    provider: str | None = None,
    idempotent: bool = True,
) -> ProviderError:
    """Map an httpx failure onto the hub error taxonomy.

    Failures that happen after the request body may have reached the upstream
    are only retryable for idempotent calls.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        retry_after = parse_retry_after(exc.response.headers.get("retry-after"))
        return error_from_status(
            status,
            _http_status_error_message(exc),
            provider=provider,
            retry_after=retry_after,
        )
    if isinstance(exc, (httpx.ConnectTimeout, httpx.PoolTimeout)):
        return RequestTimeoutError(f"connection timed out: {exc}", provider=provider)
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(f"upstream timed out: {exc}", provider=provider, retryable=idempotent)
    if isinstance(exc, httpx.ConnectError):
        return ProviderError(f"connection failed: {exc}", retryable=True, provider=provider)
    if isinstance(exc, httpx.TransportError):
        return ProviderError(f"transport error: {exc}", retryable=idempotent, provider=provider)
    return ProviderError(str(exc) or type(exc).__name__, retryable=False, provider=provider)


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str | None, str]]:
    """Yield ``(event, data)`` pairs from server-sent event lines until ``[DONE]``."""
    data_lines: list[str] = []
    event_name: str | None = None
    async for raw_line in lines:
        if raw_line is None:
            continue
        line = raw_line.strip("\r")
        if line == "":
            if not data_lines:
                event_name = None
                continue
            data_text = "\n".join(data_lines)
            data_lines.clear()
            if data_text == "[DONE]":
                return
            yield event_name, data_text
            event_name = None
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_name = line[6:].strip() or None
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        data_text = "\n".join(data_lines)
        if data_text and data_text != "[DONE]":
            yield event_name, data_text


class BaseProvider(abc.ABC):
    """Adapter contract: complete, stream_complete, list_models, health_check."""

    provider_type: str = "base"
    capabilities: ProviderCapabilities = ProviderCapabilities()

    _RESERVED_OPTION_KEYS: frozenset[str] = frozenset(
        {
            "model",
            "messages",
            "temperature",
            "max_tokens",
            "tools",
            "tool_choice",
            "function_call",
            "stream",
        }
    )

    def __init__(self, defn: ProviderDef):
        self.defn = defn
        self.name = defn.name

    @property
    def models(self) -> tuple[str, ...]:
        return tuple(self.defn.models)

    def supports_model(self, model: str) -> bool:
        return not self.models or model in self.models

    @abc.abstractmethod
    async def complete(self, request: ChatRequest) -> ChatResponse:
        raise NotImplementedError

    @abc.abstractmethod
    def stream_complete(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    async def list_models(self) -> list[str]:
        if self.models:
            return list(self.models)
        url = self._models_url()
        if url is None:
            return []
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.get(url, headers=self._auth_headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, provider=self.name) from exc
        return self._parse_models(data)

    async def health_check(self) -> HealthReport:
        url = self._models_url()
        if url is None:
            return HealthReport(healthy=True, detail="no probe endpoint")
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.get(url, headers=self._auth_headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            error = classify_http_error(exc, provider=self.name)
            return HealthReport(
                healthy=False,
                latency_ms=(time.perf_counter() - started) * 1000.0,
                detail=error.message,
            )
        return HealthReport(healthy=True, latency_ms=(time.perf_counter() - started) * 1000.0)

    async def aclose(self) -> None:
        return None

    def timeout_for(self, request: ChatRequest) -> float:
        return float(request.timeout_s or self.defn.timeout_s)

    def _api_key(self) -> str | None:
        auth_env = self.defn.auth_env
        if not auth_env:
            return None
        key = os.environ.get(auth_env, "").strip()
        return key or None

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _models_url(self) -> str | None:
        return None

    def _parse_models(self, data: Any) -> list[str]:
        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            return []
        return [entry["id"] for entry in entries if isinstance(entry, dict) and isinstance(entry.get("id"), str)]

    def _classify(self, exc: httpx.HTTPError, request: ChatRequest) -> ProviderError:
        return classify_http_error(exc, provider=self.name, idempotent=request.idempotent)

    @classmethod
    def _merge_extra_options(cls, payload: dict[str, Any], extra_options: dict[str, Any] | None) -> None:
        if not extra_options:
            return
        for key, value in extra_options.items():
            if key in cls._RESERVED_OPTION_KEYS:
                continue
            if value is None:
                continue
            payload[key] = value


from .anthropic import AnthropicProvider  # noqa: E402
from .google import GoogleProvider  # noqa: E402
from .mock import MockProvider  # noqa: E402
from .ollama import OllamaProvider  # noqa: E402
from .openai import OpenAICompatProvider  # noqa: E402


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, type[BaseProvider]] = {
        "openai": OpenAICompatProvider,
        "anthropic": AnthropicProvider,
        "google": GoogleProvider,
        "gemini": GoogleProvider,
        "ollama": OllamaProvider,
        "mock": MockProvider,
        "dummy": MockProvider,
    }

    REQUIRED_CAPABILITIES: tuple[str, ...] = ("complete", "stream_complete", "list_models", "health_check")

    def __init__(self, providers: Dict[str, BaseProvider] | None = None):
        self.providers: Dict[str, BaseProvider] = {}
        for name, adapter in (providers or {}).items():
            self.register(name, adapter)

    @classmethod
    def from_config(cls, providers: Dict[str, ProviderDef]) -> "ProviderRegistry":
        registry = cls()
        for name, d in providers.items():
            provider_type = d.type.strip() if isinstance(d.type, str) else ""
            factory = cls._PROVIDER_FACTORIES.get(provider_type)
            if factory is None:
                display_type = provider_type or "<missing>"
                raise ValueError(f"Unknown provider type '{display_type}' for provider '{name}'")
            registry.register(name, factory(d))
        return registry

    def register(self, provider_id: str, adapter: object) -> None:
        if not isinstance(provider_id, str) or not provider_id.strip():
            raise ValueError("provider id must be a non-empty string")
        if provider_id in self.providers:
            raise ValueError(f"provider '{provider_id}' is already registered")
        missing = [name for name in self.REQUIRED_CAPABILITIES if not callable(getattr(adapter, name, None))]
        if missing:
            raise ValueError(
                "adapter for provider '{provider}' is missing required capabilities: {missing}".format(
                    provider=provider_id,
                    missing=", ".join(missing),
                )
            )
        self.providers[provider_id] = adapter  # type: ignore[assignment]

    def get(self, name: str) -> BaseProvider:
        adapter = self.providers.get(name)
        if adapter is None:
            available = ", ".join(sorted(self.providers)) or "<none>"
            raise ValidationError(f"unknown provider '{name}'; available providers: {available}", provider=name)
        return adapter

    def names(self) -> list[str]:
        return sorted(self.providers)

    def __contains__(self, name: object) -> bool:
        return name in self.providers

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self.providers)

    async def aclose(self) -> None:
        for adapter in self.providers.values():
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()


__all__ = [
    "UnsupportedContentBlockError",
    "BaseProvider",
    "OpenAICompatProvider",
    "AnthropicProvider",
    "GoogleProvider",
    "OllamaProvider",
    "MockProvider",
    "ProviderRegistry",
    "classify_http_error",
    "iter_sse_data",
]
