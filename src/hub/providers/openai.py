from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse, urlunparse

import httpx

from ..errors import ProviderError
from ..types import ChatRequest, ChatResponse, ProviderCapabilities, StreamChunk, Usage
from . import BaseProvider, iter_sse_data

logger = logging.getLogger(__name__)

_RETRYABLE_STREAM_ERRORS = frozenset({"server_error", "overloaded_error", "rate_limit_error"})

_AZURE_HOST_SUFFIXES = (
    "openai.azure.com",
    "openai.azure.us",
    "openai.azure.cn",
    "cognitiveservices.azure.com",
    "cognitiveservices.azure.us",
    "cognitiveservices.azure.cn",
)


def _is_version_segment(segment: str) -> bool:
    lowered = segment.lower()
    return len(lowered) > 1 and lowered.startswith("v") and lowered[1].isdigit()


def _is_azure_host(hostname: str) -> bool:
    return any(hostname == suffix or hostname.endswith(f".{suffix}") for suffix in _AZURE_HOST_SUFFIXES)


def api_root_segments(base_url: str) -> tuple[Any, list[str]]:
    """Split ``base_url`` into its parsed form and the API root path segments.

    A trailing ``chat`` or ``chat/completions`` is stripped; ``v1`` is added
    for bare openai.com hosts and for paths that neither carry a version nor
    sit under an Azure style ``openai/...`` deployment prefix.
    """
    parsed = urlparse(base_url.strip())
    segments = [segment for segment in (parsed.path or "").rstrip("/").split("/") if segment]
    lowered = [segment.lower() for segment in segments]
    if lowered[-2:] == ["chat", "completions"]:
        segments = segments[:-2]
    elif lowered[-1:] == ["chat"]:
        segments = segments[:-1]
    hostname = (parsed.hostname or "").lower()
    if not segments:
        append_version = hostname.endswith("openai.com")
    else:
        lowered_root = [segment.lower() for segment in segments]
        nested_openai = "openai" in lowered_root[:-1]
        append_version = not nested_openai and not _is_version_segment(segments[-1])
    if append_version:
        segments.append("v1")
    return parsed, segments


def chat_completions_url(base_url: str) -> str:
    parsed, root = api_root_segments(base_url)
    original = [segment for segment in (parsed.path or "").rstrip("/").split("/") if segment]
    lowered = [segment.lower() for segment in original]
    if lowered[-2:] == ["chat", "completions"]:
        tail = original[-2:]
    elif lowered[-1:] == ["chat"]:
        tail = [original[-1], "completions"]
    else:
        tail = ["chat", "completions"]
    return urlunparse(parsed._replace(path="/" + "/".join(root + tail)))


def models_url(base_url: str) -> str:
    parsed, root = api_root_segments(base_url)
    return urlunparse(parsed._replace(path="/" + "/".join(root + ["models"])))


class OpenAICompatProvider(BaseProvider):
    """OpenAI chat completions, including Azure and other compatible hosts."""

    provider_type = "openai"
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, vision=True, json_mode=True)

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        key = self._api_key()
        if key:
            hostname = (urlparse(self.defn.base_url.strip()).hostname or "").lower()
            if _is_azure_host(hostname):
                headers["api-key"] = key
            else:
                headers["Authorization"] = f"Bearer {key}"
        return headers

    def _models_url(self) -> str | None:
        if not self.defn.base_url.strip():
            return None
        return models_url(self.defn.base_url)

    def _build_chat_request(self, request: ChatRequest, *, stream: bool) -> tuple[str, dict[str, str], dict[str, Any]]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": request.messages_payload(),
            "stream": stream,
        }
        params = request.generation_params()
        for key in ("temperature", "max_tokens", "top_p", "stop", "tools", "tool_choice", "response_format"):
            if key in params:
                payload[key] = params.pop(key)
        if stream:
            payload["stream_options"] = {"include_usage": True}
        self._merge_extra_options(payload, params)
        return chat_completions_url(self.defn.base_url), self._auth_headers(), payload

    async def complete(self, request: ChatRequest) -> ChatResponse:
        url, headers, payload = self._build_chat_request(request, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_for(request)) as client:
                r = await client.post(url, headers=headers, json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPError as exc:
            raise self._classify(exc, request) from exc
        except ValueError as exc:
            raise ProviderError(f"invalid JSON from upstream: {exc}", provider=self.name) from exc
        raw_choices = data.get("choices") or []
        first_choice = raw_choices[0] if raw_choices and isinstance(raw_choices[0], dict) else {}
        raw_message = first_choice.get("message")
        message = (
            {key: value for key, value in raw_message.items() if value is not None}
            if isinstance(raw_message, dict)
            else {}
        )
        usage = data.get("usage") or {}
        return ChatResponse(
            provider=self.name,
            model=data.get("model") or request.model,
            content=message.get("content"),
            finish_reason=first_choice.get("finish_reason") or "stop",
            tool_calls=message.get("tool_calls"),
            function_call=message.get("function_call"),
            usage=Usage(
                prompt_tokens=usage.get("prompt_tokens", 0) or 0,
                completion_tokens=usage.get("completion_tokens", 0) or 0,
            ),
            status_code=r.status_code,
            raw=data,
        )

    def _map_stream_payload(self, payload: dict[str, Any]) -> StreamChunk | None:
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message") or error_payload.get("type") or "upstream stream error"
            raise ProviderError(
                str(message),
                retryable=error_payload.get("type") in _RETRYABLE_STREAM_ERRORS,
                provider=self.name,
            )
        usage: Usage | None = None
        usage_payload = payload.get("usage")
        if isinstance(usage_payload, dict):
            usage = Usage(
                prompt_tokens=usage_payload.get("prompt_tokens") or 0,
                completion_tokens=usage_payload.get("completion_tokens") or 0,
            )
        choices = payload.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
        delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}
        finish_reason = choice.get("finish_reason") if isinstance(choice.get("finish_reason"), str) else None
        role = delta.get("role") if isinstance(delta.get("role"), str) else None
        content = delta.get("content") if isinstance(delta.get("content"), str) else None
        tool_calls = delta.get("tool_calls") if isinstance(delta.get("tool_calls"), list) else None
        function_call = delta.get("function_call") if isinstance(delta.get("function_call"), dict) else None
        if not any(value is not None for value in (role, content, tool_calls, function_call, finish_reason, usage)):
            return None
        return StreamChunk(
            role=role,
            content=content,
            tool_calls=tool_calls,
            function_call=function_call,
            finish_reason=finish_reason,
            usage=usage,
        )

    async def stream_complete(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        url, headers, payload = self._build_chat_request(request, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_for(request)) as client:
                async with client.stream("POST", url, headers=headers, json=payload) as response:
                    if response.is_error:
                        await response.aread()
                    response.raise_for_status()
                    async for _event, data_text in iter_sse_data(response.aiter_lines()):
                        try:
                            payload_data = json.loads(data_text)
                        except json.JSONDecodeError:
                            logger.debug("openai.stream.skip_invalid_json provider=%s", self.name)
                            continue
                        if not isinstance(payload_data, dict):
                            continue
                        chunk = self._map_stream_payload(payload_data)
                        if chunk is not None:
                            yield chunk
        except httpx.HTTPError as exc:
            raise self._classify(exc, request) from exc
