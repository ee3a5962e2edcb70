from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse, urlunparse

import httpx

from ..errors import ProviderError, ValidationError
from ..types import ChatRequest, ChatResponse, ProviderCapabilities, StreamChunk, Usage
from . import BaseProvider, UnsupportedContentBlockError, iter_sse_data

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_BASE_URL = "https://api.anthropic.com"

_TEXTUAL_BLOCK_TYPES: frozenset[str] = frozenset({"text", "output_text"})
_RETRYABLE_STREAM_ERRORS = frozenset({"overloaded_error", "api_error", "rate_limit_error"})
_UNSUPPORTED_OPTIONS = ("frequency_penalty", "presence_penalty", "logit_bias", "response_format")


def _normalize_tool(tool: dict[str, Any]) -> dict[str, Any]:
    if tool.get("type") is None:
        return dict(tool)
    if tool.get("type") != "function":
        raise ValidationError("Anthropic tools only support OpenAI function tool definitions.")
    function = tool.get("function")
    if not isinstance(function, dict):
        raise ValidationError("Anthropic function tools require a 'function' dictionary definition.")
    name = function.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError("Anthropic tools require a non-empty function name.")
    parameters = function.get("parameters")
    if parameters is not None and not isinstance(parameters, dict):
        raise ValidationError("Anthropic tool parameters must be provided as dictionaries.")
    normalized: dict[str, Any] = {
        "name": name,
        "input_schema": parameters or {"type": "object", "properties": {}},
    }
    description = function.get("description") or tool.get("description")
    if description:
        normalized["description"] = str(description)
    return normalized


def _normalize_tool_choice(tool_choice: dict[str, Any] | str) -> dict[str, Any]:
    if isinstance(tool_choice, str):
        mapping = {"auto": "auto", "required": "any", "any": "any", "none": "none"}
        return {"type": mapping.get(tool_choice, tool_choice)}
    if tool_choice.get("type") != "function":
        return dict(tool_choice)
    function = tool_choice.get("function")
    name = function.get("name") if isinstance(function, dict) else None
    if not isinstance(name, str) or not name:
        raise ValidationError("Anthropic tool_choice requires a non-empty function name.")
    return {"type": "tool", "name": name}


def _text_content(raw_content: Any) -> str:
    if raw_content is None:
        return ""
    if isinstance(raw_content, str):
        return raw_content
    blocks = raw_content if isinstance(raw_content, list) else [raw_content]
    parts: list[str] = []
    for block in blocks:
        if not isinstance(block, dict):
            raise ValidationError("Anthropic content blocks must be dictionaries with 'type' and 'text'.")
        block_type = block.get("type")
        if block_type not in _TEXTUAL_BLOCK_TYPES:
            raise UnsupportedContentBlockError(f"Anthropic provider does not support content block type '{block_type}'.")
        text = block.get("text")
        if not isinstance(text, str):
            raise ValidationError("Anthropic text-like blocks must include string 'text' values.")
        parts.append(text)
    return "".join(parts)


def _tool_use_block(tool_call: dict[str, Any]) -> dict[str, Any]:
    identifier = tool_call.get("id")
    function = tool_call.get("function")
    if not isinstance(identifier, str) or not identifier or not isinstance(function, dict):
        raise ValidationError("Anthropic tool calls require an 'id' and a 'function' definition.")
    raw_arguments = function.get("arguments")
    if isinstance(raw_arguments, str):
        try:
            arguments: Any = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as exc:
            raise ValidationError("Anthropic tool call arguments must be valid JSON strings.") from exc
    else:
        arguments = raw_arguments or {}
    return {"type": "tool_use", "id": identifier, "name": function.get("name"), "input": arguments}


def map_stop_reason(raw: str | None) -> str | None:
    if raw is None:
        return None
    if raw == "tool_use":
        return "tool_calls"
    if raw in {"max_tokens", "message_limit"}:
        return "length"
    if raw in {"end_turn", "stop_sequence"}:
        return "stop"
    return raw


class AnthropicProvider(BaseProvider):
    """Anthropic messages API."""

    provider_type = "anthropic"
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, vision=True, json_mode=False)

    def _api_url(self, suffix: str) -> str:
        parsed = urlparse((self.defn.base_url or DEFAULT_BASE_URL).strip())
        segments = [segment for segment in (parsed.path or "").split("/") if segment]
        if segments and segments[-1].lower() == "messages":
            segments = segments[:-1]
        if not any(segment.lower().startswith("v") and segment[1:2].isdigit() for segment in segments):
            segments.append("v1")
        return urlunparse(parsed._replace(path="/" + "/".join(segments + [suffix])))

    def _auth_headers(self) -> dict[str, str]:
        headers = {"anthropic-version": ANTHROPIC_VERSION, "Content-Type": "application/json"}
        key = self._api_key()
        if key:
            headers["x-api-key"] = key
        return headers

    def _models_url(self) -> str | None:
        return self._api_url("models")

    def _map_messages(self, request: ChatRequest) -> tuple[list[str], list[dict[str, Any]]]:
        system_messages: list[str] = []
        mapped: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role == "system":
                system_messages.append(_text_content(message.content))
                continue
            if message.role == "tool":
                if not message.tool_call_id:
                    raise ValidationError("Anthropic tool messages require a 'tool_call_id'.")
                mapped.append(
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": message.tool_call_id,
                                "content": [{"type": "text", "text": _text_content(message.content)}],
                            }
                        ],
                    }
                )
                continue
            if message.role not in ("user", "assistant"):
                continue
            blocks: list[dict[str, Any]] = []
            text = _text_content(message.content)
            if text:
                blocks.append({"type": "text", "text": text})
            for tool_call in message.tool_calls or []:
                blocks.append(_tool_use_block(tool_call))
            if message.function_call:
                blocks.append(
                    _tool_use_block(
                        {
                            "id": message.function_call.get("id") or f"function_call_{len(mapped) + 1}",
                            "function": dict(message.function_call),
                        }
                    )
                )
            if not blocks:
                blocks.append({"type": "text", "text": ""})
            mapped.append({"role": message.role, "content": blocks})
        return system_messages, mapped

    def _build_chat_request(self, request: ChatRequest, *, stream: bool) -> tuple[str, dict[str, str], dict[str, Any]]:
        system_messages, mapped = self._map_messages(request)
        params = request.generation_params()
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": params.pop("max_tokens", 1024),
            "messages": mapped,
            "stream": stream,
        }
        if system_messages:
            payload["system"] = "\n\n".join(system_messages)
        for key in ("temperature", "top_p"):
            if key in params:
                payload[key] = params.pop(key)
        stop = params.pop("stop", None)
        if stop:
            payload["stop_sequences"] = list(stop)
        tools = params.pop("tools", None)
        if tools:
            payload["tools"] = [_normalize_tool(tool) for tool in tools]
        tool_choice = params.pop("tool_choice", None)
        if tool_choice is not None:
            payload["tool_choice"] = _normalize_tool_choice(tool_choice)
        for option_name in _UNSUPPORTED_OPTIONS:
            params.pop(option_name, None)
        self._merge_extra_options(payload, params)
        return self._api_url("messages"), self._auth_headers(), payload

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
        text_parts: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                text_parts.append(block["text"])
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    {
                        "id": block.get("id"),
                        "type": "function",
                        "function": {
                            "name": block.get("name"),
                            "arguments": json.dumps(block.get("input") or {}),
                        },
                    }
                )
        usage = data.get("usage") or {}
        stop_reason = data.get("stop_reason")
        return ChatResponse(
            provider=self.name,
            model=data.get("model") or request.model,
            content="".join(text_parts) or None,
            finish_reason=map_stop_reason(stop_reason if isinstance(stop_reason, str) else None) or "stop",
            tool_calls=tool_calls or None,
            usage=Usage(
                prompt_tokens=usage.get("input_tokens", 0) or 0,
                completion_tokens=usage.get("output_tokens", 0) or 0,
            ),
            status_code=r.status_code,
            raw=data,
        )

    async def normalize_events(self, events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        """Translate Anthropic stream events into canonical chunks."""
        stop_reason: str | None = None
        prompt_tokens = 0
        tool_positions: dict[int, int] = {}
        async for event in events:
            event_type = event.get("type")
            if event_type == "message_start":
                message = event.get("message") if isinstance(event.get("message"), dict) else {}
                usage = message.get("usage") if isinstance(message.get("usage"), dict) else {}
                prompt_tokens = usage.get("input_tokens") or 0
                yield StreamChunk(role=message.get("role") or "assistant")
            elif event_type == "content_block_start":
                block = event.get("content_block")
                index = event.get("index")
                if isinstance(block, dict) and block.get("type") == "tool_use" and isinstance(index, int):
                    position = tool_positions.setdefault(index, len(tool_positions))
                    yield StreamChunk(
                        tool_calls=[
                            {
                                "index": position,
                                "id": block.get("id"),
                                "type": "function",
                                "function": {"name": block.get("name") or "", "arguments": ""},
                            }
                        ]
                    )
            elif event_type == "content_block_delta":
                delta = event.get("delta")
                if not isinstance(delta, dict):
                    continue
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield StreamChunk(content=delta["text"])
                elif delta.get("type") == "input_json_delta" and delta.get("partial_json"):
                    position = tool_positions.get(event.get("index"), 0)
                    yield StreamChunk(
                        tool_calls=[{"index": position, "function": {"arguments": delta["partial_json"]}}]
                    )
            elif event_type == "message_delta":
                delta = event.get("delta")
                if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
                    stop_reason = delta["stop_reason"]
                usage = event.get("usage")
                if isinstance(usage, dict) and isinstance(usage.get("output_tokens"), int):
                    yield StreamChunk(
                        usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=usage["output_tokens"])
                    )
            elif event_type == "message_stop":
                yield StreamChunk(finish_reason=map_stop_reason(stop_reason) or "stop")
                stop_reason = None
            elif event_type == "error":
                error = event.get("error") if isinstance(event.get("error"), dict) else {}
                raise ProviderError(
                    str(error.get("message") or "upstream stream error"),
                    retryable=error.get("type") in _RETRYABLE_STREAM_ERRORS,
                    provider=self.name,
                )

    async def stream_complete(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        url, headers, payload = self._build_chat_request(request, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_for(request)) as client:
                async with client.stream("POST", url, headers=headers, json=payload) as response:
                    if response.is_error:
                        await response.aread()
                    response.raise_for_status()

                    async def iter_events() -> AsyncIterator[dict[str, Any]]:
                        async for _event, data_text in iter_sse_data(response.aiter_lines()):
                            try:
                                parsed = json.loads(data_text)
                            except json.JSONDecodeError:
                                logger.debug("anthropic.stream.skip_invalid_json provider=%s", self.name)
                                continue
                            if isinstance(parsed, dict):
                                yield parsed

                    async for chunk in self.normalize_events(iter_events()):
                        yield chunk
        except httpx.HTTPError as exc:
            raise self._classify(exc, request) from exc
