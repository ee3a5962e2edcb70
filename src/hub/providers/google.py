from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..errors import ProviderError, ValidationError
from ..types import ChatRequest, ChatResponse, ProviderCapabilities, StreamChunk, Usage
from . import BaseProvider, UnsupportedContentBlockError, iter_sse_data

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_DATA_URL = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
_RETRYABLE_STREAM_CODES = frozenset({429, 500, 503, 504})
# OpenAI-style params that map onto generationConfig
_GENERATION_PARAMS = {
    "top_k": "topK",
    "seed": "seed",
    "presence_penalty": "presencePenalty",
    "frequency_penalty": "frequencyPenalty",
    "candidate_count": "candidateCount",
}
_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}


def map_finish_reason(raw: str | None) -> str | None:
    if raw is None:
        return None
    return _FINISH_REASONS.get(raw, "stop")


def _image_part(url: str) -> dict[str, Any]:
    match = _DATA_URL.match(url)
    if match is None:
        # generateContent only takes inline bytes or uploaded file uris
        return {"text": f"[Image: {url}]"}
    return {"inlineData": {"mimeType": match.group(1), "data": match.group(2)}}


def _content_parts(raw_content: Any) -> list[dict[str, Any]]:
    if raw_content is None:
        return []
    if isinstance(raw_content, str):
        return [{"text": raw_content}] if raw_content else []
    parts: list[dict[str, Any]] = []
    for block in raw_content:
        if not isinstance(block, dict):
            raise ValidationError("Google content blocks must be dictionaries with a 'type'.")
        block_type = block.get("type")
        if block_type in ("text", "output_text"):
            text = block.get("text")
            if not isinstance(text, str):
                raise ValidationError("Google text blocks must include string 'text' values.")
            parts.append({"text": text})
        elif block_type == "image_url":
            image = block.get("image_url")
            url = image.get("url") if isinstance(image, dict) else image
            if not isinstance(url, str) or not url:
                raise ValidationError("Google image_url blocks require a url.")
            parts.append(_image_part(url))
        else:
            raise UnsupportedContentBlockError(f"Google provider does not support content block type '{block_type}'.")
    return parts


def _text_of(raw_content: Any) -> str:
    return "".join(part.get("text", "") for part in _content_parts(raw_content))


def _function_call_part(tool_call: dict[str, Any]) -> dict[str, Any]:
    function = tool_call.get("function")
    if not isinstance(function, dict) or not function.get("name"):
        raise ValidationError("Google tool calls require a 'function' with a name.")
    raw_arguments = function.get("arguments")
    if isinstance(raw_arguments, str):
        try:
            arguments: Any = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as exc:
            raise ValidationError("Google tool call arguments must be valid JSON strings.") from exc
    else:
        arguments = raw_arguments or {}
    return {"functionCall": {"name": function["name"], "args": arguments}}


def _function_declaration(tool: dict[str, Any]) -> dict[str, Any]:
    if tool.get("type", "function") != "function" or not isinstance(tool.get("function"), dict):
        raise ValidationError("Google tools only support OpenAI function tool definitions.")
    function = tool["function"]
    name = function.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError("Google tools require a non-empty function name.")
    declaration: dict[str, Any] = {"name": name}
    if function.get("description"):
        declaration["description"] = str(function["description"])
    if function.get("parameters") is not None:
        declaration["parameters"] = function["parameters"]
    return declaration


def _tool_config(tool_choice: dict[str, Any] | str) -> dict[str, Any]:
    if isinstance(tool_choice, str):
        mode = {"auto": "AUTO", "required": "ANY", "any": "ANY", "none": "NONE"}.get(tool_choice)
        if mode is None:
            raise ValidationError(f"unsupported tool_choice '{tool_choice}' for Google provider")
        return {"functionCallingConfig": {"mode": mode}}
    function = tool_choice.get("function")
    name = function.get("name") if isinstance(function, dict) else None
    if not isinstance(name, str) or not name:
        raise ValidationError("Google tool_choice requires a non-empty function name.")
    return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [name]}}


def _tool_calls_from_parts(parts: list[Any], *, offset: int = 0) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []
    for part in parts:
        call = part.get("functionCall") if isinstance(part, dict) else None
        if not isinstance(call, dict):
            continue
        index = offset + len(calls)
        calls.append(
            {
                "index": index,
                # Gemini does not assign call ids
                "id": f"call_{index}",
                "type": "function",
                "function": {"name": call.get("name") or "", "arguments": json.dumps(call.get("args") or {})},
            }
        )
    return calls


def _usage(metadata: Any) -> Usage:
    if not isinstance(metadata, dict):
        return Usage()
    return Usage(
        prompt_tokens=metadata.get("promptTokenCount", 0) or 0,
        completion_tokens=metadata.get("candidatesTokenCount", 0) or 0,
    )


class GoogleProvider(BaseProvider):
    """Gemini ``generateContent`` / ``streamGenerateContent`` API."""

    provider_type = "google"
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, vision=True, json_mode=True)

    def _base_url(self) -> str:
        return (self.defn.base_url or DEFAULT_BASE_URL).strip().rstrip("/")

    def _api_url(self, model: str, *, stream: bool) -> str:
        model_path = model if model.startswith("models/") else f"models/{model}"
        if stream:
            return f"{self._base_url()}/{model_path}:streamGenerateContent?alt=sse"
        return f"{self._base_url()}/{model_path}:generateContent"

    def _auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = self._api_key()
        if key:
            headers["x-goog-api-key"] = key
        return headers

    def _models_url(self) -> str | None:
        return f"{self._base_url()}/models"

    def _parse_models(self, data: Any) -> list[str]:
        entries = data.get("models") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            return []
        return [
            entry["name"].removeprefix("models/")
            for entry in entries
            if isinstance(entry, dict) and isinstance(entry.get("name"), str)
        ]

    def _map_messages(self, request: ChatRequest) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        system_parts: list[dict[str, Any]] = []
        contents: list[dict[str, Any]] = []
        call_names: dict[str, str] = {}
        for message in request.messages:
            if message.role == "system":
                system_parts.extend(_content_parts(message.content))
                continue
            if message.role in ("tool", "function"):
                name = message.name or call_names.get(message.tool_call_id or "")
                if not name:
                    raise ValidationError("Google tool messages require a 'name' or a known 'tool_call_id'.")
                response = {"name": name, "response": {"result": _text_of(message.content)}}
                contents.append({"role": "user", "parts": [{"functionResponse": response}]})
                continue
            parts = _content_parts(message.content)
            if message.role == "assistant":
                for tool_call in message.tool_calls or []:
                    parts.append(_function_call_part(tool_call))
                    if tool_call.get("id") and isinstance(tool_call.get("function"), dict):
                        call_names[tool_call["id"]] = tool_call["function"].get("name", "")
                if message.function_call:
                    parts.append(_function_call_part({"function": dict(message.function_call)}))
            contents.append({"role": "model" if message.role == "assistant" else "user", "parts": parts or [{"text": ""}]})
        return system_parts, contents

    def _build_chat_request(self, request: ChatRequest, *, stream: bool) -> tuple[str, dict[str, str], dict[str, Any]]:
        system_parts, contents = self._map_messages(request)
        params = request.generation_params()
        payload: dict[str, Any] = {"contents": contents}
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        config: dict[str, Any] = {}
        if "temperature" in params:
            config["temperature"] = params.pop("temperature")
        if "top_p" in params:
            config["topP"] = params.pop("top_p")
        if "max_tokens" in params:
            config["maxOutputTokens"] = params.pop("max_tokens")
        stop = params.pop("stop", None)
        if stop:
            config["stopSequences"] = list(stop)
        response_format = params.pop("response_format", None)
        if isinstance(response_format, dict):
            format_type = response_format.get("type")
            if format_type in ("json_object", "json_schema"):
                config["responseMimeType"] = "application/json"
                schema = response_format.get("json_schema")
                if isinstance(schema, dict) and isinstance(schema.get("schema"), dict):
                    config["responseSchema"] = schema["schema"]
            elif format_type not in (None, "text"):
                raise ValidationError(f"unsupported response_format '{format_type}' for Google provider")
        for key, target in _GENERATION_PARAMS.items():
            if key in params:
                config[target] = params.pop(key)
        if config:
            payload["generationConfig"] = config
        tools = params.pop("tools", None)
        if tools:
            payload["tools"] = [{"functionDeclarations": [_function_declaration(tool) for tool in tools]}]
        tool_choice = params.pop("tool_choice", None)
        if tool_choice is not None:
            payload["toolConfig"] = _tool_config(tool_choice)
        safety = self.defn.options.get("safety_settings")
        if safety:
            payload["safetySettings"] = safety
        if params:
            logger.debug("google.ignored_params provider=%s keys=%s", self.name, ",".join(sorted(params)))
        return self._api_url(request.model, stream=stream), self._auth_headers(), payload

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
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                return ChatResponse(
                    provider=self.name,
                    model=request.model,
                    content=None,
                    finish_reason="content_filter",
                    usage=_usage(data.get("usageMetadata")),
                    status_code=r.status_code,
                    raw=data,
                )
            raise ProviderError("no candidates in Google response", provider=self.name, status=r.status_code)
        candidate = candidates[0] if isinstance(candidates[0], dict) else {}
        content = candidate.get("content") if isinstance(candidate.get("content"), dict) else {}
        parts = content.get("parts") or []
        text = "".join(part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str))
        tool_calls = [
            {key: value for key, value in call.items() if key != "index"} for call in _tool_calls_from_parts(parts)
        ]
        finish_reason = "tool_calls" if tool_calls else map_finish_reason(candidate.get("finishReason")) or "stop"
        return ChatResponse(
            provider=self.name,
            model=data.get("modelVersion") or request.model,
            content=text or None,
            finish_reason=finish_reason,
            tool_calls=tool_calls or None,
            usage=_usage(data.get("usageMetadata")),
            status_code=r.status_code,
            raw=data,
        )

    async def normalize_events(self, events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        """Translate Gemini stream payloads into canonical chunks."""
        started = False
        tool_count = 0
        usage: Usage | None = None
        async for event in events:
            error = event.get("error")
            if isinstance(error, dict):
                code = error.get("code")
                raise ProviderError(
                    str(error.get("message") or "upstream stream error"),
                    status=code if isinstance(code, int) else None,
                    retryable=code in _RETRYABLE_STREAM_CODES,
                    provider=self.name,
                )
            if not started:
                started = True
                yield StreamChunk(role="assistant")
            if isinstance(event.get("usageMetadata"), dict):
                usage = _usage(event["usageMetadata"])
            candidates = event.get("candidates") or []
            candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
            content = candidate.get("content") if isinstance(candidate.get("content"), dict) else {}
            parts = content.get("parts") or []
            text = "".join(part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str))
            if text:
                yield StreamChunk(content=text)
            calls = _tool_calls_from_parts(parts, offset=tool_count)
            if calls:
                tool_count += len(calls)
                yield StreamChunk(tool_calls=calls)
            finish = candidate.get("finishReason")
            if isinstance(finish, str):
                reason = "tool_calls" if tool_count else map_finish_reason(finish)
                yield StreamChunk(finish_reason=reason, usage=usage)

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
                                logger.debug("google.stream.skip_invalid_json provider=%s", self.name)
                                continue
                            if isinstance(parsed, dict):
                                yield parsed

                    async for chunk in self.normalize_events(iter_events()):
                        yield chunk
        except httpx.HTTPError as exc:
            raise self._classify(exc, request) from exc
