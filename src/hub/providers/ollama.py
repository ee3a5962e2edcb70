from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..errors import ProviderError, ValidationError
from ..types import ChatRequest, ChatResponse, ProviderCapabilities, StreamChunk, Usage
from . import BaseProvider

__all__ = ["OllamaProvider"]


def _usage_from(payload: dict[str, Any]) -> Usage | None:
    prompt_eval = payload.get("prompt_eval_count")
    eval_count = payload.get("eval_count")
    if not isinstance(prompt_eval, int) and not isinstance(eval_count, int):
        return None
    return Usage(
        prompt_tokens=prompt_eval if isinstance(prompt_eval, int) else 0,
        completion_tokens=eval_count if isinstance(eval_count, int) else 0,
    )


class OllamaProvider(BaseProvider):
    """Local Ollama server; streams newline-delimited JSON."""

    provider_type = "ollama"
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, vision=False, json_mode=True)

    def _models_url(self) -> str | None:
        if not self.defn.base_url.strip():
            return None
        return f"{self.defn.base_url.rstrip('/')}/api/tags"

    def _parse_models(self, data: Any) -> list[str]:
        entries = data.get("models") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            return []
        return [entry["name"] for entry in entries if isinstance(entry, dict) and isinstance(entry.get("name"), str)]

    def _build_chat_request(self, request: ChatRequest, *, stream: bool) -> tuple[str, dict[str, Any]]:
        url = f"{self.defn.base_url.rstrip('/')}/api/chat"
        params = request.generation_params()
        options: dict[str, Any] = {}
        if "temperature" in params:
            options["temperature"] = params.pop("temperature")
        if "max_tokens" in params:
            options["num_predict"] = params.pop("max_tokens")
        if "top_p" in params:
            options["top_p"] = params.pop("top_p")
        stop = params.pop("stop", None)
        if stop:
            options["stop"] = list(stop)
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": request.messages_payload(),
            "stream": stream,
            "options": options,
        }
        tools = params.pop("tools", None)
        if tools:
            payload["tools"] = tools
        params.pop("tool_choice", None)
        response_format = params.pop("response_format", None)
        if response_format is not None:
            if response_format.get("type") != "json_object":
                raise ValidationError("OllamaProvider only supports response_format type 'json_object'.")
            payload["format"] = "json"
        options.update(
            {key: value for key, value in params.items() if key not in self._RESERVED_OPTION_KEYS and value is not None}
        )
        return url, payload

    async def complete(self, request: ChatRequest) -> ChatResponse:
        url, payload = self._build_chat_request(request, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_for(request)) as client:
                r = await client.post(url, json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPError as exc:
            raise self._classify(exc, request) from exc
        except ValueError as exc:
            raise ProviderError(f"invalid JSON from upstream: {exc}", provider=self.name) from exc
        # Ollama returns {"message":{"content":...}, "done":true, ...}
        message = data.get("message") or {}
        tool_calls = message.get("tool_calls")
        return ChatResponse(
            provider=self.name,
            model=data.get("model") or request.model,
            content=message.get("content"),
            finish_reason=data.get("done_reason") or "stop",
            tool_calls=tool_calls if isinstance(tool_calls, list) else None,
            usage=_usage_from(data) or Usage(),
            status_code=r.status_code,
            raw=data,
        )

    async def stream_complete(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        url, payload = self._build_chat_request(request, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_for(request)) as client:
                async with client.stream("POST", url, json=payload) as response:
                    if response.is_error:
                        await response.aread()
                    response.raise_for_status()
                    role_emitted = False
                    async for line in response.aiter_lines():
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(data, dict):
                            continue
                        if isinstance(data.get("error"), str):
                            raise ProviderError(data["error"], retryable=False, provider=self.name)
                        message = data.get("message") if isinstance(data.get("message"), dict) else {}
                        role = message.get("role") if not role_emitted else None
                        if role:
                            role_emitted = True
                        content = message.get("content") or None
                        tool_calls = message.get("tool_calls") if isinstance(message.get("tool_calls"), list) else None
                        finish_reason = None
                        usage = None
                        if data.get("done"):
                            finish_reason = data.get("done_reason") or "stop"
                            usage = _usage_from(data)
                        if not any(value is not None for value in (role, content, tool_calls, finish_reason, usage)):
                            continue
                        yield StreamChunk(
                            role=role,
                            content=content,
                            tool_calls=tool_calls,
                            finish_reason=finish_reason,
                            usage=usage,
                        )
        except httpx.HTTPError as exc:
            raise self._classify(exc, request) from exc
