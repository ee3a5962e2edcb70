from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


FinishReason = Literal["stop", "length", "tool_calls", "function_call", "content_filter", "error", "cancelled"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    role: Literal["system", "user", "assistant", "tool", "function"]
    content: Union[str, List[Dict[str, Any]], None]
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    function_call: Optional[Dict[str, Any]] = None


class CachePolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: Literal["default", "bypass", "refresh"] = "default"
    ttl_s: Optional[float] = Field(default=None, gt=0)

    @property
    def reads(self) -> bool:
        return self.mode == "default"

    @property
    def writes(self) -> bool:
        return self.mode != "bypass"


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    provider: str
    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[List[str]] = None
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    response_format: Optional[Dict[str, Any]] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    stream: bool = False
    timeout_s: Optional[float] = Field(default=None, gt=0)
    cache: CachePolicy = Field(default_factory=CachePolicy)
    idempotent: bool = True
    caller: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def generation_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        for key in ("temperature", "max_tokens", "top_p", "stop", "tools", "tool_choice", "response_format"):
            value = getattr(self, key)
            if value is not None:
                params[key] = value
        for key in sorted(self.params):
            value = self.params[key]
            if value is not None and key not in params:
                params[key] = value
        return params

    def messages_payload(self) -> list[dict[str, Any]]:
        return [message.model_dump(mode="json", exclude_none=True) for message in self.messages]


class Usage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ChatResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    content: Optional[str] = None
    finish_reason: Optional[str] = "stop"
    tool_calls: Optional[List[Dict[str, Any]]] = None
    function_call: Optional[Dict[str, Any]] = None
    usage: Usage = Field(default_factory=Usage)
    status_code: int = 200
    raw: Optional[Dict[str, Any]] = None


class StreamChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: Optional[str] = None
    role: Optional[str] = None
    finish_reason: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    function_call: Optional[Dict[str, Any]] = None
    usage: Optional[Usage] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None

    @property
    def is_error(self) -> bool:
        return self.finish_reason == "error"


class HealthReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    healthy: bool
    latency_ms: float = 0.0
    detail: Optional[str] = None


class ProviderCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    streaming: bool = True
    function_calling: bool = False
    vision: bool = False
    json_mode: bool = False


def response_from_chunks(
    provider: str,
    model: str,
    chunks: Iterable[StreamChunk],
    *,
    default_finish_reason: str = "stop",
) -> ChatResponse:
    segments: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    function_call: dict[str, Any] | None = None
    finish: str | None = None
    prompt_tokens = completion_tokens = 0

    for chunk in chunks:
        if chunk.content:
            segments.append(chunk.content)
        if chunk.tool_calls:
            _merge_tool_call_deltas(tool_calls, chunk.tool_calls)
        if chunk.function_call:
            function_call = _merge_function_call(function_call, chunk.function_call)
        if chunk.usage is not None:
            prompt_tokens = max(prompt_tokens, chunk.usage.prompt_tokens)
            completion_tokens = max(completion_tokens, chunk.usage.completion_tokens)
        if chunk.finish_reason is not None:
            finish = chunk.finish_reason

    return ChatResponse(
        provider=provider,
        model=model,
        content="".join(segments) if segments else None,
        finish_reason=finish or default_finish_reason,
        tool_calls=tool_calls or None,
        function_call=function_call,
        usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _merge_tool_call_deltas(accumulated: list[dict[str, Any]], deltas: list[dict[str, Any]]) -> None:
    for position, delta in enumerate(deltas):
        index = delta.get("index", position)
        while len(accumulated) <= index:
            accumulated.append({"type": "function", "function": {"name": "", "arguments": ""}})
        target = accumulated[index]
        if delta.get("id"):
            target["id"] = delta["id"]
        function = delta.get("function")
        if isinstance(function, dict):
            if function.get("name"):
                target["function"]["name"] += function["name"]
            if function.get("arguments"):
                target["function"]["arguments"] += function["arguments"]


def _merge_function_call(current: dict[str, Any] | None, delta: dict[str, Any]) -> dict[str, Any]:
    merged = dict(current or {"name": "", "arguments": ""})
    if isinstance(delta.get("name"), str):
        merged["name"] = merged.get("name", "") + delta["name"]
    if isinstance(delta.get("arguments"), str):
        merged["arguments"] = merged.get("arguments", "") + delta["arguments"]
    return merged


def to_openai_completion(response: ChatResponse, *, completion_id: str | None = None) -> dict[str, Any]:
    message = {
        key: value
        for key, value in {
            "role": "assistant",
            "content": response.content,
            "tool_calls": response.tool_calls,
            "function_call": response.function_call,
        }.items()
        if value is not None
    }
    return {
        "id": completion_id or f"chatcmpl-{uuid.uuid4().hex[:12]}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": response.model,
        "choices": [
            {"index": 0, "message": message, "finish_reason": response.finish_reason or "stop"}
        ],
        "usage": {
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "total_tokens": response.usage.total_tokens,
        },
    }


def to_openai_chunk(chunk: StreamChunk, *, model: str, completion_id: str) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if chunk.role is not None:
        delta["role"] = chunk.role
    if chunk.content is not None:
        delta["content"] = chunk.content
    if chunk.tool_calls is not None:
        delta["tool_calls"] = chunk.tool_calls
    if chunk.function_call is not None:
        delta["function_call"] = chunk.function_call
    payload: dict[str, Any] = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": chunk.finish_reason}],
    }
    if chunk.usage is not None:
        payload["usage"] = {
            "prompt_tokens": chunk.usage.prompt_tokens,
            "completion_tokens": chunk.usage.completion_tokens,
            "total_tokens": chunk.usage.total_tokens,
        }
    if chunk.error is not None:
        payload["error"] = {"message": chunk.error, "type": "stream_interrupted"}
    return payload
