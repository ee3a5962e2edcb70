from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from typing import Any

from ..config import ProviderDef
from ..types import ChatRequest, ChatResponse, HealthReport, ProviderCapabilities, StreamChunk, Usage
from . import BaseProvider

__all__ = ["MockProvider"]


def _last_user_text(request: ChatRequest) -> str:
    for message in reversed(request.messages):
        if message.role == "user" and isinstance(message.content, str):
            return message.content
    return "ping"


class MockProvider(BaseProvider):
    """Offline, scripted provider.

    Without a script it echoes the last user message (``mock:<text>``) and
    streams it word by word. Tests script it with queued ``errors`` that are
    raised before any output, a ``stream_error`` raised after
    ``stream_error_after`` chunks, and per-call or per-chunk delays.
    """

    provider_type = "mock"
    capabilities = ProviderCapabilities(streaming=True, function_calling=True, vision=False, json_mode=True)

    def __init__(
        self,
        defn: ProviderDef | None = None,
        *,
        reply: str | None = None,
        chunks: Sequence[StreamChunk] | None = None,
        errors: Sequence[BaseException] = (),
        stream_error: BaseException | None = None,
        stream_error_after: int = 0,
        delay_s: float | None = None,
        chunk_delay_s: float = 0.0,
        healthy: bool = True,
    ):
        super().__init__(defn or ProviderDef(name="mock", type="mock", models=("mock-1",)))
        options: dict[str, Any] = dict(self.defn.options)
        self.reply = reply if reply is not None else options.get("reply")
        self.delay_s = float(delay_s if delay_s is not None else options.get("delay_s", 0.0))
        self.chunk_delay_s = chunk_delay_s
        self.healthy = healthy
        self._chunks = tuple(chunks) if chunks is not None else None
        self._errors = list(errors)
        self._stream_error = stream_error
        self._stream_error_after = stream_error_after
        self.calls: list[ChatRequest] = []
        self.produced = 0
        self.open_streams = 0
        self.closed_streams = 0
        self.probes = 0
        self.closed = False

    def queue_error(self, error: BaseException) -> None:
        self._errors.append(error)

    def _reply_for(self, request: ChatRequest) -> str:
        return self.reply if self.reply is not None else f"mock:{_last_user_text(request)}"

    def _raise_scripted(self) -> None:
        if self._errors:
            raise self._errors.pop(0)

    async def complete(self, request: ChatRequest) -> ChatResponse:
        self.calls.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self._raise_scripted()
        content = self._reply_for(request)
        return ChatResponse(
            provider=self.name,
            model=request.model,
            content=content,
            finish_reason="stop",
            usage=Usage(
                prompt_tokens=len(_last_user_text(request).split()),
                completion_tokens=len(content.split()),
            ),
        )

    def _script(self, request: ChatRequest) -> list[StreamChunk]:
        if self._chunks is not None:
            return list(self._chunks)
        words = self._reply_for(request).split(" ")
        script = [StreamChunk(role="assistant")]
        script.extend(
            StreamChunk(content=word if index == 0 else f" {word}") for index, word in enumerate(words)
        )
        script.append(StreamChunk(finish_reason="stop", usage=Usage(completion_tokens=len(words))))
        return script

    async def stream_complete(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        self.calls.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self._raise_scripted()
        self.open_streams += 1
        try:
            for index, chunk in enumerate(self._script(request)):
                if self._stream_error is not None and index == self._stream_error_after:
                    raise self._stream_error
                if self.chunk_delay_s:
                    await asyncio.sleep(self.chunk_delay_s)
                self.produced += 1
                yield chunk
        finally:
            self.open_streams -= 1
            self.closed_streams += 1

    async def list_models(self) -> list[str]:
        return list(self.models)

    async def health_check(self) -> HealthReport:
        self.probes += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if not self.healthy:
            return HealthReport(healthy=False, latency_ms=self.delay_s * 1000.0, detail="scripted failure")
        return HealthReport(healthy=True, latency_ms=self.delay_s * 1000.0)

    async def aclose(self) -> None:
        self.closed = True
