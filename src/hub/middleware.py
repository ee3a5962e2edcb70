"""Ordered request pipeline.

Each middleware sees the call on the way in (list order) and on the way out
(reverse order). The chain is fixed when the pipeline is built; the innermost
handler talks to the provider adapter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Union

from .cache import CacheEntry, CacheStore, FlightSlot
from .errors import CacheError, HubError, RequestTimeoutError
from .metrics import HubMetrics, RequestRecord
from .providers import BaseProvider
from .rate_limiter import RateLimiter
from .resilience import ResilienceController
from .streaming import DEFAULT_BUFFER_SIZE, ChunkStream, StreamMultiplexer
from .types import ChatRequest, ChatResponse, StreamChunk, response_from_chunks

logger = logging.getLogger(__name__)

Result = Union[ChatResponse, ChunkStream]
Handler = Callable[["MiddlewareContext"], Awaitable[Result]]

ANONYMOUS_CALLER = "anonymous"


@dataclass
class MiddlewareContext:
    request: ChatRequest
    adapter: BaseProvider
    fingerprint: str
    request_id: str
    attempt: int = 0
    started_at: float = field(default_factory=time.perf_counter)
    response: ChatResponse | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def provider(self) -> str:
        return self.request.provider

    @property
    def model(self) -> str:
        return self.request.model

    @property
    def elapsed_s(self) -> float:
        return time.perf_counter() - self.started_at


def _log_request_event(
    level: int,
    *,
    event: str,
    ctx: MiddlewareContext,
    detail: str | None = None,
) -> None:
    message = (
        f"{event} req_id={ctx.request_id} provider={ctx.provider} model={ctx.model} "
        f"attempts={ctx.metadata.get('attempts', ctx.attempt)} elapsed_ms={ctx.elapsed_s * 1000.0:.1f} "
        f"cache_hit={bool(ctx.metadata.get('cache_hit'))}"
    )
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


class Middleware:
    name = "middleware"

    async def handle(self, ctx: MiddlewareContext, call_next: Handler) -> Result:
        return await call_next(ctx)


class LoggingMiddleware(Middleware):
    name = "logging"

    async def handle(self, ctx: MiddlewareContext, call_next: Handler) -> Result:
        logger.debug(
            "request.start req_id=%s provider=%s model=%s stream=%s",
            ctx.request_id,
            ctx.provider,
            ctx.model,
            ctx.request.stream,
        )
        try:
            result = await call_next(ctx)
        except HubError as exc:
            _log_request_event(logging.WARNING, event="request.error", ctx=ctx, detail=exc.code)
            raise
        except asyncio.CancelledError:
            _log_request_event(logging.INFO, event="request.cancelled", ctx=ctx)
            raise
        if isinstance(result, ChunkStream):
            _log_request_event(logging.INFO, event="stream.open", ctx=ctx)

            def _on_stream_done(chunks: tuple[StreamChunk, ...], ok: bool) -> None:
                if ok:
                    event = "stream.complete"
                elif chunks and chunks[-1].is_error:
                    event = "stream.error"
                else:
                    event = "stream.cancelled"
                level = logging.WARNING if event == "stream.error" else logging.INFO
                _log_request_event(level, event=event, ctx=ctx, detail=f"chunks={len(chunks)}")

            result.add_done_callback(_on_stream_done)
        else:
            level = logging.WARNING if ctx.metadata.get("attempts", 1) > 1 else logging.INFO
            _log_request_event(level, event="request.ok", ctx=ctx)
        return result


class RateLimitMiddleware(Middleware):
    name = "rate_limit"

    def __init__(self, limiter: RateLimiter | None, per_provider: Mapping[str, RateLimiter] | None = None):
        self.limiter = limiter
        self.per_provider = dict(per_provider or {})

    async def handle(self, ctx: MiddlewareContext, call_next: Handler) -> Result:
        caller = ctx.request.caller or ANONYMOUS_CALLER
        limiter = self.per_provider.get(ctx.provider)
        if limiter is not None:
            await limiter.acquire(f"{ctx.provider}:{caller}")
        elif self.limiter is not None:
            await self.limiter.acquire(caller)
        return await call_next(ctx)


class CacheMiddleware(Middleware):
    """Serves fingerprints from the cache and coalesces concurrent misses."""

    name = "cache"

    def __init__(self, store: CacheStore, metrics: HubMetrics | None = None):
        self.store = store
        self.metrics = metrics

    def _count(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_cache(outcome)

    def _cache_error(self, ctx: MiddlewareContext, exc: CacheError) -> None:
        ctx.metadata["cache_error"] = True
        self._count("error")
        logger.warning("cache.error req_id=%s fingerprint=%s detail=%s", ctx.request_id, ctx.fingerprint, exc)

    async def handle(self, ctx: MiddlewareContext, call_next: Handler) -> Result:
        policy = ctx.request.cache
        if policy.mode == "bypass":
            ctx.metadata["cache"] = "bypass"
            return await call_next(ctx)
        if not policy.reads:
            ctx.metadata["cache"] = "refresh"
            return await self._call_and_publish(ctx, call_next, slot=None)
        lookup_failed = False
        try:
            entry = await self.store.lookup(ctx.fingerprint)
        except CacheError as exc:
            self._cache_error(ctx, exc)
            lookup_failed = True
            entry = None
        if entry is not None:
            self._count("hit")
            return self._serve(ctx, entry)
        self._count("miss")
        slot = self.store.claim(ctx.fingerprint)
        if not slot.leader:
            self._count("coalesced")
            entry = await self._follow(ctx, slot)
            if entry is not None:
                ctx.metadata["coalesced"] = True
                return self._serve(ctx, entry)
            return await self._call_and_publish(ctx, call_next, slot=None)
        if lookup_failed:
            return await self._call_and_publish(ctx, call_next, slot=slot)
        # a previous leader may have published between our lookup and claim
        try:
            entry = await self.store.lookup(ctx.fingerprint, record=False)
        except CacheError as exc:
            self._cache_error(ctx, exc)
            entry = None
        except BaseException:
            slot.release(None)
            raise
        if entry is not None:
            slot.release(entry)
            self.store.stats.coalesced += 1
            self._count("coalesced")
            ctx.metadata["coalesced"] = True
            return self._serve(ctx, entry)
        return await self._call_and_publish(ctx, call_next, slot=slot)

    async def _follow(self, ctx: MiddlewareContext, slot: FlightSlot) -> CacheEntry | None:
        timeout = ctx.adapter.timeout_for(ctx.request)
        try:
            return await asyncio.wait_for(slot.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "cache.follower_timeout req_id=%s fingerprint=%s timeout_s=%s",
                ctx.request_id,
                ctx.fingerprint,
                timeout,
            )
            return None

    def _serve(self, ctx: MiddlewareContext, entry: CacheEntry) -> Result:
        ctx.metadata["cache_hit"] = True
        if entry.is_stream:
            chunks = entry.payload
            if ctx.request.stream:
                return ChunkStream.from_chunks(chunks)
            ctx.response = response_from_chunks(ctx.provider, ctx.model, chunks)
            return ctx.response
        response = entry.payload
        if ctx.request.stream:
            return ChunkStream.from_chunks(
                [
                    StreamChunk(
                        role="assistant",
                        content=response.content,
                        tool_calls=response.tool_calls,
                        function_call=response.function_call,
                        finish_reason=response.finish_reason or "stop",
                        usage=response.usage,
                    )
                ]
            )
        ctx.response = response
        return response

    async def _publish(self, ctx: MiddlewareContext, payload: Any) -> CacheEntry | None:
        if not ctx.request.cache.writes:
            return None
        try:
            return await self.store.publish(ctx.fingerprint, payload, ttl_s=ctx.request.cache.ttl_s)
        except CacheError as exc:
            self._cache_error(ctx, exc)
            return None

    async def _call_and_publish(
        self, ctx: MiddlewareContext, call_next: Handler, *, slot: FlightSlot | None
    ) -> Result:
        try:
            result = await call_next(ctx)
        except BaseException:
            if slot is not None:
                slot.release(None)
            raise
        if isinstance(result, ChatResponse):
            entry = None
            try:
                if result.finish_reason != "error":
                    entry = await self._publish(ctx, result)
            finally:
                if slot is not None:
                    slot.release(entry)
            return result

        async def _on_stream_done(chunks: tuple[StreamChunk, ...], ok: bool) -> None:
            entry = None
            try:
                if ok and chunks:
                    entry = await self._publish(ctx, tuple(chunks))
            finally:
                if slot is not None:
                    slot.release(entry)

        result.add_done_callback(_on_stream_done)
        return result


class ResilienceMiddleware(Middleware):
    name = "resilience"

    def __init__(self, controller: ResilienceController):
        self.controller = controller

    async def handle(self, ctx: MiddlewareContext, call_next: Handler) -> Result:
        async def attempt(number: int) -> Result:
            ctx.attempt = number
            ctx.metadata["attempts"] = number
            return await call_next(ctx)

        try:
            result = await self.controller.call(ctx.provider, ctx.model, attempt)
        except HubError as exc:
            exc.add_context(component=self.name, elapsed_s=round(ctx.elapsed_s, 3))
            raise
        if isinstance(result, ChunkStream):
            provider, model = ctx.provider, ctx.model

            def _on_stream_done(chunks: tuple[StreamChunk, ...], ok: bool) -> None:
                if not ok and chunks and chunks[-1].is_error:
                    self.controller.record_failure(provider, model)

            result.add_done_callback(_on_stream_done)
        return result


class MetricsMiddleware(Middleware):
    name = "metrics"

    def __init__(self, metrics: HubMetrics):
        self.metrics = metrics

    def _record(self, ctx: MiddlewareContext, started: float, *, ok: bool, outcome: str) -> None:
        self.metrics.record(
            RequestRecord(
                provider=ctx.provider,
                model=ctx.model,
                ok=ok,
                latency_s=time.perf_counter() - started,
                outcome=outcome,
                stream=ctx.request.stream,
            )
        )

    async def handle(self, ctx: MiddlewareContext, call_next: Handler) -> Result:
        started = time.perf_counter()
        try:
            result = await call_next(ctx)
        except HubError as exc:
            self._record(ctx, started, ok=False, outcome=exc.code)
            raise
        except asyncio.CancelledError:
            self._record(ctx, started, ok=False, outcome="cancelled")
            raise
        except Exception:
            self._record(ctx, started, ok=False, outcome="internal_error")
            raise
        self._record(ctx, started, ok=True, outcome="ok")
        return result


class AdapterHandler:
    """Innermost handler: one upstream call per invocation."""

    def __init__(self, *, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size

    async def __call__(self, ctx: MiddlewareContext) -> Result:
        adapter = ctx.adapter
        request = ctx.request
        timeout = adapter.timeout_for(request)
        if not request.stream:
            try:
                response = await asyncio.wait_for(adapter.complete(request), timeout)
            except asyncio.TimeoutError as exc:
                raise RequestTimeoutError(
                    f"{ctx.provider} did not answer within {timeout}s",
                    provider=ctx.provider,
                    retryable=request.idempotent,
                ) from exc
            ctx.response = response
            return response

        def _released() -> None:
            ctx.metadata["stream_released"] = True
            logger.debug("stream.released req_id=%s attempt=%s", ctx.request_id, ctx.attempt)

        stream = StreamMultiplexer(
            lambda: adapter.stream_complete(request),
            buffer_size=self.buffer_size,
            on_close=_released,
            name=f"{ctx.provider}:{ctx.model}",
        )
        try:
            await asyncio.wait_for(stream.prime(), timeout)
        except asyncio.TimeoutError as exc:
            await stream.aclose()
            raise RequestTimeoutError(
                f"{ctx.provider} sent no stream data within {timeout}s",
                provider=ctx.provider,
                retryable=request.idempotent,
            ) from exc
        except BaseException:
            await stream.aclose()
            raise
        return stream


class MiddlewarePipeline:
    """Immutable chain of middleware around an innermost handler."""

    def __init__(self, middlewares: Iterable[Middleware], handler: Handler):
        self._middlewares: tuple[Middleware, ...] = tuple(middlewares)
        self._handler = handler

    @property
    def middlewares(self) -> tuple[Middleware, ...]:
        return self._middlewares

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(middleware.name for middleware in self._middlewares)

    def __len__(self) -> int:
        return len(self._middlewares)

    async def run(self, ctx: MiddlewareContext) -> Result:
        return await self._dispatch(0, ctx)

    async def _dispatch(self, index: int, ctx: MiddlewareContext) -> Result:
        if index >= len(self._middlewares):
            return await self._handler(ctx)
        middleware = self._middlewares[index]

        async def call_next(next_ctx: MiddlewareContext) -> Result:
            return await self._dispatch(index + 1, next_ctx)

        return await middleware.handle(ctx, call_next)


def build_default_pipeline(
    *,
    controller: ResilienceController,
    metrics: HubMetrics,
    cache: CacheStore | None = None,
    limiter: RateLimiter | None = None,
    provider_limiters: Mapping[str, RateLimiter] | None = None,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    extra: Iterable[Middleware] = (),
    handler: Handler | None = None,
) -> MiddlewarePipeline:
    """Logging, rate limit, cache, resilience, metrics, then any ``extra``."""
    middlewares: list[Middleware] = [LoggingMiddleware()]
    if limiter is not None or provider_limiters:
        middlewares.append(RateLimitMiddleware(limiter, provider_limiters))
    if cache is not None:
        middlewares.append(CacheMiddleware(cache, metrics))
    middlewares.append(ResilienceMiddleware(controller))
    middlewares.append(MetricsMiddleware(metrics))
    middlewares.extend(extra)
    return MiddlewarePipeline(middlewares, handler or AdapterHandler(buffer_size=buffer_size))
