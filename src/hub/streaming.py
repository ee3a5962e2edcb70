"""Canonical streaming primitives.

``StreamMultiplexer`` runs an adapter's native stream in a producer task that
feeds a bounded queue. The consumer side is an async iterator that preserves
producer order, suspends the producer when the buffer is full, and aborts the
adapter transport as soon as the consumer closes or cancels the stream, or
drops its last reference to it without closing.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import weakref
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any, Literal

from .errors import StreamInterrupted
from .types import StreamChunk

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 64

CompletionCallback = Callable[[tuple[StreamChunk, ...], bool], Any]
ReleaseHook = Callable[[], Any]

_Item = tuple[Literal["chunk", "done", "error"], Any]


class _Completion:
    """Delivered chunks and the callbacks that fire once when a stream ends.

    Kept apart from the consumer handle so the producer task can finish a
    stream whose consumer was garbage collected without keeping it alive.
    """

    __slots__ = ("delivered", "callbacks", "notified")

    def __init__(self) -> None:
        self.delivered: list[StreamChunk] = []
        self.callbacks: list[CompletionCallback] = []
        self.notified = False

    async def notify(self, *, completed: bool) -> None:
        if self.notified:
            return
        self.notified = True
        chunks = tuple(self.delivered)
        ok = completed and not any(chunk.is_error for chunk in chunks)
        for callback in self.callbacks:
            try:
                result = callback(chunks, ok)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("stream.callback_failed")


class ChunkStream:
    """Finite, non-restartable async sequence of ``StreamChunk``.

    Completion callbacks receive the delivered chunks and whether the sequence
    ran to its natural end without an error terminal chunk. They fire exactly
    once, either at the end of iteration or when the stream is closed early.
    """

    def __init__(self) -> None:
        self._completion = _Completion()
        self._delivered = self._completion.delivered
        self._closed = False
        self._exhausted = False

    @classmethod
    def from_chunks(cls, chunks: Iterable[StreamChunk]) -> "ReplayStream":
        return ReplayStream(chunks)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def delivered(self) -> tuple[StreamChunk, ...]:
        return tuple(self._delivered)

    def add_done_callback(self, callback: CompletionCallback) -> None:
        if self._completion.notified:
            raise RuntimeError("stream already finished")
        self._completion.callbacks.append(callback)

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> StreamChunk:  # pragma: no cover - abstract
        raise NotImplementedError

    async def prime(self) -> None:
        return None

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._notify(completed=False)

    def cancel(self) -> None:
        self._closed = True

    async def __aenter__(self) -> "ChunkStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _notify(self, *, completed: bool) -> None:
        await self._completion.notify(completed=completed)


class ReplayStream(ChunkStream):
    """Replays a fully materialized chunk sequence, e.g. from the cache."""

    def __init__(self, chunks: Iterable[StreamChunk]) -> None:
        super().__init__()
        self._pending = list(chunks)
        self._position = 0

    async def __anext__(self) -> StreamChunk:
        if self._closed or self._exhausted:
            raise StopAsyncIteration
        if self._position >= len(self._pending):
            self._exhausted = True
            await self._notify(completed=True)
            raise StopAsyncIteration
        chunk = self._pending[self._position]
        self._position += 1
        self._delivered.append(chunk)
        return chunk


class _Producer:
    """Producer side of a multiplexer; never references the consumer handle."""

    def __init__(
        self,
        source: Callable[[], AsyncIterator[StreamChunk]],
        queue: asyncio.Queue[_Item],
        completion: _Completion,
        on_close: ReleaseHook | None,
        name: str,
    ) -> None:
        self.source = source
        self.queue = queue
        self.completion = completion
        self.on_close = on_close
        self.name = name
        self.task: asyncio.Task[None] | None = None
        self.released = False
        self.abandoned = False

    async def run(self) -> None:
        iterator = self.source()
        try:
            async for chunk in iterator:
                await self.queue.put(("chunk", chunk))
            await self.queue.put(("done", None))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("stream.interrupted name=%s error=%s", self.name, exc)
            await self.queue.put(("error", exc))
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.exception("stream.source_close_failed name=%s", self.name)
            await self.release()
            if self.abandoned:
                logger.info("stream.abandoned name=%s chunks=%d", self.name, len(self.completion.delivered))
                await self.completion.notify(completed=False)

    async def release(self) -> None:
        if self.released:
            return
        self.released = True
        if self.on_close is None:
            return
        result = self.on_close()
        if inspect.isawaitable(result):
            await result


def _abandon(producer: _Producer) -> None:
    task = producer.task
    if task is None or task.done() or task.get_loop().is_closed():
        return
    producer.abandoned = True
    task.get_loop().call_soon_threadsafe(task.cancel)


class StreamMultiplexer(ChunkStream):
    """Bounded-buffer bridge between an adapter stream and one consumer."""

    def __init__(
        self,
        source: Callable[[], AsyncIterator[StreamChunk]],
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        on_close: ReleaseHook | None = None,
        name: str = "stream",
    ) -> None:
        super().__init__()
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self._queue: asyncio.Queue[_Item] = asyncio.Queue(maxsize=buffer_size)
        self._name = name
        self._producer = _Producer(source, self._queue, self._completion, on_close, name)
        self._pending: _Item | None = None
        self._interruption: StreamInterrupted | None = None
        # a consumer that stops iterating and drops the stream without
        # aclose() still aborts the upstream and fires the callbacks
        weakref.finalize(self, _abandon, self._producer)

    @property
    def _task(self) -> asyncio.Task[None] | None:
        return self._producer.task

    @property
    def interruption(self) -> StreamInterrupted | None:
        """The failure behind an error terminal chunk, if one was emitted."""
        return self._interruption

    @property
    def buffer_size(self) -> int:
        return self._queue.maxsize

    @property
    def buffered(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._producer.task is None and not self._closed:
            self._producer.task = asyncio.create_task(self._producer.run(), name=f"{self._name}.producer")

    async def _release(self) -> None:
        await self._producer.release()

    async def prime(self) -> None:
        """Wait for the first item; errors raised before any chunk propagate."""
        self.start()
        if self._pending is not None or self._task is None:
            return
        item = await self._queue.get()
        if item[0] == "error":
            self._exhausted = True
            await self._finish_task()
            self._closed = True
            await self._notify(completed=False)
            raise item[1]
        self._pending = item

    async def __anext__(self) -> StreamChunk:
        if self._closed or self._exhausted:
            raise StopAsyncIteration
        self.start()
        if self._pending is not None:
            kind, payload = self._pending
            self._pending = None
        else:
            kind, payload = await self._queue.get()
        if self._closed:
            raise StopAsyncIteration
        if kind == "chunk":
            self._delivered.append(payload)
            return payload
        self._exhausted = True
        await self._finish_task()
        if kind == "done":
            await self._notify(completed=True)
            raise StopAsyncIteration
        interrupted = StreamInterrupted(str(payload) or type(payload).__name__, stream=self._name)
        interrupted.__cause__ = payload
        self._interruption = interrupted
        terminal = StreamChunk(finish_reason="error", error=interrupted.message)
        self._delivered.append(terminal)
        await self._notify(completed=False)
        return terminal

    async def _finish_task(self) -> None:
        task = self._task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def cancel(self) -> None:
        """Request cancellation without waiting for the producer to unwind."""
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._queue.empty():
            # wakes a consumer blocked on get() in another task
            self._queue.put_nowait(("done", None))

    async def aclose(self) -> None:
        self.cancel()
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        else:
            await self._release()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._pending = None
        await self._notify(completed=False)


async def collect(stream: ChunkStream) -> list[StreamChunk]:
    chunks: list[StreamChunk] = []
    async with stream:
        async for chunk in stream:
            chunks.append(chunk)
    return chunks
