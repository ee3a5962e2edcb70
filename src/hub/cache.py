"""Response cache keyed by request fingerprints.

The store wraps a pluggable backend and adds single-flight coordination so
that at most one upstream call per fingerprint is in flight at a time.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Protocol, Union, runtime_checkable

from .errors import CacheError
from .types import ChatRequest, ChatResponse, StreamChunk


_VOLATILE_FIELDS: frozenset[str] = frozenset({"timeout_s", "cache", "caller", "metadata", "idempotent"})

CachePayload = Union[ChatResponse, tuple[StreamChunk, ...]]


def canonical_request(request: ChatRequest) -> dict[str, Any]:
    data = request.model_dump(mode="json", exclude=set(_VOLATILE_FIELDS), exclude_none=True)
    data["messages"] = request.messages_payload()
    data["params"] = {key: value for key, value in sorted(request.params.items()) if value is not None}
    return data


def fingerprint(request: ChatRequest, *, prefix: str | None = None) -> str:
    """Deterministic digest of the request with volatile fields removed."""
    canonical = json.dumps(
        canonical_request(request),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}" if prefix else digest


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    payload: CachePayload
    created_at: float
    ttl_s: float

    @property
    def is_stream(self) -> bool:
        return isinstance(self.payload, tuple)

    def expired(self, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.created_at + self.ttl_s


@runtime_checkable
class CacheBackend(Protocol):
    async def get(self, fingerprint: str) -> CacheEntry | None: ...

    async def set(self, fingerprint: str, entry: CacheEntry, ttl_s: float) -> None: ...

    async def invalidate(self, fingerprint: str) -> None: ...


class InMemoryCacheBackend:
    def __init__(self, max_entries: int = 1024) -> None:
        self.max_entries = max(1, max_entries)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    async def get(self, fingerprint: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if entry.expired():
                self._entries.pop(fingerprint, None)
                return None
            return entry

    async def set(self, fingerprint: str, entry: CacheEntry, ttl_s: float) -> None:
        if entry.ttl_s != ttl_s:
            entry = replace(entry, ttl_s=ttl_s)
        with self._lock:
            self._entries.pop(fingerprint, None)
            self._entries[fingerprint] = entry
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def invalidate(self, fingerprint: str) -> None:
        with self._lock:
            self._entries.pop(fingerprint, None)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    errors: int = 0
    coalesced: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "coalesced": self.coalesced,
            "hit_ratio": self.hit_ratio,
        }


class FlightSlot:
    """Handle returned by ``CacheStore.claim``.

    ``leader`` is True for the caller that must perform the upstream call and
    later ``release`` the slot, with the published entry or ``None`` when the
    call failed, was cancelled or produced an uncacheable result. Followers
    ``wait`` for that outcome; ``None`` means they proceed on their own.
    """

    __slots__ = ("fingerprint", "leader", "_future", "_store")

    def __init__(self, store: "CacheStore", fingerprint: str, future: asyncio.Future, leader: bool) -> None:
        self._store = store
        self._future = future
        self.fingerprint = fingerprint
        self.leader = leader

    @property
    def released(self) -> bool:
        return self._future.done()

    async def wait(self) -> CacheEntry | None:
        return await asyncio.shield(self._future)

    def release(self, entry: CacheEntry | None = None) -> None:
        if not self.leader or self._future.done():
            return
        self._store._flights.pop(self.fingerprint, None)
        self._future.set_result(entry)


class CacheStore:
    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        ttl_s: float = 300.0,
        prefix: str | None = None,
    ) -> None:
        self.backend: CacheBackend = backend if backend is not None else InMemoryCacheBackend()
        self.ttl_s = ttl_s
        self.prefix = prefix
        self.stats = CacheStats()
        self._flights: dict[str, asyncio.Future] = {}

    def key_for(self, request: ChatRequest) -> str:
        return fingerprint(request, prefix=self.prefix)

    async def lookup(self, key: str, *, record: bool = True) -> CacheEntry | None:
        """Fetch a live entry; ``record=False`` leaves the hit/miss counters alone."""
        try:
            entry = await self.backend.get(key)
        except Exception as exc:
            self.stats.errors += 1
            raise CacheError(f"cache lookup failed: {exc}", fingerprint=key) from exc
        if entry is None or entry.expired():
            if record:
                self.stats.misses += 1
            return None
        if record:
            self.stats.hits += 1
        return entry

    async def publish(self, key: str, payload: CachePayload, *, ttl_s: float | None = None) -> CacheEntry:
        ttl = ttl_s if ttl_s is not None else self.ttl_s
        entry = CacheEntry(fingerprint=key, payload=payload, created_at=time.time(), ttl_s=ttl)
        try:
            await self.backend.set(key, entry, ttl)
        except Exception as exc:
            self.stats.errors += 1
            raise CacheError(f"cache publish failed: {exc}", fingerprint=key) from exc
        return entry

    async def invalidate(self, key: str) -> None:
        try:
            await self.backend.invalidate(key)
        except Exception as exc:
            self.stats.errors += 1
            raise CacheError(f"cache invalidate failed: {exc}", fingerprint=key) from exc

    def in_flight(self, key: str) -> bool:
        return key in self._flights

    def claim(self, key: str) -> FlightSlot:
        """Join the in-flight call for ``key`` or become its leader."""
        future = self._flights.get(key)
        if future is not None:
            self.stats.coalesced += 1
            return FlightSlot(self, key, future, leader=False)
        future = asyncio.get_running_loop().create_future()
        self._flights[key] = future
        return FlightSlot(self, key, future, leader=True)

    def snapshot(self) -> dict[str, float]:
        data = self.stats.as_dict()
        data["in_flight"] = len(self._flights)
        return data
