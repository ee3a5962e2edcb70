import asyncio

import pytest

import src.hub.cache as cache_module
from src.hub.cache import CacheBackend, CacheEntry, CacheStore, InMemoryCacheBackend, fingerprint
from src.hub.errors import CacheError
from src.hub.types import ChatRequest, ChatResponse, StreamChunk


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_request(**overrides) -> ChatRequest:
    data = {
        "provider": "alpha",
        "model": "gpt",
        "messages": [{"role": "user", "content": "hi"}],
        "temperature": 0.2,
    }
    data.update(overrides)
    return ChatRequest.model_validate(data)


def make_response(content: str = "hello") -> ChatResponse:
    return ChatResponse(provider="alpha", model="gpt", content=content)


def test_fingerprint_ignores_volatile_fields() -> None:
    base = fingerprint(make_request())
    noisy = fingerprint(
        make_request(
            metadata={"trace_id": "abc", "ts": 1},
            timeout_s=3,
            caller="bob",
            cache={"mode": "refresh"},
            idempotent=False,
        )
    )

    assert base == noisy
    assert len(base) == 64


def test_fingerprint_is_order_insensitive_for_params() -> None:
    first = fingerprint(make_request(params={"seed": 1, "logprobs": True}))
    second = fingerprint(make_request(params={"logprobs": True, "seed": 1}))

    assert first == second


@pytest.mark.parametrize(
    "change",
    [
        {"model": "gpt-mini"},
        {"provider": "beta"},
        {"temperature": 0.3},
        {"messages": [{"role": "user", "content": "hello"}]},
        {"params": {"seed": 2}},
        {"stream": True},
    ],
)
def test_fingerprint_changes_with_semantic_fields(change) -> None:
    assert fingerprint(make_request()) != fingerprint(make_request(**change))


def test_fingerprint_prefix() -> None:
    key = fingerprint(make_request(), prefix="tenant")

    assert key.startswith("tenant:")
    assert key.split(":", 1)[1] == fingerprint(make_request())


def test_in_memory_backend_satisfies_protocol() -> None:
    assert isinstance(InMemoryCacheBackend(), CacheBackend)


@pytest.mark.anyio
async def test_in_memory_backend_expires_entries(monkeypatch: pytest.MonkeyPatch, anyio_backend: str) -> None:
    _ = anyio_backend
    now = 1000.0
    monkeypatch.setattr(cache_module.time, "time", lambda: now)
    store = CacheStore(InMemoryCacheBackend(), ttl_s=10.0)

    await store.publish("k", make_response())
    assert (await store.lookup("k")) is not None

    now = 1010.0
    assert (await store.lookup("k")) is None
    assert store.stats.hits == 1
    assert store.stats.misses == 1


@pytest.mark.anyio
async def test_in_memory_backend_evicts_oldest(anyio_backend: str) -> None:
    _ = anyio_backend
    backend = InMemoryCacheBackend(max_entries=2)
    store = CacheStore(backend)

    await store.publish("a", make_response("a"))
    await store.publish("b", make_response("b"))
    await store.publish("c", make_response("c"))

    assert len(backend) == 2
    assert (await store.lookup("a")) is None
    entry = await store.lookup("c")
    assert entry is not None
    assert entry.payload.content == "c"


@pytest.mark.anyio
async def test_publish_per_request_ttl_overrides_default(anyio_backend: str) -> None:
    _ = anyio_backend
    store = CacheStore(ttl_s=300.0)

    entry = await store.publish("k", (StreamChunk(content="x"), StreamChunk(finish_reason="stop")), ttl_s=5.0)

    assert entry.ttl_s == 5.0
    assert entry.is_stream


@pytest.mark.anyio
async def test_backend_failures_raise_cache_error(anyio_backend: str) -> None:
    _ = anyio_backend

    class BrokenBackend:
        async def get(self, fingerprint: str) -> CacheEntry | None:
            raise ConnectionError("redis down")

        async def set(self, fingerprint: str, entry: CacheEntry, ttl_s: float) -> None:
            raise ConnectionError("redis down")

        async def invalidate(self, fingerprint: str) -> None:
            raise ConnectionError("redis down")

    store = CacheStore(BrokenBackend())

    with pytest.raises(CacheError, match="redis down"):
        await store.lookup("k")
    with pytest.raises(CacheError):
        await store.publish("k", make_response())
    with pytest.raises(CacheError):
        await store.invalidate("k")
    assert store.stats.errors == 3


@pytest.mark.anyio
async def test_claim_coalesces_followers(anyio_backend: str) -> None:
    _ = anyio_backend
    store = CacheStore()

    leader = store.claim("k")
    follower = store.claim("k")

    assert leader.leader is True
    assert follower.leader is False
    assert store.in_flight("k")

    waiter = asyncio.create_task(follower.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    entry = await store.publish("k", make_response())
    follower.release(None)
    assert not waiter.done()
    leader.release(entry)

    assert await waiter is entry
    assert not store.in_flight("k")
    assert store.snapshot()["coalesced"] == 1


@pytest.mark.anyio
async def test_released_slot_starts_a_new_flight(anyio_backend: str) -> None:
    _ = anyio_backend
    store = CacheStore()

    first = store.claim("k")
    first.release(None)
    second = store.claim("k")

    assert first.released
    assert second.leader is True
    second.release(None)


@pytest.mark.anyio
async def test_follower_cancellation_does_not_cancel_flight(anyio_backend: str) -> None:
    _ = anyio_backend
    store = CacheStore()
    leader = store.claim("k")
    follower = store.claim("k")

    waiter = asyncio.create_task(follower.wait())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    other = store.claim("k")
    assert other.leader is False
    leader.release(None)
    assert await other.wait() is None
