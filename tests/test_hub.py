import asyncio
import gc
import logging
from pathlib import Path
from typing import Any

import pytest

from src.hub.cache import InMemoryCacheBackend
from src.hub.config import HubSettings, ProviderDef
from src.hub.errors import (
    CircuitOpenError,
    ProviderError,
    RateLimitedError,
    RequestTimeoutError,
    RetryExhaustedError,
    ValidationError,
)
from src.hub.hub import Hub
from src.hub.providers import MockProvider, ProviderRegistry
from src.hub.streaming import ChunkStream, collect
from src.hub.types import ChatResponse, StreamChunk


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_settings(**overrides: Any) -> HubSettings:
    data: dict[str, Any] = {
        "retry": {"max_attempts": 3, "base_delay_s": 0.0, "max_delay_s": 0.0, "jitter_s": 0.0},
        "health": {"enabled": False},
    }
    for key, value in overrides.items():
        data.setdefault(key, {}).update(value)
    return HubSettings.model_validate(data)


def make_adapter(name: str = "alpha", **kwargs: Any) -> MockProvider:
    return MockProvider(ProviderDef(name=name, type="mock", models=("m1", "m2")), **kwargs)


def make_hub(*adapters: MockProvider, **overrides: Any) -> Hub:
    registry = ProviderRegistry({adapter.name: adapter for adapter in adapters})
    return Hub(registry, make_settings(**overrides))


def request(text: str = "hi", **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "provider": "alpha",
        "model": "m1",
        "messages": [{"role": "user", "content": text}],
    }
    data.update(overrides)
    return data


@pytest.mark.anyio
async def test_submit_returns_response_and_reuses_cache(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter()
    hub = make_hub(adapter)

    first = await hub.submit(request())
    second = await hub.submit(request(metadata={"trace_id": "t-2"}, timeout_s=30))

    assert isinstance(first, ChatResponse)
    assert first.content == "mock:hi"
    assert second.content == first.content
    assert len(adapter.calls) == 1
    snapshot = hub.snapshot()
    assert snapshot["cache"]["hits"] == 1
    assert snapshot["cache_lookups"]["hit_ratio"] == pytest.approx(0.5)


@pytest.mark.anyio
async def test_cache_bypass_and_refresh(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter()
    hub = make_hub(adapter)

    await hub.submit(request())
    await hub.submit(request(cache={"mode": "bypass"}))
    assert len(adapter.calls) == 2

    adapter.reply = "fresh"
    refreshed = await hub.submit(request(cache={"mode": "refresh"}))
    cached = await hub.submit(request())

    assert refreshed.content == "fresh"
    assert cached.content == "fresh"
    assert len(adapter.calls) == 3


@pytest.mark.anyio
async def test_concurrent_identical_requests_make_one_upstream_call(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(delay_s=0.05)
    hub = make_hub(adapter)

    results = await asyncio.gather(*(hub.submit(request()) for _ in range(10)))

    assert len(adapter.calls) == 1
    assert {result.content for result in results} == {"mock:hi"}
    assert hub.snapshot()["cache"]["coalesced"] == 9


@pytest.mark.anyio
async def test_stream_results_are_cached_and_replayed(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(reply="one two three")
    hub = make_hub(adapter)

    stream = await hub.submit(request(stream=True))
    assert isinstance(stream, ChunkStream)
    chunks = await collect(stream)
    replay = await collect(await hub.submit(request(stream=True)))

    assert "".join(chunk.content or "" for chunk in chunks) == "one two three"
    assert replay == chunks
    assert chunks[-1].finish_reason == "stop"
    assert len(adapter.calls) == 1


@pytest.mark.anyio
async def test_stream_follower_waits_for_leader_to_finish(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(reply="a b c")
    hub = make_hub(adapter)

    leader_stream = await hub.submit(request(stream=True))
    follower = asyncio.create_task(hub.submit(request(stream=True)))
    await asyncio.sleep(0.01)
    assert not follower.done()

    leader_chunks = await collect(leader_stream)
    follower_chunks = await collect(await asyncio.wait_for(follower, 1.0))

    assert follower_chunks == leader_chunks
    assert len(adapter.calls) == 1


@pytest.mark.anyio
async def test_retryable_errors_are_retried(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(errors=[ProviderError("busy", status=503, retryable=True)])
    hub = make_hub(adapter)

    response = await hub.submit(request())

    assert response.content == "mock:hi"
    assert len(adapter.calls) == 2
    outcomes = hub.snapshot()["providers"]["alpha"]["outcomes"]
    assert outcomes == {"provider_server_error": 1, "ok": 1}


@pytest.mark.anyio
async def test_retry_exhaustion_reports_last_error(anyio_backend: str) -> None:
    _ = anyio_backend
    errors = [ProviderError("busy", status=503, retryable=True) for _ in range(3)]
    adapter = make_adapter(errors=errors)
    hub = make_hub(adapter)

    with pytest.raises(RetryExhaustedError) as excinfo:
        await hub.submit(request())

    assert excinfo.value.attempts == 3
    assert excinfo.value.http_status == 502
    assert excinfo.value.context["component"] == "resilience"
    assert len(adapter.calls) == 3


@pytest.mark.anyio
async def test_open_circuit_skips_adapter(anyio_backend: str) -> None:
    _ = anyio_backend
    errors = [ProviderError("busy", status=503, retryable=True) for _ in range(5)]
    adapter = make_adapter(errors=errors)
    hub = make_hub(
        adapter,
        retry={"max_attempts": 1},
        circuit_breaker={"failure_threshold": 2, "recovery_time_s": 60},
    )

    for text in ("a", "b"):
        with pytest.raises(RetryExhaustedError):
            await hub.submit(request(text))

    with pytest.raises(CircuitOpenError) as excinfo:
        await hub.submit(request("c"))

    assert len(adapter.calls) == 2
    assert excinfo.value.retry_after == pytest.approx(60.0, abs=1.0)
    assert hub.snapshot()["circuits"]["alpha:m1"]["status"] == "open"
    assert hub.controller.circuit_status("alpha", "m2") == "closed"


@pytest.mark.anyio
async def test_non_retryable_error_propagates_once(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(errors=[ProviderError("bad request", status=400, retryable=False)])
    hub = make_hub(adapter)

    with pytest.raises(ProviderError) as excinfo:
        await hub.submit(request())

    assert excinfo.value.http_status == 400
    assert len(adapter.calls) == 1


@pytest.mark.anyio
async def test_timeout_is_retryable_only_for_idempotent_requests(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(delay_s=0.5)
    hub = make_hub(adapter, retry={"max_attempts": 2})

    with pytest.raises(RetryExhaustedError) as excinfo:
        await hub.submit(request(timeout_s=0.01))
    assert excinfo.value.code == "timeout"
    assert len(adapter.calls) == 2

    with pytest.raises(RequestTimeoutError) as timeout_info:
        await hub.submit(request(timeout_s=0.01, idempotent=False))
    assert timeout_info.value.retryable is False
    assert len(adapter.calls) == 3


@pytest.mark.anyio
async def test_stream_error_before_first_chunk_is_retried(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(errors=[ProviderError("reset", status=502, retryable=True)])
    hub = make_hub(adapter)

    chunks = await collect(await hub.submit(request(stream=True)))

    assert chunks[-1].finish_reason == "stop"
    assert len(adapter.calls) == 2


@pytest.mark.anyio
async def test_mid_stream_error_terminates_stream_and_is_not_cached(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(
        reply="one two three",
        stream_error=ProviderError("connection reset", retryable=True),
        stream_error_after=2,
    )
    hub = make_hub(adapter)

    chunks = await collect(await hub.submit(request(stream=True)))

    assert chunks[-1].is_error
    assert chunks[-1].error == "connection reset"
    assert [chunk.content for chunk in chunks[:-1]] == [None, "one"]
    assert hub.snapshot()["circuits"]["alpha:m1"]["failures"] == 1

    await collect(await hub.submit(request(stream=True)))
    assert len(adapter.calls) == 2


@pytest.mark.anyio
async def test_closing_stream_early_releases_upstream(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(reply=" ".join(f"w{index}" for index in range(200)))
    hub = make_hub(adapter, streaming={"buffer_size": 2})

    stream = await hub.submit(request(stream=True))
    received = []
    async for chunk in stream:
        received.append(chunk)
        if len(received) == 3:
            break
    await stream.aclose()

    assert adapter.open_streams == 0
    assert adapter.closed_streams == 1
    assert adapter.produced < 200
    assert hub.cache is not None
    assert hub.snapshot()["cache"]["in_flight"] == 0

    await (await hub.submit(request(stream=True))).aclose()
    assert len(adapter.calls) == 2


@pytest.mark.anyio
async def test_dropping_unfinished_stream_releases_upstream(
    caplog: pytest.LogCaptureFixture, anyio_backend: str
) -> None:
    _ = anyio_backend
    letters = "ABCDEF"
    chunks = [StreamChunk(content=letter) for letter in letters[:-1]]
    chunks.append(StreamChunk(content=letters[-1], finish_reason="stop"))
    adapter = make_adapter(chunks=chunks)
    hub = make_hub(adapter, streaming={"buffer_size": 1})

    stream = await hub.submit(request(stream=True))
    received = []
    with caplog.at_level(logging.INFO, logger="src.hub.streaming"):
        async for chunk in stream:
            received.append(chunk.content)
            if chunk.content == "B":
                break
        del stream
        gc.collect()
        await asyncio.sleep(0.05)

    assert received == ["A", "B"]
    assert adapter.open_streams == 0
    assert adapter.closed_streams == 1
    assert hub.snapshot()["cache"]["in_flight"] == 0
    assert any(record.getMessage().startswith("stream.abandoned") for record in caplog.records)

    again = await asyncio.wait_for(hub.submit(request(stream=True)), 1.0)
    replayed = await collect(again)

    assert "".join(chunk.content or "" for chunk in replayed) == letters
    assert len(adapter.calls) == 2


@pytest.mark.anyio
async def test_cancelled_caller_releases_single_flight(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter(delay_s=1.0)
    hub = make_hub(adapter)

    task = asyncio.create_task(hub.submit(request()))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert hub.snapshot()["cache"]["in_flight"] == 0
    assert hub.snapshot()["providers"]["alpha"]["outcomes"] == {"cancelled": 1}
    assert hub.controller.circuit_status("alpha", "m1") == "closed"


@pytest.mark.anyio
async def test_rate_limit_per_caller(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter()
    hub = make_hub(adapter, rate_limit={"rpm": 1})

    await hub.submit(request(caller="alice"))
    await hub.submit(request(caller="bob"))

    with pytest.raises(RateLimitedError) as excinfo:
        await hub.submit(request(caller="alice", cache={"mode": "bypass"}))

    assert excinfo.value.http_status == 429
    assert excinfo.value.retry_after == pytest.approx(60.0, abs=1.0)


@pytest.mark.anyio
async def test_provider_rpm_overrides_hub_limit(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = MockProvider(ProviderDef(name="alpha", type="mock", models=("m1",), rpm=1))
    hub = make_hub(adapter)

    await hub.submit(request())
    with pytest.raises(RateLimitedError):
        await hub.submit(request("other"))


@pytest.mark.anyio
async def test_validation_errors(anyio_backend: str) -> None:
    _ = anyio_backend
    hub = make_hub(make_adapter())

    with pytest.raises(ValidationError, match="messages"):
        await hub.submit(request(messages=[]))
    with pytest.raises(ValidationError, match="unknown provider"):
        await hub.submit(request(provider="missing"))
    with pytest.raises(ValidationError, match="not served"):
        await hub.submit(request(model="m9"))
    with pytest.raises(ValidationError, match="unexpected"):
        await hub.submit(request(unexpected=True))


@pytest.mark.anyio
async def test_hubs_are_isolated(anyio_backend: str) -> None:
    _ = anyio_backend
    first_adapter = make_adapter()
    second_adapter = make_adapter()
    first = make_hub(first_adapter)
    second = make_hub(second_adapter)

    await first.submit(request())
    await second.submit(request())

    assert len(first_adapter.calls) == 1
    assert len(second_adapter.calls) == 1
    assert first.snapshot()["cache"]["misses"] == 1
    assert second.snapshot()["cache"]["misses"] == 1


@pytest.mark.anyio
async def test_request_logging(caplog: pytest.LogCaptureFixture, anyio_backend: str) -> None:
    _ = anyio_backend
    hub = make_hub(make_adapter())

    with caplog.at_level(logging.INFO, logger="src.hub.middleware"):
        await hub.submit(request(metadata={"request_id": "req-1"}))
        await hub.submit(request())

    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("request.ok req_id=req-1 provider=alpha model=m1") for message in messages)
    assert any("cache_hit=True" in message for message in messages)


@pytest.mark.anyio
async def test_from_config_and_lifecycle(tmp_path: Path, anyio_backend: str) -> None:
    _ = anyio_backend
    (tmp_path / "providers.dummy.toml").write_text(
        """
[dummy]
type = "dummy"
model = "dummy"

[dummy.options]
reply = "configured"
""".strip(),
        encoding="utf-8",
    )
    (tmp_path / "hub.yaml").write_text("health:\n  interval_s: 60\n", encoding="utf-8")

    async with Hub.from_config(str(tmp_path), use_dummy=True) as hub:
        assert hub.health.running
        response = await hub.submit({"provider": "dummy", "model": "dummy", "messages": [{"role": "user", "content": "x"}]})
        assert response.content == "configured"
        assert await hub.list_models() == {"dummy": ["dummy"]}

    assert not hub.health.running
    adapter = hub.registry.get("dummy")
    assert isinstance(adapter, MockProvider)
    assert adapter.closed


@pytest.mark.anyio
async def test_empty_cache_backend_is_used(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter()
    backend = InMemoryCacheBackend(max_entries=5)
    hub = Hub(ProviderRegistry({adapter.name: adapter}), make_settings(), cache_backend=backend)

    assert hub.cache is not None
    assert hub.cache.backend is backend

    await hub.submit(request())

    assert len(backend) == 1
    assert backend.max_entries == 5
