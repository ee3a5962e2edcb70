import random

import pytest

from src.hub.config import CircuitBreakerSettings
from src.hub.errors import CircuitOpenError, ProviderError, RequestTimeoutError, RetryExhaustedError, ValidationError
from src.hub.resilience import HALF_OPEN_RETRY_AFTER_S, ResilienceController, RetryPolicy
from src.hub.types import HealthReport


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_controller(
    *,
    retry: RetryPolicy | None = None,
    threshold: int = 3,
    window_s: float = 60.0,
    recovery_s: float = 30.0,
) -> tuple[ResilienceController, FakeClock, list[float]]:
    clock = FakeClock()
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        clock.now += delay

    controller = ResilienceController(
        retry or RetryPolicy(max_attempts=1, jitter_s=0.0),
        CircuitBreakerSettings(failure_threshold=threshold, window_s=window_s, recovery_time_s=recovery_s),
        clock=clock,
        sleep=fake_sleep,
    )
    return controller, clock, sleeps


def retryable(message: str = "overloaded") -> ProviderError:
    return ProviderError(message, status=503, retryable=True, provider="alpha")


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        ("exponential", [0.5, 1.0, 2.0, 4.0, 5.0]),
        ("linear", [0.5, 1.0, 1.5, 2.0, 2.5]),
        ("constant", [0.5, 0.5, 0.5, 0.5, 0.5]),
    ],
)
def test_retry_policy_base_delays(strategy: str, expected: list[float]) -> None:
    policy = RetryPolicy(base_delay_s=0.5, multiplier=2.0, max_delay_s=5.0, jitter_s=0.0, strategy=strategy)

    assert [policy.base_delay(index) for index in range(5)] == expected


def test_retry_policy_jitter_is_bounded() -> None:
    policy = RetryPolicy(base_delay_s=1.0, jitter_s=0.25)
    rand = random.Random(7)

    for index in range(20):
        delay = policy.delay(0, rand=rand)
        assert 1.0 <= delay <= 1.25, index


@pytest.mark.anyio
async def test_circuit_opens_after_threshold_and_rejects_without_calling(anyio_backend: str) -> None:
    _ = anyio_backend
    controller, clock, _ = make_controller(threshold=3)
    calls = 0

    async def failing(attempt: int) -> str:
        nonlocal calls
        calls += 1
        raise retryable()

    for _ in range(3):
        with pytest.raises(RetryExhaustedError):
            await controller.call("alpha", "gpt", failing)

    assert controller.circuit_status("alpha", "gpt") == "open"

    with pytest.raises(CircuitOpenError) as excinfo:
        await controller.call("alpha", "gpt", failing)

    assert calls == 3
    assert excinfo.value.retry_after == pytest.approx(30.0)
    clock.now = 10.0
    with pytest.raises(CircuitOpenError) as excinfo:
        controller.before_call("alpha", "gpt")
    assert excinfo.value.retry_after == pytest.approx(20.0)


@pytest.mark.anyio
async def test_failures_outside_window_do_not_accumulate(anyio_backend: str) -> None:
    _ = anyio_backend
    controller, clock, _ = make_controller(threshold=2, window_s=10.0)

    controller.record_failure("alpha", "gpt")
    clock.now = 11.0
    controller.record_failure("alpha", "gpt")

    assert controller.circuit_status("alpha", "gpt") == "closed"
    controller.record_failure("alpha", "gpt")
    assert controller.circuit_status("alpha", "gpt") == "open"


@pytest.mark.anyio
async def test_success_resets_failure_count(anyio_backend: str) -> None:
    _ = anyio_backend
    controller, _, _ = make_controller(threshold=2)

    controller.record_failure("alpha", "gpt")
    controller.record_success("alpha", "gpt")
    controller.record_failure("alpha", "gpt")

    assert controller.circuit_status("alpha", "gpt") == "closed"


@pytest.mark.anyio
async def test_half_open_admits_single_trial(anyio_backend: str) -> None:
    _ = anyio_backend
    controller, clock, _ = make_controller(threshold=1, recovery_s=5.0)
    controller.record_failure("alpha", "gpt")
    clock.now = 5.0

    assert controller.circuit_status("alpha", "gpt") == "half_open"
    controller.before_call("alpha", "gpt")
    with pytest.raises(CircuitOpenError) as excinfo:
        controller.before_call("alpha", "gpt")
    assert excinfo.value.retry_after == HALF_OPEN_RETRY_AFTER_S

    controller.record_success("alpha", "gpt")
    assert controller.circuit_status("alpha", "gpt") == "closed"


@pytest.mark.anyio
async def test_half_open_trial_failure_reopens(anyio_backend: str) -> None:
    _ = anyio_backend
    controller, clock, _ = make_controller(threshold=1, recovery_s=5.0)
    controller.record_failure("alpha", "gpt")
    clock.now = 5.0

    async def failing(attempt: int) -> str:
        raise retryable()

    with pytest.raises(RetryExhaustedError):
        await controller.call("alpha", "gpt", failing)

    assert controller.circuit_status("alpha", "gpt") == "open"
    assert controller.snapshot()["alpha:gpt"]["retry_after_s"] == pytest.approx(5.0)


@pytest.mark.anyio
async def test_half_open_trial_released_on_unrelated_error(anyio_backend: str) -> None:
    _ = anyio_backend
    controller, clock, _ = make_controller(threshold=1, recovery_s=5.0)
    controller.record_failure("alpha", "gpt")
    clock.now = 5.0

    async def invalid(attempt: int) -> str:
        raise ValidationError("bad tool schema")

    with pytest.raises(ValidationError):
        await controller.call("alpha", "gpt", invalid)

    assert controller.circuit_status("alpha", "gpt") == "half_open"
    controller.before_call("alpha", "gpt")


@pytest.mark.anyio
async def test_retries_until_success_with_backoff(anyio_backend: str) -> None:
    _ = anyio_backend
    policy = RetryPolicy(max_attempts=4, base_delay_s=0.5, multiplier=2.0, jitter_s=0.0)
    controller, _, sleeps = make_controller(retry=policy, threshold=10)
    attempts: list[int] = []

    async def flaky(attempt: int) -> str:
        attempts.append(attempt)
        if attempt < 3:
            raise retryable()
        return "ok"

    assert await controller.call("alpha", "gpt", flaky) == "ok"
    assert attempts == [1, 2, 3]
    assert sleeps == [0.5, 1.0]
    assert controller.snapshot()["alpha:gpt"]["failures"] == 0


@pytest.mark.anyio
async def test_retry_honours_retry_after(anyio_backend: str) -> None:
    _ = anyio_backend
    policy = RetryPolicy(max_attempts=2, base_delay_s=0.1, jitter_s=0.0)
    controller, _, sleeps = make_controller(retry=policy, threshold=10)

    async def throttled(attempt: int) -> str:
        if attempt == 1:
            raise ProviderError("slow down", status=429, retryable=True, retry_after=3.0)
        return "ok"

    assert await controller.call("alpha", "gpt", throttled) == "ok"
    assert sleeps == [3.0]


@pytest.mark.anyio
async def test_non_retryable_error_is_not_retried(anyio_backend: str) -> None:
    _ = anyio_backend
    policy = RetryPolicy(max_attempts=5, jitter_s=0.0)
    controller, _, sleeps = make_controller(retry=policy, threshold=1)
    calls = 0

    async def rejected(attempt: int) -> str:
        nonlocal calls
        calls += 1
        raise ProviderError("bad request", status=400, retryable=False)

    with pytest.raises(ProviderError) as excinfo:
        await controller.call("alpha", "gpt", rejected)

    assert calls == 1
    assert sleeps == []
    assert excinfo.value.context["attempt"] == 1
    assert controller.circuit_status("alpha", "gpt") == "closed"


@pytest.mark.anyio
async def test_retry_budget_stops_early(anyio_backend: str) -> None:
    _ = anyio_backend
    policy = RetryPolicy(max_attempts=10, base_delay_s=4.0, multiplier=1.0, max_delay_s=4.0, jitter_s=0.0, budget_s=10.0)
    controller, _, sleeps = make_controller(retry=policy, threshold=100)

    async def failing(attempt: int) -> str:
        raise RequestTimeoutError("slow", provider="alpha")

    with pytest.raises(RetryExhaustedError) as excinfo:
        await controller.call("alpha", "gpt", failing)

    assert sleeps == [4.0, 4.0]
    assert excinfo.value.attempts == 3
    assert excinfo.value.code == "timeout"
    assert isinstance(excinfo.value.last_error, RequestTimeoutError)


@pytest.mark.anyio
async def test_circuits_are_scoped_per_model(anyio_backend: str) -> None:
    _ = anyio_backend
    controller, _, _ = make_controller(threshold=1)

    controller.record_failure("alpha", "gpt")

    assert controller.circuit_status("alpha", "gpt") == "open"
    assert controller.circuit_status("alpha", "gpt-mini") == "closed"
    assert controller.circuit_status("beta", "gpt") == "closed"


def test_probe_results_never_change_status() -> None:
    controller, _, _ = make_controller(threshold=1)

    controller.observe_probe("alpha", "gpt", HealthReport(healthy=False, detail="down"))
    assert controller.circuit_status("alpha", "gpt") == "closed"

    controller.record_failure("alpha", "gpt")
    controller.observe_probe("alpha", "gpt", HealthReport(healthy=True, latency_ms=3.0))
    snapshot = controller.snapshot()["alpha:gpt"]
    assert snapshot["status"] == "open"
    assert snapshot["probe_healthy"] is True
    assert snapshot["probe_latency_ms"] == 3.0
