from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Literal, TypeVar

from .config import CircuitBreakerSettings, RetrySettings
from .errors import CircuitOpenError, HubError, ProviderError, RetryExhaustedError
from .types import HealthReport

logger = logging.getLogger(__name__)

T = TypeVar("T")

CircuitStatus = Literal["closed", "open", "half_open"]

# suggested wait for callers turned away while a half-open trial is running
HALF_OPEN_RETRY_AFTER_S = 1.0


@dataclass
class CircuitState:
    settings: CircuitBreakerSettings
    status: CircuitStatus = "closed"
    failure_count: int = 0
    window_started_at: float | None = None
    opened_until: float | None = None
    trial_in_flight: bool = False
    last_probe: HealthReport | None = None
    last_probe_at: float | None = None

    def refresh(self, now: float) -> CircuitStatus:
        if self.status == "open" and self.opened_until is not None and now >= self.opened_until:
            self.status = "half_open"
            self.opened_until = None
            self.trial_in_flight = False
        return self.status

    def admit(self, now: float) -> float | None:
        """Returns None when the call may proceed, otherwise a retry-after hint."""
        status = self.refresh(now)
        if status == "closed":
            return None
        if status == "open":
            return max((self.opened_until or now) - now, 0.0)
        if self.trial_in_flight:
            return HALF_OPEN_RETRY_AFTER_S
        self.trial_in_flight = True
        return None

    def record_success(self) -> None:
        self.status = "closed"
        self.failure_count = 0
        self.window_started_at = None
        self.opened_until = None
        self.trial_in_flight = False

    def record_failure(self, now: float) -> None:
        status = self.refresh(now)
        if status == "open":
            return
        if status == "half_open":
            self._open(now)
            return
        if self.window_started_at is None or now - self.window_started_at > self.settings.window_s:
            self.window_started_at = now
            self.failure_count = 0
        self.failure_count += 1
        if self.failure_count >= self.settings.failure_threshold:
            self._open(now)

    def release_trial(self) -> None:
        self.trial_in_flight = False

    def _open(self, now: float) -> None:
        self.status = "open"
        self.opened_until = now + self.settings.recovery_time_s
        self.failure_count = 0
        self.window_started_at = None
        self.trial_in_flight = False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.25
    multiplier: float = 2.0
    max_delay_s: float = 8.0
    jitter_s: float = 0.1
    budget_s: float = 60.0
    strategy: Literal["exponential", "linear", "constant"] = "exponential"

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=int(settings.max_attempts),
            base_delay_s=float(settings.base_delay_s),
            multiplier=float(settings.multiplier),
            max_delay_s=float(settings.max_delay_s),
            jitter_s=float(settings.jitter_s),
            budget_s=float(settings.budget_s),
            strategy=settings.strategy,
        )

    def base_delay(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-based), without jitter."""
        if self.strategy == "constant":
            delay = self.base_delay_s
        elif self.strategy == "linear":
            delay = self.base_delay_s * (retry_index + 1)
        else:
            delay = self.base_delay_s * (self.multiplier ** retry_index)
        return min(delay, self.max_delay_s)

    def delay(self, retry_index: int, *, rand: random.Random | None = None) -> float:
        jitter = 0.0
        if self.jitter_s > 0:
            jitter = (rand or random).uniform(0.0, self.jitter_s)
        return self.base_delay(retry_index) + jitter


def circuit_key(provider: str, model: str) -> str:
    return f"{provider}:{model}"


class ResilienceController:
    """Retry loop and per (provider, model) circuit breakers for one hub."""

    def __init__(
        self,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreakerSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rand: random.Random | None = None,
    ) -> None:
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreakerSettings()
        self._clock = clock
        self._sleep = sleep
        self._rand = rand
        self._states: Dict[str, CircuitState] = {}
        self._lock = threading.Lock()

    def _state(self, provider: str, model: str) -> CircuitState:
        key = circuit_key(provider, model)
        state = self._states.get(key)
        if state is None:
            state = CircuitState(self.breaker)
            self._states[key] = state
        return state

    def circuit_status(self, provider: str, model: str) -> CircuitStatus:
        with self._lock:
            return self._state(provider, model).refresh(self._clock())

    def before_call(self, provider: str, model: str) -> None:
        with self._lock:
            retry_after = self._state(provider, model).admit(self._clock())
        if retry_after is not None:
            raise CircuitOpenError(
                f"circuit open for {provider}/{model}",
                retry_after=retry_after,
                provider=provider,
                model=model,
            )

    def record_success(self, provider: str, model: str) -> None:
        with self._lock:
            state = self._state(provider, model)
            previous = state.status
            state.record_success()
        if previous != "closed":
            logger.info("circuit.closed provider=%s model=%s", provider, model)

    def record_failure(self, provider: str, model: str) -> None:
        with self._lock:
            state = self._state(provider, model)
            previous = state.status
            state.record_failure(self._clock())
            current = state.status
        if current == "open" and previous != "open":
            logger.warning(
                "circuit.opened provider=%s model=%s recovery_s=%s",
                provider,
                model,
                self.breaker.recovery_time_s,
            )

    def release(self, provider: str, model: str) -> None:
        with self._lock:
            self._state(provider, model).release_trial()

    def observe_probe(self, provider: str, model: str, report: HealthReport) -> None:
        """Store a health probe result. Probes never change circuit status."""
        with self._lock:
            state = self._state(provider, model)
            state.last_probe = report
            state.last_probe_at = self._clock()

    async def call(
        self,
        provider: str,
        model: str,
        operation: Callable[[int], Awaitable[T]],
    ) -> T:
        """Run ``operation(attempt)`` under the breaker, retrying retryable errors."""
        started = self._clock()
        attempt = 0
        while True:
            attempt += 1
            self.before_call(provider, model)
            try:
                result = await operation(attempt)
            except ProviderError as exc:
                if exc.retryable:
                    self.record_failure(provider, model)
                else:
                    # the upstream answered, so it is reachable
                    self.record_success(provider, model)
                exc.add_context(attempt=attempt)
                if not exc.retryable:
                    raise
                elapsed = self._clock() - started
                if attempt >= self.retry.max_attempts:
                    raise RetryExhaustedError(exc, attempts=attempt, elapsed_s=elapsed) from exc
                delay = self.retry.delay(attempt - 1, rand=self._rand)
                if exc.retry_after is not None:
                    delay = max(delay, exc.retry_after)
                if elapsed + delay > self.retry.budget_s:
                    raise RetryExhaustedError(exc, attempts=attempt, elapsed_s=elapsed) from exc
                logger.info(
                    "retry provider=%s model=%s attempt=%d delay_s=%.3f error=%s",
                    provider,
                    model,
                    attempt,
                    delay,
                    exc.code,
                )
                await self._pause(delay)
                continue
            except HubError as exc:
                self.release(provider, model)
                exc.add_context(attempt=attempt)
                raise
            except BaseException:
                self.release(provider, model)
                raise
            self.record_success(provider, model)
            return result

    async def _pause(self, delay: float) -> None:
        sleeper = self._sleep or asyncio.sleep
        await sleeper(delay)

    def snapshot(self) -> dict[str, dict[str, object]]:
        now = self._clock()
        with self._lock:
            result: dict[str, dict[str, object]] = {}
            for key, state in sorted(self._states.items()):
                status = state.refresh(now)
                entry: dict[str, object] = {
                    "status": status,
                    "failures": state.failure_count,
                }
                if status == "open" and state.opened_until is not None:
                    entry["retry_after_s"] = round(max(state.opened_until - now, 0.0), 3)
                if state.last_probe is not None:
                    entry["probe_healthy"] = state.last_probe.healthy
                    entry["probe_latency_ms"] = state.last_probe.latency_ms
                result[key] = entry
            return result
