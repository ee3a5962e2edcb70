import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .errors import RateLimitedError

# bucket count that triggers dropping idle (full) buckets
SWEEP_THRESHOLD = 1024


class TokenBucket:
  def __init__(self, rpm: int, burst: int | None = None, *, now: float | None = None):
    self.rate = max(1, rpm) / 60.0
    self.capacity = float(max(1, burst if burst is not None else rpm))
    self.tokens = self.capacity
    self.updated_at = time.monotonic() if now is None else now

  def _refill(self, now: float) -> None:
    elapsed = now - self.updated_at
    if elapsed > 0:
      self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
    self.updated_at = now

  def try_take(self, now: float | None = None) -> float:
    """Take one token; returns 0.0 on success or the wait until one is available."""
    current = time.monotonic() if now is None else now
    self._refill(current)
    if self.tokens >= 1.0:
      self.tokens -= 1.0
      return 0.0
    return (1.0 - self.tokens) / self.rate

  def is_full(self, now: float) -> bool:
    elapsed = max(0.0, now - self.updated_at)
    return self.tokens + elapsed * self.rate >= self.capacity


@dataclass
class RateLimitStatus:
  key: str
  tokens: float
  capacity: float


class RateLimiter:
  """Per caller token buckets, scoped to one hub instance.

  ``acquire`` waits up to ``max_wait_s`` for a token and otherwise raises
  ``RateLimitedError`` carrying the time until the next token.
  """

  def __init__(
    self,
    rpm: int,
    burst: int | None = None,
    *,
    max_wait_s: float = 0.0,
    clock: Callable[[], float] = time.monotonic,
    sweep_threshold: int = SWEEP_THRESHOLD,
  ):
    self.rpm = rpm
    self.burst = burst
    self.max_wait_s = max(0.0, max_wait_s)
    self._clock = clock
    self._buckets: Dict[str, TokenBucket] = {}
    self._lock = threading.Lock()
    self._sweep_threshold = max(1, sweep_threshold)
    self._sweep_at = self._sweep_threshold

  def __len__(self) -> int:
    return len(self._buckets)

  def _sweep(self, now: float) -> None:
    # a full bucket is indistinguishable from a fresh one
    idle = [key for key, bucket in self._buckets.items() if bucket.is_full(now)]
    for key in idle:
      del self._buckets[key]
    self._sweep_at = max(self._sweep_threshold, 2 * len(self._buckets))

  def _bucket(self, key: str) -> TokenBucket:
    with self._lock:
      bucket = self._buckets.get(key)
      if bucket is None:
        now = self._clock()
        if len(self._buckets) >= self._sweep_at:
          self._sweep(now)
        bucket = TokenBucket(self.rpm, self.burst, now=now)
        self._buckets[key] = bucket
      return bucket

  def try_acquire(self, key: str) -> float:
    bucket = self._bucket(key)
    with self._lock:
      return bucket.try_take(self._clock())

  async def acquire(self, key: str) -> None:
    waited = 0.0
    while True:
      delay = self.try_acquire(key)
      if delay <= 0:
        return
      if waited + delay > self.max_wait_s:
        raise RateLimitedError(
          f"rate limit exceeded for caller '{key}'",
          retry_after=delay,
          caller=key,
        )
      await asyncio.sleep(delay)
      waited += delay

  def status(self, key: str) -> RateLimitStatus:
    bucket = self._bucket(key)
    with self._lock:
      bucket._refill(self._clock())
      return RateLimitStatus(key=key, tokens=bucket.tokens, capacity=bucket.capacity)
