from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Literal

from .providers import ProviderRegistry
from .resilience import ResilienceController
from .types import HealthReport

logger = logging.getLogger(__name__)

HealthStatus = Literal["healthy", "degraded", "unhealthy", "unknown"]

# consecutive failed probes before a provider counts as unhealthy
UNHEALTHY_AFTER = 3


@dataclass
class ProviderHealth:
    provider: str
    probes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_latency_ms: float | None = None
    last_detail: str | None = None
    last_checked_at: float | None = None

    @property
    def error_rate(self) -> float:
        return self.failures / self.probes if self.probes else 0.0

    @property
    def status(self) -> HealthStatus:
        if not self.probes:
            return "unknown"
        if self.consecutive_failures >= UNHEALTHY_AFTER:
            return "unhealthy"
        if self.consecutive_failures:
            return "degraded"
        return "healthy"

    def observe(self, report: HealthReport, now: float) -> None:
        self.probes += 1
        self.last_latency_ms = report.latency_ms
        self.last_detail = report.detail
        self.last_checked_at = now
        if report.healthy:
            self.consecutive_failures = 0
        else:
            self.failures += 1
            self.consecutive_failures += 1


class HealthMonitor:
    """Probes every registered adapter on a fixed interval.

    Results are advisory: they feed snapshots and the resilience controller's
    probe record but never open or close a circuit.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        controller: ResilienceController | None = None,
        *,
        interval_s: float = 30.0,
        timeout_s: float = 5.0,
    ):
        self.registry = registry
        self.controller = controller
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self._health: dict[str, ProviderHealth] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def probe(self, provider: str) -> HealthReport:
        adapter = self.registry.get(provider)
        started = time.perf_counter()
        try:
            report = await asyncio.wait_for(adapter.health_check(), self.timeout_s)
        except asyncio.TimeoutError:
            report = HealthReport(
                healthy=False,
                latency_ms=(time.perf_counter() - started) * 1000.0,
                detail=f"probe timed out after {self.timeout_s}s",
            )
        except Exception as exc:
            report = HealthReport(
                healthy=False,
                latency_ms=(time.perf_counter() - started) * 1000.0,
                detail=f"{type(exc).__name__}: {exc}",
            )
        if not report.healthy:
            logger.warning("health.probe_failed provider=%s detail=%s", provider, report.detail)
        self._health.setdefault(provider, ProviderHealth(provider)).observe(report, time.time())
        if self.controller is not None:
            for model in adapter.models or ("*",):
                self.controller.observe_probe(provider, model, report)
        return report

    async def probe_all(self) -> dict[str, HealthReport]:
        names = self.registry.names()
        reports = await asyncio.gather(*(self.probe(name) for name in names))
        return dict(zip(names, reports))

    async def _run(self) -> None:
        while True:
            await self.probe_all()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="hub.health")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def snapshot(self) -> dict[str, dict[str, object]]:
        circuits = self.controller.snapshot() if self.controller is not None else {}
        result: dict[str, dict[str, object]] = {}
        for name in self.registry.names():
            health = self._health.get(name) or ProviderHealth(name)
            provider_circuits = {
                key.split(":", 1)[1]: entry["status"]
                for key, entry in circuits.items()
                if key.split(":", 1)[0] == name
            }
            result[name] = {
                "status": health.status,
                "latency_ms": health.last_latency_ms,
                "consecutive_failures": health.consecutive_failures,
                "error_rate": health.error_rate,
                "detail": health.last_detail,
                "circuits": provider_circuits,
            }
        return result
