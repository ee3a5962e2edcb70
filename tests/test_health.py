import asyncio

import pytest

from src.hub.config import ProviderDef
from src.hub.health import UNHEALTHY_AFTER, HealthMonitor
from src.hub.providers import MockProvider, ProviderRegistry
from src.hub.resilience import ResilienceController
from src.hub.types import HealthReport


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_adapter(name: str = "alpha", **kwargs) -> MockProvider:
    return MockProvider(ProviderDef(name=name, type="mock", models=("m1",)), **kwargs)


class ExplodingProvider(MockProvider):
    async def health_check(self) -> HealthReport:
        raise RuntimeError("dns failure")


@pytest.mark.anyio
async def test_probe_healthy_adapter(anyio_backend: str) -> None:
    _ = anyio_backend
    monitor = HealthMonitor(ProviderRegistry({"alpha": make_adapter()}))

    report = await monitor.probe("alpha")

    assert report.healthy is True
    snapshot = monitor.snapshot()["alpha"]
    assert snapshot["status"] == "healthy"
    assert snapshot["consecutive_failures"] == 0
    assert snapshot["error_rate"] == 0.0


@pytest.mark.anyio
async def test_failures_degrade_then_mark_unhealthy(anyio_backend: str) -> None:
    _ = anyio_backend
    monitor = HealthMonitor(ProviderRegistry({"alpha": make_adapter(healthy=False)}))

    await monitor.probe("alpha")
    assert monitor.snapshot()["alpha"]["status"] == "degraded"

    for _ in range(UNHEALTHY_AFTER - 1):
        await monitor.probe("alpha")

    snapshot = monitor.snapshot()["alpha"]
    assert snapshot["status"] == "unhealthy"
    assert snapshot["detail"] == "scripted failure"
    assert snapshot["error_rate"] == 1.0


@pytest.mark.anyio
async def test_probe_timeout_is_unhealthy(anyio_backend: str) -> None:
    _ = anyio_backend
    monitor = HealthMonitor(ProviderRegistry({"alpha": make_adapter(delay_s=0.5)}), timeout_s=0.01)

    report = await monitor.probe("alpha")

    assert report.healthy is False
    assert "timed out" in (report.detail or "")


@pytest.mark.anyio
async def test_probe_exception_is_reported(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = ExplodingProvider(ProviderDef(name="alpha", type="mock", models=("m1",)))
    monitor = HealthMonitor(ProviderRegistry({"alpha": adapter}))

    report = await monitor.probe("alpha")

    assert report.healthy is False
    assert report.detail == "RuntimeError: dns failure"


@pytest.mark.anyio
async def test_probes_never_change_circuit_status(anyio_backend: str) -> None:
    _ = anyio_backend
    controller = ResilienceController()
    monitor = HealthMonitor(ProviderRegistry({"alpha": make_adapter(healthy=False)}), controller)

    for _ in range(UNHEALTHY_AFTER + 2):
        await monitor.probe("alpha")

    circuit = controller.snapshot()["alpha:m1"]
    assert circuit["status"] == "closed"
    assert circuit["probe_healthy"] is False
    assert monitor.snapshot()["alpha"]["circuits"] == {"m1": "closed"}


@pytest.mark.anyio
async def test_probe_all_covers_every_provider(anyio_backend: str) -> None:
    _ = anyio_backend
    registry = ProviderRegistry({"alpha": make_adapter(), "beta": make_adapter("beta", healthy=False)})
    monitor = HealthMonitor(registry)

    reports = await monitor.probe_all()

    assert {name: report.healthy for name, report in reports.items()} == {"alpha": True, "beta": False}


@pytest.mark.anyio
async def test_unprobed_provider_is_unknown(anyio_backend: str) -> None:
    _ = anyio_backend
    monitor = HealthMonitor(ProviderRegistry({"alpha": make_adapter()}))

    assert monitor.snapshot()["alpha"]["status"] == "unknown"


@pytest.mark.anyio
async def test_background_loop_start_and_stop(anyio_backend: str) -> None:
    _ = anyio_backend
    adapter = make_adapter()
    monitor = HealthMonitor(ProviderRegistry({"alpha": adapter}), interval_s=0.01)

    monitor.start()
    monitor.start()
    assert monitor.running
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert not monitor.running
    assert adapter.probes >= 2
    probes = adapter.probes
    await asyncio.sleep(0.03)
    assert adapter.probes == probes
