"""In-process request metrics with optional OpenTelemetry export.

``HubMetrics.snapshot`` is the pull interface; ``render_prometheus`` renders
the same counters as Prometheus exposition text. Set ``HUB_OTEL_METRICS_EXPORT``
to additionally emit ``requests_total`` and ``latency_ms`` through the
OpenTelemetry SDK when it is installed. Nothing is persisted.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, TYPE_CHECKING

from .config import env_var_as_bool

if TYPE_CHECKING:  # pragma: no cover
    from opentelemetry.sdk.metrics.export import MetricReader  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

OTEL_FLAG = "HUB_OTEL_METRICS_EXPORT"
HISTOGRAM_BUCKETS: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


@dataclass(frozen=True)
class RequestRecord:
    provider: str
    model: str
    ok: bool
    latency_s: float
    outcome: str = "ok"
    stream: bool = False


class _OtelMetrics:
    __slots__ = ("_reader", "_previous_provider", "_provider", "_requests_counter", "_latency_histogram", "_shutdown")

    def __init__(self, reader: Optional["MetricReader"] = None):
        from opentelemetry import metrics as otel_metrics  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]

        self._reader = reader or InMemoryMetricReader()
        self._previous_provider = otel_metrics.get_meter_provider()
        provider = MeterProvider(
            resource=Resource.create({"service.name": "llm-hub"}),
            metric_readers=[self._reader],
        )
        otel_metrics.set_meter_provider(provider)
        self._provider = provider
        meter = otel_metrics.get_meter("hub.metrics")
        self._requests_counter = meter.create_counter(
            "requests_total", description="Total number of hub requests."
        )
        self._latency_histogram = meter.create_histogram(
            "latency_ms", unit="ms", description="Upstream attempt latency in milliseconds."
        )
        self._shutdown = False

    def record(self, record: RequestRecord) -> None:
        attrs: dict[str, Any] = {
            "provider": record.provider,
            "model": record.model,
            "ok": record.ok,
            "outcome": record.outcome,
        }
        self._requests_counter.add(1, attributes=attrs)
        self._latency_histogram.record(record.latency_s * 1000.0, attributes=attrs)

    async def flush(self) -> None:
        if self._shutdown:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._provider.force_flush)

    def shutdown(self) -> None:
        if self._shutdown:
            return
        from opentelemetry import metrics as otel_metrics

        self._provider.shutdown()
        otel_metrics.set_meter_provider(self._previous_provider)
        self._shutdown = True


class HubMetrics:
    _otel_lock: ClassVar[threading.Lock] = threading.Lock()
    _otel_instance: ClassVar[Optional[_OtelMetrics]] = None
    _otel_error: ClassVar[bool] = False
    _custom_reader: ClassVar[Optional["MetricReader"]] = None

    def __init__(self, *, otel: bool | None = None):
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str, str], int] = defaultdict(int)
        self._histogram: defaultdict[tuple[str, str], dict[str, Any]] = defaultdict(_new_histogram_state)
        self._cache: defaultdict[str, int] = defaultdict(int)
        self._otel_enabled = env_var_as_bool(OTEL_FLAG) if otel is None else otel
        self._otel = self._ensure_otel() if self._otel_enabled else None

    @classmethod
    def configure_metric_reader(cls, reader: Optional["MetricReader"]) -> None:
        with cls._otel_lock:
            if cls._otel_instance is not None:
                cls._otel_instance.shutdown()
            cls._otel_instance = None
            cls._custom_reader = reader
            cls._otel_error = False

    @classmethod
    def _ensure_otel(cls) -> Optional[_OtelMetrics]:
        with cls._otel_lock:
            if cls._otel_instance is not None:
                return cls._otel_instance
            if cls._otel_error:
                return None
            try:
                cls._otel_instance = _OtelMetrics(cls._custom_reader)
            except ImportError:
                logger.warning("metrics.otel_unavailable flag=%s", OTEL_FLAG)
                cls._otel_error = True
                cls._otel_instance = None
            return cls._otel_instance

    def record(self, record: RequestRecord) -> None:
        ok_label = "true" if record.ok else "false"
        latency_seconds = max(record.latency_s, 0.0)
        with self._lock:
            self._counter[(record.provider, record.outcome, ok_label)] += 1
            hist_state = self._histogram[(record.provider, ok_label)]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds
        otel = self._otel
        if otel is not None:
            otel.record(record)

    def record_cache(self, outcome: str) -> None:
        with self._lock:
            self._cache[outcome] += 1

    async def flush(self) -> None:
        if self._otel is not None:
            await self._otel.flush()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            providers: dict[str, dict[str, Any]] = {}
            for (provider, outcome, ok_label), value in self._counter.items():
                entry = providers.setdefault(
                    provider,
                    {"requests": 0, "errors": 0, "outcomes": {}, "latency": None},
                )
                entry["requests"] += value
                if ok_label == "false":
                    entry["errors"] += value
                entry["outcomes"][outcome] = entry["outcomes"].get(outcome, 0) + value
            for (provider, ok_label), state in self._histogram.items():
                entry = providers[provider]
                latency = entry["latency"] or {
                    "buckets": {format(bound, ".6g"): 0 for bound in HISTOGRAM_BUCKETS} | {"+Inf": 0},
                    "count": 0,
                    "sum_s": 0.0,
                }
                for idx, bound in enumerate(HISTOGRAM_BUCKETS):
                    latency["buckets"][format(bound, ".6g")] += state["buckets"][idx]
                latency["buckets"]["+Inf"] += state["buckets"][-1]
                latency["count"] += state["count"]
                latency["sum_s"] += state["sum"]
                entry["latency"] = latency
            for entry in providers.values():
                entry["error_rate"] = entry["errors"] / entry["requests"] if entry["requests"] else 0.0
            hits = self._cache.get("hit", 0)
            lookups = hits + self._cache.get("miss", 0)
            cache = dict(self._cache)
            cache["hit_ratio"] = hits / lookups if lookups else 0.0
            return {"providers": dict(sorted(providers.items())), "cache": cache}

    def render_prometheus(self) -> str:
        with self._lock:
            lines: list[str] = [
                "# HELP hub_requests_total Upstream attempts by provider and outcome",
                "# TYPE hub_requests_total counter",
            ]
            for (provider, outcome, ok_label), value in sorted(self._counter.items()):
                lines.append(
                    f'hub_requests_total{{provider="{provider}",outcome="{outcome}",ok="{ok_label}"}} {value}'
                )
            lines.append("# HELP hub_request_latency_seconds Upstream attempt latency")
            lines.append("# TYPE hub_request_latency_seconds histogram")
            for (provider, ok_label), state in sorted(self._histogram.items()):
                buckets = state["buckets"]
                for idx, bound in enumerate(HISTOGRAM_BUCKETS):
                    le_value = format(bound, ".6g")
                    lines.append(
                        f'hub_request_latency_seconds_bucket{{provider="{provider}",ok="{ok_label}",le="{le_value}"}} {buckets[idx]}'
                    )
                lines.append(
                    f'hub_request_latency_seconds_bucket{{provider="{provider}",ok="{ok_label}",le="+Inf"}} {buckets[-1]}'
                )
                lines.append(
                    f'hub_request_latency_seconds_count{{provider="{provider}",ok="{ok_label}"}} {state["count"]}'
                )
                lines.append(
                    f'hub_request_latency_seconds_sum{{provider="{provider}",ok="{ok_label}"}} {state["sum"]}'
                )
            lines.append("# HELP hub_cache_lookups_total Cache lookups by outcome")
            lines.append("# TYPE hub_cache_lookups_total counter")
            for outcome, value in sorted(self._cache.items()):
                lines.append(f'hub_cache_lookups_total{{outcome="{outcome}"}} {value}')
            return "\n".join(lines) + "\n"
