from __future__ import annotations

import logging
from typing import Any, Iterable

from .cache import CacheBackend, CacheStore, InMemoryCacheBackend
from .config import HubSettings, LoadedConfig, ProviderDef, config_dir_from_env, env_var_as_bool, load_config
from .health import HealthMonitor
from .metrics import HubMetrics
from .middleware import Middleware, MiddlewarePipeline, build_default_pipeline
from .providers import ProviderRegistry
from .rate_limiter import RateLimiter
from .resilience import ResilienceController, RetryPolicy
from .router import RequestLike, RequestRouter
from .streaming import ChunkStream
from .types import ChatResponse

logger = logging.getLogger(__name__)


class Hub:
    """One gateway instance; several hubs can live in the same process."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: HubSettings | None = None,
        *,
        cache_backend: CacheBackend | None = None,
        extra_middleware: Iterable[Middleware] = (),
        controller: ResilienceController | None = None,
        metrics: HubMetrics | None = None,
    ):
        self.settings = settings or HubSettings()
        self.registry = registry
        self.metrics = metrics or HubMetrics()
        self.controller = controller or ResilienceController(
            RetryPolicy.from_settings(self.settings.retry),
            self.settings.circuit_breaker,
        )
        cache_settings = self.settings.cache
        self.cache: CacheStore | None = None
        if cache_settings.enabled:
            self.cache = CacheStore(
                cache_backend if cache_backend is not None else InMemoryCacheBackend(cache_settings.max_entries),
                ttl_s=cache_settings.ttl_s,
                prefix=cache_settings.prefix,
            )
        rate_settings = self.settings.rate_limit
        self.limiter: RateLimiter | None = None
        provider_limiters: dict[str, RateLimiter] = {}
        if rate_settings.enabled:
            self.limiter = RateLimiter(rate_settings.rpm, rate_settings.burst, max_wait_s=rate_settings.max_wait_s)
            for name in registry.names():
                defn: ProviderDef | None = getattr(registry.get(name), "defn", None)
                if defn is not None and defn.rpm:
                    provider_limiters[name] = RateLimiter(defn.rpm, defn.burst, max_wait_s=rate_settings.max_wait_s)
        self.pipeline: MiddlewarePipeline = build_default_pipeline(
            controller=self.controller,
            metrics=self.metrics,
            cache=self.cache,
            limiter=self.limiter,
            provider_limiters=provider_limiters,
            buffer_size=self.settings.streaming.buffer_size,
            extra=extra_middleware,
        )
        self.router = RequestRouter(
            registry,
            self.pipeline,
            defaults=self.settings.defaults,
            fingerprint_prefix=cache_settings.prefix,
        )
        self.health = HealthMonitor(
            registry,
            self.controller,
            interval_s=self.settings.health.interval_s,
            timeout_s=self.settings.health.timeout_s,
        )

    @classmethod
    def from_loaded(cls, loaded: LoadedConfig, **kwargs: Any) -> "Hub":
        return cls(ProviderRegistry.from_config(loaded.providers), loaded.settings, **kwargs)

    @classmethod
    def from_config(cls, config_dir: str | None = None, *, use_dummy: bool | None = None, **kwargs: Any) -> "Hub":
        directory = config_dir or config_dir_from_env()
        dummy = env_var_as_bool("HUB_USE_DUMMY") if use_dummy is None else use_dummy
        loaded = load_config(directory, use_dummy=dummy)
        logger.info(
            "hub.configured config_dir=%s providers=%s dummy=%s",
            directory,
            ",".join(sorted(loaded.providers)),
            dummy,
        )
        return cls.from_loaded(loaded, **kwargs)

    async def submit(self, request: RequestLike) -> ChatResponse | ChunkStream:
        return await self.router.submit(request)

    async def list_models(self) -> dict[str, list[str]]:
        models: dict[str, list[str]] = {}
        for name in self.registry.names():
            models[name] = await self.registry.get(name).list_models()
        return models

    def snapshot(self) -> dict[str, Any]:
        metrics = self.metrics.snapshot()
        return {
            "providers": metrics["providers"],
            "cache": self.cache.snapshot() if self.cache is not None else None,
            "cache_lookups": metrics["cache"],
            "circuits": self.controller.snapshot(),
            "health": self.health.snapshot(),
        }

    async def start(self) -> None:
        if self.settings.health.enabled:
            self.health.start()

    async def aclose(self) -> None:
        await self.health.stop()
        await self.metrics.flush()
        await self.registry.aclose()

    async def __aenter__(self) -> "Hub":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
