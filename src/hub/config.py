import os
from dataclasses import dataclass, field
from typing import Dict, Literal

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised on older interpreters
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError, model_validator

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})


def env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


@dataclass
class ProviderDef:
    name: str
    type: str
    base_url: str = ""
    models: tuple[str, ...] = ()
    auth_env: str | None = None
    timeout_s: float = 60.0
    rpm: int | None = None
    burst: int | None = None
    options: dict[str, object] = field(default_factory=dict)

    @property
    def model(self) -> str:
        return self.models[0] if self.models else ""


class DefaultsSettings(BaseModel):
    temperature: float = Field(default=0.2)
    max_tokens: PositiveInt = Field(default=2048)
    timeout_s: PositiveFloat = Field(default=60.0)

    model_config = ConfigDict(extra="forbid")


class RetrySettings(BaseModel):
    max_attempts: PositiveInt = Field(default=3)
    base_delay_s: float = Field(default=0.25, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay_s: float = Field(default=8.0, ge=0)
    jitter_s: float = Field(default=0.1, ge=0)
    budget_s: PositiveFloat = Field(default=60.0)
    strategy: Literal["exponential", "linear", "constant"] = "exponential"

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_delays(self) -> "RetrySettings":
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("max_delay_s must be >= base_delay_s")
        return self


class CircuitBreakerSettings(BaseModel):
    failure_threshold: PositiveInt = Field(default=5)
    window_s: PositiveFloat = Field(default=60.0)
    recovery_time_s: PositiveFloat = Field(default=30.0)

    model_config = ConfigDict(extra="forbid", frozen=True)


class CacheSettings(BaseModel):
    enabled: bool = True
    ttl_s: PositiveFloat = Field(default=300.0)
    max_entries: PositiveInt = Field(default=1024)
    prefix: str | None = None

    model_config = ConfigDict(extra="forbid")


class RateLimitSettings(BaseModel):
    enabled: bool = True
    rpm: PositiveInt = Field(default=600)
    burst: PositiveInt | None = None
    max_wait_s: float = Field(default=0.0, ge=0)

    model_config = ConfigDict(extra="forbid")


class StreamingSettings(BaseModel):
    buffer_size: PositiveInt = Field(default=64)

    model_config = ConfigDict(extra="forbid")


class HealthSettings(BaseModel):
    enabled: bool = True
    interval_s: PositiveFloat = Field(default=30.0)
    timeout_s: PositiveFloat = Field(default=5.0)

    model_config = ConfigDict(extra="forbid")


class HubSettings(BaseModel):
    defaults: DefaultsSettings = Field(default_factory=DefaultsSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)

    model_config = ConfigDict(extra="forbid")


class _ProviderModel(BaseModel):
    type: str = "openai"
    base_url: str = ""
    model: str | None = None
    models: list[str] = Field(default_factory=list)
    auth_env: str | None = None
    timeout_s: PositiveFloat | None = None
    rpm: PositiveInt | None = None
    burst: PositiveInt | None = None
    options: dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _finalize(self) -> "_ProviderModel":
        if not self.type.strip():
            raise ValueError("provider type must not be empty")
        if self.model and self.model not in self.models:
            self.models = [self.model, *self.models]
        return self


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    settings: HubSettings
    watch_paths: tuple[str, ...] = field(default_factory=tuple)


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def parse_settings(data: object) -> HubSettings:
    try:
        return HubSettings.model_validate(data or {})
    except ValidationError as exc:
        raise ValueError(_format_validation_error(exc)) from exc


def parse_providers(data: dict[str, object], *, timeout_default: float) -> Dict[str, ProviderDef]:
    providers: Dict[str, ProviderDef] = {}
    for name, raw in data.items():
        try:
            parsed = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            raise ValueError(f"provider '{name}': {_format_validation_error(exc)}") from exc
        providers[name] = ProviderDef(
            name=name,
            type=parsed.type.strip(),
            base_url=parsed.base_url,
            models=tuple(parsed.models),
            auth_env=parsed.auth_env,
            timeout_s=float(parsed.timeout_s or timeout_default),
            rpm=parsed.rpm,
            burst=parsed.burst,
            options=dict(parsed.options),
        )
    return providers


def load_config(config_dir: str, use_dummy: bool = False) -> LoadedConfig:
    prov_path = os.path.join(config_dir, "providers.dummy.toml" if use_dummy else "providers.toml")
    settings_path = os.path.join(config_dir, "hub.yaml")
    settings_data: object = {}
    watch: list[str] = [prov_path]
    if os.path.exists(settings_path):
        with open(settings_path, "r", encoding="utf-8") as f:
            settings_data = yaml.safe_load(f) or {}
        watch.append(settings_path)
    settings = parse_settings(settings_data)
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers = parse_providers(prov_data, timeout_default=settings.defaults.timeout_s)
    if not providers:
        raise ValueError(f"no providers defined in {prov_path}")
    return LoadedConfig(providers=providers, settings=settings, watch_paths=tuple(watch))


def config_dir_from_env() -> str:
    return os.environ.get(
        "HUB_CONFIG_DIR",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), "config"),
    )
