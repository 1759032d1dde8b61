"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from solesync.core.exceptions import ConfigError
from solesync.core.models import Currency, Provider


class StorageConfig(BaseModel):
    """SQLite storage configuration."""

    model_config = ConfigDict(frozen=True)

    sqlite_path: str = "./data/solesync.db"
    busy_timeout_ms: int = 5000

    @field_validator("busy_timeout_ms")
    @classmethod
    def busy_timeout_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        return v


class ProviderConfig(BaseModel):
    """Per-provider access and pacing configuration."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    hourly_rate_limit: int = 500
    requests_per_second: float = 2.0
    default_currency: str = "USD"
    default_region: str = ""

    @field_validator("hourly_rate_limit")
    @classmethod
    def rate_limit_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("hourly_rate_limit must be >= 1")
        return v

    @field_validator("requests_per_second")
    @classmethod
    def rps_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("requests_per_second must be > 0")
        return v

    @field_validator("default_currency")
    @classmethod
    def currency_supported(cls, v: str) -> str:
        code = v.strip().upper()
        if code not in {c.value for c in Currency}:
            raise ValueError(f"default_currency must be one of GBP, USD, EUR, got {v!r}")
        return code


class ProvidersConfig(BaseModel):
    """Aggregated provider configuration."""

    model_config = ConfigDict(frozen=True)

    stockx: ProviderConfig = ProviderConfig(hourly_rate_limit=1000)
    alias: ProviderConfig = ProviderConfig(hourly_rate_limit=600)
    ebay: ProviderConfig = ProviderConfig(hourly_rate_limit=5000, default_currency="GBP")

    def get(self, provider: Provider | str) -> ProviderConfig:
        return getattr(self, Provider(provider).value)

    def enabled(self) -> list[Provider]:
        return [p for p in Provider if self.get(p).enabled]


class QueueConfig(BaseModel):
    """Sync queue retry and lease configuration."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = 3
    processing_timeout_seconds: int = 300
    backoff_base_seconds: int = 60
    backoff_max_seconds: int = 3600
    claim_batch_size: int = 10

    @field_validator("max_attempts", "claim_batch_size")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be >= 1")
        return v

    @model_validator(mode="after")
    def backoff_ordered(self) -> QueueConfig:
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds must not exceed backoff_max_seconds")
        return self


class FreshnessConfig(BaseModel):
    """Freshness thresholds for latest prices."""

    model_config = ConfigDict(frozen=True)

    fresh_minutes: int = 60
    aging_minutes: int = 360
    retention_days: int = 7

    @model_validator(mode="after")
    def thresholds_ordered(self) -> FreshnessConfig:
        if not 0 < self.fresh_minutes < self.aging_minutes:
            raise ValueError("require 0 < fresh_minutes < aging_minutes")
        if self.retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        return self


class WorkerConfig(BaseModel):
    """Worker pool configuration."""

    model_config = ConfigDict(frozen=True)

    concurrency: int = 4
    poll_interval_seconds: float = 5.0
    client_factory: str | None = None

    @field_validator("concurrency")
    @classmethod
    def concurrency_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("concurrency must be >= 1")
        return v

    @field_validator("client_factory")
    @classmethod
    def factory_is_import_path(cls, v: str | None) -> str | None:
        if v is not None and ":" not in v:
            raise ValueError("client_factory must look like 'package.module:callable'")
        return v


class FxConfig(BaseModel):
    """FX configuration."""

    model_config = ConfigDict(frozen=True)

    base_currency: str = "GBP"

    @field_validator("base_currency")
    @classmethod
    def base_supported(cls, v: str) -> str:
        code = v.strip().upper()
        if code not in {c.value for c in Currency}:
            raise ValueError(f"base_currency must be one of GBP, USD, EUR, got {v!r}")
        return code


class APIConfig(BaseModel):
    """FastAPI server configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str | None = None


class SolesyncConfig(BaseModel):
    """Root configuration for the whole solesync system."""

    model_config = ConfigDict(frozen=True)

    storage: StorageConfig = StorageConfig()
    providers: ProvidersConfig = ProvidersConfig()
    queue: QueueConfig = QueueConfig()
    freshness: FreshnessConfig = FreshnessConfig()
    worker: WorkerConfig = WorkerConfig()
    fx: FxConfig = FxConfig()
    api: APIConfig = APIConfig()


def load_config(
    config_path: str | None = None,
    env_prefix: str = "SOLESYNC_",
) -> SolesyncConfig:
    """Load configuration from environment + YAML file + defaults.

    Resolution order (highest priority first):
    1. Environment variables (SOLESYNC_QUEUE__MAX_ATTEMPTS, etc.)
    2. YAML file at config_path
    3. Built-in defaults

    Nested keys use double-underscore in env vars:
        SOLESYNC_PROVIDERS__STOCKX__HOURLY_RATE_LIMIT=200
            ->  providers.stockx.hourly_rate_limit = 200
    """
    try:
        yaml_path = _resolve_config_path(config_path)
        base: dict = {}
        if yaml_path is not None:
            base = _load_yaml(yaml_path)

        merged = _merge_env_vars(base, env_prefix)
        return SolesyncConfig.model_validate(merged)
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(str(e), context={"source": "load_config"}) from e


def _resolve_config_path(explicit: str | None) -> Path | None:
    """Determine config file path."""
    if explicit is not None:
        p = Path(explicit)
        if not p.exists():
            raise ConfigError(
                f"Config file not found: {explicit}",
                context={"field": "config_path", "value": explicit},
            )
        return p

    env_path = os.environ.get("SOLESYNC_CONFIG")
    if env_path:
        p = Path(env_path)
        if not p.exists():
            raise ConfigError(
                f"Config file from SOLESYNC_CONFIG not found: {env_path}",
                context={"field": "SOLESYNC_CONFIG", "value": env_path},
            )
        return p

    default = Path("solesync.yml")
    if default.exists():
        return default

    return None


def _load_yaml(path: Path) -> dict:
    """Load and parse YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse YAML config: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"YAML config must be a mapping, got {type(data).__name__}",
            context={"field": "config_file", "value": str(path)},
        )
    return data


def _merge_env_vars(base: dict, prefix: str) -> dict:
    """Overlay environment variables onto a copy of the base config dict.

    Double-underscore separates nesting levels. Values are auto-cast.
    """
    result = _deep_copy(base)

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = [p.lower() for p in key[len(prefix) :].split("__")]
        if parts == ["config"]:
            continue

        target = result
        for part in parts[:-1]:
            existing = target.get(part)
            if not isinstance(existing, dict):
                existing = {}
                target[part] = existing
            target = existing
        target[parts[-1]] = _auto_cast(value)

    return result


def _deep_copy(data: dict) -> dict:
    return {k: _deep_copy(v) if isinstance(v, dict) else v for k, v in data.items()}


def _auto_cast(value: str) -> str | int | float | bool:
    """Auto-cast string values from environment variables."""
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value
