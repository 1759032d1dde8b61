"""solesync.core — Foundation types, config, and exceptions."""

from solesync.core.config import (
    APIConfig,
    FreshnessConfig,
    FxConfig,
    ProviderConfig,
    ProvidersConfig,
    QueueConfig,
    SolesyncConfig,
    StorageConfig,
    WorkerConfig,
    load_config,
)
from solesync.core.exceptions import (
    ConfigError,
    FxError,
    MappingError,
    NoFxRateError,
    NoMappingError,
    PartialWriteError,
    RateLimitedError,
    SolesyncError,
    StorageError,
    SyncError,
    UnsupportedCurrencyError,
    UpstreamUnavailableError,
)
from solesync.core.models import (
    BudgetGrant,
    BudgetWindow,
    Channel,
    Currency,
    EventType,
    Freshness,
    FxEventSnapshot,
    FxRate,
    JobRun,
    JobStatus,
    LatestPrice,
    OverallSyncState,
    PriceSnapshot,
    Provider,
    ProviderMapping,
    ProviderQuote,
    ProviderSyncState,
    SizeSystem,
    SyncJob,
    SyncStatus,
    UnifiedRow,
    make_dedupe_key,
)

__all__ = [
    # Config
    "APIConfig",
    "FreshnessConfig",
    "FxConfig",
    "ProviderConfig",
    "ProvidersConfig",
    "QueueConfig",
    "SolesyncConfig",
    "StorageConfig",
    "WorkerConfig",
    "load_config",
    # Exceptions
    "ConfigError",
    "FxError",
    "MappingError",
    "NoFxRateError",
    "NoMappingError",
    "PartialWriteError",
    "RateLimitedError",
    "SolesyncError",
    "StorageError",
    "SyncError",
    "UnsupportedCurrencyError",
    "UpstreamUnavailableError",
    # Models
    "BudgetGrant",
    "BudgetWindow",
    "Channel",
    "Currency",
    "EventType",
    "Freshness",
    "FxEventSnapshot",
    "FxRate",
    "JobRun",
    "JobStatus",
    "LatestPrice",
    "OverallSyncState",
    "PriceSnapshot",
    "Provider",
    "ProviderMapping",
    "ProviderQuote",
    "ProviderSyncState",
    "SizeSystem",
    "SyncJob",
    "SyncStatus",
    "UnifiedRow",
    "make_dedupe_key",
]
